"""Transcription/LLM providers behind the TranscriptionProvider protocol."""
