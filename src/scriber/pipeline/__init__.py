"""Recorded-meeting processing pipeline.

Stage queues on Redis Streams, the StageWorker pools that drain them, and
the components a transcription job composes: AudioChunker, ContinuityTracker,
SegmentNormalizer, TranscriptionPort with its retry policy, UsageLedger and
ProgressBroadcaster. PipelineOrchestrator ties them to one meeting's lifecycle.
"""
