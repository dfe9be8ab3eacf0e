"""Transcription provider contract and its wire types.

A provider is any external AI service that can transcribe an audio file,
propose transcript corrections, and redact sensitive content. Segment
timestamps returned by ``transcribe`` are absolute: the provider adds the
chunk's ``timestamp_offset`` before returning.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Transcription ────────────────────────────────────────────────────────────


class RawSegment(BaseModel):
    """One diarized span as reported by the provider.

    Accepts both the provider's camelCase keys and snake_case field names.
    Missing or null timestamps and confidences read as 0.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    speaker_id: str = Field(default="", alias="speakerId")
    speaker_label: str = Field(default="", alias="speakerLabel")
    text: str = ""
    start_time: float = Field(default=0.0, alias="startTime")
    end_time: float = Field(default=0.0, alias="endTime")
    languages_used: list[str] = Field(default_factory=list, alias="languagesUsed")
    name_confidence: float = Field(default=0.0, alias="nameConfidence")

    @field_validator("start_time", "end_time", "name_confidence", mode="before")
    @classmethod
    def _null_to_zero(cls, v: object) -> object:
        return 0.0 if v is None else v

    @field_validator("name_confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return min(1.0, max(0.0, v))

    @field_validator("speaker_id", "speaker_label", "text", mode="before")
    @classmethod
    def _null_to_empty(cls, v: object) -> object:
        return "" if v is None else v


class TranscriptionResult(BaseModel):
    segments: list[RawSegment] = Field(default_factory=list)


# ── Enhancement ──────────────────────────────────────────────────────────────


class TextCorrection(BaseModel):
    segment_index: int = Field(description="Index of the segment in the numbered transcript")
    original_text: str = Field(description="Exact current text of that segment")
    corrected_text: str = Field(description="Corrected text")
    reason: str = Field(default="", description="Why the correction is needed")


class SpeakerNameSuggestion(BaseModel):
    current_name: str = Field(description="Placeholder label currently used, e.g. 'Speaker 2'")
    suggested_name: str = Field(description="Real name for that speaker")
    evidence: str = Field(
        default="",
        description="Quote where the speaker introduces themselves or is addressed by name",
    )
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class EnhancementResult(BaseModel):
    corrections: list[TextCorrection] = Field(default_factory=list)
    speaker_names: list[SpeakerNameSuggestion] = Field(default_factory=list)


# ── Redaction ────────────────────────────────────────────────────────────────


class RedactedSegment(BaseModel):
    segment_index: int
    redacted_text: str


class RedactionResult(BaseModel):
    redacted_segments: list[RedactedSegment] = Field(default_factory=list)
    items_redacted: int = 0
    types_found: list[str] = Field(default_factory=list)


# ── Provider contract ────────────────────────────────────────────────────────


class TranscriptionProvider(Protocol):
    name: str

    async def transcribe(
        self,
        file_path: Path,
        mime_type: str,
        *,
        chunk_index: int = 0,
        timestamp_offset: float = 0.0,
        context: str | None = None,
    ) -> TranscriptionResult: ...

    async def enhance(self, text: str) -> EnhancementResult: ...

    async def redact(self, text: str) -> RedactionResult: ...
