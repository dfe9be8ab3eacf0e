"""Pydantic v2 schemas for the recorded-meeting domain.

Defines the data contracts for recordings, meetings, speakers, transcript
segments, minutes, and pipeline jobs, plus the meeting status state machine
that the orchestrator enforces.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from src.scriber.pipeline.errors import InvalidTransitionError


# ── Enums ────────────────────────────────────────────────────────────────────


class MeetingStatus(str, Enum):
    """Lifecycle status of a recorded meeting from upload through minutes."""

    UPLOADED = "UPLOADED"
    PROCESSING_TRANSCRIPT = "PROCESSING_TRANSCRIPT"
    TRANSCRIPT_READY = "TRANSCRIPT_READY"
    PROCESSING_ENHANCEMENT = "PROCESSING_ENHANCEMENT"
    PROCESSING_REDACTION = "PROCESSING_REDACTION"
    PROCESSING_MINUTES = "PROCESSING_MINUTES"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class PipelineStage(str, Enum):
    TRANSCRIPTION = "transcription"
    ENHANCEMENT = "enhancement"
    REDACTION = "redaction"
    MINUTES = "minutes"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MinutesTemplate(str, Enum):
    EXECUTIVE = "EXECUTIVE"
    DETAILED = "DETAILED"
    ACTION_ITEMS = "ACTION_ITEMS"
    COMPREHENSIVE = "COMPREHENSIVE"
    GENERAL_SUMMARY = "GENERAL_SUMMARY"


# ── State machine ────────────────────────────────────────────────────────────

TERMINAL_STATUSES = frozenset(
    {MeetingStatus.COMPLETED, MeetingStatus.FAILED, MeetingStatus.CANCELLED}
)

_PROCESSING = frozenset(
    {
        MeetingStatus.PROCESSING_TRANSCRIPT,
        MeetingStatus.PROCESSING_ENHANCEMENT,
        MeetingStatus.PROCESSING_REDACTION,
        MeetingStatus.PROCESSING_MINUTES,
    }
)

VALID_TRANSITIONS: dict[MeetingStatus, set[MeetingStatus]] = {
    MeetingStatus.UPLOADED: {MeetingStatus.PROCESSING_TRANSCRIPT},
    MeetingStatus.PROCESSING_TRANSCRIPT: {MeetingStatus.TRANSCRIPT_READY},
    MeetingStatus.TRANSCRIPT_READY: {
        MeetingStatus.PROCESSING_ENHANCEMENT,
        MeetingStatus.PROCESSING_MINUTES,
    },
    MeetingStatus.PROCESSING_ENHANCEMENT: {
        MeetingStatus.PROCESSING_REDACTION,
        MeetingStatus.PROCESSING_MINUTES,
        # downstream skipped: the enhanced transcript is the end product
        MeetingStatus.TRANSCRIPT_READY,
    },
    MeetingStatus.PROCESSING_REDACTION: {
        MeetingStatus.PROCESSING_MINUTES,
        MeetingStatus.TRANSCRIPT_READY,
    },
    MeetingStatus.PROCESSING_MINUTES: {MeetingStatus.COMPLETED},
}

for _status in MeetingStatus:
    if _status in _PROCESSING:
        VALID_TRANSITIONS[_status].add(MeetingStatus.FAILED)
    if not _status.is_terminal:
        VALID_TRANSITIONS.setdefault(_status, set()).add(MeetingStatus.CANCELLED)


def validate_transition(from_status: MeetingStatus, to_status: MeetingStatus) -> None:
    """Validate a forward pipeline transition.

    Retry and cancel are explicit user actions and do not go through this check.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if from_status == to_status:
        return
    if to_status not in VALID_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError(from_status, to_status)


# ── Recording ────────────────────────────────────────────────────────────────


class Recording(BaseModel):
    """Immutable reference to the raw audio of one upload."""

    model_config = ConfigDict(frozen=True)

    file_ref: str = Field(description="Storage reference in 'bucket/path' form")
    duration_seconds: float = Field(ge=0)
    mime_type: str = "audio/mpeg"

    @property
    def bucket(self) -> str:
        return self.file_ref.split("/", 1)[0]

    @property
    def path(self) -> str:
        return self.file_ref.split("/", 1)[1] if "/" in self.file_ref else ""


# ── Meeting ──────────────────────────────────────────────────────────────────


class Meeting(BaseModel):
    """Aggregate root for one uploaded recording and its pipeline outputs."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    title: str
    status: MeetingStatus = MeetingStatus.UPLOADED
    duration_seconds: float = 0.0
    file_ref: str
    mime_type: str = "audio/mpeg"
    auto_redact: bool = False
    minutes_template: MinutesTemplate = MinutesTemplate.EXECUTIVE
    quality_score: int | None = None
    inaudible_count: int = 0
    avg_speaker_confidence: float | None = None
    timestamp_anomalies: int = 0
    failed_chunks: int = 0
    failure_reason: str | None = None
    lease_token: str | None = None
    usage_refunded: bool = False
    last_processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def recording(self) -> Recording:
        return Recording(
            file_ref=self.file_ref,
            duration_seconds=self.duration_seconds,
            mime_type=self.mime_type,
        )


class MeetingCreate(BaseModel):
    """Request schema for creating a meeting from an accepted upload."""

    user_id: str
    title: str
    recording: Recording
    auto_redact: bool = False
    minutes_template: MinutesTemplate = MinutesTemplate.EXECUTIVE


class QualityMetrics(BaseModel):
    """Transcript quality signals stored on the meeting row."""

    quality_score: int = Field(ge=0, le=100)
    inaudible_count: int = 0
    avg_speaker_confidence: float | None = None
    timestamp_anomalies: int = 0
    failed_chunks: int = 0


# ── Speakers & Segments ──────────────────────────────────────────────────────


class Speaker(BaseModel):
    """A distinct voice within one meeting. Identity is stable; the name may improve."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    meeting_id: uuid.UUID
    display_name: str
    is_unknown: bool = True
    name_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_confirmed: bool = False


class SpeakerDraft(BaseModel):
    """Speaker as discovered by the transcription stage, before persistence."""

    key: str
    display_name: str
    is_unknown: bool = True
    name_confidence: float = 0.0


class TranscriptSegment(BaseModel):
    """One timestamped span of transcript text attributed to a speaker."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    meeting_id: uuid.UUID
    speaker_id: uuid.UUID | None = None
    start_time: float
    end_time: float
    text: str
    languages_used: list[str] = Field(default_factory=list)
    quality_flags: list[str] = Field(default_factory=list)


# ── Minutes ──────────────────────────────────────────────────────────────────


class ActionItem(BaseModel):
    """An action item extracted from meeting minutes."""

    description: str = Field(description="What needs to be done")
    owner: str | None = Field(None, description="Person responsible, if stated")
    due_date: str | None = Field(None, description="When it's due, if mentioned")


class Decision(BaseModel):
    """A decision or commitment made during a meeting."""

    decision: str = Field(description="What was decided")
    context: str = Field(default="", description="Discussion context leading to decision")


class MeetingMinutes(BaseModel):
    """Generated minutes for one meeting in one template."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    meeting_id: uuid.UUID
    template: MinutesTemplate = MinutesTemplate.EXECUTIVE
    content: str = Field(description="Markdown body laid out per template")
    executive_summary: str = ""
    key_topics: list[str] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)
    generated_at: datetime


# ── Pipeline jobs ────────────────────────────────────────────────────────────


class PipelineJob(BaseModel):
    """One unit of stage work for one meeting, as tracked by the job queue."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    meeting_id: str
    user_id: str
    stage: PipelineStage
    attempt_count: int = 1
    state: JobState = JobState.WAITING
    message_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime
