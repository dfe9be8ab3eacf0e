"""Meeting persistence models.

Four SQLAlchemy models on the shared declarative Base:
- MeetingModel: One uploaded recording; status, quality metrics, lease token
- SpeakerModel: Distinct voices per meeting (unique by display name)
- TranscriptSegmentModel: Normalized transcript spans
- MinutesModel: Generated minutes (one row per meeting, JSON detail fields)

No foreign key constraints (application-level referential integrity via the
repository); segments and speakers are replaced wholesale on re-transcription.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text as sa_text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.scriber.core.database import Base


class MeetingModel(Base):
    """Uploaded recording and its pipeline state.

    ``lease_token`` holds the id of the job currently authorised to write
    pipeline results for this meeting; writes from any other job are refused.
    """

    __tablename__ = "meetings"
    __table_args__ = (Index("ix_meetings_user_id", "user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa_text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default="UPLOADED",
        server_default=sa_text("'UPLOADED'"),
    )
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    file_ref: Mapped[str] = mapped_column(String(1000), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), default="audio/mpeg")
    auto_redact: Mapped[bool] = mapped_column(Boolean, default=False)
    minutes_template: Mapped[str] = mapped_column(String(50), default="EXECUTIVE")
    quality_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inaudible_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_speaker_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    timestamp_anomalies: Mapped[int] = mapped_column(Integer, default=0)
    failed_chunks: Mapped[int] = mapped_column(Integer, default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    usage_refunded: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=sa_text("false")
    )
    last_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SpeakerModel(Base):
    """A distinct voice in a meeting."""

    __tablename__ = "speakers"
    __table_args__ = (
        UniqueConstraint("meeting_id", "display_name", name="uq_speaker_meeting_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa_text("gen_random_uuid()"),
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_unknown: Mapped[bool] = mapped_column(Boolean, default=True)
    name_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)


class TranscriptSegmentModel(Base):
    """One normalized transcript span."""

    __tablename__ = "transcript_segments"
    __table_args__ = (Index("ix_segments_meeting_start", "meeting_id", "start_time"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa_text("gen_random_uuid()"),
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    speaker_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    start_time: Mapped[float] = mapped_column(Float, nullable=False)
    end_time: Mapped[float] = mapped_column(Float, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    languages_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=sa_text("'[]'::json")
    )
    quality_flags_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=sa_text("'[]'::json")
    )


class MinutesModel(Base):
    """Generated minutes, one row per meeting."""

    __tablename__ = "meeting_minutes"
    __table_args__ = (UniqueConstraint("meeting_id", name="uq_minutes_meeting"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa_text("gen_random_uuid()"),
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    template: Mapped[str] = mapped_column(String(50), default="EXECUTIVE")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    executive_summary: Mapped[str] = mapped_column(Text, default="")
    key_topics_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=sa_text("'[]'::json")
    )
    action_items_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=sa_text("'[]'::json")
    )
    decisions_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=sa_text("'[]'::json")
    )
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
