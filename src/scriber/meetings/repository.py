"""Meeting repository -- async persistence for meetings, speakers, segments, minutes.

Provides MeetingRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models.

Every pipeline write takes the writing job's ``lease_token``. The meeting row
is locked (SELECT ... FOR UPDATE), the token compared, and LeaseLostError
raised on mismatch, so a superseded or cancelled job can never overwrite the
authoritative job's results. User actions (retry, cancel) write without a
token and clear the lease.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.scriber.meetings.models import (
    MeetingModel,
    MinutesModel,
    SpeakerModel,
    TranscriptSegmentModel,
)
from src.scriber.meetings.schemas import (
    ActionItem,
    Decision,
    Meeting,
    MeetingCreate,
    MeetingMinutes,
    MeetingStatus,
    MinutesTemplate,
    QualityMetrics,
    Speaker,
    SpeakerDraft,
    TranscriptSegment,
)
from src.scriber.pipeline.errors import LeaseLostError, MeetingNotFoundError
from src.scriber.pipeline.normalizer import DraftSegment

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_meeting(model: MeetingModel) -> Meeting:
    """Convert MeetingModel to Meeting schema."""
    return Meeting(
        id=model.id,
        user_id=model.user_id,
        title=model.title,
        status=MeetingStatus(model.status),
        duration_seconds=model.duration_seconds or 0.0,
        file_ref=model.file_ref,
        mime_type=model.mime_type,
        auto_redact=bool(model.auto_redact),
        minutes_template=MinutesTemplate(model.minutes_template),
        quality_score=model.quality_score,
        inaudible_count=model.inaudible_count or 0,
        avg_speaker_confidence=model.avg_speaker_confidence,
        timestamp_anomalies=model.timestamp_anomalies or 0,
        failed_chunks=model.failed_chunks or 0,
        failure_reason=model.failure_reason,
        lease_token=model.lease_token,
        usage_refunded=bool(model.usage_refunded),
        last_processed_at=model.last_processed_at,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_speaker(model: SpeakerModel) -> Speaker:
    return Speaker(
        id=model.id,
        meeting_id=model.meeting_id,
        display_name=model.display_name,
        is_unknown=bool(model.is_unknown),
        name_confidence=model.name_confidence or 0.0,
        is_confirmed=bool(model.is_confirmed),
    )


def _model_to_segment(model: TranscriptSegmentModel) -> TranscriptSegment:
    return TranscriptSegment(
        id=model.id,
        meeting_id=model.meeting_id,
        speaker_id=model.speaker_id,
        start_time=model.start_time,
        end_time=model.end_time,
        text=model.text,
        languages_used=model.languages_data or [],
        quality_flags=model.quality_flags_data or [],
    )


def _model_to_minutes(model: MinutesModel) -> MeetingMinutes:
    """Convert MinutesModel to MeetingMinutes schema."""
    return MeetingMinutes(
        id=model.id,
        meeting_id=model.meeting_id,
        template=MinutesTemplate(model.template),
        content=model.content,
        executive_summary=model.executive_summary or "",
        key_topics=model.key_topics_data or [],
        action_items=[
            ActionItem.model_validate(a) for a in (model.action_items_data or [])
        ],
        decisions=[
            Decision.model_validate(d) for d in (model.decisions_data or [])
        ],
        generated_at=model.generated_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class MeetingRepository:
    """Async persistence for the meeting aggregate.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _lock_meeting(
        self,
        session: AsyncSession,
        meeting_id: str,
        lease_token: str | None,
    ) -> MeetingModel:
        stmt = (
            select(MeetingModel)
            .where(MeetingModel.id == uuid.UUID(meeting_id))
            .with_for_update()
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise MeetingNotFoundError(f"Meeting not found: id={meeting_id}")
        if lease_token is not None and model.lease_token != lease_token:
            raise LeaseLostError(
                f"Job {lease_token} no longer holds the lease on meeting {meeting_id}",
                meeting_id=meeting_id,
            )
        return model

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create_meeting(self, data: MeetingCreate) -> Meeting:
        """Create a meeting in UPLOADED status for an accepted upload."""
        async for session in self._session_factory():
            model = MeetingModel(
                user_id=data.user_id,
                title=data.title,
                status=MeetingStatus.UPLOADED.value,
                duration_seconds=data.recording.duration_seconds,
                file_ref=data.recording.file_ref,
                mime_type=data.recording.mime_type,
                auto_redact=data.auto_redact,
                minutes_template=data.minutes_template.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_meeting(model)

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        """Get a meeting by ID, or None."""
        async for session in self._session_factory():
            stmt = select(MeetingModel).where(MeetingModel.id == uuid.UUID(meeting_id))
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_meeting(model)

    async def acquire_lease(self, meeting_id: str, lease_token: str) -> Meeting:
        """Make ``lease_token`` the only job allowed to write pipeline results."""
        async for session in self._session_factory():
            model = await self._lock_meeting(session, meeting_id, None)
            previous = model.lease_token
            model.lease_token = lease_token
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            if previous and previous != lease_token:
                logger.warning(
                    "meetings.lease_superseded",
                    meeting_id=meeting_id,
                    previous=previous,
                    current=lease_token,
                )
            return _model_to_meeting(model)

    async def update_status(
        self,
        meeting_id: str,
        status: MeetingStatus,
        *,
        lease_token: str | None = None,
        failure_reason: str | None = None,
        clear_lease: bool = False,
        processed: bool = False,
    ) -> Meeting:
        """Set a meeting's status.

        Args:
            meeting_id: Meeting UUID string.
            status: New MeetingStatus.
            lease_token: Writing job's lease; None for user actions.
            failure_reason: Stored with FAILED/CANCELLED, cleared otherwise.
            clear_lease: Drop the current lease so in-flight jobs stop writing.
            processed: Stamp last_processed_at.

        Raises:
            MeetingNotFoundError: If meeting not found.
            LeaseLostError: If lease_token is given and no longer current.
        """
        async for session in self._session_factory():
            model = await self._lock_meeting(session, meeting_id, lease_token)
            now = datetime.now(timezone.utc)
            model.status = status.value
            model.failure_reason = failure_reason
            model.updated_at = now
            if clear_lease:
                model.lease_token = None
            if processed:
                model.last_processed_at = now
            await session.commit()
            await session.refresh(model)
            return _model_to_meeting(model)

    async def update_quality(
        self, meeting_id: str, metrics: QualityMetrics, *, lease_token: str
    ) -> Meeting:
        async for session in self._session_factory():
            model = await self._lock_meeting(session, meeting_id, lease_token)
            model.quality_score = metrics.quality_score
            model.inaudible_count = metrics.inaudible_count
            model.avg_speaker_confidence = metrics.avg_speaker_confidence
            model.timestamp_anomalies = metrics.timestamp_anomalies
            model.failed_chunks = metrics.failed_chunks
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_meeting(model)

    async def claim_usage_refund(self, meeting_id: str) -> bool:
        """Mark the meeting's upload charge as refunded.

        Returns True only for the first caller; a meeting that fails again
        after a retry is not refunded twice.
        """
        async for session in self._session_factory():
            model = await self._lock_meeting(session, meeting_id, None)
            if model.usage_refunded:
                return False
            model.usage_refunded = True
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return True

    # ── Transcript ───────────────────────────────────────────────────────

    async def replace_transcript(
        self,
        meeting_id: str,
        speakers: list[SpeakerDraft],
        segments: list[DraftSegment],
        *,
        lease_token: str,
    ) -> list[TranscriptSegment]:
        """Persist a freshly normalized transcript in one transaction.

        Speakers are upserted by display name so identities survive a
        re-transcription; an existing confidence is only filled in when it
        was still zero. Prior segments are deleted and replaced.
        """
        async for session in self._session_factory():
            await self._lock_meeting(session, meeting_id, lease_token)
            meeting_uuid = uuid.UUID(meeting_id)

            result = await session.execute(
                select(SpeakerModel).where(SpeakerModel.meeting_id == meeting_uuid)
            )
            existing = {m.display_name: m for m in result.scalars().all()}

            ids_by_key: dict[str, uuid.UUID] = {}
            for draft in speakers:
                model = existing.get(draft.display_name)
                if model is None:
                    model = SpeakerModel(
                        id=uuid.uuid4(),
                        meeting_id=meeting_uuid,
                        display_name=draft.display_name,
                        is_unknown=draft.is_unknown,
                        name_confidence=draft.name_confidence,
                        is_confirmed=False,
                    )
                    session.add(model)
                    existing[draft.display_name] = model
                elif not model.name_confidence and draft.name_confidence > 0:
                    model.name_confidence = draft.name_confidence
                ids_by_key[draft.key] = model.id

            await session.execute(
                delete(TranscriptSegmentModel).where(
                    TranscriptSegmentModel.meeting_id == meeting_uuid
                )
            )
            rows = [
                TranscriptSegmentModel(
                    id=uuid.uuid4(),
                    meeting_id=meeting_uuid,
                    speaker_id=ids_by_key.get(seg.speaker_key),
                    start_time=seg.start_time,
                    end_time=seg.end_time,
                    text=seg.text,
                    languages_data=list(seg.languages_used),
                    quality_flags_data=sorted(seg.quality_flags),
                )
                for seg in segments
            ]
            session.add_all(rows)
            await session.commit()
            logger.info(
                "meetings.transcript_saved",
                meeting_id=meeting_id,
                speakers=len(speakers),
                segments=len(rows),
            )
            return [_model_to_segment(r) for r in rows]

    async def get_segments(self, meeting_id: str) -> list[TranscriptSegment]:
        """Segments ordered by start time."""
        async for session in self._session_factory():
            stmt = (
                select(TranscriptSegmentModel)
                .where(TranscriptSegmentModel.meeting_id == uuid.UUID(meeting_id))
                .order_by(TranscriptSegmentModel.start_time)
            )
            result = await session.execute(stmt)
            return [_model_to_segment(m) for m in result.scalars().all()]

    async def get_speakers(self, meeting_id: str) -> list[Speaker]:
        async for session in self._session_factory():
            stmt = select(SpeakerModel).where(SpeakerModel.meeting_id == uuid.UUID(meeting_id))
            result = await session.execute(stmt)
            return [_model_to_speaker(m) for m in result.scalars().all()]

    async def has_transcript(self, meeting_id: str) -> bool:
        async for session in self._session_factory():
            stmt = select(func.count(TranscriptSegmentModel.id)).where(
                TranscriptSegmentModel.meeting_id == uuid.UUID(meeting_id)
            )
            result = await session.execute(stmt)
            return (result.scalar_one() or 0) > 0

    async def update_segment_texts(
        self,
        meeting_id: str,
        texts: dict[uuid.UUID, str],
        *,
        lease_token: str,
    ) -> int:
        """Overwrite the text of the given segments. Returns rows changed."""
        if not texts:
            return 0
        async for session in self._session_factory():
            await self._lock_meeting(session, meeting_id, lease_token)
            stmt = select(TranscriptSegmentModel).where(
                TranscriptSegmentModel.meeting_id == uuid.UUID(meeting_id),
                TranscriptSegmentModel.id.in_(list(texts)),
            )
            result = await session.execute(stmt)
            changed = 0
            for model in result.scalars().all():
                model.text = texts[model.id]
                changed += 1
            await session.commit()
            return changed

    async def promote_speaker(
        self,
        meeting_id: str,
        speaker_id: uuid.UUID,
        display_name: str,
        name_confidence: float,
        *,
        lease_token: str,
    ) -> Speaker | None:
        """Give a placeholder speaker a real name.

        Returns None, changing nothing, when the speaker is already named or
        another speaker in the meeting holds the name.
        """
        async for session in self._session_factory():
            await self._lock_meeting(session, meeting_id, lease_token)
            meeting_uuid = uuid.UUID(meeting_id)
            result = await session.execute(
                select(SpeakerModel).where(SpeakerModel.meeting_id == meeting_uuid)
            )
            speakers = result.scalars().all()
            target = next((s for s in speakers if s.id == speaker_id), None)
            if target is None or not target.is_unknown:
                return None
            if any(s.display_name == display_name and s.id != speaker_id for s in speakers):
                return None

            target.display_name = display_name
            target.is_unknown = False
            if not target.name_confidence and name_confidence > 0:
                target.name_confidence = name_confidence
            await session.commit()
            await session.refresh(target)
            return _model_to_speaker(target)

    # ── Minutes ──────────────────────────────────────────────────────────

    async def save_minutes(
        self, minutes: MeetingMinutes, *, lease_token: str
    ) -> MeetingMinutes:
        """Insert or replace the minutes for a meeting."""
        meeting_id = str(minutes.meeting_id)
        async for session in self._session_factory():
            await self._lock_meeting(session, meeting_id, lease_token)
            result = await session.execute(
                select(MinutesModel).where(MinutesModel.meeting_id == minutes.meeting_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = MinutesModel(id=minutes.id, meeting_id=minutes.meeting_id)
                session.add(model)
            model.template = minutes.template.value
            model.content = minutes.content
            model.executive_summary = minutes.executive_summary
            model.key_topics_data = minutes.key_topics
            model.action_items_data = [
                a.model_dump(mode="json") for a in minutes.action_items
            ]
            model.decisions_data = [
                d.model_dump(mode="json") for d in minutes.decisions
            ]
            model.generated_at = minutes.generated_at
            await session.commit()
            await session.refresh(model)
            return _model_to_minutes(model)

    async def get_minutes(self, meeting_id: str) -> MeetingMinutes | None:
        async for session in self._session_factory():
            stmt = select(MinutesModel).where(MinutesModel.meeting_id == uuid.UUID(meeting_id))
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_minutes(model)
