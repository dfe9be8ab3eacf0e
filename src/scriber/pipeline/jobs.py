"""Per-stage job queues on Redis Streams.

Each pipeline stage has its own stream and consumer group, so stage pools
scale and back up independently:

- stream:      ``scriber:jobs:<stage>``  (group ``scriber-<stage>``)
- dead letter: ``scriber:jobs:<stage>:dlq``
- unit marker: ``scriber:jobs:unit:<stage>:<meeting_id>`` -> job id (SET NX)
- job record:  ``scriber:jobs:record:<job_id>`` -> PipelineJob JSON
- cancel flag: ``scriber:jobs:cancel:<meeting_id>``

The unit marker enforces at most one waiting-or-running unit per meeting per
stage. Payloads are a tagged union on ``stage`` and are validated when read;
anything that does not parse is dead-lettered instead of dispatched.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from src.scriber.core.redis import make_key
from src.scriber.meetings.schemas import JobState, MinutesTemplate, PipelineJob, PipelineStage
from src.scriber.pipeline.errors import DuplicateJobError

logger = structlog.get_logger(__name__)


# ── Payload schemas ──────────────────────────────────────────────────────────


class StagePayload(BaseModel):
    """Job submission contract shared by every stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    meeting_id: str
    user_id: str
    skip_downstream: bool = False


class TranscriptionPayload(StagePayload):
    stage: Literal[PipelineStage.TRANSCRIPTION] = PipelineStage.TRANSCRIPTION


class EnhancementPayload(StagePayload):
    stage: Literal[PipelineStage.ENHANCEMENT] = PipelineStage.ENHANCEMENT


class RedactionPayload(StagePayload):
    stage: Literal[PipelineStage.REDACTION] = PipelineStage.REDACTION


class MinutesPayload(StagePayload):
    stage: Literal[PipelineStage.MINUTES] = PipelineStage.MINUTES
    template: MinutesTemplate | None = None


JobPayload = Annotated[
    Union[TranscriptionPayload, EnhancementPayload, RedactionPayload, MinutesPayload],
    Field(discriminator="stage"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(JobPayload)

PAYLOAD_TYPES: dict[PipelineStage, type[StagePayload]] = {
    PipelineStage.TRANSCRIPTION: TranscriptionPayload,
    PipelineStage.ENHANCEMENT: EnhancementPayload,
    PipelineStage.REDACTION: RedactionPayload,
    PipelineStage.MINUTES: MinutesPayload,
}


def parse_payload(raw: str | bytes) -> StagePayload:
    """Validate a serialized payload against the tagged union.

    Raises:
        pydantic.ValidationError: On unknown stage or schema mismatch.
    """
    return _payload_adapter.validate_json(raw)


def build_payload(stage: PipelineStage, **fields: Any) -> StagePayload:
    return PAYLOAD_TYPES[stage](**fields)


@dataclass(frozen=True)
class QueuedMessage:
    message_id: str
    job_id: str
    attempt: int
    payload: StagePayload
    fields: dict[str, str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Queue ────────────────────────────────────────────────────────────────────


class RedisJobQueue:
    """Stage job queues, unit markers, cancel flags, and dead letters.

    Args:
        redis: Raw async Redis client (decode_responses=True).
    """

    STREAM_MAXLEN: int = 10000
    RECORD_TTL_SECONDS: int = 7 * 24 * 3600
    CANCEL_TTL_SECONDS: int = 24 * 3600

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    # ── Keys ────────────────────────────────────────────────────────────

    @staticmethod
    def stream_key(stage: PipelineStage) -> str:
        return make_key("jobs", stage.value)

    @staticmethod
    def group_name(stage: PipelineStage) -> str:
        return f"scriber-{stage.value}"

    @staticmethod
    def dlq_key(stage: PipelineStage) -> str:
        return make_key("jobs", stage.value, "dlq")

    @staticmethod
    def _unit_key(stage: PipelineStage, meeting_id: str) -> str:
        return make_key("jobs", "unit", stage.value, meeting_id)

    @staticmethod
    def _record_key(job_id: str) -> str:
        return make_key("jobs", "record", job_id)

    @staticmethod
    def _cancel_key(meeting_id: str) -> str:
        return make_key("jobs", "cancel", meeting_id)

    # ── Records ─────────────────────────────────────────────────────────

    async def _save(self, job: PipelineJob) -> None:
        await self._redis.set(
            self._record_key(job.id),
            job.model_dump_json(),
            ex=self.RECORD_TTL_SECONDS,
        )

    async def get_job(self, job_id: str) -> PipelineJob | None:
        raw = await self._redis.get(self._record_key(job_id))
        return PipelineJob.model_validate_json(raw) if raw else None

    async def get_unit(self, stage: PipelineStage, meeting_id: str) -> PipelineJob | None:
        """The waiting or running job for this meeting and stage, if any."""
        job_id = await self._redis.get(self._unit_key(stage, meeting_id))
        if job_id is None:
            return None
        return await self.get_job(job_id)

    async def list_units(self, meeting_id: str) -> list[PipelineJob]:
        units = []
        for stage in PipelineStage:
            job = await self.get_unit(stage, meeting_id)
            if job is not None:
                units.append(job)
        return units

    # ── Producing ───────────────────────────────────────────────────────

    async def _publish(self, job: PipelineJob, payload: StagePayload) -> PipelineJob:
        message_id = await self._redis.xadd(
            self.stream_key(job.stage),
            {
                "job_id": job.id,
                "attempt": str(job.attempt_count),
                "payload": payload.model_dump_json(),
            },
            maxlen=self.STREAM_MAXLEN,
            approximate=True,
        )
        job = job.model_copy(update={"message_id": message_id, "updated_at": _now()})
        await self._save(job)
        return job

    async def enqueue(self, payload: StagePayload) -> PipelineJob:
        """Append a new unit of work for a meeting's stage.

        Raises:
            DuplicateJobError: A unit for this meeting and stage already exists.
        """
        now = _now()
        job = PipelineJob(
            meeting_id=payload.meeting_id,
            user_id=payload.user_id,
            stage=payload.stage,
            created_at=now,
            updated_at=now,
        )
        claimed = await self._redis.set(
            self._unit_key(job.stage, job.meeting_id),
            job.id,
            nx=True,
            ex=self.RECORD_TTL_SECONDS,
        )
        if not claimed:
            existing = await self.get_unit(job.stage, job.meeting_id)
            raise DuplicateJobError(
                f"A {job.stage.value} job is already queued or running for meeting {job.meeting_id}",
                existing_job_id=existing.id if existing else None,
            )

        job = await self._publish(job, payload)
        logger.info(
            "jobs.enqueued",
            job_id=job.id,
            stage=job.stage.value,
            meeting_id=job.meeting_id,
            message_id=job.message_id,
        )
        return job

    async def requeue(self, job: PipelineJob, payload: StagePayload) -> PipelineJob:
        """Re-publish a failed attempt as the next attempt of the same unit."""
        job = job.model_copy(
            update={"attempt_count": job.attempt_count + 1, "state": JobState.WAITING}
        )
        return await self._publish(job, payload)

    # ── State ───────────────────────────────────────────────────────────

    async def mark_active(
        self, job_id: str, attempt: int, *, reclaimed: bool = False
    ) -> PipelineJob | None:
        """Claim a delivered job for execution.

        Returns None when the unit was removed or replaced meanwhile (for
        example by a cancel), in which case the delivery must be dropped.
        Reclaimed deliveries may still be recorded as active by the dead
        consumer.
        """
        job = await self.get_job(job_id)
        allowed = {JobState.WAITING, JobState.ACTIVE} if reclaimed else {JobState.WAITING}
        if job is None or job.state not in allowed:
            return None
        owner = await self._redis.get(self._unit_key(job.stage, job.meeting_id))
        if owner != job.id:
            return None
        job = job.model_copy(
            update={"state": JobState.ACTIVE, "attempt_count": attempt, "updated_at": _now()}
        )
        await self._save(job)
        return job

    async def finish(
        self,
        job: PipelineJob,
        state: JobState,
        reason: str | None = None,
    ) -> PipelineJob:
        """Record a final state and release the unit marker."""
        job = job.model_copy(update={"state": state, "failure_reason": reason, "updated_at": _now()})
        await self._save(job)
        unit_key = self._unit_key(job.stage, job.meeting_id)
        if await self._redis.get(unit_key) == job.id:
            await self._redis.delete(unit_key)
        return job

    async def remove_waiting(self, job: PipelineJob) -> bool:
        """Delete a job that has not started yet. False if it is already running."""
        if job.state is not JobState.WAITING or job.message_id is None:
            return False
        deleted = await self._redis.xdel(self.stream_key(job.stage), job.message_id)
        if not deleted:
            return False
        await self.finish(job, JobState.CANCELLED, "Cancelled by user")
        logger.info("jobs.removed", job_id=job.id, stage=job.stage.value, meeting_id=job.meeting_id)
        return True

    # ── Cancellation flags ──────────────────────────────────────────────

    async def request_cancel(self, meeting_id: str) -> None:
        await self._redis.set(self._cancel_key(meeting_id), "1", ex=self.CANCEL_TTL_SECONDS)

    async def is_cancel_requested(self, meeting_id: str) -> bool:
        return bool(await self._redis.exists(self._cancel_key(meeting_id)))

    async def clear_cancel(self, meeting_id: str) -> None:
        await self._redis.delete(self._cancel_key(meeting_id))

    # ── Consuming ───────────────────────────────────────────────────────

    async def ensure_group(self, stage: PipelineStage) -> None:
        """Create the stage's consumer group (idempotent)."""
        try:
            await self._redis.xgroup_create(
                self.stream_key(stage), self.group_name(stage), id="0", mkstream=True,
            )
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def read(
        self,
        stage: PipelineStage,
        consumer: str,
        count: int = 1,
        block_ms: int = 5000,
    ) -> list[QueuedMessage]:
        """Read new deliveries for a consumer; malformed ones are dead-lettered."""
        response = await self._redis.xreadgroup(
            groupname=self.group_name(stage),
            consumername=consumer,
            streams={self.stream_key(stage): ">"},
            count=count,
            block=block_ms,
        )
        return await self._decode(stage, response or [])

    async def reclaim_abandoned(
        self,
        stage: PipelineStage,
        consumer: str,
        idle_time_ms: int = 15 * 60 * 1000,
        count: int = 10,
    ) -> list[QueuedMessage]:
        """Take over deliveries whose consumer died mid-job (XAUTOCLAIM)."""
        result = await self._redis.xautoclaim(
            self.stream_key(stage),
            self.group_name(stage),
            consumer,
            min_idle_time=idle_time_ms,
            start_id="0",
            count=count,
        )
        claimed = result[1] if len(result) > 1 else []
        return await self._decode(stage, [(self.stream_key(stage), claimed)])

    async def _decode(
        self,
        stage: PipelineStage,
        response: list[Any],
    ) -> list[QueuedMessage]:
        decoded: list[QueuedMessage] = []
        for _stream_key, entries in response:
            for message_id, fields in entries:
                if not fields:
                    # Entry deleted after delivery (cancelled while pending)
                    await self.ack(stage, message_id)
                    continue
                try:
                    payload = parse_payload(fields.get("payload", ""))
                    if payload.stage is not stage:
                        raise ValueError(f"payload for {payload.stage.value} on {stage.value} stream")
                    decoded.append(
                        QueuedMessage(
                            message_id=message_id,
                            job_id=fields["job_id"],
                            attempt=int(fields.get("attempt", "1")),
                            payload=payload,
                            fields=dict(fields),
                        )
                    )
                except (ValidationError, ValueError, KeyError) as exc:
                    await self.send_to_dlq(stage, message_id, dict(fields), f"invalid payload: {exc}", 0)
                    await self.ack(stage, message_id)
        return decoded

    async def ack(self, stage: PipelineStage, message_id: str) -> None:
        """Acknowledge and drop a processed delivery."""
        await self._redis.xack(self.stream_key(stage), self.group_name(stage), message_id)
        await self._redis.xdel(self.stream_key(stage), message_id)

    # ── Dead letters ────────────────────────────────────────────────────

    async def send_to_dlq(
        self,
        stage: PipelineStage,
        message_id: str,
        data: dict[str, str],
        error: str,
        attempts: int,
    ) -> str:
        """Move a delivery that exhausted its attempts to the stage's DLQ."""
        dlq_data: dict[str, str] = {
            **data,
            "_dlq_original_id": message_id,
            "_dlq_error": error,
            "_dlq_attempts": str(attempts),
            "_dlq_timestamp": _now().isoformat(),
        }
        dlq_message_id = await self._redis.xadd(self.dlq_key(stage), dlq_data)
        logger.warning(
            "jobs.dead_lettered",
            stage=stage.value,
            original_id=message_id,
            error=error,
            attempts=attempts,
        )
        return dlq_message_id

    async def list_dead_letters(
        self, stage: PipelineStage, count: int = 50
    ) -> list[tuple[str, dict[str, Any]]]:
        return await self._redis.xrange(self.dlq_key(stage), count=count)

    async def replay_dead_letter(self, stage: PipelineStage, dlq_message_id: str) -> PipelineJob:
        """Re-enqueue a dead-lettered payload as a fresh unit.

        Raises:
            ValueError: If the DLQ message ID is not found.
            DuplicateJobError: If the meeting already has a unit for the stage.
        """
        messages = await self._redis.xrange(
            self.dlq_key(stage), min=dlq_message_id, max=dlq_message_id, count=1,
        )
        if not messages:
            raise ValueError(f"DLQ message '{dlq_message_id}' not found in {self.dlq_key(stage)}")

        _msg_id, data = messages[0]
        job = await self.enqueue(parse_payload(data["payload"]))
        await self._redis.xdel(self.dlq_key(stage), dlq_message_id)
        logger.info("jobs.replayed", stage=stage.value, dlq_message_id=dlq_message_id, job_id=job.id)
        return job
