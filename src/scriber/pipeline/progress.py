"""Best-effort progress events over Redis pub/sub.

Events go to ``scriber:progress:<user_id>`` and are dropped if nobody is
subscribed. Percentages never go backwards within one (meeting, step) pair in
this process; a ``queued`` event starts the step over.

The provider reports no progress of its own, so ProgressEstimator publishes
timer-driven estimates while a long call is in flight. Those events carry
``estimated=True`` and never reach the next real checkpoint.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError

from src.scriber.core.redis import make_key

logger = structlog.get_logger(__name__)


class ProgressStep(str, Enum):
    UPLOAD = "upload"
    TRANSCRIPTION = "transcription"
    ENHANCEMENT = "enhancement"
    REDACTION = "redaction"
    MINUTES = "minutes"
    PIPELINE = "pipeline"


class ProgressStatus(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    GENERATING = "generating"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProgressEvent(BaseModel):
    """Wire shape: ``{step, status, progress?, meetingId, error?}`` plus metadata."""

    model_config = ConfigDict(populate_by_name=True)

    step: ProgressStep
    status: ProgressStatus
    meeting_id: str = Field(alias="meetingId")
    progress: int | None = None
    error: str | None = None
    estimated: bool = False
    detail: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ProgressBroadcaster:
    """Fire-and-forget publisher with per-step monotonic percentages."""

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client
        self._high_water: dict[tuple[str, ProgressStep], int] = {}

    @staticmethod
    def channel(user_id: str) -> str:
        return make_key("progress", user_id)

    def release(self, meeting_id: str, step: ProgressStep) -> None:
        """Drop the high-water mark of a step that ended without a final event."""
        self._high_water.pop((meeting_id, step), None)

    def _clamp(
        self,
        meeting_id: str,
        step: ProgressStep,
        status: ProgressStatus,
        progress: int | None,
    ) -> int | None:
        key = (meeting_id, step)
        if status is ProgressStatus.QUEUED:
            self._high_water[key] = progress or 0
            return progress
        if status is ProgressStatus.COMPLETED:
            self._high_water.pop(key, None)
            return 100 if progress is None else max(progress, 0)
        if status in (ProgressStatus.FAILED, ProgressStatus.CANCELLED):
            self._high_water.pop(key, None)
            return progress
        if progress is None:
            return None
        clamped = max(progress, self._high_water.get(key, 0))
        self._high_water[key] = clamped
        return clamped

    async def publish(
        self,
        user_id: str,
        meeting_id: str,
        step: ProgressStep,
        status: ProgressStatus,
        progress: int | None = None,
        error: str | None = None,
        *,
        estimated: bool = False,
        detail: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            step=step,
            status=status,
            meeting_id=meeting_id,
            progress=self._clamp(meeting_id, step, status, progress),
            error=error,
            estimated=estimated,
            detail=detail,
        )
        try:
            await self._redis.publish(self.channel(user_id), event.to_wire())
        except (RedisError, OSError) as exc:
            logger.warning(
                "progress.publish_failed",
                meeting_id=meeting_id,
                step=step.value,
                status=status.value,
                error=str(exc),
            )
        return event

    async def subscribe(
        self, user_id: str, meeting_id: str | None = None
    ) -> AsyncIterator[ProgressEvent]:
        """Yield live events for a user, optionally filtered to one meeting."""
        channel = self.channel(user_id)
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                event = ProgressEvent.model_validate_json(message["data"])
                if meeting_id and event.meeting_id != meeting_id:
                    continue
                yield event
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


class ProgressEstimator:
    """Publishes heuristic progress while one long provider call runs.

    Usage:
        async with ProgressEstimator(broadcaster, user_id, meeting_id, step, start=10, ceiling=55):
            result = await provider_call()
    """

    def __init__(
        self,
        broadcaster: ProgressBroadcaster,
        user_id: str,
        meeting_id: str,
        step: ProgressStep,
        *,
        start: int,
        ceiling: int = 90,
        increment: int = 15,
        interval: float = 3.0,
    ) -> None:
        self._broadcaster = broadcaster
        self._user_id = user_id
        self._meeting_id = meeting_id
        self._step = step
        self._start = start
        self._ceiling = min(ceiling, 90)
        self._increment = increment
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    async def _tick(self) -> None:
        value = self._start
        while value < self._ceiling:
            await asyncio.sleep(self._interval)
            value = min(self._ceiling, value + self._increment)
            await self._broadcaster.publish(
                self._user_id,
                self._meeting_id,
                self._step,
                ProgressStatus.PROCESSING,
                value,
                estimated=True,
            )

    async def __aenter__(self) -> ProgressEstimator:
        self._task = asyncio.create_task(self._tick())
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
