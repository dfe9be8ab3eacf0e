"""Quota enforcement and usage accounting bracketing each pipeline job.

Counters live in Redis hashes keyed by user and period:

- ``scriber:usage:<user>:week:<monday>``  fields ``uploads``, ``minutes``
- ``scriber:usage:<user>:month:<yyyy-mm>`` field ``minutes``

Weeks start on Monday (UTC). enforce() runs before any side effect,
commit() once an upload is accepted, and reconcile() when the pipeline fails.
Reconciliation never refunds more than is on the books, so calling it twice
for the same job leaves counters at zero rather than negative.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import redis.asyncio as aioredis
import structlog

from src.scriber.core.redis import make_key
from src.scriber.pipeline.errors import QuotaExceededError

logger = structlog.get_logger(__name__)

WEEK_KEY_TTL_SECONDS = 14 * 24 * 3600
MONTH_KEY_TTL_SECONDS = 40 * 24 * 3600


def billable_minutes(duration_seconds: float) -> int:
    return math.ceil(max(0.0, duration_seconds) / 60)


def week_start(moment: datetime) -> datetime:
    """Monday 00:00 UTC of the week containing ``moment``."""
    moment = moment.astimezone(timezone.utc)
    monday = moment - timedelta(days=moment.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


# ── Plans ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlanLimits:
    max_uploads_per_week: int
    max_minutes_per_upload: int
    monthly_minutes: int | None = None


FREE_PLAN = PlanLimits(max_uploads_per_week=1, max_minutes_per_upload=5, monthly_minutes=60)


class PlanProvider(Protocol):
    async def get_limits(self, user_id: str) -> PlanLimits: ...

    async def is_privileged(self, user_id: str) -> bool: ...


class StaticPlanProvider:
    """Plan lookup backed by configuration; plan management lives elsewhere."""

    def __init__(
        self,
        default: PlanLimits = FREE_PLAN,
        overrides: dict[str, PlanLimits] | None = None,
        privileged: set[str] | None = None,
    ) -> None:
        self._default = default
        self._overrides = overrides or {}
        self._privileged = privileged or set()

    async def get_limits(self, user_id: str) -> PlanLimits:
        return self._overrides.get(user_id, self._default)

    async def is_privileged(self, user_id: str) -> bool:
        return user_id in self._privileged


# ── Counter store ────────────────────────────────────────────────────────────


class UsageStore(Protocol):
    async def read(self, key: str) -> dict[str, int]: ...

    async def add(self, key: str, deltas: dict[str, int], ttl_seconds: int) -> None: ...


class RedisUsageStore:
    """Usage counters as Redis hashes updated with HINCRBY."""

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client

    async def read(self, key: str) -> dict[str, int]:
        raw = await self._redis.hgetall(key)
        return {field: int(value) for field, value in raw.items()}

    async def add(self, key: str, deltas: dict[str, int], ttl_seconds: int) -> None:
        pipe = self._redis.pipeline(transaction=True)
        for field, delta in deltas.items():
            if delta:
                pipe.hincrby(key, field, delta)
        pipe.expire(key, ttl_seconds)
        await pipe.execute()


# ── Ledger ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageSnapshot:
    week_start: datetime
    weekly_uploads: int
    weekly_minutes: int
    monthly_minutes: int


class UsageLedger:
    """Enforces plan limits and keeps weekly/monthly usage in step with job outcomes."""

    def __init__(
        self,
        store: UsageStore,
        plans: PlanProvider,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._plans = plans
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _keys(self, user_id: str) -> tuple[str, str, datetime]:
        now = self._clock()
        monday = week_start(now)
        week_key = make_key("usage", user_id, "week", monday.date().isoformat())
        month_key = make_key("usage", user_id, "month", now.astimezone(timezone.utc).strftime("%Y-%m"))
        return week_key, month_key, monday

    async def get_usage(self, user_id: str) -> UsageSnapshot:
        week_key, month_key, monday = self._keys(user_id)
        week = await self._store.read(week_key)
        month = await self._store.read(month_key)
        return UsageSnapshot(
            week_start=monday,
            weekly_uploads=week.get("uploads", 0),
            weekly_minutes=week.get("minutes", 0),
            monthly_minutes=month.get("minutes", 0),
        )

    async def enforce(self, user_id: str, duration_seconds: float) -> None:
        """Raise QuotaExceededError if this upload would break the user's plan.

        Reads only; nothing is written whether the check passes or fails.
        """
        if await self._plans.is_privileged(user_id):
            return

        limits = await self._plans.get_limits(user_id)
        usage = await self.get_usage(user_id)
        minutes = billable_minutes(duration_seconds)

        if usage.weekly_uploads >= limits.max_uploads_per_week:
            raise QuotaExceededError(
                f"Weekly upload limit reached ({limits.max_uploads_per_week} per week)",
                limit="uploads_per_week",
                used=usage.weekly_uploads,
            )
        if minutes > limits.max_minutes_per_upload:
            raise QuotaExceededError(
                f"Recording is {minutes} minutes; plan allows "
                f"{limits.max_minutes_per_upload} minutes per upload",
                limit="minutes_per_upload",
                requested=minutes,
            )
        if limits.monthly_minutes is not None and usage.monthly_minutes + minutes > limits.monthly_minutes:
            raise QuotaExceededError(
                f"Monthly transcription minutes exhausted ({limits.monthly_minutes} per month)",
                limit="monthly_minutes",
                used=usage.monthly_minutes,
                requested=minutes,
            )

    async def commit(self, user_id: str, duration_seconds: float) -> None:
        """Charge one upload and its minutes once the upload enters the pipeline."""
        if await self._plans.is_privileged(user_id):
            return
        week_key, month_key, _ = self._keys(user_id)
        minutes = billable_minutes(duration_seconds)
        await self._store.add(week_key, {"uploads": 1, "minutes": minutes}, WEEK_KEY_TTL_SECONDS)
        await self._store.add(month_key, {"minutes": minutes}, MONTH_KEY_TTL_SECONDS)
        logger.info("usage.committed", user_id=user_id, minutes=minutes)

    async def reconcile(self, user_id: str, duration_seconds: float) -> None:
        """Refund a failed job, never below zero."""
        if await self._plans.is_privileged(user_id):
            return
        week_key, month_key, _ = self._keys(user_id)
        minutes = billable_minutes(duration_seconds)

        week = await self._store.read(week_key)
        month = await self._store.read(month_key)
        refund_uploads = min(1, week.get("uploads", 0))
        refund_week_minutes = min(minutes, week.get("minutes", 0))
        refund_month_minutes = min(minutes, month.get("minutes", 0))

        if refund_uploads or refund_week_minutes:
            await self._store.add(
                week_key,
                {"uploads": -refund_uploads, "minutes": -refund_week_minutes},
                WEEK_KEY_TTL_SECONDS,
            )
        if refund_month_minutes:
            await self._store.add(month_key, {"minutes": -refund_month_minutes}, MONTH_KEY_TTL_SECONDS)
        logger.info(
            "usage.reconciled",
            user_id=user_id,
            uploads=refund_uploads,
            minutes=refund_week_minutes,
        )
