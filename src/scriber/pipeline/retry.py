"""Provider error classification and jittered exponential backoff.

classify() decides whether a provider failure is worth retrying by
pattern-matching the error text (and HTTP status, when the exception carries
one). Non-retryable patterns are checked first and anything unmatched is
treated as non-retryable, so the pipeline fails fast on unknown errors
instead of looping.

retry_provider_call() runs one provider operation under tenacity with the
BackoffPolicy wait. Retryable errors are retried up to ``max_retries`` times
after the first call; the original exception is re-raised once the budget is
spent. Non-retryable errors propagate on the first failure without sleeping.
"""

from __future__ import annotations

import asyncio
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from src.scriber.core.monitoring import provider_retries_total
from src.scriber.pipeline.errors import PipelineError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


NON_RETRYABLE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"invalid api key",
        r"authenticat",
        r"unauthori[sz]ed",
        r"forbidden",
        r"permission",
        r"not found",
        r"invalid request",
        r"malformed",
        r"\b400\b",
        r"\b401\b",
        r"\b403\b",
        r"\b404\b",
    )
)

RETRYABLE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rate.?limit",
        r"quota",
        r"resource.?exhausted",
        r"\b429\b",
        r"\b503\b",
        r"service unavailable",
        r"temporarily unavailable",
        r"overloaded",
        r"timed? ?out",
        r"deadline exceeded",
        r"connection reset",
        r"econnreset",
        r"etimedout",
        r"enotfound",
        r"socket hang up",
        r"network error",
    )
)

RETRYABLE_STATUS_CODES = frozenset({429, 503})
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404})


def classify(error: BaseException | str) -> ErrorKind:
    """Classify a provider error as retryable or non-retryable.

    Accepts either an exception or its message. Pipeline errors answer with
    their own ``retryable`` flag; builtin timeout and connection-reset errors
    are retryable regardless of their message.
    """
    if isinstance(error, PipelineError):
        return ErrorKind.RETRYABLE if error.retryable else ErrorKind.NON_RETRYABLE
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionResetError)):
        return ErrorKind.RETRYABLE

    if isinstance(error, BaseException):
        status_code = getattr(error, "status_code", None)
        if status_code in NON_RETRYABLE_STATUS_CODES:
            return ErrorKind.NON_RETRYABLE
        if status_code in RETRYABLE_STATUS_CODES:
            return ErrorKind.RETRYABLE
        message = f"{type(error).__name__}: {error}"
    else:
        message = error

    if any(p.search(message) for p in NON_RETRYABLE_PATTERNS):
        return ErrorKind.NON_RETRYABLE
    if any(p.search(message) for p in RETRYABLE_PATTERNS):
        return ErrorKind.RETRYABLE
    return ErrorKind.NON_RETRYABLE


def is_retryable(error: BaseException | str) -> bool:
    return classify(error) is ErrorKind.RETRYABLE


# ── Backoff ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with multiplicative jitter.

    delay(attempt) = min(max_delay, initial_delay * multiplier ** attempt) * jitter,
    jitter drawn uniformly from [jitter_min, jitter_max]. ``attempt`` is the
    zero-based index of the retry about to happen.
    """

    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_retries: int = 3
    jitter_min: float = 0.8
    jitter_max: float = 1.2

    def compute_delay(
        self,
        attempt: int,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> float:
        base = min(self.max_delay, self.initial_delay * self.multiplier**attempt)
        return base * rand(self.jitter_min, self.jitter_max)


class BackoffWait(wait_base):
    """tenacity wait strategy backed by a BackoffPolicy."""

    def __init__(self, policy: BackoffPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.policy.compute_delay(retry_state.attempt_number - 1)


# ── Retry wrapper ────────────────────────────────────────────────────────────

RetryHook = Callable[[int, BaseException, float], Awaitable[None]]


async def retry_provider_call(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    policy: BackoffPolicy | None = None,
    on_retry: RetryHook | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with classified retries.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        operation_name: Label used in logs and the retry counter.
        policy: Backoff configuration (defaults: 1s, x2, 30s cap, 3 retries).
        on_retry: Awaited before each backoff sleep with
            (retry_number, error, delay_seconds).
        sleep: Injected sleep coroutine, replaced in tests.

    Raises:
        The last exception raised by ``operation``.
    """
    policy = policy or BackoffPolicy()
    pending: list[tuple[int, BaseException | None]] = []

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        provider_retries_total.labels(operation=operation_name).inc()
        logger.warning(
            "provider.retrying",
            operation=operation_name,
            attempt=retry_state.attempt_number,
            max_retries=policy.max_retries,
            delay=round(retry_state.upcoming_sleep, 2),
            error=str(error),
        )
        pending.append((retry_state.attempt_number, error))

    async def _sleep(seconds: float) -> None:
        if on_retry is not None and pending:
            retry_number, error = pending.pop()
            await on_retry(retry_number, error, seconds)
        await sleep(seconds)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=BackoffWait(policy),
        retry=retry_if_exception(is_retryable),
        before_sleep=_before_sleep,
        sleep=_sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable: tenacity re-raises on exhaustion")  # pragma: no cover
