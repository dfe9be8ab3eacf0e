"""Stage worker pool with attempt budget and dead lettering.

One StageWorker consumes one stage's stream. Up to ``concurrency`` jobs run
at once, each holding a semaphore slot for its whole life, including any
backoff sleep, so a job waiting to retry never blocks other jobs in the pool.

A failed attempt is retried with exponential backoff (5s, 10s, ...) by
re-publishing it as the next attempt of the same unit. Errors flagged
non-retryable, and the last allowed attempt, go to the dead-letter stream
and the exhausted-stage callback runs. Cancellation and lost leases end the
job quietly: the user action that caused them already settled the meeting.
"""

from __future__ import annotations

import asyncio
import os
import socket
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog
from redis.exceptions import RedisError

from src.scriber.core.monitoring import active_jobs, stage_duration_seconds, stage_jobs_total
from src.scriber.meetings.schemas import JobState, PipelineJob, PipelineStage
from src.scriber.pipeline.errors import JobCancelledError, LeaseLostError
from src.scriber.pipeline.jobs import QueuedMessage, RedisJobQueue, StagePayload

logger = structlog.get_logger(__name__)

StageHandler = Callable[[PipelineJob, StagePayload], Awaitable[None]]
FailureHandler = Callable[[PipelineJob, StagePayload, BaseException], Awaitable[None]]
RetryHandler = Callable[[PipelineJob, StagePayload, BaseException, float], Awaitable[None]]


@dataclass(frozen=True)
class StageRetryPolicy:
    """Attempts per stage and exponential delay between them."""

    max_attempts: int = 3
    base_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        return self.base_delay * 2 ** (attempt - 1)


def default_consumer_name(stage: PipelineStage) -> str:
    return f"{stage.value}-{socket.gethostname()}-{os.getpid()}"


class StageWorker:
    """Bounded-concurrency consumer for one pipeline stage.

    Args:
        queue: Job queue to consume from.
        stage: Stage this pool serves.
        handler: Runs one job attempt; raises on failure.
        on_exhausted: Called once a job has no attempts left.
        on_retry: Called before the backoff sleep of a retried attempt.
        concurrency: Maximum jobs in flight.
    """

    def __init__(
        self,
        queue: RedisJobQueue,
        stage: PipelineStage,
        handler: StageHandler,
        on_exhausted: FailureHandler,
        *,
        on_retry: RetryHandler | None = None,
        concurrency: int = 2,
        retry_policy: StageRetryPolicy | None = None,
        consumer_name: str | None = None,
        block_ms: int = 5000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._queue = queue
        self.stage = stage
        self._handler = handler
        self._on_exhausted = on_exhausted
        self._on_retry = on_retry
        self._policy = retry_policy or StageRetryPolicy()
        self.consumer_name = consumer_name or default_consumer_name(stage)
        self._block_ms = block_ms
        self._sleep = sleep
        self._slots = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self._running = False

    # ── Loop ────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Read and dispatch deliveries until stop() is called."""
        await self._queue.ensure_group(self.stage)
        self._running = True
        logger.info("worker.started", stage=self.stage.value, consumer=self.consumer_name)

        while self._running:
            await self._slots.acquire()
            try:
                messages = await self._queue.read(
                    self.stage, self.consumer_name, count=1, block_ms=self._block_ms,
                )
            except RedisError as exc:
                self._slots.release()
                logger.warning("worker.read_failed", stage=self.stage.value, error=str(exc))
                await self._sleep(1.0)
                continue

            if not messages:
                self._slots.release()
                continue
            for message in messages:
                self._spawn(message)

        logger.info("worker.stopped", stage=self.stage.value, consumer=self.consumer_name)

    def _spawn(self, message: QueuedMessage, *, reclaimed: bool = False) -> None:
        task = asyncio.create_task(self._run_in_slot(message, reclaimed))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_in_slot(self, message: QueuedMessage, reclaimed: bool) -> None:
        try:
            await self.process(message, reclaimed=reclaimed)
        finally:
            self._slots.release()

    async def reclaim_abandoned(self, idle_time_ms: int = 15 * 60 * 1000) -> int:
        """Re-run deliveries whose consumer died. Returns how many were taken."""
        messages = await self._queue.reclaim_abandoned(
            self.stage, self.consumer_name, idle_time_ms=idle_time_ms,
        )
        for message in messages:
            await self._slots.acquire()
            self._spawn(message, reclaimed=True)
        if messages:
            logger.info("worker.reclaimed", stage=self.stage.value, count=len(messages))
        return len(messages)

    def stop(self) -> None:
        """Signal the loop to stop after the current read."""
        self._running = False

    async def drain(self) -> None:
        """Wait for in-flight jobs to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── One delivery ────────────────────────────────────────────────────

    async def process(self, message: QueuedMessage, *, reclaimed: bool = False) -> None:
        """Run one delivery to completion, retry, or dead letter."""
        stage = self.stage.value
        job = await self._queue.mark_active(message.job_id, message.attempt, reclaimed=reclaimed)
        if job is None:
            logger.info("worker.delivery_dropped", stage=stage, job_id=message.job_id)
            await self._queue.ack(self.stage, message.message_id)
            return

        log = logger.bind(
            stage=stage,
            job_id=job.id,
            meeting_id=job.meeting_id,
            attempt=job.attempt_count,
        )
        active_jobs.labels(stage=stage).inc()
        started = time.perf_counter()
        try:
            await self._handler(job, message.payload)
        except (JobCancelledError, LeaseLostError) as exc:
            outcome = "cancelled" if isinstance(exc, JobCancelledError) else "superseded"
            log.info("worker.job_stopped", outcome=outcome, reason=str(exc))
            await self._settle(job, JobState.FAILED, str(exc))
            await self._queue.ack(self.stage, message.message_id)
        except Exception as exc:
            outcome = await self._handle_failure(job, message, exc)
        else:
            outcome = "completed"
            await self._settle(job, JobState.COMPLETED, None)
            await self._queue.ack(self.stage, message.message_id)
            log.info("worker.job_completed")
        finally:
            active_jobs.labels(stage=stage).dec()
            stage_duration_seconds.labels(stage=stage).observe(time.perf_counter() - started)
        stage_jobs_total.labels(stage=stage, outcome=outcome).inc()

    async def _settle(self, job: PipelineJob, state: JobState, reason: str | None) -> None:
        # A cancel may already have written the final state for this job
        current = await self._queue.get_job(job.id)
        if current is not None and current.state is not JobState.ACTIVE:
            return
        await self._queue.finish(job, state, reason)

    async def _handle_failure(
        self,
        job: PipelineJob,
        message: QueuedMessage,
        exc: Exception,
    ) -> str:
        retryable = getattr(exc, "retryable", True)
        can_retry = retryable and job.attempt_count < self._policy.max_attempts
        log = logger.bind(stage=self.stage.value, job_id=job.id, meeting_id=job.meeting_id)
        log.warning(
            "worker.attempt_failed",
            attempt=job.attempt_count,
            max_attempts=self._policy.max_attempts,
            retryable=retryable,
            error=str(exc),
            exc_info=True,
        )

        if can_retry:
            delay = self._policy.delay_for(job.attempt_count)
            if self._on_retry is not None:
                await self._notify(self._on_retry(job, message.payload, exc, delay))
            await self._sleep(delay)
            if await self._queue.is_cancel_requested(job.meeting_id):
                await self._settle(job, JobState.FAILED, "Cancelled by user")
                await self._queue.ack(self.stage, message.message_id)
                return "cancelled"
            await self._queue.requeue(job, message.payload)
            await self._queue.ack(self.stage, message.message_id)
            log.info("worker.job_retried", next_attempt=job.attempt_count + 1, delay=delay)
            return "retried"

        await self._queue.send_to_dlq(
            self.stage, message.message_id, message.fields, str(exc), job.attempt_count,
        )
        await self._settle(job, JobState.FAILED, str(exc))
        await self._queue.ack(self.stage, message.message_id)
        await self._notify(self._on_exhausted(job, message.payload, exc))
        return "failed"

    async def _notify(self, callback: Awaitable[None]) -> None:
        try:
            await callback
        except Exception:
            logger.error("worker.callback_failed", stage=self.stage.value, exc_info=True)
