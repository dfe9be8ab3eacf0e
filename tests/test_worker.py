"""Tests for StageWorker attempt handling.

Covers:
- Successful attempts complete the unit and ack the delivery
- Retryable failures back off 5s then 10s and re-publish the same unit
- The third failure dead-letters the job and calls on_exhausted once
- Non-retryable failures skip straight to the dead letter
- Cancellation and lost leases end quietly without a dead letter
- Deliveries for released units are dropped without running
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.scriber.meetings.schemas import JobState, PipelineStage
from src.scriber.pipeline.errors import (
    JobCancelledError,
    LeaseLostError,
    PermanentProviderError,
    TransientProviderError,
)
from src.scriber.pipeline.jobs import TranscriptionPayload
from src.scriber.pipeline.worker import StageRetryPolicy, StageWorker

from tests.doubles import InMemoryJobQueue


class RecordingSleep:
    def __init__(self, on_sleep=None) -> None:
        self.delays: list[float] = []
        self._on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._on_sleep is not None:
            self._on_sleep()


def _worker(queue, handler, *, sleep=None, on_exhausted=None, on_retry=None) -> StageWorker:
    return StageWorker(
        queue,
        PipelineStage.TRANSCRIPTION,
        handler,
        on_exhausted or AsyncMock(),
        on_retry=on_retry,
        sleep=sleep or RecordingSleep(),
    )


async def _enqueue(queue: InMemoryJobQueue):
    return await queue.enqueue(TranscriptionPayload(meeting_id="m1", user_id="u1"))


class TestStageRetryPolicy:
    def test_exponential_delays(self):
        policy = StageRetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]


class TestProcess:
    async def test_success_completes_and_acks(self, queue):
        job = await _enqueue(queue)
        handler = AsyncMock()
        worker = _worker(queue, handler)

        await worker.process(queue.message_for(job))

        handler.assert_awaited_once()
        assert queue.jobs[job.id].state is JobState.COMPLETED
        assert job.message_id in queue.acked
        assert await queue.get_unit(PipelineStage.TRANSCRIPTION, "m1") is None

    async def test_retryable_failure_requeues_after_backoff(self, queue):
        job = await _enqueue(queue)
        sleep = RecordingSleep()
        on_retry = AsyncMock()
        worker = _worker(
            queue, AsyncMock(side_effect=TransientProviderError("503")), sleep=sleep, on_retry=on_retry
        )

        await worker.process(queue.message_for(job))

        assert sleep.delays == [5.0]
        retried = queue.jobs[job.id]
        assert retried.state is JobState.WAITING
        assert retried.attempt_count == 2
        assert retried.message_id != job.message_id
        assert on_retry.await_args.args[3] == 5.0
        assert queue.dead_letters == []

    async def test_three_failures_dead_letter_once(self, queue):
        job = await _enqueue(queue)
        sleep = RecordingSleep()
        on_exhausted = AsyncMock()
        worker = _worker(
            queue,
            AsyncMock(side_effect=RuntimeError("flaky")),
            sleep=sleep,
            on_exhausted=on_exhausted,
        )

        for _ in range(3):
            await worker.process(queue.message_for(queue.jobs[job.id]))

        assert sleep.delays == [5.0, 10.0]
        assert queue.jobs[job.id].state is JobState.FAILED
        assert queue.jobs[job.id].failure_reason == "flaky"
        assert len(queue.dead_letters) == 1
        assert queue.dead_letters[0]["attempts"] == 3
        on_exhausted.assert_awaited_once()
        failed_job, _, exc = on_exhausted.await_args.args
        assert failed_job.attempt_count == 3
        assert isinstance(exc, RuntimeError)

    async def test_non_retryable_dead_letters_immediately(self, queue):
        job = await _enqueue(queue)
        sleep = RecordingSleep()
        on_exhausted = AsyncMock()
        worker = _worker(
            queue,
            AsyncMock(side_effect=PermanentProviderError("bad request")),
            sleep=sleep,
            on_exhausted=on_exhausted,
        )

        await worker.process(queue.message_for(job))

        assert sleep.delays == []
        assert len(queue.dead_letters) == 1
        on_exhausted.assert_awaited_once()

    @pytest.mark.parametrize("exc", [JobCancelledError("stop"), LeaseLostError("superseded")])
    async def test_cancel_and_lease_loss_end_quietly(self, queue, exc):
        job = await _enqueue(queue)
        on_exhausted = AsyncMock()
        worker = _worker(queue, AsyncMock(side_effect=exc), on_exhausted=on_exhausted)

        await worker.process(queue.message_for(job))

        assert queue.jobs[job.id].state is JobState.FAILED
        assert queue.dead_letters == []
        on_exhausted.assert_not_awaited()

    async def test_cancel_during_backoff_stops_retry(self, queue):
        job = await _enqueue(queue)
        sleep = RecordingSleep(on_sleep=lambda: queue.cancelled.add("m1"))
        worker = _worker(queue, AsyncMock(side_effect=RuntimeError("flaky")), sleep=sleep)

        await worker.process(queue.message_for(job))

        record = queue.jobs[job.id]
        assert record.state is JobState.FAILED
        assert record.failure_reason == "Cancelled by user"
        assert record.attempt_count == 1

    async def test_released_unit_delivery_is_dropped(self, queue):
        job = await _enqueue(queue)
        message = queue.message_for(job)
        await queue.finish(job, JobState.CANCELLED, "Cancelled by user")
        handler = AsyncMock()

        await _worker(queue, handler).process(message)

        handler.assert_not_awaited()
        assert message.message_id in queue.acked

    async def test_final_state_written_by_cancel_is_kept(self, queue):
        job = await _enqueue(queue)

        async def cancelled_mid_run(active_job, payload):
            await queue.finish(active_job, JobState.FAILED, "Cancelled by user")

        await _worker(queue, cancelled_mid_run).process(queue.message_for(job))

        assert queue.jobs[job.id].state is JobState.FAILED
        assert queue.jobs[job.id].failure_reason == "Cancelled by user"

    async def test_failing_exhausted_callback_is_contained(self, queue):
        job = await _enqueue(queue)
        worker = _worker(
            queue,
            AsyncMock(side_effect=PermanentProviderError("bad")),
            on_exhausted=AsyncMock(side_effect=RuntimeError("callback broke")),
        )

        await worker.process(queue.message_for(job))

        assert queue.jobs[job.id].state is JobState.FAILED
