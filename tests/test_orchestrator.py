"""Tests for PipelineOrchestrator intake, stage flow, and user actions.

Covers:
- submit_upload: quota check before side effects, usage commit, first job
- Stage flow: transcription -> enhancement -> (redaction) -> minutes,
  skip_downstream, cancelled meetings, lease fencing
- handle_stage_failure: FAILED status, failed event, one usage refund per
  meeting, push
- retry: the three resume branches, missing audio, duplicate units
- cancel: waiting vs running units, meetings parked between stages,
  ownership, nothing to cancel
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.scriber.meetings.postprocess import EnhancementSummary, RedactionSummary
from src.scriber.meetings.schemas import (
    JobState,
    MeetingMinutes,
    MeetingStatus,
    MinutesTemplate,
    PipelineStage,
    Recording,
    SpeakerDraft,
)
from src.scriber.pipeline.errors import (
    DuplicateJobError,
    FileMissingError,
    InvalidTransitionError,
    JobCancelledError,
    JobOwnershipError,
    LeaseLostError,
    MeetingNotFoundError,
    NoActiveJobError,
    PermanentProviderError,
    QuotaExceededError,
)
from src.scriber.pipeline.normalizer import DraftSegment, NormalizationReport
from src.scriber.pipeline.orchestrator import RetryAction, billed_duration
from src.scriber.pipeline.progress import ProgressStatus, ProgressStep
from src.scriber.pipeline.transcriber import TranscriptionOutcome

from tests.doubles import make_meeting, make_segments

USER = "user-1"
FILE_REF = "recordings/user-1/a.mp3"


def _outcome(*texts: str) -> TranscriptionOutcome:
    segments = [
        DraftSegment(start_time=i * 5.0, end_time=i * 5.0 + 4, text=t, speaker_key="speaker_1")
        for i, t in enumerate(texts)
    ]
    return TranscriptionOutcome(
        speakers=[SpeakerDraft(key="speaker_1", display_name="Speaker 1")],
        report=NormalizationReport(segments=segments),
        chunks_total=1,
    )


async def _submit(orchestrator, storage, duration: float = 600.0, **kwargs):
    storage.objects[FILE_REF] = b"audio"
    return await orchestrator.submit_upload(
        USER, "Weekly sync", Recording(file_ref=FILE_REF, duration_seconds=duration), **kwargs
    )


async def _run_queued(orchestrator, queue, stage: PipelineStage, meeting_id: str):
    job = await queue.get_unit(stage, meeting_id)
    active = await queue.mark_active(job.id, job.attempt_count)
    await orchestrator.run_stage(active, queue.payloads[job.id])
    await queue.finish(active, JobState.COMPLETED)
    return active


# ── Intake ───────────────────────────────────────────────────────────────────


class TestSubmitUpload:
    async def test_creates_meeting_charges_usage_and_queues_transcription(
        self, orchestrator, storage, queue, ledger, broadcaster
    ):
        submission = await _submit(orchestrator, storage)

        meeting_id = str(submission.meeting.id)
        assert submission.meeting.status is MeetingStatus.UPLOADED
        assert submission.job.stage is PipelineStage.TRANSCRIPTION
        assert await queue.get_unit(PipelineStage.TRANSCRIPTION, meeting_id) is not None
        usage = await ledger.get_usage(USER)
        assert (usage.weekly_uploads, usage.weekly_minutes) == (1, 10)
        assert broadcaster.statuses() == [("upload", "completed"), ("transcription", "queued")]

    async def test_quota_rejection_has_no_side_effects(
        self, orchestrator, storage, repo, queue, ledger
    ):
        for _ in range(10):
            await ledger.commit(USER, 60)

        with pytest.raises(QuotaExceededError):
            await _submit(orchestrator, storage)

        assert repo.meetings == {}
        assert queue.jobs == {}
        assert (await ledger.get_usage(USER)).weekly_uploads == 10

    async def test_unknown_duration_bills_five_minutes(self, orchestrator, storage, ledger):
        submission = await _submit(orchestrator, storage, duration=0)

        assert submission.meeting.duration_seconds == 0
        assert (await ledger.get_usage(USER)).weekly_minutes == 5
        assert billed_duration(0) == 300.0


# ── Stage flow ───────────────────────────────────────────────────────────────


class TestStageFlow:
    async def test_transcription_persists_and_advances(
        self, orchestrator, storage, repo, queue, stages, notifications, chunker
    ):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)
        stages["transcriber"].run.return_value = _outcome("Hello", "[inaudible]")

        job = await _run_queued(orchestrator, queue, PipelineStage.TRANSCRIPTION, meeting_id)

        meeting = repo.meetings[meeting_id]
        assert meeting.status is MeetingStatus.TRANSCRIPT_READY
        assert meeting.lease_token == job.id
        assert meeting.quality_score == 50
        assert meeting.last_processed_at is not None
        assert [s.text for s in repo.segments[meeting_id]] == ["Hello", "[inaudible]"]
        assert [s.display_name for s in repo.speakers[meeting_id]] == ["Speaker 1"]
        assert await queue.get_unit(PipelineStage.ENHANCEMENT, meeting_id) is not None
        assert notifications.pushes[0][1] == "Transcription complete"
        assert list(chunker.temp_root.iterdir()) == []

    async def test_skip_downstream_stops_at_transcript_ready(
        self, orchestrator, storage, repo, queue, stages
    ):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)
        job = submission.job
        payload = queue.payloads[job.id].model_copy(update={"skip_downstream": True})
        stages["transcriber"].run.return_value = _outcome("Hello")

        active = await queue.mark_active(job.id, 1)
        await orchestrator.run_stage(active, payload)

        assert repo.meetings[meeting_id].status is MeetingStatus.TRANSCRIPT_READY
        assert await queue.get_unit(PipelineStage.ENHANCEMENT, meeting_id) is None

    @pytest.mark.parametrize(
        "auto_redact, next_stage",
        [(False, PipelineStage.MINUTES), (True, PipelineStage.REDACTION)],
    )
    async def test_enhancement_routes_on_auto_redact(
        self, orchestrator, repo, queue, stages, auto_redact, next_stage
    ):
        meeting = await make_meeting(
            repo, status=MeetingStatus.TRANSCRIPT_READY, auto_redact=auto_redact
        )
        meeting_id = str(meeting.id)
        await orchestrator.enqueue(meeting_id, USER, PipelineStage.ENHANCEMENT)
        stages["enhancer"].apply.return_value = EnhancementSummary(corrections_applied=2)

        job = await _run_queued(orchestrator, queue, PipelineStage.ENHANCEMENT, meeting_id)

        stages["enhancer"].apply.assert_awaited_once_with(meeting_id, job.id)
        assert repo.meetings[meeting_id].status is MeetingStatus.PROCESSING_ENHANCEMENT
        assert await queue.get_unit(next_stage, meeting_id) is not None

    async def test_redaction_queues_minutes_with_template(self, orchestrator, repo, queue, stages):
        meeting = await make_meeting(
            repo,
            status=MeetingStatus.PROCESSING_ENHANCEMENT,
            auto_redact=True,
            template=MinutesTemplate.ACTION_ITEMS,
        )
        meeting_id = str(meeting.id)
        await orchestrator.enqueue(meeting_id, USER, PipelineStage.REDACTION)
        stages["redactor"].apply.return_value = RedactionSummary(items_redacted=3, types_found=["email"])

        await _run_queued(orchestrator, queue, PipelineStage.REDACTION, meeting_id)

        minutes_job = await queue.get_unit(PipelineStage.MINUTES, meeting_id)
        assert queue.payloads[minutes_job.id].template is MinutesTemplate.ACTION_ITEMS

    async def test_minutes_completes_pipeline(
        self, orchestrator, repo, queue, stages, notifications, broadcaster
    ):
        meeting = await make_meeting(repo, status=MeetingStatus.TRANSCRIPT_READY)
        meeting_id = str(meeting.id)
        repo.segments[meeting_id] = make_segments(meeting.id, "We ship Friday")
        stages["minutes"].generate.return_value = MeetingMinutes(
            meeting_id=meeting.id,
            content="# Minutes",
            generated_at=datetime.now(timezone.utc),
        )
        await orchestrator.enqueue(
            meeting_id, USER, PipelineStage.MINUTES, template=MinutesTemplate.DETAILED
        )

        await _run_queued(orchestrator, queue, PipelineStage.MINUTES, meeting_id)

        assert repo.meetings[meeting_id].status is MeetingStatus.COMPLETED
        assert repo.minutes[meeting_id].content == "# Minutes"
        assert stages["minutes"].generate.await_args.args[3] is MinutesTemplate.DETAILED
        assert notifications.emails[0][1] == "Minutes ready: Weekly sync"
        assert ("pipeline", "completed") in broadcaster.statuses()

    async def test_cancelled_meeting_is_not_processed(self, orchestrator, repo, queue, stages):
        meeting = await make_meeting(repo, status=MeetingStatus.CANCELLED)
        meeting_id = str(meeting.id)
        job = await orchestrator.enqueue(meeting_id, USER, PipelineStage.TRANSCRIPTION)

        with pytest.raises(JobCancelledError):
            await orchestrator.run_stage(job, queue.payloads[job.id])
        stages["transcriber"].run.assert_not_awaited()

    async def test_cancel_flag_stops_stage_start(self, orchestrator, storage, queue, stages):
        submission = await _submit(orchestrator, storage)
        await queue.request_cancel(str(submission.meeting.id))

        with pytest.raises(JobCancelledError):
            await orchestrator.run_stage(submission.job, queue.payloads[submission.job.id])

    async def test_out_of_order_stage_is_rejected(self, orchestrator, repo, queue):
        meeting = await make_meeting(repo)
        job = await orchestrator.enqueue(str(meeting.id), USER, PipelineStage.MINUTES)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_stage(job, queue.payloads[job.id])

    async def test_superseded_job_cannot_write(
        self, orchestrator, storage, repo, queue, stages, broadcaster
    ):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)

        async def user_retried_meanwhile(*args):
            await repo.update_status(meeting_id, MeetingStatus.UPLOADED, clear_lease=True)
            return _outcome("stale")

        stages["transcriber"].run.side_effect = user_retried_meanwhile

        with pytest.raises(LeaseLostError):
            await orchestrator.run_stage(submission.job, queue.payloads[submission.job.id])
        assert meeting_id not in repo.segments
        restarted = await broadcaster.publish(
            USER, meeting_id, ProgressStep.TRANSCRIPTION, ProgressStatus.PROCESSING, 1
        )
        assert restarted.progress == 1


# ── Failure & retry callbacks ────────────────────────────────────────────────


class TestStageFailure:
    async def test_failure_marks_failed_and_refunds(
        self, orchestrator, storage, repo, ledger, broadcaster, notifications
    ):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)

        await orchestrator.handle_stage_failure(
            submission.job, None, PermanentProviderError("unsupported codec")
        )

        meeting = repo.meetings[meeting_id]
        assert meeting.status is MeetingStatus.FAILED
        assert meeting.failure_reason == "unsupported codec"
        assert meeting.lease_token is None
        _, event = broadcaster.events[-1]
        assert event.status.value == "failed"
        assert event.detail == {"code": "PROVIDER_PERMANENT"}
        usage = await ledger.get_usage(USER)
        assert (usage.weekly_uploads, usage.weekly_minutes, usage.monthly_minutes) == (0, 0, 0)
        assert notifications.pushes[-1][1] == "Processing failed"

    async def test_repeated_failure_never_refunds_below_zero(
        self, orchestrator, storage, ledger
    ):
        submission = await _submit(orchestrator, storage)
        exc = PermanentProviderError("boom")

        await orchestrator.handle_stage_failure(submission.job, None, exc)
        await orchestrator.handle_stage_failure(submission.job, None, exc)

        usage = await ledger.get_usage(USER)
        assert (usage.weekly_uploads, usage.weekly_minutes) == (0, 0)

    async def test_failure_after_retry_keeps_other_uploads_charged(
        self, orchestrator, storage, repo, queue, ledger
    ):
        first = await _submit(orchestrator, storage)
        await _submit(orchestrator, storage)
        meeting_id = str(first.meeting.id)
        exc = PermanentProviderError("boom")

        await queue.finish(first.job, JobState.FAILED, "boom")
        await orchestrator.handle_stage_failure(first.job, None, exc)
        outcome = await orchestrator.retry(meeting_id, USER)
        await queue.finish(outcome.job, JobState.FAILED, "boom")
        await orchestrator.handle_stage_failure(outcome.job, None, exc)

        assert outcome.action is RetryAction.TRANSCRIPTION
        assert repo.meetings[meeting_id].status is MeetingStatus.FAILED
        assert repo.meetings[meeting_id].usage_refunded is True
        usage = await ledger.get_usage(USER)
        assert (usage.weekly_uploads, usage.weekly_minutes, usage.monthly_minutes) == (1, 10, 10)

    async def test_failure_after_cancel_is_ignored(
        self, orchestrator, storage, repo, ledger
    ):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)
        await repo.update_status(meeting_id, MeetingStatus.CANCELLED)

        await orchestrator.handle_stage_failure(submission.job, None, RuntimeError("late"))

        assert repo.meetings[meeting_id].status is MeetingStatus.CANCELLED
        assert (await ledger.get_usage(USER)).weekly_uploads == 1

    async def test_retry_callback_publishes_retrying(self, orchestrator, storage, broadcaster):
        submission = await _submit(orchestrator, storage)

        await orchestrator.handle_stage_retry(submission.job, None, RuntimeError("503"), 5.0)

        _, event = broadcaster.events[-1]
        assert event.status.value == "retrying"
        assert event.detail == {"attempt": 1, "next_attempt_in": 5.0}


# ── User actions ─────────────────────────────────────────────────────────────


class TestRetry:
    async def test_restarts_transcription_when_no_transcript(
        self, orchestrator, repo, queue, storage
    ):
        meeting = await make_meeting(repo, status=MeetingStatus.FAILED, file_ref=FILE_REF)
        storage.objects[FILE_REF] = b"audio"
        await queue.request_cancel(str(meeting.id))

        outcome = await orchestrator.retry(str(meeting.id), USER)

        assert outcome.action is RetryAction.TRANSCRIPTION
        assert outcome.job.stage is PipelineStage.TRANSCRIPTION
        assert repo.meetings[str(meeting.id)].status is MeetingStatus.UPLOADED
        assert not await queue.is_cancel_requested(str(meeting.id))

    async def test_missing_audio_requires_reupload(self, orchestrator, repo, queue):
        meeting = await make_meeting(repo, status=MeetingStatus.FAILED, file_ref=FILE_REF)

        with pytest.raises(FileMissingError):
            await orchestrator.retry(str(meeting.id), USER)
        assert queue.jobs == {}

    async def test_resumes_minutes_when_transcript_exists(self, orchestrator, repo, queue):
        meeting = await make_meeting(
            repo, status=MeetingStatus.FAILED, template=MinutesTemplate.COMPREHENSIVE
        )
        repo.segments[str(meeting.id)] = make_segments(meeting.id, "hello")

        outcome = await orchestrator.retry(str(meeting.id), USER)

        assert outcome.action is RetryAction.MINUTES
        assert outcome.job.stage is PipelineStage.MINUTES
        assert queue.payloads[outcome.job.id].template is MinutesTemplate.COMPREHENSIVE
        assert repo.meetings[str(meeting.id)].status is MeetingStatus.TRANSCRIPT_READY

    async def test_marks_completed_when_everything_exists(self, orchestrator, repo, queue):
        meeting = await make_meeting(repo, status=MeetingStatus.FAILED)
        meeting_id = str(meeting.id)
        repo.segments[meeting_id] = make_segments(meeting.id, "hello")
        repo.minutes[meeting_id] = MeetingMinutes(
            meeting_id=meeting.id, content="# done", generated_at=datetime.now(timezone.utc)
        )

        outcome = await orchestrator.retry(meeting_id, USER)

        assert outcome.action is RetryAction.COMPLETED
        assert outcome.job is None
        assert repo.meetings[meeting_id].status is MeetingStatus.COMPLETED
        assert queue.jobs == {}

    async def test_rejects_while_work_in_progress(self, orchestrator, storage):
        submission = await _submit(orchestrator, storage)

        with pytest.raises(DuplicateJobError) as exc_info:
            await orchestrator.retry(str(submission.meeting.id), USER)
        assert exc_info.value.context["existing_job_id"] == submission.job.id

    async def test_other_users_meeting(self, orchestrator, repo):
        meeting = await make_meeting(repo, status=MeetingStatus.FAILED)
        with pytest.raises(JobOwnershipError):
            await orchestrator.retry(str(meeting.id), "someone-else")

    async def test_unknown_meeting(self, orchestrator):
        with pytest.raises(MeetingNotFoundError):
            await orchestrator.retry("00000000-0000-0000-0000-000000000000", USER)


class TestCancel:
    async def test_waiting_job_is_removed(self, orchestrator, storage, repo, queue, broadcaster):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)

        outcome = await orchestrator.cancel(meeting_id, USER)

        assert outcome.removed_from_queue is True
        assert outcome.signalled is False
        assert queue.jobs[submission.job.id].state is JobState.CANCELLED
        assert queue.waiting() == []
        meeting = repo.meetings[meeting_id]
        assert meeting.status is MeetingStatus.CANCELLED
        assert meeting.failure_reason == "Cancelled by user"
        assert broadcaster.statuses()[-1] == ("transcription", "cancelled")

    async def test_running_job_is_signalled(self, orchestrator, storage, queue):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)
        await queue.mark_active(submission.job.id, 1)

        outcome = await orchestrator.cancel(meeting_id, USER)

        assert outcome.removed_from_queue is False
        assert outcome.signalled is True
        job = queue.jobs[submission.job.id]
        assert job.state is JobState.FAILED
        assert job.failure_reason == "Cancelled by user"
        assert await queue.is_cancel_requested(meeting_id)

    async def test_nothing_to_cancel(self, orchestrator, repo):
        meeting = await make_meeting(repo, status=MeetingStatus.COMPLETED)
        with pytest.raises(NoActiveJobError):
            await orchestrator.cancel(str(meeting.id), USER)

    async def test_meeting_parked_between_stages_is_cancelled(
        self, orchestrator, repo, broadcaster
    ):
        meeting = await make_meeting(repo, status=MeetingStatus.TRANSCRIPT_READY)
        meeting_id = str(meeting.id)

        outcome = await orchestrator.cancel(meeting_id, USER)

        assert (outcome.removed_from_queue, outcome.signalled) == (False, False)
        assert repo.meetings[meeting_id].status is MeetingStatus.CANCELLED
        _, event = broadcaster.events[-1]
        assert (event.step.value, event.status.value) == ("pipeline", "cancelled")

    async def test_parked_meeting_of_another_user(self, orchestrator, repo):
        meeting = await make_meeting(repo, status=MeetingStatus.TRANSCRIPT_READY)
        with pytest.raises(JobOwnershipError):
            await orchestrator.cancel(str(meeting.id), "someone-else")

    async def test_other_users_job(self, orchestrator, storage):
        submission = await _submit(orchestrator, storage)
        with pytest.raises(JobOwnershipError):
            await orchestrator.cancel(str(submission.meeting.id), "someone-else")


class TestQueries:
    async def test_get_meeting_and_jobs(self, orchestrator, storage):
        submission = await _submit(orchestrator, storage)
        meeting_id = str(submission.meeting.id)

        meeting = await orchestrator.get_meeting(meeting_id, USER)
        jobs = await orchestrator.list_jobs(meeting_id, USER)

        assert meeting.id == submission.meeting.id
        assert [j.id for j in jobs] == [submission.job.id]

    async def test_get_meeting_checks_owner(self, orchestrator, storage):
        submission = await _submit(orchestrator, storage)
        with pytest.raises(JobOwnershipError):
            await orchestrator.get_meeting(str(submission.meeting.id), "someone-else")
