"""PipelineOrchestrator -- sequences stages per meeting and owns its state machine.

Flow per meeting::

    submit_upload -> [transcription] -> [enhancement] -> ([redaction]) -> [minutes]

Each bracketed stage is one job on its own stage queue, executed by
run_stage() inside a StageWorker. A stage that completes enqueues the next
one unless the job asked to skip downstream work. A stage that exhausts its
attempts lands in handle_stage_failure(): meeting FAILED, a "failed" progress
event, a usage refund, and a push notification.

Stage jobs write through the meeting's lease: the job id becomes the lease
token when the stage starts and every repository write is fenced on it.
User actions (retry, cancel) clear the lease so stale jobs stop writing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from src.scriber.meetings.minutes import MinutesGenerator
from src.scriber.meetings.postprocess import TranscriptEnhancer, TranscriptRedactor
from src.scriber.meetings.repository import MeetingRepository
from src.scriber.meetings.schemas import (
    JobState,
    Meeting,
    MeetingCreate,
    MeetingStatus,
    MinutesTemplate,
    PipelineJob,
    PipelineStage,
    Recording,
    validate_transition,
)
from src.scriber.pipeline.chunker import AudioChunker
from src.scriber.pipeline.errors import (
    DuplicateJobError,
    FileMissingError,
    JobCancelledError,
    JobOwnershipError,
    LeaseLostError,
    MeetingNotFoundError,
    NoActiveJobError,
)
from src.scriber.pipeline.jobs import MinutesPayload, RedisJobQueue, StagePayload, build_payload
from src.scriber.pipeline.progress import ProgressBroadcaster, ProgressStatus, ProgressStep
from src.scriber.pipeline.transcriber import ChunkedTranscriber
from src.scriber.pipeline.usage import UsageLedger
from src.scriber.services.notifications import NotificationService
from src.scriber.services.storage import StorageProvider

logger = structlog.get_logger(__name__)

CANCEL_REASON = "Cancelled by user"
UNKNOWN_DURATION_FALLBACK_SECONDS = 300.0

_STAGE_STATUS: dict[PipelineStage, MeetingStatus] = {
    PipelineStage.TRANSCRIPTION: MeetingStatus.PROCESSING_TRANSCRIPT,
    PipelineStage.ENHANCEMENT: MeetingStatus.PROCESSING_ENHANCEMENT,
    PipelineStage.REDACTION: MeetingStatus.PROCESSING_REDACTION,
    PipelineStage.MINUTES: MeetingStatus.PROCESSING_MINUTES,
}


def billed_duration(duration_seconds: float) -> float:
    """Duration charged against quota; unknown durations bill a flat 5 minutes."""
    return duration_seconds if duration_seconds > 0 else UNKNOWN_DURATION_FALLBACK_SECONDS


def progress_step(stage: PipelineStage) -> ProgressStep:
    return ProgressStep(stage.value)


class RetryAction(str, Enum):
    TRANSCRIPTION = "restarted_transcription"
    MINUTES = "resumed_minutes"
    COMPLETED = "marked_completed"


@dataclass(frozen=True)
class Submission:
    meeting: Meeting
    job: PipelineJob


@dataclass(frozen=True)
class RetryOutcome:
    action: RetryAction
    job: PipelineJob | None = None


@dataclass(frozen=True)
class CancelOutcome:
    removed_from_queue: bool
    signalled: bool


class PipelineOrchestrator:
    """Composes the pipeline components around one meeting's lifecycle.

    Args:
        repository: Meeting persistence.
        queue: Stage job queues.
        ledger: Quota enforcement and reconciliation.
        broadcaster: Progress events.
        storage: Raw audio storage.
        chunker: Splits recordings and owns job temp directories.
        transcriber: Sequential chunk transcription.
        enhancer: Enhancement stage.
        redactor: Redaction stage.
        minutes: Minutes generation.
        notifications: Push and email delivery.
    """

    def __init__(
        self,
        repository: MeetingRepository,
        queue: RedisJobQueue,
        ledger: UsageLedger,
        broadcaster: ProgressBroadcaster,
        storage: StorageProvider,
        chunker: AudioChunker,
        transcriber: ChunkedTranscriber,
        enhancer: TranscriptEnhancer,
        redactor: TranscriptRedactor,
        minutes: MinutesGenerator,
        notifications: NotificationService,
    ) -> None:
        self._repository = repository
        self._queue = queue
        self._ledger = ledger
        self._broadcaster = broadcaster
        self._storage = storage
        self._chunker = chunker
        self._transcriber = transcriber
        self._enhancer = enhancer
        self._redactor = redactor
        self._minutes = minutes
        self._notifications = notifications

    # ── Intake ──────────────────────────────────────────────────────────

    async def submit_upload(
        self,
        user_id: str,
        title: str,
        recording: Recording,
        *,
        auto_redact: bool = False,
        template: MinutesTemplate = MinutesTemplate.EXECUTIVE,
    ) -> Submission:
        """Accept a stored recording into the pipeline.

        Raises:
            QuotaExceededError: Before anything is created or charged.
        """
        duration = billed_duration(recording.duration_seconds)
        await self._ledger.enforce(user_id, duration)

        meeting = await self._repository.create_meeting(
            MeetingCreate(
                user_id=user_id,
                title=title,
                recording=recording,
                auto_redact=auto_redact,
                minutes_template=template,
            )
        )
        meeting_id = str(meeting.id)
        await self._broadcaster.publish(
            user_id, meeting_id, ProgressStep.UPLOAD, ProgressStatus.COMPLETED, 100
        )
        await self._ledger.commit(user_id, duration)

        await self._queue.clear_cancel(meeting_id)
        job = await self.enqueue(meeting_id, user_id, PipelineStage.TRANSCRIPTION)
        logger.info(
            "pipeline.upload_accepted",
            meeting_id=meeting_id,
            user_id=user_id,
            job_id=job.id,
            duration=recording.duration_seconds,
        )
        return Submission(meeting=meeting, job=job)

    async def enqueue(
        self,
        meeting_id: str,
        user_id: str,
        stage: PipelineStage,
        **payload: Any,
    ) -> PipelineJob:
        """Queue one unit of stage work and announce it.

        Raises:
            DuplicateJobError: The meeting already has a unit for this stage.
        """
        job = await self._queue.enqueue(
            build_payload(stage, meeting_id=meeting_id, user_id=user_id, **payload)
        )
        await self._broadcaster.publish(
            user_id, meeting_id, progress_step(stage), ProgressStatus.QUEUED, 0
        )
        return job

    # ── User actions ────────────────────────────────────────────────────

    async def _get_owned(self, meeting_id: str, user_id: str) -> Meeting:
        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Meeting not found: id={meeting_id}")
        if meeting.user_id != user_id:
            raise JobOwnershipError(f"Meeting {meeting_id} belongs to another user")
        return meeting

    async def get_meeting(self, meeting_id: str, user_id: str) -> Meeting:
        """Return a meeting the caller owns.

        Raises:
            MeetingNotFoundError: Unknown meeting id.
            JobOwnershipError: The meeting belongs to another user.
        """
        return await self._get_owned(meeting_id, user_id)

    async def list_jobs(self, meeting_id: str, user_id: str) -> list[PipelineJob]:
        await self._get_owned(meeting_id, user_id)
        return await self._queue.list_units(meeting_id)

    async def retry(self, meeting_id: str, user_id: str) -> RetryOutcome:
        """Resume a meeting from the first stage whose output is missing.

        - transcript and minutes exist: only reset status to COMPLETED
        - transcript exists, minutes do not: enqueue minutes only
        - otherwise: check the source audio is still stored, then restart
          from transcription

        Raises:
            DuplicateJobError: A unit for this meeting is still queued or running.
            FileMissingError: The source audio is gone; the user must re-upload.
        """
        meeting = await self._get_owned(meeting_id, user_id)
        units = await self._queue.list_units(meeting_id)
        if units:
            raise DuplicateJobError(
                f"Meeting {meeting_id} already has {units[0].stage.value} work in progress",
                existing_job_id=units[0].id,
            )

        await self._queue.clear_cancel(meeting_id)
        log = logger.bind(meeting_id=meeting_id, previous_status=meeting.status.value)

        has_transcript = await self._repository.has_transcript(meeting_id)
        minutes = await self._repository.get_minutes(meeting_id) if has_transcript else None

        if has_transcript and minutes is not None:
            await self._repository.update_status(
                meeting_id, MeetingStatus.COMPLETED, clear_lease=True
            )
            log.info("pipeline.retry", action=RetryAction.COMPLETED.value)
            return RetryOutcome(action=RetryAction.COMPLETED)

        if has_transcript:
            await self._repository.update_status(
                meeting_id, MeetingStatus.TRANSCRIPT_READY, clear_lease=True
            )
            job = await self.enqueue(
                meeting_id, user_id, PipelineStage.MINUTES, template=meeting.minutes_template
            )
            log.info("pipeline.retry", action=RetryAction.MINUTES.value, job_id=job.id)
            return RetryOutcome(action=RetryAction.MINUTES, job=job)

        recording = meeting.recording
        if not await self._storage.exists(recording.bucket, recording.path):
            raise FileMissingError(
                "Original recording is no longer available; please upload it again",
                meeting_id=meeting_id,
                file_ref=recording.file_ref,
            )
        await self._repository.update_status(meeting_id, MeetingStatus.UPLOADED, clear_lease=True)
        job = await self.enqueue(meeting_id, user_id, PipelineStage.TRANSCRIPTION)
        log.info("pipeline.retry", action=RetryAction.TRANSCRIPTION.value, job_id=job.id)
        return RetryOutcome(action=RetryAction.TRANSCRIPTION, job=job)

    async def cancel(self, meeting_id: str, user_id: str) -> CancelOutcome:
        """Stop a meeting's pipeline.

        Waiting units are removed from their queue. Running units get the
        cancel flag, which they observe at the next chunk or stage boundary,
        and their job record is failed with a cancellation reason. The
        meeting ends CANCELLED with its lease cleared, including a meeting
        parked between stages with no unit at all.

        Raises:
            NoActiveJobError: The meeting is already terminal and nothing is
                queued or running for it.
            JobOwnershipError: The caller does not own the meeting's jobs.
        """
        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Meeting not found: id={meeting_id}")

        units = [
            job
            for job in await self._queue.list_units(meeting_id)
            if job.state in (JobState.WAITING, JobState.ACTIVE)
        ]
        if not units and meeting.status.is_terminal:
            raise NoActiveJobError(f"No queued or running job for meeting {meeting_id}")
        if meeting.user_id != user_id or any(job.user_id != user_id for job in units):
            raise JobOwnershipError(f"Meeting {meeting_id} belongs to another user")

        await self._queue.request_cancel(meeting_id)
        removed = signalled = False
        for job in units:
            if await self._queue.remove_waiting(job):
                removed = True
                continue
            await self._queue.finish(job, JobState.FAILED, CANCEL_REASON)
            signalled = True

        await self._repository.update_status(
            meeting_id,
            MeetingStatus.CANCELLED,
            failure_reason=CANCEL_REASON,
            clear_lease=True,
        )
        await self._broadcaster.publish(
            user_id,
            meeting_id,
            progress_step(units[0].stage) if units else ProgressStep.PIPELINE,
            ProgressStatus.CANCELLED,
            error=CANCEL_REASON,
        )
        logger.info(
            "pipeline.cancelled",
            meeting_id=meeting_id,
            removed_from_queue=removed,
            signalled=signalled,
        )
        return CancelOutcome(removed_from_queue=removed, signalled=signalled)

    # ── Stage execution ─────────────────────────────────────────────────

    async def run_stage(self, job: PipelineJob, payload: StagePayload) -> None:
        """StageWorker handler: run one attempt of ``job``."""
        handlers = {
            PipelineStage.TRANSCRIPTION: self._run_transcription,
            PipelineStage.ENHANCEMENT: self._run_enhancement,
            PipelineStage.REDACTION: self._run_redaction,
            PipelineStage.MINUTES: self._run_minutes,
        }
        structlog.contextvars.bind_contextvars(
            meeting_id=job.meeting_id, job_id=job.id, stage=job.stage.value
        )
        try:
            await handlers[job.stage](job, payload)
        except (JobCancelledError, LeaseLostError):
            self._broadcaster.release(job.meeting_id, progress_step(job.stage))
            raise
        finally:
            structlog.contextvars.unbind_contextvars("meeting_id", "job_id", "stage")

    async def _cancel_check(self, meeting_id: str) -> None:
        if await self._queue.is_cancel_requested(meeting_id):
            raise JobCancelledError(CANCEL_REASON, meeting_id=meeting_id)

    async def _begin(self, job: PipelineJob) -> Meeting:
        """Check for cancellation, take the lease, and enter the stage's status."""
        meeting_id = job.meeting_id
        await self._cancel_check(meeting_id)

        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Meeting not found: id={meeting_id}")
        if meeting.status is MeetingStatus.CANCELLED:
            raise JobCancelledError(CANCEL_REASON, meeting_id=meeting_id)

        status = _STAGE_STATUS[job.stage]
        validate_transition(meeting.status, status)
        await self._repository.acquire_lease(meeting_id, job.id)
        meeting = await self._repository.update_status(meeting_id, status, lease_token=job.id)

        await self._broadcaster.publish(
            job.user_id,
            meeting_id,
            progress_step(job.stage),
            ProgressStatus.PROCESSING,
            5,
            detail={"attempt": job.attempt_count} if job.attempt_count > 1 else None,
        )
        logger.info("pipeline.stage_started", attempt=job.attempt_count)
        return meeting

    async def _advance(
        self,
        job: PipelineJob,
        payload: StagePayload,
        meeting: Meeting,
        next_stage: PipelineStage | None,
    ) -> None:
        """Enqueue the next stage, or settle at TRANSCRIPT_READY when skipped."""
        meeting_id = job.meeting_id
        if next_stage is None or payload.skip_downstream:
            if meeting.status is not MeetingStatus.TRANSCRIPT_READY:
                validate_transition(meeting.status, MeetingStatus.TRANSCRIPT_READY)
                await self._repository.update_status(
                    meeting_id,
                    MeetingStatus.TRANSCRIPT_READY,
                    lease_token=job.id,
                    processed=True,
                )
            logger.info("pipeline.downstream_skipped", skip_downstream=payload.skip_downstream)
            return

        fields: dict[str, Any] = {}
        if next_stage is PipelineStage.MINUTES:
            fields["template"] = meeting.minutes_template
        try:
            await self.enqueue(meeting_id, job.user_id, next_stage, **fields)
        except DuplicateJobError as exc:
            logger.warning(
                "pipeline.next_stage_already_queued",
                next_stage=next_stage.value,
                existing_job_id=exc.context.get("existing_job_id"),
            )

    async def _run_transcription(self, job: PipelineJob, payload: StagePayload) -> None:
        meeting = await self._begin(job)
        meeting_id = job.meeting_id
        recording = meeting.recording

        async with self._chunker.workspace(meeting_id, job.id) as work_dir:
            source = work_dir / f"source{_suffix(recording.path)}"
            await self._storage.download_to(recording.bucket, recording.path, source)
            if meeting.duration_seconds <= 0:
                probed = await self._chunker.probe_duration(source)
                meeting = meeting.model_copy(update={"duration_seconds": probed})
            outcome = await self._transcriber.run(
                meeting, source, work_dir, lambda: self._cancel_check(meeting_id)
            )

        await self._cancel_check(meeting_id)
        await self._repository.replace_transcript(
            meeting_id, outcome.speakers, outcome.segments, lease_token=job.id
        )
        metrics = outcome.metrics
        await self._repository.update_quality(meeting_id, metrics, lease_token=job.id)
        meeting = await self._repository.update_status(
            meeting_id, MeetingStatus.TRANSCRIPT_READY, lease_token=job.id, processed=True
        )
        await self._broadcaster.publish(
            job.user_id,
            meeting_id,
            ProgressStep.TRANSCRIPTION,
            ProgressStatus.COMPLETED,
            100,
            detail={
                "segments": len(outcome.segments),
                "speakers": len(outcome.speakers),
                "quality_score": metrics.quality_score,
                "failed_chunks": metrics.failed_chunks,
            },
        )
        await self._notifications.send_push(
            job.user_id,
            "Transcription complete",
            f"\"{meeting.title}\" is ready to read.",
            {"meeting_id": meeting_id},
        )
        await self._advance(job, payload, meeting, PipelineStage.ENHANCEMENT)

    async def _run_enhancement(self, job: PipelineJob, payload: StagePayload) -> None:
        meeting = await self._begin(job)
        summary = await self._enhancer.apply(job.meeting_id, job.id)
        await self._cancel_check(job.meeting_id)
        await self._broadcaster.publish(
            job.user_id,
            job.meeting_id,
            ProgressStep.ENHANCEMENT,
            ProgressStatus.COMPLETED,
            100,
            detail={
                "corrections": summary.corrections_applied,
                "speakers_renamed": len(summary.speakers_renamed),
            },
        )
        next_stage = PipelineStage.REDACTION if meeting.auto_redact else PipelineStage.MINUTES
        await self._advance(job, payload, meeting, next_stage)

    async def _run_redaction(self, job: PipelineJob, payload: StagePayload) -> None:
        meeting = await self._begin(job)
        summary = await self._redactor.apply(job.meeting_id, job.id)
        await self._cancel_check(job.meeting_id)
        await self._broadcaster.publish(
            job.user_id,
            job.meeting_id,
            ProgressStep.REDACTION,
            ProgressStatus.COMPLETED,
            100,
            detail={"items_redacted": summary.items_redacted, "types_found": summary.types_found},
        )
        await self._advance(job, payload, meeting, PipelineStage.MINUTES)

    async def _run_minutes(self, job: PipelineJob, payload: StagePayload) -> None:
        meeting = await self._begin(job)
        meeting_id = job.meeting_id
        template = payload.template if isinstance(payload, MinutesPayload) else None

        segments = await self._repository.get_segments(meeting_id)
        speakers = await self._repository.get_speakers(meeting_id)
        minutes = await self._minutes.generate(meeting, segments, speakers, template)

        await self._cancel_check(meeting_id)
        await self._repository.save_minutes(minutes, lease_token=job.id)
        meeting = await self._repository.update_status(
            meeting_id, MeetingStatus.COMPLETED, lease_token=job.id, processed=True
        )
        await self._broadcaster.publish(
            job.user_id, meeting_id, ProgressStep.MINUTES, ProgressStatus.COMPLETED, 100
        )
        await self._broadcaster.publish(
            job.user_id, meeting_id, ProgressStep.PIPELINE, ProgressStatus.COMPLETED, 100
        )
        await self._notifications.send_email(
            job.user_id,
            f"Minutes ready: {meeting.title}",
            minutes.content,
        )
        logger.info("pipeline.completed", template=minutes.template.value)

    # ── Worker callbacks ────────────────────────────────────────────────

    async def handle_stage_failure(
        self, job: PipelineJob, payload: StagePayload, exc: BaseException
    ) -> None:
        """A stage ran out of attempts: fail the meeting and refund the upload."""
        meeting_id = job.meeting_id
        reason = str(exc) or type(exc).__name__
        log = logger.bind(meeting_id=meeting_id, job_id=job.id, stage=job.stage.value)

        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            log.warning("pipeline.failure_for_missing_meeting")
            return
        if meeting.status is MeetingStatus.CANCELLED:
            log.info("pipeline.failure_after_cancel")
            return

        meeting = await self._repository.update_status(
            meeting_id,
            MeetingStatus.FAILED,
            failure_reason=reason,
            clear_lease=True,
        )
        await self._broadcaster.publish(
            job.user_id,
            meeting_id,
            progress_step(job.stage),
            ProgressStatus.FAILED,
            error=reason,
            detail={"code": getattr(exc, "code", "PIPELINE_ERROR")},
        )
        if await self._repository.claim_usage_refund(meeting_id):
            await self._ledger.reconcile(job.user_id, billed_duration(meeting.duration_seconds))
        else:
            log.info("pipeline.refund_already_issued")
        await self._notifications.send_push(
            job.user_id,
            "Processing failed",
            f"\"{meeting.title}\" could not be processed. You can retry from the app.",
            {"meeting_id": meeting_id, "stage": job.stage.value},
        )
        log.error("pipeline.stage_failed", reason=reason, attempts=job.attempt_count)

    async def handle_stage_retry(
        self,
        job: PipelineJob,
        payload: StagePayload,
        exc: BaseException,
        delay: float,
    ) -> None:
        """Announce that a failed stage attempt will be retried after ``delay``."""
        await self._broadcaster.publish(
            job.user_id,
            job.meeting_id,
            progress_step(job.stage),
            ProgressStatus.RETRYING,
            error=str(exc),
            detail={"attempt": job.attempt_count, "next_attempt_in": delay},
        )


def _suffix(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    return f".{name.rsplit('.', 1)[-1]}" if "." in name else ""
