"""REST endpoints for recorded meetings.

Upload intake, retry, cancel, job inspection and recording download. The
stage work itself runs in the StageWorker pools; these handlers only touch
the orchestrator and return as soon as work is queued.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from pathlib import Path

import structlog
from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    UploadFile,
    status,
)
from fastapi.responses import FileResponse
from pydantic import BaseModel

from src.scriber.api.deps import get_current_user_id, get_orchestrator, get_runtime
from src.scriber.meetings.schemas import Meeting, MinutesTemplate, PipelineJob, Recording
from src.scriber.pipeline.errors import PipelineError
from src.scriber.pipeline.orchestrator import PipelineOrchestrator, Submission
from src.scriber.pipeline.runtime import PipelineRuntime

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/meetings", tags=["meetings"])
files_router = APIRouter(tags=["files"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class SubmissionResponse(BaseModel):
    meeting_id: str
    job_id: str
    duration_seconds: float


class RetryResponse(BaseModel):
    action: str
    job_id: str | None = None


class CancelResponse(BaseModel):
    removed_from_queue: bool
    signalled: bool


class MeetingResponse(BaseModel):
    """Meeting status, serializes datetimes to ISO strings."""

    id: str
    title: str
    status: str
    duration_seconds: float
    auto_redact: bool
    minutes_template: str
    quality_score: int | None = None
    inaudible_count: int = 0
    failed_chunks: int = 0
    failure_reason: str | None = None
    last_processed_at: str | None = None
    created_at: str


class JobResponse(BaseModel):
    id: str
    stage: str
    state: str
    attempt_count: int
    failure_reason: str | None = None
    updated_at: str


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _meeting_to_response(m: Meeting) -> MeetingResponse:
    return MeetingResponse(
        id=str(m.id),
        title=m.title,
        status=m.status.value,
        duration_seconds=m.duration_seconds,
        auto_redact=m.auto_redact,
        minutes_template=m.minutes_template.value,
        quality_score=m.quality_score,
        inaudible_count=m.inaudible_count,
        failed_chunks=m.failed_chunks,
        failure_reason=m.failure_reason,
        last_processed_at=m.last_processed_at.isoformat() if m.last_processed_at else None,
        created_at=m.created_at.isoformat(),
    )


def _job_to_response(job: PipelineJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        stage=job.stage.value,
        state=job.state.value,
        attempt_count=job.attempt_count,
        failure_reason=job.failure_reason,
        updated_at=job.updated_at.isoformat(),
    )


def submission_to_response(submission: Submission) -> SubmissionResponse:
    return SubmissionResponse(
        meeting_id=str(submission.meeting.id),
        job_id=submission.job.id,
        duration_seconds=submission.meeting.duration_seconds,
    )


# ── Intake ───────────────────────────────────────────────────────────────────


async def accept_recording(
    runtime: PipelineRuntime,
    user_id: str,
    title: str,
    source: Path,
    filename: str,
    mime_type: str,
    *,
    auto_redact: bool = False,
    template: MinutesTemplate = MinutesTemplate.EXECUTIVE,
) -> Submission:
    """Probe, store and submit a recording that is already on local disk.

    Shared by the single-request upload and the resumable upload sessions.
    The stored object is removed again if the orchestrator rejects it.
    """
    duration = await runtime.chunker.probe_duration(source)
    bucket = runtime.settings.STORAGE_BUCKET
    path = f"{user_id}/{uuid.uuid4().hex}{Path(filename).suffix.lower()}"
    file_ref = await runtime.storage.upload(bucket, path, source, content_type=mime_type)

    try:
        return await runtime.orchestrator.submit_upload(
            user_id,
            title,
            Recording(file_ref=file_ref, duration_seconds=duration, mime_type=mime_type),
            auto_redact=auto_redact,
            template=template,
        )
    except PipelineError:
        await runtime.storage.delete(bucket, path)
        raise


# ── REST Endpoints ───────────────────────────────────────────────────────────


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=SubmissionResponse)
async def upload_meeting(
    file: UploadFile = File(...),
    title: str = Form(...),
    auto_redact: bool = Form(False),
    template: MinutesTemplate = Form(MinutesTemplate.EXECUTIVE),
    user_id: str = Depends(get_current_user_id),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> SubmissionResponse:
    """Upload a recording and queue it for transcription.

    Returns 202 as soon as the transcription job is queued; progress is
    streamed on the progress WebSocket.
    """
    filename = file.filename or "recording"
    async with runtime.chunker.workspace("intake", uuid.uuid4().hex) as work_dir:
        source = work_dir / f"upload{Path(filename).suffix.lower()}"

        def _spool() -> None:
            with source.open("wb") as out:
                shutil.copyfileobj(file.file, out)

        await asyncio.to_thread(_spool)
        submission = await accept_recording(
            runtime,
            user_id,
            title,
            source,
            filename,
            file.content_type or "audio/mpeg",
            auto_redact=auto_redact,
            template=template,
        )
    return submission_to_response(submission)


@router.get("/{meeting_id}", response_model=MeetingResponse)
async def get_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> MeetingResponse:
    meeting = await orchestrator.get_meeting(meeting_id, user_id)
    return _meeting_to_response(meeting)


@router.post(
    "/{meeting_id}/retry",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=RetryResponse,
)
async def retry_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> RetryResponse:
    """Resume a failed or cancelled meeting from its first missing output."""
    outcome = await orchestrator.retry(meeting_id, user_id)
    return RetryResponse(
        action=outcome.action.value,
        job_id=outcome.job.id if outcome.job else None,
    )


@router.post("/{meeting_id}/cancel", response_model=CancelResponse)
async def cancel_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    outcome = await orchestrator.cancel(meeting_id, user_id)
    return CancelResponse(
        removed_from_queue=outcome.removed_from_queue,
        signalled=outcome.signalled,
    )


@router.get("/{meeting_id}/jobs", response_model=list[JobResponse])
async def list_meeting_jobs(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> list[JobResponse]:
    jobs = await orchestrator.list_jobs(meeting_id, user_id)
    return [_job_to_response(job) for job in jobs]


@router.get("/{meeting_id}/recording", response_model=SignedUrlResponse)
async def get_recording_url(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> SignedUrlResponse:
    """Signed, time-limited download URL for the stored audio."""
    meeting = await runtime.orchestrator.get_meeting(meeting_id, user_id)
    ttl = runtime.settings.SIGNED_URL_TTL_SECONDS
    recording = meeting.recording
    return SignedUrlResponse(
        url=runtime.storage.get_signed_url(recording.bucket, recording.path, ttl),
        expires_in=ttl,
    )


@files_router.get("/files")
async def download_file(
    token: str = Query(...),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> FileResponse:
    """Serve an object named by a signed download token."""
    try:
        bucket, path = runtime.storage.verify_signed_token(token)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if not await runtime.storage.exists(bucket, path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return FileResponse(runtime.storage.local_path(bucket, path))
