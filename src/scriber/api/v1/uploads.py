"""Resumable upload endpoints.

A client opens a session, PUTs numbered parts in any order (re-sending a
part after a dropped connection is safe), then completes the session. The
assembled file enters the same intake path as ``POST /meetings``.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.scriber.api.deps import get_current_user_id, get_runtime, get_upload_sessions
from src.scriber.api.v1.meetings import (
    SubmissionResponse,
    accept_recording,
    submission_to_response,
)
from src.scriber.meetings.schemas import MinutesTemplate
from src.scriber.pipeline.runtime import PipelineRuntime
from src.scriber.services.upload_sessions import UploadSession, UploadSessionStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


class UploadSessionCreate(BaseModel):
    filename: str = Field(min_length=1)
    title: str = Field(min_length=1)
    total_parts: int = Field(ge=1, le=10000)
    mime_type: str = "audio/mpeg"
    auto_redact: bool = False
    template: MinutesTemplate = MinutesTemplate.EXECUTIVE


class UploadSessionResponse(BaseModel):
    session_id: str
    total_parts: int
    received_parts: list[int]
    missing_parts: list[int]


def _session_to_response(session: UploadSession) -> UploadSessionResponse:
    return UploadSessionResponse(
        session_id=session.id,
        total_parts=session.total_parts,
        received_parts=session.received_parts,
        missing_parts=session.missing_parts,
    )


@router.post(
    "/sessions",
    status_code=status.HTTP_201_CREATED,
    response_model=UploadSessionResponse,
)
async def create_session(
    body: UploadSessionCreate,
    user_id: str = Depends(get_current_user_id),
    sessions: UploadSessionStore = Depends(get_upload_sessions),
) -> UploadSessionResponse:
    session = await sessions.create(
        user_id,
        body.filename,
        body.total_parts,
        mime_type=body.mime_type,
        metadata={
            "title": body.title,
            "auto_redact": "1" if body.auto_redact else "0",
            "template": body.template.value,
        },
    )
    return _session_to_response(session)


@router.put("/sessions/{session_id}/parts/{index}", response_model=UploadSessionResponse)
async def put_part(
    session_id: str,
    index: int,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    sessions: UploadSessionStore = Depends(get_upload_sessions),
) -> UploadSessionResponse:
    """Store one part; the request body is the raw part bytes."""
    data = await request.body()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty part")
    try:
        session = await sessions.put_part(session_id, user_id, index, data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _session_to_response(session)


@router.post(
    "/sessions/{session_id}/complete",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
)
async def complete_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> SubmissionResponse:
    """Assemble the parts and queue the recording for transcription."""
    async with runtime.chunker.workspace("intake", uuid.uuid4().hex) as work_dir:
        destination = work_dir / "assembled"
        session = await runtime.upload_sessions.complete(session_id, user_id, destination)
        submission = await accept_recording(
            runtime,
            user_id,
            session.metadata.get("title") or session.filename,
            destination,
            session.filename,
            session.mime_type,
            auto_redact=session.metadata.get("auto_redact") == "1",
            template=MinutesTemplate(
                session.metadata.get("template", MinutesTemplate.EXECUTIVE.value)
            ),
        )
    logger.info(
        "uploads.session_submitted",
        session_id=session_id,
        meeting_id=str(submission.meeting.id),
    )
    return submission_to_response(submission)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def abort_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    sessions: UploadSessionStore = Depends(get_upload_sessions),
) -> None:
    await sessions.abort(session_id, user_id)
