"""FastAPI dependency injection for the caller identity and pipeline runtime.

Authentication is done by the gateway in front of this service; it forwards
the authenticated user as the ``X-User-ID`` header.
"""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from src.scriber.pipeline.orchestrator import PipelineOrchestrator
from src.scriber.pipeline.progress import ProgressBroadcaster
from src.scriber.pipeline.runtime import PipelineRuntime
from src.scriber.services.upload_sessions import UploadSessionStore


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
) -> str:
    """Return the caller's user id.

    Raises:
        HTTPException(401): If the gateway did not forward a user id.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header",
        )
    return x_user_id.strip()


def get_runtime(request: Request) -> PipelineRuntime:
    """Retrieve the PipelineRuntime from app.state, 503 if not available."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline runtime not initialized",
        )
    return runtime


def get_orchestrator(runtime: PipelineRuntime = Depends(get_runtime)) -> PipelineOrchestrator:
    return runtime.orchestrator


def get_broadcaster(runtime: PipelineRuntime = Depends(get_runtime)) -> ProgressBroadcaster:
    return runtime.broadcaster


def get_upload_sessions(runtime: PipelineRuntime = Depends(get_runtime)) -> UploadSessionStore:
    return runtime.upload_sessions
