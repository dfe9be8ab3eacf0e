"""WebSocket stream of pipeline progress events.

Clients connect to ``/progress/ws`` (optionally with ``?meeting_id=``) and
receive every ProgressEvent published for their user. Delivery is live only:
events published while no socket is connected are not replayed.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/progress", tags=["progress"])


@router.websocket("/ws")
async def progress_websocket(websocket: WebSocket, meeting_id: str | None = None) -> None:
    """Forward the caller's progress events until the client disconnects.

    The user comes from the ``X-User-ID`` header, or from the ``user_id``
    query parameter for clients that cannot set headers on a WebSocket.
    """
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    runtime = getattr(websocket.app.state, "runtime", None)
    if not user_id or runtime is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    log = logger.bind(user_id=user_id, meeting_id=meeting_id)
    log.info("progress.ws_connected")

    try:
        async for event in runtime.broadcaster.subscribe(user_id, meeting_id):
            await websocket.send_text(event.to_wire())
    except WebSocketDisconnect:
        log.info("progress.ws_disconnected")
    except Exception:
        log.warning("progress.ws_error", exc_info=True)
