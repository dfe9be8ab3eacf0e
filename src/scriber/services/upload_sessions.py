"""Resumable multi-part upload sessions.

Session metadata lives in Redis with a TTL so any API instance can accept
any part; part bytes go to ``<root>/<session_id>/part_NNNNN`` on disk.

Redis layout:
    scriber:uploads:<session_id>        hash of session fields
    scriber:uploads:<session_id>:parts  set of received part indexes

Every accepted part refreshes both TTLs. Part directories whose session has
expired are removed by sweep_orphans().
"""

from __future__ import annotations

import asyncio
import shutil
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field

from src.scriber.core.redis import make_key
from src.scriber.pipeline.errors import (
    IncompleteUploadError,
    JobOwnershipError,
    UploadSessionNotFoundError,
)

logger = structlog.get_logger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 3600


class UploadSession(BaseModel):
    """One in-progress resumable upload."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    filename: str
    mime_type: str = "audio/mpeg"
    total_parts: int = Field(ge=1)
    received_parts: list[int] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_complete(self) -> bool:
        return len(self.received_parts) >= self.total_parts

    @property
    def missing_parts(self) -> list[int]:
        received = set(self.received_parts)
        return [i for i in range(self.total_parts) if i not in received]


class UploadSessionStore:
    """Redis-backed session registry with parts buffered on local disk.

    Args:
        redis_client: Async Redis client (decode_responses=True).
        root: Directory for part files.
        ttl_seconds: Idle lifetime of a session.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        root: str | Path,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
    ) -> None:
        self._redis = redis_client
        self.root = Path(root)
        self._ttl = ttl_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return make_key("uploads", session_id)

    @staticmethod
    def _parts_key(session_id: str) -> str:
        return make_key("uploads", session_id, "parts")

    def _session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    @staticmethod
    def _part_path(session_dir: Path, index: int) -> Path:
        return session_dir / f"part_{index:05d}"

    async def create(
        self,
        user_id: str,
        filename: str,
        total_parts: int,
        mime_type: str = "audio/mpeg",
        metadata: dict[str, str] | None = None,
    ) -> UploadSession:
        session = UploadSession(
            user_id=user_id,
            filename=filename,
            mime_type=mime_type,
            total_parts=total_parts,
            metadata=metadata or {},
        )
        await self._redis.hset(
            self._key(session.id),
            mapping={"data": session.model_dump_json(exclude={"received_parts"})},
        )
        await self._redis.expire(self._key(session.id), self._ttl)
        logger.info(
            "uploads.session_created",
            session_id=session.id,
            user_id=user_id,
            total_parts=total_parts,
        )
        return session

    async def get(self, session_id: str) -> UploadSession | None:
        raw = await self._redis.hget(self._key(session_id), "data")
        if raw is None:
            return None
        session = UploadSession.model_validate_json(raw)
        members = await self._redis.smembers(self._parts_key(session_id))
        session.received_parts = sorted(int(m) for m in members)
        return session

    async def _get_owned(self, session_id: str, user_id: str) -> UploadSession:
        session = await self.get(session_id)
        if session is None:
            raise UploadSessionNotFoundError(f"Upload session not found: {session_id}")
        if session.user_id != user_id:
            raise JobOwnershipError("Upload session belongs to another user")
        return session

    async def put_part(
        self, session_id: str, user_id: str, index: int, data: bytes
    ) -> UploadSession:
        """Store one part. Re-sending a part overwrites it."""
        session = await self._get_owned(session_id, user_id)
        if not 0 <= index < session.total_parts:
            raise ValueError(f"Part index {index} outside 0..{session.total_parts - 1}")

        session_dir = self._session_dir(session_id)
        part_path = self._part_path(session_dir, index)

        def _write() -> None:
            session_dir.mkdir(parents=True, exist_ok=True)
            part_path.write_bytes(data)

        await asyncio.to_thread(_write)

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._parts_key(session_id), index)
            pipe.expire(self._parts_key(session_id), self._ttl)
            pipe.expire(self._key(session_id), self._ttl)
            await pipe.execute()

        if index not in session.received_parts:
            session.received_parts = sorted([*session.received_parts, index])
        logger.debug(
            "uploads.part_received",
            session_id=session_id,
            index=index,
            received=len(session.received_parts),
            total=session.total_parts,
        )
        return session

    async def complete(self, session_id: str, user_id: str, destination: Path) -> UploadSession:
        """Concatenate all parts into ``destination`` and drop the session.

        Raises:
            UploadSessionNotFoundError: Session unknown or expired.
            IncompleteUploadError: Some parts never arrived.
        """
        session = await self._get_owned(session_id, user_id)
        if not session.is_complete:
            raise IncompleteUploadError(
                f"Upload incomplete: missing parts {session.missing_parts}",
                missing=session.missing_parts,
            )

        session_dir = self._session_dir(session_id)

        def _assemble() -> None:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with destination.open("wb") as out:
                for index in range(session.total_parts):
                    with self._part_path(session_dir, index).open("rb") as part:
                        shutil.copyfileobj(part, out)

        try:
            await asyncio.to_thread(_assemble)
        except FileNotFoundError as exc:
            raise IncompleteUploadError(
                f"Upload part files missing for session {session_id}"
            ) from exc

        await self._discard(session_id)
        logger.info(
            "uploads.session_completed",
            session_id=session_id,
            parts=session.total_parts,
            destination=str(destination),
        )
        return session

    async def abort(self, session_id: str, user_id: str) -> None:
        await self._get_owned(session_id, user_id)
        await self._discard(session_id)

    async def _discard(self, session_id: str) -> None:
        await self._redis.delete(self._key(session_id), self._parts_key(session_id))
        await asyncio.to_thread(shutil.rmtree, self._session_dir(session_id), True)

    async def sweep_orphans(self, now: float | None = None) -> int:
        """Delete part directories older than the TTL whose session expired."""
        if not self.root.is_dir():
            return 0
        cutoff = (now if now is not None else time.time()) - self._ttl
        removed = 0
        for entry in self.root.iterdir():
            if not entry.is_dir():
                continue
            try:
                mtime = entry.stat().st_mtime
            except FileNotFoundError:
                continue
            if mtime >= cutoff:
                continue
            if await self._redis.exists(self._key(entry.name)):
                continue
            await asyncio.to_thread(shutil.rmtree, entry, True)
            removed += 1
        if removed:
            logger.info("uploads.swept", removed=removed, root=str(self.root))
        return removed
