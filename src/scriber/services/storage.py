"""Object storage for raw recordings and generated artifacts.

StorageProvider is the contract the pipeline consumes. LocalStorageProvider
keeps objects under ``<root>/<bucket>/<path>`` and issues signed download
URLs as short-lived JWTs (python-jose), verified by the download endpoint.

Calls are single-shot; retrying is the caller's business.
"""

from __future__ import annotations

import asyncio
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

import structlog
from jose import JWTError, jwt

from src.scriber.pipeline.errors import FileMissingError

logger = structlog.get_logger(__name__)


class StorageProvider(Protocol):
    async def upload(
        self, bucket: str, path: str, data: bytes | Path, content_type: str = "application/octet-stream"
    ) -> str: ...

    async def download(self, bucket: str, path: str) -> bytes: ...

    async def download_to(self, bucket: str, path: str, destination: Path) -> Path: ...

    async def delete(self, bucket: str, path: str) -> None: ...

    async def exists(self, bucket: str, path: str) -> bool: ...

    def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str: ...


class LocalStorageProvider:
    """Filesystem-backed storage.

    Args:
        root: Directory holding one subdirectory per bucket.
        secret_key: Key used to sign download URLs.
        algorithm: JWT signing algorithm.
        base_url: Prefix of the download endpoint the signed URLs point to.
    """

    def __init__(
        self,
        root: str | Path,
        secret_key: str,
        algorithm: str = "HS256",
        base_url: str = "/api/v1/files",
    ) -> None:
        self.root = Path(root)
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._base_url = base_url.rstrip("/")

    def _resolve(self, bucket: str, path: str) -> Path:
        bucket_dir = (self.root / bucket).resolve()
        target = (bucket_dir / path).resolve()
        if not target.is_relative_to(bucket_dir):
            raise ValueError(f"Path escapes bucket: {bucket}/{path}")
        return target

    def local_path(self, bucket: str, path: str) -> Path:
        """Filesystem path of an object, for serving it directly."""
        return self._resolve(bucket, path)

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes | Path,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Store an object and return its ``bucket/path`` reference."""
        target = self._resolve(bucket, path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(data, Path):
                shutil.copyfile(data, target)
            else:
                target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("storage.uploaded", bucket=bucket, path=path, content_type=content_type)
        return f"{bucket}/{path}"

    async def download(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as exc:
            raise FileMissingError(
                f"Object not found: {bucket}/{path}", bucket=bucket, path=path
            ) from exc

    async def download_to(self, bucket: str, path: str, destination: Path) -> Path:
        """Copy an object to a local file, e.g. into a job's work directory."""
        source = self._resolve(bucket, path)

        def _copy() -> None:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)

        try:
            await asyncio.to_thread(_copy)
        except FileNotFoundError as exc:
            raise FileMissingError(
                f"Object not found: {bucket}/{path}", bucket=bucket, path=path
            ) from exc
        return destination

    async def delete(self, bucket: str, path: str) -> None:
        target = self._resolve(bucket, path)
        await asyncio.to_thread(target.unlink, missing_ok=True)
        logger.info("storage.deleted", bucket=bucket, path=path)

    async def exists(self, bucket: str, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(bucket, path).is_file)

    # ── Signed URLs ─────────────────────────────────────────────────────

    def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        """URL granting read access to one object until the TTL runs out."""
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "bucket": bucket,
                "path": path,
                "iat": now,
                "exp": now + timedelta(seconds=ttl_seconds),
                "type": "download",
            },
            self._secret_key,
            algorithm=self._algorithm,
        )
        return f"{self._base_url}?token={token}"

    def verify_signed_token(self, token: str) -> tuple[str, str]:
        """Return ``(bucket, path)`` for a valid download token.

        Raises:
            PermissionError: If the token is expired, tampered with, or not a
                download token.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            raise PermissionError(f"Invalid download token: {exc}") from exc
        if payload.get("type") != "download":
            raise PermissionError("Token is not a download token")
        return payload["bucket"], payload["path"]
