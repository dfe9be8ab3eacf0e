"""Audio chunking with ffmpeg stream copy.

Long recordings exceed what the transcription provider accepts in one
request, so they are cut into time-aligned slices with ffmpeg's segment
muxer (``-c copy``, no re-encode). Every job works in its own directory under
the chunk temp root; the directory is removed when the job finishes and a
periodic sweep removes anything a crashed process left behind.

If ffmpeg is missing or fails, the whole file is transcribed as a single
chunk and the provider retry path absorbs the risk.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_THRESHOLD = 1800
CHUNK_TOLERANCE = 1.2
DEFAULT_MAX_AGE_SECONDS = 3600
FFMPEG_TIMEOUT_SECONDS = 600
FFPROBE_TIMEOUT_SECONDS = 60


def should_chunk(duration_seconds: float, chunk_threshold: float = DEFAULT_CHUNK_THRESHOLD) -> bool:
    """Whether a recording is long enough to be split.

    Recordings up to 20% over the threshold are sent whole; chunking them
    would cost more in context loss than it saves.
    """
    return duration_seconds >= chunk_threshold * CHUNK_TOLERANCE


@dataclass(frozen=True)
class AudioChunk:
    """One slice of a recording, with its offset into the original audio."""

    index: int
    path: Path
    start_offset: float
    duration: float


def _run(args: Sequence[str], timeout: float) -> subprocess.CompletedProcess[str]:
    return subprocess.run(list(args), capture_output=True, text=True, timeout=timeout)


class AudioChunker:
    """Splits recordings into provider-sized chunks and owns their temp files.

    Args:
        temp_root: Directory under which per-job chunk directories are created.
        chunk_threshold: Target chunk length in seconds.
        max_age_seconds: Age after which sweep_stale() removes a job directory.
    """

    def __init__(
        self,
        temp_root: str | Path,
        chunk_threshold: int = DEFAULT_CHUNK_THRESHOLD,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
    ) -> None:
        self.temp_root = Path(temp_root)
        self.chunk_threshold = chunk_threshold
        self.max_age_seconds = max_age_seconds
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe

    # ── Probing ─────────────────────────────────────────────────────────

    async def probe_duration(self, path: str | Path) -> float:
        """Return the audio duration in seconds, or 0.0 if it cannot be read."""
        args = [
            self._ffprobe,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            result = await asyncio.to_thread(_run, args, FFPROBE_TIMEOUT_SECONDS)
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            logger.warning("chunker.probe_failed", path=str(path), error=str(exc))
            return 0.0
        if result.returncode != 0:
            logger.warning("chunker.probe_failed", path=str(path), stderr=result.stderr.strip())
            return 0.0
        try:
            duration = float(result.stdout.strip())
        except ValueError:
            logger.warning("chunker.probe_unparseable", path=str(path), stdout=result.stdout.strip())
            return 0.0
        return duration if duration > 0 else 0.0

    # ── Workspace ───────────────────────────────────────────────────────

    @asynccontextmanager
    async def workspace(self, meeting_id: str, job_id: str) -> AsyncIterator[Path]:
        """Create a per-job directory and remove it unconditionally on exit."""
        work_dir = self.temp_root / f"{meeting_id}_{job_id}"
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            yield work_dir
        finally:
            self._remove(work_dir)

    def _remove(self, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("chunker.cleanup_failed", path=str(path), error=str(exc))

    def sweep_stale(self, now: float | None = None) -> int:
        """Remove job directories older than max_age_seconds. Returns count removed."""
        if not self.temp_root.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - self.max_age_seconds
        removed = 0
        for entry in self.temp_root.iterdir():
            if not entry.is_dir():
                continue
            try:
                mtime = entry.stat().st_mtime
            except FileNotFoundError:
                continue
            if mtime < cutoff:
                self._remove(entry)
                removed += 1
        if removed:
            logger.info("chunker.swept", removed=removed, root=str(self.temp_root))
        return removed

    # ── Splitting ───────────────────────────────────────────────────────

    async def split(self, source: Path, duration: float, work_dir: Path) -> list[AudioChunk]:
        """Split ``source`` into time-aligned chunks inside ``work_dir``.

        Returns a single chunk covering the whole file when the recording is
        short enough or when ffmpeg is unavailable or fails.
        """
        whole = [AudioChunk(index=0, path=source, start_offset=0.0, duration=duration)]
        if not should_chunk(duration, self.chunk_threshold):
            return whole

        chunk_dir = work_dir / "chunks"
        chunk_dir.mkdir(parents=True, exist_ok=True)
        pattern = chunk_dir / f"chunk_%03d{source.suffix}"
        args = [
            self._ffmpeg,
            "-i", str(source),
            "-f", "segment",
            "-segment_time", str(self.chunk_threshold),
            "-c", "copy",
            "-reset_timestamps", "1",
            str(pattern),
            "-y",
        ]

        try:
            result = await asyncio.to_thread(_run, args, FFMPEG_TIMEOUT_SECONDS)
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            logger.warning("chunker.split_failed", source=str(source), error=str(exc))
            return whole
        if result.returncode != 0:
            logger.warning(
                "chunker.split_failed",
                source=str(source),
                returncode=result.returncode,
                stderr=result.stderr.strip()[-500:],
            )
            return whole

        files = sorted(p for p in chunk_dir.iterdir() if p.name.startswith("chunk_"))
        if not files:
            logger.warning("chunker.split_empty", source=str(source))
            return whole

        chunks = await self._with_offsets(files, duration)
        logger.info(
            "chunker.split",
            source=str(source),
            duration=round(duration, 1),
            chunks=len(chunks),
        )
        return chunks

    async def _with_offsets(self, files: list[Path], total_duration: float) -> list[AudioChunk]:
        # Stream copy cuts on keyframes, so measured lengths beat nominal ones.
        durations = [await self.probe_duration(f) for f in files]
        measured = all(d > 0 for d in durations)

        chunks: list[AudioChunk] = []
        offset = 0.0
        for index, path in enumerate(files):
            start = offset if measured else float(index * self.chunk_threshold)
            if measured:
                length = durations[index]
            else:
                length = max(0.0, min(self.chunk_threshold, total_duration - start))
            chunks.append(AudioChunk(index=index, path=path, start_offset=start, duration=length))
            offset += durations[index]
        return chunks
