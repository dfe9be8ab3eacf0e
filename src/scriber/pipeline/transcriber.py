"""Sequential chunk transcription.

Chunks are transcribed strictly in order so each call can see the previous
chunk's speakers and closing lines. A chunk that still fails after its own
retries is recorded and skipped; the stage fails only when more than half of
the chunks fail. The surviving output is normalized once at the end.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from src.scriber.core.monitoring import chunk_failures_total
from src.scriber.meetings.schemas import Meeting, QualityMetrics, SpeakerDraft
from src.scriber.pipeline.chunker import AudioChunk, AudioChunker
from src.scriber.pipeline.continuity import ContinuityTracker
from src.scriber.pipeline.errors import (
    ChunkFailureThresholdError,
    PermanentProviderError,
    TransientProviderError,
)
from src.scriber.pipeline.normalizer import DraftSegment, NormalizationReport, normalize_segments
from src.scriber.pipeline.port import TranscriptionPort
from src.scriber.pipeline.progress import (
    ProgressBroadcaster,
    ProgressEstimator,
    ProgressStatus,
    ProgressStep,
)
from src.scriber.providers.base import RawSegment

logger = structlog.get_logger(__name__)

INAUDIBLE_MARKER = "[inaudible]"
PROGRESS_START = 10
PROGRESS_END = 90

CancelCheck = Callable[[], Awaitable[None]]


@dataclass
class TranscriptionOutcome:
    speakers: list[SpeakerDraft]
    report: NormalizationReport
    chunks_total: int
    failed_chunks: list[int] = field(default_factory=list)

    @property
    def segments(self) -> list[DraftSegment]:
        return self.report.segments

    @property
    def metrics(self) -> QualityMetrics:
        return compute_quality(
            self.segments,
            self.speakers,
            chunks_total=self.chunks_total,
            chunks_failed=len(self.failed_chunks),
            anomalies=self.report.inverted,
        )


def compute_quality(
    segments: list[DraftSegment],
    speakers: list[SpeakerDraft],
    *,
    chunks_total: int = 1,
    chunks_failed: int = 0,
    anomalies: int = 0,
) -> QualityMetrics:
    """Quality score is the audible share of segments, scaled by chunk success."""
    total = len(segments)
    inaudible = sum(1 for s in segments if INAUDIBLE_MARKER in s.text.lower())
    audible_share = (total - inaudible) / total if total else 1.0
    chunk_share = (chunks_total - chunks_failed) / chunks_total if chunks_total else 1.0
    avg_confidence = (
        sum(s.name_confidence for s in speakers) / len(speakers) if speakers else None
    )
    return QualityMetrics(
        quality_score=round(audible_share * chunk_share * 100),
        inaudible_count=inaudible,
        avg_speaker_confidence=avg_confidence,
        timestamp_anomalies=anomalies,
        failed_chunks=chunks_failed,
    )


def _checkpoint(index: int, total: int) -> int:
    return PROGRESS_START + (PROGRESS_END - PROGRESS_START) * index // max(total, 1)


class ChunkedTranscriber:
    """Runs the chunk loop for one meeting and returns normalized output.

    Args:
        port: Retry-wrapped provider.
        chunker: Splits the source audio.
        broadcaster: Receives per-chunk progress and retry events.
    """

    def __init__(
        self,
        port: TranscriptionPort,
        chunker: AudioChunker,
        broadcaster: ProgressBroadcaster,
        estimate_interval: float = 3.0,
    ) -> None:
        self._port = port
        self._chunker = chunker
        self._broadcaster = broadcaster
        self._estimate_interval = estimate_interval

    async def run(
        self,
        meeting: Meeting,
        source: Path,
        work_dir: Path,
        cancel_check: CancelCheck,
    ) -> TranscriptionOutcome:
        meeting_id = str(meeting.id)
        log = logger.bind(meeting_id=meeting_id)

        chunks = await self._chunker.split(source, meeting.duration_seconds, work_dir)
        total = len(chunks)
        log.info("transcriber.started", chunks=total, duration=meeting.duration_seconds)

        tracker = ContinuityTracker()
        drafts: list[DraftSegment] = []
        failed: list[int] = []
        transient_failures = 0

        for chunk in chunks:
            await cancel_check()
            context = tracker.build_context() if chunk.index > 0 else None
            start = _checkpoint(chunk.index, total)
            await self._broadcaster.publish(
                meeting.user_id,
                meeting_id,
                ProgressStep.TRANSCRIPTION,
                ProgressStatus.PROCESSING,
                start,
                detail={"chunk": chunk.index + 1, "chunks": total},
            )
            try:
                raw = await self._transcribe_chunk(meeting, chunk, context, start, total)
            except (TransientProviderError, PermanentProviderError) as exc:
                failed.append(chunk.index)
                if isinstance(exc, TransientProviderError):
                    transient_failures += 1
                chunk_failures_total.inc()
                log.warning(
                    "transcriber.chunk_failed",
                    chunk_index=chunk.index,
                    chunks=total,
                    error=str(exc),
                )
                continue
            drafts.extend(tracker.observe(raw))

        if len(failed) * 2 > total:
            raise ChunkFailureThresholdError(
                failed=len(failed),
                total=total,
                retryable=transient_failures > 0,
            )

        report = normalize_segments(drafts, meeting.duration_seconds)
        speakers = [
            SpeakerDraft(
                key=entry.key,
                display_name=entry.display_name,
                is_unknown=entry.is_unknown,
                name_confidence=entry.name_confidence,
            )
            for entry in tracker.registry.speakers
        ]
        log.info(
            "transcriber.finished",
            segments=len(report.segments),
            speakers=len(speakers),
            failed_chunks=failed,
            inverted=report.inverted,
            nudged=report.nudged,
            dropped=report.dropped,
        )
        return TranscriptionOutcome(
            speakers=speakers,
            report=report,
            chunks_total=total,
            failed_chunks=failed,
        )

    async def _transcribe_chunk(
        self,
        meeting: Meeting,
        chunk: AudioChunk,
        context: str | None,
        start: int,
        total: int,
    ) -> list[RawSegment]:
        meeting_id = str(meeting.id)

        async def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            await self._broadcaster.publish(
                meeting.user_id,
                meeting_id,
                ProgressStep.TRANSCRIPTION,
                ProgressStatus.RETRYING,
                detail={
                    "chunk": chunk.index + 1,
                    "chunks": total,
                    "attempt": attempt,
                    "delay": round(delay, 1),
                    "reason": str(error),
                },
            )

        estimator = ProgressEstimator(
            self._broadcaster,
            meeting.user_id,
            meeting_id,
            ProgressStep.TRANSCRIPTION,
            start=start,
            ceiling=_checkpoint(chunk.index + 1, total) - 1,
            interval=self._estimate_interval,
        )
        async with estimator:
            return await self._port.transcribe(
                chunk.path,
                chunk.index,
                chunk.start_offset,
                context,
                mime_type=meeting.mime_type,
                on_retry=on_retry,
            )
