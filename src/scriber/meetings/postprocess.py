"""Transcript enhancement and redaction stages.

Both stages send the persisted transcript to the provider as indexed text
(``[i] Speaker: text``) and apply the answer back by index. Long transcripts
go out in batches of whole lines under ``max_batch_chars``; every line keeps
its absolute segment index, so answers from any batch apply directly.
Writes carry the stage job's lease token.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

import structlog

from src.scriber.meetings.repository import MeetingRepository
from src.scriber.meetings.schemas import Speaker, TranscriptSegment
from src.scriber.pipeline.continuity import is_placeholder
from src.scriber.pipeline.port import TranscriptionPort
from src.scriber.providers.base import EnhancementResult, RedactionResult

logger = structlog.get_logger(__name__)

UNKNOWN_SPEAKER = "Unknown"
MAX_BATCH_CHARS = 30_000


def _indexed_lines(segments: list[TranscriptSegment], speakers: list[Speaker]) -> list[str]:
    names = {s.id: s.display_name for s in speakers}
    return [
        f"[{i}] {names.get(seg.speaker_id, UNKNOWN_SPEAKER)}: {seg.text}"
        for i, seg in enumerate(segments)
    ]


def build_indexed_transcript(
    segments: list[TranscriptSegment], speakers: list[Speaker]
) -> str:
    return "\n".join(_indexed_lines(segments, speakers))


def batch_indexed_transcript(
    segments: list[TranscriptSegment],
    speakers: list[Speaker],
    max_chars: int = MAX_BATCH_CHARS,
) -> list[str]:
    """Split the indexed transcript into blocks of at most ``max_chars``.

    Lines are never split; a single line longer than the limit gets a batch
    of its own.
    """
    batches: list[str] = []
    current: list[str] = []
    size = 0
    for line in _indexed_lines(segments, speakers):
        if current and size + len(line) + 1 > max_chars:
            batches.append("\n".join(current))
            current, size = [], 0
        current.append(line)
        size += len(line) + 1
    if current:
        batches.append("\n".join(current))
    return batches


@dataclass
class EnhancementSummary:
    corrections_applied: int = 0
    corrections_skipped: int = 0
    speakers_renamed: list[str] = field(default_factory=list)


@dataclass
class RedactionSummary:
    segments_redacted: int = 0
    items_redacted: int = 0
    types_found: list[str] = field(default_factory=list)


class TranscriptEnhancer:
    """Applies provider text corrections and speaker-name evidence.

    A correction is applied only when its index exists and the segment text
    still equals the correction's ``original_text``. A placeholder speaker is
    renamed only when the suggestion quotes evidence and the name is free.
    """

    def __init__(
        self,
        port: TranscriptionPort,
        repository: MeetingRepository,
        max_batch_chars: int = MAX_BATCH_CHARS,
    ) -> None:
        self._port = port
        self._repository = repository
        self._max_batch_chars = max_batch_chars

    async def _enhance_all(
        self, segments: list[TranscriptSegment], speakers: list[Speaker]
    ) -> EnhancementResult:
        merged = EnhancementResult()
        for batch in batch_indexed_transcript(segments, speakers, self._max_batch_chars):
            result = await self._port.enhance(batch)
            merged.corrections.extend(result.corrections)
            merged.speaker_names.extend(result.speaker_names)
        return merged

    async def apply(self, meeting_id: str, lease_token: str) -> EnhancementSummary:
        segments = await self._repository.get_segments(meeting_id)
        speakers = await self._repository.get_speakers(meeting_id)
        summary = EnhancementSummary()
        if not segments:
            return summary

        result = await self._enhance_all(segments, speakers)

        texts: dict[uuid.UUID, str] = {}
        for correction in result.corrections:
            index = correction.segment_index
            if not 0 <= index < len(segments):
                summary.corrections_skipped += 1
                continue
            segment = segments[index]
            if segment.id in texts or segment.text != correction.original_text:
                summary.corrections_skipped += 1
                continue
            if correction.corrected_text.strip() and correction.corrected_text != segment.text:
                texts[segment.id] = correction.corrected_text
        summary.corrections_applied = await self._repository.update_segment_texts(
            meeting_id, texts, lease_token=lease_token
        )

        by_name = {s.display_name: s for s in speakers}
        for suggestion in result.speaker_names:
            speaker = by_name.get(suggestion.current_name)
            name = suggestion.suggested_name.strip()
            if speaker is None or not speaker.is_unknown:
                continue
            if not suggestion.evidence.strip() or not name or is_placeholder(name):
                continue
            promoted = await self._repository.promote_speaker(
                meeting_id,
                speaker.id,
                name,
                suggestion.confidence,
                lease_token=lease_token,
            )
            if promoted is not None:
                summary.speakers_renamed.append(name)

        logger.info(
            "enhancement.applied",
            meeting_id=meeting_id,
            corrections=summary.corrections_applied,
            skipped=summary.corrections_skipped,
            renamed=summary.speakers_renamed,
        )
        return summary


class TranscriptRedactor:
    """Replaces segment text with the provider's redacted version."""

    def __init__(
        self,
        port: TranscriptionPort,
        repository: MeetingRepository,
        max_batch_chars: int = MAX_BATCH_CHARS,
    ) -> None:
        self._port = port
        self._repository = repository
        self._max_batch_chars = max_batch_chars

    async def _redact_all(
        self, segments: list[TranscriptSegment], speakers: list[Speaker]
    ) -> RedactionResult:
        merged = RedactionResult()
        for batch in batch_indexed_transcript(segments, speakers, self._max_batch_chars):
            result = await self._port.redact(batch)
            merged.redacted_segments.extend(result.redacted_segments)
            merged.items_redacted += result.items_redacted
            merged.types_found.extend(result.types_found)
        return merged

    async def apply(self, meeting_id: str, lease_token: str) -> RedactionSummary:
        segments = await self._repository.get_segments(meeting_id)
        speakers = await self._repository.get_speakers(meeting_id)
        if not segments:
            return RedactionSummary()

        result = await self._redact_all(segments, speakers)

        texts = {
            segments[r.segment_index].id: r.redacted_text
            for r in result.redacted_segments
            if 0 <= r.segment_index < len(segments)
            and r.redacted_text != segments[r.segment_index].text
        }
        changed = await self._repository.update_segment_texts(
            meeting_id, texts, lease_token=lease_token
        )
        summary = RedactionSummary(
            segments_redacted=changed,
            items_redacted=result.items_redacted,
            types_found=sorted(set(result.types_found)),
        )
        logger.info(
            "redaction.applied",
            meeting_id=meeting_id,
            segments=summary.segments_redacted,
            items=summary.items_redacted,
            types=summary.types_found,
        )
        return summary
