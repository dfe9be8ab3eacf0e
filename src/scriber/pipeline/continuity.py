"""Cross-chunk speaker and narrative continuity.

Chunks are transcribed one after another. Before every chunk except the
first, the tracker renders a context block listing the speakers seen so far
and the last few lines with absolute timestamps, so the provider keeps the
same speaker ids instead of introducing a known voice under a new label.

Speaker identity is an append-only registry numbered in first-seen order.
Entries are looked up, never re-indexed. A placeholder label ("Speaker 3")
is promoted to a real name only when the provider attaches a non-zero name
confidence to a non-placeholder label, and a confidence, once set, is never
overwritten.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field

import structlog

from src.scriber.pipeline.normalizer import DraftSegment
from src.scriber.providers.base import RawSegment

logger = structlog.get_logger(__name__)

CONTEXT_SEGMENT_COUNT = 10

_PLACEHOLDER = re.compile(r"^\s*(speaker|unknown|spk|person|voice)?[\s_#-]*\d*\s*$", re.IGNORECASE)


def is_placeholder(label: str) -> bool:
    """True for empty or anonymous labels such as 'Speaker 2', 'spk_1', 'Unknown'."""
    return bool(_PLACEHOLDER.match(label or ""))


def format_timestamp(seconds: float) -> str:
    total = int(max(0.0, seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


# ── Speaker registry ─────────────────────────────────────────────────────────


@dataclass
class RegisteredSpeaker:
    key: str
    ordinal: int
    display_name: str
    is_unknown: bool = True
    name_confidence: float = 0.0
    provider_ids: list[str] = field(default_factory=list)


class SpeakerRegistry:
    """First-seen-order speaker registry for one meeting's transcription job."""

    def __init__(self) -> None:
        self._entries: list[RegisteredSpeaker] = []
        self._by_provider_id: dict[str, RegisteredSpeaker] = {}
        self._by_name: dict[str, RegisteredSpeaker] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def speakers(self) -> list[RegisteredSpeaker]:
        return list(self._entries)

    def label_for(self, provider_id: str) -> str | None:
        entry = self._by_provider_id.get(provider_id)
        return entry.display_name if entry else None

    def provider_labels(self) -> dict[str, str]:
        """Provider speaker id -> current display name, in first-seen order."""
        return {pid: entry.display_name for pid, entry in self._by_provider_id.items()}

    def register(self, segment: RawSegment) -> RegisteredSpeaker:
        """Resolve the speaker of a provider segment, creating it on first sight."""
        label = segment.speaker_label.strip()
        provider_id = segment.speaker_id.strip() or label or "unknown"
        named = not is_placeholder(label) and segment.name_confidence > 0

        entry = self._by_provider_id.get(provider_id)
        if entry is None and named:
            # Same person under a fresh provider id in a later chunk
            entry = self._by_name.get(label.casefold())

        if entry is None:
            ordinal = len(self._entries) + 1
            entry = RegisteredSpeaker(
                key=f"speaker_{ordinal}",
                ordinal=ordinal,
                display_name=label if named else f"Speaker {ordinal}",
                is_unknown=not named,
                name_confidence=segment.name_confidence if named else 0.0,
            )
            self._entries.append(entry)
            self._by_name[entry.display_name.casefold()] = entry
        elif named:
            self._promote(entry, label, segment.name_confidence)

        if provider_id not in entry.provider_ids:
            entry.provider_ids.append(provider_id)
        self._by_provider_id[provider_id] = entry
        return entry

    def _promote(self, entry: RegisteredSpeaker, name: str, confidence: float) -> None:
        if entry.is_unknown:
            holder = self._by_name.get(name.casefold())
            if holder is not None and holder is not entry:
                logger.info(
                    "continuity.name_taken",
                    name=name,
                    speaker=entry.key,
                    holder=holder.key,
                )
                return
            self._by_name.pop(entry.display_name.casefold(), None)
            entry.display_name = name
            entry.is_unknown = False
            self._by_name[name.casefold()] = entry
        if entry.name_confidence == 0 and confidence > 0:
            entry.name_confidence = confidence


# ── Context tracking ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ContextLine:
    start_time: float
    speaker: str
    text: str


@dataclass(frozen=True)
class ChunkContext:
    """What the next chunk's provider call is told about earlier chunks."""

    speakers: dict[str, str]
    recent: tuple[ContextLine, ...]

    def render(self) -> str:
        lines = ["Known speakers (keep these ids and labels):"]
        lines.extend(f"- {pid}: {label}" for pid, label in self.speakers.items())
        lines.append("")
        lines.append("Last lines of the previous chunk:")
        lines.extend(
            f"[{format_timestamp(line.start_time)}] {line.speaker}: {line.text}"
            for line in self.recent
        )
        return "\n".join(lines)


class ContinuityTracker:
    """Threads speaker identity and recent lines through a sequential chunk loop."""

    def __init__(
        self,
        registry: SpeakerRegistry | None = None,
        context_size: int = CONTEXT_SEGMENT_COUNT,
    ) -> None:
        self.registry = registry or SpeakerRegistry()
        self._recent: deque[tuple[float, str, str]] = deque(maxlen=context_size)

    def observe(self, segments: list[RawSegment]) -> list[DraftSegment]:
        """Register one chunk's segments and convert them to drafts."""
        drafts: list[DraftSegment] = []
        for raw in segments:
            text = raw.text.strip()
            if not text:
                continue
            speaker = self.registry.register(raw)
            drafts.append(
                DraftSegment(
                    start_time=raw.start_time,
                    end_time=raw.end_time,
                    text=text,
                    speaker_key=speaker.key,
                    languages_used=tuple(raw.languages_used),
                )
            )
            self._recent.append((raw.start_time, speaker.key, text))
        return drafts

    def snapshot(self) -> ChunkContext | None:
        if not self._recent:
            return None
        names = {entry.key: entry.display_name for entry in self.registry.speakers}
        return ChunkContext(
            speakers=self.registry.provider_labels(),
            recent=tuple(
                ContextLine(start_time=start, speaker=names[key], text=text)
                for start, key, text in self._recent
            ),
        )

    def build_context(self) -> str | None:
        """Rendered context for the next chunk, or None before any output exists."""
        context = self.snapshot()
        return context.render() if context else None
