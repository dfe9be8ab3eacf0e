"""Timestamp repair for concatenated chunk transcripts.

Provider output arrives already offset to absolute time but may be out of
order, overlapping, inverted (end before start, typically a ``mm.ss`` value
read as a float), or past the end of the audio. normalize_segments() makes
the list safe to persist:

1. stable sort by start time
2. inverted spans become ``start + 5s`` and are flagged
3. each start is nudged forward to the previous end (no overlap)
4. spans shorter than 0.5s are extended at the end
5. everything is clamped into [0, audio_duration]; spans that start at or
   past the end are dropped

Text is never reordered. A span that cannot reach the minimum duration
inside the clamp window is folded into the previous span rather than lost.
The function is deterministic and idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

MIN_SEGMENT_DURATION = 0.5
INVERTED_SPAN_FALLBACK = 5.0
# Float slack so re-running on normalized output changes nothing
_EPSILON = 1e-9

FLAG_INVERTED = "timestamp_inverted"
FLAG_MERGED = "merged_short_tail"


@dataclass(frozen=True)
class DraftSegment:
    """A transcript span before persistence; times are absolute seconds."""

    start_time: float
    end_time: float
    text: str
    speaker_key: str
    languages_used: tuple[str, ...] = ()
    quality_flags: frozenset[str] = frozenset()

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class NormalizationReport:
    segments: list[DraftSegment] = field(default_factory=list)
    inverted: int = 0
    nudged: int = 0
    extended: int = 0
    dropped: int = 0
    merged: int = 0


def _flag(segment: DraftSegment, flag: str) -> DraftSegment:
    return replace(segment, quality_flags=segment.quality_flags | {flag})


def normalize_segments(
    segments: list[DraftSegment],
    audio_duration: float | None = None,
) -> NormalizationReport:
    """Repair ordering, overlap, inversion, and range defects.

    Args:
        segments: Concatenated chunk output, already offset per chunk.
        audio_duration: Recording length in seconds. When unknown (None or
            <= 0) no upper clamp is applied.
    """
    report = NormalizationReport()
    upper = audio_duration if audio_duration and audio_duration > 0 else None

    ordered = sorted(segments, key=lambda s: s.start_time)

    repaired: list[DraftSegment] = []
    prev_end = 0.0
    for seg in ordered:
        start = max(0.0, seg.start_time)
        end = seg.end_time

        if end < start:
            end = start + INVERTED_SPAN_FALLBACK
            seg = _flag(seg, FLAG_INVERTED)
            report.inverted += 1

        if repaired and start < prev_end:
            start = prev_end
            report.nudged += 1

        if end - start < MIN_SEGMENT_DURATION - _EPSILON:
            end = start + MIN_SEGMENT_DURATION
            report.extended += 1

        repaired.append(replace(seg, start_time=start, end_time=end))
        prev_end = end

    if upper is None:
        report.segments = repaired
        return report

    clamped: list[DraftSegment] = []
    for seg in repaired:
        if seg.start_time >= upper:
            report.dropped += 1
            continue
        end = min(seg.end_time, upper)
        start = seg.start_time
        if end - start < MIN_SEGMENT_DURATION - _EPSILON:
            floor = clamped[-1].end_time if clamped else 0.0
            start = max(floor, end - MIN_SEGMENT_DURATION)
        # A recording shorter than the minimum keeps its single short span
        if end - start >= MIN_SEGMENT_DURATION - _EPSILON or not clamped:
            clamped.append(replace(seg, start_time=start, end_time=end))
            continue
        prev = clamped[-1]
        clamped[-1] = _flag(
            replace(prev, end_time=end, text=f"{prev.text} {seg.text}".strip()),
            FLAG_MERGED,
        )
        report.merged += 1

    report.segments = clamped
    return report
