"""Tests for normalize_segments timestamp repair.

Covers:
- Inverted spans become start + 5s and carry a quality flag
- Overlaps are nudged forward; text order follows start time
- Short spans are extended to the minimum duration
- Clamping to the audio length drops or merges trailing spans
- Output is sorted, non-overlapping, and idempotent
"""

from __future__ import annotations

from src.scriber.pipeline.normalizer import (
    FLAG_INVERTED,
    FLAG_MERGED,
    MIN_SEGMENT_DURATION,
    DraftSegment,
    normalize_segments,
)


def seg(start: float, end: float, text: str = "x", speaker: str = "speaker_1") -> DraftSegment:
    return DraftSegment(start_time=start, end_time=end, text=text, speaker_key=speaker)


def spans(report) -> list[tuple[float, float]]:
    return [(s.start_time, s.end_time) for s in report.segments]


def assert_well_formed(report, audio_duration=None) -> None:
    prev_end = 0.0
    for s in report.segments:
        assert s.start_time >= prev_end
        assert s.end_time - s.start_time >= MIN_SEGMENT_DURATION - 1e-9
        if audio_duration:
            assert s.end_time <= audio_duration
        prev_end = s.end_time


class TestInversion:
    def test_inverted_span_after_clean_span(self):
        report = normalize_segments([seg(9, 10, "a"), seg(10, 9.5, "b")])

        assert spans(report) == [(9, 10), (10, 15)]
        assert FLAG_INVERTED in report.segments[1].quality_flags
        assert FLAG_INVERTED not in report.segments[0].quality_flags
        assert report.inverted == 1

    def test_inverted_span_is_clamped_to_audio(self):
        report = normalize_segments([seg(58, 1.3)], audio_duration=60)
        assert spans(report) == [(58, 60)]


class TestOrderingAndOverlap:
    def test_sorted_by_start(self):
        report = normalize_segments([seg(20, 25, "late"), seg(0, 5, "early")])
        assert [s.text for s in report.segments] == ["early", "late"]

    def test_overlap_nudged_to_previous_end(self):
        report = normalize_segments([seg(0, 10), seg(8, 14)])
        assert spans(report) == [(0, 10), (10, 14)]
        assert report.nudged == 1

    def test_negative_start_clamped_to_zero(self):
        report = normalize_segments([seg(-2, 3)])
        assert spans(report) == [(0, 3)]

    def test_short_span_extended(self):
        report = normalize_segments([seg(0, 4), seg(4, 4.1)])
        assert spans(report) == [(0, 4), (4, 4.5)]
        assert report.extended == 1


class TestClamping:
    def test_span_past_end_dropped(self):
        report = normalize_segments([seg(0, 5), seg(12, 14)], audio_duration=10)
        assert spans(report) == [(0, 5)]
        assert report.dropped == 1

    def test_short_tail_merged_into_previous(self):
        report = normalize_segments(
            [seg(0, 9.8, "first"), seg(9.8, 11, "tail")], audio_duration=10
        )

        assert spans(report) == [(0, 10)]
        assert report.segments[0].text == "first tail"
        assert FLAG_MERGED in report.segments[0].quality_flags
        assert report.merged == 1

    def test_short_tail_borrows_room_from_gap(self):
        report = normalize_segments([seg(0, 5), seg(9.9, 12)], audio_duration=10)
        assert spans(report) == [(0, 5), (9.5, 10)]

    def test_unknown_duration_applies_no_upper_clamp(self):
        report = normalize_segments([seg(0, 5000)], audio_duration=0)
        assert spans(report) == [(0, 5000)]


class TestProperties:
    def test_messy_input_is_well_formed_and_idempotent(self):
        messy = [
            seg(30, 28, "inverted"),
            seg(0, 12, "a"),
            seg(11, 11.2, "short overlap"),
            seg(-1, 0.1, "negative"),
            seg(59.8, 70, "tail"),
            seg(80, 85, "past end"),
        ]
        first = normalize_segments(messy, audio_duration=60)
        second = normalize_segments(first.segments, audio_duration=60)

        assert_well_formed(first, audio_duration=60)
        assert second.segments == first.segments

    def test_text_is_preserved(self):
        report = normalize_segments([seg(5, 3, "b"), seg(0, 2, "a"), seg(1, 1.5, "c")])
        assert sorted(s.text for s in report.segments) == ["a", "b", "c"]
