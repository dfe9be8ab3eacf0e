"""Tests for speaker registry and cross-chunk context.

Covers:
- Placeholder label detection and timestamp formatting
- First-seen numbering, stable identity across chunks
- Named speakers, promotion, and confidence that is set once
- A name already held by another speaker is not reassigned
- Context is absent before the first output and lists known speakers after
"""

from __future__ import annotations

import pytest

from src.scriber.pipeline.continuity import (
    ContinuityTracker,
    SpeakerRegistry,
    format_timestamp,
    is_placeholder,
)
from src.scriber.providers.base import RawSegment


def raw(speaker_id: str, text: str = "hello", label: str = "", confidence: float = 0.0, start: float = 0.0):
    return RawSegment(
        speakerId=speaker_id,
        speakerLabel=label,
        text=text,
        startTime=start,
        endTime=start + 2,
        nameConfidence=confidence,
    )


class TestHelpers:
    @pytest.mark.parametrize("label", ["", "Speaker 2", "spk_1", "Unknown", "  speaker-10 ", "3"])
    def test_placeholders(self, label):
        assert is_placeholder(label)

    @pytest.mark.parametrize("label", ["Alice", "Dr. Chen", "Speaker Relations Team"])
    def test_real_names(self, label):
        assert not is_placeholder(label)

    def test_format_timestamp(self):
        assert format_timestamp(0) == "00:00:00"
        assert format_timestamp(3725.9) == "01:02:05"
        assert format_timestamp(-3) == "00:00:00"


class TestSpeakerRegistry:
    def test_numbered_in_first_seen_order(self):
        registry = SpeakerRegistry()
        a = registry.register(raw("s2"))
        b = registry.register(raw("s1"))
        again = registry.register(raw("s2"))

        assert (a.key, a.display_name) == ("speaker_1", "Speaker 1")
        assert (b.key, b.display_name) == ("speaker_2", "Speaker 2")
        assert again is a
        assert len(registry) == 2

    def test_named_speaker_registered_with_confidence(self):
        entry = SpeakerRegistry().register(raw("s1", label="Alice", confidence=0.8))
        assert entry.display_name == "Alice"
        assert entry.is_unknown is False
        assert entry.name_confidence == 0.8

    def test_label_without_confidence_stays_placeholder(self):
        entry = SpeakerRegistry().register(raw("s1", label="Alice", confidence=0.0))
        assert entry.display_name == "Speaker 1"
        assert entry.is_unknown is True

    def test_promotion_keeps_first_confidence(self):
        registry = SpeakerRegistry()
        registry.register(raw("s1"))
        promoted = registry.register(raw("s1", label="Bob", confidence=0.6))
        later = registry.register(raw("s1", label="Bob", confidence=0.95))

        assert promoted.display_name == "Bob"
        assert promoted.is_unknown is False
        assert later.name_confidence == 0.6
        assert promoted.key == "speaker_1"

    def test_same_name_under_new_provider_id_maps_to_same_speaker(self):
        registry = SpeakerRegistry()
        first = registry.register(raw("s1", label="Alice", confidence=0.9))
        second = registry.register(raw("chunk2-a", label="Alice", confidence=0.7))

        assert second is first
        assert first.provider_ids == ["s1", "chunk2-a"]
        assert len(registry) == 1

    def test_name_held_by_other_speaker_is_not_reassigned(self):
        registry = SpeakerRegistry()
        registry.register(raw("s1", label="Alice", confidence=0.9))
        other = registry.register(raw("s2"))
        registry.register(raw("s2", label="Alice", confidence=0.9))

        assert other.display_name == "Speaker 2"
        assert other.is_unknown is True


class TestContinuityTracker:
    def test_no_context_before_output(self):
        assert ContinuityTracker().build_context() is None

    def test_empty_text_is_skipped(self):
        tracker = ContinuityTracker()
        drafts = tracker.observe([raw("s1", text="   "), raw("s1", text="hi")])
        assert [d.text for d in drafts] == ["hi"]
        assert drafts[0].speaker_key == "speaker_1"

    def test_context_lists_speakers_and_recent_lines(self):
        tracker = ContinuityTracker(context_size=2)
        tracker.observe(
            [
                raw("s1", "first line", start=10),
                raw("s2", "second line", label="Dana", confidence=0.7, start=20),
                raw("s1", "third line", start=1805),
            ]
        )

        context = tracker.build_context()

        assert "- s1: Speaker 1" in context
        assert "- s2: Dana" in context
        assert "first line" not in context
        assert "[00:00:20] Dana: second line" in context
        assert "[00:30:05] Speaker 1: third line" in context

    def test_speaker_identity_stable_across_chunks(self):
        tracker = ContinuityTracker()
        chunk_one = tracker.observe([raw("s1", "a"), raw("s2", "b")])
        chunk_two = tracker.observe([raw("s2", "c", start=1800), raw("s1", "d", start=1805)])

        keys_one = {d.text: d.speaker_key for d in chunk_one}
        keys_two = {d.text: d.speaker_key for d in chunk_two}
        assert keys_one["a"] == keys_two["d"] == "speaker_1"
        assert keys_one["b"] == keys_two["c"] == "speaker_2"
