"""Tests for RedisJobQueue payloads, unit markers, and dead letters.

Covers:
- Tagged-union payload parsing rejects unknown stages and extra fields
- enqueue claims the unit marker and rejects duplicates with the holder's id
- requeue bumps the attempt and keeps the unit
- mark_active drops deliveries whose unit was released or replaced
- remove_waiting only removes jobs still in the stream
- Malformed stream entries are dead-lettered instead of dispatched
- replay_dead_letter re-enqueues and removes the DLQ entry
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from src.scriber.meetings.schemas import JobState, MinutesTemplate, PipelineStage
from src.scriber.pipeline.errors import DuplicateJobError
from src.scriber.pipeline.jobs import (
    MinutesPayload,
    RedisJobQueue,
    TranscriptionPayload,
    build_payload,
    parse_payload,
)


class FakeRedis:
    """Just enough of redis.asyncio for the queue: strings and streams."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.streams: dict[str, dict[str, dict[str, str]]] = {}
        self.acked: list[tuple[str, str]] = []
        self._seq = 0

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def get(self, key):
        return self.values.get(key)

    async def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0

    async def exists(self, key):
        return 1 if key in self.values else 0

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        self._seq += 1
        message_id = f"{self._seq}-0"
        self.streams.setdefault(stream, {})[message_id] = dict(fields)
        return message_id

    async def xdel(self, stream, message_id):
        return 1 if self.streams.get(stream, {}).pop(message_id, None) is not None else 0

    async def xack(self, stream, group, message_id):
        self.acked.append((stream, message_id))
        return 1

    async def xrange(self, stream, min="-", max="+", count=None):
        entries = list(self.streams.get(stream, {}).items())
        if min != "-":
            entries = [(mid, data) for mid, data in entries if mid == min]
        return entries[:count] if count else entries


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def job_queue(redis) -> RedisJobQueue:
    return RedisJobQueue(redis)


def _transcription(meeting_id: str = "m1") -> TranscriptionPayload:
    return TranscriptionPayload(meeting_id=meeting_id, user_id="u1")


# ── Payloads ─────────────────────────────────────────────────────────────────


class TestPayloads:
    def test_parse_selects_type_by_stage(self):
        raw = json.dumps(
            {"stage": "minutes", "meeting_id": "m1", "user_id": "u1", "template": "DETAILED"}
        )
        payload = parse_payload(raw)
        assert isinstance(payload, MinutesPayload)
        assert payload.template is MinutesTemplate.DETAILED

    def test_unknown_stage_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload(json.dumps({"stage": "translation", "meeting_id": "m1", "user_id": "u1"}))

    def test_extra_fields_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload(
                json.dumps({"stage": "transcription", "meeting_id": "m1", "user_id": "u1", "x": 1})
            )

    def test_build_payload(self):
        payload = build_payload(PipelineStage.ENHANCEMENT, meeting_id="m1", user_id="u1")
        assert payload.stage is PipelineStage.ENHANCEMENT
        assert payload.skip_downstream is False


# ── Enqueue / requeue ────────────────────────────────────────────────────────


class TestEnqueue:
    async def test_enqueue_publishes_and_records(self, job_queue, redis):
        job = await job_queue.enqueue(_transcription())

        assert job.state is JobState.WAITING
        assert job.attempt_count == 1
        entry = redis.streams[RedisJobQueue.stream_key(PipelineStage.TRANSCRIPTION)][job.message_id]
        assert entry["job_id"] == job.id
        assert entry["attempt"] == "1"
        assert await job_queue.get_unit(PipelineStage.TRANSCRIPTION, "m1") == job

    async def test_duplicate_unit_rejected(self, job_queue):
        first = await job_queue.enqueue(_transcription())

        with pytest.raises(DuplicateJobError) as exc_info:
            await job_queue.enqueue(_transcription())
        assert exc_info.value.context["existing_job_id"] == first.id

    async def test_other_stage_same_meeting_allowed(self, job_queue):
        await job_queue.enqueue(_transcription())
        minutes = await job_queue.enqueue(MinutesPayload(meeting_id="m1", user_id="u1"))
        units = await job_queue.list_units("m1")
        assert [u.stage for u in units] == [PipelineStage.TRANSCRIPTION, PipelineStage.MINUTES]
        assert units[1].id == minutes.id

    async def test_requeue_bumps_attempt_and_keeps_unit(self, job_queue):
        payload = _transcription()
        job = await job_queue.enqueue(payload)
        active = await job_queue.mark_active(job.id, 1)

        again = await job_queue.requeue(active, payload)

        assert again.id == job.id
        assert again.attempt_count == 2
        assert again.state is JobState.WAITING
        assert again.message_id != job.message_id
        assert (await job_queue.get_unit(PipelineStage.TRANSCRIPTION, "m1")).id == job.id


# ── State ────────────────────────────────────────────────────────────────────


class TestState:
    async def test_mark_active_then_finish_releases_unit(self, job_queue):
        job = await job_queue.enqueue(_transcription())
        active = await job_queue.mark_active(job.id, 1)
        assert active.state is JobState.ACTIVE

        await job_queue.finish(active, JobState.COMPLETED)

        assert await job_queue.get_unit(PipelineStage.TRANSCRIPTION, "m1") is None
        assert (await job_queue.get_job(job.id)).state is JobState.COMPLETED
        await job_queue.enqueue(_transcription())

    async def test_mark_active_drops_finished_job(self, job_queue):
        job = await job_queue.enqueue(_transcription())
        await job_queue.finish(job, JobState.CANCELLED, "Cancelled by user")
        assert await job_queue.mark_active(job.id, 1) is None

    async def test_mark_active_drops_active_unless_reclaimed(self, job_queue):
        job = await job_queue.enqueue(_transcription())
        await job_queue.mark_active(job.id, 1)

        assert await job_queue.mark_active(job.id, 1) is None
        assert (await job_queue.mark_active(job.id, 1, reclaimed=True)).state is JobState.ACTIVE

    async def test_remove_waiting(self, job_queue, redis):
        job = await job_queue.enqueue(_transcription())

        assert await job_queue.remove_waiting(job) is True

        stream = redis.streams[RedisJobQueue.stream_key(PipelineStage.TRANSCRIPTION)]
        assert job.message_id not in stream
        record = await job_queue.get_job(job.id)
        assert record.state is JobState.CANCELLED
        assert record.failure_reason == "Cancelled by user"

    async def test_remove_waiting_refuses_active_job(self, job_queue):
        job = await job_queue.enqueue(_transcription())
        active = await job_queue.mark_active(job.id, 1)
        assert await job_queue.remove_waiting(active) is False

    async def test_cancel_flag(self, job_queue):
        assert await job_queue.is_cancel_requested("m1") is False
        await job_queue.request_cancel("m1")
        assert await job_queue.is_cancel_requested("m1") is True
        await job_queue.clear_cancel("m1")
        assert await job_queue.is_cancel_requested("m1") is False


# ── Decoding & dead letters ──────────────────────────────────────────────────


class TestDeadLetters:
    async def test_malformed_entry_is_dead_lettered(self, job_queue, redis):
        stage = PipelineStage.TRANSCRIPTION
        response = [(RedisJobQueue.stream_key(stage), [("9-0", {"job_id": "j1", "payload": "{bad"})])]

        decoded = await job_queue._decode(stage, response)

        assert decoded == []
        dlq = await job_queue.list_dead_letters(stage)
        assert len(dlq) == 1
        assert dlq[0][1]["_dlq_original_id"] == "9-0"
        assert dlq[0][1]["_dlq_error"].startswith("invalid payload")
        assert (RedisJobQueue.stream_key(stage), "9-0") in redis.acked

    async def test_payload_on_wrong_stream_is_dead_lettered(self, job_queue):
        fields = {"job_id": "j1", "attempt": "1", "payload": _transcription().model_dump_json()}
        response = [("s", [("9-0", fields)])]

        decoded = await job_queue._decode(PipelineStage.MINUTES, response)

        assert decoded == []
        assert len(await job_queue.list_dead_letters(PipelineStage.MINUTES)) == 1

    async def test_valid_entry_decodes(self, job_queue):
        fields = {"job_id": "j1", "attempt": "2", "payload": _transcription().model_dump_json()}
        decoded = await job_queue._decode(PipelineStage.TRANSCRIPTION, [("s", [("9-0", fields)])])

        assert len(decoded) == 1
        assert decoded[0].attempt == 2
        assert decoded[0].payload.meeting_id == "m1"

    async def test_replay_re_enqueues_and_removes(self, job_queue):
        stage = PipelineStage.TRANSCRIPTION
        job = await job_queue.enqueue(_transcription())
        fields = {"job_id": job.id, "attempt": "3", "payload": _transcription().model_dump_json()}
        await job_queue.finish(job, JobState.FAILED, "boom")
        dlq_id = await job_queue.send_to_dlq(stage, job.message_id, fields, "boom", 3)

        replayed = await job_queue.replay_dead_letter(stage, dlq_id)

        assert replayed.id != job.id
        assert replayed.attempt_count == 1
        assert await job_queue.list_dead_letters(stage) == []

    async def test_replay_unknown_id_raises(self, job_queue):
        with pytest.raises(ValueError):
            await job_queue.replay_dead_letter(PipelineStage.TRANSCRIPTION, "404-0")
