"""Shared fixtures for pipeline tests, wired from the in-memory doubles."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.scriber.pipeline.chunker import AudioChunker
from src.scriber.pipeline.orchestrator import PipelineOrchestrator
from src.scriber.pipeline.usage import PlanLimits, StaticPlanProvider, UsageLedger

from tests.doubles import (
    FakeStorage,
    InMemoryJobQueue,
    InMemoryMeetingRepository,
    InMemoryUsageStore,
    RecordingBroadcaster,
    RecordingNotifications,
)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryMeetingRepository:
    return InMemoryMeetingRepository()


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def usage_store() -> InMemoryUsageStore:
    return InMemoryUsageStore()


@pytest.fixture
def ledger(usage_store) -> UsageLedger:
    return UsageLedger(
        usage_store,
        StaticPlanProvider(
            default=PlanLimits(max_uploads_per_week=10, max_minutes_per_upload=180, monthly_minutes=1200)
        ),
    )


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture
def chunker(tmp_path) -> AudioChunker:
    return AudioChunker(tmp_path / "chunks")


@pytest.fixture
def stages() -> dict[str, AsyncMock]:
    """Stage collaborators replaced by AsyncMocks: transcriber, enhancer, redactor, minutes."""
    return {
        "transcriber": AsyncMock(),
        "enhancer": AsyncMock(),
        "redactor": AsyncMock(),
        "minutes": AsyncMock(),
    }


@pytest.fixture
def orchestrator(
    repo, queue, ledger, broadcaster, storage, chunker, notifications, stages
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        repository=repo,
        queue=queue,
        ledger=ledger,
        broadcaster=broadcaster,
        storage=storage,
        chunker=chunker,
        transcriber=stages["transcriber"],
        enhancer=stages["enhancer"],
        redactor=stages["redactor"],
        minutes=stages["minutes"],
        notifications=notifications,
    )
