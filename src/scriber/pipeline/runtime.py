"""Wiring: build every pipeline component from Settings.

build_runtime() is the only place that turns configuration into objects.
The API lifespan and the worker CLI both call it, then either serve
requests, run the stage worker pools, or both.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import redis.asyncio as aioredis
import structlog

from src.scriber.config import Settings
from src.scriber.core.database import get_session
from src.scriber.meetings.minutes import MinutesGenerator
from src.scriber.meetings.postprocess import TranscriptEnhancer, TranscriptRedactor
from src.scriber.meetings.repository import MeetingRepository
from src.scriber.meetings.schemas import PipelineStage
from src.scriber.pipeline.chunker import AudioChunker
from src.scriber.pipeline.jobs import RedisJobQueue
from src.scriber.pipeline.orchestrator import PipelineOrchestrator
from src.scriber.pipeline.port import TranscriptionPort
from src.scriber.pipeline.progress import ProgressBroadcaster
from src.scriber.pipeline.retry import BackoffPolicy
from src.scriber.pipeline.transcriber import ChunkedTranscriber
from src.scriber.pipeline.usage import PlanLimits, RedisUsageStore, StaticPlanProvider, UsageLedger
from src.scriber.pipeline.worker import StageRetryPolicy, StageWorker
from src.scriber.providers.base import TranscriptionProvider
from src.scriber.providers.gemini import GeminiProvider
from src.scriber.services.notifications import NotificationService
from src.scriber.services.storage import LocalStorageProvider
from src.scriber.services.upload_sessions import UploadSessionStore

logger = structlog.get_logger(__name__)


@dataclass
class PipelineRuntime:
    """Every long-lived pipeline object for one process."""

    settings: Settings
    repository: MeetingRepository
    queue: RedisJobQueue
    ledger: UsageLedger
    broadcaster: ProgressBroadcaster
    storage: LocalStorageProvider
    chunker: AudioChunker
    upload_sessions: UploadSessionStore
    notifications: NotificationService
    orchestrator: PipelineOrchestrator
    workers: list[StageWorker] = field(default_factory=list)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list)

    def build_workers(self, stages: list[PipelineStage] | None = None) -> list[StageWorker]:
        policy = StageRetryPolicy(
            max_attempts=self.settings.STAGE_MAX_ATTEMPTS,
            base_delay=self.settings.STAGE_BACKOFF_BASE_SECONDS,
        )
        self.workers = [
            StageWorker(
                self.queue,
                stage,
                self.orchestrator.run_stage,
                self.orchestrator.handle_stage_failure,
                on_retry=self.orchestrator.handle_stage_retry,
                concurrency=self.settings.WORKER_CONCURRENCY,
                retry_policy=policy,
            )
            for stage in (stages or list(PipelineStage))
        ]
        return self.workers

    async def sweep_once(self) -> tuple[int, int]:
        """Remove stale chunk directories and orphaned upload parts."""
        chunks = await asyncio.to_thread(self.chunker.sweep_stale)
        uploads = await self.upload_sessions.sweep_orphans()
        return chunks, uploads

    async def _sweep_loop(self) -> None:
        while True:
            try:
                chunks, uploads = await self.sweep_once()
                logger.debug("runtime.swept", chunk_dirs=chunks, upload_dirs=uploads)
            except (OSError, aioredis.RedisError):
                logger.warning("runtime.sweep_failed", exc_info=True)
            await asyncio.sleep(self.settings.SWEEP_INTERVAL_SECONDS)

    async def _reclaim_loop(self, worker: StageWorker, interval: float = 300.0) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await worker.reclaim_abandoned()
            except aioredis.RedisError:
                logger.warning("runtime.reclaim_failed", stage=worker.stage.value, exc_info=True)

    def start(self, stages: list[PipelineStage] | None = None) -> None:
        """Start worker pools, reclaim loops and the sweep loop as background tasks."""
        workers = self.build_workers(stages)
        for worker in workers:
            self._tasks.append(asyncio.create_task(worker.run(), name=f"worker-{worker.stage.value}"))
            self._tasks.append(asyncio.create_task(self._reclaim_loop(worker)))
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name="sweep"))
        logger.info("runtime.started", stages=[w.stage.value for w in workers])

    async def stop(self) -> None:
        """Stop reading, let in-flight jobs finish, cancel background loops."""
        for worker in self.workers:
            worker.stop()
        for worker in self.workers:
            await worker.drain()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("runtime.stopped")


def build_runtime(
    settings: Settings,
    redis_client: aioredis.Redis,
    provider: TranscriptionProvider | None = None,
) -> PipelineRuntime:
    repository = MeetingRepository(session_factory=get_session)
    queue = RedisJobQueue(redis_client)
    broadcaster = ProgressBroadcaster(redis_client)
    ledger = UsageLedger(
        RedisUsageStore(redis_client),
        StaticPlanProvider(
            default=PlanLimits(
                max_uploads_per_week=settings.DEFAULT_MAX_UPLOADS_PER_WEEK,
                max_minutes_per_upload=settings.DEFAULT_MAX_MINUTES_PER_UPLOAD,
                monthly_minutes=settings.DEFAULT_MONTHLY_MINUTES,
            ),
            privileged=settings.privileged_user_ids(),
        ),
    )
    storage = LocalStorageProvider(
        settings.STORAGE_ROOT,
        settings.SECRET_KEY,
        algorithm=settings.SIGNED_URL_ALGORITHM,
    )
    chunker = AudioChunker(
        settings.CHUNK_TEMP_DIR,
        chunk_threshold=settings.CHUNK_THRESHOLD_SECONDS,
        max_age_seconds=settings.CHUNK_MAX_AGE_SECONDS,
    )
    port = TranscriptionPort(
        provider
        or GeminiProvider(
            settings.GEMINI_API_KEY,
            transcription_model=settings.TRANSCRIPTION_MODEL,
            text_model=settings.LLM_MODEL,
            timeout=settings.LLM_TIMEOUT,
        ),
        BackoffPolicy(
            initial_delay=settings.PROVIDER_INITIAL_DELAY,
            multiplier=settings.PROVIDER_BACKOFF_MULTIPLIER,
            max_delay=settings.PROVIDER_MAX_DELAY,
            max_retries=settings.PROVIDER_MAX_RETRIES,
        ),
    )
    notifications = NotificationService(
        settings.EXPO_PUSH_URL,
        push_tokens=settings.push_tokens(),
        email_from=settings.EMAIL_FROM,
    )
    orchestrator = PipelineOrchestrator(
        repository=repository,
        queue=queue,
        ledger=ledger,
        broadcaster=broadcaster,
        storage=storage,
        chunker=chunker,
        transcriber=ChunkedTranscriber(port, chunker, broadcaster),
        enhancer=TranscriptEnhancer(port, repository),
        redactor=TranscriptRedactor(port, repository),
        minutes=MinutesGenerator(port, settings.LLM_MODEL, timeout=settings.LLM_TIMEOUT),
        notifications=notifications,
    )
    return PipelineRuntime(
        settings=settings,
        repository=repository,
        queue=queue,
        ledger=ledger,
        broadcaster=broadcaster,
        storage=storage,
        chunker=chunker,
        upload_sessions=UploadSessionStore(
            redis_client,
            settings.UPLOAD_SESSION_DIR,
            ttl_seconds=settings.UPLOAD_SESSION_TTL_SECONDS,
        ),
        notifications=notifications,
        orchestrator=orchestrator,
    )
