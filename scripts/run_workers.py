#!/usr/bin/env python3
"""Run the stage worker pools outside the API process.

Usage:
    python scripts/run_workers.py
    python scripts/run_workers.py --stages transcription
    python scripts/run_workers.py --stages enhancement redaction minutes
    python scripts/run_workers.py --dead-letters transcription
    python scripts/run_workers.py --replay transcription 1712345678901-0

Each stage gets its own pool sized by WORKER_CONCURRENCY, plus a reclaim
loop for messages abandoned by dead consumers. The process also runs the
periodic sweep of stale chunk directories and orphaned upload parts.
SIGINT/SIGTERM stop reading new jobs and let in-flight jobs finish.

Reads configuration from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.scriber.api.middleware.logging import configure_structlog  # noqa: E402
from src.scriber.config import get_settings  # noqa: E402
from src.scriber.core.database import close_db, init_db  # noqa: E402
from src.scriber.core.monitoring import init_sentry  # noqa: E402
from src.scriber.core.redis import close_redis, get_redis_pool  # noqa: E402
from src.scriber.meetings.schemas import PipelineStage  # noqa: E402
from src.scriber.pipeline.runtime import build_runtime  # noqa: E402

logger = structlog.get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Scriber stage workers")
    parser.add_argument(
        "--stages",
        nargs="+",
        choices=[stage.value for stage in PipelineStage],
        help="Stages to serve (default: all)",
    )
    parser.add_argument(
        "--dead-letters",
        metavar="STAGE",
        choices=[stage.value for stage in PipelineStage],
        help="Print dead-lettered jobs for a stage and exit",
    )
    parser.add_argument(
        "--replay",
        nargs=2,
        metavar=("STAGE", "MESSAGE_ID"),
        help="Re-enqueue one dead-lettered job and exit",
    )
    return parser.parse_args(argv)


async def show_dead_letters(stage: PipelineStage) -> None:
    runtime = build_runtime(get_settings(), get_redis_pool())
    entries = await runtime.queue.list_dead_letters(stage)
    if not entries:
        print(f"No dead letters for {stage.value}")
    for message_id, data in entries:
        print(
            f"{message_id}  job={data.get('job_id')}  attempts={data.get('_dlq_attempts')}  "
            f"at={data.get('_dlq_timestamp')}  error={data.get('_dlq_error')}"
        )


async def replay(stage: PipelineStage, message_id: str) -> None:
    runtime = build_runtime(get_settings(), get_redis_pool())
    job = await runtime.queue.replay_dead_letter(stage, message_id)
    print(f"Replayed {message_id} as job {job.id} for meeting {job.meeting_id}")


async def serve(stages: list[PipelineStage] | None) -> None:
    settings = get_settings()
    await init_db()
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    runtime = build_runtime(settings, get_redis_pool())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    runtime.start(stages)
    logger.info("workers.running", pid=os.getpid())
    await stop.wait()

    logger.info("workers.stopping")
    await runtime.stop()


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_structlog()
    try:
        if args.dead_letters:
            await show_dead_letters(PipelineStage(args.dead_letters))
        elif args.replay:
            await replay(PipelineStage(args.replay[0]), args.replay[1])
        else:
            stages = [PipelineStage(s) for s in args.stages] if args.stages else None
            await serve(stages)
    finally:
        await close_db()
        await close_redis()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
