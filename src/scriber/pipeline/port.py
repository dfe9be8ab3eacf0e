"""Retry-wrapped access to the transcription provider.

Every provider call goes through retry_provider_call() and leaves this
module either with a result or with a taxonomy error:

- TransientProviderError: retryable failure that outlived its retries
- PermanentProviderError: non-retryable failure, raised on first sight

The provider's own exception is kept as ``__cause__``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from src.scriber.pipeline.errors import (
    PermanentProviderError,
    PipelineError,
    TransientProviderError,
)
from src.scriber.pipeline.retry import BackoffPolicy, RetryHook, is_retryable, retry_provider_call
from src.scriber.providers.base import (
    EnhancementResult,
    RawSegment,
    RedactionResult,
    TranscriptionProvider,
)

T = TypeVar("T")


class TranscriptionPort:
    """Provider facade used by the pipeline stages.

    Args:
        provider: External transcription/enhancement/redaction service.
        policy: Backoff applied to every call.
        sleep: Injected sleep coroutine, replaced in tests.
    """

    def __init__(
        self,
        provider: TranscriptionProvider,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        on_retry: RetryHook | None = None,
    ) -> T:
        """Run any provider operation under the shared retry policy."""
        try:
            return await retry_provider_call(
                operation,
                operation_name=operation_name,
                policy=self._policy,
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except PipelineError:
            raise
        except Exception as exc:
            if is_retryable(exc):
                raise TransientProviderError(
                    f"{operation_name} failed after {self._policy.max_retries} retries: {exc}",
                    operation=operation_name,
                ) from exc
            raise PermanentProviderError(
                f"{operation_name} failed: {exc}",
                operation=operation_name,
            ) from exc

    async def transcribe(
        self,
        chunk_file: Path,
        chunk_index: int,
        timestamp_offset: float,
        context: str | None,
        *,
        mime_type: str = "audio/mpeg",
        on_retry: RetryHook | None = None,
    ) -> list[RawSegment]:
        """Transcribe one chunk; returned timestamps are absolute."""
        result = await self.call(
            lambda: self._provider.transcribe(
                chunk_file,
                mime_type,
                chunk_index=chunk_index,
                timestamp_offset=timestamp_offset,
                context=context,
            ),
            f"transcribe[chunk {chunk_index}]",
            on_retry,
        )
        return result.segments

    async def enhance(self, text: str) -> EnhancementResult:
        return await self.call(lambda: self._provider.enhance(text), "enhance")

    async def redact(self, text: str) -> RedactionResult:
        return await self.call(lambda: self._provider.redact(text), "redact")
