"""Pipeline error taxonomy.

Every failure the pipeline reasons about derives from PipelineError. Each
subclass carries a stable ``code`` (surfaced to API clients and progress
events) and a ``retryable`` flag consulted by the stage worker when deciding
whether another stage attempt is worthwhile.

Timestamp anomalies have no error type: the segment normalizer repairs
them and records a quality flag instead of raising.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    code: str = "PIPELINE_ERROR"
    retryable: bool = True

    def __init__(self, message: str = "", **context: Any) -> None:
        self.context = context
        super().__init__(message or self.code)


# ── Provider errors ──────────────────────────────────────────────────────────


class TransientProviderError(PipelineError):
    """Provider failed with a retryable condition and retries were exhausted."""

    code = "PROVIDER_TRANSIENT"
    retryable = True


class PermanentProviderError(PipelineError):
    """Provider rejected the request; retrying would not help."""

    code = "PROVIDER_PERMANENT"
    retryable = False


class ProviderResponseError(PermanentProviderError):
    """Provider answered, but the response could not be parsed."""

    code = "PROVIDER_MALFORMED_RESPONSE"


class ChunkFailureThresholdError(PipelineError):
    """More than half of a recording's chunks failed to transcribe."""

    code = "TOO_MANY_CHUNK_FAILURES"

    def __init__(self, failed: int, total: int, retryable: bool) -> None:
        self.failed = failed
        self.total = total
        self.retryable = retryable
        super().__init__(
            f"{failed} of {total} audio chunks failed to transcribe",
            failed=failed,
            total=total,
        )


# ── Intake errors ────────────────────────────────────────────────────────────


class FileMissingError(PipelineError):
    """Source audio is no longer reachable in storage; the client should re-upload."""

    code = "FILE_MISSING"
    retryable = False


class QuotaExceededError(PipelineError):
    """Upload rejected by plan limits before any work started."""

    code = "QUOTA_EXCEEDED"
    retryable = False


# ── Job control errors ───────────────────────────────────────────────────────


class JobCancelledError(PipelineError):
    """Cooperative cancellation observed at a chunk or stage boundary."""

    code = "CANCELLED"
    retryable = False


class LeaseLostError(PipelineError):
    """This job is no longer the authoritative writer for the meeting."""

    code = "LEASE_LOST"
    retryable = False


class DuplicateJobError(PipelineError):
    """A unit for this meeting and stage is already waiting or running."""

    code = "DUPLICATE_JOB"
    retryable = False


class NoActiveJobError(PipelineError):
    """No waiting or running unit exists for the meeting."""

    code = "NO_ACTIVE_JOB"
    retryable = False


class JobOwnershipError(PipelineError):
    """The caller does not own the job it tried to control."""

    code = "FORBIDDEN"
    retryable = False


class MeetingNotFoundError(PipelineError):
    """Meeting id does not exist."""

    code = "MEETING_NOT_FOUND"
    retryable = False


class InvalidTransitionError(PipelineError):
    """A meeting status change violates the state machine."""

    code = "INVALID_TRANSITION"
    retryable = False

    def __init__(self, from_status: Any, to_status: Any) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition: {getattr(from_status, 'value', from_status)} "
            f"-> {getattr(to_status, 'value', to_status)}"
        )


# ── Upload session errors ────────────────────────────────────────────────────


class UploadSessionNotFoundError(PipelineError):
    """Upload session expired or never existed."""

    code = "UPLOAD_SESSION_NOT_FOUND"
    retryable = False


class IncompleteUploadError(PipelineError):
    """An upload session was completed before every part arrived."""

    code = "UPLOAD_INCOMPLETE"
    retryable = False
