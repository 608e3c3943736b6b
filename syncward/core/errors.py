"""SYNCWARD — Error Taxonomy.

Throttled / Transient errors are absorbed by the backoff controller up to the
attempt limit. Fatal errors are never retried and are attached verbatim to the
failing job. A partial write still counts as a completed job.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the backfill engine."""

    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ThrottledError(SyncError):
    """Upstream declared a quota / rate-limit condition."""

    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class TransientError(SyncError):
    """Retryable failure with no specific wait hint (timeouts, 5xx)."""

    retryable = True


class FatalError(SyncError):
    """Non-retryable failure: bad credentials, malformed request, missing entity."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class PartialWriteError(SyncError):
    """Some rows in a batched upsert failed; `result` says which."""

    def __init__(self, result):
        self.result = result
        super().__init__(
            f"{len(result.failed)} of {result.written + len(result.failed)} rows failed to upsert"
        )


class GapDetectionError(SyncError):
    """Existing dates could not be read; never to be treated as 'no gaps'."""


class RunCancelledError(SyncError):
    """Run-level cancellation observed at a suspension point."""

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class RunConflictError(SyncError):
    """A run for the same tenant and connection is already active."""

    def __init__(self, message: str, run_id: str):
        self.run_id = run_id
        super().__init__(message)


class ConnectionNotFoundError(SyncError):
    """No registered connection matches the tenant / connection pair."""


class MetaAPIError(Exception):
    """Raised when Meta API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_subcode: int = 0,
        headers: Optional[dict] = None,
        is_transient: bool = False,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        self.headers = headers or {}
        self.is_transient = is_transient
        super().__init__(message)
