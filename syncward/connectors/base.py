"""SYNCWARD — Abstract Insights Source."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from syncward.core.errors import FatalError, SyncError, ThrottledError, TransientError
from syncward.models.schemas import DateChunk, FactRow, TenantEntityKey


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    THROTTLED = "throttled"
    TRANSIENT = "transient"
    FATAL = "fatal"


class FetchOutcome(BaseModel):
    """Four-way classification of one chunk request."""

    kind: OutcomeKind
    rows: List[FactRow] = []
    retry_after: Optional[float] = None
    error: str = ""

    @classmethod
    def success(cls, rows: List[FactRow]) -> "FetchOutcome":
        return cls(kind=OutcomeKind.SUCCESS, rows=rows)

    @classmethod
    def throttled(cls, retry_after: Optional[float], error: str = "") -> "FetchOutcome":
        return cls(kind=OutcomeKind.THROTTLED, retry_after=retry_after, error=error)

    @classmethod
    def transient(cls, error: str) -> "FetchOutcome":
        return cls(kind=OutcomeKind.TRANSIENT, error=error)

    @classmethod
    def fatal(cls, error: str) -> "FetchOutcome":
        return cls(kind=OutcomeKind.FATAL, error=error)

    @property
    def retryable(self) -> bool:
        return self.kind in (OutcomeKind.THROTTLED, OutcomeKind.TRANSIENT)

    def as_error(self) -> SyncError:
        """The error-taxonomy counterpart of a non-success outcome."""
        if self.kind == OutcomeKind.THROTTLED:
            return ThrottledError(self.error, self.retry_after)
        if self.kind == OutcomeKind.TRANSIENT:
            return TransientError(self.error)
        return FatalError(self.error)


class InsightsSource(ABC):
    """Abstract base for an upstream daily-insights API.

    Implementations execute exactly one chunk request and classify the
    outcome. They never retry and never touch the store.
    """

    @abstractmethod
    async def fetch_insights(
        self, key: TenantEntityKey, entity_ref: str, chunk: DateChunk
    ) -> FetchOutcome:
        """Fetch daily rows for `entity_ref` over the closed interval `chunk`.

        Args:
            key: The series being maintained; `entity_type` selects the level.
            entity_ref: Upstream account reference (e.g. act_123).
            chunk: Inclusive date range, already sized to upstream limits.

        Returns:
            A FetchOutcome; transport problems are returned, not raised.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None
