"""SYNCWARD — Backoff-and-Retry Controller.

Per job attempt:
  Attempting → Success
             → Throttled → Waiting(hint, clamped) → Attempting
             → Transient → Waiting(exponential, clamped) → Attempting
             → Fatal → Failed
Bounded by `max_attempts`. Every wait wakes early when the run is cancelled.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

from syncward.config import settings
from syncward.connectors.base import FetchOutcome, OutcomeKind
from syncward.core.errors import RunCancelledError
from syncward.core.logging import get_logger

logger = get_logger("engine.retry")


async def cancellable_sleep(
    seconds: float, cancel_event: Optional[asyncio.Event] = None
) -> bool:
    """Sleep for `seconds`; return False if cancellation arrived first."""
    if seconds <= 0:
        return not (cancel_event and cancel_event.is_set())
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return True
    if cancel_event.is_set():
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        return False
    except asyncio.TimeoutError:
        return True


async def run_cancellable(awaitable: Awaitable, cancel_event: Optional[asyncio.Event]):
    """Await `awaitable` unless the cancel event fires first.

    Raises RunCancelledError (after cancelling the pending work) on cancellation.
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RunCancelledError()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise
    if work in done:
        waiter.cancel()
        return work.result()
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise RunCancelledError()


class RetryPolicy(BaseModel):
    max_attempts: int = 3
    base_delay: float = 2.0
    min_wait: float = 1.0
    max_wait: float = 300.0
    throttle_default: float = 60.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            min_wait=settings.min_wait_seconds,
            max_wait=settings.max_wait_seconds,
            throttle_default=settings.throttle_default_delay_seconds,
        )

    def clamp(self, seconds: float) -> float:
        return min(max(seconds, self.min_wait), self.max_wait)

    def throttle_wait(self, hint: Optional[float]) -> float:
        """Parsed retry hint (or the fixed default) clamped to [min_wait, max_wait]."""
        return self.clamp(hint if hint is not None else self.throttle_default)

    def transient_wait(self, attempt: int) -> float:
        """Doubles from base_delay with each failed attempt (1-based)."""
        return self.clamp(self.base_delay * (2 ** (attempt - 1)))


class RetryResult(BaseModel):
    outcome: FetchOutcome
    attempts: int
    waited_seconds: float = 0.0
    errors: List[str] = []

    @property
    def succeeded(self) -> bool:
        return self.outcome.kind == OutcomeKind.SUCCESS


SleepFn = Callable[[float, Optional[asyncio.Event]], Awaitable[bool]]


class BackoffController:
    """Wraps one chunk fetch with the bounded retry policy."""

    def __init__(self, policy: RetryPolicy, sleep: SleepFn = cancellable_sleep):
        self.policy = policy
        self._sleep = sleep

    async def execute(
        self,
        attempt_fn: Callable[[], Awaitable[FetchOutcome]],
        cancel_event: Optional[asyncio.Event] = None,
        job_id: str = "",
    ) -> RetryResult:
        waited = 0.0
        errors: List[str] = []
        outcome: Optional[FetchOutcome] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError()

            outcome = await run_cancellable(attempt_fn(), cancel_event)

            if outcome.kind == OutcomeKind.SUCCESS:
                return RetryResult(
                    outcome=outcome, attempts=attempt, waited_seconds=waited, errors=errors
                )

            errors.append(f"{outcome.kind.value}: {outcome.error}")

            if outcome.kind == OutcomeKind.FATAL:
                logger.error(
                    f"Fatal upstream error, not retrying: {outcome.error}",
                    extra={"job_id": job_id, "attempt": attempt},
                )
                return RetryResult(
                    outcome=outcome, attempts=attempt, waited_seconds=waited, errors=errors
                )

            if attempt == self.policy.max_attempts:
                break

            if outcome.kind == OutcomeKind.THROTTLED:
                wait = self.policy.throttle_wait(outcome.retry_after)
            else:
                wait = self.policy.transient_wait(attempt)

            logger.warning(
                f"{outcome.kind.value} on attempt {attempt}/{self.policy.max_attempts}. "
                f"Retrying in {wait:.1f}s",
                extra={"job_id": job_id, "attempt": attempt},
            )
            if not await self._sleep(wait, cancel_event):
                raise RunCancelledError()
            waited += wait

        logger.error(
            f"Retries exhausted after {self.policy.max_attempts} attempts",
            extra={"job_id": job_id, "attempt": self.policy.max_attempts},
        )
        return RetryResult(
            outcome=outcome,
            attempts=self.policy.max_attempts,
            waited_seconds=waited,
            errors=errors,
        )
