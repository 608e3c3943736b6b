"""SYNCWARD — Tenant-Scoped Rate Limiter.

One instance per tenant worker pool; each upstream account has its own quota,
so nothing here is shared across tenants or kept at module level.
"""

import asyncio
import time
from typing import Callable, Optional

from syncward.core.errors import RunCancelledError
from syncward.core.logging import get_logger
from syncward.engine.retry import cancellable_sleep

logger = get_logger("engine.rate_limiter")


class TenantRateLimiter:
    """Enforces a minimum spacing between upstream requests of one tenant."""

    def __init__(
        self,
        tenant_id: str,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        max_penalty: Optional[float] = None,
    ):
        self.tenant_id = tenant_id
        self.min_interval = max(min_interval, 0.0)
        self.max_penalty = max_penalty
        self._clock = clock
        self._lock = asyncio.Lock()
        self._next_slot = 0.0
        self.request_count = 0
        self.throttle_count = 0

    async def acquire(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> Optional[float]:
        """Wait for the next request slot. Returns the seconds waited.

        When the slot lies further out than `timeout`, waits `timeout` seconds
        and returns None without taking a slot.
        """
        async with self._lock:
            wait = self._next_slot - self._clock()
            if timeout is not None and wait > timeout:
                if not await cancellable_sleep(max(timeout, 0.0), cancel_event):
                    raise RunCancelledError()
                return None
            if wait > 0:
                if not await cancellable_sleep(wait, cancel_event):
                    raise RunCancelledError()
            else:
                wait = 0.0
            self._next_slot = self._clock() + self.min_interval
            self.request_count += 1
            return wait

    def penalize(self, seconds: float) -> None:
        """Hold back every request of this tenant after a throttle signal."""
        if self.max_penalty is not None:
            seconds = min(seconds, self.max_penalty)
        self.throttle_count += 1
        self._next_slot = max(self._next_slot, self._clock() + seconds)
        logger.warning(
            f"Tenant throttled upstream; pausing requests for {seconds:.1f}s",
            extra={"tenant_id": self.tenant_id},
        )

    def snapshot(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "requests": self.request_count,
            "throttles": self.throttle_count,
            "next_slot_in": round(max(self._next_slot - self._clock(), 0.0), 3),
        }
