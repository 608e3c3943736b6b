"""SYNCWARD — Job Queue & Per-Tenant Worker Pool.

An explicit in-process queue plus a bounded set of workers per tenant, so job
state, concurrency limits and cancellation are testable without a broker.
Pools for different tenants share nothing and run fully in parallel.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from syncward.core.errors import RunCancelledError
from syncward.core.logging import get_logger
from syncward.engine.rate_limiter import TenantRateLimiter
from syncward.models.sync_models import SyncJob

logger = get_logger("engine.worker_pool")

JobHandler = Callable[[SyncJob], Awaitable[None]]


class JobQueue:
    """Bounded FIFO of jobs waiting for a worker."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def put_all(self, jobs: List[SyncJob]) -> None:
        for job in jobs:
            await self._queue.put(job)

    def get_nowait(self) -> Optional[SyncJob]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def drain(self) -> List[SyncJob]:
        """Remove and return every job that was never dispatched."""
        left: List[SyncJob] = []
        while True:
            job = self.get_nowait()
            if job is None:
                return left
            left.append(job)
            self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()


class PoolReport(BaseModel):
    dispatched: List[str] = []
    undispatched: List[str] = []
    handler_errors: Dict[str, str] = {}
    stopped_by: Optional[str] = None  # "cancelled" | "deadline"
    duration_ms: int = 0


class TenantWorkerPool:
    """Runs one tenant's jobs with at most `concurrency` in flight."""

    def __init__(self, tenant_id: str, concurrency: int, limiter: TenantRateLimiter):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.tenant_id = tenant_id
        self.concurrency = concurrency
        self.limiter = limiter
        self.active_jobs = 0

    def _stop_reason(
        self, cancel_event: Optional[asyncio.Event], deadline: Optional[datetime]
    ) -> Optional[str]:
        if cancel_event is not None and cancel_event.is_set():
            return "cancelled"
        if deadline is not None and datetime.now(timezone.utc) >= deadline:
            return "deadline"
        return None

    async def run(
        self,
        jobs: List[SyncJob],
        handler: JobHandler,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[datetime] = None,
    ) -> PoolReport:
        """Dispatch every job to `handler`; returns once all workers are idle.

        Dispatch stops when the run is cancelled or its deadline passes; jobs
        already in flight are allowed to finish. A handler exception is
        recorded against its job and never stops sibling jobs.
        """
        started = time.monotonic()
        queue = JobQueue()
        await queue.put_all(jobs)
        report = PoolReport()

        async def worker(worker_id: int) -> None:
            while queue.qsize() > 0:
                # Minimum spacing between jobs of one tenant, even on success
                remaining = None
                if deadline is not None:
                    remaining = (deadline - datetime.now(timezone.utc)).total_seconds()
                try:
                    slot = await self.limiter.acquire(cancel_event, timeout=remaining)
                except RunCancelledError:
                    report.stopped_by = report.stopped_by or "cancelled"
                    return
                if slot is None:
                    report.stopped_by = report.stopped_by or "deadline"
                    return
                reason = self._stop_reason(cancel_event, deadline)
                if reason is not None:
                    report.stopped_by = report.stopped_by or reason
                    return
                job = queue.get_nowait()
                if job is None:
                    return
                report.dispatched.append(job.job_id)
                self.active_jobs += 1
                try:
                    await handler(job)
                except Exception as e:
                    report.handler_errors[job.job_id] = str(e)
                    logger.exception(
                        f"Worker {worker_id} handler crashed",
                        extra={"tenant_id": self.tenant_id, "job_id": job.job_id},
                    )
                finally:
                    self.active_jobs -= 1
                    queue.task_done()

        workers = [
            asyncio.create_task(worker(i)) for i in range(min(self.concurrency, len(jobs)) or 1)
        ]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for task in workers:
                task.cancel()
            raise

        report.undispatched = [job.job_id for job in queue.drain()]
        report.duration_ms = int((time.monotonic() - started) * 1000)
        if report.undispatched:
            logger.warning(
                f"{len(report.undispatched)} jobs not dispatched ({report.stopped_by})",
                extra={"tenant_id": self.tenant_id},
            )
        return report


class PoolRegistry:
    """One worker pool (and rate limiter) per tenant, created on first use."""

    def __init__(
        self, concurrency: int, min_interval: float, max_penalty: Optional[float] = None
    ):
        self.concurrency = concurrency
        self.min_interval = min_interval
        self.max_penalty = max_penalty
        self._pools: Dict[str, TenantWorkerPool] = {}

    def get(self, tenant_id: str) -> TenantWorkerPool:
        pool = self._pools.get(tenant_id)
        if pool is None:
            limiter = TenantRateLimiter(
                tenant_id, self.min_interval, max_penalty=self.max_penalty
            )
            pool = TenantWorkerPool(tenant_id, self.concurrency, limiter)
            self._pools[tenant_id] = pool
        return pool

    def release(self, tenant_id: str) -> None:
        pool = self._pools.get(tenant_id)
        if pool is not None and pool.active_jobs == 0:
            del self._pools[tenant_id]

    def snapshot(self) -> List[dict]:
        return [
            {**pool.limiter.snapshot(), "active_jobs": pool.active_jobs}
            for pool in self._pools.values()
        ]
