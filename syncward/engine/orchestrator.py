"""SYNCWARD — Backfill Engine.

Runs the whole pipeline for one tenant connection:
  detect gaps → chunk → enqueue jobs → worker pool (fetch with backoff → upsert)
  → aggregate once every job is terminal → finalize run status

"Which sync flavor" is configuration, not code: gap-only runs diff the window
against recorded days; `force=True` re-fetches every day in the window.
"""

import asyncio
import math
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from syncward.config import settings
from syncward.connectors.base import InsightsSource
from syncward.connectors.meta.client import MetaClient
from syncward.connectors.meta.endpoints import MetaInsightsSource
from syncward.core.errors import (
    ConnectionNotFoundError,
    PartialWriteError,
    RunCancelledError,
    RunConflictError,
)
from syncward.core.logging import get_logger
from syncward.engine.aggregator import Aggregator, touched_groups
from syncward.engine.chunker import chunk_gaps, full_window_gap
from syncward.engine.gap_detector import GapDetector, detection_window
from syncward.engine.ledger import SyncLedger
from syncward.engine.rate_limiter import TenantRateLimiter
from syncward.engine.retry import BackoffController, RetryPolicy, SleepFn, cancellable_sleep
from syncward.engine.status import build_status
from syncward.engine.store import FactStore
from syncward.engine.worker_pool import PoolRegistry
from syncward.models.fact_models import Connection
from syncward.models.schemas import (
    BackfillResponse,
    DateChunk,
    FactRow,
    Gap,
    GapReport,
    SyncStatus,
    TenantEntityKey,
)
from syncward.models.sync_models import SyncJob, SyncRun

logger = get_logger("engine.orchestrator")

SourceFactory = Callable[[Connection, TenantRateLimiter], InsightsSource]


def meta_source_factory(connection: Connection, limiter: TenantRateLimiter) -> InsightsSource:
    """Default factory: one Meta client per run, paced by the tenant limiter."""
    client = MetaClient(access_token=connection.access_token or None)
    return MetaInsightsSource(client, limiter)


class BackfillConfig(BaseModel):
    """Engine knobs; defaults come from Settings."""

    default_lookback_days: int = 90
    max_lookback_days: int = 365
    same_day_grace_hours: int = 24
    max_chunk_days: int = 7
    max_rows_per_call: int = 5000
    default_rows_per_day: int = 50
    sync_order: str = "oldest_first"
    retry: RetryPolicy = RetryPolicy()
    tenant_concurrency: int = 3
    min_job_interval_seconds: float = 0.5
    run_timeout_seconds: float = 1800.0
    estimated_seconds_per_job: float = 5.0
    upsert_batch_size: int = 500

    @classmethod
    def from_settings(cls) -> "BackfillConfig":
        return cls(
            default_lookback_days=settings.default_lookback_days,
            max_lookback_days=settings.max_lookback_days,
            same_day_grace_hours=settings.same_day_grace_hours,
            max_chunk_days=settings.max_chunk_days,
            max_rows_per_call=settings.max_rows_per_call,
            default_rows_per_day=settings.default_rows_per_day,
            sync_order=settings.sync_order,
            retry=RetryPolicy.from_settings(),
            tenant_concurrency=settings.tenant_concurrency,
            min_job_interval_seconds=settings.min_job_interval_seconds,
            run_timeout_seconds=settings.run_timeout_seconds,
            estimated_seconds_per_job=settings.estimated_seconds_per_job,
            upsert_batch_size=settings.upsert_batch_size,
        )


class BackfillEngine:
    """Trigger, execute, cancel and report backfill runs."""

    def __init__(
        self,
        db_engine: Engine,
        source_factory: SourceFactory = meta_source_factory,
        config: Optional[BackfillConfig] = None,
        sleep: SleepFn = cancellable_sleep,
    ):
        self.db_engine = db_engine
        self.config = config or BackfillConfig.from_settings()
        self.source_factory = source_factory
        self.store = FactStore(db_engine, self.config.upsert_batch_size)
        self.detector = GapDetector(self.store, self.config.same_day_grace_hours)
        self.ledger = SyncLedger(db_engine)
        self.aggregator = Aggregator(db_engine)
        self.retry = BackoffController(self.config.retry, sleep=sleep)
        self.pools = PoolRegistry(
            self.config.tenant_concurrency,
            self.config.min_job_interval_seconds,
            max_penalty=self.config.retry.max_wait,
        )
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tenant_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Connections ──

    def get_connection(self, tenant_id: str, connection_id: str) -> Connection:
        with Session(self.db_engine) as session:
            connection = session.get(Connection, connection_id)
            if connection is None or connection.tenant_id != tenant_id:
                raise ConnectionNotFoundError(
                    f"No connection {connection_id} for tenant {tenant_id}"
                )
            session.expunge(connection)
            return connection

    # ── Planning ──

    def _validate_lookback(self, lookback_days: Optional[int]) -> int:
        lookback = (
            self.config.default_lookback_days if lookback_days is None else lookback_days
        )
        if not 1 <= lookback <= self.config.max_lookback_days:
            raise ValueError(
                f"lookback_days must be between 1 and {self.config.max_lookback_days}"
            )
        return lookback

    def detect_gaps(
        self,
        tenant_id: str,
        connection_id: str,
        entity_type: Optional[str] = None,
        lookback_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> GapReport:
        """Read-only detection pass for one series."""
        connection = self.get_connection(tenant_id, connection_id)
        key = TenantEntityKey(
            tenant_id=tenant_id,
            connection_id=connection_id,
            entity_type=entity_type or connection.entity_type_list()[0],
        )
        return self.detector.detect(
            key, self._validate_lookback(lookback_days), now, connection.timezone_name
        )

    def plan(
        self,
        connection: Connection,
        lookback_days: int,
        force: bool,
        entity_types: List[str],
        now: Optional[datetime] = None,
    ) -> Tuple[List[Tuple[TenantEntityKey, DateChunk]], Dict[str, List[Gap]]]:
        """Detect (or, when forced, take the whole window) and chunk per series."""
        planned: List[Tuple[TenantEntityKey, DateChunk]] = []
        gaps_by_type: Dict[str, List[Gap]] = {}

        for entity_type in entity_types:
            key = TenantEntityKey(
                tenant_id=connection.tenant_id,
                connection_id=connection.connection_id,
                entity_type=entity_type,
            )
            if force:
                start, end = detection_window(
                    lookback_days, now, connection.timezone_name, self.config.same_day_grace_hours
                )
                gaps = full_window_gap(start, end)
            else:
                gaps = self.detector.detect(key, lookback_days, now, connection.timezone_name).gaps

            rows_per_day = self.store.estimate_rows_per_day(key, self.config.default_rows_per_day)
            chunks = chunk_gaps(
                gaps,
                self.config.max_chunk_days,
                self.config.max_rows_per_call,
                rows_per_day,
                self.config.sync_order,
            )
            gaps_by_type[entity_type] = gaps
            planned.extend((key, chunk) for chunk in chunks)

        return planned, gaps_by_type

    def _estimate_completion(self, jobs: int, now: datetime) -> datetime:
        waves = math.ceil(jobs / max(self.config.tenant_concurrency, 1))
        per_wave = self.config.estimated_seconds_per_job + self.config.min_job_interval_seconds
        return now + timedelta(seconds=waves * per_wave)

    # ── Trigger ──

    async def start_backfill(
        self,
        tenant_id: str,
        connection_id: str,
        lookback_days: Optional[int] = None,
        force: bool = False,
        entity_types: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> BackfillResponse:
        """Plan a run, persist its jobs and schedule execution in the background."""
        lookback = self._validate_lookback(lookback_days)
        connection = self.get_connection(tenant_id, connection_id)

        active = self.ledger.active_run(tenant_id, connection_id)
        if active is not None:
            raise RunConflictError(
                f"Run {active.run_id} is already active for {tenant_id}/{connection_id}",
                active.run_id,
            )

        types = entity_types or connection.entity_type_list()
        planned, gaps = self.plan(connection, lookback, force, types, now)
        run, jobs = self.ledger.create_run(tenant_id, connection_id, lookback, force, planned)

        self._cancel_events[run.run_id] = asyncio.Event()
        task = asyncio.create_task(self.execute_run(run.run_id, connection, jobs))
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _t, rid=run.run_id: self._tasks.pop(rid, None))

        logger.info(
            f"Backfill scheduled: {len(jobs)} jobs (lookback={lookback}, force={force})",
            extra={"run_id": run.run_id, "tenant_id": tenant_id, "connection_id": connection_id},
        )
        return BackfillResponse(
            run_id=run.run_id,
            jobs_scheduled=len(jobs),
            estimated_completion=self._estimate_completion(
                len(jobs), datetime.now(timezone.utc)
            ),
            gaps=gaps,
        )

    # ── Execution ──

    async def execute_run(
        self, run_id: str, connection: Connection, jobs: List[SyncJob]
    ) -> SyncRun:
        """Run every job of a run; one run per tenant at a time."""
        cancel_event = self._cancel_events.setdefault(run_id, asyncio.Event())
        tenant_id = connection.tenant_id
        try:
            async with self._tenant_locks[tenant_id]:
                return await self._execute(run_id, connection, jobs, cancel_event)
        finally:
            self._cancel_events.pop(run_id, None)

    async def _execute(
        self,
        run_id: str,
        connection: Connection,
        jobs: List[SyncJob],
        cancel_event: asyncio.Event,
    ) -> SyncRun:
        tenant_id = connection.tenant_id
        deadline = datetime.now(timezone.utc) + timedelta(seconds=self.config.run_timeout_seconds)
        written: Dict[TenantEntityKey, List[FactRow]] = defaultdict(list)
        run_error: Optional[str] = None

        try:
            self.ledger.start_run(run_id, deadline)
            pool = self.pools.get(tenant_id)
            source = self.source_factory(connection, pool.limiter)

            async def handle(job: SyncJob) -> None:
                await self._process_job(job, connection, source, cancel_event, written)

            try:
                report = await pool.run(jobs, handle, cancel_event, deadline)
            finally:
                await source.close()

            for job_id, error in report.handler_errors.items():
                self.ledger.mark_failed(job_id, 0, f"worker error: {error}")
        except SQLAlchemyError as e:
            run_error = f"ledger error: {e}"
            logger.exception("Run aborted by a database error", extra={"run_id": run_id})
        except asyncio.CancelledError:
            cancel_event.set()
            raise
        except Exception as e:
            run_error = f"run aborted: {e}"
            logger.exception("Run aborted", extra={"run_id": run_id})
        finally:
            run = self._close_run(run_id, tenant_id, cancel_event, written, run_error)
        return run

    def _close_run(
        self,
        run_id: str,
        tenant_id: str,
        cancel_event: asyncio.Event,
        written: Dict[TenantEntityKey, List[FactRow]],
        run_error: Optional[str],
    ) -> SyncRun:
        """Fail leftover jobs, rebuild rollups and record the run outcome."""
        reason = run_error or ("cancelled" if cancel_event.is_set() else "deadline exceeded")
        try:
            self.ledger.fail_open_jobs(run_id, reason)
        except SQLAlchemyError:
            logger.exception("Could not close open jobs", extra={"run_id": run_id})

        # Every job is terminal now; rollups see the complete window
        for key, rows in written.items():
            try:
                self.aggregator.recompute(key, touched_groups(rows))
            except (SQLAlchemyError, ValueError) as e:
                run_error = run_error or f"aggregation failed: {e}"
                logger.exception("Aggregation failed", extra={"run_id": run_id})

        try:
            return self.ledger.finalize_run(run_id, error=run_error)
        finally:
            self.pools.release(tenant_id)

    async def _process_job(
        self,
        job: SyncJob,
        connection: Connection,
        source: InsightsSource,
        cancel_event: asyncio.Event,
        written: Dict[TenantEntityKey, List[FactRow]],
    ) -> None:
        key = TenantEntityKey(
            tenant_id=job.tenant_id,
            connection_id=job.connection_id,
            entity_type=job.entity_type,
        )
        chunk = DateChunk(
            start_date=date.fromisoformat(job.start_date),
            end_date=date.fromisoformat(job.end_date),
        )
        log_extra = {"run_id": job.run_id, "job_id": job.job_id, "tenant_id": job.tenant_id}
        self.ledger.mark_running(job.job_id)
        started = time.monotonic()
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            return await source.fetch_insights(key, connection.ad_account_id, chunk)

        try:
            result = await self.retry.execute(attempt, cancel_event, job_id=job.job_id)
        except RunCancelledError:
            self.ledger.mark_failed(job.job_id, attempts, "cancelled")
            logger.warning("Job cancelled", extra=log_extra)
            return

        if not result.succeeded:
            error = result.outcome.as_error()
            reason = error.message if not error.retryable else f"retries exhausted: {error.message}"
            self.ledger.mark_failed(job.job_id, result.attempts, reason)
            return

        rows = result.outcome.rows
        try:
            upserted = self.store.upsert_facts(key, rows)
        except PartialWriteError as e:
            failed_keys = {(f.entity_id, f.date) for f in e.result.failed}
            landed = [r for r in rows if (r.entity_id, r.date) not in failed_keys]
            if e.result.written == 0:
                self.ledger.mark_failed(job.job_id, result.attempts, f"write failed: {e}")
                return
            written[key].extend(landed)
            self.ledger.mark_completed(
                job.job_id,
                result.attempts,
                e.result.written,
                rows_failed=len(e.result.failed),
                note=f"partial write: {e}",
            )
            return

        written[key].extend(rows)
        self.ledger.mark_completed(job.job_id, result.attempts, upserted.written)
        logger.info(
            f"Job {chunk.start_date}→{chunk.end_date} wrote {upserted.written} rows",
            extra={
                **log_extra,
                "attempt": result.attempts,
                "rows_written": upserted.written,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )

    # ── Control ──

    def cancel_run(self, run_id: str) -> bool:
        """Signal cancellation. Non-terminal jobs end failed; written facts stay."""
        event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        self.ledger.request_cancel(run_id)
        logger.warning("Cancellation requested", extra={"run_id": run_id})
        return True

    async def wait_for_run(self, run_id: str) -> Optional[SyncRun]:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.ledger.get_run(run_id)

    async def shutdown(self) -> None:
        """Cancel in-flight runs and wait for their bookkeeping to finish."""
        for event in list(self._cancel_events.values()):
            event.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Status ──

    def get_status(self, run_id: str) -> Optional[SyncStatus]:
        run = self.ledger.get_run(run_id)
        if run is None:
            return None
        return build_status(run, self.ledger.list_jobs(run_id))

    def get_tenant_status(self, tenant_id: str) -> Optional[SyncStatus]:
        run = self.ledger.latest_run_for_tenant(tenant_id)
        if run is None:
            return None
        return build_status(run, self.ledger.list_jobs(run.run_id))
