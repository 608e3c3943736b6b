"""SYNCWARD — Scheduler Jobs.

APScheduler daily sweep that starts a gap backfill for every active connection.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from syncward.config import settings
from syncward.core.errors import RunConflictError, SyncError
from syncward.core.logging import get_logger
from syncward.engine.orchestrator import BackfillEngine
from syncward.models.fact_models import Connection

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def daily_backfill_job(engine: BackfillEngine) -> dict:
    """Trigger a default-lookback backfill for each active connection."""
    with Session(engine.db_engine) as session:
        connections = session.exec(
            select(Connection).where(Connection.status == "active")
        ).all()
        targets = [(c.tenant_id, c.connection_id) for c in connections]

    logger.info(f"Scheduled backfill sweep over {len(targets)} connections")
    summary = {"started": 0, "skipped": 0, "failed": 0}
    for tenant_id, connection_id in targets:
        extra = {"tenant_id": tenant_id, "connection_id": connection_id}
        try:
            response = await engine.start_backfill(tenant_id, connection_id)
            summary["started"] += 1
            logger.info(
                f"Backfill started with {response.jobs_scheduled} jobs",
                extra={**extra, "run_id": response.run_id},
            )
        except RunConflictError as e:
            summary["skipped"] += 1
            logger.info(f"Skipped, run already active: {e.run_id}", extra=extra)
        except (SyncError, ValueError) as e:
            summary["failed"] += 1
            logger.error(f"Scheduled backfill failed: {e}", extra=extra)
        except Exception as e:
            summary["failed"] += 1
            logger.exception(f"Scheduled backfill crashed: {e}", extra=extra)
    return summary


def start_scheduler(engine: BackfillEngine):
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_backfill_job,
        "cron",
        hour=settings.backfill_hour,
        minute=0,
        args=[engine],
        id="daily_backfill",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily backfill at {settings.backfill_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
