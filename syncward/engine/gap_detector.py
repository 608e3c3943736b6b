"""SYNCWARD — Gap Detector.

Builds the calendar of expected days for a lookback window, diffs it against
the days already recorded, and merges the missing days into maximal
contiguous ranges.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import SQLAlchemyError

from syncward.config import settings
from syncward.core.errors import GapDetectionError
from syncward.core.logging import get_logger
from syncward.engine.store import FactStore
from syncward.models.schemas import Gap, GapReport, TenantEntityKey

logger = get_logger("engine.gap_detector")


def _zone(tz_name: str):
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown time zone '{tz_name}', falling back to UTC")
        return timezone.utc


def expected_dates(window_start: date, window_end: date) -> List[date]:
    """Every calendar date in the closed window (empty if start > end)."""
    span = (window_end - window_start).days
    return [window_start + timedelta(days=i) for i in range(span + 1)]


def merge_into_gaps(missing: Iterable[date]) -> List[Gap]:
    """Merge dates into maximal ranges; dates exactly one day apart merge."""
    gaps: List[Gap] = []
    run_start: Optional[date] = None
    prev: Optional[date] = None

    for day in sorted(set(missing)):
        if run_start is None:
            run_start = prev = day
            continue
        if (day - prev).days == 1:
            prev = day
            continue
        gaps.append(Gap(start_date=run_start, end_date=prev))
        run_start = prev = day

    if run_start is not None:
        gaps.append(Gap(start_date=run_start, end_date=prev))
    return gaps


def detection_window(
    lookback_days: int,
    now: Optional[datetime] = None,
    tz_name: str = "UTC",
    grace_hours: Optional[int] = None,
) -> Tuple[date, date]:
    """Return the closed window of days eligible for 'missing' classification.

    The window is [today - lookback_days, today] in the account's zone, with
    its trailing edge cut back to the last day D whose start + grace has
    passed. With the default 24h grace the current day is never missing.
    """
    zone = _zone(tz_name)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(zone)
    today = local_now.date()
    grace = timedelta(hours=settings.same_day_grace_hours if grace_hours is None else grace_hours)

    window_start = today - timedelta(days=lookback_days)
    window_end = today
    while window_end >= window_start:
        day_start = datetime.combine(window_end, datetime.min.time(), tzinfo=zone)
        if day_start + grace <= local_now:
            break
        window_end -= timedelta(days=1)
    return window_start, window_end


class GapDetector:
    """Computes missing-day ranges for one series."""

    def __init__(self, store: FactStore, grace_hours: Optional[int] = None):
        self.store = store
        self.grace_hours = grace_hours

    def detect(
        self,
        key: TenantEntityKey,
        lookback_days: int,
        now: Optional[datetime] = None,
        tz_name: str = "UTC",
    ) -> GapReport:
        if lookback_days < 1:
            raise ValueError("lookback_days must be >= 1")

        window_start, window_end = detection_window(
            lookback_days, now, tz_name, self.grace_hours
        )
        try:
            present = self.store.existing_dates(key, window_start, window_end)
            earliest, latest = self.store.data_bounds(key)
        except SQLAlchemyError as e:
            logger.error(
                f"Could not read recorded dates for {key}: {e}",
                extra={"tenant_id": key.tenant_id, "connection_id": key.connection_id},
            )
            raise GapDetectionError(f"Could not read recorded dates for {key}: {e}") from e

        missing = [d for d in expected_dates(window_start, window_end) if d.isoformat() not in present]
        gaps = merge_into_gaps(missing)

        logger.info(
            f"Found {len(gaps)} gaps totaling {len(missing)} missing days for {key} "
            f"in {window_start} → {window_end}",
            extra={"tenant_id": key.tenant_id, "connection_id": key.connection_id},
        )
        return GapReport(
            tenant_id=key.tenant_id,
            connection_id=key.connection_id,
            entity_type=key.entity_type,
            window_start=window_start,
            window_end=window_end,
            gaps=gaps,
            total_missing_days=len(missing),
            earliest_data_date=date.fromisoformat(earliest) if earliest else None,
            last_data_date=date.fromisoformat(latest) if latest else None,
        )
