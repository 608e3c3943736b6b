"""SYNCWARD — Range Chunker.

Splits gaps into consecutive closed chunks that respect the upstream's
maximum span and rows-per-call limits. Every gap is covered exactly once with
no overlap.
"""

from datetime import date, timedelta
from typing import List, Optional

from syncward.core.logging import get_logger
from syncward.models.schemas import DateChunk, Gap

logger = get_logger("engine.chunker")

OLDEST_FIRST = "oldest_first"
NEWEST_FIRST = "newest_first"


def effective_span(
    max_chunk_days: int,
    max_rows_per_call: Optional[int] = None,
    rows_per_day: Optional[int] = None,
) -> int:
    """Days per chunk after applying the rows-per-call bound (at least one)."""
    if max_chunk_days < 1:
        raise ValueError("max_chunk_days must be >= 1")
    span = max_chunk_days
    if max_rows_per_call and rows_per_day and rows_per_day > 0:
        span = min(span, max(1, max_rows_per_call // rows_per_day))
    return span


def split_gap(gap: Gap, span: int) -> List[DateChunk]:
    """Consecutive chunks of at most `span` days covering `gap` oldest-first."""
    chunks: List[DateChunk] = []
    cursor = gap.start_date
    while cursor <= gap.end_date:
        end = min(cursor + timedelta(days=span - 1), gap.end_date)
        chunks.append(DateChunk(start_date=cursor, end_date=end))
        cursor = end + timedelta(days=1)
    return chunks


def chunk_gaps(
    gaps: List[Gap],
    max_chunk_days: int,
    max_rows_per_call: Optional[int] = None,
    rows_per_day: Optional[int] = None,
    order: str = OLDEST_FIRST,
) -> List[DateChunk]:
    """Turn detected gaps into request-sized chunks in a consistent order."""
    if order not in (OLDEST_FIRST, NEWEST_FIRST):
        raise ValueError(f"Unknown sync order '{order}'")

    span = effective_span(max_chunk_days, max_rows_per_call, rows_per_day)
    chunks = [chunk for gap in gaps for chunk in split_gap(gap, span)]
    chunks.sort(key=lambda c: c.start_date, reverse=(order == NEWEST_FIRST))

    logger.debug(f"Split {len(gaps)} gaps into {len(chunks)} chunks of <= {span} days")
    return chunks


def full_window_gap(window_start: date, window_end: date) -> List[Gap]:
    """The whole window as a single range, for forced re-fetches."""
    if window_start > window_end:
        return []
    return [Gap(start_date=window_start, end_date=window_end)]
