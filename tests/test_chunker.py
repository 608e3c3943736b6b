"""Tests for the range chunker."""

from datetime import date, timedelta

import pytest

from syncward.engine.chunker import (
    NEWEST_FIRST,
    chunk_gaps,
    effective_span,
    full_window_gap,
)
from syncward.models.schemas import DateChunk, Gap

from conftest import day


def gap(start, end):
    return Gap(start_date=start, end_date=end)


def test_gaps_split_at_max_chunk_days():
    chunks = chunk_gaps([gap(day(2), day(2)), gap(day(4), day(6))], max_chunk_days=2)
    assert chunks == [
        DateChunk(start_date=day(2), end_date=day(2)),
        DateChunk(start_date=day(4), end_date=day(5)),
        DateChunk(start_date=day(6), end_date=day(6)),
    ]


def test_newest_first_order():
    chunks = chunk_gaps([gap(day(1), day(6))], max_chunk_days=2, order=NEWEST_FIRST)
    assert [c.start_date for c in chunks] == [day(5), day(3), day(1)]


def test_chunks_cover_every_gap_day_exactly_once():
    gaps = [gap(date(2024, 1, 1), date(2024, 1, 17)), gap(date(2024, 2, 1), date(2024, 2, 3))]
    chunks = chunk_gaps(gaps, max_chunk_days=7)

    covered = [d for c in chunks for d in c.dates()]
    expected = [d for g in gaps for d in g.dates()]
    assert sorted(covered) == sorted(expected)
    assert len(covered) == len(set(covered))
    assert all(c.day_count <= 7 for c in chunks)
    assert all(c.end_date <= g.end_date for c in chunks for g in gaps if g.start_date <= c.start_date <= g.end_date)


def test_rows_per_call_bound_shrinks_span():
    assert effective_span(7, max_rows_per_call=100, rows_per_day=40) == 2
    assert effective_span(7, max_rows_per_call=100, rows_per_day=500) == 1
    assert effective_span(7, max_rows_per_call=5000, rows_per_day=10) == 7

    chunks = chunk_gaps([gap(day(1), day(10))], 7, max_rows_per_call=100, rows_per_day=40)
    assert all(c.day_count * 40 <= 100 for c in chunks)
    assert len(chunks) == 5


def test_single_day_chunks_when_span_is_one():
    chunks = chunk_gaps([gap(day(1), day(3))], max_chunk_days=1)
    assert [c.day_count for c in chunks] == [1, 1, 1]


def test_invalid_arguments():
    with pytest.raises(ValueError):
        effective_span(0)
    with pytest.raises(ValueError):
        chunk_gaps([gap(day(1), day(2))], 2, order="random")


def test_full_window_gap():
    assert full_window_gap(day(1), day(10)) == [gap(day(1), day(10))]
    assert full_window_gap(day(2), day(2) - timedelta(days=1)) == []
