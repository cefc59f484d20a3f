"""
Chunk planning for upstream date-range requests.

Pure functions, no I/O. The upstream API answers best on short windows, so
any interval is walked greedily into inclusive windows of at most
``max_span_days`` days, the last one clipped to the interval end.
"""
from datetime import date, timedelta
from typing import List

from rangecache.models import ChunkRequest, Range
from rangecache.validators import validate_span_days

ONE_DAY = timedelta(days=1)

DEFAULT_MAX_SPAN_DAYS = 10
DEFAULT_HOURLY_MAX_DATES = 2


def plan_chunks(start: date, end: date, max_span_days: int = DEFAULT_MAX_SPAN_DAYS) -> List[ChunkRequest]:
    """
    Split [start, end] into consecutive windows of at most max_span_days days.

    2024-01-01..2024-01-25 with the default span gives
    01-01..01-10, 01-11..01-20 and 01-21..01-25.
    """
    validate_span_days(max_span_days)
    if start > end:
        return []

    width = timedelta(days=max_span_days - 1)
    chunks = []
    cursor = start
    while cursor <= end:
        chunk_end = min(cursor + width, end)
        chunks.append(ChunkRequest(cursor, chunk_end))
        cursor = chunk_end + ONE_DAY
    return chunks


def plan_hourly(start: date, end: date, max_dates: int = DEFAULT_HOURLY_MAX_DATES) -> List[date]:
    """
    Dates to request at hourly granularity.

    Each date is its own unit. When the interval holds more dates than
    ``max_dates``, only its first and last dates are requested (the hourly
    view compares two days).
    """
    if start > end or max_dates < 1:
        return []

    days = (end - start).days + 1
    if days <= max_dates:
        return [start + timedelta(days=i) for i in range(days)]
    if max_dates == 1:
        return [start]
    return [start, end]


def missing_intervals(start: date, end: date, cached: Range) -> List[ChunkRequest]:
    """
    Parts of [start, end] outside the cached range's bounds.

    At most two intervals: one before the cached start, one after the
    cached end. Empty when the cached range covers the request.
    """
    missing = []
    if start < cached.start:
        missing.append(ChunkRequest(start, min(end, cached.start - ONE_DAY)))
    if end > cached.end:
        missing.append(ChunkRequest(max(start, cached.end + ONE_DAY), end))
    return missing
