"""
Domain models for cached analytics ranges.

Provides type-safe dataclasses for rows, cache entries, ranges and the
request/result shapes the orchestrator works with. Dates are ``datetime.date``
everywhere except inside row records and cache key strings, which keep the
ISO ``YYYY-MM-DD`` text form.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable, Tuple


DEFAULT_METRIC_FIELDS = frozenset({
    "sessions",
    "visits",
    "views",
    "bounce_rate",
    "value",
    "count",
    "pagespersession",
    "averageengagedduration",
    "averageengageddepth",
    "averageconnectionspeed",
})

DEFAULT_IGNORED_FIELDS = frozenset({"metric"})


class Granularity(str, Enum):
    """Time bucket size of requested rows."""
    DAILY = "daily"
    HOURLY = "hourly"


def iso(day: date) -> str:
    """Format a date as YYYY-MM-DD."""
    return day.isoformat()


def parse_iso(value: str) -> date:
    """Parse the date part of a YYYY-MM-DD[ HH:MM:SS] string."""
    return date.fromisoformat(value[:10])


def _coerce_number(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                return value
    return value


# ═══════════════════════════════════════════════════════════════════════════════
# ROWS AND ENTRIES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Row:
    """
    One time bucket of metric values.

    ``date`` is a bare ISO date for daily rows and ``YYYY-MM-DD HH:MM:SS`` for
    hourly rows. Known metric fields and any other numeric values live in
    ``metrics``; every other field is a dimension value kept in ``dimensions``.
    """
    date: str
    metrics: Dict[str, Any] = field(default_factory=dict)
    dimensions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(
        cls,
        data: Optional[Dict[str, Any]],
        metric_fields: Iterable[str] = DEFAULT_METRIC_FIELDS,
    ) -> Optional["Row"]:
        """Create Row from a (key-normalized) API record; None without a date."""
        if not data or not isinstance(data.get("date"), str) or not data["date"]:
            return None

        metric_fields = set(metric_fields)
        metrics: Dict[str, Any] = {}
        dimensions: Dict[str, Any] = {}
        for key, value in data.items():
            if key == "date":
                continue
            if key in metric_fields:
                metrics[key] = _coerce_number(value)
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                # unlisted numeric fields are metrics too
                metrics[key] = value
            else:
                dimensions[key] = value

        return cls(date=data["date"], metrics=metrics, dimensions=dimensions)

    @classmethod
    def from_record(
        cls,
        data: Optional[Dict[str, Any]],
        metric_fields: Iterable[str] = DEFAULT_METRIC_FIELDS,
    ) -> Optional["Row"]:
        """
        Create Row from its stored form.

        Flat records (no ``metrics``/``dimensions`` split) are read with
        from_api.
        """
        if not isinstance(data, dict):
            return None
        metrics, dimensions = data.get("metrics"), data.get("dimensions")
        if not isinstance(metrics, dict) or not isinstance(dimensions, dict):
            return cls.from_api(data, metric_fields)
        if not isinstance(data.get("date"), str) or not data["date"]:
            return None
        return cls(date=data["date"], metrics=dict(metrics), dimensions=dict(dimensions))

    @property
    def day(self) -> str:
        """Date part of the row's timestamp."""
        return self.date[:10]

    def identity(self, ignored: Iterable[str] = DEFAULT_IGNORED_FIELDS) -> Tuple:
        """Composite dedup identity: date plus every dimension value."""
        ignored = set(ignored)
        dims = tuple(
            (name, "" if value is None else str(value))
            for name, value in sorted(self.dimensions.items())
            if name not in ignored
        )
        return (self.date, dims)

    def to_dict(self) -> Dict[str, Any]:
        """Flat record as returned to callers."""
        return {"date": self.date, **self.dimensions, **self.metrics}

    def to_record(self) -> Dict[str, Any]:
        """Stored form, keeping the metric/dimension split."""
        return {"date": self.date, "metrics": dict(self.metrics), "dimensions": dict(self.dimensions)}


@dataclass
class CacheEntry:
    """Rows stored under one cache key, with their write time (ms since epoch)."""
    key: str
    rows: List[Row]
    timestamp: int
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls,
        key: str,
        data: Dict[str, Any],
        metric_fields: Iterable[str] = DEFAULT_METRIC_FIELDS,
    ) -> "CacheEntry":
        """Create CacheEntry from its stored JSON form."""
        rows = []
        for raw in data.get("data") or []:
            row = Row.from_record(raw, metric_fields)
            if row is not None:
                rows.append(row)
        return cls(
            key=key,
            rows=rows,
            timestamp=int(data.get("timestamp") or 0),
            meta=dict(data.get("meta") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Stored JSON form."""
        return {
            "data": [row.to_record() for row in self.rows],
            "timestamp": self.timestamp,
            "meta": self.meta,
        }

    def is_fresh(self, now_ms: int, ttl_ms: int) -> bool:
        return bool(self.timestamp) and now_ms - self.timestamp < ttl_ms


@dataclass(frozen=True)
class Range:
    """Cached date interval for one dimension-set/metric pair."""
    dimension_key: str
    metric: str
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, start: date, end: date) -> bool:
        return self.start <= start and self.end >= end

    def overlaps(self, start: date, end: date) -> bool:
        return self.start <= end and start <= self.end

    def touches(self, start: date, end: date, tolerance_days: int = 1) -> bool:
        """Overlapping, or separated by a gap of at most ``tolerance_days``."""
        slack = timedelta(days=tolerance_days)
        return self.end >= start - slack and self.start <= end + slack


# ═══════════════════════════════════════════════════════════════════════════════
# REQUESTS AND RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChunkRequest:
    """Bounded sub-interval of a FetchRequest."""
    start_date: date
    end_date: date

    @property
    def span_days(self) -> int:
        """Days between the bounds (a one-day chunk spans 0)."""
        return (self.end_date - self.start_date).days

    def contains_day(self, day: str) -> bool:
        return iso(self.start_date) <= day[:10] <= iso(self.end_date)

    def to_dict(self) -> Dict[str, str]:
        return {"start_date": iso(self.start_date), "end_date": iso(self.end_date)}


@dataclass(frozen=True)
class FetchRequest:
    """Unit of work resolved from cache or network."""
    dimension_key: str
    metric: str
    start_date: date
    end_date: date
    granularity: Granularity = Granularity.DAILY

    @classmethod
    def create(
        cls,
        dimensions: Any,
        metric: str,
        start_date: Any,
        end_date: Any,
        granularity: Optional[str] = None,
        normalizer: Any = None,
    ) -> "FetchRequest":
        """
        Validate caller input and build a request.

        Args:
            dimensions: Comma-separated string or iterable of dimension names
            metric: Metric name
            start_date: Start date (YYYY-MM-DD or date)
            end_date: End date (YYYY-MM-DD or date)
            granularity: 'daily' (default) or 'hourly'
            normalizer: DimensionNormalizer for canonical dimension spelling

        Raises:
            ValidationError: If any input is invalid
        """
        from rangecache.keys import build_dimension_key
        from rangecache.validators import (
            validate_date_range,
            validate_granularity,
            validate_metric,
        )

        start, end = validate_date_range(start_date, end_date)
        return cls(
            dimension_key=build_dimension_key(dimensions, normalizer),
            metric=validate_metric(metric),
            start_date=start,
            end_date=end,
            granularity=Granularity(validate_granularity(granularity)),
        )

    @property
    def chunk(self) -> ChunkRequest:
        """The whole request as one (unbounded) chunk."""
        return ChunkRequest(self.start_date, self.end_date)


@dataclass
class FailedChunk:
    """A chunk that could not be fetched; resubmittable as-is."""
    chunk: ChunkRequest
    reason: str
    status_code: Optional[int] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.chunk.to_dict(),
            "reason": self.reason,
            "status_code": self.status_code,
            "attempts": self.attempts,
        }


@dataclass
class FetchResult:
    """Rows for the requested window plus the chunks that failed."""
    request: FetchRequest
    rows: List[Row] = field(default_factory=list)
    failed_chunks: List[FailedChunk] = field(default_factory=list)
    from_cache: bool = False
    transport_calls: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed_chunks

    def records(self) -> List[Dict[str, Any]]:
        """Rows as flat dicts, for renderers."""
        return [row.to_dict() for row in self.rows]


@dataclass
class TransportPage:
    """One page of raw rows returned by a transport."""
    rows: List[Dict[str, Any]]
    total_pages: Optional[int] = None
