"""
Cache key codec.

Key formats (colon-delimited, parseable by plain splitting):

    range:<dimensionKey>:<start>:<end>:metric:<metric>         merged ranges
    daily:<start>:<end>:dim:<dimensionKey>:metric:<metric>     single chunks
    hourly:<date>:dim:<dimensionKey>:metric:<metric>           hourly buckets

A dimension key is the sorted, deduplicated, comma-joined list of canonical
dimension names; the empty string is the "no dimension" set.
"""
from datetime import date
from typing import Any, Dict, Iterable, Optional, Union

from rangecache.exceptions import ValidationError
from rangecache.models import Range, parse_iso

RANGE_PREFIX = "range"
CHUNK_PREFIX = "daily"
HOURLY_PREFIX = "hourly"

# camelCase engagement fields the API returns, mapped to stored spelling
ENGAGEMENT_KEY_MAP = {
    "pagesPerSession": "pagespersession",
    "averageEngagedDuration": "averageengagedduration",
    "averageEngagedDepth": "averageengageddepth",
    "averageConnectionSpeed": "averageconnectionspeed",
}

DateLike = Union[str, date]


class DimensionNormalizer:
    """
    Maps case-insensitive dimension aliases to one canonical spelling.

    Unknown names pass through unchanged so server-defined custom
    dimensions keep working.
    """

    def __init__(self, canonical: Optional[Iterable[str]] = None):
        self.canonical = list(canonical or [])
        self._map = {name.lower(): name for name in self.canonical}

    def normalize(self, name: str) -> str:
        name = name.strip()
        return self._map.get(name.lower(), name)

    def is_canonical(self, name: str) -> bool:
        return name.strip().lower() in self._map

    def normalize_row_keys(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize the field names of one raw API row."""
        normalized = {}
        for key, value in row.items():
            mapped = ENGAGEMENT_KEY_MAP.get(key, key.lower())
            normalized[self._map.get(mapped, mapped)] = value
        return normalized


def normalize_dimension_name(name: str, canonical: Iterable[str]) -> str:
    """Canonical spelling of ``name`` given the canonical list."""
    return DimensionNormalizer(canonical).normalize(name)


def build_dimension_key(
    dimensions: Union[None, str, Iterable[str]],
    normalizer: Optional[DimensionNormalizer] = None,
) -> str:
    """
    Canonical dimension key: order-independent and deduplicated.

    ``"geo,device"`` and ``["Device", "geo"]`` (with a normalizer knowing
    ``device``) both give ``"device,geo"``.
    """
    if not dimensions:
        return ""

    parts = dimensions.split(",") if isinstance(dimensions, str) else list(dimensions)
    names = set()
    for part in parts:
        if part is None:
            continue
        name = str(part).strip()
        if not name:
            continue
        if ":" in name:
            raise ValidationError("dimensions", "Dimension names cannot contain ':'", name)
        names.add(normalizer.normalize(name) if normalizer else name)

    return ",".join(sorted(names))


def _date_str(value: DateLike) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


def build_range_key(dimension_key: str, metric: str, start: DateLike, end: DateLike) -> str:
    """Key of a merged range entry."""
    dim = build_dimension_key(dimension_key)
    return f"{RANGE_PREFIX}:{dim}:{_date_str(start)}:{_date_str(end)}:metric:{metric}"


def parse_range_key(key: str) -> Optional[Range]:
    """Structured view of a range key; None for any other key."""
    parts = key.split(":")
    if len(parts) != 6 or parts[0] != RANGE_PREFIX or parts[4] != "metric":
        return None
    try:
        start, end = parse_iso(parts[2]), parse_iso(parts[3])
    except ValueError:
        return None
    return Range(dimension_key=parts[1], metric=parts[5], start=start, end=end)


def build_chunk_key(dimension_key: str, metric: str, start: DateLike, end: DateLike) -> str:
    """Key of a single fetched chunk."""
    dim = build_dimension_key(dimension_key)
    return f"{CHUNK_PREFIX}:{_date_str(start)}:{_date_str(end)}:dim:{dim}:metric:{metric}"


def parse_chunk_key(key: str) -> Optional[Range]:
    """Structured view of a chunk key; None for any other key."""
    parts = key.split(":")
    if len(parts) != 7 or parts[0] != CHUNK_PREFIX or parts[3] != "dim" or parts[5] != "metric":
        return None
    try:
        start, end = parse_iso(parts[1]), parse_iso(parts[2])
    except ValueError:
        return None
    return Range(dimension_key=parts[4], metric=parts[6], start=start, end=end)


def build_hourly_key(dimension_key: str, metric: str, day: DateLike) -> str:
    """Key of one day's hourly rows."""
    dim = build_dimension_key(dimension_key)
    return f"{HOURLY_PREFIX}:{_date_str(day)}:dim:{dim}:metric:{metric}"


def parse_hourly_key(key: str) -> Optional[Range]:
    """Structured view of an hourly key as a one-day range; None for any other key."""
    parts = key.split(":")
    if len(parts) != 6 or parts[0] != HOURLY_PREFIX or parts[2] != "dim" or parts[4] != "metric":
        return None
    try:
        day = parse_iso(parts[1])
    except ValueError:
        return None
    return Range(dimension_key=parts[3], metric=parts[5], start=day, end=day)
