"""
Lookup of cached ranges related to a requested interval.

Only fresh entries are ever returned. Expired entries met while scanning,
whether range, chunk or hourly ones of the same dimension set and metric,
are deleted on the spot, which is how the cache evicts lazily.
"""
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from rangecache.keys import (
    build_chunk_key,
    build_dimension_key,
    build_hourly_key,
    parse_chunk_key,
    parse_hourly_key,
    parse_range_key,
)
from rangecache.models import CacheEntry, ChunkRequest, Range
from rangecache.observability import get_logger
from rangecache.store import RangeStore

logger = get_logger(__name__)

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000


@dataclass
class RangeMatch:
    """A cached range together with its entry."""
    key: str
    entry: CacheEntry
    range: Range

    @property
    def start(self) -> date:
        return self.range.start

    @property
    def end(self) -> date:
        return self.range.end


class RangeMatcher:
    """
    Finds covering, overlapping and adjacent ranges in a RangeStore.

    Args:
        store: Backing store
        ttl_ms: Freshness window for ranges that end before today
        today_ttl_ms: Freshness window for ranges reaching today (defaults to ttl_ms)
        adjacency_days: Largest gap between two ranges that still merges them
    """

    def __init__(
        self,
        store: RangeStore,
        ttl_ms: int = DEFAULT_TTL_MS,
        today_ttl_ms: Optional[int] = None,
        adjacency_days: int = 1,
    ):
        self.store = store
        self.ttl_ms = ttl_ms
        self.today_ttl_ms = today_ttl_ms if today_ttl_ms is not None else ttl_ms
        self.adjacency_days = adjacency_days

    def today(self) -> date:
        return date.fromtimestamp(self.store.now_ms() / 1000)

    def ttl_for(self, end: date) -> int:
        """TTL of an entry whose data runs up to ``end``."""
        if end >= self.today():
            return min(self.ttl_ms, self.today_ttl_ms)
        return self.ttl_ms

    def is_fresh(self, entry: CacheEntry, end: date) -> bool:
        return entry.is_fresh(self.store.now_ms(), self.ttl_for(end))

    async def _evict_if_expired(self, key: str, end: date) -> None:
        entry = await self.store.get(key)
        if entry is not None and not self.is_fresh(entry, end):
            logger.debug("Evicting expired entry", extra={"key": key})
            await self.store.delete(key)

    async def _fresh_ranges(self, dimension_key: str, metric: str) -> List[RangeMatch]:
        """Every fresh range entry for the dimension-set/metric pair."""
        dimension_key = build_dimension_key(dimension_key)
        matches = []
        for key in await self.store.keys():
            rng = parse_range_key(key)
            if rng is None:
                side = parse_chunk_key(key) or parse_hourly_key(key)
                if side is not None and side.dimension_key == dimension_key and side.metric == metric:
                    await self._evict_if_expired(key, side.end)
                continue
            if rng.dimension_key != dimension_key or rng.metric != metric:
                continue

            entry = await self.store.get(key)
            if entry is None:
                continue

            if not self.is_fresh(entry, rng.end):
                logger.debug("Evicting expired range", extra={"key": key})
                await self.store.delete(key)
                continue

            matches.append(RangeMatch(key=key, entry=entry, range=rng))
        return matches

    async def find_covering_range(
        self,
        dimension_key: str,
        metric: str,
        start: date,
        end: date,
    ) -> Optional[RangeMatch]:
        """
        First fresh, non-empty range containing [start, end].

        Any superset holds the requested rows identically, so the first
        one found is as good as any other.
        """
        for match in await self._fresh_ranges(dimension_key, metric):
            if match.range.contains(start, end) and match.entry.rows:
                return match
        return None

    async def find_overlapping(
        self,
        dimension_key: str,
        metric: str,
        start: date,
        end: date,
    ) -> Optional[RangeMatch]:
        """Any one fresh range intersecting [start, end]."""
        for match in await self._fresh_ranges(dimension_key, metric):
            if match.range.overlaps(start, end):
                return match
        return None

    async def find_all_overlapping_or_adjacent(
        self,
        dimension_key: str,
        metric: str,
        start: date,
        end: date,
    ) -> List[RangeMatch]:
        """Every fresh range intersecting [start, end] or within the adjacency gap."""
        return [
            match
            for match in await self._fresh_ranges(dimension_key, metric)
            if match.range.touches(start, end, self.adjacency_days)
        ]

    async def find_chunk_entry(
        self,
        dimension_key: str,
        metric: str,
        chunk: ChunkRequest,
    ) -> Optional[CacheEntry]:
        """Fresh chunk-level entry stored for exactly this chunk."""
        key = build_chunk_key(dimension_key, metric, chunk.start_date, chunk.end_date)
        entry = await self.store.get(key)
        if entry is None:
            return None
        if not self.is_fresh(entry, chunk.end_date):
            await self.store.delete(key)
            return None
        return entry

    async def find_hourly_entry(
        self,
        dimension_key: str,
        metric: str,
        day: date,
    ) -> Optional[CacheEntry]:
        """Fresh hourly entry for one day."""
        key = build_hourly_key(dimension_key, metric, day)
        entry = await self.store.get(key)
        if entry is None:
            return None
        if not self.is_fresh(entry, day):
            await self.store.delete(key)
            return None
        return entry
