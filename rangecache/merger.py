"""
Range merging: the only writer of the range store.

merge_and_replace folds newly fetched rows and every overlapping or adjacent
cached range into one expanded, deduplicated, date-sorted entry, deletes the
superseded keys, and drops chunk-level entries the merged range now covers.

Usage:
    merger = RangeMerger(store, matcher)
    result = await merger.merge_and_replace("device", "sessions", start, end, rows)
    print(result.new_key, len(result.merged_rows))
"""
import asyncio
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Tuple

from rangecache.keys import (
    build_chunk_key,
    build_dimension_key,
    build_hourly_key,
    build_range_key,
    parse_chunk_key,
)
from rangecache.matcher import RangeMatcher
from rangecache.models import ChunkRequest, Row, iso, DEFAULT_IGNORED_FIELDS
from rangecache.observability import get_logger
from rangecache.store import RangeStore

logger = get_logger(__name__)

DEDUPE_POLICIES = ("last", "first")


@dataclass
class MergeResult:
    """Outcome of one merge."""
    merged_rows: List[Row]
    new_start: date
    new_end: date
    new_key: str


def dedupe_rows(
    rows: Iterable[Row],
    ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
    policy: str = "last",
) -> List[Row]:
    """
    Deduplicate rows by (date, dimension values) and sort them by date.

    With policy "last" the latest row in iteration order wins, so callers
    pass older rows first. ISO date strings sort correctly as text.
    """
    if policy not in DEDUPE_POLICIES:
        raise ValueError(f"Unknown dedupe policy: {policy!r}")

    ignored = frozenset(ignored_fields)
    kept: Dict[Tuple, Row] = {}
    for row in rows:
        identity = row.identity(ignored)
        if policy == "first" and identity in kept:
            continue
        kept[identity] = row

    return sorted(kept.values(), key=lambda row: row.date)


class RangeMerger:
    """
    Merges fetched rows into the range cache.

    Merges for one (dimension_key, metric) pair are serialized with an
    asyncio.Lock held across find -> compute -> delete + write.
    """

    def __init__(
        self,
        store: RangeStore,
        matcher: RangeMatcher,
        ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
        dedupe_policy: str = "last",
    ):
        if dedupe_policy not in DEDUPE_POLICIES:
            raise ValueError(f"Unknown dedupe policy: {dedupe_policy!r}")
        self.store = store
        self.matcher = matcher
        self.ignored_fields = frozenset(ignored_fields)
        self.dedupe_policy = dedupe_policy
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, dimension_key: str, metric: str) -> asyncio.Lock:
        return self._locks.setdefault((dimension_key, metric), asyncio.Lock())

    def _dedupe(self, rows: Iterable[Row]) -> List[Row]:
        return dedupe_rows(rows, self.ignored_fields, self.dedupe_policy)

    async def merge_and_replace(
        self,
        dimension_key: str,
        metric: str,
        start: date,
        end: date,
        new_rows: List[Row],
    ) -> MergeResult:
        """
        Merge new_rows for [start, end] with every overlapping/adjacent range.

        Returns:
            MergeResult with the stored rows, the merged bounds and the key
            they now live under
        """
        dimension_key = build_dimension_key(dimension_key)
        new_rows = list(new_rows or [])

        async with self._lock_for(dimension_key, metric):
            overlaps = await self.matcher.find_all_overlapping_or_adjacent(
                dimension_key, metric, start, end
            )

            if not overlaps and new_rows:
                new_key = build_range_key(dimension_key, metric, start, end)
                merged = self._dedupe(new_rows)
                async with self.store.batch():
                    await self.store.set(new_key, merged, {"start": iso(start), "end": iso(end)})
                    await self.clear_chunks_for_range(dimension_key, metric, start, end)
                logger.info(
                    "Stored new range",
                    extra={"key": new_key, "rows": len(merged)},
                )
                return MergeResult(merged, start, end, new_key)

            # Nothing new and one range already spans the request: keep it as is
            if not new_rows and len(overlaps) == 1 and overlaps[0].range.contains(start, end):
                only = overlaps[0]
                return MergeResult(self._dedupe(only.entry.rows), only.start, only.end, only.key)

            new_start = min([start] + [match.start for match in overlaps])
            new_end = max([end] + [match.end for match in overlaps])

            # Oldest entries first so fresher rows win the dedup
            combined: List[Row] = []
            for match in sorted(overlaps, key=lambda m: m.entry.timestamp):
                combined.extend(match.entry.rows)
            combined.extend(new_rows)
            merged = self._dedupe(combined)

            new_key = build_range_key(dimension_key, metric, new_start, new_end)
            async with self.store.batch():
                for match in overlaps:
                    if match.key != new_key:
                        await self.store.delete(match.key)
                await self.store.set(new_key, merged, {"start": iso(new_start), "end": iso(new_end)})
                await self.clear_chunks_for_range(dimension_key, metric, new_start, new_end)

            logger.info(
                "Merged ranges",
                extra={
                    "key": new_key,
                    "superseded": [match.key for match in overlaps if match.key != new_key],
                    "new_rows": len(new_rows),
                    "rows": len(merged),
                },
            )
            return MergeResult(merged, new_start, new_end, new_key)

    async def clear_chunks_for_range(
        self,
        dimension_key: str,
        metric: str,
        start: date,
        end: date,
    ) -> int:
        """Delete chunk-level entries lying inside [start, end]; returns the count."""
        dimension_key = build_dimension_key(dimension_key)
        deleted = 0
        for key in await self.store.keys():
            rng = parse_chunk_key(key)
            if rng is None or rng.dimension_key != dimension_key or rng.metric != metric:
                continue
            if rng.start >= start and rng.end <= end:
                await self.store.delete(key)
                deleted += 1
        if deleted:
            logger.debug(
                "Cleared chunk entries",
                extra={"dimension_key": dimension_key, "metric": metric, "count": deleted},
            )
        return deleted

    async def store_chunk(
        self,
        dimension_key: str,
        metric: str,
        chunk: ChunkRequest,
        rows: List[Row],
    ) -> str:
        """Cache one fetched chunk on its own; the next merge supersedes it."""
        key = build_chunk_key(dimension_key, metric, chunk.start_date, chunk.end_date)
        await self.store.set(key, self._dedupe(rows), {"chunk": chunk.to_dict()})
        return key

    async def store_hourly(
        self,
        dimension_key: str,
        metric: str,
        day: date,
        rows: List[Row],
    ) -> str:
        """Cache one day of hourly rows."""
        key = build_hourly_key(dimension_key, metric, day)
        await self.store.set(key, self._dedupe(rows), {"date": iso(day)})
        return key
