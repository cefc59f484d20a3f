"""
Integration tests for rangecache/merger.py

Tests merge_and_replace over a memory store: expansion, dedup, cleanup of
superseded keys and chunk entries, and idempotency.
"""
import asyncio
import pytest
from datetime import date

from conftest import make_row
from rangecache.keys import build_chunk_key, build_range_key, parse_range_key
from rangecache.matcher import RangeMatcher
from rangecache.merger import RangeMerger, dedupe_rows
from rangecache.models import ChunkRequest, Row
from rangecache.store import MemoryRangeStore


def rows_for(start: int, end: int, sessions: int = 1):
    return [make_row(f"2024-01-{day:02d}", sessions) for day in range(start, end + 1)]


@pytest.fixture
def merger(store):
    return RangeMerger(store, RangeMatcher(store))


async def range_keys(store):
    return sorted(key for key in await store.keys() if parse_range_key(key))


class TestDedupeRows:
    """Tests for dedupe_rows function."""

    def test_last_write_wins(self):
        rows = [make_row("2024-01-01", 1), make_row("2024-01-01", 2)]
        assert dedupe_rows(rows) == [make_row("2024-01-01", 2)]

    def test_first_write_wins(self):
        rows = [make_row("2024-01-01", 1), make_row("2024-01-01", 2)]
        assert dedupe_rows(rows, policy="first") == [make_row("2024-01-01", 1)]

    def test_distinct_dimensions_kept(self):
        rows = [make_row("2024-01-01", 1, device="desktop"), make_row("2024-01-01", 2, device="mobile")]
        assert len(dedupe_rows(rows)) == 2

    def test_metric_field_not_part_of_identity(self):
        rows = [
            Row("2024-01-01", {"sessions": 1}, {"device": "desktop", "metric": "sessions"}),
            Row("2024-01-01", {"sessions": 2}, {"device": "desktop"}),
        ]
        assert dedupe_rows(rows)[0].metrics["sessions"] == 2

    def test_sorted_by_date(self):
        rows = [make_row("2024-01-03"), make_row("2024-01-01"), make_row("2024-01-02")]
        assert [row.date for row in dedupe_rows(rows)] == ["2024-01-01", "2024-01-02", "2024-01-03"]

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            dedupe_rows([], policy="random")


class TestMergeAndReplace:
    """Tests for RangeMerger.merge_and_replace."""

    @pytest.mark.asyncio
    async def test_no_overlap_stores_directly(self, store, merger):
        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10))

        assert result.new_key == "range:device:2024-01-01:2024-01-10:metric:sessions"
        assert result.new_start == date(2024, 1, 1)
        assert result.new_end == date(2024, 1, 10)
        assert len(result.merged_rows) == 10
        assert await range_keys(store) == [result.new_key]

    @pytest.mark.asyncio
    async def test_overlap_expands_and_replaces(self, store, merger):
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 20), rows_for(1, 20))

        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 15), date(2024, 1, 31), rows_for(15, 31))

        assert result.new_key == build_range_key("device", "sessions", "2024-01-01", "2024-01-31")
        assert len(result.merged_rows) == 31
        assert await range_keys(store) == [result.new_key]

    @pytest.mark.asyncio
    async def test_adjacent_ranges_merge(self, store, merger):
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10))
        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 11), date(2024, 1, 20), rows_for(11, 20))

        assert result.new_start == date(2024, 1, 1)
        assert result.new_end == date(2024, 1, 20)
        assert await range_keys(store) == [result.new_key]

    @pytest.mark.asyncio
    async def test_gap_of_two_days_stays_separate(self, store, merger):
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10))
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 13), date(2024, 1, 20), rows_for(13, 20))

        assert len(await range_keys(store)) == 2

    @pytest.mark.asyncio
    async def test_bridging_fetch_collapses_fragments(self, store, merger):
        """One merge replaces every overlapping or adjacent fragment."""
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 5), rows_for(1, 5))
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 10), date(2024, 1, 15), rows_for(10, 15))
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 20), date(2024, 1, 25), rows_for(20, 25))

        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 6), date(2024, 1, 19), rows_for(6, 19))

        assert await range_keys(store) == [result.new_key]
        assert result.new_start == date(2024, 1, 1)
        assert result.new_end == date(2024, 1, 25)
        assert [row.date for row in result.merged_rows] == [f"2024-01-{d:02d}" for d in range(1, 26)]

    @pytest.mark.asyncio
    async def test_fresher_rows_win(self, store, merger, clock):
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10, sessions=1))
        clock.advance(1000)

        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 5), date(2024, 1, 6), rows_for(5, 6, sessions=9))

        by_date = {row.date: row.metrics["sessions"] for row in result.merged_rows}
        assert by_date["2024-01-04"] == 1
        assert by_date["2024-01-05"] == 9
        assert by_date["2024-01-06"] == 9
        assert len(result.merged_rows) == 10

    @pytest.mark.asyncio
    async def test_fresher_rows_win_for_metric_unknown_to_store(self, clock):
        """Reloaded rows keep their metrics, so a refreshed value still replaces the old one."""
        store = MemoryRangeStore(clock=clock, metric_fields=["sessions"])
        merger = RangeMerger(store, RangeMatcher(store))
        day = date(2024, 1, 1)

        await merger.merge_and_replace("device", "pageviews", day, day, [Row("2024-01-01", {"pageviews": 1}, {"device": "desktop"})])
        clock.advance(1000)
        result = await merger.merge_and_replace("device", "pageviews", day, day, [Row("2024-01-01", {"pageviews": 2}, {"device": "desktop"})])

        assert result.merged_rows == [Row("2024-01-01", {"pageviews": 2}, {"device": "desktop"})]
        assert (await store.get(result.new_key)).rows == result.merged_rows

    @pytest.mark.asyncio
    async def test_first_policy_keeps_cached_rows(self, store, clock):
        merger = RangeMerger(store, RangeMatcher(store), dedupe_policy="first")
        await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10, sessions=1))

        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 5), date(2024, 1, 6), rows_for(5, 6, sessions=9))

        assert {row.metrics["sessions"] for row in result.merged_rows} == {1}

    @pytest.mark.asyncio
    async def test_idempotent(self, store, merger):
        """Merging the same rows twice leaves the same cached state."""
        first = await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10))
        second = await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10))

        assert second.new_key == first.new_key
        assert second.merged_rows == first.merged_rows
        assert await range_keys(store) == [first.new_key]

    @pytest.mark.asyncio
    async def test_no_new_rows_inside_cached_range_is_noop(self, store, merger, clock):
        first = await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10))
        stamped = (await store.get(first.new_key)).timestamp
        clock.advance(1000)

        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 3), date(2024, 1, 4), [])

        assert result.new_key == first.new_key
        assert (await store.get(first.new_key)).timestamp == stamped

    @pytest.mark.asyncio
    async def test_empty_fetch_is_cached(self, store, merger):
        result = await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), [])

        entry = await store.get(result.new_key)
        assert entry is not None
        assert entry.rows == []

    @pytest.mark.asyncio
    async def test_chunk_entries_inside_merged_range_cleared(self, store, merger):
        inside = ChunkRequest(date(2024, 1, 1), date(2024, 1, 10))
        outside = ChunkRequest(date(2024, 2, 1), date(2024, 2, 10))
        await merger.store_chunk("device", "sessions", inside, rows_for(1, 10))
        await merger.store_chunk("device", "sessions", outside, [])
        await merger.store_chunk("geo", "sessions", inside, [])

        await merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 20), rows_for(1, 20))

        keys = await store.keys()
        assert build_chunk_key("device", "sessions", inside.start_date, inside.end_date) not in keys
        assert build_chunk_key("device", "sessions", outside.start_date, outside.end_date) in keys
        assert build_chunk_key("geo", "sessions", inside.start_date, inside.end_date) in keys

    @pytest.mark.asyncio
    async def test_concurrent_merges_serialized(self, store, merger):
        """Concurrent merges on one key still end in a single range."""
        await asyncio.gather(
            merger.merge_and_replace("device", "sessions", date(2024, 1, 1), date(2024, 1, 10), rows_for(1, 10)),
            merger.merge_and_replace("device", "sessions", date(2024, 1, 11), date(2024, 1, 20), rows_for(11, 20)),
            merger.merge_and_replace("device", "sessions", date(2024, 1, 21), date(2024, 1, 31), rows_for(21, 31)),
        )

        keys = await range_keys(store)
        assert keys == [build_range_key("device", "sessions", "2024-01-01", "2024-01-31")]
        assert len((await store.get(keys[0])).rows) == 31


class TestStoreHourly:

    @pytest.mark.asyncio
    async def test_store_hourly(self, store, merger):
        key = await merger.store_hourly("device", "views", date(2024, 1, 5), [make_row("2024-01-05 01:00:00")])

        assert key == "hourly:2024-01-05:dim:device:metric:views"
        assert (await store.get(key)).rows[0].date == "2024-01-05 01:00:00"
