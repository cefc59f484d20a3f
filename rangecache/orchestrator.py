"""
Fetch orchestration: cache first, then chunked upstream fetches.

A request is answered from one covering cached range when possible. Otherwise
only the sub-intervals the cache lacks are planned into chunks and fetched
strictly one after another, rate limits are retried with backoff, failures
are recorded per chunk, and successful rows are merged back into the cache.

Usage:
    orchestrator = FetchOrchestrator(transport, store)
    request = FetchRequest.create("device", "sessions", "2024-01-01", "2024-01-25")
    result = await orchestrator.fetch(request)
    if not result.ok:
        result = await orchestrator.retry_failed(result)
"""
import asyncio
from datetime import date
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from rangecache.config import AppConfig, config as default_config
from rangecache.exceptions import AnalyticsError, RateLimitedError
from rangecache.keys import DimensionNormalizer
from rangecache.matcher import RangeMatcher
from rangecache.merger import RangeMerger, dedupe_rows
from rangecache.models import (
    ChunkRequest,
    FailedChunk,
    FetchRequest,
    FetchResult,
    Granularity,
    Row,
    iso,
)
from rangecache.observability import MetricsCollector, Timer, get_logger
from rangecache.pagination import PageDrainer
from rangecache.planner import missing_intervals, plan_chunks, plan_hourly
from rangecache.resilience import RetryConfig, retry_with_backoff
from rangecache.store import RangeStore
from rangecache.transport import Transport

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# (chunk, rows) for a fetched chunk, (chunk, None) for a failed one
ChunkOutcome = Tuple[ChunkRequest, Optional[List[Row]]]


def clip_rows(rows: Iterable[Row], start: date, end: date) -> List[Row]:
    """Rows whose date falls inside [start, end]."""
    low, high = iso(start), iso(end)
    return [row for row in rows if low <= row.day <= high]


def successful_runs(outcomes: List[ChunkOutcome]) -> List[List[ChunkOutcome]]:
    """Maximal runs of consecutive successful chunks, in order."""
    runs: List[List[ChunkOutcome]] = []
    current: List[ChunkOutcome] = []
    for outcome in outcomes:
        if outcome[1] is None:
            if current:
                runs.append(current)
            current = []
        else:
            current.append(outcome)
    if current:
        runs.append(current)
    return runs


class FetchOrchestrator:
    """
    Resolves FetchRequests from the range cache and the upstream API.

    Never raises for chunk failures: they come back in
    FetchResult.failed_chunks and can be resubmitted with retry_failed().

    Args:
        transport: Upstream page fetcher
        store: Range store shared with the matcher and merger
        cfg: Application configuration (defaults to the global config)
        sleep: Awaitable sleep for pacing and backoff
        metrics: Collector for fetch counters
    """

    def __init__(
        self,
        transport: Transport,
        store: RangeStore,
        cfg: AppConfig = None,
        sleep: Sleep = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None,
        matcher: Optional[RangeMatcher] = None,
        merger: Optional[RangeMerger] = None,
    ):
        cfg = cfg or default_config
        self.transport = transport
        self.store = store
        self.sleep = sleep
        self.metrics = metrics or MetricsCollector()

        self.matcher = matcher or RangeMatcher(
            store,
            ttl_ms=cfg.cache.ttl_ms,
            today_ttl_ms=cfg.cache.today_ttl_ms,
            adjacency_days=cfg.cache.adjacency_days,
        )
        self.merger = merger or RangeMerger(
            store,
            self.matcher,
            ignored_fields=cfg.dimensions.ignored_fields,
            dedupe_policy=cfg.cache.dedupe_policy,
        )
        self.normalizer = DimensionNormalizer(cfg.dimensions.canonical)
        self.metric_fields = list(cfg.dimensions.metric_fields)

        self.max_span_days = cfg.fetch.max_span_days
        self.hourly_max_dates = cfg.fetch.hourly_max_dates
        self.request_delay = cfg.fetch.request_delay
        self.max_pages = cfg.api.max_pages
        self.page_delay = cfg.api.page_delay
        self.retry_config = RetryConfig(
            max_attempts=cfg.fetch.retry_max_attempts,
            base_delay=cfg.fetch.retry_base_delay,
            max_delay=cfg.fetch.retry_max_delay,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    async def fetch_range(
        self,
        dimensions: Any,
        metric: str,
        start_date: Any,
        end_date: Any,
        granularity: Optional[str] = None,
    ) -> FetchResult:
        """Validate raw caller input, then fetch()."""
        request = FetchRequest.create(
            dimensions, metric, start_date, end_date,
            granularity=granularity, normalizer=self.normalizer,
        )
        return await self.fetch(request)

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """
        Resolve a request from cache and network.

        Returns:
            FetchResult with rows clipped to the requested window and any
            chunks that could not be fetched
        """
        if request.granularity == Granularity.HOURLY:
            return await self.fetch_hourly(request)

        dim, metric = request.dimension_key, request.metric
        start, end = request.start_date, request.end_date

        covering = await self.matcher.find_covering_range(dim, metric, start, end)
        if covering is not None:
            self.metrics.increment("cache_hits")
            logger.info(
                "Served from cache",
                extra={"key": covering.key, "start_date": iso(start), "end_date": iso(end)},
            )
            return FetchResult(
                request=request,
                rows=clip_rows(covering.entry.rows, start, end),
                from_cache=True,
            )
        self.metrics.increment("cache_misses")

        cached_rows: List[Row] = []
        overlap = await self.matcher.find_overlapping(dim, metric, start, end)
        if overlap is not None:
            intervals = missing_intervals(start, end, overlap.range)
            cached_rows = clip_rows(overlap.entry.rows, start, end)
        else:
            intervals = [request.chunk]

        chunks = [
            chunk
            for interval in intervals
            for chunk in plan_chunks(interval.start_date, interval.end_date, self.max_span_days)
        ]
        logger.info(
            f"Fetching {len(chunks)} chunk(s)",
            extra={
                "dimension_key": dim,
                "metric": metric,
                "start_date": iso(start),
                "end_date": iso(end),
                "chunks": [chunk.to_dict() for chunk in chunks],
            },
        )

        outcomes, failed, calls = await self._fetch_chunks(request, chunks)
        await self._merge_outcomes(request, outcomes, whole_request=not failed)

        fetched = [row for _, rows in outcomes if rows for row in rows]
        return FetchResult(
            request=request,
            rows=self._combine(cached_rows, fetched, start, end),
            failed_chunks=failed,
            from_cache=calls == 0 and not failed,
            transport_calls=calls,
        )

    async def fetch_hourly(self, request: FetchRequest) -> FetchResult:
        """
        Hourly path: each planned date is fetched and cached on its own.
        """
        dim, metric = request.dimension_key, request.metric
        days = plan_hourly(request.start_date, request.end_date, self.hourly_max_dates)
        drainer = self._drainer()

        rows: List[Row] = []
        failed: List[FailedChunk] = []
        made_call = False

        for day in days:
            entry = await self.matcher.find_hourly_entry(dim, metric, day)
            if entry is not None:
                self.metrics.increment("cache_hits")
                rows.extend(entry.rows)
                continue

            if made_call and self.request_delay > 0:
                await self.sleep(self.request_delay)
            made_call = True

            chunk = ChunkRequest(day, day)
            day_rows, failure = await self._fetch_chunk(request, chunk, drainer)
            if failure is not None:
                failed.append(failure)
                continue
            await self.merger.store_hourly(dim, metric, day, day_rows)
            rows.extend(day_rows)

        return FetchResult(
            request=request,
            rows=sorted(rows, key=lambda row: row.date),
            failed_chunks=failed,
            from_cache=bool(days) and not made_call,
            transport_calls=drainer.calls,
        )

    async def retry_failed(self, result: FetchResult) -> FetchResult:
        """
        Resubmit exactly the failed chunks of an earlier result.

        Rows already in ``result`` are kept; rows fetched now are merged into
        the cache and added to them.
        """
        if result.ok:
            return result

        request = result.request
        chunks = [failure.chunk for failure in result.failed_chunks]
        logger.info(
            f"Retrying {len(chunks)} failed chunk(s)",
            extra={"chunks": [chunk.to_dict() for chunk in chunks]},
        )

        if request.granularity == Granularity.HOURLY:
            drainer = self._drainer()
            fetched: List[Row] = []
            failed: List[FailedChunk] = []
            for index, chunk in enumerate(chunks):
                if index and self.request_delay > 0:
                    await self.sleep(self.request_delay)
                day_rows, failure = await self._fetch_chunk(request, chunk, drainer)
                if failure is not None:
                    failed.append(failure)
                    continue
                await self.merger.store_hourly(
                    request.dimension_key, request.metric, chunk.start_date, day_rows
                )
                fetched.extend(day_rows)
            calls = drainer.calls
        else:
            outcomes, failed, calls = await self._fetch_chunks(request, chunks)
            await self._merge_outcomes(request, outcomes, whole_request=False)
            fetched = [row for _, rows in outcomes if rows for row in rows]

        return FetchResult(
            request=request,
            rows=self._combine(result.rows, fetched, request.start_date, request.end_date),
            failed_chunks=failed,
            transport_calls=result.transport_calls + calls,
        )

    async def fetch_with_comparison(
        self,
        main: FetchRequest,
        comparison: FetchRequest,
    ) -> Tuple[FetchResult, FetchResult]:
        """Fetch a main and a comparison period concurrently."""
        main_result, comparison_result = await asyncio.gather(
            self.fetch(main),
            self.fetch(comparison),
        )
        return main_result, comparison_result

    def get_stats(self) -> dict:
        return self.metrics.get_stats()

    # ═══════════════════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════════════════

    def _drainer(self) -> PageDrainer:
        return PageDrainer(
            self.transport.fetch,
            max_pages=self.max_pages,
            page_delay=self.page_delay,
            sleep=self.sleep,
        )

    def _to_rows(self, raw_rows: List[dict], chunk: ChunkRequest) -> List[Row]:
        """Normalize raw API rows and keep those inside the chunk."""
        rows = []
        for raw in raw_rows:
            row = Row.from_api(self.normalizer.normalize_row_keys(raw), self.metric_fields)
            if row is not None and chunk.contains_day(row.date):
                rows.append(row)
        return rows

    def _combine(self, older: List[Row], newer: List[Row], start: date, end: date) -> List[Row]:
        return clip_rows(
            dedupe_rows(older + newer, self.merger.ignored_fields, self.merger.dedupe_policy),
            start,
            end,
        )

    async def _fetch_chunk(
        self,
        request: FetchRequest,
        chunk: ChunkRequest,
        drainer: PageDrainer,
    ) -> Tuple[Optional[List[Row]], Optional[FailedChunk]]:
        """
        Fetch every page of one chunk, retrying rate limits.

        Returns:
            (rows, None) on success, (None, FailedChunk) on failure
        """
        attempts = 0

        async def attempt() -> List[dict]:
            nonlocal attempts
            attempts += 1
            return await drainer.drain(request, chunk)

        def on_retry(attempt_no: int, delay: float, error: BaseException) -> None:
            self.metrics.increment("retries")

        timer = Timer("fetch_chunk")
        try:
            with timer:
                raw_rows = await retry_with_backoff(
                    attempt,
                    config=self.retry_config,
                    retryable_exceptions=(RateLimitedError,),
                    sleep=self.sleep,
                    on_retry=on_retry,
                )
        except AnalyticsError as e:
            self.metrics.increment("chunks_failed")
            self.metrics.record_error(type(e).__name__)
            logger.warning(
                "Chunk failed",
                extra={**chunk.to_dict(), "error": str(e), "attempts": attempts},
            )
            return None, FailedChunk(
                chunk=chunk,
                reason=str(e),
                status_code=getattr(e, "status_code", None),
                attempts=attempts,
            )
        except Exception as e:
            self.metrics.increment("chunks_failed")
            self.metrics.record_error(type(e).__name__)
            logger.exception(
                "Unexpected error fetching chunk",
                extra={**chunk.to_dict(), "attempts": attempts},
            )
            return None, FailedChunk(chunk=chunk, reason=str(e) or type(e).__name__, attempts=attempts)

        self.metrics.increment("chunks_fetched")
        self.metrics.record_timing("fetch_chunk", timer.elapsed_ms)
        return self._to_rows(raw_rows, chunk), None

    async def _fetch_chunks(
        self,
        request: FetchRequest,
        chunks: List[ChunkRequest],
    ) -> Tuple[List[ChunkOutcome], List[FailedChunk], int]:
        """
        Fetch chunks in ascending order, one at a time.

        A fresh chunk-level cache entry stands in for a network call. The
        inter-request delay only separates two upstream calls.
        """
        dim, metric = request.dimension_key, request.metric
        drainer = self._drainer()
        outcomes: List[ChunkOutcome] = []
        failed: List[FailedChunk] = []
        made_call = False

        for chunk in chunks:
            entry = await self.matcher.find_chunk_entry(dim, metric, chunk)
            if entry is not None:
                self.metrics.increment("chunk_cache_hits")
                outcomes.append((chunk, clip_rows(entry.rows, chunk.start_date, chunk.end_date)))
                continue

            if made_call and self.request_delay > 0:
                await self.sleep(self.request_delay)
            made_call = True

            rows, failure = await self._fetch_chunk(request, chunk, drainer)
            if failure is not None:
                failed.append(failure)
                outcomes.append((chunk, None))
                continue

            await self.merger.store_chunk(dim, metric, chunk, rows)
            outcomes.append((chunk, rows))

        return outcomes, failed, drainer.calls

    async def _merge_outcomes(
        self,
        request: FetchRequest,
        outcomes: List[ChunkOutcome],
        whole_request: bool,
    ) -> None:
        """
        Merge fetched rows into the range cache.

        With every chunk fetched, one merge spans the request bounds.
        Otherwise each run of consecutive successful chunks is merged over
        its own bounds so no failed interval is recorded as cached.
        """
        dim, metric = request.dimension_key, request.metric

        if whole_request:
            if not outcomes:
                return
            rows = [row for _, chunk_rows in outcomes for row in chunk_rows]
            await self.merger.merge_and_replace(
                dim, metric, request.start_date, request.end_date, rows
            )
            return

        for run in successful_runs(outcomes):
            rows = [row for _, chunk_rows in run for row in chunk_rows]
            await self.merger.merge_and_replace(
                dim, metric, run[0][0].start_date, run[-1][0].end_date, rows
            )
