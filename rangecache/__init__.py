"""
Range-based cache and chunked fetch orchestration for analytics dashboards.

This package contains:
- exceptions: Custom exception hierarchy
- validators: Input validation functions
- keys: Cache key codec and dimension normalization
- store: Range store backends (memory, JSON file, Redis)
- matcher / merger: Range lookup and the single cache writer
- planner: Chunk planning
- transport / pagination: Upstream API access
- orchestrator: Cache-first fetch state machine
- config: Centralized configuration
"""

# Import in dependency order
from rangecache.exceptions import (
    AnalyticsError,
    RateLimitedError,
    TransportError,
    AnalyticsAPIError,
    AnalyticsDataError,
    ValidationError,
    ConfigurationError,
)

from rangecache.validators import (
    validate_date_string,
    validate_date_range,
    validate_metric,
    validate_granularity,
    validate_span_days,
)

from rangecache.models import (
    Row,
    CacheEntry,
    Range,
    Granularity,
    FetchRequest,
    ChunkRequest,
    FailedChunk,
    FetchResult,
    TransportPage,
)

from rangecache.keys import (
    DimensionNormalizer,
    build_dimension_key,
    build_range_key,
    parse_range_key,
    build_chunk_key,
    parse_chunk_key,
    parse_hourly_key,
    build_hourly_key,
    normalize_dimension_name,
)

from rangecache.store import (
    RangeStore,
    MemoryRangeStore,
    JSONFileRangeStore,
    RedisRangeStore,
    create_store,
)

from rangecache.matcher import RangeMatcher
from rangecache.merger import RangeMerger, MergeResult, dedupe_rows
from rangecache.planner import plan_chunks, plan_hourly, missing_intervals
from rangecache.pagination import PageDrainer
from rangecache.transport import Transport, AnalyticsClient
from rangecache.orchestrator import FetchOrchestrator

from rangecache.config import config

__all__ = [
    # Exceptions
    "AnalyticsError",
    "RateLimitedError",
    "TransportError",
    "AnalyticsAPIError",
    "AnalyticsDataError",
    "ValidationError",
    "ConfigurationError",
    # Validators
    "validate_date_string",
    "validate_date_range",
    "validate_metric",
    "validate_granularity",
    "validate_span_days",
    # Models
    "Row",
    "CacheEntry",
    "Range",
    "Granularity",
    "FetchRequest",
    "ChunkRequest",
    "FailedChunk",
    "FetchResult",
    "TransportPage",
    # Keys
    "DimensionNormalizer",
    "build_dimension_key",
    "build_range_key",
    "parse_range_key",
    "build_chunk_key",
    "parse_chunk_key",
    "parse_hourly_key",
    "build_hourly_key",
    "normalize_dimension_name",
    # Store
    "RangeStore",
    "MemoryRangeStore",
    "JSONFileRangeStore",
    "RedisRangeStore",
    "create_store",
    # Cache logic
    "RangeMatcher",
    "RangeMerger",
    "MergeResult",
    "dedupe_rows",
    "plan_chunks",
    "plan_hourly",
    "missing_intervals",
    # Fetching
    "PageDrainer",
    "Transport",
    "AnalyticsClient",
    "FetchOrchestrator",
    # Config
    "config",
]
