"""
Centralized configuration for the analytics range cache.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from rangecache.config import config

    ttl = config.cache.ttl_seconds
    span = config.fetch.max_span_days
"""

import os
from dataclasses import dataclass, field
from datetime import date
from typing import List

from dotenv import load_dotenv

from rangecache.exceptions import ConfigurationError

# Load environment variables
load_dotenv()


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name, "")
    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or list(default)


@dataclass(frozen=True)
class APIConfig:
    """Upstream analytics API configuration."""

    base_url_template: str = "https://{account}.sentinelpro.com/api/v1/"
    account: str = field(default_factory=lambda: os.getenv("SENTINELPRO_ACCOUNT", ""))
    key: str = field(default_factory=lambda: os.getenv("SENTINELPRO_API_KEY", ""))
    property_id: str = field(default_factory=lambda: os.getenv("SENTINELPRO_PROPERTY_ID", ""))
    page_size: int = 1000
    max_pages: int = 50
    request_timeout: float = 15.0
    page_delay: float = 0.0

    @property
    def base_url(self) -> str:
        """Account-specific API root."""
        return self.base_url_template.format(account=self.account.strip().lower())


@dataclass(frozen=True)
class CacheConfig:
    """Range cache configuration."""

    ttl_seconds: int = field(
        default_factory=lambda: int(os.getenv("RANGECACHE_TTL_SECONDS", "86400"))
    )
    # Same-day data is still accumulating, so ranges reaching today expire sooner
    today_ttl_seconds: int = field(
        default_factory=lambda: int(os.getenv("RANGECACHE_TODAY_TTL_SECONDS", "3600"))
    )
    backend: str = field(default_factory=lambda: os.getenv("RANGECACHE_BACKEND", "memory"))
    path: str = field(
        default_factory=lambda: os.getenv("RANGECACHE_PATH", ".rangecache.json")
    )
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    namespace: str = "rangecache"
    adjacency_days: int = field(
        default_factory=lambda: int(os.getenv("RANGECACHE_ADJACENCY_DAYS", "1"))
    )
    dedupe_policy: str = field(
        default_factory=lambda: os.getenv("RANGECACHE_DEDUPE_POLICY", "last")
    )

    @property
    def ttl_ms(self) -> int:
        return self.ttl_seconds * 1000

    @property
    def today_ttl_ms(self) -> int:
        return self.today_ttl_seconds * 1000

    def ttl_ms_for(self, end: date, today: date) -> int:
        """TTL for an entry whose range ends on ``end``."""
        if end >= today:
            return min(self.ttl_ms, self.today_ttl_ms)
        return self.ttl_ms


@dataclass(frozen=True)
class FetchConfig:
    """Chunking, pacing and retry configuration."""

    max_span_days: int = 10
    hourly_max_dates: int = 2
    request_delay: float = 1.0  # seconds between upstream requests
    retry_max_attempts: int = 6  # first call plus 5 retries
    retry_base_delay: float = 1.0
    retry_max_delay: float = 16.0


@dataclass(frozen=True)
class DimensionConfig:
    """Dimension and metric naming."""

    canonical: List[str] = field(default_factory=lambda: _env_list(
        "RANGECACHE_CANONICAL_DIMENSIONS",
        ["device", "geo", "browser", "os", "referrer"],
    ))

    # Row fields that hold metric values rather than dimension values
    metric_fields: List[str] = field(default_factory=lambda: [
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
    ])

    # Row fields excluded from the dedup identity
    ignored_fields: List[str] = field(default_factory=lambda: ["metric"])

    # Metrics the traffic endpoint accepts
    allowed_metrics: List[str] = field(default_factory=lambda: [
        "sessions", "visits", "views", "traffic", "all",
    ])


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.3.0"
    api: APIConfig = field(default_factory=APIConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    dimensions: DimensionConfig = field(default_factory=DimensionConfig)


# Global config instance
config = AppConfig()


def validate_config(cfg: AppConfig = None, require_api: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this on startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Args:
        cfg: Configuration to validate (defaults to the global config)
        require_api: If True, validate API credentials

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = cfg or config
    errors = []

    if require_api:
        if not cfg.api.account:
            errors.append("SENTINELPRO_ACCOUNT is required but not set")
        if not cfg.api.key:
            errors.append("SENTINELPRO_API_KEY is required but not set")
        if not cfg.api.property_id:
            errors.append("SENTINELPRO_PROPERTY_ID is required but not set")

    account = cfg.api.account.strip().lower()
    if account and not all(c.isalnum() or c == "-" for c in account):
        errors.append("SENTINELPRO_ACCOUNT may only contain letters, digits and '-'")

    if cfg.cache.backend not in ("memory", "json", "redis"):
        errors.append(
            f"RANGECACHE_BACKEND must be memory, json or redis (got {cfg.cache.backend!r})"
        )

    if cfg.cache.ttl_seconds <= 0 or cfg.cache.today_ttl_seconds <= 0:
        errors.append("Cache TTLs must be positive")

    if cfg.cache.dedupe_policy not in ("last", "first"):
        errors.append("dedupe_policy must be 'last' or 'first'")

    if cfg.cache.adjacency_days < 0:
        errors.append("adjacency_days must not be negative")

    if cfg.fetch.max_span_days < 1:
        errors.append("max_span_days must be at least 1")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
