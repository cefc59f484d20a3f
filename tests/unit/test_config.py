"""
Tests for rangecache.config module.
"""
import pytest
from datetime import date
from unittest.mock import patch

from rangecache.config import (
    APIConfig,
    AppConfig,
    CacheConfig,
    DimensionConfig,
    FetchConfig,
    validate_config,
)
from rangecache.exceptions import ConfigurationError


class TestDefaults:
    """Tests for default configuration values."""

    def test_fetch_defaults(self):
        fetch = FetchConfig()
        assert fetch.max_span_days == 10
        assert fetch.hourly_max_dates == 2
        assert fetch.request_delay == 1.0
        assert fetch.retry_max_attempts == 6
        assert fetch.retry_base_delay == 1.0
        assert fetch.retry_max_delay == 16.0

    def test_cache_from_env(self):
        with patch.dict("os.environ", {"RANGECACHE_TTL_SECONDS": "60", "RANGECACHE_BACKEND": "json"}):
            cache = CacheConfig()
        assert cache.ttl_ms == 60_000
        assert cache.backend == "json"

    def test_ttl_for_today(self):
        """Ranges reaching today use the shorter TTL."""
        cache = CacheConfig(ttl_seconds=86400, today_ttl_seconds=3600)
        today = date(2024, 2, 15)
        assert cache.ttl_ms_for(date(2024, 2, 15), today) == 3_600_000
        assert cache.ttl_ms_for(date(2024, 2, 14), today) == 86_400_000

    def test_canonical_dimensions_from_env(self):
        with patch.dict("os.environ", {"RANGECACHE_CANONICAL_DIMENSIONS": "device, country ,"}):
            dims = DimensionConfig()
        assert dims.canonical == ["device", "country"]

    def test_base_url(self):
        assert APIConfig(account=" Demo ").base_url == "https://demo.sentinelpro.com/api/v1/"


class TestValidateConfig:
    """Tests for validate_config function."""

    def test_valid(self):
        cfg = AppConfig(api=APIConfig(account="demo", key="k", property_id="p"))
        validate_config(cfg)

    def test_missing_api_credentials(self):
        cfg = AppConfig(api=APIConfig(account="", key="", property_id=""))
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(cfg)
        message = str(exc_info.value)
        assert "SENTINELPRO_ACCOUNT" in message
        assert "SENTINELPRO_API_KEY" in message
        assert "SENTINELPRO_PROPERTY_ID" in message

    def test_api_not_required(self):
        cfg = AppConfig(api=APIConfig(account="", key="", property_id=""))
        validate_config(cfg, require_api=False)

    def test_bad_account_name(self):
        cfg = AppConfig(api=APIConfig(account="demo.evil.com/", key="k", property_id="p"))
        with pytest.raises(ConfigurationError, match="SENTINELPRO_ACCOUNT"):
            validate_config(cfg)

    def test_bad_backend(self):
        cfg = AppConfig(cache=CacheConfig(backend="sqlite"))
        with pytest.raises(ConfigurationError, match="RANGECACHE_BACKEND"):
            validate_config(cfg, require_api=False)

    def test_bad_dedupe_policy(self):
        cfg = AppConfig(cache=CacheConfig(backend="memory", dedupe_policy="random"))
        with pytest.raises(ConfigurationError, match="dedupe_policy"):
            validate_config(cfg, require_api=False)

    def test_negative_adjacency(self):
        cfg = AppConfig(cache=CacheConfig(backend="memory", adjacency_days=-1))
        with pytest.raises(ConfigurationError, match="adjacency_days"):
            validate_config(cfg, require_api=False)

    def test_merge_policy_from_env(self):
        with patch.dict("os.environ", {"RANGECACHE_ADJACENCY_DAYS": "2", "RANGECACHE_DEDUPE_POLICY": "first"}):
            cache = CacheConfig()
        assert cache.adjacency_days == 2
        assert cache.dedupe_policy == "first"
