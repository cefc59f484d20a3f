"""
Range store backends.

Provides:
- RangeStore: async get/set/delete/keys/is_fresh contract over CacheEntry
- MemoryRangeStore: process-local dict
- JSONFileRangeStore: one JSON document on disk, expired entries dropped on load
- RedisRangeStore: redis.asyncio with graceful fallback when Redis is unavailable

Usage:
    store = MemoryRangeStore()
    await store.set("range:device:2024-01-01:2024-01-10:metric:sessions", rows)
    entry = await store.get("range:device:2024-01-01:2024-01-10:metric:sessions")
    fresh = await store.is_fresh(entry.key, ttl_ms=86_400_000)
"""
import asyncio
import copy
import json
import os
import tempfile
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from rangecache.config import AppConfig, config as default_config
from rangecache.models import CacheEntry, Row, DEFAULT_METRIC_FIELDS
from rangecache.observability import get_logger, Timer

logger = get_logger(__name__)

Clock = Callable[[], int]


def now_ms() -> int:
    """Current time in milliseconds since epoch."""
    return int(time.time() * 1000)


@dataclass
class CacheStats:
    """Store statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0
    deletes: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "sets": self.sets,
            "deletes": self.deletes,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        """Reset all counters."""
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.sets = 0
        self.deletes = 0


class RangeStore(ABC):
    """
    Persistent key/value store of cache entries.

    Subclasses provide four raw primitives over JSON-able payloads
    (``{"data": [...], "timestamp": ms, "meta": {...}}``); this base class
    turns them into the CacheEntry contract and keeps statistics. Nothing
    above this layer may assume a specific medium.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        metric_fields: Iterable[str] = DEFAULT_METRIC_FIELDS,
    ):
        self._clock = clock or now_ms
        self._metric_fields = frozenset(metric_fields)
        self._stats = CacheStats()

    # ── backend primitives ───────────────────────────────────────────────────

    @abstractmethod
    async def _load(self, key: str) -> Optional[Dict[str, Any]]:
        """Raw payload for key, or None."""

    @abstractmethod
    async def _save(self, key: str, payload: Dict[str, Any]) -> bool:
        """Write payload; True on success."""

    @abstractmethod
    async def _remove(self, key: str) -> bool:
        """Remove key; True on success."""

    @abstractmethod
    async def _list_keys(self) -> List[str]:
        """All stored keys."""

    # ── public contract ──────────────────────────────────────────────────────

    def now_ms(self) -> int:
        return self._clock()

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Entry stored under key, or None."""
        payload = await self._load(key)
        if payload is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return CacheEntry.from_dict(key, payload, self._metric_fields)

    async def set(
        self,
        key: str,
        rows: List[Row],
        meta: Optional[Dict[str, Any]] = None,
    ) -> CacheEntry:
        """Overwrite key unconditionally, stamped with the current time."""
        entry = CacheEntry(key=key, rows=list(rows), timestamp=self.now_ms(), meta=dict(meta or {}))
        if await self._save(key, entry.to_dict()):
            self._stats.sets += 1
        return entry

    async def delete(self, key: str) -> None:
        if await self._remove(key):
            self._stats.deletes += 1

    async def keys(self) -> List[str]:
        return await self._list_keys()

    async def is_fresh(self, key: str, ttl_ms: int) -> bool:
        """True iff the entry exists and is younger than ttl_ms."""
        entry = await self.get(key)
        return entry is not None and entry.is_fresh(self.now_ms(), ttl_ms)

    async def refresh(self, key: str) -> bool:
        """Re-stamp an existing entry with the current time."""
        payload = await self._load(key)
        if payload is None:
            return False
        payload = {**payload, "timestamp": self.now_ms()}
        return await self._save(key, payload)

    async def clear(self) -> None:
        """Remove every entry."""
        for key in await self._list_keys():
            await self.delete(key)

    @asynccontextmanager
    async def batch(self):
        """Group several mutations; backends may defer persistence until exit."""
        yield self

    def get_stats(self) -> dict:
        return self._stats.to_dict()

    def reset_stats(self) -> None:
        self._stats.reset()


class MemoryRangeStore(RangeStore):
    """Volatile in-process store."""

    def __init__(self, clock: Optional[Clock] = None, metric_fields: Iterable[str] = DEFAULT_METRIC_FIELDS):
        super().__init__(clock, metric_fields)
        self._data: Dict[str, Dict[str, Any]] = {}

    async def _load(self, key: str) -> Optional[Dict[str, Any]]:
        payload = self._data.get(key)
        return copy.deepcopy(payload) if payload is not None else None

    async def _save(self, key: str, payload: Dict[str, Any]) -> bool:
        self._data[key] = copy.deepcopy(payload)
        return True

    async def _remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def _list_keys(self) -> List[str]:
        return list(self._data)


class JSONFileRangeStore(RangeStore):
    """
    Whole cache kept as one JSON document on disk.

    Entries older than ``ttl_ms`` are dropped when the file is loaded.
    Every mutation rewrites the document atomically in a worker thread;
    inside ``batch()`` the rewrite happens once, when the outermost batch
    exits.
    """

    def __init__(
        self,
        path: str,
        ttl_ms: int = 86_400_000,
        clock: Optional[Clock] = None,
        metric_fields: Iterable[str] = DEFAULT_METRIC_FIELDS,
    ):
        super().__init__(clock, metric_fields)
        self.path = path
        self.ttl_ms = ttl_ms
        self._data: Dict[str, Dict[str, Any]] = {}
        self._batch_depth = 0
        self._dirty = False
        self._read_file()

    def _read_file(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                parsed = json.load(f)
        except (OSError, ValueError) as e:
            self._stats.errors += 1
            logger.warning(f"Could not read cache file {self.path}: {e}")
            return

        if not isinstance(parsed, dict):
            logger.warning(f"Ignoring cache file {self.path}: not a JSON object")
            return

        now = self.now_ms()
        for key, payload in parsed.items():
            if not isinstance(payload, dict):
                continue
            timestamp = payload.get("timestamp") or 0
            if timestamp and now - timestamp < self.ttl_ms:
                self._data[key] = payload

        logger.debug(
            "Cache file loaded",
            extra={"path": self.path, "entries": len(self._data), "dropped": len(parsed) - len(self._data)},
        )

    def _write_file(self, document: str) -> bool:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".rangecache-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(document)
            os.replace(tmp_path, self.path)
            return True
        except OSError as e:
            self._stats.errors += 1
            logger.warning(f"Could not write cache file {self.path}: {e}")
            return False

    def _remove_file(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)

    async def _flush(self) -> bool:
        if self._batch_depth:
            self._dirty = True
            return True
        self._dirty = False
        # Serialize on the loop so the thread never sees a dict being mutated
        document = json.dumps(self._data, default=str)
        return await asyncio.to_thread(self._write_file, document)

    @asynccontextmanager
    async def batch(self):
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if not self._batch_depth and self._dirty:
                await self._flush()

    async def _load(self, key: str) -> Optional[Dict[str, Any]]:
        payload = self._data.get(key)
        return copy.deepcopy(payload) if payload is not None else None

    async def _save(self, key: str, payload: Dict[str, Any]) -> bool:
        self._data[key] = copy.deepcopy(payload)
        return await self._flush()

    async def _remove(self, key: str) -> bool:
        if self._data.pop(key, None) is None:
            return False
        return await self._flush()

    async def _list_keys(self) -> List[str]:
        return list(self._data)

    async def clear(self) -> None:
        self._stats.deletes += len(self._data)
        self._data = {}
        self._dirty = False
        await asyncio.to_thread(self._remove_file)


class RedisRangeStore(RangeStore):
    """
    Redis-backed store with graceful degradation.

    Keys are namespaced (``<namespace>:<key>``). Each write also sets a
    server-side expiry of ``expire_seconds`` so abandoned entries are
    eventually collected; freshness is still decided from the entry
    timestamp. When Redis is unreachable every read is a miss and every
    write is dropped.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        namespace: str = "rangecache",
        expire_seconds: int = 86400,
        clock: Optional[Clock] = None,
        metric_fields: Iterable[str] = DEFAULT_METRIC_FIELDS,
    ):
        super().__init__(clock, metric_fields)
        self.url = url
        self.namespace = namespace
        self.expire_seconds = expire_seconds
        self._client = None
        self._connected = False

    async def connect(self) -> bool:
        """
        Connect to Redis server.

        Returns:
            True if connected successfully, False otherwise
        """
        if self._client is not None:
            return self._connected
        try:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            await self._client.ping()
            self._connected = True
            logger.info(f"Redis connected: {self.url}")
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connection failed: {e}")
            self._connected = False
        return self._connected

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._connected = False
            logger.info("Redis disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    def _ns(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def _load(self, key: str) -> Optional[Dict[str, Any]]:
        if not self.is_connected:
            return None
        try:
            with Timer("range_store_get"):
                value = await self._client.get(self._ns(key))
            return json.loads(value) if value is not None else None
        except (RedisError, ValueError) as e:
            self._stats.errors += 1
            logger.debug(f"Store get error for {key}: {e}")
            return None

    async def _save(self, key: str, payload: Dict[str, Any]) -> bool:
        if not self.is_connected:
            return False
        try:
            with Timer("range_store_set"):
                serialized = json.dumps(payload, default=str)
                await self._client.setex(self._ns(key), self.expire_seconds, serialized)
            return True
        except RedisError as e:
            self._stats.errors += 1
            logger.debug(f"Store set error for {key}: {e}")
            return False

    async def _remove(self, key: str) -> bool:
        if not self.is_connected:
            return False
        try:
            return bool(await self._client.delete(self._ns(key)))
        except RedisError as e:
            self._stats.errors += 1
            logger.debug(f"Store delete error for {key}: {e}")
            return False

    async def _list_keys(self) -> List[str]:
        if not self.is_connected:
            return []
        prefix = f"{self.namespace}:"
        keys = []
        try:
            # SCAN rather than KEYS so large keyspaces are not blocked
            async for key in self._client.scan_iter(match=f"{prefix}*", count=100):
                keys.append(key[len(prefix):])
        except RedisError as e:
            self._stats.errors += 1
            logger.debug(f"Store scan error: {e}")
        return keys

    def get_stats(self) -> dict:
        return {
            "connected": self.is_connected,
            "url": self.url if self.is_connected else None,
            **self._stats.to_dict(),
        }


async def create_store(cfg: AppConfig = None, clock: Optional[Clock] = None) -> RangeStore:
    """Build (and connect) the store backend selected by configuration."""
    cfg = cfg or default_config
    metric_fields = cfg.dimensions.metric_fields
    backend = cfg.cache.backend

    if backend == "json":
        return JSONFileRangeStore(cfg.cache.path, ttl_ms=cfg.cache.ttl_ms, clock=clock, metric_fields=metric_fields)

    if backend == "redis":
        store = RedisRangeStore(
            url=cfg.cache.redis_url,
            namespace=cfg.cache.namespace,
            expire_seconds=cfg.cache.ttl_seconds,
            clock=clock,
            metric_fields=metric_fields,
        )
        await store.connect()
        return store

    return MemoryRangeStore(clock=clock, metric_fields=metric_fields)
