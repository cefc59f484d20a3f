"""
Pytest configuration and shared fixtures.
"""
import pytest
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional

from rangecache.config import AppConfig
from rangecache.models import ChunkRequest, FetchRequest, Granularity, Row, TransportPage
from rangecache.orchestrator import FetchOrchestrator
from rangecache.store import MemoryRangeStore
from rangecache.transport import Transport

# 2024-02-15 12:00:00 UTC
FIXED_NOW_MS = 1_707_998_400_000

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = FIXED_NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def days_between(start: date, end: date) -> List[date]:
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def daily_rows(request: FetchRequest, chunk: ChunkRequest, page: int) -> List[Dict[str, Any]]:
    """One desktop row per day, sessions equal to the day of month."""
    if request.granularity == Granularity.HOURLY:
        return [
            {"date": f"{day.isoformat()} {hour:02d}:00:00", "device": "desktop", "sessions": hour + 1}
            for day in days_between(chunk.start_date, chunk.end_date)
            for hour in (0, 1)
        ]
    return [
        {"date": day.isoformat(), "device": "desktop", "sessions": day.day}
        for day in days_between(chunk.start_date, chunk.end_date)
    ]


class FakeTransport(Transport):
    """
    Scripted transport.

    ``failures`` maps a chunk start date to exceptions raised, in order, on
    successive calls for that chunk; once exhausted the chunk succeeds.
    """

    def __init__(
        self,
        rows_for: Callable[[FetchRequest, ChunkRequest, int], List[Dict[str, Any]]] = daily_rows,
        failures: Optional[Dict[date, List[Exception]]] = None,
        total_pages: int = 1,
    ):
        self.rows_for = rows_for
        self.failures = failures or {}
        self.total_pages = total_pages
        self.calls: List[tuple] = []

    async def fetch(self, request: FetchRequest, chunk: ChunkRequest, page: int = 1) -> TransportPage:
        self.calls.append((chunk, page))
        pending = self.failures.get(chunk.start_date)
        if pending:
            raise pending.pop(0)
        return TransportPage(rows=self.rows_for(request, chunk, page), total_pages=self.total_pages)

    @property
    def chunks(self) -> List[ChunkRequest]:
        return [chunk for chunk, _ in self.calls]


def make_row(day: str, sessions: int = 1, **dimensions) -> Row:
    """Row with a device dimension unless others are given."""
    return Row(date=day, metrics={"sessions": sessions}, dimensions=dimensions or {"device": "desktop"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def app_config() -> AppConfig:
    """Default configuration, independent of the process environment."""
    return AppConfig()


@pytest.fixture
def store(clock) -> MemoryRangeStore:
    return MemoryRangeStore(clock=clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def orchestrator(transport, store, app_config, sleep) -> FetchOrchestrator:
    return FetchOrchestrator(transport, store, cfg=app_config, sleep=sleep)


@pytest.fixture
def sample_api_rows() -> List[Dict[str, Any]]:
    """Raw rows as the traffic API returns them."""
    return [
        {"date": "2024-01-01", "Device": "desktop", "sessions": "12", "pagesPerSession": 2.5},
        {"date": "2024-01-01", "device": "mobile", "sessions": 7, "averageEngagedDuration": 31},
        {"date": "2024-01-02", "device": "desktop", "sessions": 9},
    ]
