"""Shared fixtures and sample data for bridgecast tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from bridgecast.cache.locations import StorageLocation
from bridgecast.cache.store import SharedCacheStore
from bridgecast.models.snapshot import CacheEntry, HourlyRecord

# Canonical capture time for sample snapshots
CAPTURE_TIME = datetime(2026, 2, 23, 17, 0, 0, tzinfo=timezone.utc)

# 24 hourly records plus an image this size serialize to 5 chunks of 16 KB
IMAGE_SIZE = 54_000
CHUNK_SIZE = 16384


def make_records(count: int = 24, start: datetime = CAPTURE_TIME) -> list[HourlyRecord]:
    """``count`` consecutive hourly records starting at ``start``."""
    return [
        HourlyRecord(
            timestamp=start + timedelta(hours=i),
            temperature_f=58.0 + (i % 12) * 0.5,
            cloud_cover_pct=float((i * 7) % 100),
            wind_speed_mph=round(6.2 + (i % 5) * 1.1, 2),
            precip_prob_pct=float((i * 3) % 40),
        )
        for i in range(count)
    ]


def make_entry(
    captured_at: datetime | None = None,
    count: int = 24,
    image: bytes | None = None,
) -> CacheEntry:
    captured_at = captured_at or datetime.now(timezone.utc)
    return CacheEntry(
        records=make_records(count, start=captured_at.replace(minute=0, second=0, microsecond=0)),
        capture_timestamp=captured_at,
        image=image,
    )


def make_image(size: int = IMAGE_SIZE) -> bytes:
    return bytes(i % 251 for i in range(size))


# ---------------------------------------------------------------------------
# Snapshot fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_entry() -> CacheEntry:
    """A fresh 24-hour snapshot without an image (fits in one message)."""
    return make_entry()


@pytest.fixture
def large_entry() -> CacheEntry:
    """A fresh 24-hour snapshot with a ~54 KB image (needs chunking)."""
    return make_entry(image=make_image())


@pytest.fixture
def stale_entry() -> CacheEntry:
    """A snapshot captured an hour ago."""
    return make_entry(captured_at=datetime.now(timezone.utc) - timedelta(hours=1))


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Awaitable sleep replacement that returns immediately."""
    return AsyncMock(return_value=None)


def make_locations(root: Path, count: int = 2) -> list[StorageLocation]:
    return [StorageLocation(name=f"loc{i}", root=root / f"loc{i}") for i in range(count)]


@pytest.fixture
def locations(tmp_path: Path) -> list[StorageLocation]:
    return make_locations(tmp_path)


@pytest.fixture
def store(locations: list[StorageLocation], no_sleep: AsyncMock) -> SharedCacheStore:
    return SharedCacheStore(locations, sleep=no_sleep)


@pytest.fixture
def host_store(tmp_path: Path, no_sleep: AsyncMock) -> SharedCacheStore:
    return SharedCacheStore(make_locations(tmp_path / "host"), sleep=no_sleep)


@pytest.fixture
def companion_store(tmp_path: Path, no_sleep: AsyncMock) -> SharedCacheStore:
    return SharedCacheStore(make_locations(tmp_path / "companion"), sleep=no_sleep)


# ---------------------------------------------------------------------------
# Open-Meteo
# ---------------------------------------------------------------------------


@pytest.fixture
def open_meteo_raw() -> dict:
    """A realistic 24-hour Open-Meteo forecast body (local Pacific times)."""
    times = [f"2026-02-23T{h:02d}:00" for h in range(24)]
    return {
        "latitude": 37.82,
        "longitude": -122.48,
        "timezone": "America/Los_Angeles",
        "hourly_units": {
            "temperature_2m": "°F",
            "cloudcover": "%",
            "windspeed_10m": "km/h",
            "precipitation_probability": "%",
        },
        "hourly": {
            "time": times,
            "temperature_2m": [52.0 + h * 0.5 for h in range(24)],
            "cloudcover": [min(100, h * 5) for h in range(24)],
            "windspeed_10m": [10.0 + h for h in range(24)],
            "precipitation_probability": [h % 10 for h in range(24)],
        },
    }


@pytest.fixture
def mock_httpx_client() -> MagicMock:
    """Mock httpx.AsyncClient for testing providers without real API calls."""
    client = MagicMock()
    response = MagicMock()
    response.status_code = 200
    response.raise_for_status = MagicMock()
    response.json = MagicMock(return_value={})
    client.get = AsyncMock(return_value=response)
    return client
