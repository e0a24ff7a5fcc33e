"""Tests for SharedCacheStore and storage location discovery."""

from __future__ import annotations

import plistlib
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, call

import pytest

from bridgecast.cache.location_config import LocationsConfig, LocationSpec
from bridgecast.cache.locations import (
    CONTAINER_METADATA_PLIST,
    EnvLocationProvider,
    GlobLocationProvider,
    LocationResolver,
    StaticLocationProvider,
    StorageLocation,
    build_provider,
)
from bridgecast.cache.store import SharedCacheStore, _atomic_write
from bridgecast.errors import AllLocationsUnwritable, CacheEmpty, CacheStale
from bridgecast.models.snapshot import CacheEntry
from bridgecast.tests.conftest import CAPTURE_TIME, make_entry, make_image


def _frozen_clock(now: datetime):
    return lambda: now


# ---------------------------------------------------------------------------
# Write
# ---------------------------------------------------------------------------


class TestStoreWrite:
    @pytest.mark.asyncio
    async def test_write_fans_out_to_every_location(
        self, store: SharedCacheStore, locations: list[StorageLocation], sample_entry: CacheEntry
    ) -> None:
        written = await store.write(sample_entry)

        assert written == locations
        for location in locations:
            assert location.path.exists()
            assert CacheEntry.from_bytes(location.path.read_bytes()) == sample_entry

    @pytest.mark.asyncio
    async def test_write_leaves_no_temp_files(
        self, store: SharedCacheStore, locations: list[StorageLocation], sample_entry: CacheEntry
    ) -> None:
        await store.write(sample_entry)
        await store.write(sample_entry)
        for location in locations:
            assert [p.name for p in location.root.iterdir()] == ["weatherCache.json"]

    @pytest.mark.asyncio
    async def test_partial_failure_still_succeeds(
        self, tmp_path: Path, no_sleep: AsyncMock, sample_entry: CacheEntry
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        good = StorageLocation(name="good", root=tmp_path / "good")
        bad = StorageLocation(name="bad", root=blocker / "sub")
        store = SharedCacheStore([bad, good], sleep=no_sleep)

        written = await store.write(sample_entry)

        assert written == [good]
        assert good.path.exists()

    @pytest.mark.asyncio
    async def test_every_location_failing_raises(
        self, tmp_path: Path, no_sleep: AsyncMock, sample_entry: CacheEntry
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = SharedCacheStore(
            [StorageLocation(name="bad", root=blocker / "sub")], sleep=no_sleep
        )

        with pytest.raises(AllLocationsUnwritable):
            await store.write(sample_entry)

    @pytest.mark.asyncio
    async def test_newer_write_replaces_whole_document(
        self, store: SharedCacheStore, sample_entry: CacheEntry
    ) -> None:
        await store.write(make_entry(image=make_image(500)))
        await store.write(sample_entry)

        assert await store.read() == sample_entry


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


class TestStoreRead:
    @pytest.mark.asyncio
    async def test_read_returns_fresh_entry(
        self, store: SharedCacheStore, sample_entry: CacheEntry
    ) -> None:
        await store.write(sample_entry)
        assert await store.read() == sample_entry

    @pytest.mark.asyncio
    async def test_empty_store_raises_cache_empty_after_all_sweeps(
        self, store: SharedCacheStore, no_sleep: AsyncMock
    ) -> None:
        with pytest.raises(CacheEmpty):
            await store.read()

        # 3 sweeps, 2 delays of 2 seconds
        assert no_sleep.await_args_list == [call(2.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_sixteen_minute_old_entry_is_stale(
        self, locations: list[StorageLocation], no_sleep: AsyncMock
    ) -> None:
        entry = make_entry(captured_at=CAPTURE_TIME)
        store = SharedCacheStore(
            locations,
            clock=_frozen_clock(CAPTURE_TIME + timedelta(minutes=16)),
            sleep=no_sleep,
        )
        await store.write(entry)

        with pytest.raises(CacheStale) as exc_info:
            await store.read()

        assert exc_info.value.entry == entry

    @pytest.mark.asyncio
    async def test_entry_at_exactly_ttl_is_fresh(
        self, locations: list[StorageLocation], no_sleep: AsyncMock
    ) -> None:
        entry = make_entry(captured_at=CAPTURE_TIME)
        store = SharedCacheStore(
            locations,
            clock=_frozen_clock(CAPTURE_TIME + timedelta(minutes=15)),
            sleep=no_sleep,
        )
        await store.write(entry)

        assert await store.read() == entry

    @pytest.mark.asyncio
    async def test_corrupt_location_is_skipped(
        self, store: SharedCacheStore, locations: list[StorageLocation], sample_entry: CacheEntry
    ) -> None:
        await store.write(sample_entry)
        locations[0].path.write_bytes(b"{truncated")

        assert await store.read() == sample_entry

    @pytest.mark.asyncio
    async def test_only_corrupt_documents_read_as_empty(
        self, store: SharedCacheStore, locations: list[StorageLocation]
    ) -> None:
        for location in locations:
            location.root.mkdir(parents=True)
            location.path.write_bytes(b"garbage")

        with pytest.raises(CacheEmpty):
            await store.read(max_retries=1)

    @pytest.mark.asyncio
    async def test_fresh_entry_preferred_over_stale_in_higher_priority_location(
        self, store: SharedCacheStore, locations: list[StorageLocation], sample_entry: CacheEntry
    ) -> None:
        stale = make_entry(captured_at=datetime.now(timezone.utc) - timedelta(hours=2))
        _atomic_write(locations[0], stale.to_bytes())
        _atomic_write(locations[1], sample_entry.to_bytes())

        assert await store.read() == sample_entry

    @pytest.mark.asyncio
    async def test_freshest_stale_entry_reported(
        self, store: SharedCacheStore, locations: list[StorageLocation]
    ) -> None:
        now = datetime.now(timezone.utc)
        older = make_entry(captured_at=now - timedelta(hours=3))
        newer = make_entry(captured_at=now - timedelta(hours=1))
        _atomic_write(locations[0], older.to_bytes())
        _atomic_write(locations[1], newer.to_bytes())

        with pytest.raises(CacheStale) as exc_info:
            await store.read(max_retries=1)

        assert exc_info.value.entry == newer

    @pytest.mark.asyncio
    async def test_entry_written_between_sweeps_is_found(
        self, locations: list[StorageLocation], sample_entry: CacheEntry
    ) -> None:
        async def peer_writes_during_delay(_delay: float) -> None:
            _atomic_write(locations[1], sample_entry.to_bytes())

        sleep = AsyncMock(side_effect=peer_writes_during_delay)
        store = SharedCacheStore(locations, sleep=sleep)

        assert await store.read() == sample_entry
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_read_any_falls_back_to_stale(
        self, store: SharedCacheStore, stale_entry: CacheEntry
    ) -> None:
        await store.write(stale_entry)
        assert await store.read_any() == stale_entry

    @pytest.mark.asyncio
    async def test_read_any_empty_returns_none(self, store: SharedCacheStore) -> None:
        assert await store.read_any() is None


# ---------------------------------------------------------------------------
# Clear
# ---------------------------------------------------------------------------


class TestStoreClear:
    @pytest.mark.asyncio
    async def test_clear_removes_every_document(
        self, store: SharedCacheStore, locations: list[StorageLocation], sample_entry: CacheEntry
    ) -> None:
        await store.write(sample_entry)
        await store.clear()

        assert not any(location.path.exists() for location in locations)
        with pytest.raises(CacheEmpty):
            await store.read(max_retries=1)

    @pytest.mark.asyncio
    async def test_clear_with_nothing_written_is_fine(self, store: SharedCacheStore) -> None:
        await store.clear()


# ---------------------------------------------------------------------------
# Location discovery
# ---------------------------------------------------------------------------


def _make_container(root: Path, identifier: str | None) -> Path:
    root.mkdir(parents=True)
    if identifier is not None:
        with (root / CONTAINER_METADATA_PLIST).open("wb") as fh:
            plistlib.dump({"MCMMetadataIdentifier": identifier}, fh)
    return root


class TestLocationProviders:
    def test_static_provider_applies_subdir(self, tmp_path: Path) -> None:
        provider = StaticLocationProvider("fixed", tmp_path, subdir="Library/Caches")
        [location] = provider.resolve("weatherCache.json")
        assert location.path == tmp_path / "Library/Caches/weatherCache.json"

    def test_env_provider_unset_resolves_to_nothing(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("BRIDGECAST_TEST_GROUP", raising=False)
        provider = EnvLocationProvider("group", "BRIDGECAST_TEST_GROUP")
        assert provider.resolve("weatherCache.json") == []

    def test_env_provider_reads_variable(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("BRIDGECAST_TEST_GROUP", str(tmp_path))
        provider = EnvLocationProvider("group", "BRIDGECAST_TEST_GROUP", subdir="Library/Preferences")
        [location] = provider.resolve("weatherCache.json")
        assert location.root == tmp_path / "Library/Preferences"

    def test_glob_provider_filters_by_container_identifier(self, tmp_path: Path) -> None:
        ours = _make_container(tmp_path / "AppGroup" / "A", "group.generouscorp.SS2.ggbweather")
        _make_container(tmp_path / "AppGroup" / "B", "group.someone.else")
        _make_container(tmp_path / "AppGroup" / "C", None)

        provider = GlobLocationProvider(
            "sim",
            str(tmp_path / "AppGroup" / "*"),
            subdir="Library/Caches",
            plist_identifier="group.generouscorp.SS2.ggbweather",
        )

        assert provider.roots() == [ours]

    def test_glob_provider_without_identifier_keeps_all_dirs(self, tmp_path: Path) -> None:
        _make_container(tmp_path / "AppGroup" / "B", None)
        _make_container(tmp_path / "AppGroup" / "A", None)
        (tmp_path / "AppGroup" / "file.txt").write_text("x")

        provider = GlobLocationProvider("sim", str(tmp_path / "AppGroup" / "*"))

        assert [p.name for p in provider.roots()] == ["A", "B"]

    def test_build_provider_from_spec(self) -> None:
        provider = build_provider(LocationSpec(name="env", kind="env", env="HOME"))
        assert isinstance(provider, EnvLocationProvider)

    def test_build_provider_unknown_kind_raises(self) -> None:
        with pytest.raises(KeyError):
            build_provider(LocationSpec(name="x", kind="s3"))


class TestLocationResolver:
    def test_resolves_in_provider_order(self, tmp_path: Path) -> None:
        resolver = LocationResolver(
            [
                StaticLocationProvider("first", tmp_path / "a"),
                StaticLocationProvider("second", tmp_path / "b"),
            ]
        )
        assert [loc.name for loc in resolver.resolve()] == ["first", "second"]

    def test_duplicate_paths_keep_first(self, tmp_path: Path) -> None:
        resolver = LocationResolver(
            [
                StaticLocationProvider("first", tmp_path),
                StaticLocationProvider("again", tmp_path),
            ]
        )
        assert [loc.name for loc in resolver.resolve()] == ["first"]

    def test_resolution_is_memoized_until_invalidated(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("BRIDGECAST_TEST_GROUP", raising=False)
        resolver = LocationResolver([EnvLocationProvider("group", "BRIDGECAST_TEST_GROUP")])
        assert resolver.resolve() == []

        monkeypatch.setenv("BRIDGECAST_TEST_GROUP", str(tmp_path))
        assert resolver.resolve() == []

        resolver.invalidate()
        assert len(resolver.resolve()) == 1

    def test_from_config_uses_configured_filename(self, tmp_path: Path) -> None:
        config = LocationsConfig(
            version="1.0",
            cache_filename="snapshot.json",
            locations=[LocationSpec(name="only", kind="static", path=str(tmp_path))],
        )
        [location] = LocationResolver.from_config(config).resolve()
        assert location.path == tmp_path / "snapshot.json"

    @pytest.mark.asyncio
    async def test_store_accepts_resolver(
        self, tmp_path: Path, no_sleep: AsyncMock, sample_entry: CacheEntry
    ) -> None:
        resolver = LocationResolver([StaticLocationProvider("only", tmp_path / "cache")])
        store = SharedCacheStore(resolver, sleep=no_sleep)

        await store.write(sample_entry)

        assert (tmp_path / "cache" / "weatherCache.json").exists()
        assert await store.read() == sample_entry
