"""Shared cache store for the latest weather snapshot.

Both the host and the companion process read and write the same document at
every known storage location, without coordination:

- writes fan out to all locations and replace each file atomically
  (temporary file in the same directory, then ``os.replace``), so a reader
  never observes a partially written entry;
- reads sweep the locations in priority order and return the first fresh
  entry; a corrupt or unreadable location is logged and skipped;
- when no location has a fresh entry the sweep is repeated after a delay,
  tolerating a write still in flight from the peer.

Because writes from the two processes are not ordered, freshness is always
re-validated from ``capture_timestamp`` and never inferred from write order.

Usage::

    store = SharedCacheStore.from_settings()
    await store.write(entry)
    try:
        entry = await store.read()
    except CacheStale as exc:
        show_with_warning(exc.entry)
    except CacheEmpty:
        show_empty_state()
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from bridgecast.cache.location_config import get_locations_config, load_locations_config
from bridgecast.cache.locations import LocationResolver, StorageLocation
from bridgecast.config import Settings, get_settings
from bridgecast.errors import (
    AllLocationsUnwritable,
    CacheEmpty,
    CacheMiss,
    CacheStale,
    LoadFailed,
    SaveFailed,
)
from bridgecast.models.base import utc_now
from bridgecast.models.snapshot import DEFAULT_TTL, CacheEntry
from bridgecast.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger("bridgecast.cache.store")


class SharedCacheStore:
    """TTL-governed store for the single latest ``CacheEntry``."""

    def __init__(
        self,
        locations: list[StorageLocation] | LocationResolver,
        ttl: timedelta = DEFAULT_TTL,
        read_max_retries: int = 3,
        read_retry_delay: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            locations:        Resolved locations in priority order, or a
                              resolver that discovers them on first use.
            ttl:              Maximum age of a fresh entry.
            read_max_retries: Default number of full sweeps per ``read()``.
            read_retry_delay: Default seconds between sweeps.
            clock:            Returns the current UTC time.
            sleep:            Awaitable sleep between sweeps.
            log:              Logger to use instead of the module logger.
        """
        if isinstance(locations, LocationResolver):
            self._resolver = locations
        else:
            self._resolver = None
            self._locations = list(locations)
        self.ttl = ttl
        self._read_max_retries = read_max_retries
        self._read_retry_delay = read_retry_delay
        self._clock = clock
        self._sleep = sleep
        self._log = log or logger

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, log: logging.Logger | None = None
    ) -> "SharedCacheStore":
        """Build a store from ``Settings`` and the storage locations config."""
        s = settings or get_settings()
        if s.locations_config is not None:
            config = load_locations_config(s.locations_config)
        else:
            config = get_locations_config()
        return cls(
            LocationResolver.from_config(config, log=log),
            ttl=s.cache_ttl,
            read_max_retries=s.read_max_retries,
            read_retry_delay=s.read_retry_delay_seconds,
            log=log,
        )

    @property
    def locations(self) -> list[StorageLocation]:
        if self._resolver is not None:
            return self._resolver.resolve()
        return list(self._locations)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def write(self, entry: CacheEntry) -> list[StorageLocation]:
        """Write ``entry`` to every known location.

        Succeeds if at least one location accepts the write.

        Returns:
            The locations that were written.

        Raises:
            SaveFailed:             If the entry cannot be serialized.
            AllLocationsUnwritable: If every location failed.
        """
        try:
            data = entry.to_bytes()
        except ValueError as exc:
            raise SaveFailed(f"Unable to serialize weather data: {exc}") from exc

        locations = self.locations
        written: list[StorageLocation] = []
        for location in locations:
            try:
                await asyncio.to_thread(_atomic_write, location, data)
            except OSError as exc:
                self._log.error("Failed to save to cache at %s: %s", location.path, exc)
                continue
            written.append(location)
            self._log.info(
                "Saved weather data to %s. Items: %d, Size: %d bytes",
                location.path, len(entry.records), len(data),
            )

        if not written:
            raise AllLocationsUnwritable(
                f"Unable to save weather data to any of {len(locations)} location(s)"
            )
        return written

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read(
        self, max_retries: int | None = None, retry_delay: float | None = None
    ) -> CacheEntry:
        """Return the first fresh entry found across all locations.

        Args:
            max_retries: Number of full sweeps (defaults to the store setting).
            retry_delay: Seconds between sweeps (defaults to the store setting).

        Raises:
            CacheStale: An entry exists but is older than the TTL everywhere.
                        ``exc.entry`` is the freshest stale entry seen.
            CacheEmpty: No entry exists at any location.
        """
        policy = RetryPolicy.constant(
            max_retries if max_retries is not None else self._read_max_retries,
            retry_delay if retry_delay is not None else self._read_retry_delay,
        )
        stale: CacheEntry | None = None

        async def sweep(attempt: int) -> CacheEntry:
            nonlocal stale
            self._log.debug("Loading weather data (sweep %d/%d)", attempt, policy.max_attempts)
            fresh, stale_seen = await asyncio.to_thread(self._sweep_once)
            if fresh is not None:
                return fresh
            if stale_seen is not None and (
                stale is None or stale_seen.capture_timestamp > stale.capture_timestamp
            ):
                stale = stale_seen
            if stale is not None:
                raise CacheStale(stale)
            raise CacheEmpty()

        return await retry_with_backoff(
            sweep,
            policy,
            retry_on=(CacheMiss,),
            operation_name="cache read",
            sleep=self._sleep,
            log=self._log,
        )

    async def read_any(self) -> CacheEntry | None:
        """Return a fresh entry, else the stale fallback, else None."""
        try:
            return await self.read()
        except CacheStale as exc:
            return exc.entry
        except CacheEmpty:
            return None

    def _sweep_once(self) -> tuple[CacheEntry | None, CacheEntry | None]:
        """One pass over all locations: (first fresh entry, freshest stale entry)."""
        now = self._clock()
        stale: CacheEntry | None = None
        for location in self.locations:
            try:
                entry = _read_location(location)
            except LoadFailed as exc:
                self._log.warning("Skipping unreadable cache at %s: %s", location.path, exc)
                continue
            if entry is None:
                continue

            age = entry.age(now)
            if entry.is_fresh(now, self.ttl):
                self._log.info(
                    "Found valid cache at %s. Items: %d, Age: %ds",
                    location.path, len(entry.records), int(age.total_seconds()),
                )
                return entry, stale

            self._log.info(
                "Cache expired at %s. Age: %ds", location.path, int(age.total_seconds())
            )
            if stale is None or entry.capture_timestamp > stale.capture_timestamp:
                stale = entry
        return None, stale

    # ------------------------------------------------------------------
    # Clear
    # ------------------------------------------------------------------

    async def clear(self) -> None:
        """Delete the cache document at every location; missing files are fine."""
        for location in self.locations:
            try:
                await asyncio.to_thread(location.path.unlink)
            except FileNotFoundError:
                self._log.debug("No cache to clear at %s", location.path)
            except OSError as exc:
                self._log.warning("Failed to clear cache at %s: %s", location.path, exc)
            else:
                self._log.info("Cleared cache at %s", location.path)


# ---------------------------------------------------------------------------
# File helpers (blocking; run via asyncio.to_thread)
# ---------------------------------------------------------------------------


def _atomic_write(location: StorageLocation, data: bytes) -> None:
    """Write ``data`` to ``location.path`` via a temporary file and ``os.replace``."""
    location.root.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=location.root, prefix=f".{location.filename}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, location.path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_location(location: StorageLocation) -> CacheEntry | None:
    """Read and decode the document at one location.

    Returns:
        The entry, or None if no document exists there.

    Raises:
        LoadFailed: If the file cannot be read or decoded.
    """
    try:
        data = location.path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise LoadFailed(f"Unable to read {location.path}: {exc}") from exc
    return CacheEntry.from_bytes(data)
