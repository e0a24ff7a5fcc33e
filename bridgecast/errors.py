"""Error taxonomy for the bridgecast sync subsystem.

Every failure the cache, codec, transport, and sync layers can surface is a
subclass of ``BridgecastError``.  The hierarchy lets callers catch at the level
they care about:

    BridgecastError
    ├── CacheError
    │   ├── CacheMiss
    │   │   ├── CacheEmpty        — no entry was ever found
    │   │   └── CacheStale        — an entry exists but exceeded the TTL
    │   ├── SaveFailed
    │   │   └── AllLocationsUnwritable
    │   └── LoadFailed            — I/O or decode failure for one document
    ├── TransportError
    │   ├── Unreachable
    │   ├── TransportTimeout
    │   └── PeerError
    │       └── PeerDataUnavailable
    └── TransferError
        ├── MalformedChunk
        └── ProtocolViolation

``CacheStale.entry`` holds the old data for display with a warning;
``CacheEmpty`` means nothing was ever cached.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bridgecast.models.snapshot import CacheEntry


class BridgecastError(Exception):
    """Base class for all bridgecast errors."""


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheError(BridgecastError):
    """Base class for shared cache failures."""


class CacheMiss(CacheError):
    """No fresh entry could be read."""


class CacheEmpty(CacheMiss):
    """No entry was found at any location, fresh or stale."""

    def __init__(self, message: str = "No weather data available") -> None:
        super().__init__(message)


class CacheStale(CacheMiss):
    """An entry was found but it is older than the TTL everywhere.

    Attributes:
        entry: The freshest stale entry seen, usable as a degraded fallback.
    """

    def __init__(self, entry: CacheEntry, message: str = "Weather data needs refresh") -> None:
        super().__init__(message)
        self.entry = entry


class SaveFailed(CacheError):
    """A cache document could not be written."""


class AllLocationsUnwritable(SaveFailed):
    """The fan-out write failed at every known storage location."""


class LoadFailed(CacheError):
    """A cache document could not be read or decoded."""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TransportError(BridgecastError):
    """Base class for channel failures.

    Attributes:
        stale_entry: A stale cache entry the caller may fall back to, when the
                     failure is surfaced by the orchestrator.
    """

    def __init__(self, message: str = "", stale_entry: CacheEntry | None = None) -> None:
        super().__init__(message)
        self.stale_entry = stale_entry


class Unreachable(TransportError):
    """The peer is not connectable."""


class TransportTimeout(TransportError):
    """A round trip or transfer did not complete in time."""


class PeerError(TransportError):
    """The peer replied with an error or an unparseable payload."""


class PeerDataUnavailable(PeerError):
    """The peer is reachable but has no data to send."""


# ---------------------------------------------------------------------------
# Chunked transfer
# ---------------------------------------------------------------------------


class TransferError(BridgecastError):
    """Base class for chunked-transfer failures; aborts one session only."""


class MalformedChunk(TransferError):
    """A chunk carried an index outside ``[0, total_count)``."""


class ProtocolViolation(TransferError):
    """A message arrived that the transfer protocol does not allow."""
