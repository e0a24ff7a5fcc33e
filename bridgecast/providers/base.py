"""Base class for upstream snapshot providers.

The host's Sync Responder refills its cache through a provider when the local
entry is missing or stale.  Providers own the upstream fetch and return a
complete ``CacheEntry``; they never touch the cache themselves.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from bridgecast.models.snapshot import CacheEntry


class SnapshotProvider(ABC):
    """Produces a fresh snapshot from an upstream source."""

    SOURCE_ID: str = ""

    @abstractmethod
    async def fetch_snapshot(self) -> CacheEntry:
        """Fetch a fresh snapshot.

        Returns:
            CacheEntry with ``capture_timestamp`` set to the fetch time.

        Raises:
            Exception: Any upstream failure; callers log and degrade.
        """
