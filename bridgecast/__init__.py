"""bridgecast: weather snapshot sync between a host and a companion process.

The host fetches hourly forecast data, caches it in a shared, TTL-governed
store, and serves it to a companion process over a size-limited
request/reply channel, chunking payloads that do not fit in one message.

Subpackages:
    models/    — Snapshot and wire-message schemas (pydantic)
    cache/     — SharedCacheStore and storage location discovery
    transfer/  — Chunked transfer codec and channel transport
    sync/      — Host responder, companion receiver and orchestrator
    providers/ — Upstream snapshot providers (Open-Meteo)

Core modules:
    config        — Settings from BRIDGECAST_* environment variables
    errors        — Exception hierarchy
    retry         — Bounded retry with exponential backoff
    logging_setup — configure_logging() for embedding applications
"""

from bridgecast.cache import SharedCacheStore, StorageLocation
from bridgecast.config import Settings, get_settings
from bridgecast.models import CacheEntry, HourlyRecord
from bridgecast.sync import SyncOrchestrator, SyncResponder

__all__ = [
    "CacheEntry",
    "HourlyRecord",
    "SharedCacheStore",
    "StorageLocation",
    "SyncOrchestrator",
    "SyncResponder",
    "Settings",
    "get_settings",
]
