"""Shared, TTL-governed cache for the latest weather snapshot.

Modules:
    store           — SharedCacheStore: fan-out atomic writes, swept reads, clear
    locations       — StorageLocation and the providers that discover them
    location_config — Load/validate storage_locations.yaml
"""

from bridgecast.cache.locations import LocationResolver, StorageLocation
from bridgecast.cache.store import SharedCacheStore

__all__ = ["SharedCacheStore", "StorageLocation", "LocationResolver"]
