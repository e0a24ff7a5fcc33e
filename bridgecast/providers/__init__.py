"""Upstream snapshot providers used by the host to refill its cache.

Available providers:
    OpenMeteoProvider — Open-Meteo hourly forecast over HTTP (httpx)
"""

from bridgecast.providers.base import SnapshotProvider
from bridgecast.providers.open_meteo import OpenMeteoProvider

__all__ = ["SnapshotProvider", "OpenMeteoProvider"]
