"""Open-Meteo hourly forecast provider.

Fetches one forecast day of hourly data for a fixed point and, optionally, a
static image, and packages both into a ``CacheEntry``.

API base: https://api.open-meteo.com

Endpoint used:
    /v1/forecast — hourly temperature_2m, cloudcover, windspeed_10m,
                   precipitation_probability (Fahrenheit, local timezone)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from bridgecast.models.base import utc_now
from bridgecast.models.snapshot import CacheEntry, HourlyRecord
from bridgecast.providers.base import SnapshotProvider

logger = logging.getLogger("bridgecast.providers.open_meteo")

_FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
_KMH_TO_MPH = 0.621371

# Golden Gate Bridge
DEFAULT_LATITUDE = 37.8199
DEFAULT_LONGITUDE = -122.4783
DEFAULT_TIMEZONE = "America/Los_Angeles"


class OpenMeteoProvider(SnapshotProvider):
    """Hourly forecast for one location from Open-Meteo.

    Wind speed is requested in km/h and converted to mph.  Hours with a
    missing value are dropped rather than filled in.
    """

    SOURCE_ID = "open_meteo"

    def __init__(
        self,
        latitude: float = DEFAULT_LATITUDE,
        longitude: float = DEFAULT_LONGITUDE,
        timezone: str = DEFAULT_TIMEZONE,
        forecast_days: int = 1,
        image_url: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            latitude:      Forecast point latitude.
            longitude:     Forecast point longitude.
            timezone:      IANA zone the API reports hourly times in.
            forecast_days: Number of days of hourly data.
            image_url:     Optional URL of a static image to attach.
            timeout:       Per-request timeout in seconds.
            http_client:   Optional pre-configured httpx client (for testing).
            log:           Logger to use instead of the module logger.
        """
        self._latitude = latitude
        self._longitude = longitude
        self._timezone = timezone
        self._forecast_days = forecast_days
        self._image_url = image_url
        self._timeout = timeout
        self._http_client = http_client
        self._log = log or logger

    async def fetch_snapshot(self) -> CacheEntry:
        """Fetch the hourly forecast (and image, if configured).

        Raises:
            httpx.HTTPError: If the forecast request fails.
            ValueError:      If the forecast response is not understood.
        """
        captured_at = utc_now()
        data = await self._get_json(
            _FORECAST_URL,
            params={
                "latitude": self._latitude,
                "longitude": self._longitude,
                "hourly": "temperature_2m,cloudcover,windspeed_10m,precipitation_probability",
                "timezone": self._timezone,
                "forecast_days": self._forecast_days,
                "temperature_unit": "fahrenheit",
            },
        )
        records = self.parse_hourly(data)

        image: bytes | None = None
        if self._image_url:
            try:
                image = await self._get_bytes(self._image_url)
            except httpx.HTTPError as exc:
                self._log.warning("Image fetch failed, continuing without image: %s", exc)

        self._log.info(
            "Fetched %d hourly records%s", len(records), " with image" if image else ""
        )
        return CacheEntry(records=records, capture_timestamp=captured_at, image=image)

    def parse_hourly(self, data: dict[str, Any]) -> list[HourlyRecord]:
        """Convert an Open-Meteo response body into ordered hourly records.

        Raises:
            ValueError: If the ``hourly`` block is missing or malformed.
        """
        hourly = data.get("hourly")
        if not isinstance(hourly, dict):
            raise ValueError("Open-Meteo response has no 'hourly' block")

        try:
            times = hourly["time"]
            temps = hourly["temperature_2m"]
            clouds = hourly["cloudcover"]
            winds = hourly["windspeed_10m"]
            precips = hourly["precipitation_probability"]
        except KeyError as exc:
            raise ValueError(f"Open-Meteo hourly block missing {exc}") from exc

        zone = ZoneInfo(self._timezone)
        by_time: dict[datetime, HourlyRecord] = {}
        for time_str, temp, cloud, wind, precip in zip(times, temps, clouds, winds, precips):
            if None in (temp, cloud, wind, precip):
                self._log.debug("Dropping %s: missing value", time_str)
                continue
            timestamp = datetime.fromisoformat(time_str).replace(tzinfo=zone)
            record = HourlyRecord(
                timestamp=timestamp,
                temperature_f=float(temp),
                cloud_cover_pct=float(cloud),
                wind_speed_mph=round(float(wind) * _KMH_TO_MPH, 2),
                precip_prob_pct=float(precip),
            )
            # repeated wall-clock hour at a DST change: keep the first
            by_time.setdefault(record.timestamp, record)

        return [by_time[t] for t in sorted(by_time)]

    # ------------------------------------------------------------------
    # Internal HTTP helpers
    # ------------------------------------------------------------------

    async def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(url, params)
        return response.json()

    async def _get_bytes(self, url: str) -> bytes:
        response = await self._request(url, None)
        return response.content

    async def _request(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        if self._http_client is not None:
            response = await self._http_client.get(url, params=params, timeout=self._timeout)
            response.raise_for_status()
            return response

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response
