"""Snapshot models: hourly forecast records and the cached entry.

The cache document written to every storage location (and sent over the
channel) is the camelCase JSON form of ``CacheEntry``::

    {
        "records": [{"timestamp": "...", "temperatureF": 61.2, ...}, ...],
        "captureTimestamp": "2026-02-23T17:00:00Z",
        "image": "<base64>"          # omitted when there is no image
    }
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta

from pydantic import Field, ValidationError, field_serializer, field_validator, model_validator

from bridgecast.errors import LoadFailed
from bridgecast.models.base import BridgecastBase, ensure_utc, utc_now

DEFAULT_TTL = timedelta(minutes=15)


class HourlyRecord(BridgecastBase):
    """One hour of forecast data."""

    timestamp: datetime
    temperature_f: float = Field(alias="temperatureF")
    cloud_cover_pct: float = Field(alias="cloudCoverPct", ge=0, le=100)
    wind_speed_mph: float = Field(alias="windSpeedMph", ge=0)
    precip_prob_pct: float = Field(alias="precipProbPct", ge=0, le=100)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class CacheEntry(BridgecastBase):
    """The single latest snapshot plus the time it was captured.

    Entries are never partially mutated: a newer snapshot replaces the whole
    document at every location.

    Attributes:
        records:           Hourly records, ascending by timestamp, no duplicates.
        capture_timestamp: UTC time the snapshot was produced upstream.
        image:             Optional opaque image bytes (base64 on the wire).
    """

    records: list[HourlyRecord]
    capture_timestamp: datetime = Field(default_factory=utc_now, alias="captureTimestamp")
    image: bytes | None = None

    @field_validator("capture_timestamp")
    @classmethod
    def _capture_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("image", mode="before")
    @classmethod
    def _decode_image(cls, value: object) -> object:
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except ValueError as exc:
                raise ValueError(f"image is not valid base64: {exc}") from exc
        return value

    @field_serializer("image", when_used="json-unless-none")
    def _encode_image(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @model_validator(mode="after")
    def _records_strictly_ascending(self) -> "CacheEntry":
        for prev, cur in zip(self.records, self.records[1:]):
            if cur.timestamp <= prev.timestamp:
                raise ValueError(
                    f"records must be strictly ascending by timestamp: "
                    f"{cur.timestamp.isoformat()} follows {prev.timestamp.isoformat()}"
                )
        return self

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def age(self, now: datetime | None = None) -> timedelta:
        return ensure_utc(now or utc_now()) - self.capture_timestamp

    def is_fresh(self, now: datetime | None = None, ttl: timedelta = DEFAULT_TTL) -> bool:
        """Return True if ``now - capture_timestamp <= ttl``."""
        return self.age(now) <= ttl

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "CacheEntry":
        """Decode a cache document.

        Raises:
            LoadFailed: If the bytes are not a valid cache document.
        """
        try:
            return cls.model_validate_json(data)
        except (ValidationError, ValueError) as exc:
            raise LoadFailed(f"Invalid weather data: {exc}") from exc
