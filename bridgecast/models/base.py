"""Shared Pydantic base model and time helpers."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BridgecastBase(BaseModel):
    """Base model with shared config for all bridgecast schemas."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
    )
