"""Pydantic models for snapshots and inter-process messages."""

from bridgecast.models.messages import (
    ChunkMessage,
    DataRequest,
    MessageType,
    Reply,
    ReplyStatus,
    StartTransfer,
    parse_message,
    parse_reply,
)
from bridgecast.models.snapshot import DEFAULT_TTL, CacheEntry, HourlyRecord

__all__ = [
    "CacheEntry",
    "HourlyRecord",
    "DEFAULT_TTL",
    "MessageType",
    "ReplyStatus",
    "DataRequest",
    "StartTransfer",
    "ChunkMessage",
    "Reply",
    "parse_message",
    "parse_reply",
]
