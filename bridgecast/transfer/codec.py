"""Chunked transfer codec.

The channel is request/reply per message, not a stream, and each message is
size-bounded.  A serialized snapshot that fits in one message is sent as-is;
anything larger is split into ``ceil(size / max_chunk_size)`` ordered chunks
and reassembled on the receiving side from an accumulation buffer.

The codec only does split/reassembly bookkeeping.  Delivery reliability and
ordering belong to the transport: chunks are appended in arrival order and an
out-of-order chunk is a protocol violation, never resequenced.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from enum import Enum

from bridgecast.models.messages import ChunkMessage
from bridgecast.models.snapshot import CacheEntry

logger = logging.getLogger("bridgecast.transfer.codec")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SingleMessage:
    """A serialized entry small enough for one message."""

    payload: bytes


@dataclass(frozen=True)
class Chunk:
    """One bounded-size fragment of a serialized payload.

    Attributes:
        index:       Position, 0-based.
        total_count: Number of chunks in the transfer.
        payload:     Fragment bytes.
        transfer_id: Identifies the transfer the chunk belongs to.
    """

    index: int
    total_count: int
    payload: bytes
    transfer_id: str = ""

    def to_message(self) -> ChunkMessage:
        return ChunkMessage(
            transfer_id=self.transfer_id,
            index=self.index,
            total_count=self.total_count,
            data=self.payload,
        )

    @classmethod
    def from_message(cls, message: ChunkMessage) -> "Chunk":
        return cls(
            index=message.index,
            total_count=message.total_count,
            payload=message.data,
            transfer_id=message.transfer_id,
        )


def new_transfer_id() -> str:
    return uuid.uuid4().hex


# Room left in every chunk message for type, transferId, index and totalCount.
CHUNK_ENVELOPE_BYTES = 256


def chunk_payload_limit(chunk_size: int, max_message_size: int | None) -> int:
    """Largest chunk payload that still fits in one channel message.

    Raises:
        ValueError: If ``max_message_size`` leaves no room for a payload.
    """
    if max_message_size is None:
        return chunk_size
    room = max_message_size - CHUNK_ENVELOPE_BYTES
    if room <= 0:
        raise ValueError(
            f"max_message_size {max_message_size} leaves no room for chunk data "
            f"after the {CHUNK_ENVELOPE_BYTES}-byte envelope"
        )
    return min(chunk_size, room)


def split(data: bytes, max_chunk_size: int, transfer_id: str | None = None) -> list[Chunk]:
    """Split ``data`` into ``ceil(len(data) / max_chunk_size)`` tagged chunks.

    Raises:
        ValueError: If ``max_chunk_size`` is not positive.
    """
    if max_chunk_size <= 0:
        raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
    transfer_id = transfer_id or new_transfer_id()
    total = max(1, math.ceil(len(data) / max_chunk_size))
    return [
        Chunk(
            index=i,
            total_count=total,
            payload=data[i * max_chunk_size:(i + 1) * max_chunk_size],
            transfer_id=transfer_id,
        )
        for i in range(total)
    ]


def encode(
    entry: CacheEntry, max_chunk_size: int, transfer_id: str | None = None
) -> SingleMessage | list[Chunk]:
    """Serialize ``entry`` and pick single-message or chunked delivery.

    Returns:
        ``SingleMessage`` if the serialized size is <= ``max_chunk_size``,
        otherwise the ordered list of chunks.
    """
    if max_chunk_size <= 0:
        raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
    data = entry.to_bytes()
    if len(data) <= max_chunk_size:
        logger.debug("Encoded %d bytes as a single message", len(data))
        return SingleMessage(payload=data)

    chunks = split(data, max_chunk_size, transfer_id)
    logger.debug(
        "Encoded %d bytes as %d chunks of up to %d bytes",
        len(data), len(chunks), max_chunk_size,
    )
    return chunks


def decode(data: bytes) -> CacheEntry:
    """Decode reassembled bytes (raises ``LoadFailed`` on invalid data)."""
    return CacheEntry.from_bytes(data)


# ---------------------------------------------------------------------------
# Reassembly
# ---------------------------------------------------------------------------


@dataclass
class TransferSession:
    """Receiver-side accumulation state for one chunked transfer.

    Invariant: ``received_count <= expected_count``.  Reassembly happens only
    when they are equal.
    """

    expected_count: int
    transfer_id: str = ""
    received_count: int = 0
    buffer: bytearray = field(default_factory=bytearray)

    @property
    def is_complete(self) -> bool:
        return self.received_count == self.expected_count


class ReceiveStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    MALFORMED_CHUNK = "malformed_chunk"
    PROTOCOL_VIOLATION = "protocol_violation"


@dataclass(frozen=True)
class ReceiveResult:
    """Outcome of feeding one chunk to a session.

    Attributes:
        status: What happened.
        data:   Reassembled bytes when ``status`` is COMPLETE.
        error:  Human-readable reason for the two failure statuses.
    """

    status: ReceiveStatus
    data: bytes | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (ReceiveStatus.IN_PROGRESS, ReceiveStatus.COMPLETE)


def begin_session(expected_count: int, transfer_id: str = "") -> TransferSession:
    """Allocate an empty session for ``expected_count`` chunks."""
    if expected_count <= 0:
        raise ValueError(f"expected_count must be positive, got {expected_count}")
    return TransferSession(expected_count=expected_count, transfer_id=transfer_id)


def receive(session: TransferSession, chunk: Chunk) -> ReceiveResult:
    """Append one chunk to the session.

    Checks, in order: the session already complete, the index range, the
    announced total, and arrival order.  A failed check leaves the session
    untouched; the caller is expected to discard it.
    """
    if session.is_complete:
        return ReceiveResult(
            ReceiveStatus.PROTOCOL_VIOLATION,
            error=(
                f"chunk {chunk.index} received after all "
                f"{session.expected_count} chunks arrived"
            ),
        )
    if not 0 <= chunk.index < chunk.total_count:
        return ReceiveResult(
            ReceiveStatus.MALFORMED_CHUNK,
            error=f"chunk index {chunk.index} outside [0, {chunk.total_count})",
        )
    if chunk.total_count != session.expected_count:
        return ReceiveResult(
            ReceiveStatus.PROTOCOL_VIOLATION,
            error=(
                f"chunk announces {chunk.total_count} chunks, "
                f"session expects {session.expected_count}"
            ),
        )
    if chunk.index != session.received_count:
        return ReceiveResult(
            ReceiveStatus.PROTOCOL_VIOLATION,
            error=f"chunk {chunk.index} out of order, expected {session.received_count}",
        )

    session.buffer.extend(chunk.payload)
    session.received_count += 1

    if session.is_complete:
        return ReceiveResult(ReceiveStatus.COMPLETE, data=bytes(session.buffer))
    return ReceiveResult(ReceiveStatus.IN_PROGRESS)
