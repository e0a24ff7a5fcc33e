"""Chunked transfer over a size-limited request/reply channel.

Modules:
    codec     — Split a serialized snapshot into chunks and reassemble them
    transport — ChannelTransport ABC, transfer state machine, in-process loopback
"""

from bridgecast.transfer.codec import (
    Chunk,
    ReceiveResult,
    ReceiveStatus,
    SingleMessage,
    TransferSession,
    begin_session,
    decode,
    encode,
    receive,
)
from bridgecast.transfer.transport import (
    ChannelTransport,
    LoopbackChannel,
    TransferState,
    TransferStateMachine,
)

__all__ = [
    "Chunk",
    "SingleMessage",
    "TransferSession",
    "ReceiveResult",
    "ReceiveStatus",
    "encode",
    "decode",
    "begin_session",
    "receive",
    "ChannelTransport",
    "LoopbackChannel",
    "TransferState",
    "TransferStateMachine",
]
