"""Channel transport between the host and the companion process.

The channel is a bidirectional, message-size-limited request/reply link: every
message gets exactly one reply, reachability can change at any time, and there
is no shared memory.  ``ChannelTransport`` is the abstraction the sync layer
codes against; ``LoopbackChannel`` is an in-process implementation used for
local wiring and tests.

Per logical transfer the companion walks a small state machine::

    IDLE → AWAITING_START_ACK → RECEIVING_CHUNKS → REASSEMBLING → DELIVERED → IDLE
                              ↘ (single message) ↗
    any non-terminal state → ABORTED → IDLE
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable

from bridgecast.config import Settings, get_settings
from bridgecast.errors import (
    PeerError,
    ProtocolViolation,
    TransportError,
    TransportTimeout,
    Unreachable,
)
from bridgecast.models.messages import Reply, ReplyStatus, parse_reply
from bridgecast.transfer.codec import Chunk

logger = logging.getLogger("bridgecast.transfer.transport")

MessageHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class ChannelTransport(ABC):
    """Request/reply link to the single peer process."""

    @abstractmethod
    def is_reachable(self) -> bool:
        """Return current peer connectability; poll before starting a transfer."""

    @abstractmethod
    async def round_trip(self, message: dict[str, Any]) -> Any:
        """Deliver one message and return the peer's raw reply.

        Raises:
            Unreachable:      The peer cannot be reached.
            TransportTimeout: No reply arrived in time.
            PeerError:        The peer failed to handle the message.
        """

    @abstractmethod
    def set_handler(self, handler: MessageHandler | None) -> None:
        """Install the handler for messages arriving from the peer."""

    async def send_request(self, message: dict[str, Any]) -> Reply:
        """One round trip, returning the validated reply."""
        return parse_reply(await self.round_trip(message))

    async def send_message(self, message: dict[str, Any]) -> Reply:
        """Send a control message (e.g. ``startTransfer``) and require a ``received`` ack."""
        reply = await self.send_request(message)
        if reply.status != ReplyStatus.RECEIVED:
            raise PeerError(
                f"Peer rejected {message.get('type')}: {reply.status.value} {reply.message or ''}".strip()
            )
        return reply

    async def send_chunk(self, chunk: Chunk) -> Reply:
        """Send one chunk; one round trip per chunk.

        The caller paces consecutive chunks.
        """
        return await self.send_message(chunk.to_message().to_wire())


# ---------------------------------------------------------------------------
# Transfer state machine
# ---------------------------------------------------------------------------


class TransferState(str, Enum):
    IDLE = "idle"
    AWAITING_START_ACK = "awaiting_start_ack"
    RECEIVING_CHUNKS = "receiving_chunks"
    REASSEMBLING = "reassembling"
    DELIVERED = "delivered"
    ABORTED = "aborted"


_TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.IDLE: frozenset({TransferState.AWAITING_START_ACK}),
    TransferState.AWAITING_START_ACK: frozenset(
        {TransferState.RECEIVING_CHUNKS, TransferState.REASSEMBLING, TransferState.ABORTED}
    ),
    TransferState.RECEIVING_CHUNKS: frozenset(
        {TransferState.REASSEMBLING, TransferState.ABORTED}
    ),
    TransferState.REASSEMBLING: frozenset({TransferState.DELIVERED, TransferState.ABORTED}),
    TransferState.DELIVERED: frozenset({TransferState.IDLE}),
    TransferState.ABORTED: frozenset({TransferState.IDLE}),
}

_TERMINAL = frozenset({TransferState.DELIVERED, TransferState.ABORTED})


class TransferStateMachine:
    """Track one logical transfer; terminal states fall back to IDLE.

    Attributes:
        state:   Current state.
        history: Every state entered, starting with IDLE.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.state = TransferState.IDLE
        self.history: list[TransferState] = [TransferState.IDLE]
        self._log = log or logger

    def advance(self, new_state: TransferState) -> None:
        """Move to ``new_state``.

        Raises:
            ProtocolViolation: If the transition is not allowed.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise ProtocolViolation(
                f"Illegal transfer transition {self.state.value} → {new_state.value}"
            )
        self._enter(new_state)
        if new_state in _TERMINAL:
            self._enter(TransferState.IDLE)

    def abort(self) -> None:
        """Abort from any non-terminal state; a no-op when idle."""
        if self.state == TransferState.IDLE:
            return
        self.advance(TransferState.ABORTED)

    @property
    def delivered(self) -> bool:
        return len(self.history) >= 2 and self.history[-2] == TransferState.DELIVERED

    def _enter(self, state: TransferState) -> None:
        self._log.debug("Transfer state %s → %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)


# ---------------------------------------------------------------------------
# In-process loopback
# ---------------------------------------------------------------------------


def estimate_message_size(message: dict[str, Any]) -> int:
    """Approximate wire size: raw bytes for ``bytes`` values, text length otherwise."""
    size = 0
    for key, value in message.items():
        size += len(str(key))
        if isinstance(value, (bytes, bytearray)):
            size += len(value)
        else:
            size += len(str(value))
    return size


class LoopbackEndpoint(ChannelTransport):
    """One side of a ``LoopbackChannel``."""

    def __init__(self, channel: "LoopbackChannel", name: str) -> None:
        self._channel = channel
        self.name = name
        self.peer: LoopbackEndpoint | None = None
        self._handler: MessageHandler | None = None
        self.sent: list[dict[str, Any]] = []

    def is_reachable(self) -> bool:
        return self._channel.reachable

    def set_handler(self, handler: MessageHandler | None) -> None:
        self._handler = handler

    async def round_trip(self, message: dict[str, Any]) -> Any:
        if not self.is_reachable():
            raise Unreachable(f"{self.name}: peer is not reachable")

        size = estimate_message_size(message)
        if size > self._channel.max_message_size:
            raise PeerError(
                f"{self.name}: message of {size} bytes exceeds the "
                f"{self._channel.max_message_size}-byte limit"
            )

        if self.peer is None:
            raise RuntimeError(f"{self.name}: endpoint is not connected to a peer")
        handler = self.peer._handler
        if handler is None:
            raise Unreachable(f"{self.name}: peer has no message handler")

        self.sent.append(message)
        try:
            return await asyncio.wait_for(
                self._deliver(handler, dict(message)), timeout=self._channel.reply_timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransportTimeout(
                f"{self.name}: no reply within {self._channel.reply_timeout}s"
            ) from exc

    async def _deliver(self, handler: MessageHandler, message: dict[str, Any]) -> Any:
        if self._channel.latency:
            await asyncio.sleep(self._channel.latency)
            if not self.is_reachable():
                raise Unreachable(f"{self.name}: connection lost in flight")
        try:
            return await handler(message)
        except TransportError:
            raise
        except Exception as exc:
            raise PeerError(f"{self.name}: peer failed to handle message: {exc}") from exc


class LoopbackChannel:
    """In-process channel connecting a host endpoint and a companion endpoint.

    Messages sent from one endpoint are delivered to the other endpoint's
    handler in send order.

    Usage::

        channel = LoopbackChannel(max_message_size=65536)
        responder = SyncResponder(store, channel.host)
        orchestrator = SyncOrchestrator(store, channel.companion)
    """

    def __init__(
        self,
        max_message_size: int = 65536,
        reply_timeout: float = 5.0,
        latency: float = 0.0,
        reachable: bool = True,
    ) -> None:
        self.max_message_size = max_message_size
        self.reply_timeout = reply_timeout
        self.latency = latency
        self.reachable = reachable
        self.host = LoopbackEndpoint(self, "host")
        self.companion = LoopbackEndpoint(self, "companion")
        self.host.peer = self.companion
        self.companion.peer = self.host

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "LoopbackChannel":
        s = settings or get_settings()
        return cls(max_message_size=s.max_message_size, **kwargs)
