"""Companion-side handler for inbound chunked transfers.

The receiver holds at most one ``TransferSession``.  A ``startTransfer``
message allocates it (implicitly discarding any incomplete prior session),
``chunk`` messages feed it, and a completed transfer resolves the future the
orchestrator armed before sending its request.  A malformed chunk or protocol
violation destroys the session and fails that future; it never affects the
orchestrator's outer retry loop.  A completed session is kept until the next
``startTransfer`` so that a chunk arriving after completion is reported as a
protocol violation.

Sessions are keyed by the transfer id carried in ``startTransfer`` and in
every chunk, so a late chunk from an abandoned transfer is rejected instead of
being appended to a newer session.  The peer is still not told when the
companion abandons a transfer.

Concurrent inbound transfers are not supported.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from bridgecast.errors import MalformedChunk, ProtocolViolation
from bridgecast.models.messages import (
    ChunkMessage,
    Reply,
    ReplyStatus,
    StartTransfer,
    error_reply,
    parse_message,
)
from bridgecast.transfer.codec import (
    Chunk,
    ReceiveStatus,
    TransferSession,
    begin_session,
    receive,
)
from bridgecast.transfer.transport import ChannelTransport

logger = logging.getLogger("bridgecast.sync.receiver")


@dataclass(frozen=True)
class CompletedTransfer:
    """Reassembled bytes of one finished transfer."""

    transfer_id: str
    chunk_count: int
    data: bytes


class TransferReceiver:
    """Inbound message handler owning the single active ``TransferSession``."""

    def __init__(
        self,
        transport: ChannelTransport | None = None,
        on_unsolicited: Callable[[CompletedTransfer], Awaitable[None]] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize the receiver.

        Args:
            transport:      If given, ``handle_message`` is installed as its
                            inbound handler.
            on_unsolicited: Called with transfers that complete while nobody
                            is waiting (a push the companion did not request).
            log:            Logger to use instead of the module logger.
        """
        self._on_unsolicited = on_unsolicited
        self._log = log or logger
        self._session: TransferSession | None = None
        self._waiter: asyncio.Future[CompletedTransfer] | None = None
        self._tasks: set[asyncio.Task] = set()
        if transport is not None:
            transport.set_handler(self.handle_message)

    @property
    def session(self) -> TransferSession | None:
        return self._session

    # ------------------------------------------------------------------
    # Orchestrator side
    # ------------------------------------------------------------------

    def expect_transfer(self) -> asyncio.Future[CompletedTransfer]:
        """Arm a future for the next completed transfer.

        Must be called before the request is sent, since ``startTransfer``
        and chunks may arrive before the request's reply is processed.
        """
        self.release()
        self._waiter = asyncio.get_running_loop().create_future()
        return self._waiter

    def release(self) -> None:
        """Drop the armed future, if any, leaving the session alone."""
        waiter, self._waiter = self._waiter, None
        if waiter is None:
            return
        if not waiter.done():
            waiter.cancel()
        elif not waiter.cancelled():
            waiter.exception()  # mark retrieved

    def abandon(self) -> None:
        """Discard the active session and armed future without notifying the peer."""
        if self._session is not None:
            self._log.warning(
                "Abandoning transfer %s at %d/%d chunks",
                self._session.transfer_id,
                self._session.received_count,
                self._session.expected_count,
            )
        self._session = None
        self.release()

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_message(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Handle one message from the host and return the reply dict.

        Runs without suspending until the chunk is appended, so chunks are
        processed in delivery order.
        """
        try:
            message = parse_message(raw)
        except ValueError as exc:
            self._log.warning("Unhandled message %r: %s", raw.get("type"), exc)
            return Reply(status=ReplyStatus.UNKNOWN, message=str(exc)).to_wire()

        if isinstance(message, StartTransfer):
            return self._on_start(message)
        if isinstance(message, ChunkMessage):
            return self._on_chunk(message)

        self._log.warning("Companion does not accept %s messages", message.type)
        return Reply(status=ReplyStatus.UNKNOWN, message=f"unsupported type {message.type}").to_wire()

    def _on_start(self, message: StartTransfer) -> dict[str, Any]:
        if self._session is not None and not self._session.is_complete:
            self._log.warning(
                "Discarding incomplete transfer %s (%d/%d chunks) for new transfer %s",
                self._session.transfer_id,
                self._session.received_count,
                self._session.expected_count,
                message.transfer_id,
            )
        self._session = begin_session(message.expected_chunk_count, message.transfer_id)
        self._log.info(
            "Transfer %s started: expecting %d chunks",
            message.transfer_id, message.expected_chunk_count,
        )
        return Reply(status=ReplyStatus.RECEIVED, transfer_id=message.transfer_id).to_wire()

    def _on_chunk(self, message: ChunkMessage) -> dict[str, Any]:
        session = self._session
        if session is None:
            self._log.warning("Rejecting chunk %d: no transfer was started", message.index)
            return error_reply("No active transfer", code="noSession")
        if message.transfer_id != session.transfer_id:
            self._log.warning(
                "Rejecting chunk %d of unknown transfer %s (active: %s)",
                message.index, message.transfer_id, session.transfer_id,
            )
            return error_reply("Unknown transfer", code="unknownTransfer")

        # A finished session stays until the next startTransfer; late chunks
        # are violations that leave any armed waiter alone.
        already_complete = session.is_complete
        result = receive(session, Chunk.from_message(message))

        if already_complete:
            self._log.warning(
                "Rejecting chunk %d: transfer %s already complete",
                message.index, session.transfer_id,
            )
            return error_reply(result.error or "Transfer already complete", code=result.status.value)

        if result.status == ReceiveStatus.IN_PROGRESS:
            self._log.debug(
                "Chunk %d/%d received", session.received_count, session.expected_count
            )
            return Reply(status=ReplyStatus.RECEIVED).to_wire()

        if result.status == ReceiveStatus.COMPLETE:
            if result.data is None:
                raise ProtocolViolation(f"Transfer {session.transfer_id} completed without data")
            completed = CompletedTransfer(
                transfer_id=session.transfer_id,
                chunk_count=session.expected_count,
                data=result.data,
            )
            self._log.info(
                "Transfer %s complete: %d bytes in %d chunks",
                completed.transfer_id, len(completed.data), completed.chunk_count,
            )
            self._deliver(completed)
            return Reply(status=ReplyStatus.RECEIVED).to_wire()

        self._session = None
        error_cls = (
            MalformedChunk if result.status == ReceiveStatus.MALFORMED_CHUNK else ProtocolViolation
        )
        self._log.error("Transfer %s aborted: %s", session.transfer_id, result.error)
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(error_cls(result.error or result.status.value))
        return error_reply(result.error or "Transfer aborted", code=result.status.value)

    def _deliver(self, completed: CompletedTransfer) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(completed)
            return
        if self._on_unsolicited is None:
            self._log.warning(
                "Dropping unsolicited transfer %s: nobody is waiting", completed.transfer_id
            )
            return
        task = asyncio.ensure_future(self._on_unsolicited(completed))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every unsolicited-transfer callback to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
