"""Host-side Sync Responder.

Answers a companion's data request:

1. Load the freshest entry from the host's store; if it is missing or stale,
   refetch through the upstream provider and write the result back.
2. Encode it for the channel.
3. Small payloads go back directly in the reply.  Larger ones get a
   ``{status: ready, chunkCount: N}`` reply, then a background push:
   ``startTransfer`` followed by the N chunks, paced by a fixed inter-chunk
   delay.  Each chunk's acknowledgement is logged from its own task and never
   holds up the next chunk.

Every request is handled independently; a stalled push for one request does
not block the request/reply path for another.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from bridgecast.cache.store import SharedCacheStore
from bridgecast.config import Settings, get_settings
from bridgecast.errors import BridgecastError, CacheMiss, CacheStale, SaveFailed
from bridgecast.models.messages import (
    DataRequest,
    Reply,
    ReplyStatus,
    StartTransfer,
    error_reply,
    parse_message,
)
from bridgecast.models.snapshot import CacheEntry
from bridgecast.providers.base import SnapshotProvider
from bridgecast.transfer.codec import (
    Chunk,
    SingleMessage,
    chunk_payload_limit,
    encode,
    new_transfer_id,
)
from bridgecast.transfer.transport import ChannelTransport

logger = logging.getLogger("bridgecast.sync.responder")

NO_DATA_CODE = "cacheEmpty"
STALE_DATA_CODE = "cacheStale"


class SyncResponder:
    """Serve snapshot requests from the companion.

    Usage::

        responder = SyncResponder(store, transport, provider=OpenMeteoProvider())
        # transport now routes inbound requests to responder.handle_message
        ...
        await responder.aclose()
    """

    def __init__(
        self,
        store: SharedCacheStore,
        transport: ChannelTransport,
        provider: SnapshotProvider | None = None,
        chunk_size: int = 16384,
        max_message_size: int | None = None,
        inter_chunk_delay: float = 0.1,
        read_max_retries: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log: logging.Logger | None = None,
        install_handler: bool = True,
    ) -> None:
        """Initialize the responder.

        Args:
            store:             The host's shared cache store.
            transport:         Channel to the companion.
            provider:          Upstream refill source for a missing/stale cache.
            chunk_size:        Default max chunk size when the request has none.
            max_message_size:  Channel single-message limit; chunk payloads
                               are capped so each chunk message fits.
            inter_chunk_delay: Seconds between consecutive chunk sends.
            read_max_retries:  Store sweeps per request before refilling.
            sleep:             Awaitable sleep used for pacing.
            log:               Logger to use instead of the module logger.
            install_handler:   Register ``handle_message`` on the transport.
        """
        self._store = store
        self._transport = transport
        self._provider = provider
        self._chunk_size = chunk_size
        self._max_message_size = max_message_size
        self._inter_chunk_delay = inter_chunk_delay
        self._read_max_retries = read_max_retries
        self._sleep = sleep
        self._log = log or logger
        self._tasks: set[asyncio.Task] = set()
        if install_handler:
            transport.set_handler(self.handle_message)

    @classmethod
    def from_settings(
        cls,
        store: SharedCacheStore,
        transport: ChannelTransport,
        provider: SnapshotProvider | None = None,
        settings: Settings | None = None,
        log: logging.Logger | None = None,
    ) -> "SyncResponder":
        s = settings or get_settings()
        return cls(
            store,
            transport,
            provider=provider,
            chunk_size=s.chunk_size,
            max_message_size=s.max_message_size,
            inter_chunk_delay=s.inter_chunk_delay_seconds,
            log=log,
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Handle one inbound message and return the reply dict."""
        self._log.info("Received message from companion: type=%s", raw.get("type"))
        try:
            message = parse_message(raw)
        except ValueError as exc:
            self._log.warning("Unhandled message %r: %s", raw.get("type"), exc)
            return Reply(status=ReplyStatus.UNKNOWN, message=str(exc)).to_wire()

        if not isinstance(message, DataRequest):
            self._log.warning("Host does not accept %s messages", message.type)
            return Reply(status=ReplyStatus.UNKNOWN, message=f"unsupported type {message.type}").to_wire()

        return await self._handle_data_request(message)

    async def _handle_data_request(self, request: DataRequest) -> dict[str, Any]:
        try:
            entry = await self._load_entry()
        except CacheStale:
            return error_reply("Weather data needs refresh", code=STALE_DATA_CODE)
        except CacheMiss:
            return error_reply("No data available", code=NO_DATA_CODE)

        try:
            chunk_size = chunk_payload_limit(
                request.chunk_size or self._chunk_size, self._max_message_size
            )
            encoded = encode(entry, chunk_size, transfer_id=new_transfer_id())
        except ValueError as exc:
            self._log.error("Failed to encode weather data: %s", exc)
            return error_reply("Failed to encode data")

        if isinstance(encoded, SingleMessage):
            self._log.info("Replying with %d bytes in a single message", len(encoded.payload))
            return Reply(status=ReplyStatus.READY, payload=encoded.payload).to_wire()

        chunks = encoded
        transfer_id = chunks[0].transfer_id
        self._log.info(
            "Preparing to send %d chunks of size %d (transfer %s)",
            len(chunks), chunk_size, transfer_id,
        )
        self._spawn(self._push_chunks(transfer_id, chunks))
        return Reply(
            status=ReplyStatus.READY, chunk_count=len(chunks), transfer_id=transfer_id
        ).to_wire()

    async def _load_entry(self) -> CacheEntry:
        """Fresh entry from the store, refilling upstream on a miss.

        Stale data is never sent to the companion.

        Raises:
            CacheStale: Only a stale entry exists and the refill failed.
            CacheEmpty: Nothing is cached and the refill failed.
        """
        try:
            return await self._store.read(max_retries=self._read_max_retries, retry_delay=0)
        except CacheMiss as exc:
            miss = exc

        if self._provider is None:
            self._log.warning("Host cache miss (%s) and no provider is configured", miss)
            raise miss

        try:
            entry = await self._provider.fetch_snapshot()
        except Exception as exc:
            self._log.error("Upstream refetch failed: %s", exc)
            raise miss from exc

        try:
            await self._store.write(entry)
        except SaveFailed as exc:
            self._log.error("Failed to cache refetched data: %s", exc)
        return entry

    # ------------------------------------------------------------------
    # Chunk push
    # ------------------------------------------------------------------

    async def _push_chunks(self, transfer_id: str, chunks: list[Chunk]) -> None:
        start = StartTransfer(transfer_id=transfer_id, expected_chunk_count=len(chunks))
        try:
            await self._transport.send_message(start.to_wire())
        except BridgecastError as exc:
            self._log.error("Transfer %s: start rejected, aborting push: %s", transfer_id, exc)
            return

        for chunk in chunks:
            if chunk.index > 0:
                await self._sleep(self._inter_chunk_delay)
            self._spawn(self._send_chunk(chunk))

    async def _send_chunk(self, chunk: Chunk) -> None:
        try:
            reply = await self._transport.send_chunk(chunk)
        except BridgecastError as exc:
            self._log.error(
                "Error sending chunk %d/%d: %s", chunk.index + 1, chunk.total_count, exc
            )
            return
        self._log.info(
            "Chunk %d/%d sent: %s", chunk.index + 1, chunk.total_count, reply.status.value
        )

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every in-flight push and chunk send has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel in-flight pushes and detach from the transport."""
        self._transport.set_handler(None)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
