"""Companion-side Sync Orchestrator.

Produces a best-effort fresh snapshot, stopping at the first success:

1. Read the local store; a fresh entry is returned immediately.
2. If the host is reachable, send ``requestData`` and wait for ``ready``.
   The reply either carries the payload directly or announces a chunk count,
   in which case the orchestrator waits for the receiver to reassemble the
   transfer.  The whole exchange is bounded by ``transfer_timeout``, and
   reachability is polled while chunks arrive; on timeout or connection loss
   the attempt is aborted.
3. Steps 1–2 are retried up to ``max_attempts`` times with exponential
   backoff between attempts.
4. On exhaustion the caller gets ``Unreachable`` (transport failures) or
   ``CacheEmpty``/``CacheStale`` (the host had no fresh data).  Any stale
   entry found in step 1 rides along as a degraded fallback.

Only one ``fetch()`` may run at a time per orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from bridgecast.cache.store import SharedCacheStore
from bridgecast.config import Settings, get_settings
from bridgecast.errors import (
    CacheEmpty,
    CacheStale,
    LoadFailed,
    PeerDataUnavailable,
    PeerError,
    ProtocolViolation,
    SaveFailed,
    TransferError,
    TransportError,
    TransportTimeout,
    Unreachable,
)
from bridgecast.models.messages import DataRequest, ReplyStatus
from bridgecast.models.snapshot import CacheEntry
from bridgecast.retry import RetryPolicy, retry_with_backoff
from bridgecast.sync.receiver import CompletedTransfer, TransferReceiver
from bridgecast.sync.responder import NO_DATA_CODE, STALE_DATA_CODE
from bridgecast.transfer.codec import chunk_payload_limit, decode
from bridgecast.transfer.transport import ChannelTransport, TransferState, TransferStateMachine

logger = logging.getLogger("bridgecast.sync.orchestrator")

_RETRYABLE = (TransportError, TransferError, LoadFailed)


class SyncOrchestrator:
    """Keep the companion supplied with a recent snapshot.

    Usage::

        orchestrator = SyncOrchestrator.from_settings(store, transport)
        try:
            entry = await orchestrator.fetch(deadline=30)
        except Unreachable as exc:
            entry = exc.stale_entry       # may be None
        except CacheStale as exc:
            entry = exc.entry
        except CacheEmpty:
            entry = None
    """

    def __init__(
        self,
        store: SharedCacheStore,
        transport: ChannelTransport,
        receiver: TransferReceiver | None = None,
        policy: RetryPolicy | None = None,
        transfer_timeout: float = 10.0,
        chunk_size: int = 16384,
        max_message_size: int | None = None,
        reachability_poll_interval: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store:            The companion's shared cache store.
            transport:        Channel to the host.
            receiver:         Inbound transfer handler; by default one is
                              created and installed on ``transport``.
            policy:           Attempt count and backoff schedule.
            transfer_timeout: Seconds allowed for one request + transfer.
            chunk_size:       Max chunk size requested from the host.
            max_message_size: Channel single-message limit; caps the
                              requested chunk size.
            reachability_poll_interval: Seconds between reachability checks
                              while chunks are arriving.
            sleep:            Awaitable sleep between attempts.
            log:              Logger to use instead of the module logger.
        """
        self._store = store
        self._transport = transport
        self._log = log or logger
        self._receiver = receiver or TransferReceiver(
            transport, on_unsolicited=self._accept_pushed, log=self._log
        )
        self._policy = policy or RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0)
        self._transfer_timeout = transfer_timeout
        self._chunk_size = chunk_payload_limit(chunk_size, max_message_size)
        self._poll_interval = reachability_poll_interval
        self._sleep = sleep
        self._stale: CacheEntry | None = None
        self._machine: TransferStateMachine | None = None
        self.attempts = 0

    @classmethod
    def from_settings(
        cls,
        store: SharedCacheStore,
        transport: ChannelTransport,
        settings: Settings | None = None,
        log: logging.Logger | None = None,
    ) -> "SyncOrchestrator":
        s = settings or get_settings()
        return cls(
            store,
            transport,
            policy=RetryPolicy(
                max_attempts=s.sync_max_attempts,
                base_delay=s.sync_base_delay_seconds,
                backoff_multiplier=s.sync_backoff_multiplier,
            ),
            transfer_timeout=s.transfer_timeout_seconds,
            chunk_size=s.chunk_size,
            max_message_size=s.max_message_size,
            log=log,
        )

    @property
    def receiver(self) -> TransferReceiver:
        return self._receiver

    @property
    def last_state_history(self) -> list[TransferState]:
        """States visited by the most recent transfer attempt."""
        return list(self._machine.history) if self._machine else []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(self, deadline: float | None = None) -> CacheEntry:
        """Return a fresh snapshot from the local cache or the host.

        Args:
            deadline: Seconds allowed for the whole call, retries included.
                      On expiry the in-flight transfer is abandoned.

        Raises:
            Unreachable:      Every attempt failed at the transport level.
            CacheStale:       The host had no fresh data; a stale local entry exists.
            CacheEmpty:       The host had no data and nothing is cached locally.
            TransportTimeout: ``deadline`` expired.
        """
        self._stale = None
        self.attempts = 0
        if deadline is None:
            return await self._fetch()

        try:
            return await asyncio.wait_for(self._fetch(), timeout=deadline)
        except asyncio.TimeoutError as exc:
            self._receiver.abandon()
            self._log.error("Sync abandoned after %.1fs deadline", deadline)
            raise TransportTimeout(
                f"Sync did not finish within {deadline}s", stale_entry=self._stale
            ) from exc

    async def _fetch(self) -> CacheEntry:
        try:
            return await retry_with_backoff(
                self._attempt,
                self._policy,
                retry_on=_RETRYABLE,
                operation_name="sync",
                sleep=self._sleep,
                log=self._log,
            )
        except PeerDataUnavailable:
            if self._stale is not None:
                raise CacheStale(self._stale) from None
            raise CacheEmpty() from None
        except _RETRYABLE as exc:
            raise Unreachable(
                f"No data from peer after {self.attempts} attempt(s): {exc}",
                stale_entry=self._stale,
            ) from exc

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def _attempt(self, attempt: int) -> CacheEntry:
        self.attempts = attempt
        try:
            return await self._store.read(max_retries=1, retry_delay=0)
        except CacheStale as exc:
            self._stale = exc.entry
        except CacheEmpty:
            pass

        if not self._transport.is_reachable():
            raise Unreachable("Peer is not reachable")

        machine = TransferStateMachine(log=self._log)
        self._machine = machine
        try:
            entry = await asyncio.wait_for(self._transfer(machine), timeout=self._transfer_timeout)
        except asyncio.TimeoutError as exc:
            self._abort(machine)
            raise TransportTimeout(
                f"Transfer did not complete within {self._transfer_timeout}s"
            ) from exc
        except BaseException:
            self._abort(machine)
            raise

        await self._persist(entry)
        return entry

    async def _transfer(self, machine: TransferStateMachine) -> CacheEntry:
        machine.advance(TransferState.AWAITING_START_ACK)
        waiter = self._receiver.expect_transfer()
        try:
            reply = await self._transport.send_request(
                DataRequest(chunk_size=self._chunk_size).to_wire()
            )

            if reply.status == ReplyStatus.ERROR:
                if reply.code in (NO_DATA_CODE, STALE_DATA_CODE):
                    raise PeerDataUnavailable(reply.message or "Peer has no data")
                raise PeerError(reply.message or "Peer replied with an error")
            if reply.status != ReplyStatus.READY:
                raise PeerError(f"Unexpected reply status: {reply.status.value}")

            if reply.payload is not None:
                self._log.info("Received %d bytes in a single reply", len(reply.payload))
                machine.advance(TransferState.REASSEMBLING)
                data = reply.payload
            elif reply.chunk_count:
                machine.advance(TransferState.RECEIVING_CHUNKS)
                completed = await self._await_chunks(waiter)
                self._check_transfer(reply.transfer_id, reply.chunk_count, completed)
                machine.advance(TransferState.REASSEMBLING)
                data = completed.data
            else:
                raise PeerError("Ready reply carries neither a payload nor a chunk count")
        finally:
            self._receiver.release()

        entry = decode(data)
        machine.advance(TransferState.DELIVERED)
        self._log.info("Delivered %d records from peer", len(entry.records))
        return entry

    async def _await_chunks(
        self, waiter: asyncio.Future[CompletedTransfer]
    ) -> CompletedTransfer:
        """Wait for the announced transfer, failing fast if the link drops."""
        while True:
            done, _ = await asyncio.wait({waiter}, timeout=self._poll_interval)
            if done:
                return waiter.result()
            if not self._transport.is_reachable():
                raise Unreachable("Connection lost during chunked transfer")

    @staticmethod
    def _check_transfer(
        transfer_id: str | None, chunk_count: int, completed: CompletedTransfer
    ) -> None:
        if transfer_id is not None and completed.transfer_id != transfer_id:
            raise ProtocolViolation(
                f"Completed transfer {completed.transfer_id} does not match announced {transfer_id}"
            )
        if completed.chunk_count != chunk_count:
            raise ProtocolViolation(
                f"Transfer announced {chunk_count} chunks, received {completed.chunk_count}"
            )

    def _abort(self, machine: TransferStateMachine) -> None:
        machine.abort()
        self._receiver.abandon()

    async def _persist(self, entry: CacheEntry) -> None:
        try:
            await self._store.write(entry)
        except SaveFailed as exc:
            self._log.warning("Could not cache snapshot from peer: %s", exc)

    async def _accept_pushed(self, completed: CompletedTransfer) -> None:
        """Store a transfer the host pushed without a pending request."""
        try:
            entry = decode(completed.data)
        except LoadFailed as exc:
            self._log.error("Discarding pushed transfer %s: %s", completed.transfer_id, exc)
            return
        self._log.info("Accepted pushed snapshot with %d records", len(entry.records))
        await self._persist(entry)
