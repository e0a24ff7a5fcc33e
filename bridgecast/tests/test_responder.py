"""Tests for the host-side SyncResponder."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, call

import pytest

from bridgecast.cache.store import SharedCacheStore
from bridgecast.errors import PeerError, Unreachable
from bridgecast.models.messages import Reply, ReplyStatus
from bridgecast.models.snapshot import CacheEntry
from bridgecast.providers.base import SnapshotProvider
from bridgecast.sync.responder import NO_DATA_CODE, STALE_DATA_CODE, SyncResponder
from bridgecast.transfer.codec import CHUNK_ENVELOPE_BYTES, decode
from bridgecast.transfer.transport import ChannelTransport
from bridgecast.tests.conftest import CHUNK_SIZE


@pytest.fixture
def mock_transport() -> MagicMock:
    """Transport whose sends are all acknowledged."""
    transport = MagicMock(spec=ChannelTransport)
    ack = Reply(status=ReplyStatus.RECEIVED)
    transport.send_message = AsyncMock(return_value=ack)
    transport.send_chunk = AsyncMock(return_value=ack)
    return transport


def _provider(entry: CacheEntry | None = None, error: Exception | None = None) -> MagicMock:
    provider = MagicMock(spec=SnapshotProvider)
    provider.fetch_snapshot = AsyncMock(return_value=entry, side_effect=error)
    return provider


def _responder(store: SharedCacheStore, transport: MagicMock, **kwargs) -> SyncResponder:
    kwargs.setdefault("sleep", AsyncMock())
    return SyncResponder(store, transport, **kwargs)


class TestResponderRequests:
    def test_installs_handler_on_transport(
        self, host_store: SharedCacheStore, mock_transport: MagicMock
    ) -> None:
        responder = _responder(host_store, mock_transport)
        mock_transport.set_handler.assert_called_once_with(responder.handle_message)

    @pytest.mark.asyncio
    async def test_unknown_message_type(
        self, host_store: SharedCacheStore, mock_transport: MagicMock
    ) -> None:
        reply = await _responder(host_store, mock_transport).handle_message({"type": "ping"})
        assert reply["status"] == "unknown"

    @pytest.mark.asyncio
    async def test_companion_only_message_is_unknown(
        self, host_store: SharedCacheStore, mock_transport: MagicMock
    ) -> None:
        reply = await _responder(host_store, mock_transport).handle_message(
            {"type": "startTransfer", "transferId": "t", "expectedChunkCount": 2}
        )
        assert reply["status"] == "unknown"

    @pytest.mark.asyncio
    async def test_small_entry_sent_in_reply(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        sample_entry: CacheEntry,
    ) -> None:
        await host_store.write(sample_entry)

        reply = await _responder(host_store, mock_transport).handle_message({"type": "requestData"})

        assert reply["status"] == "ready"
        assert decode(reply["payload"]) == sample_entry
        mock_transport.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_data_is_accepted(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        sample_entry: CacheEntry,
    ) -> None:
        await host_store.write(sample_entry)
        reply = await _responder(host_store, mock_transport).handle_message({"type": "getData"})
        assert reply["status"] == "ready"

    @pytest.mark.asyncio
    async def test_empty_cache_without_provider(
        self, host_store: SharedCacheStore, mock_transport: MagicMock
    ) -> None:
        reply = await _responder(host_store, mock_transport).handle_message({"type": "requestData"})
        assert reply["status"] == "error"
        assert reply["code"] == NO_DATA_CODE

    @pytest.mark.asyncio
    async def test_stale_cache_is_never_sent(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        stale_entry: CacheEntry,
    ) -> None:
        await host_store.write(stale_entry)
        reply = await _responder(host_store, mock_transport).handle_message({"type": "requestData"})
        assert reply["status"] == "error"
        assert reply["code"] == STALE_DATA_CODE
        assert "payload" not in reply

    @pytest.mark.asyncio
    async def test_stale_cache_refilled_from_provider(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        stale_entry: CacheEntry,
        sample_entry: CacheEntry,
    ) -> None:
        await host_store.write(stale_entry)
        provider = _provider(entry=sample_entry)

        reply = await _responder(host_store, mock_transport, provider=provider).handle_message(
            {"type": "requestData"}
        )

        assert decode(reply["payload"]) == sample_entry
        provider.fetch_snapshot.assert_awaited_once()
        assert await host_store.read() == sample_entry

    @pytest.mark.asyncio
    async def test_provider_failure_reports_no_data(
        self, host_store: SharedCacheStore, mock_transport: MagicMock
    ) -> None:
        provider = _provider(error=RuntimeError("upstream down"))
        reply = await _responder(host_store, mock_transport, provider=provider).handle_message(
            {"type": "requestData"}
        )
        assert reply["code"] == NO_DATA_CODE


class TestResponderChunkPush:
    @pytest.mark.asyncio
    async def test_large_entry_announced_then_pushed(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        large_entry: CacheEntry,
    ) -> None:
        await host_store.write(large_entry)
        sleep = AsyncMock()
        responder = _responder(host_store, mock_transport, sleep=sleep, chunk_size=CHUNK_SIZE)

        reply = await responder.handle_message({"type": "requestData"})
        await responder.drain()

        assert reply["status"] == "ready"
        assert reply["chunkCount"] == 5
        assert "payload" not in reply

        start = mock_transport.send_message.await_args.args[0]
        assert start == {
            "type": "startTransfer",
            "transferId": reply["transferId"],
            "expectedChunkCount": 5,
        }

        chunks = [c.args[0] for c in mock_transport.send_chunk.await_args_list]
        assert [c.index for c in chunks] == [0, 1, 2, 3, 4]
        assert {c.transfer_id for c in chunks} == {reply["transferId"]}
        assert b"".join(c.payload for c in chunks) == large_entry.to_bytes()

        # paced: no delay before the first chunk
        assert sleep.await_args_list == [call(0.1)] * 4

    @pytest.mark.asyncio
    async def test_request_chunk_size_overrides_default(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        sample_entry: CacheEntry,
    ) -> None:
        await host_store.write(sample_entry)
        responder = _responder(host_store, mock_transport)

        reply = await responder.handle_message({"type": "requestData", "chunkSize": 1024})
        await responder.drain()

        size = len(sample_entry.to_bytes())
        assert reply["chunkCount"] == -(-size // 1024)
        assert mock_transport.send_chunk.await_count == reply["chunkCount"]

    @pytest.mark.asyncio
    async def test_chunk_payloads_leave_room_for_the_envelope(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        large_entry: CacheEntry,
    ) -> None:
        await host_store.write(large_entry)
        responder = _responder(
            host_store, mock_transport, chunk_size=CHUNK_SIZE, max_message_size=CHUNK_SIZE
        )

        reply = await responder.handle_message({"type": "requestData", "chunkSize": CHUNK_SIZE})
        await responder.drain()

        chunks = [c.args[0] for c in mock_transport.send_chunk.await_args_list]
        assert len(chunks) == reply["chunkCount"]
        assert max(len(c.payload) for c in chunks) == CHUNK_SIZE - CHUNK_ENVELOPE_BYTES
        assert b"".join(c.payload for c in chunks) == large_entry.to_bytes()

    @pytest.mark.asyncio
    async def test_rejected_start_sends_no_chunks(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        large_entry: CacheEntry,
    ) -> None:
        await host_store.write(large_entry)
        mock_transport.send_message = AsyncMock(side_effect=PeerError("rejected"))
        responder = _responder(host_store, mock_transport)

        reply = await responder.handle_message({"type": "requestData"})
        await responder.drain()

        assert reply["status"] == "ready"
        mock_transport.send_chunk.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_the_rest(
        self,
        host_store: SharedCacheStore,
        mock_transport: MagicMock,
        large_entry: CacheEntry,
    ) -> None:
        await host_store.write(large_entry)
        ack = Reply(status=ReplyStatus.RECEIVED)
        mock_transport.send_chunk = AsyncMock(
            side_effect=[ack, Unreachable("blip"), ack, ack, ack]
        )
        responder = _responder(host_store, mock_transport)

        await responder.handle_message({"type": "requestData"})
        await responder.drain()

        assert mock_transport.send_chunk.await_count == 5

    @pytest.mark.asyncio
    async def test_aclose_detaches_handler(
        self, host_store: SharedCacheStore, mock_transport: MagicMock
    ) -> None:
        responder = _responder(host_store, mock_transport)
        await responder.aclose()
        mock_transport.set_handler.assert_called_with(None)
