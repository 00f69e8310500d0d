"""
Stream Session Tests
State machine transitions, push -> poll fallback, reconnects, symbol changes and stop semantics.
"""

import asyncio
from unittest.mock import patch

import pytest

from conftest import QUOTE_PATH, FakeConnect, FakeSocket, closed_frame, quote_body, wait_until

from quotestream.errors import ValidationError
from quotestream.observability.metrics import get_registry
from quotestream.schemas.stream import StreamConfig, StreamMethod, StreamState
from quotestream.services.pricing_codec import encode_text_frame
from quotestream.services.stream_session import StreamBuilder, UpdateChannel, start_stream
from quotestream.util.backoff import FixedBackoff, RetryConfig

CONNECT = "quotestream.services.push_worker.websockets.connect"


def frame(symbol: str, price: float, volume: int = 0) -> str:
    return encode_text_frame(id=symbol, price=price, time=1704205800000, day_volume=volume)


def poll_node(price: float, volume: int):
    return dict(status_code=200, **quote_body({"symbol": "AAPL", "regularMarketPrice": price, "regularMarketVolume": volume}))


def stream_config(method: StreamMethod, **kwargs) -> StreamConfig:
    values = dict(
        method=method,
        interval=0.01,
        diff_only=False,
        reconnect_backoff=FixedBackoff(0),
        retry=RetryConfig(enabled=False),
    )
    values.update(kwargs)
    return StreamConfig(**values)


async def take(channel: UpdateChannel, n: int, timeout: float = 2.0):
    return [await asyncio.wait_for(channel.recv(), timeout) for _ in range(n)]


@pytest.mark.asyncio
class TestPollStream:

    async def test_poll_only_emits_volume_deltas(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(190.0, 1000), poll_node(190.5, 1500), poll_node(191.0, 900), poll_node(191.5, 1100))

        handle, updates = await start_stream(client, ["AAPL"], stream_config(StreamMethod.POLL_ONLY))
        received = await take(updates, 4)
        await handle.stop()

        assert [u.volume for u in received] == [None, 500, None, 200]
        assert all(u.source == "poll" for u in received)
        assert handle.state == StreamState.STOPPED

    async def test_stop_guarantees_no_further_emissions(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(1.0, 10), poll_node(2.0, 20), poll_node(3.0, 30), poll_node(4.0, 40))

        handle, updates = await start_stream(client, ["AAPL"], stream_config(StreamMethod.POLL_ONLY))
        await take(updates, 1)
        await handle.stop()

        emitted = handle.health()["emitted"]
        await asyncio.sleep(0.05)

        assert handle.health()["emitted"] == emitted
        assert updates.closed
        drained = [u async for u in updates]
        assert len(drained) <= emitted
        assert await updates.recv() is None

    async def test_poll_failure_limit_fails_stream(self, client, upstream):
        upstream.add(QUOTE_PATH, dict(status_code=503))

        handle, updates = await start_stream(
            client, ["AAPL"], stream_config(StreamMethod.POLL_ONLY, poll_failure_limit=2)
        )

        assert await handle.wait() == StreamState.FAILED
        assert await updates.recv() is None
        assert handle.health()["poll_failures"] == 2

    async def test_empty_symbols_rejected(self, client):
        with pytest.raises(ValidationError):
            await start_stream(client, [" "], stream_config(StreamMethod.POLL_ONLY))


@pytest.mark.asyncio
class TestPushFallback:

    async def test_connect_failure_falls_back_to_poll(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(190.0, 1000))

        with patch(CONNECT, FakeConnect(OSError("refused"))):
            handle, updates = await start_stream(
                client, ["AAPL"], stream_config(StreamMethod.PUSH_WITH_POLL_FALLBACK)
            )
            update = await asyncio.wait_for(updates.recv(), 2.0)
            await handle.stop()

        assert update.source == "poll"
        registry = get_registry()
        assert registry.counter_value("stream_transitions", {"from": "connecting", "to": "poll_active"}) == 1
        assert registry.counter_value("stream_transitions", {"from": "poll_active", "to": "stopped"}) == 1

    async def test_decode_errors_trigger_fallback(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(191.0, 1500))
        socket = FakeSocket(frame("AAPL", 190.0, 1000), "bad!", "bad!", "bad!")

        with patch(CONNECT, FakeConnect(socket)):
            handle, updates = await start_stream(
                client, ["AAPL"],
                stream_config(StreamMethod.PUSH_WITH_POLL_FALLBACK, max_consecutive_errors=3),
            )
            pushed, polled = await take(updates, 2)
            await handle.stop()

        assert (pushed.source, polled.source) == ("push", "poll")
        # One engine across the switch: the poll tick continues the push baseline
        assert polled.volume == 500
        health = handle.health()
        assert health["decode_errors"] == 3
        assert health["state"] == "stopped"
        registry = get_registry()
        assert registry.counter_value("stream_transitions", {"from": "push_active", "to": "poll_active"}) == 1

    async def test_poll_never_promotes_back_to_push(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(1.0, 10), poll_node(2.0, 20), poll_node(3.0, 30))
        connect = FakeConnect(OSError("refused"))

        with patch(CONNECT, connect):
            handle, updates = await start_stream(
                client, ["AAPL"], stream_config(StreamMethod.PUSH_WITH_POLL_FALLBACK)
            )
            await take(updates, 3)
            await handle.stop()

        assert len(connect.calls) == 1


@pytest.mark.asyncio
class TestPushOnly:

    async def test_never_established_fails(self, client):
        with patch(CONNECT, FakeConnect(OSError("refused"))):
            handle, updates = await start_stream(client, ["AAPL"], stream_config(StreamMethod.PUSH_ONLY))
            state = await handle.wait()

        assert state == StreamState.FAILED
        assert await updates.recv() is None
        assert "refused" in handle.health()["last_error"]

    async def test_reconnects_after_connection_loss(self, client):
        first = FakeSocket(frame("AAPL", 190.0, 1000), closed_frame())
        second = FakeSocket(frame("AAPL", 191.0, 1200))
        connect = FakeConnect(first, second)

        with patch(CONNECT, connect):
            handle, updates = await start_stream(client, ["AAPL"], stream_config(StreamMethod.PUSH_ONLY))
            a, b = await take(updates, 2)
            await wait_until(lambda: handle.state == StreamState.PUSH_ACTIVE)
            await handle.stop()

        assert b.volume == 200
        assert handle.health()["reconnects"] == 1
        assert len(connect.calls) == 2
        registry = get_registry()
        assert registry.counter_value("stream_transitions", {"from": "push_active", "to": "connecting"}) == 1
        assert registry.counter_value("ws_reconnects") == 1

    async def test_reconnect_limit_fails_stream(self, client):
        def dead_socket():
            return FakeSocket(closed_frame())

        connect = FakeConnect(dead_socket(), dead_socket(), dead_socket(), dead_socket())

        with patch(CONNECT, connect):
            handle, updates = await start_stream(
                client, ["AAPL"], stream_config(StreamMethod.PUSH_ONLY, max_reconnects=2)
            )
            state = await handle.wait()

        assert state == StreamState.FAILED
        assert len(connect.calls) == 3
        assert handle.health()["reconnects"] == 2


@pytest.mark.asyncio
class TestSymbolChanges:

    async def test_add_and_remove_on_live_socket(self, client):
        socket = FakeSocket(frame("AAPL", 190.0, 100))

        with patch(CONNECT, FakeConnect(socket)):
            handle, updates = await start_stream(client, ["AAPL"], stream_config(StreamMethod.PUSH_ONLY))
            await take(updates, 1)

            assert await handle.add_symbols(["msft", "AAPL"]) == ["MSFT"]
            assert await handle.remove_symbols(["AAPL"]) == ["AAPL"]

            socket.push(frame("AAPL", 191.0, 200))  # late tick for a removed symbol
            socket.push(frame("MSFT", 400.0, 50))
            update = await asyncio.wait_for(updates.recv(), 2.0)
            await handle.stop()

        assert update.symbol == "MSFT"
        assert socket.sent == [{"subscribe": ["AAPL"]}, {"subscribe": ["MSFT"]}, {"unsubscribe": ["AAPL"]}]
        assert handle.symbols == ["MSFT"]

    async def test_removed_symbol_state_discarded(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(1.0, 10))

        handle, updates = await start_stream(client, ["AAPL"], stream_config(StreamMethod.POLL_ONLY))
        await take(updates, 1)
        await handle.remove_symbols(["AAPL"])
        await handle.stop()

        assert handle.health()["symbols"] == []


@pytest.mark.asyncio
class TestControl:

    async def test_abort_cancels_immediately(self, client):
        with patch(CONNECT, FakeConnect(FakeSocket())):
            handle, updates = await start_stream(client, ["AAPL"], stream_config(StreamMethod.PUSH_ONLY))
            await wait_until(lambda: handle.state == StreamState.PUSH_ACTIVE)
            await handle.abort()

        assert handle.state == StreamState.STOPPED
        assert updates.closed

    async def test_builder(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(1.0, 10))

        builder = (
            StreamBuilder(client)
            .symbols(["AAPL"])
            .method(StreamMethod.POLL_ONLY)
            .interval(0.01)
            .diff_only(False)
            .retry(RetryConfig(enabled=False))
        )
        config = builder.build_config()
        assert config.method == StreamMethod.POLL_ONLY
        assert config.interval == 0.01

        handle, updates = await builder.start()
        update = await asyncio.wait_for(updates.recv(), 2.0)
        await handle.stop()

        assert update.symbol == "AAPL"
        assert handle.state == StreamState.STOPPED

    async def test_client_stream_shortcut(self, client, upstream):
        upstream.add(QUOTE_PATH, poll_node(1.0, 10))

        handle, updates = await client.stream(["AAPL"], stream_config(StreamMethod.POLL_ONLY))
        assert (await asyncio.wait_for(updates.recv(), 2.0)).price == 1.0
        await handle.stop()
