"""
Push Worker Tests
Connection headers, subscription frames, decode-error threshold and disconnect reporting.
"""

import asyncio
import json
from typing import List
from unittest.mock import patch

import pytest

from conftest import FakeConnect, FakeSocket, closed_frame, wait_until

from quotestream.config import STREAM_ORIGIN
from quotestream.errors import StreamDisconnectError
from quotestream.observability.metrics import get_registry
from quotestream.schemas.stream import RawTick
from quotestream.services.pricing_codec import encode_text_frame
from quotestream.services.push_worker import PushWorker

URL = "wss://streamer.example/?version=2"


def frame(symbol: str, price: float, volume: int = 0) -> str:
    return encode_text_frame(id=symbol, price=price, time=1704205800000, day_volume=volume)


class Sink:
    def __init__(self, accept: bool = True):
        self.ticks: List[RawTick] = []
        self.accept = accept

    async def __call__(self, tick: RawTick) -> bool:
        self.ticks.append(tick)
        return self.accept


def make_worker(symbols, sink, stop, **kwargs) -> PushWorker:
    return PushWorker(URL, "test-agent", set(symbols), sink, stop, **kwargs)


@pytest.mark.asyncio
class TestPushWorker:

    async def test_connects_with_headers_and_subscribes(self):
        socket = FakeSocket(frame("AAPL", 190.5, 1000))
        connect = FakeConnect(socket)
        sink, stop = Sink(), asyncio.Event()
        worker = make_worker(["MSFT", "AAPL"], sink, stop)

        with patch("quotestream.services.push_worker.websockets.connect", connect):
            task = asyncio.create_task(worker.run())
            await wait_until(lambda: len(sink.ticks) == 1)
            stop.set()
            await task

        assert connect.calls[0]["url"] == URL
        assert connect.calls[0]["additional_headers"] == {"Origin": STREAM_ORIGIN, "User-Agent": "test-agent"}
        assert socket.sent == [{"subscribe": ["AAPL", "MSFT"]}]
        assert sink.ticks[0].symbol == "AAPL"
        assert sink.ticks[0].cumulative_volume == 1000
        assert worker.established

    async def test_control_and_unsubscribed_frames_skipped(self):
        socket = FakeSocket(json.dumps({"type": "ack"}), frame("TSLA", 1.0), frame("AAPL", 2.0))
        sink, stop = Sink(), asyncio.Event()
        worker = make_worker(["AAPL"], sink, stop)

        with patch("quotestream.services.push_worker.websockets.connect", FakeConnect(socket)):
            task = asyncio.create_task(worker.run())
            await wait_until(lambda: len(sink.ticks) == 1)
            stop.set()
            await task

        assert [t.symbol for t in sink.ticks] == ["AAPL"]
        assert worker.control_frames == 1
        assert worker.decode_errors == 0

    async def test_decode_errors_reset_by_good_frame(self):
        socket = FakeSocket("junk!", "junk!", frame("AAPL", 1.0), "junk!", "junk!", frame("AAPL", 2.0))
        sink, stop = Sink(), asyncio.Event()
        worker = make_worker(["AAPL"], sink, stop, max_consecutive_errors=3)

        with patch("quotestream.services.push_worker.websockets.connect", FakeConnect(socket)):
            task = asyncio.create_task(worker.run())
            await wait_until(lambda: len(sink.ticks) == 2)
            stop.set()
            await task

        assert worker.decode_errors == 4
        assert get_registry().counter_value("ws_decode_errors") == 4

    async def test_consecutive_decode_errors_disconnect(self):
        socket = FakeSocket("junk!", "junk!", "junk!")
        worker = make_worker(["AAPL"], Sink(), asyncio.Event(), max_consecutive_errors=3)

        with patch("quotestream.services.push_worker.websockets.connect", FakeConnect(socket)):
            with pytest.raises(StreamDisconnectError) as exc:
                await worker.run()

        assert exc.value.established is True

    async def test_connect_failure_not_established(self):
        worker = make_worker(["AAPL"], Sink(), asyncio.Event())

        with patch("quotestream.services.push_worker.websockets.connect", FakeConnect(OSError("refused"))):
            with pytest.raises(StreamDisconnectError) as exc:
                await worker.run()

        assert exc.value.established is False
        assert not worker.connected.is_set()

    async def test_connection_loss_is_established_disconnect(self):
        socket = FakeSocket(frame("AAPL", 1.0), closed_frame())
        sink = Sink()
        worker = make_worker(["AAPL"], sink, asyncio.Event())

        with patch("quotestream.services.push_worker.websockets.connect", FakeConnect(socket)):
            with pytest.raises(StreamDisconnectError) as exc:
                await worker.run()

        assert exc.value.established is True
        assert worker.ticks == 1

    async def test_live_subscribe_and_unsubscribe(self):
        socket = FakeSocket()
        stop = asyncio.Event()
        worker = make_worker(["AAPL"], Sink(), stop)

        with patch("quotestream.services.push_worker.websockets.connect", FakeConnect(socket)):
            task = asyncio.create_task(worker.run())
            await wait_until(worker.connected.is_set)
            await worker.subscribe(["MSFT"])
            await worker.unsubscribe(["AAPL"])
            stop.set()
            await task

        assert socket.sent == [{"subscribe": ["AAPL"]}, {"subscribe": ["MSFT"]}, {"unsubscribe": ["AAPL"]}]

    async def test_refusing_sink_ends_worker(self):
        socket = FakeSocket(frame("AAPL", 1.0), frame("AAPL", 2.0))
        sink = Sink(accept=False)
        worker = make_worker(["AAPL"], sink, asyncio.Event())

        with patch("quotestream.services.push_worker.websockets.connect", FakeConnect(socket)):
            await worker.run()

        assert len(sink.ticks) == 1
