"""
Push worker: one WebSocket connection to the quote streamer.
Runs until stopped or until the connection is lost; reconnect policy belongs
to the stream session.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from quotestream.config import STREAM_ORIGIN
from quotestream.errors import DecodeError, StreamDisconnectError
from quotestream.observability.metrics import record_ws_decode_error
from quotestream.schemas.stream import RawTick
from quotestream.services.pricing_codec import decode_frame, to_raw_tick
from quotestream.util.async_tools import wait_or_stop

logger = logging.getLogger("push_worker")

TickSink = Callable[[RawTick], Awaitable[bool]]


class PushWorker:
    """Single push connection. Not reusable: create one per connection attempt."""

    def __init__(self, url: str, user_agent: str, symbols: Set[str], on_tick: TickSink,
                 stop: asyncio.Event, max_consecutive_errors: int = 5,
                 on_connected: Optional[Callable[[], None]] = None,
                 open_timeout: float = 10.0):
        self.url = url
        self.user_agent = user_agent
        self.symbols = symbols  # live view owned by the session
        self._on_tick = on_tick
        self._stop = stop
        self._on_connected = on_connected
        self.max_consecutive_errors = max_consecutive_errors
        self.open_timeout = open_timeout

        self._ws = None
        self.connected = asyncio.Event()
        self.established = False
        self.ticks = 0
        self.decode_errors = 0
        self.consecutive_errors = 0
        self.control_frames = 0

    async def run(self) -> None:
        """
        Connect, subscribe and forward ticks until stopped.

        Raises:
            StreamDisconnectError: connect failure, connection loss or too many
                consecutive undecodable frames; ``established`` tells which
        """
        headers = {"Origin": STREAM_ORIGIN, "User-Agent": self.user_agent}
        try:
            async with websockets.connect(
                self.url,
                additional_headers=headers,
                open_timeout=self.open_timeout,
            ) as ws:
                self._ws = ws
                self.established = True
                self.connected.set()
                logger.info("[push_worker] Connected to quote streamer", extra={"evt": "ws_connected"})
                await self._send("subscribe", sorted(self.symbols))
                if self._on_connected is not None:
                    self._on_connected()
                await self._read_loop(ws)
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError, ConnectionClosed) as e:
            if self.established:
                logger.warning(f"[push_worker] Connection lost: {e}")
                raise StreamDisconnectError(f"Push connection lost: {e}", established=True)
            logger.warning(f"[push_worker] Connect failed: {e}")
            raise StreamDisconnectError(f"Push connect failed: {e}", established=False)
        finally:
            self._ws = None
            self.connected.clear()

    async def _read_loop(self, ws) -> None:
        while True:
            try:
                ok, frame = await wait_or_stop(ws.recv(), self._stop)
            except ConnectionClosed as e:
                logger.warning(f"[push_worker] Connection closed: {e}")
                raise StreamDisconnectError(f"Push connection closed: {e}", established=True)
            if not ok:
                logger.info("[push_worker] Stop requested")
                return
            if not await self._handle_frame(frame):
                return

    async def _handle_frame(self, frame) -> bool:
        """Returns False when the sink refuses further ticks."""
        try:
            pricing = decode_frame(frame)
            if pricing is None:
                self.control_frames += 1
                return True
            tick = to_raw_tick(pricing)
        except DecodeError as e:
            self.decode_errors += 1
            self.consecutive_errors += 1
            record_ws_decode_error()
            logger.debug(f"[push_worker] Undecodable frame ({self.consecutive_errors} in a row): {e.message}")
            if self.consecutive_errors >= self.max_consecutive_errors:
                raise StreamDisconnectError(
                    f"{self.consecutive_errors} consecutive undecodable frames",
                    established=True,
                    details={"decode_errors": self.decode_errors},
                )
            return True

        self.consecutive_errors = 0
        if tick.symbol not in self.symbols:
            return True
        self.ticks += 1
        return await self._on_tick(tick)

    async def subscribe(self, symbols: Iterable[str]) -> None:
        await self._send("subscribe", list(symbols))

    async def unsubscribe(self, symbols: Iterable[str]) -> None:
        await self._send("unsubscribe", list(symbols))

    async def _send(self, action: str, symbols: List[str]) -> None:
        if self._ws is None or not symbols:
            return
        try:
            await self._ws.send(json.dumps({action: symbols}))
            logger.debug(f"[push_worker] {action} {','.join(symbols)}")
        except ConnectionClosed as e:
            # The read loop surfaces the disconnect
            logger.warning(f"[push_worker] {action} not sent, connection closed: {e}")
