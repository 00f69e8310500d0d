"""
Stream Session
Owns one streaming subscription: the state machine, the active worker, the
volume-delta engine and the bounded output channel.
"""

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Iterable, List, Optional, Set, Tuple

from quotestream.errors import (
    StreamDisconnectError,
    StreamExhaustedError,
    ValidationError,
    create_structured_error_response,
)
from quotestream.observability.metrics import (
    record_stream_transition,
    record_update_emitted,
    record_ws_reconnect,
)
from quotestream.protocols import StreamHealth
from quotestream.schemas.quote import QuoteUpdate
from quotestream.schemas.stream import (
    ALLOWED_TRANSITIONS,
    RawTick,
    StreamConfig,
    StreamMethod,
    StreamState,
)
from quotestream.services.poll_worker import PollWorker
from quotestream.services.push_worker import PushWorker
from quotestream.services.quotes import normalize_symbols
from quotestream.services.volume_delta import VolumeDeltaEngine
from quotestream.util.async_tools import create_supervised_task, sleep_or_stop, wait_or_stop
from quotestream.util.backoff import RetryConfig, compute_delay
from quotestream.util.cache import CacheMode

if TYPE_CHECKING:
    from quotestream.client import QuoteClient

logger = logging.getLogger("stream_session")


class UpdateChannel:
    """
    Bounded output channel of a stream.

    ``recv()`` returns the next update, or None once the channel is closed and
    drained. Also usable with ``async for``.
    """

    def __init__(self, maxsize: int = 1024):
        self._queue: "asyncio.Queue[QuoteUpdate]" = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, update: QuoteUpdate, stop: asyncio.Event) -> bool:
        """Put an update, waiting while full. Returns False if stopped or closed first."""
        if self.closed:
            return False
        ok, _ = await wait_or_stop(self._queue.put(update), stop)
        return ok

    async def recv(self) -> Optional[QuoteUpdate]:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            return None
        ok, update = await wait_or_stop(self._queue.get(), self._closed)
        if ok:
            return update
        return self._queue.get_nowait() if not self._queue.empty() else None

    def close(self) -> None:
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> QuoteUpdate:
        update = await self.recv()
        if update is None:
            raise StopAsyncIteration
        return update


class StreamSession:
    """State machine driving push and poll workers for one subscription."""

    def __init__(self, client: "QuoteClient", symbols: Iterable[str], config: StreamConfig,
                 rng: Optional[random.Random] = None):
        wanted = normalize_symbols(symbols)
        if not wanted:
            raise ValidationError("At least one symbol is required to stream")

        self.config = config
        self._client = client
        self._rng = rng
        self._symbols: Set[str] = set(wanted)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._push: Optional[PushWorker] = None
        self._poll: Optional[PollWorker] = None

        self.state = StreamState.CONNECTING
        self.engine = VolumeDeltaEngine(diff_only=config.diff_only)
        self.channel = UpdateChannel(config.channel_size)

        self.reconnects = 0
        self.decode_errors = 0
        self.poll_failures = 0
        self.emitted = 0
        self.last_error: Optional[str] = None

    @property
    def symbols(self) -> List[str]:
        return sorted(self._symbols)

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Stream session already started")
        logger.info(
            f"[stream] Starting {self.config.method.value} stream for {','.join(self.symbols)}",
            extra={"evt": "stream_start"},
        )
        self._task = create_supervised_task(self._run(), name="stream_session")

    async def wait(self) -> StreamState:
        """Wait for the session to reach a terminal state."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.state

    # ------------------------------------------------------------------
    # State machine

    def _transition(self, new_state: StreamState) -> None:
        old = self.state
        if new_state == old:
            return
        if new_state not in ALLOWED_TRANSITIONS[old]:
            raise RuntimeError(f"Illegal stream transition {old.value} -> {new_state.value}")
        self.state = new_state
        record_stream_transition(old.value, new_state.value)
        logger.info(f"[stream] {old.value} -> {new_state.value}", extra={"evt": "stream_transition"})

    async def _run(self) -> None:
        try:
            if self.config.method == StreamMethod.POLL_ONLY:
                await self._run_poll()
            else:
                await self._run_push()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"[stream] Stream failed: {create_structured_error_response(e)}")
            self._transition(StreamState.FAILED)
        finally:
            if not self.state.terminal:
                self._transition(StreamState.STOPPED)
            self.channel.close()

    async def _run_push(self) -> None:
        attempts = 0
        ever_connected = False

        while not self._stop.is_set():
            worker = PushWorker(
                self._client.config.base_stream,
                self._client.config.user_agent,
                self._symbols,
                self._on_tick,
                self._stop,
                max_consecutive_errors=self.config.max_consecutive_errors,
                on_connected=lambda: self._transition(StreamState.PUSH_ACTIVE),
            )
            self._push = worker
            try:
                await worker.run()
                return
            except StreamDisconnectError as e:
                self.last_error = e.message
                if self._stop.is_set():
                    return
                ever_connected = ever_connected or e.established
            finally:
                self._push = None
                self.decode_errors += worker.decode_errors

            if self.config.method == StreamMethod.PUSH_WITH_POLL_FALLBACK:
                logger.warning(f"[stream] Push unavailable ({self.last_error}), falling back to polling")
                await self._run_poll()
                return

            if not ever_connected:
                raise StreamExhaustedError(f"Push connection could not be established: {self.last_error}")
            if worker.ticks > 0:
                attempts = 0
            if attempts >= self.config.max_reconnects:
                raise StreamExhaustedError(f"Push reconnect limit reached ({self.config.max_reconnects})")

            delay = compute_delay(self.config.reconnect_backoff, attempts, self._rng)
            attempts += 1
            self.reconnects += 1
            record_ws_reconnect()
            self._transition(StreamState.CONNECTING)
            logger.info(
                f"[stream] Reconnecting in {delay:.2f}s (attempt {attempts}/{self.config.max_reconnects})",
                extra={"evt": "ws_reconnect"},
            )
            if await sleep_or_stop(delay, self._stop):
                return

    async def _run_poll(self) -> None:
        self._transition(StreamState.POLL_ACTIVE)
        retry: Optional[RetryConfig] = self.config.retry
        worker = PollWorker(
            self._client.executor,
            self._symbols,
            self._on_tick,
            self._stop,
            interval=self.config.interval,
            instrument_cache=self._client.instruments,
            cache_mode=self.config.cache_mode,
            retry=retry,
            failure_limit=self.config.poll_failure_limit,
        )
        self._poll = worker
        try:
            await worker.run()
        finally:
            self._poll = None
            self.poll_failures += worker.failures

    async def _on_tick(self, tick: RawTick) -> bool:
        if self._stop.is_set():
            return False
        if tick.symbol not in self._symbols:
            return True

        update = self.engine.observe_tick(tick)
        if update is None:
            return True

        if not await self.channel.send(update, self._stop):
            return False
        self.emitted += 1
        record_update_emitted(update.source)
        return True

    # ------------------------------------------------------------------
    # Control

    async def stop(self) -> None:
        """Signal workers, wait for them, close the channel."""
        self._stop.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        if not self.state.terminal:
            self._transition(StreamState.STOPPED)
        self.channel.close()

    async def abort(self) -> None:
        """Cancel the session immediately."""
        self._stop.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        if not self.state.terminal:
            self._transition(StreamState.STOPPED)
        self.channel.close()

    async def add_symbols(self, symbols: Iterable[str]) -> List[str]:
        added = [s for s in normalize_symbols(symbols) if s not in self._symbols]
        if not added:
            return []
        self._symbols.update(added)
        if self._push is not None:
            await self._push.subscribe(added)
        logger.info(f"[stream] Added {','.join(added)}")
        return added

    async def remove_symbols(self, symbols: Iterable[str]) -> List[str]:
        removed = [s for s in normalize_symbols(symbols) if s in self._symbols]
        if not removed:
            return []
        for sym in removed:
            self._symbols.discard(sym)
            self.engine.forget(sym)
        if self._push is not None:
            await self._push.unsubscribe(removed)
        logger.info(f"[stream] Removed {','.join(removed)}")
        return removed

    def health(self) -> StreamHealth:
        decode_errors = self.decode_errors + (self._push.decode_errors if self._push else 0)
        return StreamHealth(
            state=self.state.value,
            method=self.config.method.value,
            symbols=self.symbols,
            reconnects=self.reconnects,
            decode_errors=decode_errors,
            poll_failures=self.poll_failures + (self._poll.failures if self._poll else 0),
            emitted=self.emitted,
            suppressed=self.engine.suppressed,
            last_error=self.last_error,
        )


class StreamHandle:
    """Caller-side control of a running stream."""

    def __init__(self, session: StreamSession):
        self._session = session

    @property
    def state(self) -> StreamState:
        return self._session.state

    @property
    def symbols(self) -> List[str]:
        return self._session.symbols

    async def stop(self) -> None:
        await self._session.stop()

    async def abort(self) -> None:
        await self._session.abort()

    async def wait(self) -> StreamState:
        return await self._session.wait()

    async def add_symbols(self, symbols: Iterable[str]) -> List[str]:
        return await self._session.add_symbols(symbols)

    async def remove_symbols(self, symbols: Iterable[str]) -> List[str]:
        return await self._session.remove_symbols(symbols)

    def health(self) -> StreamHealth:
        return self._session.health()


async def start_stream(client: "QuoteClient", symbols: Iterable[str],
                       config: Optional[StreamConfig] = None,
                       rng: Optional[random.Random] = None) -> Tuple[StreamHandle, UpdateChannel]:
    """
    Start streaming quotes for ``symbols``.

    Raises:
        ValidationError: no symbols given
    """
    session = StreamSession(client, symbols, config or StreamConfig.from_settings(), rng=rng)
    session.start()
    return StreamHandle(session), session.channel


class StreamBuilder:
    """Fluent construction of a stream."""

    def __init__(self, client: "QuoteClient"):
        self._client = client
        self._symbols: List[str] = []
        self._options = {}

    def symbols(self, symbols: Iterable[str]) -> "StreamBuilder":
        self._symbols.extend(symbols)
        return self

    def method(self, method: StreamMethod) -> "StreamBuilder":
        self._options["method"] = StreamMethod(method)
        return self

    def interval(self, seconds: float) -> "StreamBuilder":
        self._options["interval"] = seconds
        return self

    def diff_only(self, enabled: bool = True) -> "StreamBuilder":
        self._options["diff_only"] = enabled
        return self

    def cache_mode(self, mode: CacheMode) -> "StreamBuilder":
        self._options["cache_mode"] = CacheMode(mode)
        return self

    def retry(self, retry: RetryConfig) -> "StreamBuilder":
        self._options["retry"] = retry
        return self

    def max_reconnects(self, count: int) -> "StreamBuilder":
        self._options["max_reconnects"] = count
        return self

    def poll_failure_limit(self, count: Optional[int]) -> "StreamBuilder":
        self._options["poll_failure_limit"] = count
        return self

    def build_config(self) -> StreamConfig:
        return StreamConfig.from_settings(**self._options)

    async def start(self) -> Tuple[StreamHandle, UpdateChannel]:
        return await start_stream(self._client, self._symbols, self.build_config())
