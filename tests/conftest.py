"""
Pytest Configuration
Provides a fake upstream, a client wired to it, deterministic time and seeds.
"""

import asyncio
import json
import os
import random
from typing import Any, Callable, Dict, List, Union

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

from quotestream.client import QuoteClient
from quotestream.config import ClientConfig
from quotestream.observability.metrics import get_registry
from quotestream.util.backoff import FixedBackoff, RetryConfig

# Set deterministic seed for all tests
RNG_SEED = int(os.getenv("RNG_SEED", "1337"))
random.seed(RNG_SEED)

COOKIE_PATH = "/consent"
CRUMB_PATH = "/v1/test/getcrumb"
QUOTE_PATH = "/v7/finance/quote"
SUMMARY_PATH = "/v10/finance/quoteSummary/AAPL"

Reply = Union[Dict[str, Any], Exception, Callable[[httpx.Request], httpx.Response]]


class FakeUpstream:
    """
    Path-routed fake for httpx.MockTransport.

    Each route holds a queue of replies; the last reply repeats. A reply is a
    dict of httpx.Response kwargs, an exception to raise, or a callable.
    """

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self._routes: Dict[str, List[Reply]] = {}

    def add(self, path: str, *replies: Reply) -> "FakeUpstream":
        self._routes.setdefault(path, []).extend(replies)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, text="no route")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return httpx.Response(**reply)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, path: str) -> int:
        return sum(1 for call in self.calls if call.url.path == path)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [call for call in self.calls if call.url.path == path]

    def with_session(self, crumb: str = "crumb123") -> "FakeUpstream":
        self.add(COOKIE_PATH, dict(status_code=404, headers={"set-cookie": "A3=d=abc; Domain=.yahoo.com; Path=/"}))
        self.add(CRUMB_PATH, dict(status_code=200, text=crumb))
        return self


def quote_body(*nodes: Dict[str, Any]) -> Dict[str, Any]:
    return {"json": {"quoteResponse": {"result": list(nodes), "error": None}}}


class FakeSocket:
    """Scripted WebSocket: frames are returned in order, exceptions raised, then recv blocks."""

    def __init__(self, *frames):
        self.sent: List[Dict[str, Any]] = []
        self._frames: "asyncio.Queue[Any]" = asyncio.Queue()
        for frame in frames:
            self._frames.put_nowait(frame)

    def push(self, frame) -> None:
        self._frames.put_nowait(frame)

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self):
        frame = await self._frames.get()
        if isinstance(frame, Exception):
            raise frame
        return frame


class FakeConnect:
    """Stand-in for websockets.connect; each call consumes the next socket or error (last one repeats)."""

    def __init__(self, *outcomes):
        self.calls: List[Dict[str, Any]] = []
        self._outcomes = list(outcomes)

    def __call__(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        return _FakeConnection(outcome)


class _FakeConnection:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


def closed_frame() -> ConnectionClosedError:
    return ConnectionClosedError(None, None)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll a condition on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by the executor, recorded instead of slept."""
    return []


@pytest.fixture
def client_config(upstream) -> ClientConfig:
    return ClientConfig(
        transport=upstream.transport,
        retry=RetryConfig(max_retries=2, backoff=FixedBackoff(0.01)),
    )


@pytest.fixture
async def client(client_config, sleeps):
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    c = QuoteClient(client_config, sleep=fake_sleep, rng=random.Random(RNG_SEED))
    yield c
    await c.aclose()


@pytest.fixture
def deterministic_time():
    """Provide deterministic time for tests."""
    from quotestream.util.async_tools import get_deterministic_clock

    clock = get_deterministic_clock()
    clock.freeze()

    yield clock

    clock.unfreeze()


@pytest.fixture
def seeded_rng() -> random.Random:
    """Fresh seeded random source per test."""
    return random.Random(RNG_SEED)


@pytest.fixture(autouse=True)
def reset_metrics():
    get_registry().reset()
    yield


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with deterministic settings."""
    # Add custom markers
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "deterministic: marks tests as deterministic")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        # Mark async tests
        if asyncio.iscoroutinefunction(item.function):
            item.add_marker(pytest.mark.asyncio)

        # Mark deterministic tests
        if "deterministic" in item.name:
            item.add_marker(pytest.mark.deterministic)
