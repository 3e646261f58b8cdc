"""
Shared fixtures for the depthflow test suite.

No test touches the network: exchange REST, websocket and the remote
model backend are replaced by the fakes below.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from depthflow.config import AppConfig
from depthflow.errors import StreamConnectionError
from depthflow.storage.models import DepthSnapshot, OrderBookSnapshot, StreamStatus
from depthflow.storage.orderbook_store import OrderBookStore


def build_book(bids, asks, timestamp: int = 0, symbol: str = "BTCUSDT",
               update_id: int = 1) -> OrderBookSnapshot:
    """Publish a book view through a real store so metrics are consistent."""
    store = OrderBookStore(symbol)
    return store.load_snapshot(
        DepthSnapshot(last_update_id=update_id, bids=tuple(bids), asks=tuple(asks)),
        timestamp=timestamp,
    )


class FakeWebSocket:
    """Yields queued frames, then stays open until cancelled. Exception frames are raised."""

    def __init__(self, frames: List[Dict[str, Any]]):
        self._frames = list(frames)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self._frames:
            if isinstance(frame, BaseException):
                raise frame
            yield json.dumps(frame)
            await asyncio.sleep(0)
        await asyncio.Event().wait()


class _FakeConnection:
    def __init__(self, ws: FakeWebSocket):
        self._ws = ws

    async def __aenter__(self):
        return self._ws

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnect:
    """
    Stand-in for websockets.connect.

    Each call consumes the next session's frame list; an exception in
    place of a list is raised on connect.
    """

    def __init__(self, sessions: Optional[List[Any]] = None):
        self.sessions = list(sessions or [])
        self.urls: List[str] = []
        self.kwargs: List[Dict[str, Any]] = []

    def __call__(self, url: str, **kwargs):
        self.urls.append(url)
        self.kwargs.append(kwargs)
        frames = self.sessions.pop(0) if self.sessions else []
        if isinstance(frames, BaseException):
            raise frames
        return _FakeConnection(FakeWebSocket(frames))


class FakeRest:
    """Returns queued depth snapshots (the last one repeats); queued exceptions are raised."""

    def __init__(self, snapshots: Optional[List[DepthSnapshot]] = None,
                 depth: Optional[Dict[str, Any]] = None, fail: bool = False):
        self.snapshots = list(snapshots or [])
        self.depth = depth or {"lastUpdateId": 1, "bids": [], "asks": []}
        self.fail = fail
        self.snapshot_calls = 0
        self.depth_calls: List[Dict[str, Any]] = []
        self.closed = False

    async def get_depth_snapshot(self, symbol: str, limit: int = 1000) -> DepthSnapshot:
        self.snapshot_calls += 1
        index = min(self.snapshot_calls - 1, len(self.snapshots) - 1)
        item = self.snapshots[index]
        if isinstance(item, BaseException):
            raise item
        return item

    async def get_depth(self, symbol: str, limit: int = 1000) -> Dict[str, Any]:
        self.depth_calls.append({"symbol": symbol, "limit": limit})
        if self.fail:
            raise StreamConnectionError("upstream down")
        return self.depth

    async def close(self):
        self.closed = True


class FakeStreamClient:
    """DepthStreamClient double that seeds a book on connect."""

    def __init__(self, on_status_change=None, **kwargs):
        self.on_status_change = on_status_change
        self.store: Optional[OrderBookStore] = None
        self.status = StreamStatus.CLOSED
        self.symbol: Optional[str] = None
        self.connects: List[str] = []
        self.disconnected = False

    async def connect(self, symbol: str):
        self.symbol = symbol
        self.connects.append(symbol)
        self.store = OrderBookStore(symbol)
        self.store.load_snapshot(
            DepthSnapshot(last_update_id=10, bids=((100.0, 2.0), (99.0, 1.0)), asks=((101.0, 1.0),)),
            timestamp=1_000,
        )
        self.status = StreamStatus.CONNECTED
        if self.on_status_change:
            self.on_status_change(StreamStatus.CONNECTED)

    async def disconnect(self):
        self.disconnected = True
        self.status = StreamStatus.CLOSED

    def health(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "status": self.status.value}


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll predicate until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def app_config():
    """Default config with no remote backend."""
    return AppConfig()


@pytest.fixture
def make_book():
    return build_book


@pytest.fixture
def fake_connect_cls():
    return FakeConnect


@pytest.fixture
def fake_rest_cls():
    return FakeRest


@pytest.fixture
def fake_stream_client_cls():
    return FakeStreamClient


@pytest.fixture
def wait_for():
    return wait_until
