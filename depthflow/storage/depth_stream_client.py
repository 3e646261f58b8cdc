"""
Depth Stream Client
===================

One Binance spot market-data connection per symbol: diff-depth plus trade
streams over a combined websocket, seeded by a REST depth snapshot.

Sync procedure:
1. Open the combined stream; a pump task parses frames into a bounded
   event queue (diffs that arrive before the snapshot wait there).
2. Fetch a REST snapshot and load it into the store.
3. Drop diffs with u <= lastUpdateId; the first applied diff must bracket
   lastUpdateId+1, otherwise refetch the snapshot (bounded retries).
4. Apply every later diff in order from the queue. A gap closes the
   stream, clears the store and starts over from step 1 without backoff.

Transport failures reconnect with capped exponential backoff. Only
disconnect() reaches the CLOSED state; no callback fires after it returns.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, List, Optional, Union

import aiohttp
import websockets
from websockets.exceptions import WebSocketException

from ..config import StreamConfig, backoff_delay
from ..errors import SequenceGapError, SnapshotOutOfSyncError, StreamConnectionError
from .binance_rest_client import BinanceSpotREST
from .models import DepthDiff, StreamStatus, Trade
from .orderbook_store import OrderBookStore

logger = logging.getLogger(__name__)


TRANSIENT_ERRORS = (
    StreamConnectionError,
    WebSocketException,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    OSError,
)

_STREAM_END = object()

Event = Union[DepthDiff, Trade]


def parse_stream_message(raw: Union[str, bytes]) -> Optional[Event]:
    """
    Parse one combined-stream frame.

    Returns a DepthDiff, a Trade, or None for frames we do not consume.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    message = json.loads(raw)
    payload = message.get("data", message) if isinstance(message, dict) else None
    if not isinstance(payload, dict):
        return None

    event_type = payload.get("e", "")
    if event_type == "depthUpdate" or ("U" in payload and "u" in payload):
        return DepthDiff.from_binance(payload)
    if event_type == "trade":
        return Trade.from_binance(payload)
    return None


class DepthStreamClient:
    """
    Streaming client keeping an OrderBookStore in sync with the exchange.

    Callbacks may be plain functions or coroutines:
    - on_depth_update(bids, asks) after the snapshot and every applied diff
    - on_trade(trade) for every trade event
    - on_status_change(status) on every StreamStatus transition
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        rest_client: Optional[BinanceSpotREST] = None,
        ws_connect: Optional[Callable[..., Any]] = None,
        on_depth_update: Optional[Callable] = None,
        on_trade: Optional[Callable] = None,
        on_status_change: Optional[Callable] = None,
    ):
        self.config = config or StreamConfig()
        self.rest_client = rest_client or BinanceSpotREST(
            base_url=self.config.rest_base_url,
            timeout=self.config.request_timeout,
        )
        self._ws_connect = ws_connect or websockets.connect

        self.on_depth_update = on_depth_update
        self.on_trade = on_trade
        self.on_status_change = on_status_change

        self.symbol: Optional[str] = None
        self.store: Optional[OrderBookStore] = None
        self.status = StreamStatus.CLOSED

        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._closed = True
        self._attempt = 0

        # Counters for health reporting
        self.snapshot_fetches = 0
        self.resync_count = 0
        self.reconnect_count = 0
        self.messages_received = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stream_url(self, symbol: str) -> str:
        s = symbol.lower()
        speed = self.config.diff_speed
        return f"{self.config.ws_base_url}/stream?streams={s}@depth@{speed}/{s}@trade"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def connect(self, symbol: str):
        """
        Start (or switch) the stream for a symbol.

        Switching symbols tears down the current connection and resets the
        book in full before the new one starts.
        """
        symbol = symbol.upper()
        if self.is_running:
            if symbol == self.symbol:
                return
            logger.info(f"Switching stream {self.symbol} -> {symbol}")
            await self._cancel_task()

        if self.store is None or self.store.symbol != symbol:
            self.store = OrderBookStore(symbol)
        else:
            self.store.reset()

        self.symbol = symbol
        self._closing = False
        self._closed = False
        self._attempt = 0
        self._task = asyncio.create_task(self._run(), name=f"depth-stream-{symbol}")

    async def disconnect(self):
        """Tear down the connection; no callbacks fire after this returns."""
        self._closing = True
        await self._cancel_task()
        if not self._closed:
            await self._set_status(StreamStatus.CLOSED)
        self._closed = True
        logger.info(f"Disconnected depth stream for {self.symbol}")

    async def _cancel_task(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _run(self):
        """Run sessions until disconnect, resyncing and reconnecting as needed."""
        while not self._closing:
            await self._set_status(StreamStatus.CONNECTING)
            try:
                await self._session()
                # Clean end of stream from the exchange side
                raise StreamConnectionError("stream ended")
            except asyncio.CancelledError:
                raise
            except SequenceGapError as e:
                self.resync_count += 1
                logger.debug(f"{self.symbol} resync: {e}")
                # Start the new snapshot from an empty book and tape
                self.store.reset()
                continue
            except TRANSIENT_ERRORS as e:
                logger.warning(f"{self.symbol} stream error: {e}")
            except Exception:
                logger.exception(f"{self.symbol} unexpected stream failure")
            await self._backoff()

    async def _backoff(self):
        self._attempt += 1
        self.reconnect_count += 1
        delay = backoff_delay(
            self._attempt,
            self.config.reconnect_base_delay,
            self.config.reconnect_max_delay,
        )
        await self._set_status(StreamStatus.CONNECTING)
        logger.info(f"{self.symbol} reconnecting in {delay:.1f}s (attempt {self._attempt})")
        await asyncio.sleep(delay)

    async def _session(self):
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.event_queue_size)
        url = self.stream_url(self.symbol)
        logger.info(f"Connecting depth stream {url}")

        async with self._ws_connect(url, ping_interval=20, ping_timeout=10) as ws:
            pump = asyncio.create_task(self._pump(ws, queue))
            try:
                await self._synchronize(queue)
                self._attempt = 0
                await self._set_status(StreamStatus.CONNECTED)
                while True:
                    event = await self._next_event(queue)
                    await self._handle_event(event)
            finally:
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass

    async def _pump(self, ws, queue: asyncio.Queue):
        """Parse socket frames into the event queue until the socket ends."""
        try:
            async for raw in ws:
                self.messages_received += 1
                try:
                    event = parse_stream_message(raw)
                except (ValueError, KeyError, TypeError) as e:
                    logger.debug(f"Skipping malformed frame: {e}")
                    continue
                if event is not None:
                    await queue.put(event)
        except (WebSocketException, OSError) as e:
            await queue.put(StreamConnectionError(f"socket error: {e}"))
            return
        await queue.put(_STREAM_END)

    async def _next_event(self, queue: asyncio.Queue) -> Event:
        item = await queue.get()
        if item is _STREAM_END:
            raise StreamConnectionError("stream closed by peer")
        if isinstance(item, BaseException):
            raise item
        return item

    async def _synchronize(self, queue: asyncio.Queue):
        """
        Seed the store from a snapshot and bridge to the live diff stream.

        Diffs consumed while bridging are kept and replayed against a
        refetched snapshot so nothing queued is lost.
        """
        pending: List[DepthDiff] = []
        attempts = self.config.max_snapshot_refetches + 1

        for attempt in range(1, attempts + 1):
            snapshot = await self.rest_client.get_depth_snapshot(
                self.symbol, self.config.snapshot_limit
            )
            self.snapshot_fetches += 1
            self.store.load_snapshot(snapshot)
            await self._emit_depth()

            try:
                if await self._bridge(queue, pending):
                    return
            except SnapshotOutOfSyncError as e:
                logger.debug(f"{self.symbol} snapshot {attempt}/{attempts} out of sync: {e}")

        raise SequenceGapError(
            f"{self.symbol}: could not bridge snapshot after {attempts} fetches"
        )

    async def _bridge(self, queue: asyncio.Queue, pending: List[DepthDiff]) -> bool:
        store = self.store
        while pending:
            applied = store.apply_diff(pending[0])
            pending.pop(0)
            if applied:
                await self._emit_depth()
                return True

        while True:
            event = await self._next_event(queue)
            if isinstance(event, Trade):
                await self._handle_trade(event)
                continue
            try:
                applied = store.apply_diff(event)
            except SnapshotOutOfSyncError:
                # Snapshot is older than this diff; keep it for the next one
                pending.append(event)
                raise
            if applied:
                await self._emit_depth()
                return True

    async def _handle_event(self, event: Event):
        if isinstance(event, Trade):
            await self._handle_trade(event)
        elif self.store.apply_diff(event):
            await self._emit_depth()

    async def _handle_trade(self, trade: Trade):
        self.store.add_trade(trade)
        await self._emit(self.on_trade, trade)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def _emit_depth(self):
        snapshot = self.store.snapshot
        await self._emit(self.on_depth_update, snapshot.bids, snapshot.asks)

    async def _set_status(self, status: StreamStatus):
        if status == self.status:
            return
        self.status = status
        await self._emit(self.on_status_change, status)

    async def _emit(self, callback: Optional[Callable], *args):
        if callback is None or self._closed:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"{self.symbol} callback {getattr(callback, '__name__', callback)} failed")

    def health(self) -> dict:
        store = self.store
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "synced": bool(store and store.is_synced),
            "last_update_id": store.last_update_id if store else 0,
            "snapshot_fetches": self.snapshot_fetches,
            "resyncs": self.resync_count,
            "reconnects": self.reconnect_count,
            "messages_received": self.messages_received,
            "trades_buffered": len(store.trades) if store else 0,
        }
