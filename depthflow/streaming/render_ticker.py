"""
⏱️ Render Ticker
================

Fixed-interval sampler decoupling consumers from feed rate.

Every interval (100 ms by default) the ticker reads the store's latest
immutable book view and trade tape, records the book into a bounded
history used by the history-aware detectors, and pushes one RenderFrame
to each consumer if anything changed. Frame cost is independent of how
many diffs arrived in between.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Tuple

from ..storage.models import MarketState, OrderBookSnapshot, Trade
from ..storage.orderbook_store import OrderBookStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderFrame:
    """One consumer frame: book view plus trade tape at sample time."""
    sequence: int
    symbol: str
    book: OrderBookSnapshot
    trades: Tuple[Trade, ...]

    @property
    def last_trade(self) -> Optional[Trade]:
        return self.trades[-1] if self.trades else None

    def to_dict(self, depth: int = 20, trade_count: int = 50) -> dict:
        return {
            "sequence": self.sequence,
            "book": self.book.to_dict(depth),
            "trades": [t.to_dict() for t in self.trades[-trade_count:]],
        }


class RenderTicker:
    """
    Samples an OrderBookStore on a fixed timer.

    Features:
    - Bounded book history (one entry per distinct lastUpdateId)
    - Sync or async consumers; a failing consumer does not stop the timer
    - Frames only when the book or tape changed since the last frame
    """

    def __init__(self, store_source: Callable[[], Optional[OrderBookStore]],
                 interval: float = 0.1, history_length: int = 100):
        self._store_source = store_source
        self.interval = interval
        self._history: Deque[OrderBookSnapshot] = deque(maxlen=history_length)
        self._consumers: List[Callable] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._sequence = 0
        self._last_book_id: Optional[int] = None
        self._last_trades_appended = 0
        self._store_key: Optional[Tuple[str, int]] = None
        self.last_frame: Optional[RenderFrame] = None
        self.ticks = 0

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def add_consumer(self, consumer: Callable):
        if consumer not in self._consumers:
            self._consumers.append(consumer)

    def remove_consumer(self, consumer: Callable):
        if consumer in self._consumers:
            self._consumers.remove(consumer)

    @property
    def history(self) -> Tuple[OrderBookSnapshot, ...]:
        return tuple(self._history)

    def market_state(self) -> Optional[MarketState]:
        store = self._store_source()
        if store is None or not store.has_snapshot:
            return None
        history = self.history if _store_key(store) == self._store_key else ()
        return MarketState(book=store.snapshot, history=history, trades=store.trades.snapshot())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def reset(self):
        """Forget history and change tracking; the next tick always emits."""
        self._history.clear()
        self._last_book_id = None
        self._last_trades_appended = 0
        self.last_frame = None

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Render tick failed")
            await asyncio.sleep(self.interval)

    async def tick(self) -> Optional[RenderFrame]:
        """Sample once; returns the pushed frame or None if nothing changed."""
        self.ticks += 1
        store = self._store_source()
        if store is None or not store.has_snapshot:
            return None

        key = _store_key(store)
        if key != self._store_key:
            if self._store_key is not None:
                logger.debug(f"{store.symbol} store was reset, dropping render history")
            self.reset()
            self._store_key = key

        book = store.snapshot
        tape = store.trades

        book_changed = book.last_update_id != self._last_book_id
        if book_changed:
            self._history.append(book)
            self._last_book_id = book.last_update_id
        trades_changed = tape.appended != self._last_trades_appended
        self._last_trades_appended = tape.appended

        if not (book_changed or trades_changed):
            return None

        self._sequence += 1
        frame = RenderFrame(
            sequence=self._sequence,
            symbol=store.symbol,
            book=book,
            trades=tape.snapshot(),
        )
        self.last_frame = frame
        for consumer in list(self._consumers):
            try:
                result = consumer(frame)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Render consumer {getattr(consumer, '__name__', consumer)} failed")
        return frame


def _store_key(store: OrderBookStore) -> Tuple[str, int]:
    return store.symbol, store.generation
