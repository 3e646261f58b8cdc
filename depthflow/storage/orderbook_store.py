"""
Order Book Store
================

Canonical in-memory book for one symbol plus its bounded trade tape.

Single-writer model: only the owning stream client calls load_snapshot /
apply_diff. Every successful mutation publishes a new immutable
OrderBookSnapshot by swapping one reference, so readers (render ticker,
predictor, HTTP routes) see either the previous book or the next one in
full and never take a lock.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List, Optional, Tuple

from sortedcontainers import SortedDict

from ..errors import SequenceGapError, SnapshotOutOfSyncError
from .models import (
    DepthDiff,
    DepthSnapshot,
    DerivedMetrics,
    Level,
    OrderBookSnapshot,
    PriceLevel,
    Trade,
)

logger = logging.getLogger(__name__)

TRADE_TAPE_CAPACITY = 500


def compute_metrics(bids: SortedDict, asks: SortedDict) -> DerivedMetrics:
    """
    Derive microstructure metrics from both sides of the book.

    bids and asks are SortedDicts keyed by price (ascending).
    """
    best_bid = bids.peekitem(-1)[0] if bids else 0.0
    best_ask = asks.peekitem(0)[0] if asks else 0.0
    mid = (best_bid + best_ask) / 2
    spread = best_ask - best_bid
    spread_percent = (spread / mid) * 100 if mid > 0 else 0.0

    total_bid = float(sum(bids.values()))
    total_ask = float(sum(asks.values()))
    total = total_bid + total_ask
    if total > 0:
        imbalance = max(-100.0, min(100.0, (total_bid - total_ask) / total * 100))
    else:
        imbalance = 0.0

    return DerivedMetrics(
        best_bid=best_bid,
        best_ask=best_ask,
        mid_price=mid,
        spread=spread,
        spread_percent=spread_percent,
        total_bid_volume=total_bid,
        total_ask_volume=total_ask,
        imbalance=imbalance,
    )


def _apply_levels(side: SortedDict, levels: Iterable[Level]):
    for price, qty in levels:
        if qty == 0:
            side.pop(price, None)
        else:
            side[price] = qty


class OrderBookStore:
    """
    Authoritative order book for a single symbol.

    Sequencing (Binance diff-depth rules):
    - diffs with u <= lastUpdateId are stale and dropped
    - the first diff after a snapshot must satisfy U <= lastUpdateId+1 <= u
    - every later diff must satisfy U == lastUpdateId+1
    """

    def __init__(self, symbol: str, trade_capacity: int = TRADE_TAPE_CAPACITY):
        self.symbol = symbol.upper()
        self._bids: SortedDict = SortedDict()
        self._asks: SortedDict = SortedDict()
        self._last_update_id = 0
        self._synced = False
        self._has_snapshot = False
        self.trades = TradeTape(trade_capacity)
        self._snapshot = OrderBookSnapshot(symbol=self.symbol)
        # Bumped on every reset so readers can drop derived state
        self.generation = 0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> OrderBookSnapshot:
        """Latest complete, immutable view of the book."""
        return self._snapshot

    @property
    def metrics(self) -> DerivedMetrics:
        return self._snapshot.metrics

    @property
    def last_update_id(self) -> int:
        return self._last_update_id

    @property
    def is_synced(self) -> bool:
        """True once the first diff after the snapshot has been bridged."""
        return self._synced

    @property
    def has_snapshot(self) -> bool:
        return self._has_snapshot

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def reset(self):
        """Drop all book state and the trade tape."""
        self._bids.clear()
        self._asks.clear()
        self._last_update_id = 0
        self._synced = False
        self._has_snapshot = False
        self.trades.clear()
        self._snapshot = OrderBookSnapshot(symbol=self.symbol)
        self.generation += 1

    def load_snapshot(self, snapshot: DepthSnapshot, timestamp: Optional[int] = None) -> OrderBookSnapshot:
        """Replace the book wholesale with a REST snapshot."""
        self._bids.clear()
        self._asks.clear()
        _apply_levels(self._bids, ((p, q) for p, q in snapshot.bids if q > 0))
        _apply_levels(self._asks, ((p, q) for p, q in snapshot.asks if q > 0))
        self._last_update_id = snapshot.last_update_id
        self._synced = False
        self._has_snapshot = True
        return self._publish(timestamp)

    def apply_diff(self, diff: DepthDiff) -> bool:
        """
        Apply one incremental depth update.

        Returns:
            True if applied, False if the diff was stale and dropped

        Raises:
            SnapshotOutOfSyncError: first diff does not bracket lastUpdateId+1
            SequenceGapError: diff does not continue the update-id chain
        """
        if not self._has_snapshot:
            raise SnapshotOutOfSyncError(
                f"{self.symbol}: diff received before snapshot",
                expected=0,
                first_update_id=diff.first_update_id,
                final_update_id=diff.final_update_id,
            )

        if diff.final_update_id <= self._last_update_id:
            return False

        expected = self._last_update_id + 1
        if not self._synced:
            if not (diff.first_update_id <= expected <= diff.final_update_id):
                raise SnapshotOutOfSyncError(
                    f"{self.symbol}: first diff [{diff.first_update_id}, {diff.final_update_id}] "
                    f"does not bracket {expected}",
                    expected=expected,
                    first_update_id=diff.first_update_id,
                    final_update_id=diff.final_update_id,
                )
        elif diff.first_update_id != expected:
            raise SequenceGapError(
                f"{self.symbol}: gap, expected U={expected} got U={diff.first_update_id}",
                expected=expected,
                first_update_id=diff.first_update_id,
                final_update_id=diff.final_update_id,
            )

        _apply_levels(self._bids, diff.bids)
        _apply_levels(self._asks, diff.asks)
        self._last_update_id = diff.final_update_id
        self._synced = True
        self._publish(diff.event_time or None)
        return True

    def add_trade(self, trade: Trade):
        self.trades.append(trade)

    def _publish(self, timestamp: Optional[int]) -> OrderBookSnapshot:
        bids = tuple(PriceLevel(p, q) for p, q in reversed(self._bids.items()))
        asks = tuple(PriceLevel(p, q) for p, q in self._asks.items())
        self._snapshot = OrderBookSnapshot(
            symbol=self.symbol,
            bids=bids,
            asks=asks,
            last_update_id=self._last_update_id,
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
            metrics=compute_metrics(self._bids, self._asks),
        )
        return self._snapshot


@dataclass(frozen=True)
class NetFlow:
    """Aggressor volume split over a trailing window."""
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    trade_count: int = 0

    @property
    def net_volume(self) -> float:
        return self.buy_volume - self.sell_volume

    @property
    def flow_percent(self) -> float:
        """Net flow normalised to [-100, 100]; 0 when no volume."""
        total = self.buy_volume + self.sell_volume
        if total <= 0:
            return 0.0
        return max(-100.0, min(100.0, self.net_volume / total * 100))


class TradeTape:
    """
    Fixed-capacity ring buffer of recent trades, oldest evicted first.
    """

    def __init__(self, capacity: int = TRADE_TAPE_CAPACITY):
        if capacity < 1:
            raise ValueError("trade tape capacity must be >= 1")
        self.capacity = capacity
        self._trades: Deque[Trade] = deque(maxlen=capacity)
        self.appended = 0

    def __len__(self) -> int:
        return len(self._trades)

    def append(self, trade: Trade):
        self._trades.append(trade)
        self.appended += 1

    def clear(self):
        self._trades.clear()

    @property
    def last_trade(self) -> Optional[Trade]:
        return self._trades[-1] if self._trades else None

    @property
    def last_price(self) -> float:
        return self._trades[-1].price if self._trades else 0.0

    @property
    def last_is_buy(self) -> Optional[bool]:
        """Aggressor side of the most recent trade, None if empty."""
        return self._trades[-1].is_buy if self._trades else None

    def snapshot(self) -> Tuple[Trade, ...]:
        """Oldest-first copy safe to hand to readers."""
        return tuple(self._trades)

    def recent(self, n: int) -> List[Trade]:
        """Most recent n trades, newest first."""
        out: List[Trade] = []
        for trade in reversed(self._trades):
            if len(out) >= n:
                break
            out.append(trade)
        return out

    def net_flow(self, window_ms: int, now_ms: Optional[int] = None) -> NetFlow:
        return net_flow(self._trades, window_ms, now_ms)


def net_flow(trades: Iterable[Trade], window_ms: int, now_ms: Optional[int] = None) -> NetFlow:
    """
    Buy vs sell aggressor volume inside [now - window, now].

    now_ms defaults to the newest trade's time so results depend only on
    the data passed in.
    """
    trades = list(trades)
    if not trades:
        return NetFlow()
    reference = now_ms if now_ms is not None else max(t.time for t in trades)
    cutoff = reference - window_ms
    buy = sell = 0.0
    count = 0
    for trade in trades:
        if trade.time < cutoff or trade.time > reference:
            continue
        count += 1
        if trade.is_buyer_maker:
            sell += trade.quantity
        else:
            buy += trade.quantity
    return NetFlow(buy_volume=buy, sell_volume=sell, trade_count=count)
