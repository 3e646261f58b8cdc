"""
Market Data Models
==================

Value objects shared by the stream client, the order book store and the
analytics layer. Everything here is immutable once built: the store
publishes a fresh OrderBookSnapshot per applied update and readers keep
whatever reference they were handed.

Exchange payloads (Binance spot):
- REST depth:   {"lastUpdateId": 100, "bids": [["50000.0", "1.5"]], "asks": [...]}
- Diff depth:   {"e": "depthUpdate", "E": 1700000000000, "s": "BTCUSDT",
                 "U": 101, "u": 101, "b": [[p, q]], "a": [[p, q]]}
- Trade:        {"e": "trade", "p": "50001.0", "q": "0.02", "T": 1700000000000, "m": true}
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple


Level = Tuple[float, float]


class StreamStatus(str, Enum):
    """Connection state reported through on_status_change."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


def parse_levels(raw: Optional[Iterable[Sequence[Any]]]) -> Tuple[Level, ...]:
    """Convert [[price, qty], ...] (strings or numbers) into float tuples."""
    if not raw:
        return ()
    return tuple((float(price), float(qty)) for price, qty, *_ in raw)


@dataclass(frozen=True)
class PriceLevel:
    """A single resting (price, quantity) level."""
    price: float
    quantity: float

    def to_list(self) -> List[float]:
        return [self.price, self.quantity]


@dataclass(frozen=True)
class Trade:
    """Executed trade from the tape."""
    price: float
    quantity: float
    time: int  # exchange trade time, ms
    is_buyer_maker: bool

    @property
    def is_buy(self) -> bool:
        """Aggressor was the buyer (lifted the ask)."""
        return not self.is_buyer_maker

    @property
    def side(self) -> str:
        return "buy" if self.is_buy else "sell"

    @classmethod
    def from_binance(cls, payload: Dict[str, Any]) -> "Trade":
        return cls(
            price=float(payload["p"]),
            quantity=float(payload["q"]),
            time=int(payload.get("T") or payload.get("E") or 0),
            is_buyer_maker=bool(payload.get("m", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "quantity": self.quantity,
            "time": self.time,
            "isBuyerMaker": self.is_buyer_maker,
        }


@dataclass(frozen=True)
class DepthSnapshot:
    """REST depth snapshot used to (re)seed a book."""
    last_update_id: int
    bids: Tuple[Level, ...]
    asks: Tuple[Level, ...]

    @classmethod
    def from_binance(cls, payload: Dict[str, Any]) -> "DepthSnapshot":
        return cls(
            last_update_id=int(payload["lastUpdateId"]),
            bids=parse_levels(payload.get("bids")),
            asks=parse_levels(payload.get("asks")),
        )


@dataclass(frozen=True)
class DepthDiff:
    """Incremental depth update carrying the [U, u] update-id range."""
    first_update_id: int
    final_update_id: int
    bids: Tuple[Level, ...] = ()
    asks: Tuple[Level, ...] = ()
    symbol: str = ""
    event_time: int = 0

    @classmethod
    def from_binance(cls, payload: Dict[str, Any]) -> "DepthDiff":
        return cls(
            first_update_id=int(payload["U"]),
            final_update_id=int(payload["u"]),
            bids=parse_levels(payload.get("b", payload.get("bids"))),
            asks=parse_levels(payload.get("a", payload.get("asks"))),
            symbol=str(payload.get("s", "")).upper(),
            event_time=int(payload.get("E", 0)),
        )


@dataclass(frozen=True)
class DerivedMetrics:
    """Microstructure metrics recomputed on every book mutation."""
    best_bid: float = 0.0
    best_ask: float = 0.0
    mid_price: float = 0.0
    spread: float = 0.0
    spread_percent: float = 0.0
    total_bid_volume: float = 0.0
    total_ask_volume: float = 0.0
    imbalance: float = 0.0  # -100 (all asks) .. +100 (all bids)

    def to_dict(self) -> Dict[str, float]:
        return {
            "bestBid": self.best_bid,
            "bestAsk": self.best_ask,
            "midPrice": self.mid_price,
            "spread": self.spread,
            "spreadPercent": self.spread_percent,
            "totalBidVolume": self.total_bid_volume,
            "totalAskVolume": self.total_ask_volume,
            "imbalance": self.imbalance,
        }


@dataclass(frozen=True)
class OrderBookSnapshot:
    """
    Immutable view of one symbol's book after a complete update.

    bids are ordered by price descending, asks ascending.
    """
    symbol: str
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()
    last_update_id: int = 0
    timestamp: int = 0  # ms
    metrics: DerivedMetrics = field(default_factory=DerivedMetrics)

    def top_bids(self, n: int) -> Tuple[PriceLevel, ...]:
        return self.bids[:n]

    def top_asks(self, n: int) -> Tuple[PriceLevel, ...]:
        return self.asks[:n]

    def bid_quantity(self, price: float) -> float:
        for level in self.bids:
            if level.price == price:
                return level.quantity
            if level.price < price:
                break
        return 0.0

    def ask_quantity(self, price: float) -> float:
        for level in self.asks:
            if level.price == price:
                return level.quantity
            if level.price > price:
                break
        return 0.0

    def to_dict(self, depth: Optional[int] = None) -> Dict[str, Any]:
        bids = self.bids if depth is None else self.bids[:depth]
        asks = self.asks if depth is None else self.asks[:depth]
        return {
            "symbol": self.symbol,
            "lastUpdateId": self.last_update_id,
            "timestamp": self.timestamp,
            "bids": [level.to_list() for level in bids],
            "asks": [level.to_list() for level in asks],
            "metrics": self.metrics.to_dict(),
        }


@dataclass(frozen=True)
class MarketState:
    """Live book, recent book history (oldest first) and trade tape for one symbol."""
    book: OrderBookSnapshot
    history: Tuple[OrderBookSnapshot, ...] = ()
    trades: Tuple[Trade, ...] = ()
