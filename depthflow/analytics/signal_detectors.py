"""
🔎 Order Book Signal Detectors
==============================

Independent heuristics over recent book state and the trade tape.

Detectors:
- WHALE_BUY / WHALE_SELL: single resting level above the instrument's whale size
- SUPPORT / RESISTANCE: liquidity walls and persistent heavy levels near mid
- ABSORPTION: repeated trading into a level that does not deplete
- ICEBERG: a level that refills after being traded against
- SPOOFING: large resting size pulled without matching trades
- MOMENTUM: a run of same-side aggressor trades

Every detector is a pure function of a MarketContext. Time windows are
measured back from the newest timestamp in the data, never the wall clock,
so the same context always yields the same signals.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import DetectorThresholds
from ..features.feature_extractor import FeatureVector, features_from_snapshot
from ..storage.models import OrderBookSnapshot, PriceLevel, Trade
from ..storage.orderbook_store import net_flow

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS & TYPES
# =============================================================================

class SignalType(str, Enum):
    WHALE_BUY = "WHALE_BUY"
    WHALE_SELL = "WHALE_SELL"
    ABSORPTION = "ABSORPTION"
    ICEBERG = "ICEBERG"
    SPOOFING = "SPOOFING"
    MOMENTUM = "MOMENTUM"
    SUPPORT = "SUPPORT"
    RESISTANCE = "RESISTANCE"


class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.HIGH: 3, Severity.MEDIUM: 2, Severity.LOW: 1}


class SignalDirection(Enum):
    """Signal directional bias."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"

    @property
    def sign(self) -> int:
        if self is SignalDirection.BULLISH:
            return 1
        if self is SignalDirection.BEARISH:
            return -1
        return 0


@dataclass(frozen=True)
class DetectedSignal:
    """A single detector finding; produced fresh per evaluation."""
    type: SignalType
    severity: Severity
    description: str
    price: Optional[float] = None
    volume: Optional[float] = None
    bias: SignalDirection = SignalDirection.NEUTRAL

    def to_dict(self) -> Dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "price": self.price,
            "volume": self.volume,
            "description": self.description,
            "bias": self.bias.value,
        }


@dataclass(frozen=True)
class MarketContext:
    """
    Everything a detector may look at.

    history holds earlier book views oldest first; it may be empty when
    only a single snapshot is available (e.g. a request carrying features).
    price_history holds earlier (mid, visible volume) samples for callers
    that have no book history; it takes precedence over history.
    """
    symbol: str
    book: OrderBookSnapshot
    thresholds: DetectorThresholds = field(default_factory=DetectorThresholds)
    history: Tuple[OrderBookSnapshot, ...] = ()
    trades: Tuple[Trade, ...] = ()
    features: Optional[FeatureVector] = None
    price_history: Tuple[Tuple[float, float], ...] = ()

    @property
    def feature_vector(self) -> FeatureVector:
        return self.features if self.features is not None else features_from_snapshot(self.book)

    @property
    def reference_time(self) -> int:
        """Newest timestamp present in the data (ms)."""
        latest = self.book.timestamp
        if self.trades:
            latest = max(latest, max(t.time for t in self.trades))
        return latest

    def trades_since(self, window_ms: int) -> List[Trade]:
        cutoff = self.reference_time - window_ms
        return [t for t in self.trades if t.time >= cutoff]

    def books_since(self, window_ms: int) -> List[OrderBookSnapshot]:
        """History within the window plus the current book, oldest first."""
        cutoff = self.reference_time - window_ms
        books = [b for b in self.history if b.timestamp >= cutoff and b is not self.book]
        books.append(self.book)
        return books

    def price_samples(self) -> List[Tuple[float, float]]:
        """(mid, visible volume) oldest first, ending with the current view."""
        if self.price_history:
            samples = list(self.price_history)
        else:
            samples = [
                (b.metrics.mid_price, b.metrics.total_bid_volume + b.metrics.total_ask_volume)
                for b in self.history if b is not self.book
            ]
        current = self.feature_vector
        samples.append((current.mid_price, current.total_bid_volume + current.total_ask_volume))
        return [(mid, volume) for mid, volume in samples if mid > 0]


def _side_levels(book: OrderBookSnapshot, side: str, depth: int) -> Tuple[PriceLevel, ...]:
    return book.top_bids(depth) if side == "bid" else book.top_asks(depth)


def _quantity(book: OrderBookSnapshot, side: str, price: float) -> float:
    return book.bid_quantity(price) if side == "bid" else book.ask_quantity(price)


def _average(levels: Iterable[PriceLevel]) -> float:
    quantities = [level.quantity for level in levels]
    return sum(quantities) / len(quantities) if quantities else 0.0


def _traded_at(trades: Iterable[Trade], price: float, start: int, end: int) -> float:
    return sum(t.quantity for t in trades if t.price == price and start <= t.time <= end)


_SIDE_BIAS = {"bid": SignalDirection.BULLISH, "ask": SignalDirection.BEARISH}


# =============================================================================
# DETECTORS
# =============================================================================

def detect_whales(ctx: MarketContext) -> List[DetectedSignal]:
    """Resting levels above the per-instrument whale threshold."""
    th = ctx.thresholds
    signals = []
    for side, signal_type in (("bid", SignalType.WHALE_BUY), ("ask", SignalType.WHALE_SELL)):
        for level in _side_levels(ctx.book, side, th.whale_scan_depth):
            if level.quantity <= th.whale_threshold:
                continue
            severity = (
                Severity.HIGH
                if level.quantity > th.whale_threshold * th.whale_high_multiple
                else Severity.MEDIUM
            )
            signals.append(DetectedSignal(
                type=signal_type,
                severity=severity,
                price=level.price,
                volume=level.quantity,
                description=f"Whale {side} {level.quantity:g} @ {level.price:g}",
                bias=_SIDE_BIAS[side],
            ))
    return signals


def detect_liquidity_walls(ctx: MarketContext) -> List[DetectedSignal]:
    """
    Levels far above the side's average visible size.

    Bid walls read as support, ask walls as resistance. Strength is
    qty / (avg * multiplier * 2); a full-strength wall is HIGH.
    """
    th = ctx.thresholds
    signals = []
    for side, signal_type in (("bid", SignalType.SUPPORT), ("ask", SignalType.RESISTANCE)):
        levels = _side_levels(ctx.book, side, th.whale_scan_depth)
        if len(levels) < 2:
            continue
        avg = _average(levels)
        walls = [l for l in levels if l.quantity > avg * th.wall_multiplier]
        walls.sort(key=lambda l: l.quantity, reverse=True)
        for level in walls[:th.wall_top_n]:
            strength = min(level.quantity / (avg * th.wall_multiplier * 2), 1.0)
            signals.append(DetectedSignal(
                type=signal_type,
                severity=Severity.HIGH if strength >= 1.0 else Severity.MEDIUM,
                price=level.price,
                volume=level.quantity,
                description=(
                    f"Liquidity wall {level.quantity:g} @ {level.price:g} "
                    f"({level.quantity / avg:.1f}x avg)"
                ),
                bias=_SIDE_BIAS[side],
            ))
    return signals


def detect_absorption(ctx: MarketContext) -> List[DetectedSignal]:
    """
    Aggressive trades hitting a level that keeps its size.

    Sell aggressors into a bid (or buy aggressors into an ask) totalling V,
    while the level's resting size drops by less than
    absorption_max_depletion * V between the start of the window and now.
    """
    th = ctx.thresholds
    books = ctx.books_since(th.absorption_window_ms)
    if len(books) < 2:
        return []
    start_book, end_book = books[0], books[-1]
    window_trades = [t for t in ctx.trades_since(th.absorption_window_ms) if t.time >= start_book.timestamp]

    grouped: Dict[Tuple[str, float], List[Trade]] = defaultdict(list)
    for trade in window_trades:
        side = "ask" if trade.is_buy else "bid"
        grouped[(side, trade.price)].append(trade)

    signals = []
    for (side, price), trades in grouped.items():
        if len(trades) < th.absorption_min_trades:
            continue
        resting_start = _quantity(start_book, side, price)
        resting_end = _quantity(end_book, side, price)
        if resting_start <= 0 or resting_end <= 0:
            continue
        traded = sum(t.quantity for t in trades)
        depletion = max(resting_start - resting_end, 0.0)
        if depletion >= th.absorption_max_depletion * traded:
            continue
        signals.append(DetectedSignal(
            type=SignalType.ABSORPTION,
            severity=Severity.HIGH if traded >= resting_start else Severity.MEDIUM,
            price=price,
            volume=traded,
            description=(
                f"{'Bid' if side == 'bid' else 'Ask'} absorbed {traded:g} over "
                f"{len(trades)} trades @ {price:g}, resting {resting_start:g} -> {resting_end:g}"
            ),
            bias=_SIDE_BIAS[side],
        ))
    return signals


def detect_icebergs(ctx: MarketContext) -> List[DetectedSignal]:
    """
    Levels that refill after being traded down.

    A refill is a drop of at least iceberg_min_drop (fraction) with trades
    at that price, followed by recovery to iceberg_refill_similarity of the
    pre-drop size. Without book history, a run of equal-sized trades is
    reported as a LOW-severity iceberg.
    """
    th = ctx.thresholds
    books = ctx.books_since(th.iceberg_window_ms)
    signals = []

    if len(books) >= 3:
        for side in ("bid", "ask"):
            prices = {l.price for b in books for l in _side_levels(b, side, th.whale_scan_depth)}
            for price in prices:
                refills, refill_volume = _count_refills(books, side, price, ctx.trades, th)
                if refills < th.iceberg_min_refills:
                    continue
                severity = Severity.HIGH if refills >= 2 * th.iceberg_min_refills + 1 else Severity.MEDIUM
                signals.append(DetectedSignal(
                    type=SignalType.ICEBERG,
                    severity=severity,
                    price=price,
                    volume=refill_volume,
                    description=f"{side.capitalize()} iceberg @ {price:g} refilled {refills}x",
                    bias=_SIDE_BIAS[side],
                ))

    if not signals:
        signals.extend(_repeated_size_icebergs(ctx))
    return signals


def _count_refills(books: List[OrderBookSnapshot], side: str, price: float,
                   trades: Tuple[Trade, ...], th: DetectorThresholds) -> Tuple[int, float]:
    refills = 0
    volume = 0.0
    peak = _quantity(books[0], side, price)
    dipped_at: Optional[int] = None
    prev = books[0]
    for book in books[1:]:
        qty = _quantity(book, side, price)
        if dipped_at is None:
            if peak > 0 and qty <= peak * (1 - th.iceberg_min_drop):
                if _traded_at(trades, price, prev.timestamp, book.timestamp) > 0:
                    dipped_at = book.timestamp
            else:
                peak = max(peak, qty)
        elif qty >= peak * th.iceberg_refill_similarity:
            refills += 1
            volume += qty
            dipped_at = None
            peak = qty
        prev = book
    return refills, volume


def _repeated_size_icebergs(ctx: MarketContext) -> List[DetectedSignal]:
    th = ctx.thresholds
    counts: Dict[float, int] = defaultdict(int)
    for trade in ctx.trades_since(th.iceberg_window_ms):
        size = round(trade.quantity, 1)
        if size > 0:
            counts[size] += 1
    signals = []
    for size, count in sorted(counts.items()):
        if count >= th.iceberg_repeat_trades:
            signals.append(DetectedSignal(
                type=SignalType.ICEBERG,
                severity=Severity.LOW,
                volume=size * count,
                description=f"Repeated fills of {size:g} x{count} within {th.iceberg_window_ms // 1000}s",
            ))
    return signals


def detect_spoofing(ctx: MarketContext) -> List[DetectedSignal]:
    """
    Large resting size withdrawn without matching trades.

    A level counts as large when it exceeds the whale threshold or the
    wall multiplier times the side average. Pulled bids read bearish
    (fake support), pulled asks bullish.
    """
    th = ctx.thresholds
    books = ctx.books_since(th.spoof_window_ms)
    if len(books) < 2:
        return []
    current = books[-1]

    signals = []
    for side in ("bid", "ask"):
        peaks: Dict[float, Tuple[float, int]] = {}
        for book in books[:-1]:
            levels = _side_levels(book, side, th.whale_scan_depth)
            avg = _average(levels)
            for level in levels:
                large = level.quantity > th.whale_threshold or (
                    len(levels) > 1 and level.quantity > avg * th.wall_multiplier
                )
                if large and level.quantity > peaks.get(level.price, (0.0, 0))[0]:
                    peaks[level.price] = (level.quantity, book.timestamp)

        for price, (peak_qty, seen_at) in peaks.items():
            remaining = _quantity(current, side, price)
            withdrawn = peak_qty - remaining
            if withdrawn < peak_qty * th.spoof_withdraw_ratio:
                continue
            traded = _traded_at(ctx.trades, price, seen_at, current.timestamp)
            if traded > withdrawn * th.spoof_trade_tolerance:
                continue
            severity = (
                Severity.HIGH
                if peak_qty > th.whale_threshold * th.whale_high_multiple
                else Severity.MEDIUM
            )
            signals.append(DetectedSignal(
                type=SignalType.SPOOFING,
                severity=severity,
                price=price,
                volume=withdrawn,
                description=f"{side.capitalize()} {peak_qty:g} @ {price:g} pulled without fills",
                bias=SignalDirection.BEARISH if side == "bid" else SignalDirection.BULLISH,
            ))
    return signals


def detect_momentum(ctx: MarketContext) -> List[DetectedSignal]:
    """Trailing run of same-side aggressor trades within the window."""
    th = ctx.thresholds
    trades = ctx.trades_since(th.momentum_window_ms)
    if not trades:
        return []

    last = trades[-1]
    run = 0
    run_volume = 0.0
    for trade in reversed(trades):
        if trade.is_buy != last.is_buy:
            break
        run += 1
        run_volume += trade.quantity

    bias = SignalDirection.BULLISH if last.is_buy else SignalDirection.BEARISH
    if run >= th.momentum_min_run:
        return [DetectedSignal(
            type=SignalType.MOMENTUM,
            severity=Severity.HIGH if run >= 2 * th.momentum_min_run else Severity.MEDIUM,
            price=last.price,
            volume=run_volume,
            description=f"{run} consecutive {last.side} trades ({run_volume:g})",
            bias=bias,
        )]

    flow = net_flow(trades, th.momentum_window_ms, ctx.reference_time)
    if flow.trade_count >= th.momentum_min_run and abs(flow.flow_percent) >= th.momentum_flow_threshold:
        return [DetectedSignal(
            type=SignalType.MOMENTUM,
            severity=Severity.LOW,
            price=last.price,
            volume=abs(flow.net_volume),
            description=f"Net order flow {flow.flow_percent:+.0f}% over {flow.trade_count} trades",
            bias=SignalDirection.BULLISH if flow.flow_percent > 0 else SignalDirection.BEARISH,
        )]
    return []


def detect_support_resistance(ctx: MarketContext) -> List[DetectedSignal]:
    """Heavy levels near mid that persist across the recent book history."""
    th = ctx.thresholds
    books = list(ctx.history[-50:])
    if not books or books[-1] is not ctx.book:
        books.append(ctx.book)
    mid = ctx.book.metrics.mid_price
    if mid <= 0:
        return []

    signals = []
    for side, signal_type in (("bid", SignalType.SUPPORT), ("ask", SignalType.RESISTANCE)):
        heavy_counts: Dict[float, int] = defaultdict(int)
        for book in books:
            book_mid = book.metrics.mid_price or mid
            band = book_mid * th.sr_band_bps / 10_000
            levels = _side_levels(book, side, th.whale_scan_depth)
            avg = _average(levels)
            for level in levels:
                if abs(level.price - book_mid) <= band and level.quantity >= avg * th.sr_volume_ratio:
                    heavy_counts[level.price] += 1

        current_levels = _side_levels(ctx.book, side, th.whale_scan_depth)
        current_avg = _average(current_levels)
        for price, count in heavy_counts.items():
            persistence = count / len(books)
            qty = _quantity(ctx.book, side, price)
            if persistence < th.sr_persistence or qty <= 0:
                continue
            if abs(price - mid) > mid * th.sr_band_bps / 10_000:
                continue
            strong = current_avg > 0 and qty >= current_avg * th.sr_volume_ratio * 2
            signals.append(DetectedSignal(
                type=signal_type,
                severity=Severity.HIGH if strong else Severity.MEDIUM,
                price=price,
                volume=qty,
                description=(
                    f"{'Support' if side == 'bid' else 'Resistance'} @ {price:g} "
                    f"held in {persistence:.0%} of recent books"
                ),
                bias=_SIDE_BIAS[side],
            ))
    return signals


# =============================================================================
# RUNNER
# =============================================================================

DETECTORS: Tuple[Callable[[MarketContext], List[DetectedSignal]], ...] = (
    detect_whales,
    detect_liquidity_walls,
    detect_absorption,
    detect_icebergs,
    detect_spoofing,
    detect_momentum,
    detect_support_resistance,
)

_TYPE_ORDER = {t: i for i, t in enumerate(SignalType)}


def sort_signals(signals: Iterable[DetectedSignal]) -> List[DetectedSignal]:
    """Order by severity (HIGH first), then type, then price."""
    return sorted(
        signals,
        key=lambda s: (-s.severity.rank, _TYPE_ORDER[s.type], s.price if s.price is not None else 0.0),
    )


def run_detectors(ctx: MarketContext) -> List[DetectedSignal]:
    """
    Run every detector and merge duplicates.

    Signals of the same type at the same price (e.g. a wall that is also a
    persistent support) collapse into the most severe one.
    """
    merged: Dict[Tuple[SignalType, Optional[float]], DetectedSignal] = {}
    for detector in DETECTORS:
        for signal in detector(ctx):
            key = (signal.type, signal.price)
            existing = merged.get(key)
            if existing is None or signal.severity.rank > existing.severity.rank:
                merged[key] = signal
    return sort_signals(merged.values())
