"""
Order Book Feature Extractor
============================

Pure transform from (top-N levels, DerivedMetrics) to the fixed feature
vector shared by the local ensemble and the remote model.

Feature schema (remote payload keys):
- mid_price, spread, spread_bps
- total_bid_volume, total_ask_volume, bid_ask_imbalance
- bid_volume_l1..l5, ask_volume_l1..l5 (zero-filled)
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from ..errors import ValidationError
from ..storage.models import DerivedMetrics, OrderBookSnapshot, PriceLevel

FEATURE_LEVELS = 5

# Accepted aliases for incoming payloads (camelCase UI shape and snake_case)
_ALIASES = {
    "mid_price": ("mid_price", "midPrice", "mid"),
    "spread": ("spread",),
    "spread_bps": ("spread_bps", "spreadBps"),
    "total_bid_volume": ("total_bid_volume", "totalBidVolume"),
    "total_ask_volume": ("total_ask_volume", "totalAskVolume"),
    "imbalance": ("bid_ask_imbalance", "imbalance"),
}


@dataclass(frozen=True)
class FeatureVector:
    """Fixed-shape order book features."""
    mid_price: float = 0.0
    spread: float = 0.0
    spread_bps: float = 0.0
    total_bid_volume: float = 0.0
    total_ask_volume: float = 0.0
    imbalance: float = 0.0
    bid_volumes: Tuple[float, ...] = field(default=(0.0,) * FEATURE_LEVELS)
    ask_volumes: Tuple[float, ...] = field(default=(0.0,) * FEATURE_LEVELS)

    @property
    def top_bid_depth(self) -> float:
        return sum(self.bid_volumes)

    @property
    def top_ask_depth(self) -> float:
        return sum(self.ask_volumes)

    def to_dict(self) -> Dict[str, float]:
        out = {
            "mid_price": self.mid_price,
            "spread": self.spread,
            "spread_bps": self.spread_bps,
            "total_bid_volume": self.total_bid_volume,
            "total_ask_volume": self.total_ask_volume,
            "bid_ask_imbalance": self.imbalance,
        }
        for i in range(FEATURE_LEVELS):
            out[f"bid_volume_l{i + 1}"] = self.bid_volumes[i]
            out[f"ask_volume_l{i + 1}"] = self.ask_volumes[i]
        return out

    def to_array(self) -> Tuple[float, ...]:
        return tuple(self.to_dict().values())

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FeatureVector":
        """
        Build a FeatureVector from a caller-supplied mapping.

        Accepts the flat remote schema, camelCase metrics, or bids/asks
        level lists ([[price, qty], ...]) in place of per-level volumes.

        Raises:
            ValidationError: payload is not a mapping, lacks a mid price,
                             or carries non-numeric values
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("orderbook features must be an object")

        values: Dict[str, float] = {}
        for name, keys in _ALIASES.items():
            for key in keys:
                if key in payload and payload[key] is not None:
                    values[name] = _number(payload[key], key)
                    break

        bids = _level_volumes(payload, "bid")
        asks = _level_volumes(payload, "ask")

        mid = values.get("mid_price")
        if mid is None:
            best_bid = _number(payload.get("bestBid", payload.get("best_bid", 0)), "best_bid")
            best_ask = _number(payload.get("bestAsk", payload.get("best_ask", 0)), "best_ask")
            if best_bid > 0 and best_ask > 0:
                mid = (best_bid + best_ask) / 2
                values.setdefault("spread", best_ask - best_bid)
        if mid is None or mid <= 0:
            raise ValidationError("orderbook features require a positive mid_price")

        spread = values.get("spread", 0.0)
        if "spread_bps" not in values and payload.get("spreadPercent") is not None:
            values["spread_bps"] = _number(payload["spreadPercent"], "spreadPercent") * 100
        total_bid = values.get("total_bid_volume", sum(bids))
        total_ask = values.get("total_ask_volume", sum(asks))
        imbalance = values.get("imbalance")
        if imbalance is None:
            imbalance = _imbalance(total_bid, total_ask)

        return cls(
            mid_price=mid,
            spread=spread,
            spread_bps=values.get("spread_bps", spread / mid * 10_000),
            total_bid_volume=total_bid,
            total_ask_volume=total_ask,
            imbalance=max(-100.0, min(100.0, imbalance)),
            bid_volumes=bids,
            ask_volumes=asks,
        )


def _number(value: Any, key: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"feature '{key}' must be numeric, got {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"feature '{key}' must be finite")
    return number


def _level_volumes(payload: Mapping[str, Any], side: str) -> Tuple[float, ...]:
    flat = [payload.get(f"{side}_volume_l{i + 1}") for i in range(FEATURE_LEVELS)]
    if any(v is not None for v in flat):
        return tuple(_number(v or 0, f"{side}_volume_l{i + 1}") for i, v in enumerate(flat))

    levels = parse_payload_levels(payload.get(f"{side}s"), f"{side}s")
    return _pad([qty for _, qty in levels[:FEATURE_LEVELS]])


def parse_payload_levels(levels: Any, name: str = "levels") -> List[Tuple[float, float]]:
    """
    Accept [[price, qty], ...] or [{"price": p, "volume"|"quantity": q}, ...].

    Raises:
        ValidationError: entries are not price/quantity pairs
    """
    if not levels:
        return []
    out = []
    try:
        for level in levels:
            if isinstance(level, Mapping):
                qty = level.get("quantity", level.get("volume", level.get("qty")))
                out.append((float(level["price"]), float(qty)))
            else:
                out.append((float(level[0]), float(level[1])))
    except (TypeError, ValueError, IndexError, KeyError):
        raise ValidationError(f"{name} must be a list of [price, quantity]")
    return out


def _pad(volumes: Sequence[float]) -> Tuple[float, ...]:
    volumes = list(volumes)[:FEATURE_LEVELS]
    return tuple(volumes) + (0.0,) * (FEATURE_LEVELS - len(volumes))


def _imbalance(total_bid: float, total_ask: float) -> float:
    total = total_bid + total_ask
    if total <= 0:
        return 0.0
    return (total_bid - total_ask) / total * 100


def extract_features(
    top_bids: Sequence[PriceLevel],
    top_asks: Sequence[PriceLevel],
    metrics: DerivedMetrics,
) -> FeatureVector:
    """
    Build the feature vector from the top of book and derived metrics.

    Args:
        top_bids: Best bids first (descending price)
        top_asks: Best asks first (ascending price)
        metrics: Metrics computed from the same book application

    Returns:
        FeatureVector with level volumes zero-filled to 5 per side
    """
    mid = metrics.mid_price
    spread_bps = metrics.spread / mid * 10_000 if mid > 0 else 0.0
    return FeatureVector(
        mid_price=mid,
        spread=metrics.spread,
        spread_bps=spread_bps,
        total_bid_volume=metrics.total_bid_volume,
        total_ask_volume=metrics.total_ask_volume,
        imbalance=metrics.imbalance,
        bid_volumes=_pad([level.quantity for level in top_bids]),
        ask_volumes=_pad([level.quantity for level in top_asks]),
    )


def features_from_snapshot(snapshot: OrderBookSnapshot) -> FeatureVector:
    return extract_features(
        snapshot.top_bids(FEATURE_LEVELS),
        snapshot.top_asks(FEATURE_LEVELS),
        snapshot.metrics,
    )
