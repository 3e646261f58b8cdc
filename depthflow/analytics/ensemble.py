"""
Predictor Ensemble
==================

Combines detector signals with raw book/flow features into a three-way
UP / DOWN / NEUTRAL distribution.

Flow:
1. Build weighted votes in [-1, 1]: book imbalance, top-5 depth ratio,
   L1 volume concentration, net aggressor flow, mid-price inputs once
   enough samples exist (momentum over the lookback, mean reversion
   against the VWAP of recent mids, imbalance damped to 0 when returns
   are volatile), and one vote per detected signal
   (bias sign x severity weight, weighted by signal type)
2. Collapse to a score s = sum(w*v) / sum(w), clamped to [-1, 1]
3. Logits UP = T*s, DOWN = -T*s, NEUTRAL = b*(1 - |s|); softmax
4. Confidence = 100 * (p_top - p_second) ** gamma

Deterministic: the same MarketContext always yields the same result.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import EnsembleConfig
from ..errors import InternalComputationError
from ..storage.orderbook_store import net_flow
from .signal_detectors import DetectedSignal, MarketContext, run_detectors

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    NEUTRAL = "NEUTRAL"

    @property
    def code(self) -> int:
        return DIRECTION_CODES[self]


DIRECTION_CODES = {Direction.UP: 1, Direction.DOWN: -1, Direction.NEUTRAL: 0}

# argmax tie-break preference
TIE_ORDER: Tuple[Direction, ...] = (Direction.NEUTRAL, Direction.UP, Direction.DOWN)

SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local-ensemble"


@dataclass(frozen=True)
class Contribution:
    """One ensemble input: raw value, its vote in [-1, 1] and weight."""
    name: str
    value: float
    vote: float
    weight: float

    def to_dict(self) -> Dict:
        return {"name": self.name, "value": self.value, "vote": self.vote, "weight": self.weight}


@dataclass
class PredictionResult:
    """Directional prediction with its explainable breakdown."""
    direction: Direction
    confidence: float
    probabilities: Dict[str, float]
    model_used: str
    signals: List[DetectedSignal] = field(default_factory=list)
    source: str = SOURCE_LOCAL
    timestamp: int = 0
    symbol: str = ""
    horizon: int = 0
    contributions: List[Contribution] = field(default_factory=list)
    inference_time_ms: float = 0.0

    @property
    def direction_code(self) -> int:
        return self.direction.code

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "horizon": self.horizon,
            "direction": self.direction.value,
            "direction_code": self.direction_code,
            "confidence": self.confidence,
            "probabilities": dict(self.probabilities),
            "model_used": self.model_used,
            "signals": [s.to_dict() for s in self.signals],
            "source": self.source,
            "timestamp": self.timestamp,
            "contributions": [c.to_dict() for c in self.contributions],
            "inference_time_ms": self.inference_time_ms,
        }


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _l1_share(volumes: Sequence[float], total: float) -> float:
    """Best level as a percentage of the side's visible volume."""
    return volumes[0] / total * 100 if total > 0 else 0.0


def softmax(logits: Sequence[float]) -> np.ndarray:
    arr = np.asarray(logits, dtype=float)
    exp = np.exp(arr - arr.max())
    return exp / exp.sum()


def pick_direction(probabilities: Dict[Direction, float]) -> Direction:
    """argmax; exact ties resolve NEUTRAL, then UP, then DOWN."""
    best = TIE_ORDER[0]
    for direction in TIE_ORDER[1:]:
        if probabilities[direction] > probabilities[best]:
            best = direction
    return best


def confidence_from(probabilities: Sequence[float], gamma: float = 1.0) -> float:
    """100 * (top - second) ** gamma, in [0, 100]."""
    ordered = sorted(probabilities, reverse=True)
    margin = max(ordered[0] - ordered[1], 0.0)
    return float(min(100.0, 100.0 * margin ** gamma))


def neutral_result(model_used: str, symbol: str = "", horizon: int = 0,
                   timestamp: Optional[int] = None) -> PredictionResult:
    """Zero-confidence NEUTRAL with a uniform distribution."""
    third = 1.0 / 3.0
    return PredictionResult(
        direction=Direction.NEUTRAL,
        confidence=0.0,
        probabilities={"UP": third, "DOWN": third, "NEUTRAL": third},
        model_used=model_used,
        source=SOURCE_LOCAL,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        symbol=symbol,
        horizon=horizon,
    )


def price_momentum_bps(mids: Sequence[float], lookback: int) -> Optional[float]:
    """Rate of change from lookback samples ago to now, in bps."""
    if len(mids) < lookback:
        return None
    start = mids[-lookback]
    return (mids[-1] - start) / start * 10_000


def vwap_deviation_bps(samples: Sequence[Tuple[float, float]]) -> Optional[float]:
    """Current mid versus the volume-weighted mean mid, in bps."""
    if len(samples) < 3:
        return None
    mids = np.array([mid for mid, _ in samples], dtype=float)
    volumes = np.array([volume if volume > 0 else 1.0 for _, volume in samples], dtype=float)
    vwap = float(np.dot(mids, volumes) / volumes.sum())
    return float((mids[-1] - vwap) / vwap * 10_000)


def volatility_bps(mids: Sequence[float]) -> Optional[float]:
    """Population std of sample-to-sample returns, in bps."""
    if len(mids) < 5:
        return None
    arr = np.asarray(mids, dtype=float)
    returns = np.diff(arr) / arr[:-1]
    return float(np.std(returns) * 10_000)


class PredictorEnsemble:
    """
    Weighted vote ensemble over detector signals and book features.

    Features:
    - Configurable input and per-signal-type weights
    - Severity-scaled signal votes
    - Softmax over a single directional score with a neutral logit
    - Per-input contributions for explainability
    """

    def __init__(self, config: Optional[EnsembleConfig] = None):
        self.config = config or EnsembleConfig()

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def contributions(self, ctx: MarketContext,
                      signals: Sequence[DetectedSignal]) -> List[Contribution]:
        cfg = self.config
        features = ctx.feature_vector
        imbalance_vote = _clamp(features.imbalance / 100)
        out = [Contribution("imbalance", features.imbalance, imbalance_vote, cfg.imbalance_weight)]

        bid_depth, ask_depth = features.top_bid_depth, features.top_ask_depth
        depth_total = bid_depth + ask_depth
        depth_ratio = (bid_depth - ask_depth) / depth_total if depth_total > 0 else 0.0
        out.append(Contribution("depth_ratio_l5", depth_ratio, _clamp(depth_ratio), cfg.depth_weight))

        concentration = _l1_share(features.bid_volumes, features.total_bid_volume) - \
            _l1_share(features.ask_volumes, features.total_ask_volume)
        out.append(Contribution("l1_concentration", concentration,
                                _clamp(concentration / cfg.concentration_scale), cfg.concentration_weight))

        flow = net_flow(ctx.trades, cfg.flow_window_ms, ctx.reference_time)
        out.append(Contribution("net_flow", flow.flow_percent,
                                _clamp(flow.flow_percent / 100), cfg.flow_weight))
        out.extend(self._price_contributions(ctx, imbalance_vote))

        for signal in signals:
            severity_weight = cfg.severity_weights.get(signal.severity.value, 0.0)
            out.append(Contribution(
                f"signal:{signal.type.value}",
                signal.volume or 0.0,
                _clamp(signal.bias.sign * severity_weight),
                cfg.signal_weights.get(signal.type.value, 0.0),
            ))
        return out

    def _price_contributions(self, ctx: MarketContext, imbalance_vote: float) -> List[Contribution]:
        """Mid-price history inputs; each appears once enough samples exist."""
        cfg = self.config
        samples = ctx.price_samples()[-cfg.price_history_length:]
        mids = [mid for mid, _ in samples]
        out = []

        roc = price_momentum_bps(mids, cfg.momentum_lookback)
        if roc is not None:
            out.append(Contribution("price_momentum", roc,
                                    _clamp(roc / cfg.momentum_scale_bps), cfg.momentum_weight))

        deviation = vwap_deviation_bps(samples)
        if deviation is not None:
            # Mean reversion: above VWAP votes down
            out.append(Contribution("vwap_deviation", deviation,
                                    _clamp(-deviation / cfg.vwap_scale_bps), cfg.vwap_weight))

        volatility = volatility_bps(mids)
        if volatility is not None:
            vote = imbalance_vote if volatility <= cfg.volatility_cap_bps else 0.0
            out.append(Contribution("volatility", volatility, vote, cfg.volatility_weight))
        return out

    def score(self, contributions: Sequence[Contribution]) -> float:
        total_weight = sum(c.weight for c in contributions)
        if total_weight <= 0:
            return 0.0
        return _clamp(sum(c.weight * c.vote for c in contributions) / total_weight)

    def probabilities(self, score: float) -> Dict[Direction, float]:
        cfg = self.config
        logits = [
            cfg.temperature * score,
            -cfg.temperature * score,
            cfg.neutral_bias * (1 - abs(score)),
        ]
        probs = softmax(logits)
        if not np.all(np.isfinite(probs)):
            raise InternalComputationError(f"non-finite probabilities for score {score}")
        return {
            Direction.UP: float(probs[0]),
            Direction.DOWN: float(probs[1]),
            Direction.NEUTRAL: float(probs[2]),
        }

    def predict(self, ctx: MarketContext, horizon: int = 10,
                signals: Optional[List[DetectedSignal]] = None,
                timestamp: Optional[int] = None) -> PredictionResult:
        """
        Produce a prediction. Never raises for a well-formed context.

        Args:
            ctx: Market context (book, history, trades, thresholds)
            horizon: Forecast horizon in seconds (metadata only)
            signals: Precomputed detector output; detectors run if None
            timestamp: Result timestamp (ms); defaults to now

        Returns:
            PredictionResult tagged source=local-ensemble
        """
        started = time.perf_counter()
        ts = timestamp if timestamp is not None else int(time.time() * 1000)
        try:
            if signals is None:
                signals = run_detectors(ctx)
            contributions = self.contributions(ctx, signals)
            score = self.score(contributions)
            probs = self.probabilities(score)
        except Exception:
            logger.exception(f"Ensemble failed for {ctx.symbol}; returning neutral")
            return neutral_result(self.model_name, ctx.symbol, horizon, ts)

        direction = pick_direction(probs)
        return PredictionResult(
            direction=direction,
            confidence=round(confidence_from(list(probs.values()), self.config.confidence_gamma), 4),
            probabilities={d.value: p for d, p in probs.items()},
            model_used=self.model_name,
            signals=list(signals),
            source=SOURCE_LOCAL,
            timestamp=ts,
            symbol=ctx.symbol,
            horizon=horizon,
            contributions=contributions,
            inference_time_ms=round((time.perf_counter() - started) * 1000, 3),
        )
