"""
Prediction accuracy tracking.

Predictions are saved with the price at prediction time and verified
later against the realised price. A move within +/-1 bp counts as
NEUTRAL. Only the most recent 100 verified records are kept; unverified
predictions are capped too, the oldest is dropped when the cap is hit.
"""

import itertools
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from ..errors import ValidationError

logger = logging.getLogger(__name__)

NEUTRAL_BAND_BPS = 1.0
MAX_RECORDS = 100
MAX_PENDING = 1000
RECENT_WINDOW = 20

_DIRECTION_NAMES = {1: "up", -1: "down", 0: "neutral"}


def actual_direction(initial_price: float, actual_price: float,
                     band_bps: float = NEUTRAL_BAND_BPS) -> int:
    """Realised direction code: 1 up, -1 down, 0 inside the neutral band."""
    change_bps = (actual_price - initial_price) / initial_price * 10_000
    if change_bps > band_bps:
        return 1
    if change_bps < -band_bps:
        return -1
    return 0


@dataclass
class TrackedPrediction:
    id: int
    symbol: str
    horizon: int
    direction: str
    direction_code: int
    confidence: float
    model_used: str
    initial_price: float
    created_at: int
    actual_price: Optional[float] = None
    actual_direction: Optional[int] = None
    is_correct: Optional[bool] = None
    verified_at: Optional[int] = None

    def to_dict(self) -> Dict:
        return dict(self.__dict__)


class AccuracyTracker:
    """In-memory save/verify store with rolling accuracy stats."""

    def __init__(self, max_records: int = MAX_RECORDS, band_bps: float = NEUTRAL_BAND_BPS,
                 max_pending: int = MAX_PENDING):
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        self.band_bps = band_bps
        self.max_pending = max_pending
        self.evicted = 0
        self._ids = itertools.count(1)
        self._pending: "OrderedDict[int, TrackedPrediction]" = OrderedDict()
        self._records: Deque[TrackedPrediction] = deque(maxlen=max_records)

    def save(self, prediction: Dict) -> int:
        """
        Track a prediction.

        Args:
            prediction: Needs symbol, direction_code and initial_price; may
                        carry horizon, direction, confidence, model_used

        Returns:
            Tracking id used for verify()
        """
        try:
            code = int(prediction["direction_code"])
            initial_price = float(prediction["initial_price"])
            symbol = str(prediction["symbol"]).upper()
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"prediction requires symbol, direction_code, initial_price: {e}")
        if code not in _DIRECTION_NAMES:
            raise ValidationError(f"direction_code must be -1, 0 or 1, got {code}")
        if initial_price <= 0:
            raise ValidationError("initial_price must be positive")

        record = TrackedPrediction(
            id=next(self._ids),
            symbol=symbol,
            horizon=int(prediction.get("horizon") or 0),
            direction=str(prediction.get("direction") or _DIRECTION_NAMES[code].upper()),
            direction_code=code,
            confidence=float(prediction.get("confidence") or 0.0),
            model_used=str(prediction.get("model_used") or "unknown"),
            initial_price=initial_price,
            created_at=int(time.time() * 1000),
        )
        self._pending[record.id] = record
        while len(self._pending) > self.max_pending:
            dropped, _ = self._pending.popitem(last=False)
            self.evicted += 1
            logger.debug(f"Dropped unverified prediction {dropped}: pending cap {self.max_pending}")
        return record.id

    def verify(self, prediction_id: int, actual_price: float) -> bool:
        """Resolve a pending prediction; False if the id is unknown."""
        record = self._pending.pop(prediction_id, None)
        if record is None:
            return False
        if actual_price <= 0:
            self._pending[prediction_id] = record
            raise ValidationError("actual_price must be positive")

        record.actual_price = actual_price
        record.actual_direction = actual_direction(record.initial_price, actual_price, self.band_bps)
        record.is_correct = record.direction_code == record.actual_direction
        record.verified_at = int(time.time() * 1000)
        self._records.appendleft(record)
        logger.debug(
            f"Verified prediction {prediction_id} {record.symbol}: "
            f"{record.direction_code} vs {record.actual_direction}"
        )
        return True

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def recent(self, symbol: Optional[str] = None, limit: int = RECENT_WINDOW) -> List[Dict]:
        records = self._filtered(symbol)
        return [r.to_dict() for r in records[:limit]]

    def stats(self, symbol: Optional[str] = None) -> Dict:
        records = self._filtered(symbol)
        total = len(records)
        correct = sum(1 for r in records if r.is_correct)

        by_direction = {}
        for code, name in _DIRECTION_NAMES.items():
            subset = [r for r in records if r.direction_code == code]
            by_direction[name] = _bucket(subset)

        by_model: Dict[str, Dict] = {}
        for model in sorted({r.model_used for r in records}):
            by_model[model] = _bucket([r for r in records if r.model_used == model])

        last = records[:RECENT_WINDOW]
        return {
            "symbol": symbol.upper() if symbol else None,
            "total": total,
            "correct": correct,
            "accuracy": correct / total if total else 0.0,
            "by_direction": by_direction,
            "by_model": by_model,
            "last20": (sum(1 for r in last if r.is_correct) / len(last)) if last else 0.0,
            "pending": self.pending_count,
            "evicted": self.evicted,
        }

    def _filtered(self, symbol: Optional[str]) -> List[TrackedPrediction]:
        if not symbol:
            return list(self._records)
        key = symbol.upper()
        return [r for r in self._records if r.symbol == key]


def _bucket(records: List[TrackedPrediction]) -> Dict:
    total = len(records)
    correct = sum(1 for r in records if r.is_correct)
    return {"total": total, "correct": correct, "accuracy": correct / total if total else 0.0}
