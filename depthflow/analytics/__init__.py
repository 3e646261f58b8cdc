"""
Order Book Analytics
====================

Signal detectors, the predictor ensemble and prediction accuracy tracking.
"""

from .signal_detectors import (
    DetectedSignal,
    MarketContext,
    Severity,
    SignalDirection,
    SignalType,
    run_detectors,
)
from .ensemble import Direction, PredictionResult, PredictorEnsemble
from .accuracy_tracker import AccuracyTracker

__all__ = [
    'DetectedSignal',
    'MarketContext',
    'Severity',
    'SignalDirection',
    'SignalType',
    'run_detectors',
    'Direction',
    'PredictionResult',
    'PredictorEnsemble',
    'AccuracyTracker',
]
