"""
Prediction Gateway
==================

Entry point for prediction requests.

Flow:
1. Validate symbol + order book features (ValidationError, no fallback)
2. If a remote backend is configured, call it under a hard deadline
3. On timeout / error / bad response, run the local ensemble

The local path is total: for valid input a result always comes back.
Live book history and trades are used when the symbol is subscribed;
otherwise detectors run on the book carried by the request, and mids from
earlier requests for the symbol stand in for book history.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Tuple

from ..analytics.ensemble import PredictionResult, PredictorEnsemble
from ..analytics.signal_detectors import MarketContext
from ..config import AppConfig
from ..errors import RemoteModelError, RemoteTimeoutError, ValidationError
from ..features.feature_extractor import FeatureVector, parse_payload_levels
from ..storage.models import DerivedMetrics, MarketState, OrderBookSnapshot, PriceLevel, Trade
from .remote_model_client import RemoteModelClient

logger = logging.getLogger(__name__)


def book_from_payload(symbol: str, payload: Mapping[str, Any],
                      features: FeatureVector) -> OrderBookSnapshot:
    """Rebuild a book view from a request's levels and features."""
    bids = sorted(parse_payload_levels(payload.get("bids"), "bids"), key=lambda l: -l[0])
    asks = sorted(parse_payload_levels(payload.get("asks"), "asks"), key=lambda l: l[0])
    half_spread = features.spread / 2
    metrics = DerivedMetrics(
        best_bid=bids[0][0] if bids else features.mid_price - half_spread,
        best_ask=asks[0][0] if asks else features.mid_price + half_spread,
        mid_price=features.mid_price,
        spread=features.spread,
        spread_percent=features.spread_bps / 100,
        total_bid_volume=features.total_bid_volume,
        total_ask_volume=features.total_ask_volume,
        imbalance=features.imbalance,
    )
    return OrderBookSnapshot(
        symbol=symbol,
        bids=tuple(PriceLevel(p, q) for p, q in bids if q > 0),
        asks=tuple(PriceLevel(p, q) for p, q in asks if q > 0),
        timestamp=_timestamp(payload.get("timestamp")),
        metrics=metrics,
    )


def _timestamp(value: Any) -> int:
    """Epoch ms from a request; non-numeric values (ISO strings) count as unknown."""
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def trades_from_payload(payload: Mapping[str, Any]) -> Tuple[Trade, ...]:
    raw = payload.get("trades") or []
    try:
        return tuple(
            Trade(
                price=float(t["price"]),
                quantity=float(t.get("quantity", t.get("qty", 0))),
                time=int(t.get("time", 0)),
                is_buyer_maker=bool(t.get("isBuyerMaker", t.get("is_buyer_maker", False))),
            )
            for t in raw
        )
    except (KeyError, TypeError, ValueError, AttributeError):
        raise ValidationError("trades must be a list of {price, quantity, time, isBuyerMaker}")


class PredictionGateway:
    """
    Remote-first predictor with a guaranteed local fallback.

    Features:
    - Strict remote deadline (asyncio.wait_for, late answers discarded)
    - Per-instrument detector thresholds
    - Optional live market state from active subscriptions
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        remote: Optional[RemoteModelClient] = None,
        ensemble: Optional[PredictorEnsemble] = None,
        market_state: Optional[Callable[[str], Optional[MarketState]]] = None,
    ):
        self.config = config or AppConfig()
        gateway_cfg = self.config.gateway
        if remote is None and gateway_cfg.remote_url:
            remote = RemoteModelClient(gateway_cfg.remote_url, timeout=gateway_cfg.remote_timeout)
        self.remote = remote
        self.ensemble = ensemble or PredictorEnsemble(self.config.ensemble)
        self.market_state = market_state
        self._request_prices: Dict[str, Deque[Tuple[float, float]]] = {}

        self.remote_successes = 0
        self.remote_failures = 0
        self.local_predictions = 0

    def validate(self, symbol: Any, orderbook_features: Any,
                 horizon: Any = None) -> Tuple[str, FeatureVector, int]:
        """
        Check a request before any work is done.

        Raises:
            ValidationError: missing symbol/features or bad horizon
        """
        if not isinstance(symbol, str) or not symbol.strip():
            raise ValidationError("symbol and orderbook_data required")
        if not orderbook_features:
            raise ValidationError("symbol and orderbook_data required")

        if horizon is None:
            horizon = self.config.gateway.default_horizon
        if isinstance(horizon, bool):
            raise ValidationError("horizon must be a positive integer")
        try:
            horizon = int(horizon)
        except (TypeError, ValueError):
            raise ValidationError("horizon must be a positive integer")
        if horizon <= 0:
            raise ValidationError("horizon must be a positive integer")

        if isinstance(orderbook_features, FeatureVector):
            features = orderbook_features
        else:
            features = FeatureVector.from_payload(orderbook_features)
        return symbol.strip().upper(), features, horizon

    async def predict(self, symbol: Any, orderbook_features: Any,
                      horizon: Any = None) -> PredictionResult:
        """
        Predict direction for a symbol.

        Args:
            symbol: Instrument (exchange symbol or alias)
            orderbook_features: FeatureVector or payload mapping
            horizon: Seconds ahead; defaults to the configured horizon

        Returns:
            PredictionResult with source "remote" or "local-ensemble"

        Raises:
            ValidationError: only for malformed input
        """
        symbol, features, horizon = self.validate(symbol, orderbook_features, horizon)
        payload = orderbook_features if isinstance(orderbook_features, Mapping) else {}
        # Parse request levels/trades up front so bad input never reaches the remote
        request_book = book_from_payload(self.config.resolve_symbol(symbol), payload, features)
        request_trades = trades_from_payload(payload)

        if self.remote is not None and self.remote.enabled:
            result = await self._try_remote(symbol, horizon, features)
            if result is not None:
                return result

        return self.predict_local(symbol, features, horizon, request_book, request_trades)

    async def _try_remote(self, symbol: str, horizon: int,
                          features: FeatureVector) -> Optional[PredictionResult]:
        timeout = self.config.gateway.remote_timeout
        try:
            result = await asyncio.wait_for(self.remote.predict(symbol, horizon, features), timeout)
        except (asyncio.TimeoutError, RemoteTimeoutError):
            self.remote_failures += 1
            logger.debug(f"Remote model timed out after {timeout}s for {symbol}, using local ensemble")
            return None
        except RemoteModelError as e:
            self.remote_failures += 1
            logger.debug(f"Remote model unavailable for {symbol}: {e}")
            return None
        except Exception as e:
            self.remote_failures += 1
            logger.debug(f"Remote model call failed for {symbol}: {e!r}")
            return None
        self.remote_successes += 1
        return result

    def build_context(self, symbol: str, features: FeatureVector,
                      request_book: Optional[OrderBookSnapshot] = None,
                      request_trades: Tuple[Trade, ...] = ()) -> MarketContext:
        """Prefer the live subscription's state; fall back to the request's book."""
        exchange_symbol = self.config.resolve_symbol(symbol)
        thresholds = self.config.thresholds_for(exchange_symbol)

        state = self.market_state(exchange_symbol) if self.market_state else None
        if state is not None and (state.book.bids or state.book.asks):
            return MarketContext(
                symbol=exchange_symbol,
                book=state.book,
                thresholds=thresholds,
                history=state.history,
                trades=state.trades,
                features=features,
            )

        if request_book is None:
            request_book = book_from_payload(exchange_symbol, {}, features)
        return MarketContext(
            symbol=exchange_symbol,
            book=request_book,
            thresholds=thresholds,
            trades=request_trades,
            features=features,
            price_history=self._record_request_price(exchange_symbol, features),
        )

    def _record_request_price(self, symbol: str, features: FeatureVector) -> Tuple[Tuple[float, float], ...]:
        """Append this request's mid to the symbol's history; returns the earlier samples."""
        prices = self._request_prices.get(symbol)
        if prices is None:
            prices = deque(maxlen=self.ensemble.config.price_history_length)
            self._request_prices[symbol] = prices
        earlier = tuple(prices)
        prices.append((features.mid_price, features.total_bid_volume + features.total_ask_volume))
        return earlier

    def predict_local(self, symbol: str, features: FeatureVector, horizon: int,
                      request_book: Optional[OrderBookSnapshot] = None,
                      request_trades: Tuple[Trade, ...] = ()) -> PredictionResult:
        """Local ensemble prediction; always returns a result."""
        ctx = self.build_context(symbol, features, request_book, request_trades)
        self.local_predictions += 1
        result = self.ensemble.predict(ctx, horizon=horizon, timestamp=int(time.time() * 1000))
        result.symbol = symbol
        return result

    def stats(self) -> Dict[str, int]:
        return {
            "remote_successes": self.remote_successes,
            "remote_failures": self.remote_failures,
            "local_predictions": self.local_predictions,
        }

    async def close(self):
        if self.remote is not None:
            await self.remote.close()
