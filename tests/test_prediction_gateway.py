"""
Prediction Gateway - Test Suite
===============================

Remote-first prediction with local fallback. The remote backend is
replaced by AsyncMock doubles.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from depthflow.analytics.ensemble import Direction, PredictionResult, SOURCE_LOCAL, SOURCE_REMOTE
from depthflow.analytics.signal_detectors import SignalType
from depthflow.config import AppConfig, EnsembleConfig, GatewayConfig
from depthflow.errors import RemoteModelError, ValidationError
from depthflow.gateway.prediction_gateway import (
    PredictionGateway,
    book_from_payload,
    trades_from_payload,
)
from depthflow.gateway.remote_model_client import parse_remote_prediction
from depthflow.features.feature_extractor import FeatureVector
from depthflow.storage.models import MarketState

PAYLOAD = {
    "midPrice": 50005.0,
    "spread": 10.0,
    "bids": [[50000.0, 3.0], [49990.0, 1.0]],
    "asks": [[50010.0, 1.0]],
}


def remote_double(**predict_kwargs) -> Mock:
    remote = Mock()
    remote.enabled = True
    remote.predict = AsyncMock(**predict_kwargs)
    remote.close = AsyncMock()
    return remote


def gateway_with(remote=None, timeout: float = 2.0, market_state=None) -> PredictionGateway:
    config = AppConfig(gateway=GatewayConfig(remote_timeout=timeout))
    return PredictionGateway(config, remote=remote, market_state=market_state)


class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("symbol, features", [
        (None, PAYLOAD),
        ("", PAYLOAD),
        ("BTCUSDT", None),
        ("BTCUSDT", {}),
    ])
    async def test_missing_input(self, symbol, features):
        remote = remote_double()
        gateway = gateway_with(remote)
        with pytest.raises(ValidationError, match="symbol and orderbook_data required"):
            await gateway.predict(symbol, features)
        remote.predict.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("horizon", ["abc", 0, -5, True])
    async def test_bad_horizon(self, horizon):
        with pytest.raises(ValidationError, match="horizon"):
            await gateway_with().predict("BTCUSDT", PAYLOAD, horizon)

    @pytest.mark.asyncio
    async def test_bad_trades(self):
        remote = remote_double()
        payload = dict(PAYLOAD, trades=[{"quantity": 1}])
        with pytest.raises(ValidationError):
            await gateway_with(remote).predict("BTCUSDT", payload)
        remote.predict.assert_not_called()

    def test_default_horizon(self):
        _, _, horizon = gateway_with().validate("BTCUSDT", PAYLOAD)
        assert horizon == 10


class TestFallback:

    @pytest.mark.asyncio
    async def test_slow_remote_falls_back_to_local(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        gateway = gateway_with(remote_double(side_effect=slow), timeout=0.05)
        result = await gateway.predict("BTCUSDT", PAYLOAD, 10)

        assert result.source == SOURCE_LOCAL
        assert gateway.remote_failures == 1
        assert gateway.local_predictions == 1

    @pytest.mark.asyncio
    async def test_remote_error_falls_back(self):
        gateway = gateway_with(remote_double(side_effect=RemoteModelError("503")))
        result = await gateway.predict("BTCUSDT", PAYLOAD)
        assert result.source == SOURCE_LOCAL
        assert result.symbol == "BTCUSDT"

    @pytest.mark.asyncio
    async def test_unexpected_remote_exception_falls_back(self):
        gateway = gateway_with(remote_double(side_effect=ValueError("bad json")))
        result = await gateway.predict("BTCUSDT", PAYLOAD)
        assert result.source == SOURCE_LOCAL

    @pytest.mark.asyncio
    async def test_remote_success(self):
        remote_result = PredictionResult(
            direction=Direction.DOWN,
            confidence=70.0,
            probabilities={"UP": 0.1, "DOWN": 0.8, "NEUTRAL": 0.1},
            model_used="xgb",
            source=SOURCE_REMOTE,
        )
        remote = remote_double(return_value=remote_result)
        gateway = gateway_with(remote)

        result = await gateway.predict("btcusdt", PAYLOAD, "30")

        assert result is remote_result
        assert gateway.remote_successes == 1
        symbol, horizon, features = remote.predict.call_args.args
        assert (symbol, horizon) == ("BTCUSDT", 30)
        assert isinstance(features, FeatureVector)
        assert features.mid_price == 50005.0

    @pytest.mark.asyncio
    async def test_no_remote_configured(self):
        gateway = gateway_with()
        assert gateway.remote is None
        result = await gateway.predict("BTCUSDT", dict(PAYLOAD, bids=[[50000.0, 4.0]]))
        assert result.source == SOURCE_LOCAL
        assert result.direction == Direction.UP


class TestContext:

    @pytest.mark.asyncio
    async def test_live_market_state_is_preferred(self, make_book):
        live = make_book(bids=[(50000.0, 16.0)], asks=[(50010.0, 1.0)], timestamp=1_000)
        calls = []

        def market_state(symbol):
            calls.append(symbol)
            return MarketState(book=live)

        gateway = gateway_with(market_state=market_state)
        result = await gateway.predict("BTCUSD", PAYLOAD)

        assert calls == ["BTCUSDT"]
        assert result.symbol == "BTCUSD"
        assert any(s.type == SignalType.WHALE_BUY for s in result.signals)

    @pytest.mark.asyncio
    async def test_request_book_used_without_subscription(self):
        payload = dict(PAYLOAD, bids=[[50000.0, 16.0]])
        gateway = gateway_with(market_state=lambda symbol: None)
        result = await gateway.predict("BTCUSDT", payload)
        whales = [s for s in result.signals if s.type == SignalType.WHALE_BUY]
        assert [s.price for s in whales] == [50000.0]

    def test_instrument_thresholds_apply(self):
        gateway = gateway_with()
        features = FeatureVector.from_payload(PAYLOAD)
        ctx = gateway.build_context("XAUUSD", features)
        assert ctx.symbol == "PAXGUSDT"
        assert ctx.thresholds.momentum_min_run == 8
        assert ctx.thresholds.whale_threshold == 10

    def test_request_mids_accumulate_per_symbol(self):
        config = AppConfig(ensemble=EnsembleConfig(price_history_length=5))
        gateway = PredictionGateway(config, market_state=lambda symbol: None)

        for mid in (100.0, 101.0, 102.0):
            features = FeatureVector(mid_price=mid, total_bid_volume=1.0, total_ask_volume=1.0)
            ctx = gateway.build_context("BTCUSD", features)
        assert ctx.price_history == ((100.0, 2.0), (101.0, 2.0))
        assert ctx.price_samples()[-1] == (102.0, 2.0)

        other = gateway.build_context("XAUUSD", FeatureVector(mid_price=2000.0))
        assert other.price_history == ()

        for mid in range(10):
            ctx = gateway.build_context("BTCUSDT", FeatureVector(mid_price=200.0 + mid))
        assert len(ctx.price_history) == 5

    def test_live_state_ignores_request_mids(self, make_book):
        live = make_book(bids=[(99.5, 1.0)], asks=[(100.5, 1.0)], timestamp=1_000)
        gateway = gateway_with(market_state=lambda symbol: MarketState(book=live))
        ctx = gateway.build_context("BTCUSDT", FeatureVector(mid_price=100.0))
        assert ctx.price_history == ()

    def test_book_from_payload(self):
        features = FeatureVector.from_payload(PAYLOAD)
        book = book_from_payload("BTCUSDT", dict(PAYLOAD, timestamp="2024-01-01T00:00:00Z"), features)
        assert [l.price for l in book.bids] == [50000.0, 49990.0]
        assert book.metrics.best_ask == 50010.0
        assert book.timestamp == 0

    def test_trades_from_payload(self):
        trades = trades_from_payload({"trades": [{"price": "1.5", "qty": 2, "time": 10, "isBuyerMaker": True}]})
        assert trades[0].quantity == 2.0
        assert trades[0].is_buy is False


class TestRemoteParsing:

    def test_fractional_confidence_is_scaled(self):
        result = parse_remote_prediction(
            {"direction": "up", "confidence": 0.8, "probabilities": {"UP": 0.7, "DOWN": 0.2, "NEUTRAL": 0.1}},
            "BTCUSDT", 10,
        )
        assert result.direction == Direction.UP
        assert result.confidence == pytest.approx(80.0)
        assert result.source == SOURCE_REMOTE

    def test_probabilities_must_sum_to_one(self):
        with pytest.raises(RemoteModelError):
            parse_remote_prediction(
                {"direction": "UP", "probabilities": {"UP": 0.9, "DOWN": 0.9, "NEUTRAL": 0.1}},
                "BTCUSDT", 10,
            )

    def test_unknown_direction(self):
        with pytest.raises(RemoteModelError):
            parse_remote_prediction({"direction": "SIDEWAYS"}, "BTCUSDT", 10)
