"""
HTTP Clients - Test Suite
=========================

Exchange REST and remote model clients against a fake aiohttp session.
"""

import asyncio
from typing import Any, Dict, List

import aiohttp
import pytest

from depthflow.analytics.ensemble import Direction, SOURCE_REMOTE
from depthflow.errors import RemoteModelError, RemoteTimeoutError, StreamConnectionError
from depthflow.features.feature_extractor import FeatureVector
from depthflow.gateway.remote_model_client import RemoteModelClient
from depthflow.storage.binance_rest_client import BinanceSpotREST


class FakeResponse:
    def __init__(self, status: int = 200, body: Any = None, json_error: Exception = None):
        self.status = status
        self._body = body
        self._json_error = json_error

    async def json(self):
        if self._json_error is not None:
            raise self._json_error
        return self._body

    async def text(self):
        return str(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Routes requests by URL suffix to canned responses or exceptions."""

    def __init__(self, routes: Dict[str, Any]):
        self.routes = routes
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def _respond(self, url: str):
        for suffix, response in self.routes.items():
            if url.endswith(suffix):
                if isinstance(response, BaseException):
                    raise response
                return response
        return FakeResponse(404, "not found")

    def get(self, url, params=None, timeout=None):
        self.calls.append({"method": "GET", "url": url, "params": params})
        return self._respond(url)

    def post(self, url, json=None):
        self.calls.append({"method": "POST", "url": url, "json": json})
        return self._respond(url)

    async def close(self):
        self.closed = True


def with_session(client, session: FakeSession):
    async def _get_session():
        return session
    client._get_session = _get_session
    return client


class TestBinanceSpotREST:

    @pytest.mark.asyncio
    async def test_snapshot(self):
        session = FakeSession({"/api/v3/depth": FakeResponse(200, {
            "lastUpdateId": 100,
            "bids": [["50000.00", "1.5"]],
            "asks": [["50010.00", "2.0"]],
        })})
        client = with_session(BinanceSpotREST(rate_limit_delay=0), session)

        snapshot = await client.get_depth_snapshot("btcusdt", limit=1000)

        assert snapshot.last_update_id == 100
        assert snapshot.bids == ((50000.0, 1.5),)
        assert session.calls[0]["params"] == {"symbol": "BTCUSDT", "limit": 1000}

    @pytest.mark.asyncio
    async def test_limit_rounds_up_to_valid_value(self):
        session = FakeSession({"/api/v3/depth": FakeResponse(200, {"lastUpdateId": 1})})
        client = with_session(BinanceSpotREST(rate_limit_delay=0), session)
        await client.get_depth("BTCUSDT", limit=30)
        assert session.calls[0]["params"]["limit"] == 50

    @pytest.mark.asyncio
    async def test_http_error(self):
        session = FakeSession({"/api/v3/depth": FakeResponse(429, "rate limited")})
        client = with_session(BinanceSpotREST(rate_limit_delay=0), session)
        with pytest.raises(StreamConnectionError, match="429"):
            await client.get_depth("BTCUSDT")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        session = FakeSession({"/api/v3/depth": aiohttp.ClientConnectionError("refused")})
        client = with_session(BinanceSpotREST(rate_limit_delay=0), session)
        with pytest.raises(StreamConnectionError):
            await client.get_depth("BTCUSDT")

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        error = ValueError("Expecting value: line 1 column 1 (char 0)")
        session = FakeSession({"/api/v3/depth": FakeResponse(200, "<html>", json_error=error)})
        client = with_session(BinanceSpotREST(rate_limit_delay=0), session)
        with pytest.raises(StreamConnectionError, match="Invalid JSON"):
            await client.get_depth_snapshot("BTCUSDT")

    @pytest.mark.asyncio
    async def test_malformed_snapshot(self):
        session = FakeSession({"/api/v3/depth": FakeResponse(200, {"bids": []})})
        client = with_session(BinanceSpotREST(rate_limit_delay=0), session)
        with pytest.raises(StreamConnectionError):
            await client.get_depth_snapshot("BTCUSDT")


class TestRemoteModelClient:

    @pytest.mark.asyncio
    async def test_predict(self):
        session = FakeSession({"/predict": FakeResponse(200, {
            "direction": "DOWN",
            "confidence": 62.5,
            "probabilities": {"UP": 0.2, "DOWN": 0.7, "NEUTRAL": 0.1},
            "model_used": "lgbm-v3",
        })})
        client = with_session(RemoteModelClient("http://ml:8001/"), session)
        features = FeatureVector(mid_price=100.0, spread=0.1)

        result = await client.predict("btcusdt", 10, features)

        assert result.direction == Direction.DOWN
        assert result.confidence == 62.5
        assert result.source == SOURCE_REMOTE
        assert result.model_used == "lgbm-v3"
        body = session.calls[0]["json"]
        assert session.calls[0]["url"] == "http://ml:8001/predict"
        assert body["symbol"] == "BTCUSDT"
        assert body["orderbook_data"]["mid_price"] == 100.0

    @pytest.mark.asyncio
    async def test_non_success_status(self):
        session = FakeSession({"/predict": FakeResponse(503, "busy")})
        client = with_session(RemoteModelClient("http://ml:8001"), session)
        with pytest.raises(RemoteModelError):
            await client.predict("BTCUSDT", 10, FeatureVector(mid_price=1.0))

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = FakeSession({"/predict": asyncio.TimeoutError()})
        client = with_session(RemoteModelClient("http://ml:8001"), session)
        with pytest.raises(RemoteTimeoutError):
            await client.predict("BTCUSDT", 10, FeatureVector(mid_price=1.0))

    @pytest.mark.asyncio
    async def test_disabled(self):
        client = RemoteModelClient("")
        assert not client.enabled
        with pytest.raises(RemoteModelError):
            await client.predict("BTCUSDT", 10, FeatureVector(mid_price=1.0))

    @pytest.mark.asyncio
    async def test_health(self):
        session = FakeSession({
            "/health": FakeResponse(200, {"status": "healthy"}),
            "/models/BTCUSD": FakeResponse(200, {"models": {"5": "a", "10": "b"}}),
            "/models/XAUUSD": FakeResponse(500, "error"),
        })
        client = with_session(RemoteModelClient("http://ml:8001"), session)

        info = await client.health(["BTCUSD", "XAUUSD"])

        assert info == {"models_loaded": 2, "symbols": ["BTCUSD"]}
