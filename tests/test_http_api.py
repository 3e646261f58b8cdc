"""
HTTP API - Test Suite
=====================

Routes exercised through FastAPI's TestClient with in-memory collaborators.
"""

import pytest
from fastapi.testclient import TestClient

from depthflow.analytics.accuracy_tracker import AccuracyTracker
from depthflow.config import AppConfig, GatewayConfig, StreamConfig
from depthflow.gateway.prediction_gateway import PredictionGateway
from depthflow.http_api import create_app
from depthflow.streaming.subscription_manager import SubscriptionManager

PAYLOAD = {
    "midPrice": 50005.0,
    "spread": 10.0,
    "bids": [[50000.0, 3.0]],
    "asks": [[50010.0, 1.0]],
}


@pytest.fixture
def rest(fake_rest_cls):
    return fake_rest_cls(depth={
        "lastUpdateId": 42,
        "bids": [["50000.0", "1.0"]] * 150,
        "asks": [["50010.0", "1.0"]] * 150,
    })


@pytest.fixture
def api(rest, fake_stream_client_cls):
    config = AppConfig(stream=StreamConfig(render_interval=0.05))
    subscriptions = SubscriptionManager(config, client_factory=fake_stream_client_cls)
    app = create_app(
        config=config,
        subscriptions=subscriptions,
        gateway=PredictionGateway(config, market_state=subscriptions.market_state),
        tracker=AccuracyTracker(),
        rest_client=rest,
    )
    with TestClient(app) as client:
        yield client


class TestInfo:

    def test_root(self, api):
        response = api.get("/")
        assert response.status_code == 200
        assert response.json()["endpoints"]["predict"] == "/api/ml/predict"

    def test_health(self, api):
        data = api.get("/health").json()
        assert data["status"] == "healthy"
        assert data["subscriptions"] == []
        assert data["remote_configured"] is False


class TestPredict:

    def test_local_prediction(self, api):
        response = api.post("/api/ml/predict", json={"symbol": "BTCUSD", "horizon": 10, "orderbook_data": PAYLOAD})
        assert response.status_code == 200

        data = response.json()
        assert data["source"] == "local-ensemble"
        assert data["direction"] in ("UP", "DOWN", "NEUTRAL")
        assert data["direction_code"] in (1, -1, 0)
        assert abs(sum(data["probabilities"].values()) - 1.0) < 1e-6
        assert isinstance(data["timestamp"], str)
        assert data["horizon"] == 10

    def test_orderbook_features_alias(self, api):
        response = api.post("/api/ml/predict", json={"symbol": "BTCUSDT", "orderbook_features": PAYLOAD})
        assert response.status_code == 200
        assert response.json()["horizon"] == 10

    @pytest.mark.parametrize("body", [
        {"orderbook_data": PAYLOAD},
        {"symbol": "BTCUSDT"},
    ])
    def test_missing_fields(self, api, body):
        response = api.post("/api/ml/predict", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": "symbol and orderbook_data required"}

    def test_malformed_features(self, api):
        response = api.post("/api/ml/predict", json={"symbol": "BTCUSDT", "orderbook_data": {"midPrice": "x"}})
        assert response.status_code == 400
        assert "midPrice" in response.json()["error"]

    @pytest.mark.parametrize("body, field", [
        ({"symbol": 123, "orderbook_data": PAYLOAD}, "symbol"),
        ({"symbol": "BTCUSDT", "orderbook_data": "x"}, "orderbook_data"),
    ])
    def test_wrong_types_are_bad_requests(self, api, body, field):
        response = api.post("/api/ml/predict", json=body)
        assert response.status_code == 400
        assert field in response.json()["error"]

    def test_service_info(self, api):
        data = api.get("/api/ml/predict").json()
        assert data["available_symbols"] == ["BTCUSD", "XAUUSD"]
        assert data["horizons"] == [5, 10, 30]
        assert data["status"] == "ready"

    def test_status_offline(self, api):
        data = api.get("/api/ml/status").json()
        assert data["available"] is False
        assert data["status"] == "offline"
        assert data["models_loaded"] == 0


class TestTrack:

    def test_save_verify_stats(self, api):
        saved = api.post("/api/ml/track", json={
            "action": "save",
            "prediction": {"symbol": "BTCUSDT", "direction_code": 1, "initial_price": 50000.0},
        }).json()
        assert saved["success"] is True

        verified = api.post("/api/ml/track", json={
            "action": "verify", "predictionId": saved["id"], "actualPrice": 50100.0,
        }).json()
        assert verified == {"success": True}

        stats = api.get("/api/ml/track", params={"type": "stats"}).json()
        assert stats["total"] == 1
        assert stats["accuracy"] == 1.0

        recent = api.get("/api/ml/track", params={"type": "recent", "symbol": "BTCUSDT"}).json()
        assert recent["predictions"][0]["id"] == saved["id"]

    def test_verify_unknown(self, api):
        response = api.post("/api/ml/track", json={"action": "verify", "predictionId": 77, "actualPrice": 1.0})
        assert response.json() == {"success": False}

    def test_invalid_action(self, api):
        response = api.post("/api/ml/track", json={"action": "delete"})
        assert response.status_code == 400

    def test_invalid_type(self, api):
        assert api.get("/api/ml/track", params={"type": "everything"}).status_code == 400

    def test_missing_action(self, api):
        response = api.post("/api/ml/track", json={"prediction": {}})
        assert response.status_code == 400
        assert "action" in response.json()["error"]

    def test_pending_cap_from_config(self, rest, fake_stream_client_cls):
        config = AppConfig(gateway=GatewayConfig(max_pending_predictions=2))
        app = create_app(
            config=config,
            subscriptions=SubscriptionManager(config, client_factory=fake_stream_client_cls),
            rest_client=rest,
        )
        with TestClient(app) as client:
            for price in (100.0, 101.0, 102.0):
                client.post("/api/ml/track", json={
                    "action": "save",
                    "prediction": {"symbol": "BTCUSDT", "direction_code": 0, "initial_price": price},
                })
            stats = client.get("/api/ml/track", params={"type": "stats"}).json()
        assert stats["pending"] == 2
        assert stats["evicted"] == 1


class TestMarketData:

    def test_depth_proxy_caps_limit(self, api, rest):
        response = api.get("/depth/btcusd", params={"limit": 500})
        assert response.status_code == 200

        data = response.json()
        assert data["symbol"] == "BTCUSDT"
        assert len(data["bids"]) == 100
        assert data["lastUpdateId"] == 42
        assert rest.depth_calls == [{"symbol": "BTCUSDT", "limit": 100}]

    def test_depth_invalid_symbol(self, api):
        response = api.get("/depth/DOGEUSDT")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid symbol"

    def test_depth_upstream_failure(self, api, rest):
        rest.fail = True
        assert api.get("/depth/BTCUSDT").status_code == 502

    def test_subscription_lifecycle(self, api):
        assert api.get("/book/BTCUSDT").status_code == 404

        created = api.post("/subscriptions/BTCUSD")
        assert created.status_code == 200
        assert created.json() == {"symbol": "BTCUSDT", "status": "connected"}

        book = api.get("/book/BTCUSDT", params={"depth": 1}).json()
        assert book["status"] == "connected"
        assert book["book"]["bids"] == [[100.0, 2.0]]
        assert book["book"]["metrics"]["midPrice"] == 100.5
        assert book["features"]["bid_volume_l1"] == 2.0
        assert book["netFlow"]["flowPercent"] == 0.0

        assert "BTCUSDT" in api.get("/subscriptions").json()
        assert api.get("/health").json()["subscriptions"] == ["BTCUSDT"]

        assert api.delete("/subscriptions/BTCUSDT").json() == {"symbol": "BTCUSDT", "removed": True}
        assert api.delete("/subscriptions/BTCUSDT").status_code == 404

    def test_subscribe_invalid_symbol(self, api):
        assert api.post("/subscriptions/NOPE").status_code == 400

    def test_shutdown_closes_collaborators(self, rest, fake_stream_client_cls):
        config = AppConfig()
        app = create_app(
            config=config,
            subscriptions=SubscriptionManager(config, client_factory=fake_stream_client_cls),
            rest_client=rest,
        )
        with TestClient(app) as client:
            client.post("/subscriptions/ETHUSDT")
        assert rest.closed
