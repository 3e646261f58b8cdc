"""
HTTP API Layer for the Depth Engine
===================================

FastAPI surface for the live order book engine and the prediction gateway.

Usage:
    uvicorn depthflow.http_api:app --host 0.0.0.0 --port 8000

Endpoints:
    GET    /                          - API info
    GET    /health                    - Health check + active streams
    POST   /api/ml/predict            - Direction prediction (remote or local ensemble)
    GET    /api/ml/predict            - Prediction service info
    GET    /api/ml/status             - Remote model backend status
    POST   /api/ml/track              - Save / verify a tracked prediction
    GET    /api/ml/track              - Accuracy stats or recent verified predictions
    GET    /depth/{symbol}            - REST depth proxy (limit <= 100)
    GET    /book/{symbol}             - Live book metrics + top levels
    POST   /subscriptions/{symbol}    - Start streaming a symbol
    DELETE /subscriptions/{symbol}    - Stop streaming a symbol
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .analytics.accuracy_tracker import AccuracyTracker
from .config import AppConfig, load_config
from .errors import RemoteModelError, StreamConnectionError, ValidationError
from .features.feature_extractor import features_from_snapshot
from .gateway.prediction_gateway import PredictionGateway
from .storage.binance_rest_client import BinanceSpotREST
from .streaming.subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
MAX_PROXY_DEPTH = 100

# Service-info symbols/aliases advertised to UI clients
ADVERTISED_SYMBOLS = ["BTCUSD", "XAUUSD"]


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class PredictRequest(BaseModel):
    """Prediction request; orderbook_features and orderbook_data are synonyms."""
    symbol: Optional[str] = None
    horizon: Optional[Any] = None
    orderbook_data: Optional[Dict[str, Any]] = None
    orderbook_features: Optional[Dict[str, Any]] = None


class TrackRequest(BaseModel):
    """Save or verify a tracked prediction."""
    model_config = ConfigDict(populate_by_name=True)

    action: str
    prediction: Optional[Dict[str, Any]] = None
    prediction_id: Optional[int] = Field(default=None, alias="predictionId")
    actual_price: Optional[float] = Field(default=None, alias="actualPrice")


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    subscriptions: List[str]
    remote_configured: bool
    timestamp: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    config: Optional[AppConfig] = None,
    subscriptions: Optional[SubscriptionManager] = None,
    gateway: Optional[PredictionGateway] = None,
    tracker: Optional[AccuracyTracker] = None,
    rest_client: Optional[BinanceSpotREST] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    All collaborators are injectable; anything omitted is built from config.
    """
    config = config or load_config()
    subscriptions = subscriptions or SubscriptionManager(config)
    gateway = gateway or PredictionGateway(config, market_state=subscriptions.market_state)
    tracker = tracker or AccuracyTracker(max_pending=config.gateway.max_pending_predictions)
    rest_client = rest_client or BinanceSpotREST(
        base_url=config.stream.rest_base_url,
        timeout=config.stream.request_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for symbol in config.stream.autostart_symbols:
            await subscriptions.subscribe(symbol)
        yield
        await subscriptions.close_all()
        await gateway.close()
        await rest_client.close()

    app = FastAPI(
        title="Depthflow - Order Book Engine API",
        description="Live order book state, microstructure signals and short-horizon predictions.",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.subscriptions = subscriptions
    app.state.gateway = gateway
    app.state.tracker = tracker
    app.state.rest_client = rest_client

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            problems.append(f"{field}: {err.get('msg')}")
        return JSONResponse(status_code=400, content={"error": "; ".join(problems) or "invalid request"})

    def known_symbol(symbol: str) -> str:
        resolved = config.resolve_symbol(symbol)
        if resolved not in config.instruments:
            raise HTTPException(status_code=400, detail="Invalid symbol")
        return resolved

    # -------------------------------------------------------------------------
    # Info / health
    # -------------------------------------------------------------------------

    @app.get("/", response_model=Dict[str, Any])
    async def root():
        """API information endpoint"""
        return {
            "name": "Depthflow - Order Book Engine API",
            "version": VERSION,
            "docs": "/docs",
            "endpoints": {
                "health": "/health",
                "predict": "/api/ml/predict",
                "ml_status": "/api/ml/status",
                "track": "/api/ml/track",
                "depth": "/depth/{symbol}",
                "book": "/book/{symbol}",
                "subscriptions": "/subscriptions/{symbol}",
            },
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(
            status="healthy",
            version=VERSION,
            subscriptions=subscriptions.symbols(),
            remote_configured=bool(gateway.remote and gateway.remote.enabled),
            timestamp=_now_iso(),
        )

    # -------------------------------------------------------------------------
    # Predictions
    # -------------------------------------------------------------------------

    @app.post("/api/ml/predict")
    async def predict(request: PredictRequest):
        """Predict direction; only malformed input fails (400)."""
        features = request.orderbook_features or request.orderbook_data
        result = await gateway.predict(request.symbol, features, request.horizon)
        body = result.to_dict()
        body["timestamp"] = datetime.fromtimestamp(result.timestamp / 1000, tz=timezone.utc).isoformat()
        return body

    @app.get("/api/ml/predict")
    async def predict_info():
        return {
            "service": "ML Prediction API",
            "available_symbols": ADVERTISED_SYMBOLS,
            "horizons": list(config.gateway.horizons),
            "default_horizon": config.gateway.default_horizon,
            "local_model": gateway.ensemble.model_name,
            "status": "ready",
        }

    @app.get("/api/ml/status")
    async def ml_status():
        """Remote backend status; offline is a normal answer."""
        remote = gateway.remote
        if remote is not None and remote.enabled:
            timeout = config.gateway.status_timeout
            try:
                info = await asyncio.wait_for(remote.health(ADVERTISED_SYMBOLS, timeout), timeout)
                return {
                    "available": True,
                    "status": "online",
                    "models_loaded": info["models_loaded"],
                    "symbols": info["symbols"],
                    "default_model": "ensemble",
                    "timestamp": _now_iso(),
                }
            except (asyncio.TimeoutError, RemoteModelError) as e:
                logger.debug(f"Remote backend status check failed: {e}")

        return {
            "available": False,
            "status": "offline",
            "models_loaded": 0,
            "symbols": ADVERTISED_SYMBOLS,
            "default_model": gateway.ensemble.model_name,
            "message": "ML backend offline, using local ensemble predictions",
            "gateway": gateway.stats(),
            "timestamp": _now_iso(),
        }

    # -------------------------------------------------------------------------
    # Accuracy tracking
    # -------------------------------------------------------------------------

    @app.post("/api/ml/track")
    async def track(request: TrackRequest):
        if request.action == "save":
            if not request.prediction:
                raise ValidationError("prediction required for save")
            prediction_id = tracker.save(request.prediction)
            return {"success": True, "id": prediction_id}
        if request.action == "verify":
            if request.prediction_id is None or request.actual_price is None:
                raise ValidationError("predictionId and actualPrice required for verify")
            return {"success": tracker.verify(request.prediction_id, request.actual_price)}
        raise ValidationError("Invalid action")

    @app.get("/api/ml/track")
    async def track_stats(
        symbol: Optional[str] = Query(default=None),
        kind: str = Query(default="stats", alias="type"),
        limit: int = Query(default=20, ge=1, le=100),
    ):
        if kind == "stats":
            return tracker.stats(symbol)
        if kind == "recent":
            return {"predictions": tracker.recent(symbol, limit)}
        raise ValidationError("Invalid type")

    # -------------------------------------------------------------------------
    # Market data
    # -------------------------------------------------------------------------

    @app.get("/depth/{symbol}")
    async def depth_proxy(symbol: str, limit: int = Query(default=20, ge=1)):
        """Proxy a Binance depth snapshot."""
        exchange_symbol = known_symbol(symbol)
        limit = min(limit, MAX_PROXY_DEPTH)
        try:
            data = await rest_client.get_depth(exchange_symbol, limit)
        except StreamConnectionError as e:
            logger.warning(f"Depth proxy failed for {exchange_symbol}: {e}")
            raise HTTPException(status_code=502, detail="Failed to fetch market data")
        return {
            "symbol": exchange_symbol,
            "bids": data.get("bids", [])[:limit],
            "asks": data.get("asks", [])[:limit],
            "lastUpdateId": data.get("lastUpdateId"),
            "timestamp": int(time.time() * 1000),
        }

    @app.get("/book/{symbol}")
    async def live_book(symbol: str, depth: int = Query(default=20, ge=1, le=500)):
        """Latest immutable book view of a subscribed symbol."""
        subscription = subscriptions.get(symbol)
        if subscription is None or subscription.store is None:
            raise HTTPException(status_code=404, detail=f"Not subscribed: {symbol}")
        store = subscription.store
        book = store.snapshot
        flow = store.trades.net_flow(config.ensemble.flow_window_ms)
        return {
            "status": subscription.client.status.value,
            "synced": store.is_synced,
            "book": book.to_dict(depth),
            "features": features_from_snapshot(book).to_dict(),
            "lastPrice": store.trades.last_price,
            "lastIsBuy": store.trades.last_is_buy,
            "netFlow": {
                "buyVolume": flow.buy_volume,
                "sellVolume": flow.sell_volume,
                "flowPercent": flow.flow_percent,
            },
        }

    @app.post("/subscriptions/{symbol}")
    async def subscribe(symbol: str):
        exchange_symbol = known_symbol(symbol)
        subscription = await subscriptions.subscribe(exchange_symbol)
        return {"symbol": subscription.symbol, "status": subscription.client.status.value}

    @app.delete("/subscriptions/{symbol}")
    async def unsubscribe(symbol: str):
        removed = await subscriptions.unsubscribe(symbol)
        if not removed:
            raise HTTPException(status_code=404, detail=f"Not subscribed: {symbol}")
        return {"symbol": config.resolve_symbol(symbol), "removed": True}

    @app.get("/subscriptions")
    async def list_subscriptions():
        return subscriptions.status()

    return app


# =============================================================================
# SINGLETON
# =============================================================================

_app_instance: Optional[FastAPI] = None


def get_app() -> FastAPI:
    """Get singleton app instance"""
    global _app_instance
    if _app_instance is None:
        _app_instance = create_app()
    return _app_instance


def __getattr__(name: str):
    # Lazy `app` attribute so importing this module does not read config
    if name == "app":
        return get_app()
    raise AttributeError(name)


if __name__ == "__main__":
    import uvicorn

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(create_app(config), host=host, port=port)
