"""
Remote ML backend client.

Endpoints Used:
===============
- POST /predict        - {symbol, horizon, orderbook_data: FeatureVector}
- GET  /health         - {status, models_loaded}
- GET  /models/{sym}   - {models: {...}}

The backend being down is an expected condition; callers decide how to
fall back. Every failure surfaces as RemoteModelError (RemoteTimeoutError
for deadlines) so the gateway has one thing to catch.
"""

import asyncio
import logging
import math
import time
from typing import Any, Dict, List, Optional

import aiohttp

from ..analytics.ensemble import SOURCE_REMOTE, Direction, PredictionResult
from ..errors import RemoteModelError, RemoteTimeoutError
from ..features.feature_extractor import FeatureVector

logger = logging.getLogger(__name__)


def parse_remote_prediction(data: Dict[str, Any], symbol: str, horizon: int) -> PredictionResult:
    """
    Validate a /predict response into a PredictionResult.

    Confidence is accepted either as a fraction (0..1) or a percentage.
    """
    try:
        direction = Direction(str(data["direction"]).upper())
        raw_probs = data.get("probabilities") or {}
        probabilities = {d.value: float(raw_probs.get(d.value, 0.0)) for d in Direction}
        confidence = float(data.get("confidence", 0.0))
    except (KeyError, TypeError, ValueError) as e:
        raise RemoteModelError(f"Malformed remote prediction: {e}") from e

    total = sum(probabilities.values())
    if not math.isclose(total, 1.0, abs_tol=1e-3) or any(p < 0 or p > 1 for p in probabilities.values()):
        raise RemoteModelError(f"Remote probabilities do not form a distribution: {probabilities}")
    probabilities = {k: v / total for k, v in probabilities.items()}

    if confidence <= 1.0:
        confidence *= 100
    confidence = max(0.0, min(100.0, confidence))

    return PredictionResult(
        direction=direction,
        confidence=confidence,
        probabilities=probabilities,
        model_used=str(data.get("model_used") or "remote"),
        source=SOURCE_REMOTE,
        timestamp=int(time.time() * 1000),
        symbol=symbol,
        horizon=horizon,
        inference_time_ms=float(data.get("inference_time_ms") or 0.0),
    )


class RemoteModelClient:
    """
    aiohttp client for the remote prediction backend.

    Features:
    - Lazily created shared session
    - Per-call timeout (the gateway adds its own hard deadline on top)
    - Health check used by the status route
    """

    def __init__(self, base_url: str, timeout: float = 2.0):
        """
        Args:
            base_url: Backend root, e.g. http://localhost:8001
            timeout: Per-request timeout (seconds)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, path: str, timeout: Optional[float] = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout or self.timeout)) as response:
                if response.status != 200:
                    raise RemoteModelError(f"GET {path} returned {response.status}")
                return await response.json()
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(f"GET {path} timed out") from e
        except aiohttp.ClientError as e:
            raise RemoteModelError(f"GET {path} failed: {e}") from e

    async def predict(self, symbol: str, horizon: int, features: FeatureVector) -> PredictionResult:
        """
        Request a prediction for one feature vector.

        Raises:
            RemoteTimeoutError: backend did not answer in time
            RemoteModelError: transport error, non-200 or malformed body
        """
        if not self.enabled:
            raise RemoteModelError("remote backend not configured")

        session = await self._get_session()
        body = {
            "symbol": symbol.upper(),
            "horizon": horizon,
            "orderbook_data": features.to_dict(),
        }
        try:
            async with session.post(f"{self.base_url}/predict", json=body) as response:
                if response.status != 200:
                    text = await response.text()
                    raise RemoteModelError(f"/predict returned {response.status}: {text[:200]}")
                data = await response.json()
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError("/predict timed out") from e
        except aiohttp.ClientError as e:
            raise RemoteModelError(f"/predict failed: {e}") from e

        if not isinstance(data, dict):
            raise RemoteModelError("/predict returned a non-object body")
        return parse_remote_prediction(data, symbol.upper(), horizon)

    async def health(self, symbols: List[str], timeout: float = 3.0) -> Dict[str, Any]:
        """
        Check backend health and per-symbol model availability.

        Raises:
            RemoteModelError: backend unreachable or unhealthy
        """
        if not self.enabled:
            raise RemoteModelError("remote backend not configured")

        health = await self._get_json("/health", timeout)
        results = await asyncio.gather(
            *(self._get_json(f"/models/{s}", timeout) for s in symbols),
            return_exceptions=True,
        )
        available = []
        models_loaded = 0
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                logger.debug(f"Model listing for {symbol} unavailable: {result}")
                continue
            available.append(symbol)
            models_loaded += len((result or {}).get("models") or {})

        return {
            "models_loaded": (health or {}).get("models_loaded", models_loaded),
            "symbols": available,
        }
