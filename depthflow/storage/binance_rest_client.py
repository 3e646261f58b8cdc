"""
Binance Spot REST Client - depth snapshots.

Base URL: https://api.binance.com

Endpoints Used:
===============
- /api/v3/depth - Order book snapshot (up to 5000 levels)

Unlike the streaming side, failures here raise instead of returning None:
the stream client owns retry/backoff and needs to know a fetch failed.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from ..errors import StreamConnectionError
from .models import DepthSnapshot

logger = logging.getLogger(__name__)


VALID_DEPTH_LIMITS = (5, 10, 20, 50, 100, 500, 1000, 5000)


class BinanceSpotREST:
    """
    Binance Spot REST client for order book snapshots.

    Features:
    - Shared aiohttp session, lazily (re)created
    - Simple request spacing to stay under rate limits
    - Typed DepthSnapshot parsing
    """

    BASE_URL = "https://api.binance.com"

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0,
                 rate_limit_delay: float = 0.05):
        """
        Initialize Binance Spot REST client.

        Args:
            base_url: Override for the REST host
            timeout: Total request timeout (seconds)
            rate_limit_delay: Minimum spacing between requests (seconds)
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._rate_limit_delay = rate_limit_delay
        self._last_request_time = 0.0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """
        Make a rate-limited GET request.

        Raises:
            StreamConnectionError: transport failure, timeout, non-200 status
                or a body that is not valid JSON
        """
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)

        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"

        try:
            async with session.get(url, params=params) as response:
                self._last_request_time = time.monotonic()
                if response.status == 200:
                    return await response.json()
                error_text = await response.text()
                raise StreamConnectionError(
                    f"Binance API error {response.status} on {endpoint}: {error_text[:200]}"
                )
        except asyncio.TimeoutError as e:
            raise StreamConnectionError(f"Timeout fetching {endpoint}") from e
        except aiohttp.ClientError as e:
            raise StreamConnectionError(f"Error fetching {endpoint}: {e}") from e
        except ValueError as e:
            raise StreamConnectionError(f"Invalid JSON from {endpoint}: {e}") from e

    async def get_depth(self, symbol: str, limit: int = 1000) -> Dict[str, Any]:
        """
        Get raw order book depth.

        GET /api/v3/depth

        Args:
            symbol: Trading pair (e.g., BTCUSDT)
            limit: Depth limit (5, 10, 20, 50, 100, 500, 1000, 5000)

        Returns:
            {"lastUpdateId": int, "bids": [[p, q]], "asks": [[p, q]]}
        """
        if limit not in VALID_DEPTH_LIMITS:
            limit = min((l for l in VALID_DEPTH_LIMITS if l >= limit), default=5000)
        params = {"symbol": symbol.upper(), "limit": limit}
        return await self._request("/api/v3/depth", params)

    async def get_depth_snapshot(self, symbol: str, limit: int = 1000) -> DepthSnapshot:
        """Fetch and parse a depth snapshot for seeding an order book."""
        data = await self.get_depth(symbol, limit)
        try:
            snapshot = DepthSnapshot.from_binance(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StreamConnectionError(f"Malformed depth snapshot for {symbol}: {e}") from e
        logger.debug(
            f"Snapshot {symbol}: lastUpdateId={snapshot.last_update_id} "
            f"bids={len(snapshot.bids)} asks={len(snapshot.asks)}"
        )
        return snapshot
