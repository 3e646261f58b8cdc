"""
📡 Subscription Manager
=======================

Owns the per-symbol lifecycle:
- subscribe: create a DepthStreamClient (+ OrderBookStore) and a RenderTicker
- unsubscribe: stop the ticker, disconnect the client, drop the store
- market_state: live book / history / trades for the prediction gateway

One streaming connection per subscribed symbol. Aliases (BTCUSD) resolve
to exchange symbols (BTCUSDT) before anything is created.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config import AppConfig
from ..storage.binance_rest_client import BinanceSpotREST
from ..storage.depth_stream_client import DepthStreamClient
from ..storage.models import MarketState, StreamStatus
from ..storage.orderbook_store import OrderBookStore
from .render_ticker import RenderTicker

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """Active stream + ticker pair for one symbol."""
    symbol: str
    client: DepthStreamClient
    ticker: RenderTicker
    created_at: float = field(default_factory=time.time)
    status_changes: int = 0

    @property
    def store(self) -> Optional[OrderBookStore]:
        return self.client.store

    def status(self) -> Dict[str, Any]:
        info = self.client.health()
        info.update({
            "uptime_seconds": round(time.time() - self.created_at, 1),
            "frames": self.ticker.last_frame.sequence if self.ticker.last_frame else 0,
            "history_length": len(self.ticker.history),
        })
        return info


class SubscriptionManager:
    """
    Per-symbol subscription registry.

    Args:
        config: Application config
        client_factory: Builds a DepthStreamClient; injectable for tests
    """

    def __init__(self, config: Optional[AppConfig] = None,
                 client_factory: Optional[Callable[..., DepthStreamClient]] = None):
        self.config = config or AppConfig()
        self._client_factory = client_factory or self._default_client
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._rest_client: Optional[BinanceSpotREST] = None

    def _default_client(self, on_status_change: Callable) -> DepthStreamClient:
        if self._rest_client is None:
            self._rest_client = BinanceSpotREST(
                base_url=self.config.stream.rest_base_url,
                timeout=self.config.stream.request_timeout,
            )
        return DepthStreamClient(
            config=self.config.stream,
            rest_client=self._rest_client,
            on_status_change=on_status_change,
        )

    def resolve(self, symbol: str) -> str:
        return self.config.resolve_symbol(symbol)

    def symbols(self) -> List[str]:
        return sorted(self._subscriptions)

    def get(self, symbol: str) -> Optional[Subscription]:
        return self._subscriptions.get(self.resolve(symbol))

    async def subscribe(self, symbol: str, consumer: Optional[Callable] = None) -> Subscription:
        """Start streaming a symbol; idempotent for an active symbol."""
        key = self.resolve(symbol)
        async with self._lock:
            existing = self._subscriptions.get(key)
            if existing is not None:
                if consumer is not None:
                    existing.ticker.add_consumer(consumer)
                return existing

            holder: Dict[str, Subscription] = {}

            def on_status_change(status: StreamStatus):
                sub = holder.get("sub")
                if sub is not None:
                    sub.status_changes += 1
                logger.info(f"{key} stream status: {status.value}")

            client = self._client_factory(on_status_change=on_status_change)
            ticker = RenderTicker(
                lambda: client.store,
                interval=self.config.stream.render_interval,
                history_length=self.config.stream.history_length,
            )
            if consumer is not None:
                ticker.add_consumer(consumer)

            subscription = Subscription(symbol=key, client=client, ticker=ticker)
            holder["sub"] = subscription
            self._subscriptions[key] = subscription

            await client.connect(key)
            await ticker.start()
            logger.info(f"Subscribed to {key}")
            return subscription

    async def unsubscribe(self, symbol: str) -> bool:
        """Stop and release a symbol's stream; False if not subscribed."""
        key = self.resolve(symbol)
        async with self._lock:
            subscription = self._subscriptions.pop(key, None)
        if subscription is None:
            return False
        await subscription.ticker.stop()
        await subscription.client.disconnect()
        logger.info(f"Unsubscribed from {key}")
        return True

    async def close_all(self):
        for symbol in list(self._subscriptions):
            await self.unsubscribe(symbol)
        if self._rest_client is not None:
            await self._rest_client.close()
            self._rest_client = None

    def market_state(self, symbol: str) -> Optional[MarketState]:
        subscription = self.get(symbol)
        if subscription is None:
            return None
        return subscription.ticker.market_state()

    def status(self) -> Dict[str, Any]:
        return {symbol: sub.status() for symbol, sub in self._subscriptions.items()}
