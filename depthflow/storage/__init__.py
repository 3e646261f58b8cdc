"""Market data storage: models, order book store, exchange clients.

- OrderBookStore: canonical per-symbol book + trade tape
- DepthStreamClient: websocket diff/trade stream kept in sync with a snapshot
- BinanceSpotREST: REST depth snapshots
"""

from .models import (
    DepthDiff,
    DepthSnapshot,
    DerivedMetrics,
    MarketState,
    OrderBookSnapshot,
    PriceLevel,
    StreamStatus,
    Trade,
)
from .orderbook_store import NetFlow, OrderBookStore, TradeTape, compute_metrics
from .binance_rest_client import BinanceSpotREST
from .depth_stream_client import DepthStreamClient

__all__ = [
    'DepthDiff',
    'DepthSnapshot',
    'DerivedMetrics',
    'MarketState',
    'OrderBookSnapshot',
    'PriceLevel',
    'StreamStatus',
    'Trade',
    'NetFlow',
    'OrderBookStore',
    'TradeTape',
    'compute_metrics',
    'BinanceSpotREST',
    'DepthStreamClient',
]
