"""
Streaming Module
================

Per-symbol subscriptions and the fixed-interval render ticker.
"""

from .render_ticker import RenderFrame, RenderTicker
from .subscription_manager import Subscription, SubscriptionManager

__all__ = [
    'RenderFrame',
    'RenderTicker',
    'Subscription',
    'SubscriptionManager'
]
