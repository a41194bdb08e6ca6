"""Price feed: live stream, polling fallback and alerting."""

from src.feed.price_feed import PriceFeed, create_price_feed
from src.feed.price_watcher import PriceWatcher

__all__ = [
    "PriceFeed",
    "PriceWatcher",
    "create_price_feed",
]
