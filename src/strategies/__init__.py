"""
Entry-signal producers for the survival agent.

- EntrySignalProducer: interface consumed by the agent loop
- WatchlistStrategy: liquidity/volume filter over a fixed watchlist
"""

from src.strategies.base import EntrySignalProducer
from src.strategies.watchlist import WatchlistStrategy

__all__ = [
    "EntrySignalProducer",
    "WatchlistStrategy",
]
