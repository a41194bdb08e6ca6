"""Base class for entry-signal producers."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from src.core.models import EntrySignal

logger = structlog.get_logger(__name__)


class EntrySignalProducer(ABC):
    """Abstract source of buy candidates.

    Scoring heuristics live in subclasses; the agent only consumes the
    EntrySignal list and applies its own sizing and guardrails.
    """

    def __init__(self, name: str, **kwargs):
        self.name = name
        self.params = kwargs
        self.is_active = True
        self.logger = logger.bind(strategy=name)

        self.signals_generated = 0
        self.entries_executed = 0
        self.total_pnl = Decimal("0")

    @abstractmethod
    async def generate(self) -> List[EntrySignal]:
        """
        Produce buy candidates for the current tick.

        Returns:
            List of EntrySignal objects, possibly empty
        """
        pass

    async def on_entry_filled(self, asset: str, capital: Decimal, price: Decimal):
        """Callback when an entry from this producer is filled."""
        self.entries_executed += 1

    async def on_position_closed(self, asset: str, profit: Decimal):
        """Callback when a position is closed."""
        self.total_pnl += profit

    def get_stats(self) -> Dict[str, Any]:
        """Get producer statistics."""
        return {
            'name': self.name,
            'is_active': self.is_active,
            'signals_generated': self.signals_generated,
            'entries_executed': self.entries_executed,
            'total_pnl': str(self.total_pnl)
        }

    def pause(self):
        """Pause the producer."""
        self.is_active = False
        self.logger.info("strategy.paused")

    def resume(self):
        """Resume the producer."""
        self.is_active = True
        self.logger.info("strategy.resumed")

    def _create_signal(
        self,
        asset: str,
        confidence: Decimal,
        suggested_amount: Decimal,
        reason: str = "",
        metadata: Optional[Dict] = None
    ) -> EntrySignal:
        """Helper to create an entry signal."""
        signal = EntrySignal(
            asset=asset,
            confidence=confidence,
            suggested_amount=suggested_amount,
            reason=reason,
            strategy_name=self.name,
            metadata=metadata or {}
        )
        self.signals_generated += 1
        return signal
