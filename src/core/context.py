"""Shared context handed to every agent component."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from src.core.config import AgentConfig, agent_config
from src.core.models import RiskState, SurvivalState, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class AgentContext:
    """Single authority for the account-wide singletons.

    Risk and survival state live here so that components share one copy
    without module globals. Only the owning component mutates its state;
    everyone else reads.

    Attributes:
        config: Configuration container
        risk_state: Protective state owned by the risk guardrail
        survival_state: Capital health owned by the survival allocator
        clock: Returns the current aware UTC time
    """
    config: AgentConfig = field(default_factory=lambda: agent_config)
    risk_state: RiskState = field(default_factory=RiskState)
    survival_state: SurvivalState = field(default_factory=SurvivalState)
    clock: Callable[[], datetime] = utcnow
    _change_listeners: List[Callable[[], None]] = field(default_factory=list, repr=False)

    def now(self) -> datetime:
        return self.clock()

    def on_change(self, callback: Callable[[], None]) -> None:
        """Register a callback fired after any state mutation."""
        self._change_listeners.append(callback)

    def mark_dirty(self, source: Optional[str] = None) -> None:
        """Notify listeners that persisted state changed."""
        for callback in self._change_listeners:
            try:
                callback()
            except Exception as e:
                logger.error("context.change_listener_error", source=source, error=str(e))
