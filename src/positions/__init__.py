"""Position ledger: open holdings and their exit decisions."""

from src.positions.ledger import PositionLedger

__all__ = ["PositionLedger"]
