"""Capital survival: health checks, reserve asset and profit routing."""

from src.survival.profit_allocator import ProfitAllocation, ProfitAllocator
from src.survival.survival_manager import HealthCheck, ReservePurchase, SurvivalAllocator

__all__ = [
    "HealthCheck",
    "ProfitAllocation",
    "ProfitAllocator",
    "ReservePurchase",
    "SurvivalAllocator",
]
