"""Trade execution collaborators.

Venue routing (bonding curve vs graduated pool) and wallet custody live
behind TradeExecutor. The agent only sees fills or typed failures.
"""
import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, Optional

import aiohttp
import structlog

from src.core.exceptions import ExecutionError, FillError, MarketDataError
from src.core.models import BuyFill, Position, SellFill
from src.exchange.market_data import MarketDataProvider

logger = structlog.get_logger(__name__)


class TradeExecutor(ABC):
    """Executes swaps between the base currency and traded assets."""

    @abstractmethod
    async def buy(self, asset: str, capital_amount: Decimal) -> BuyFill:
        """Spend capital_amount of base currency on asset.

        Raises:
            FillError: Zero or partial fill
            ExecutionError: Any other failure
        """

    @abstractmethod
    async def sell(self, asset: str, quantity: Decimal) -> SellFill:
        """Sell quantity of asset for base currency.

        Raises:
            FillError: Zero or partial fill
            ExecutionError: Any other failure
        """

    @abstractmethod
    async def get_balance(self) -> Decimal:
        """Base currency available to trade."""

    @abstractmethod
    async def get_holding(self, asset: str) -> Decimal:
        """Quantity of asset held."""

    async def close(self):
        """Release executor resources."""

    async def adopt_positions(self, positions: Iterable[Position]):
        """Reconcile with positions restored from persisted state."""


class PaperExecutor(TradeExecutor):
    """Simulated execution against market data quotes.

    Fills the full requested size at the quoted price adjusted by a fixed
    slippage, and keeps its own balance and holdings in memory.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        starting_balance: Decimal = Decimal("20"),
        slippage_percent: Decimal = Decimal("1"),
    ):
        self.market_data = market_data
        self.balance = starting_balance
        self.slippage = slippage_percent / 100
        self.holdings: Dict[str, Decimal] = {}
        self.trade_count = 0

    async def _price(self, asset: str) -> Decimal:
        try:
            quote = await self.market_data.get_quote(asset)
        except MarketDataError as e:
            raise ExecutionError(asset, f"no price to simulate fill: {e}", e)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExecutionError(asset, f"quote request failed: {e!r}", e)
        return quote.price

    async def adopt_positions(self, positions: Iterable[Position]):
        """
        Hold at least the restored quantity of every position.

        Paper balances live in memory only, so a restart would otherwise
        leave restored positions unsellable.
        """
        for position in positions:
            held = self.holdings.get(position.asset, Decimal("0"))
            if held < position.quantity:
                self.holdings[position.asset] = position.quantity
                logger.info(
                    "paper_executor.holding_adopted",
                    asset=position.asset,
                    quantity=str(position.quantity),
                )

    async def buy(self, asset: str, capital_amount: Decimal) -> BuyFill:
        if capital_amount <= 0:
            raise ExecutionError(asset, f"invalid buy amount {capital_amount}")
        if capital_amount > self.balance:
            raise FillError(asset, capital_amount, Decimal("0"))

        fill_price = await self._price(asset) * (1 + self.slippage)
        quantity = capital_amount / fill_price

        self.balance -= capital_amount
        self.holdings[asset] = self.holdings.get(asset, Decimal("0")) + quantity
        self.trade_count += 1

        logger.warning(
            "paper_executor.buy",
            asset=asset,
            capital=str(capital_amount),
            quantity=str(quantity),
            price=str(fill_price),
        )
        return BuyFill(
            asset=asset,
            filled_quantity=quantity,
            fill_price=fill_price,
            capital_spent=capital_amount,
        )

    async def sell(self, asset: str, quantity: Decimal) -> SellFill:
        if quantity <= 0:
            raise ExecutionError(asset, f"invalid sell quantity {quantity}")
        held = self.holdings.get(asset, Decimal("0"))
        if held < quantity:
            raise FillError(asset, quantity, held)

        fill_price = await self._price(asset) * (1 - self.slippage)
        received = quantity * fill_price

        remaining = held - quantity
        if remaining > 0:
            self.holdings[asset] = remaining
        else:
            self.holdings.pop(asset, None)
        self.balance += received
        self.trade_count += 1

        logger.warning(
            "paper_executor.sell",
            asset=asset,
            quantity=str(quantity),
            received=str(received),
            price=str(fill_price),
        )
        return SellFill(asset=asset, quantity=quantity, received_capital=received)

    async def get_balance(self) -> Decimal:
        return self.balance

    async def get_holding(self, asset: str) -> Decimal:
        return self.holdings.get(asset, Decimal("0"))


def create_executor(
    market_data: MarketDataProvider,
    mode: str = "paper",
    starting_balance: Optional[Decimal] = None,
    slippage_percent: Optional[Decimal] = None,
) -> TradeExecutor:
    """Factory for the configured execution mode."""
    if mode != "paper":
        raise ExecutionError("*", f"no executor available for mode '{mode}'")
    return PaperExecutor(
        market_data,
        starting_balance=starting_balance if starting_balance is not None else Decimal("20"),
        slippage_percent=slippage_percent if slippage_percent is not None else Decimal("1"),
    )
