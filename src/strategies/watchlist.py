"""
Watchlist entry producer.

Proposes entries for a fixed list of assets that clear minimum liquidity
and volume floors. Confidence grows with turnover (24h volume relative to
liquidity). It is deliberately simple: a placeholder that keeps the agent
runnable, not a scoring model.
"""
import asyncio
from decimal import Decimal
from typing import Callable, List, Optional

import aiohttp

from src.core.exceptions import MarketDataError
from src.core.models import EntrySignal
from src.exchange.market_data import MarketDataProvider
from src.strategies.base import EntrySignalProducer


class WatchlistStrategy(EntrySignalProducer):
    """
    Entry producer over a configured watchlist.

    Parameters:
    - assets: Asset identifiers to consider
    - min_liquidity: Liquidity floor in USD
    - min_volume: 24h volume floor in USD
    - base_amount: Suggested entry size before risk sizing
    - is_held: Callable telling whether an asset is already held
    """

    BASE_CONFIDENCE = Decimal("60")
    MAX_TURNOVER_BONUS = Decimal("40")

    def __init__(
        self,
        market_data: MarketDataProvider,
        assets: List[str],
        min_liquidity: Decimal = Decimal("50000"),
        min_volume: Decimal = Decimal("100000"),
        base_amount: Decimal = Decimal("0.2"),
        is_held: Optional[Callable[[str], bool]] = None,
    ):
        super().__init__(
            name="Watchlist",
            min_liquidity=min_liquidity,
            min_volume=min_volume,
        )
        self.market_data = market_data
        self.assets = list(assets)
        self.min_liquidity = min_liquidity
        self.min_volume = min_volume
        self.base_amount = base_amount
        self.is_held = is_held or (lambda asset: False)

    async def generate(self) -> List[EntrySignal]:
        if not self.is_active:
            return []

        signals = []
        for asset in self.assets:
            if self.is_held(asset):
                continue

            try:
                quote = await self.market_data.get_quote(asset)
            except (MarketDataError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.logger.warning("strategy.quote_failed", asset=asset, error=str(e))
                continue

            if quote.liquidity < self.min_liquidity or quote.volume_24h < self.min_volume:
                self.logger.debug(
                    "strategy.asset_filtered",
                    asset=asset,
                    liquidity=str(quote.liquidity),
                    volume_24h=str(quote.volume_24h),
                )
                continue

            turnover = quote.volume_24h / quote.liquidity if quote.liquidity > 0 else Decimal("0")
            confidence = self.BASE_CONFIDENCE + min(self.MAX_TURNOVER_BONUS, turnover * 10)
            signals.append(self._create_signal(
                asset=asset,
                confidence=confidence,
                suggested_amount=self.base_amount,
                reason=f"Liquid watchlist asset (turnover {turnover:.2f}x)",
                metadata={"price": str(quote.price), "liquidity": str(quote.liquidity)},
            ))

        if signals:
            self.logger.info("strategy.signals_generated", count=len(signals))
        return signals
