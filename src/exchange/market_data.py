"""Market data provider used for polling quotes.

The live stream covers held assets while connected; everything else
(entry scanning, reserve valuation, fallback pricing) goes through a
MarketDataProvider. Polling is safe to retry, so transient network
errors are retried with exponential backoff.
"""
import asyncio
import functools
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.core.config import MarketDataConfig
from src.core.exceptions import (
    MalformedResponseError,
    MarketDataError,
    QuoteNotFoundError,
    RateLimitError,
)
from src.core.models import Quote

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0
    RATE_LIMIT_DELAY = 10.0  # seconds


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (aiohttp.ClientError, asyncio.TimeoutError)
):
    """Decorator for adding retry logic with exponential backoff.

    Only for idempotent reads. Never wrap trade execution with it.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except RateLimitError as e:
                    # Throttled: back off harder than for network errors
                    last_exception = e
                    if attempt < max_retries:
                        delay = min(RetryConfig.RATE_LIMIT_DELAY * (2 ** attempt), max_delay * 4)
                        logger.warning(
                            f"{func.__name__}.rate_limit_hit",
                            attempt=attempt + 1,
                            delay=delay
                        )
                        await asyncio.sleep(delay)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt < max_retries:
                        delay = min(
                            base_delay * (exponential_base ** attempt),
                            max_delay
                        )
                        logger.warning(
                            f"{func.__name__}.retry_attempt",
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e)
                        )
                        await asyncio.sleep(delay)

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=max_retries,
                last_error=str(last_exception)
            )
            raise last_exception

        return wrapper
    return decorator


# =============================================================================
# Response Schemas
# =============================================================================

class _OverviewData(BaseModel):
    """Fields consumed from the token overview payload."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    price: Optional[Decimal] = None
    liquidity: Decimal = Decimal("0")
    volume_24h: Decimal = Field(default=Decimal("0"), alias="v24hUSD")


class _OverviewResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    data: Optional[_OverviewData] = None


# =============================================================================
# Providers
# =============================================================================

class MarketDataProvider(ABC):
    """Point-in-time price, liquidity and volume for an asset."""

    @abstractmethod
    async def get_quote(self, asset: str) -> Quote:
        """
        Fetch a quote.

        Raises:
            QuoteNotFoundError: The provider does not know the asset
            MalformedResponseError: The payload failed validation
            MarketDataError: Any other provider failure
        """

    async def close(self):
        """Release provider resources."""


class BirdeyeMarketData(MarketDataProvider):
    """Birdeye REST client.

    A single aiohttp session is created lazily and reused until close().
    """

    OVERVIEW_PATH = "/defi/token_overview"

    def __init__(self, config: Optional[MarketDataConfig] = None):
        self.config = config or MarketDataConfig()
        self._session: Optional[aiohttp.ClientSession] = None
        self.requests_made = 0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
                headers={
                    "X-API-KEY": self.config.api_key,
                    "x-chain": self.config.chain,
                    "accept": "application/json",
                },
            )
        return self._session

    @with_retry()
    async def get_quote(self, asset: str) -> Quote:
        payload = await self._fetch(self.OVERVIEW_PATH, {"address": asset})
        return self._parse_overview(asset, payload)

    async def _fetch(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        session = self._get_session()
        self.requests_made += 1

        async with session.get(f"{self.config.base_url}{path}", params=params) as resp:
            if resp.status == 404:
                raise QuoteNotFoundError(params.get("address", ""))
            if resp.status == 429:
                raise RateLimitError(f"birdeye rate limited on {path}")
            if resp.status >= 500:
                # Server side: let the retry decorator see a ClientError
                resp.raise_for_status()
            if resp.status >= 400:
                raise MarketDataError(f"birdeye {path} returned {resp.status}")
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise MalformedResponseError(f"birdeye {path} returned non-JSON", e)

    @staticmethod
    def _parse_overview(asset: str, payload: Dict[str, Any]) -> Quote:
        try:
            parsed = _OverviewResponse.model_validate(payload)
        except ValidationError as e:
            raise MalformedResponseError(f"token overview for {asset}", e)

        data = parsed.data
        if not parsed.success or data is None or data.price is None or data.price <= 0:
            raise QuoteNotFoundError(asset)

        return Quote(
            asset=asset,
            price=data.price,
            liquidity=data.liquidity,
            volume_24h=data.volume_24h,
        )

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("market_data.closed", requests_made=self.requests_made)


def create_market_data(config: Optional[MarketDataConfig] = None) -> BirdeyeMarketData:
    """Factory function to create the default market data provider."""
    return BirdeyeMarketData(config)
