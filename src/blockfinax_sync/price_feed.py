"""
Native token price feed used to convert gas estimates to USD.
"""

import logging
import time
from collections.abc import Callable
from decimal import Decimal

import httpx

logger = logging.getLogger(__name__)


class NativePriceFeed:
    """USD quotes from CoinGecko's simple price API with a short-lived cache."""

    API_URL = "https://api.coingecko.com/api/v3/simple/price"
    CACHE_SECONDS = 5 * 60

    COIN_IDS: dict[str, str] = {
        "eth": "ethereum",
        "matic": "matic-network",
        "bnb": "binancecoin",
        "usdc": "usd-coin",
        "usdt": "tether",
        "dai": "dai",
    }

    # Approximate prices used when the API is unreachable
    FALLBACK_PRICES: dict[str, Decimal] = {
        "eth": Decimal("2500"),
        "matic": Decimal("0.45"),
        "bnb": Decimal("240"),
        "usdc": Decimal("1.00"),
        "usdt": Decimal("1.00"),
        "dai": Decimal("1.00"),
    }

    def __init__(
        self,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the price feed.

        Args:
            timeout: HTTP timeout in seconds
            clock: Time source in seconds
            transport: Optional httpx transport (e.g. a mock transport in tests)
        """
        self.timeout = timeout
        self.clock = clock
        self.transport = transport
        self._cache: dict[str, tuple[Decimal, float]] = {}

    def coin_id(self, symbol: str) -> str:
        return self.COIN_IDS.get(symbol.lower(), symbol.lower())

    async def get_usd_price(self, symbol: str) -> Decimal:
        """
        Current USD price of a token.

        Raises:
            LookupError: If the API fails and no fallback price is known
        """
        key = symbol.lower()
        if (cached := self._cache.get(key)) is not None:
            price, fetched_at = cached
            if self.clock() - fetched_at < self.CACHE_SECONDS:
                return price

        coin_id = self.coin_id(symbol)
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.get(
                    self.API_URL,
                    params={"ids": coin_id, "vs_currencies": "usd"},
                )
                response.raise_for_status()
                data = response.json()
            price = Decimal(str(data[coin_id]["usd"]))
        except (httpx.HTTPError, KeyError, ValueError) as e:
            if key not in self.FALLBACK_PRICES:
                raise LookupError(f"No USD price available for {symbol}") from e
            logger.warning(f"Price lookup for {symbol} failed ({e}), using fallback price")
            return self.FALLBACK_PRICES[key]

        self._cache[key] = (price, self.clock())
        logger.debug(f"{symbol} price: ${price}")
        return price

    def clear_cache(self) -> None:
        self._cache.clear()
