# price_feed.py

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict

import ccxt.async_support as ccxt

from config.logging_config import get_logger
from core.utils import ConfigError, PriceLookupFailure, with_timeout


class PriceFeed(ABC):
    """Live reference-asset -> native-asset conversion rate."""

    @abstractmethod
    async def reference_to_native_rate(self) -> Decimal:
        """Native units worth one whole unit of the reference asset."""

    async def close(self):
        pass


class CcxtPriceFeed(PriceFeed):
    """
    Reads the conversion rate from a centralized exchange ticker, e.g. ETH/DAI.
    Uses the bid/ask mid when the exchange reports both, otherwise the last price.
    """

    def __init__(self, exchange: Any, symbol: str, native_asset: str, timeout_s: float = 5.0):
        self.exchange = exchange
        self.symbol = symbol
        self.timeout_s = timeout_s
        base, quote = symbol.split('/')
        if native_asset not in (base, quote):
            raise ConfigError(f"CRITICAL ERROR: '{symbol}' does not trade native asset '{native_asset}'.")
        # ETH/DAI prices the native asset in reference units and needs inverting
        self.invert = native_asset == base
        self.log = get_logger(__name__)

    @classmethod
    def from_config(cls, price_source: Dict[str, Any], timeout_s: float = 5.0) -> "CcxtPriceFeed":
        ex_id = price_source.get('exchange')
        try:
            exchange_class = getattr(ccxt, ex_id)
        except (AttributeError, TypeError):
            raise ConfigError(f"Exchange '{ex_id}' is not supported by ccxt.")
        exchange = exchange_class({'enableRateLimit': True})
        return cls(exchange, price_source['symbol'], price_source['native_asset'], timeout_s)

    async def reference_to_native_rate(self) -> Decimal:
        ticker = await with_timeout(
            self.exchange.fetch_ticker(self.symbol), self.timeout_s, PriceLookupFailure,
            f"fetch_ticker {self.symbol} on {self.exchange.id}",
        )
        bid, ask = ticker.get('bid'), ticker.get('ask')
        if bid and ask:
            price = (Decimal(str(bid)) + Decimal(str(ask))) / 2
        elif ticker.get('last'):
            price = Decimal(str(ticker['last']))
        else:
            raise PriceLookupFailure(f"No usable price in {self.symbol} ticker on {self.exchange.id}")

        if price <= 0:
            raise PriceLookupFailure(f"Non-positive price {price} for {self.symbol}")
        rate = 1 / price if self.invert else price
        self.log.debug(f"Reference -> native rate from {self.exchange.id} {self.symbol}: {rate}")
        return rate

    async def close(self):
        await self.exchange.close()
