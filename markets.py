# markets.py
"""
Market capability consumed by the arbitrage core. Concrete venues (constant
product pools, stable-swap pools, ...) live outside this package and only have
to implement this interface.

Amounts are Decimal in whole-token units; call data is raw ABI-encoded bytes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple


@dataclass(frozen=True)
class MultipleCallData:
    targets: Tuple[str, ...]
    data: Tuple[bytes, ...]

    def __post_init__(self):
        if len(self.targets) != len(self.data):
            raise ValueError("targets and data must have the same length")


class EthMarket(ABC):
    def __init__(self, market_address: str, tokens: Tuple[str, str], protocol: str):
        self.market_address = market_address
        self.tokens = tuple(tokens)
        self.protocol = protocol

    def __repr__(self):
        return f"{type(self).__name__}({self.protocol}@{self.market_address})"

    @abstractmethod
    async def quote_out(self, token_in: str, token_out: str, amount_in: Decimal) -> Decimal:
        """Amount of `token_out` received for paying `amount_in` of `token_in`."""

    @abstractmethod
    async def quote_in(self, token_in: str, token_out: str, amount_out: Decimal) -> Decimal:
        """Amount of `token_in` needed to receive `amount_out` of `token_out`."""

    @abstractmethod
    async def build_sell_call_data(self, token_in: str, amount_in: Decimal, recipient: str) -> bytes:
        ...

    @abstractmethod
    async def build_forwarding_call_data(
        self, token_in: str, amount_in: Decimal, next_market: "EthMarket"
    ) -> MultipleCallData:
        """Calls that sell `amount_in` of `token_in` here and deliver the output to `next_market`."""
