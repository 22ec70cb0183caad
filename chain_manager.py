# chain_manager.py

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict

from web3 import AsyncWeb3

from config.logging_config import get_logger
from core.utils import ConfigError, GasEstimationFailure, PriceLookupFailure, with_timeout
from price_feed import PriceFeed

PAIR_ABI = [
    {
        "constant": True, "inputs": [], "name": "getReserves",
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
        "stateMutability": "view", "type": "function",
    },
    {
        "constant": True, "inputs": [], "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view", "type": "function",
    },
]


class GasEstimator(ABC):
    @abstractmethod
    async def estimate_gas(self, transaction: Dict[str, Any]) -> int:
        ...


class AsyncChainManager(GasEstimator):
    """
    Asynchronous wrapper around a single JSON-RPC endpoint. Every call runs under
    the configured timeout and fails with the caller's designated error.
    """

    def __init__(self, w3: AsyncWeb3, timeout_s: float = 5.0):
        self.w3 = w3
        self.timeout_s = timeout_s
        self.log = get_logger(__name__)

    @classmethod
    def from_url(cls, rpc_url: str, timeout_s: float = 5.0) -> "AsyncChainManager":
        if not rpc_url:
            raise ConfigError("CRITICAL ERROR: 'rpc_url' is empty. Set ETH_RPC_URL in your .env file.")
        return cls(AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url)), timeout_s)

    async def get_block_number(self) -> int:
        return await asyncio.wait_for(self.w3.eth.block_number, timeout=self.timeout_s)

    async def estimate_gas(self, transaction: Dict[str, Any]) -> int:
        estimate = await with_timeout(
            self.w3.eth.estimate_gas(transaction), self.timeout_s, GasEstimationFailure, "estimate_gas"
        )
        return int(estimate)

    async def pair_reserves(self, pair_address: str):
        pair = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(pair_address), abi=PAIR_ABI)
        reserves = await with_timeout(
            pair.functions.getReserves().call(), self.timeout_s, PriceLookupFailure, f"getReserves on {pair_address}"
        )
        token0 = await with_timeout(
            pair.functions.token0().call(), self.timeout_s, PriceLookupFailure, f"token0 on {pair_address}"
        )
        return token0, int(reserves[0]), int(reserves[1])


class PairReservePriceFeed(PriceFeed):
    """Mid price of a (reference asset, native asset) constant-product base pair."""

    def __init__(
        self,
        chain: AsyncChainManager,
        pair_address: str,
        reference_token: str,
        reference_decimals: int = 18,
        native_decimals: int = 18,
    ):
        self.chain = chain
        self.pair_address = pair_address
        self.reference_token = reference_token
        self.reference_decimals = reference_decimals
        self.native_decimals = native_decimals
        self.log = get_logger(__name__)

    async def reference_to_native_rate(self) -> Decimal:
        token0, reserve0, reserve1 = await self.chain.pair_reserves(self.pair_address)
        if token0.lower() == self.reference_token.lower():
            reference_reserve, native_reserve = reserve0, reserve1
        else:
            reference_reserve, native_reserve = reserve1, reserve0

        if reference_reserve <= 0 or native_reserve <= 0:
            raise PriceLookupFailure(f"Base pair {self.pair_address} has empty reserves")

        reference_units = Decimal(reference_reserve).scaleb(-self.reference_decimals)
        native_units = Decimal(native_reserve).scaleb(-self.native_decimals)
        rate = native_units / reference_units
        self.log.debug(f"Reference -> native rate from pair {self.pair_address}: {rate}")
        return rate
