# tests/conftest.py

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from chain_manager import GasEstimator
from config.logging_config import setup_custom_log_levels
from core.utils import ArbitrageConfig
from data_models import SimulationResult
from markets import EthMarket, MultipleCallData
from price_feed import PriceFeed
from trade_executor import BundleRelay

setup_custom_log_levels()

REFERENCE = "0x6b175474e89094c44da98b954eedeac495271d0f"
TOKEN = "0x" + "11" * 20
OTHER_TOKEN = "0x" + "22" * 20
EXECUTOR = "0x" + "ee" * 20
WALLET = "0x" + "aa" * 20


def address(n: int) -> str:
    return "0x" + f"{n:040x}"


class PricedMarket(EthMarket):
    """Slippage-free venue quoting `price` reference units per token."""

    def __init__(self, market_address, token=TOKEN, price="1", protocol="UniswapV2"):
        super().__init__(market_address, (REFERENCE, token), protocol)
        self.token = token
        self.price = Decimal(price)
        self.quoted_volumes = []

    async def quote_out(self, token_in, token_out, amount_in):
        if token_in == REFERENCE:
            self.quoted_volumes.append(amount_in)
            return amount_in / self.price
        return amount_in * self.price

    async def quote_in(self, token_in, token_out, amount_out):
        if token_in == REFERENCE:
            return amount_out * self.price
        return amount_out / self.price

    async def build_sell_call_data(self, token_in, amount_in, recipient):
        return f"sell:{token_in}:{amount_in}:{recipient}".encode()

    async def build_forwarding_call_data(self, token_in, amount_in, next_market):
        return MultipleCallData(
            targets=(self.market_address,),
            data=(f"forward:{token_in}:{amount_in}:{next_market.market_address}".encode(),),
        )


class BrokenMarket(PricedMarket):
    def __init__(self, market_address, error=None, result=None, delay=None, **kwargs):
        super().__init__(market_address, **kwargs)
        self.error = error
        self.result = result
        self.delay = delay

    async def _fail(self):
        if self.delay is not None:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result

    async def quote_out(self, token_in, token_out, amount_in):
        return await self._fail()

    async def quote_in(self, token_in, token_out, amount_out):
        return await self._fail()


class FixedPriceFeed(PriceFeed):
    def __init__(self, rate="1"):
        self.rate = Decimal(rate)
        self.calls = 0

    async def reference_to_native_rate(self):
        self.calls += 1
        return self.rate


class FakeRelay(BundleRelay):
    def __init__(self, simulation=None, failing_blocks=()):
        self.simulation = simulation if simulation is not None else SimulationResult(
            total_gas_used=150_000, coinbase_diff=4_910_000_000_000_000_000
        )
        self.failing_blocks = set(failing_blocks)
        self.signed = []
        self.simulated = []
        self.sent = []

    async def sign_bundle(self, transactions):
        self.signed.append(transactions)
        return ("signed-bundle", len(self.signed))

    async def simulate(self, signed_bundle, block_number):
        self.simulated.append(block_number)
        return self.simulation

    async def send_raw_bundle(self, signed_bundle, block_number):
        self.sent.append(block_number)
        if block_number in self.failing_blocks:
            raise RuntimeError(f"relay rejected block {block_number}")
        return {"bundleHash": f"0x{block_number:064x}"}


def make_config(**overrides) -> ArbitrageConfig:
    values = dict(
        profit_floor=Decimal(10),
        incentive_rate_pct=Decimal(10),
        borrow_fee_bps=Decimal(9),
        gas_ceiling=2_000_000,
        trial_volumes=(Decimal(500), Decimal(1000)),
        reference_token=REFERENCE,
        executor_address=EXECUTOR,
        executor_wallet_address=WALLET,
        quote_timeout_s=0.5,
        rpc_timeout_s=0.5,
        relay_timeout_s=0.5,
    )
    values.update(overrides)
    return ArbitrageConfig(**values)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def price_feed():
    return FixedPriceFeed("1")


@pytest.fixture
def gas_estimator():
    estimator = MagicMock(spec=GasEstimator)
    estimator.estimate_gas = AsyncMock(return_value=150_000)
    return estimator


@pytest.fixture
def cheap_market():
    return PricedMarket(address(0xA), price="1")


@pytest.fixture
def rich_market():
    return PricedMarket(address(0xB), price="1.05")
