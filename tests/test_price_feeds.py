# tests/test_price_feeds.py

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from chain_manager import AsyncChainManager, PairReservePriceFeed
from core.utils import ConfigError, GasEstimationFailure, PriceLookupFailure
from price_feed import CcxtPriceFeed
from conftest import REFERENCE, address

WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"


@pytest.fixture
def exchange():
    mock_exchange = MagicMock()
    mock_exchange.id = "kraken"
    mock_exchange.fetch_ticker = AsyncMock(return_value={"bid": 2000, "ask": 2002, "last": 2005})
    mock_exchange.close = AsyncMock()
    return mock_exchange


@pytest.fixture
def chain():
    mock_chain = MagicMock(spec=AsyncChainManager)
    mock_chain.pair_reserves = AsyncMock()
    return mock_chain


# --- CcxtPriceFeed ---

async def test_ccxt_feed_inverts_native_quoted_in_reference(exchange):
    feed = CcxtPriceFeed(exchange, "ETH/DAI", "ETH")

    rate = await feed.reference_to_native_rate()

    assert rate == 1 / Decimal(2001)
    exchange.fetch_ticker.assert_awaited_once_with("ETH/DAI")


async def test_ccxt_feed_uses_last_without_order_book(exchange):
    exchange.fetch_ticker.return_value = {"bid": None, "ask": None, "last": "0.0005"}
    feed = CcxtPriceFeed(exchange, "DAI/ETH", "ETH")

    assert await feed.reference_to_native_rate() == Decimal("0.0005")


async def test_ccxt_feed_without_price_fails(exchange):
    exchange.fetch_ticker.return_value = {"bid": None, "ask": None, "last": None}

    with pytest.raises(PriceLookupFailure):
        await CcxtPriceFeed(exchange, "ETH/DAI", "ETH").reference_to_native_rate()


async def test_ccxt_network_error_is_price_lookup_failure(exchange):
    exchange.fetch_ticker.side_effect = ConnectionError("exchange unreachable")

    with pytest.raises(PriceLookupFailure):
        await CcxtPriceFeed(exchange, "ETH/DAI", "ETH").reference_to_native_rate()


def test_ccxt_symbol_must_trade_native_asset(exchange):
    with pytest.raises(ConfigError):
        CcxtPriceFeed(exchange, "BTC/DAI", "ETH")


async def test_ccxt_feed_closes_exchange(exchange):
    await CcxtPriceFeed(exchange, "ETH/DAI", "ETH").close()

    exchange.close.assert_awaited_once()


# --- PairReservePriceFeed ---

async def test_pair_feed_rate_with_reference_as_token0(chain):
    chain.pair_reserves.return_value = (REFERENCE.upper().replace("0X", "0x"), 2_000_000 * 10**18, 1_000 * 10**18)
    feed = PairReservePriceFeed(chain, address(7), REFERENCE)

    assert await feed.reference_to_native_rate() == Decimal("0.0005")


async def test_pair_feed_rate_with_reference_as_token1(chain):
    chain.pair_reserves.return_value = (WETH, 1_000 * 10**18, 2_000_000 * 10**6)
    feed = PairReservePriceFeed(chain, address(7), REFERENCE, reference_decimals=6)

    assert await feed.reference_to_native_rate() == Decimal("0.0005")


async def test_pair_feed_with_empty_reserves_fails(chain):
    chain.pair_reserves.return_value = (REFERENCE, 0, 0)

    with pytest.raises(PriceLookupFailure):
        await PairReservePriceFeed(chain, address(7), REFERENCE).reference_to_native_rate()


# --- AsyncChainManager ---

async def test_estimate_gas_returns_int():
    w3 = MagicMock()
    w3.eth.estimate_gas = AsyncMock(return_value=21_000)

    assert await AsyncChainManager(w3, timeout_s=0.5).estimate_gas({"to": address(1)}) == 21_000
    w3.eth.estimate_gas.assert_awaited_once_with({"to": address(1)})


async def test_estimate_gas_error_is_gas_estimation_failure():
    w3 = MagicMock()
    w3.eth.estimate_gas = AsyncMock(side_effect=ValueError("execution reverted"))

    with pytest.raises(GasEstimationFailure):
        await AsyncChainManager(w3, timeout_s=0.5).estimate_gas({"to": address(1)})


async def test_pair_reserves_reads_reserves_and_token0():
    w3 = MagicMock()
    pair = w3.eth.contract.return_value
    pair.functions.getReserves.return_value.call = AsyncMock(return_value=[5, 7, 1700000000])
    pair.functions.token0.return_value.call = AsyncMock(return_value=WETH)

    token0, reserve0, reserve1 = await AsyncChainManager(w3, timeout_s=0.5).pair_reserves(WETH)

    assert (token0, reserve0, reserve1) == (WETH, 5, 7)


def test_from_url_requires_rpc_url():
    with pytest.raises(ConfigError):
        AsyncChainManager.from_url("")


async def test_block_number_is_read_under_timeout():
    async def height():
        return 17_000_000

    w3 = MagicMock()
    w3.eth.block_number = height()

    assert await AsyncChainManager(w3, timeout_s=0.5).get_block_number() == 17_000_000
