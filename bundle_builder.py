# bundle_builder.py

from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Sequence, Tuple

from eth_abi import encode
from eth_abi.exceptions import EncodingError
from eth_utils import function_signature_to_4byte_selector

from analyzer import checked_quote
from config.logging_config import get_logger
from core.utils import (
    ArbitrageConfig,
    BundleBuildFailure,
    ConfigError,
    PriceLookupFailure,
    QuoteFailure,
    UnprofitableAfterFees,
    with_timeout,
)
from data_models import Bundle, BundleEconomics, CallStep, Opportunity
from markets import MultipleCallData
from price_feed import PriceFeed

FLASHLOAN_SIGNATURE = "flashloan(address,uint256,bytes)"
FLASHLOAN_SELECTOR = function_signature_to_4byte_selector(FLASHLOAN_SIGNATURE)


def to_base_units(amount: Decimal, decimals: int) -> int:
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def encode_incentive_payload(incentive_wei: int, calls: Sequence[CallStep]) -> bytes:
    """(incentive, targets[], payloads[]) as consumed by the executor contract."""
    return encode(
        ['uint256', 'address[]', 'bytes[]'],
        [incentive_wei, [step.target for step in calls], [step.data for step in calls]],
    )


def as_call_data(data: Any, where: str) -> bytes:
    """Call data must be raw ABI bytes; anything else cannot be executed."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise BundleBuildFailure(f"{where} returned {type(data).__name__} call data, expected bytes")
    return bytes(data)


def encode_flashloan_call(borrowed_asset: str, amount: int, payload: bytes) -> bytes:
    return FLASHLOAN_SELECTOR + encode(['address', 'uint256', 'bytes'], [borrowed_asset, amount, payload])


class BundleBuilder:
    """
    Turns a ranked opportunity into the executor contract's borrow-and-execute
    transaction, or raises a CandidateSkipped subclass when it should not be sent.
    """

    def __init__(self, config: ArbitrageConfig, price_feed: PriceFeed):
        if not config.reference_token or not config.executor_address:
            raise ConfigError("CRITICAL ERROR: 'reference_token' and 'executor_address' are required to build bundles.")
        self.config = config
        self.price_feed = price_feed
        self.log = get_logger(__name__)

    def compute_economics(self, opportunity: Opportunity, conversion_rate: Decimal) -> BundleEconomics:
        fee = opportunity.volume * self.config.borrow_fee_bps / 10000
        profit_after_fee = opportunity.profit - fee
        converted_profit = profit_after_fee * conversion_rate
        incentive = converted_profit * self.config.incentive_rate_pct / 100
        return BundleEconomics(
            fee=fee,
            profit_after_fee=profit_after_fee,
            conversion_rate=conversion_rate,
            converted_profit=converted_profit,
            incentive=incentive,
            take_home=converted_profit - incentive,
        )

    async def build_calls(self, opportunity: Opportunity) -> Tuple[CallStep, ...]:
        reference = self.config.reference_token
        timeout_s = self.config.quote_timeout_s
        buy_from, sell_to = opportunity.buy_from, opportunity.sell_to

        buy_calls = await with_timeout(
            buy_from.build_forwarding_call_data(reference, opportunity.volume, sell_to),
            timeout_s, BundleBuildFailure, f"forwarding call data on {buy_from.market_address}",
        )
        try:
            intermediate = await checked_quote(
                buy_from.quote_out(reference, opportunity.token_address, opportunity.volume),
                timeout_s, f"quote_out on {buy_from.market_address}",
            )
        except QuoteFailure as e:
            raise BundleBuildFailure(str(e)) from e
        sell_call_data = await with_timeout(
            sell_to.build_sell_call_data(opportunity.token_address, intermediate, self.config.executor_address),
            timeout_s, BundleBuildFailure, f"sell call data on {sell_to.market_address}",
        )

        forward_where = f"forwarding call data on {buy_from.market_address}"
        if not isinstance(buy_calls, MultipleCallData):
            raise BundleBuildFailure(f"{forward_where} returned {type(buy_calls).__name__}, expected MultipleCallData")
        calls = [
            CallStep(target=t, data=as_call_data(d, forward_where))
            for t, d in zip(buy_calls.targets, buy_calls.data)
        ]
        calls.append(CallStep(
            target=sell_to.market_address,
            data=as_call_data(sell_call_data, f"sell call data on {sell_to.market_address}"),
        ))
        return tuple(calls)

    def build_transaction(self, opportunity: Opportunity, payload: bytes) -> Dict[str, Any]:
        volume = to_base_units(opportunity.volume, self.config.reference_decimals)
        call_data = encode_flashloan_call(self.config.reference_token, volume, payload)
        transaction = {
            "to": self.config.executor_address,
            "data": "0x" + call_data.hex(),
            "value": 0,
            # the block producer is paid through the embedded incentive, not the gas price
            "gasPrice": 0,
            "gas": self.config.provisional_gas_limit,
        }
        if self.config.executor_wallet_address:
            transaction["from"] = self.config.executor_wallet_address
        return transaction

    async def build(self, opportunity: Opportunity) -> Bundle:
        self.log.info(
            f"Send {opportunity.volume} of {self.config.reference_token} "
            f"to get {opportunity.profit} profit on {opportunity.token_address}"
        )
        calls = await self.build_calls(opportunity)

        rate = await with_timeout(
            self.price_feed.reference_to_native_rate(), self.config.rpc_timeout_s,
            PriceLookupFailure, "reference -> native price lookup",
        )
        economics = self.compute_economics(opportunity, rate)
        self.log.trade(
            f"{opportunity.token_address}: profit={opportunity.profit} volume={opportunity.volume} "
            f"fee={economics.fee} incentive={economics.incentive} take_home={economics.take_home}"
        )
        if economics.take_home <= 0:
            raise UnprofitableAfterFees(
                f"Take home {economics.take_home} after fee {economics.fee} and incentive {economics.incentive}",
                economics=economics,
            )

        incentive_wei = to_base_units(economics.incentive, self.config.native_decimals)
        try:
            payload = encode_incentive_payload(incentive_wei, calls)
            transaction = self.build_transaction(opportunity, payload)
        except (EncodingError, TypeError, ValueError) as e:
            raise BundleBuildFailure(f"Could not encode bundle for {opportunity.token_address}: {e}", economics=economics) from e
        return Bundle(
            opportunity=opportunity,
            calls=calls,
            payload=payload,
            economics=economics,
            transaction=transaction,
        )
