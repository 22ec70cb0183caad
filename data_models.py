#data_models.py

from dataclasses import dataclass, asdict, field, replace
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from markets import EthMarket


@dataclass(frozen=True)
class PricedVenue:
    """
    A venue priced at the reference volume. Both prices are token units per
    `reference_volume` of reference asset: `sell_price` is what the venue hands
    out when we pay in, `buy_price` is what it takes to hand the reference back.
    """
    market: EthMarket
    buy_price: Decimal
    sell_price: Decimal


@dataclass(frozen=True)
class CrossedPairCandidate:
    buy_from: EthMarket
    sell_to: EthMarket


@dataclass(frozen=True)
class SizedVolume:
    volume: Decimal
    profit: Decimal


@dataclass(frozen=True)
class Opportunity:
    """A sized crossed-market opportunity. Profit and volume are in the reference asset."""
    token_address: str
    volume: Decimal
    profit: Decimal
    buy_from: EthMarket
    sell_to: EthMarket

    def describe(self) -> str:
        buy_tokens = self.buy_from.tokens
        sell_tokens = self.sell_to.tokens
        return (
            f"Profit: {self.profit} Volume: {self.volume}\n"
            f"{self.buy_from.protocol} ({self.buy_from.market_address})\n"
            f"  {buy_tokens[0]} => {buy_tokens[1]}\n"
            f"{self.sell_to.protocol} ({self.sell_to.market_address})\n"
            f"  {sell_tokens[0]} => {sell_tokens[1]}\n"
        )


@dataclass(frozen=True)
class CallStep:
    target: str
    data: bytes


@dataclass(frozen=True)
class BundleEconomics:
    fee: Decimal
    profit_after_fee: Decimal
    conversion_rate: Decimal
    converted_profit: Decimal
    incentive: Decimal
    take_home: Decimal


@dataclass(frozen=True)
class Bundle:
    opportunity: Opportunity
    calls: Tuple[CallStep, ...]
    payload: bytes
    economics: BundleEconomics
    transaction: Dict[str, Any]

    @property
    def targets(self) -> Tuple[str, ...]:
        return tuple(step.target for step in self.calls)

    def with_gas_limit(self, gas_limit: int) -> "Bundle":
        return replace(self, transaction={**self.transaction, "gas": int(gas_limit)})


@dataclass(frozen=True)
class SimulationResult:
    error: Optional[str] = None
    first_revert: Optional[Any] = None
    total_gas_used: int = 0
    coinbase_diff: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.first_revert is None


@dataclass(frozen=True)
class BroadcastOutcome:
    target_block: int
    ack: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SubmissionResult:
    bundle: Bundle
    simulation: SimulationResult
    broadcasts: Tuple[BroadcastOutcome, ...]

    @property
    def accepted(self) -> bool:
        return any(outcome.ok for outcome in self.broadcasts)


@dataclass
class AttemptRecord:
    """A dataclass for structured attempt ledger entries."""
    timestamp: int
    token_address: str
    buy_from: str
    sell_to: str
    volume: Decimal
    profit: Decimal
    status: str
    reason: str = ""
    fee: Optional[Decimal] = None
    incentive: Optional[Decimal] = None
    take_home: Optional[Decimal] = None
    target_blocks: Tuple[int, ...] = field(default_factory=tuple)

    def to_dict(self):
        return asdict(self)
