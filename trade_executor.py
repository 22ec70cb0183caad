#trade_executor.py

import asyncio
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bundle_builder import BundleBuilder
from chain_manager import GasEstimator
from config.logging_config import get_logger
from core.utils import (
    AnomalousGasEstimate,
    ArbitrageConfig,
    BundleBuildFailure,
    CandidateSkipped,
    ExhaustedCandidates,
    GasEstimationFailure,
    SimulationFailure,
    with_timeout,
)
from data_models import (
    AttemptRecord,
    BroadcastOutcome,
    Bundle,
    BundleEconomics,
    Opportunity,
    SimulationResult,
    SubmissionResult,
)
from trade_logger import TradeLogger


class BundleRelay(ABC):
    """Private transaction relay. Transport and authentication live in the implementation."""

    @abstractmethod
    async def sign_bundle(self, transactions: List[Dict[str, Any]]) -> Any:
        ...

    @abstractmethod
    async def simulate(self, signed_bundle: Any, block_number: int) -> Any:
        """Returns a SimulationResult, or a dict with error/firstRevert/totalGasUsed/coinbaseDiff."""

    @abstractmethod
    async def send_raw_bundle(self, signed_bundle: Any, block_number: int) -> Any:
        ...


def as_simulation_result(response: Any) -> SimulationResult:
    if isinstance(response, SimulationResult):
        return response
    if isinstance(response, dict):
        return SimulationResult(
            error=response.get('error'),
            first_revert=response.get('firstRevert', response.get('first_revert')),
            total_gas_used=int(response.get('totalGasUsed', response.get('total_gas_used', 0)) or 0),
            coinbase_diff=int(response.get('coinbaseDiff', response.get('coinbase_diff', 0)) or 0),
        )
    raise SimulationFailure(f"Unrecognised simulation response: {response!r}")


class SubmissionPipeline:
    """
    Takes ranked opportunities one at a time: build the bundle, estimate gas,
    sign, simulate against the next block, then broadcast to the next two
    blocks. The first opportunity to reach broadcast ends the run.
    """

    def __init__(
        self,
        config: ArbitrageConfig,
        bundle_builder: BundleBuilder,
        gas_estimator: GasEstimator,
        relay: BundleRelay,
        trade_logger: Optional[TradeLogger] = None,
    ):
        self.config = config
        self.bundle_builder = bundle_builder
        self.gas_estimator = gas_estimator
        self.relay = relay
        self.trade_logger = trade_logger
        self.log = get_logger(__name__)

    async def take_crossed_markets(self, opportunities: Sequence[Opportunity], block_number: int) -> SubmissionResult:
        for opportunity in opportunities:
            bundle = None
            try:
                bundle = await self.bundle_builder.build(opportunity)
                result = await self.submit(bundle, block_number)
            except CandidateSkipped as e:
                self.log.warning(f"Skipping {opportunity.token_address} ({e.reason}): {e}")
                economics = bundle.economics if bundle is not None else e.economics
                self._record(opportunity, "SKIPPED", e.reason, economics)
                continue

            self._record(
                opportunity, "SUBMITTED", "", bundle.economics,
                tuple(outcome.target_block for outcome in result.broadcasts),
            )
            return result

        raise ExhaustedCandidates("No arbitrage submitted to relay")

    async def estimate_gas_limit(self, bundle: Bundle) -> int:
        estimate = await with_timeout(
            self.gas_estimator.estimate_gas(bundle.transaction), self.config.rpc_timeout_s,
            GasEstimationFailure, f"estimate gas for {bundle.opportunity.token_address}",
        )
        if estimate > self.config.gas_ceiling:
            raise AnomalousGasEstimate(f"EstimateGas succeeded, but suspiciously large: {estimate}")
        return int(estimate) * self.config.gas_headroom_multiplier

    async def submit(self, bundle: Bundle, block_number: int) -> SubmissionResult:
        gas_limit = await self.estimate_gas_limit(bundle)
        bundle = bundle.with_gas_limit(gas_limit)

        signed_bundle = await with_timeout(
            self.relay.sign_bundle([bundle.transaction]), self.config.relay_timeout_s,
            BundleBuildFailure, "sign bundle",
        )
        simulation = await self.simulate(signed_bundle, block_number + 1, bundle.opportunity)
        broadcasts = await self.broadcast(signed_bundle, (block_number + 1, block_number + 2))
        return SubmissionResult(bundle=bundle, simulation=simulation, broadcasts=broadcasts)

    async def simulate(self, signed_bundle: Any, target_block: int, opportunity: Opportunity) -> SimulationResult:
        response = await with_timeout(
            self.relay.simulate(signed_bundle, target_block), self.config.relay_timeout_s,
            SimulationFailure, f"simulate against block {target_block}",
        )
        simulation = as_simulation_result(response)
        if not simulation.ok:
            raise SimulationFailure(
                f"Simulation Error on token {opportunity.token_address}: "
                f"error={simulation.error} first_revert={simulation.first_revert}"
            )

        effective_gwei = Decimal(0)
        if simulation.total_gas_used:
            effective_gwei = Decimal(simulation.coinbase_diff) / simulation.total_gas_used / Decimal(10**9)
        self.log.info(
            f"Submitting bundle, profit sent to miner: {Decimal(simulation.coinbase_diff).scaleb(-18)}, "
            f"effective gas price: {effective_gwei} GWEI"
        )
        return simulation

    async def broadcast(self, signed_bundle: Any, target_blocks: Tuple[int, ...]) -> Tuple[BroadcastOutcome, ...]:
        """Sends the same signed bundle for every target block at once and waits for all of them."""
        tasks = [
            asyncio.wait_for(self.relay.send_raw_bundle(signed_bundle, block), timeout=self.config.relay_timeout_s)
            for block in target_blocks
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = []
        for block, result in zip(target_blocks, results):
            if isinstance(result, Exception):
                self.log.error(f"Bundle submission for block {block} failed: {type(result).__name__}: {result}")
                outcomes.append(BroadcastOutcome(target_block=block, error=f"{type(result).__name__}: {result}"))
            elif isinstance(result, BaseException):
                raise result
            else:
                self.log.success(f"Bundle submitted for block {block}")
                outcomes.append(BroadcastOutcome(target_block=block, ack=result))
        return tuple(outcomes)

    def _record(
        self,
        opportunity: Opportunity,
        status: str,
        reason: str,
        economics: Optional[BundleEconomics],
        target_blocks: Tuple[int, ...] = (),
    ) -> None:
        if self.trade_logger is None:
            return
        self.trade_logger.log_attempt(AttemptRecord(
            timestamp=int(time.time()),
            token_address=opportunity.token_address,
            buy_from=opportunity.buy_from.market_address,
            sell_to=opportunity.sell_to.market_address,
            volume=opportunity.volume,
            profit=opportunity.profit,
            status=status,
            reason=reason,
            fee=economics.fee if economics else None,
            incentive=economics.incentive if economics else None,
            take_home=economics.take_home if economics else None,
            target_blocks=target_blocks,
        ))
