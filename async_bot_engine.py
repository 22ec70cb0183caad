from typing import Optional

from analyzer import MarketEvaluator, MarketsByToken
from bundle_builder import BundleBuilder
from chain_manager import AsyncChainManager, GasEstimator, PairReservePriceFeed
from config.logging_config import get_logger
from core.utils import ArbitrageConfig, ConfigError
from data_models import SubmissionResult
from price_feed import CcxtPriceFeed, PriceFeed
from trade_executor import BundleRelay, SubmissionPipeline
from trade_logger import TradeLogger


def build_price_feed(config: ArbitrageConfig, chain: Optional[AsyncChainManager] = None) -> PriceFeed:
    """Picks the reference -> native price source named in the `price_source` config section."""
    source = config.price_source or {}
    kind = source.get('kind', 'pair')
    if kind == 'pair':
        if chain is None or not source.get('pair_address'):
            raise ConfigError("CRITICAL ERROR: price_source 'pair' needs a chain connection and 'pair_address'.")
        return PairReservePriceFeed(
            chain, source['pair_address'], config.reference_token,
            config.reference_decimals, config.native_decimals,
        )
    if kind == 'ccxt':
        return CcxtPriceFeed.from_config(source, timeout_s=config.rpc_timeout_s)
    raise ConfigError(f"CRITICAL ERROR: Unknown price_source kind '{kind}'.")


class AsyncArbitrageBot:
    """
    One evaluation-and-execution pass: find and rank crossed markets, then hand
    the ranked list to the submission pipeline. Nothing is carried between passes.
    """

    def __init__(
        self,
        config: ArbitrageConfig,
        gas_estimator: GasEstimator,
        relay: BundleRelay,
        price_feed: PriceFeed,
        trade_logger: Optional[TradeLogger] = None,
        chain: Optional[AsyncChainManager] = None,
    ):
        self.config = config
        self.chain = chain
        self.evaluator = MarketEvaluator(config)
        self.pipeline = SubmissionPipeline(
            config, BundleBuilder(config, price_feed), gas_estimator, relay, trade_logger
        )
        self.log = get_logger(__name__)

    @classmethod
    def from_chain(
        cls, config: ArbitrageConfig, relay: BundleRelay, trade_logger: Optional[TradeLogger] = None
    ) -> "AsyncArbitrageBot":
        chain = AsyncChainManager.from_url(config.rpc_url, timeout_s=config.rpc_timeout_s)
        return cls(config, chain, relay, build_price_feed(config, chain), trade_logger, chain=chain)

    async def run_once(self, markets_by_token: MarketsByToken, block_number: Optional[int] = None) -> SubmissionResult:
        """
        Raises ExhaustedCandidates when nothing reached the relay. Without a block
        number the current height is read from the chain connection.
        """
        if block_number is None:
            if self.chain is None:
                raise ConfigError("CRITICAL ERROR: run_once needs a block number or a chain connection.")
            block_number = await self.chain.get_block_number()
        self.log.info(f"--- Evaluating {len(markets_by_token)} tokens at block {block_number} ---")
        opportunities = await self.evaluator.evaluate_markets(markets_by_token)
        self.log.info(f"{len(opportunities)} ranked opportunities above the profit floor.")

        result = await self.pipeline.take_crossed_markets(opportunities, block_number)
        accepted = [o.target_block for o in result.broadcasts if o.ok]
        if accepted:
            self.log.success(f"Bundle for {result.bundle.opportunity.token_address} accepted for blocks {accepted}")
        else:
            self.log.error(f"Bundle for {result.bundle.opportunity.token_address} was rejected for every target block")
        return result
