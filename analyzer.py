# analyzer.py
"""
Crossed-market detection and sizing for a single evaluation pass.

For every token, each venue is priced at a small reference volume, every
ordered venue pair whose prices cross becomes a candidate, each candidate is
sized over the trial-volume grid, and the most profitable candidate per token
goes on to ranking.
"""

import asyncio
from decimal import Decimal
from typing import Awaitable, Iterable, List, Mapping, Optional, Sequence

from config.logging_config import get_logger
from core.utils import ArbitrageConfig, ConfigError, QuoteFailure, with_timeout
from data_models import CrossedPairCandidate, Opportunity, PricedVenue, SizedVolume
from markets import EthMarket

MarketsByToken = Mapping[str, Sequence[EthMarket]]


async def checked_quote(call: Awaitable, timeout_s: float, what: str) -> Decimal:
    """Awaits a venue quote under a timeout and rejects unusable amounts."""
    amount = await with_timeout(call, timeout_s, QuoteFailure, what)
    if amount is None or isinstance(amount, bool):
        raise QuoteFailure(f"{what} returned {amount!r}")
    try:
        amount = Decimal(str(amount))
    except ArithmeticError as e:
        raise QuoteFailure(f"{what} returned non-numeric {amount!r}") from e
    if not amount.is_finite() or amount < 0:
        raise QuoteFailure(f"{what} returned invalid amount {amount}")
    return amount


class CrossingDetector:
    """Finds ordered venue pairs whose reference-volume prices cross."""

    def __init__(self, reference_token: str, reference_volume: Decimal, quote_timeout_s: float = 2.0):
        self.reference_token = reference_token
        self.reference_volume = reference_volume
        self.quote_timeout_s = quote_timeout_s
        self.log = get_logger(__name__)

    async def _price_market(self, token_address: str, market: EthMarket) -> PricedVenue:
        buy_price = await checked_quote(
            market.quote_in(token_address, self.reference_token, self.reference_volume),
            self.quote_timeout_s, f"quote_in on {market.market_address}",
        )
        sell_price = await checked_quote(
            market.quote_out(self.reference_token, token_address, self.reference_volume),
            self.quote_timeout_s, f"quote_out on {market.market_address}",
        )
        return PricedVenue(market=market, buy_price=buy_price, sell_price=sell_price)

    async def price_markets(self, token_address: str, markets: Sequence[EthMarket]) -> List[PricedVenue]:
        """Prices every venue concurrently; venues whose quotes fail are left out."""
        results = await asyncio.gather(
            *(self._price_market(token_address, m) for m in markets), return_exceptions=True
        )
        priced = []
        for market, result in zip(markets, results):
            if isinstance(result, QuoteFailure):
                self.log.warning(f"Excluding {market!r} for {token_address}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            priced.append(result)
        return priced

    @staticmethod
    def find_crossed_pairs(priced: Sequence[PricedVenue]) -> List[CrossedPairCandidate]:
        # Acquire where the venue hands out more token for the reference volume
        # than the other venue needs to hand the same reference volume back.
        candidates = []
        for sell_side in priced:
            for buy_side in priced:
                if buy_side is sell_side:
                    continue
                if buy_side.sell_price > sell_side.buy_price:
                    candidates.append(CrossedPairCandidate(buy_from=buy_side.market, sell_to=sell_side.market))
        return candidates

    async def detect(self, token_address: str, markets: Sequence[EthMarket]) -> List[CrossedPairCandidate]:
        priced = await self.price_markets(token_address, markets)
        return self.find_crossed_pairs(priced)


class VolumeSizer:
    """
    Walks the ascending trial grid keeping the best {volume, profit}. The first
    trial that fails to improve on the best triggers one midpoint probe between
    that trial and the best volume, and then sizing stops for the pair.

    This stops short of the true optimum whenever the profit curve dips before
    a later, larger peak.
    """

    def __init__(self, reference_token: str, trial_volumes: Sequence[Decimal], quote_timeout_s: float = 2.0):
        self.reference_token = reference_token
        self.trial_volumes = tuple(trial_volumes)
        self.quote_timeout_s = quote_timeout_s

    async def profit_at(self, candidate: CrossedPairCandidate, token_address: str, volume: Decimal) -> Decimal:
        tokens_out = await checked_quote(
            candidate.buy_from.quote_out(self.reference_token, token_address, volume),
            self.quote_timeout_s, f"quote_out on {candidate.buy_from.market_address}",
        )
        proceeds = await checked_quote(
            candidate.sell_to.quote_out(token_address, self.reference_token, tokens_out),
            self.quote_timeout_s, f"quote_out on {candidate.sell_to.market_address}",
        )
        return proceeds - volume

    async def size(self, candidate: CrossedPairCandidate, token_address: str) -> Optional[SizedVolume]:
        best: Optional[SizedVolume] = None
        for volume in self.trial_volumes:
            profit = await self.profit_at(candidate, token_address, volume)
            # a tie with the best counts as non-improving
            if best is not None and profit <= best.profit:
                return await self._refine(candidate, token_address, volume, best)
            best = SizedVolume(volume=volume, profit=profit)
        return best

    async def _refine(
        self, candidate: CrossedPairCandidate, token_address: str, volume: Decimal, best: SizedVolume
    ) -> SizedVolume:
        try_volume = (volume + best.volume) / 2
        try_profit = await self.profit_at(candidate, token_address, try_volume)
        if try_profit > best.profit:
            return SizedVolume(volume=try_volume, profit=try_profit)
        return best


class OpportunityRanker:
    def __init__(self, profit_floor: Decimal):
        self.profit_floor = profit_floor
        self.log = get_logger(__name__)

    def rank(self, opportunities: Iterable[Opportunity]) -> List[Opportunity]:
        """Drops opportunities at or below the profit floor and sorts the rest by profit, highest first."""
        survivors = []
        for opportunity in opportunities:
            if opportunity.profit > self.profit_floor:
                survivors.append(opportunity)
            else:
                self.log.info(
                    f"Below profit floor for {opportunity.token_address}: "
                    f"{opportunity.profit} <= {self.profit_floor}"
                )
        # sorted() is stable, so equal profits keep token order
        return sorted(survivors, key=lambda o: o.profit, reverse=True)


class MarketEvaluator:
    """Runs detection, sizing and ranking over every token of one evaluation pass."""

    def __init__(
        self,
        config: ArbitrageConfig,
        detector: Optional[CrossingDetector] = None,
        sizer: Optional[VolumeSizer] = None,
        ranker: Optional[OpportunityRanker] = None,
    ):
        if not config.reference_token:
            raise ConfigError("CRITICAL ERROR: 'reference_token' is required to evaluate markets.")
        self.config = config
        self.detector = detector or CrossingDetector(
            config.reference_token, config.reference_volume, config.quote_timeout_s
        )
        self.sizer = sizer or VolumeSizer(config.reference_token, config.trial_volumes, config.quote_timeout_s)
        self.ranker = ranker or OpportunityRanker(config.profit_floor)
        self.log = get_logger(__name__)

    async def best_opportunity(self, token_address: str, markets: Sequence[EthMarket]) -> Optional[Opportunity]:
        candidates = await self.detector.detect(token_address, markets)
        best: Optional[Opportunity] = None
        for candidate in candidates:
            try:
                sized = await self.sizer.size(candidate, token_address)
            except QuoteFailure as e:
                self.log.warning(
                    f"Dropping pair {candidate.buy_from!r} -> {candidate.sell_to!r} for {token_address}: {e}"
                )
                continue
            if sized is None:
                continue
            if best is None or sized.profit > best.profit:
                best = Opportunity(
                    token_address=token_address,
                    volume=sized.volume,
                    profit=sized.profit,
                    buy_from=candidate.buy_from,
                    sell_to=candidate.sell_to,
                )
        if best is None:
            self.log.debug(f"No crossing found for {token_address}")
        return best

    async def evaluate_markets(self, markets_by_token: MarketsByToken) -> List[Opportunity]:
        best_per_token = []
        for token_address, markets in markets_by_token.items():
            opportunity = await self.best_opportunity(token_address, markets)
            if opportunity is not None:
                best_per_token.append(opportunity)

        ranked = self.ranker.rank(best_per_token)
        for opportunity in ranked:
            self.log.info("Crossed market:\n%s", opportunity.describe())
        return ranked
