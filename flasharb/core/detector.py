"""Arbitrage opportunity detection across AMM venues."""

from itertools import combinations
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from loguru import logger

from flasharb.config import Config
from .amm import BPS, golden_section_max, price_impact
from .types import Opportunity, Pair, VenueQuote

GWEI = 1e-9


class OpportunityDetector:
    """Finds the most profitable flash-loan round trip per pair.

    ``find_opportunities`` is a pure function of its inputs: the same snapshot
    always yields the same, identically ordered list.
    """

    def __init__(self, config: Config):
        self.config = config
        self.min_spread_bps = config.detector.min_spread_bps
        self.min_profit_absolute = config.detector.min_profit_absolute
        self.min_profit_pct = config.detector.min_profit_pct
        self.max_liquidity_fraction = config.detector.max_liquidity_fraction
        self.fee_basis = config.detector.fee_basis
        self.gas_units = config.detector.gas_units
        self.search_iterations = config.detector.size_search_iterations
        self.loan_fee_bps = config.fees.loan_fee_bps
        self.max_quote_age_ms = config.aggregator.max_quote_age_ms
        self._borrow_tokens: Dict[Pair, str] = {
            Pair(pair.token_a, pair.token_b): pair.borrowed for pair in config.pairs
        }

    def borrow_token(self, pair: Pair) -> str:
        """Token borrowed by the flash loan for ``pair``."""
        return self._borrow_tokens.get(pair, pair.token_b)

    def find_opportunities(self, quotes: Mapping[Pair, Sequence[VenueQuote]],
                           gas_price_gwei: Optional[float] = None) -> List[Opportunity]:
        """Detect opportunities, at most one per pair, ordered by net profit (descending)."""
        gas_price = gas_price_gwei if gas_price_gwei is not None else self.config.gas.default_price_gwei
        observed = [quote.observed_at_ms for pair_quotes in quotes.values() for quote in pair_quotes]
        reference_ms = max(observed) if observed else 0

        opportunities = []
        for pair in sorted(quotes, key=lambda p: p.key):
            opportunity = self.evaluate_pair(pair, quotes[pair], gas_price, quotes, reference_ms)
            if opportunity:
                opportunities.append(opportunity)

        opportunities.sort(key=lambda o: (-o.net_profit, o.pair.key, o.buy_venue, o.sell_venue))
        if opportunities:
            logger.info(f"Detected {len(opportunities)} opportunities, best net {opportunities[0].net_profit:.6f}")
        return opportunities

    def evaluate_pair(self, pair: Pair, pair_quotes: Sequence[VenueQuote], gas_price_gwei: float,
                      snapshot: Optional[Mapping[Pair, Sequence[VenueQuote]]] = None,
                      reference_ms: Optional[int] = None,
                      gas_units: Optional[int] = None) -> Optional[Opportunity]:
        """Best opportunity among every venue combination for one pair."""
        usable = self._usable_quotes(pair, pair_quotes)
        if len(usable) < 2:
            return None

        borrowed = self.borrow_token(pair)
        gas_cost = self.gas_cost_in(borrowed, gas_price_gwei, snapshot or {pair: usable},
                                    gas_units if gas_units is not None else self.gas_units)
        if gas_cost is None:
            logger.warning(f"Cannot price gas in {borrowed} for {pair}, skipping")
            return None
        if reference_ms is None:
            reference_ms = max(quote.observed_at_ms for quote in usable)

        candidates = []
        for first, second in combinations(usable, 2):
            spread_bps = self.spread_bps(first.price, second.price)
            if spread_bps <= 0 or spread_bps < self.min_spread_bps:
                logger.debug(f"{pair} {first.venue}/{second.venue}: spread {spread_bps:.2f} bps below threshold")
                continue

            buy, sell = (first, second) if first.price < second.price else (second, first)
            opportunity = self._size_round_trip(pair, borrowed, buy, sell, spread_bps, gas_cost, reference_ms)
            if opportunity is None:
                continue

            passed, reason = self._passes_thresholds(opportunity)
            if not passed:
                logger.debug(f"❌ {pair} buy {buy.venue} sell {sell.venue}: {reason}")
                continue
            candidates.append(opportunity)

        if not candidates:
            return None

        candidates.sort(key=lambda o: (-o.net_profit, o.buy_venue, o.sell_venue))
        best = candidates[0]
        logger.info(
            f"🔍 Opportunity {pair}: buy {best.buy_venue} @ {best.buy_price:.6f}, "
            f"sell {best.sell_venue} @ {best.sell_price:.6f}, size {best.trade_size:.4f} {borrowed}, "
            f"net {best.net_profit:.6f}"
        )
        return best

    @staticmethod
    def spread_bps(price_a: float, price_b: float) -> float:
        """Relative spread against the mean price, in basis points."""
        mean = (price_a + price_b) / 2
        if mean <= 0:
            return 0.0
        return abs(price_a - price_b) / mean * BPS

    def max_trade_size(self, borrowed: str, buy: VenueQuote, sell: VenueQuote) -> float:
        """Size cap: a fraction of the thinner venue's borrowed-token liquidity, and the global notional cap."""
        thinner = min(buy.reserve_of(borrowed), sell.reserve_of(borrowed))
        return min(self.max_liquidity_fraction * thinner, self.config.get_max_trade_size(borrowed))

    def round_trip(self, borrowed: str, buy: VenueQuote, sell: VenueQuote, trade_size: float) -> Tuple[float, float]:
        """Outputs of both legs for ``trade_size`` of the borrowed token.

        Borrowing token_b buys token_a on the cheap venue and sells it on the
        expensive one; borrowing token_a does the reverse.
        """
        pair = buy.pair
        other = pair.other(borrowed)
        if borrowed == pair.token_b:
            first, second = buy, sell
            first_price, second_price = 1.0 / buy.price, sell.price
        else:
            first, second = sell, buy
            first_price, second_price = sell.price, 1.0 / buy.price

        impact_1 = price_impact(trade_size, first.reserve_of(borrowed), first.impact_coefficient)
        first_out = trade_size * first_price * (1 - impact_1)
        impact_2 = price_impact(first_out, second.reserve_of(other), second.impact_coefficient)
        second_out = first_out * second_price * (1 - impact_2)
        return first_out, second_out

    def profit_breakdown(self, borrowed: str, buy: VenueQuote, sell: VenueQuote,
                         trade_size: float, gas_cost: float) -> Dict[str, float]:
        """Gross, fee, gas and net profit for a given size, in borrowed-token units."""
        first_out, second_out = self.round_trip(borrowed, buy, sell, trade_size)
        gross = second_out - trade_size
        fee_bps = buy.fee_bps + sell.fee_bps + self.loan_fee_bps
        if self.fee_basis == "notional":
            fees = trade_size * fee_bps / BPS
        else:
            fees = max(gross, 0.0) * fee_bps / BPS
        return {
            "first_out": first_out,
            "second_out": second_out,
            "gross": gross,
            "fees": fees,
            "gas": gas_cost,
            "net": gross - fees - gas_cost,
        }

    def gas_cost_in(self, token: str, gas_price_gwei: float,
                    snapshot: Mapping[Pair, Sequence[VenueQuote]],
                    gas_units: Optional[int] = None) -> Optional[float]:
        """Estimated gas cost converted into ``token`` units via the native token price."""
        units = gas_units if gas_units is not None else self.gas_units
        native_cost = units * gas_price_gwei * GWEI
        if native_cost <= 0:
            return 0.0
        rate = self.native_price_in(token, snapshot)
        if rate is None:
            return None
        return native_cost * rate

    def native_price_in(self, token: str, snapshot: Mapping[Pair, Sequence[VenueQuote]]) -> Optional[float]:
        native = self.config.gas.native_token
        if token == native:
            return 1.0
        native_pair = Pair(native, token)
        prices = [
            quote.oriented(native_pair).price
            for quote in snapshot.get(native_pair, ())
            if quote.is_valid()
        ]
        if prices:
            return sum(prices) / len(prices)
        return self.config.gas.native_price_fallback.get(token)

    def _usable_quotes(self, pair: Pair, pair_quotes: Sequence[VenueQuote]) -> List[VenueQuote]:
        newest: Dict[str, VenueQuote] = {}
        for quote in pair_quotes:
            if quote.pair != pair or not quote.is_valid():
                continue
            oriented = quote.oriented(pair)
            current = newest.get(oriented.venue)
            if current is None or oriented.observed_at_ms > current.observed_at_ms:
                newest[oriented.venue] = oriented
        return [newest[venue] for venue in sorted(newest)]

    def _size_round_trip(self, pair: Pair, borrowed: str, buy: VenueQuote, sell: VenueQuote,
                         spread_bps: float, gas_cost: float, reference_ms: int) -> Optional[Opportunity]:
        cap = self.max_trade_size(borrowed, buy, sell)
        if cap <= 0:
            return None

        size, _ = golden_section_max(
            lambda x: self.profit_breakdown(borrowed, buy, sell, x, gas_cost)["net"],
            0.0, cap, self.search_iterations,
        )
        if size <= 0:
            return None
        breakdown = self.profit_breakdown(borrowed, buy, sell, size, gas_cost)
        if breakdown["net"] <= 0:
            logger.debug(
                f"{pair} buy {buy.venue} sell {sell.venue}: best net {breakdown['net']:.6f} "
                f"(gross {breakdown['gross']:.6f}, fees {breakdown['fees']:.6f}, gas {gas_cost:.6f})"
            )
            return None

        return Opportunity(
            pair=pair,
            buy_venue=buy.venue,
            sell_venue=sell.venue,
            trade_size=size,
            gross_profit=breakdown["gross"],
            fees_cost=breakdown["fees"],
            gas_cost=gas_cost,
            net_profit=breakdown["net"],
            confidence=self._calculate_confidence(borrowed, buy, sell, size, breakdown, reference_ms),
            borrowed_token=borrowed,
            buy_price=buy.price,
            sell_price=sell.price,
            spread_bps=spread_bps,
            expected_return=breakdown["second_out"],
            detected_at_ms=reference_ms,
            metadata={
                "size_cap": cap,
                "intermediate_amount": breakdown["first_out"],
                "buy_fee_bps": buy.fee_bps,
                "sell_fee_bps": sell.fee_bps,
                "loan_fee_bps": self.loan_fee_bps,
                "fee_basis": self.fee_basis,
            },
        )

    def _passes_thresholds(self, opportunity: Opportunity) -> Tuple[bool, Optional[str]]:
        if opportunity.net_profit <= self.min_profit_absolute:
            return False, f"net {opportunity.net_profit:.6f} <= min {self.min_profit_absolute}"
        if opportunity.profit_pct <= self.min_profit_pct:
            return False, f"net {opportunity.profit_pct:.4f}% <= min {self.min_profit_pct}%"
        return True, None

    def _calculate_confidence(self, borrowed: str, buy: VenueQuote, sell: VenueQuote, size: float,
                              breakdown: Dict[str, float], reference_ms: int) -> float:
        """Confidence in [0, 1] from quote freshness, depth headroom and profit margin."""
        oldest = min(buy.observed_at_ms, sell.observed_at_ms)
        lag = max(0, reference_ms - oldest)
        freshness = 1.0 - min(1.0, lag / self.max_quote_age_ms) if self.max_quote_age_ms > 0 else 1.0

        thinner = min(buy.reserve_of(borrowed), sell.reserve_of(borrowed))
        depth = 1.0 - min(1.0, size / thinner) if thinner > 0 else 0.0

        costs = breakdown["fees"] + breakdown["gas"]
        margin = breakdown["net"] / (breakdown["net"] + costs) if breakdown["net"] + costs > 0 else 0.0

        confidence = 0.5 * freshness + 0.3 * depth + 0.2 * margin
        return round(max(0.0, min(1.0, confidence)), 4)

    def get_opportunity_summary(self, opportunities: List[Opportunity]) -> Dict[str, float]:
        """Get summary statistics for a batch of opportunities."""
        if not opportunities:
            return {"count": 0, "total_net_profit": 0.0, "avg_spread_bps": 0.0, "avg_confidence": 0.0}
        return {
            "count": len(opportunities),
            "total_net_profit": sum(o.net_profit for o in opportunities),
            "avg_spread_bps": sum(o.spread_bps for o in opportunities) / len(opportunities),
            "avg_confidence": sum(o.confidence for o in opportunities) / len(opportunities),
        }
