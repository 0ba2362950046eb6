"""Deterministic in-memory venues and ledger for paper trading."""

import asyncio
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple, Union
from dataclasses import dataclass
from loguru import logger

from flasharb.config import Config, ConfigError, FeedConfig, GasOracleConfig, LedgerConfig, VenueConfig
from flasharb.core.amm import amount_out
from flasharb.core.types import NewBlock, Pair, PendingTransaction, SettlementRequest, now_ms
from .base import (
    AdapterQuote, ExchangeAdapter, GasPriceOracle, LedgerResult, PendingFeed,
    SettlementLedger, SwapResult, VenueError,
)
from .registry import register_adapter, register_feed, register_gas_oracle, register_ledger


@dataclass
class PaperPool:
    """Constant-product pool state."""
    token_a: str
    token_b: str
    reserve_a: float
    reserve_b: float

    def reserves_for(self, token_in: str) -> Tuple[float, float]:
        if token_in == self.token_a:
            return self.reserve_a, self.reserve_b
        return self.reserve_b, self.reserve_a

    def apply_swap(self, token_in: str, amount_in: float, out: float):
        if token_in == self.token_a:
            self.reserve_a += amount_in
            self.reserve_b -= out
        else:
            self.reserve_b += amount_in
            self.reserve_a -= out


@register_adapter("paper")
class PaperVenue(ExchangeAdapter):
    """Venue backed by in-memory constant-product pools.

    ``params.pools`` is a list of ``{token_a, token_b, reserve_a, reserve_b}``.
    """

    def __init__(self, venue: VenueConfig):
        super().__init__(venue)
        self.pools: Dict[Pair, PaperPool] = {}
        self.swaps_executed = 0
        for pool in venue.params.get("pools", []):
            try:
                self.add_pool(pool["token_a"], pool["token_b"], float(pool["reserve_a"]), float(pool["reserve_b"]))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid paper pool for venue {venue.id}: {pool} ({e})") from e

    def add_pool(self, token_a: str, token_b: str, reserve_a: float, reserve_b: float):
        if reserve_a <= 0 or reserve_b <= 0:
            raise ValueError("pool reserves must be positive")
        self.pools[Pair(token_a, token_b)] = PaperPool(token_a, token_b, reserve_a, reserve_b)

    def get_pool(self, pair: Pair) -> PaperPool:
        pool = self.pools.get(pair)
        if pool is None:
            raise VenueError(f"{self.venue_id} has no pool for {pair}")
        return pool

    async def quote(self, pair: Pair) -> AdapterQuote:
        pool = self.get_pool(pair)
        reserve_a, _ = pool.reserves_for(pair.token_a)
        reserve_b, _ = pool.reserves_for(pair.token_b)
        return AdapterQuote(
            price=reserve_b / reserve_a,
            liquidity_a=reserve_a,
            liquidity_b=reserve_b,
            fee_bps=self.fee_bps,
            observed_at_ms=now_ms(),
        )

    def simulate_swap(self, token_in: str, token_out: str, amount_in: float) -> float:
        pool = self.get_pool(Pair(token_in, token_out))
        reserve_in, reserve_out = pool.reserves_for(token_in)
        return amount_out(amount_in, reserve_in, reserve_out, self.fee_bps, self.impact_coefficient)

    async def swap(self, token_in: str, token_out: str, amount_in: float,
                   min_out: float, deadline: int) -> SwapResult:
        if deadline and time.time() > deadline:
            return SwapResult(success=False, error="EXPIRED")
        try:
            out = self.simulate_swap(token_in, token_out, amount_in)
        except VenueError as e:
            return SwapResult(success=False, error=str(e))
        if out < min_out:
            return SwapResult(success=False, amount_out=out, error="INSUFFICIENT_OUTPUT_AMOUNT")
        self.get_pool(Pair(token_in, token_out)).apply_swap(token_in, amount_in, out)
        self.swaps_executed += 1
        return SwapResult(success=True, amount_out=out, tx_reference=f"{self.venue_id}-swap-{self.swaps_executed}")

    def snapshot(self) -> Dict[Pair, Tuple[float, float]]:
        return {pair: (pool.reserve_a, pool.reserve_b) for pair, pool in self.pools.items()}

    def restore(self, state: Dict[Pair, Tuple[float, float]]):
        for pair, (reserve_a, reserve_b) in state.items():
            self.pools[pair].reserve_a = reserve_a
            self.pools[pair].reserve_b = reserve_b


class PaperLedger(SettlementLedger):
    """Executes settlement requests against paper venues with all-or-nothing semantics."""

    def __init__(self, config: LedgerConfig, venues: Dict[str, ExchangeAdapter]):
        super().__init__(config)
        self.venues = venues
        self.balances: Dict[str, float] = {
            token: float(amount) for token, amount in config.params.get("balances", {}).items()
        }
        self.latency_s = float(config.params.get("latency_ms", 0)) / 1000
        self.settlements = 0
        self.reverts = 0
        self._lock = asyncio.Lock()

    async def submit(self, request: SettlementRequest) -> LedgerResult:
        async with self._lock:
            if self.latency_s:
                await asyncio.sleep(self.latency_s)

            venues = self._venues_for(request)
            venue_state = {venue_id: venue.snapshot() for venue_id, venue in venues.items()}
            balance_state = dict(self.balances)
            borrowed = request.borrowed_token
            balance_before = self.balances.get(borrowed, 0.0)

            revert_reason, leg_amounts = await self._execute(request, venues)
            if revert_reason is not None:
                for venue_id, state in venue_state.items():
                    venues[venue_id].restore(state)
                self.balances = balance_state
                self.reverts += 1
                logger.info(f"Paper settlement {request.request_id[:8]} reverted: {revert_reason}")
                return LedgerResult(
                    success=False,
                    leg_amounts=leg_amounts,
                    balance_before=balance_before,
                    balance_after=balance_before,
                    revert_reason=revert_reason,
                )

            self.settlements += 1
            return LedgerResult(
                success=True,
                tx_reference=f"paper-{self.settlements:06d}",
                leg_amounts=leg_amounts,
                balance_before=balance_before,
                balance_after=self.balances.get(borrowed, 0.0),
            )

    def _venues_for(self, request: SettlementRequest) -> Dict[str, PaperVenue]:
        venue_ids = [leg.venue for leg in request.legs]
        if request.anchor is not None and request.anchor.venue:
            venue_ids.append(request.anchor.venue)
        venues = {}
        for venue_id in venue_ids:
            venue = self.venues.get(venue_id)
            if not isinstance(venue, PaperVenue):
                raise VenueError(f"paper ledger cannot settle on venue {venue_id}")
            venues[venue_id] = venue
        return venues

    async def _replay_target(self, request: SettlementRequest, venues: Dict[str, PaperVenue]):
        """Apply the anchored third-party swap to the pool, as if it landed in the bundle."""
        anchor = request.anchor
        if not anchor.token_in or not anchor.token_out or anchor.amount_in <= 0:
            return
        result = await venues[anchor.venue].swap(anchor.token_in, anchor.token_out, anchor.amount_in, 0.0, 0)
        if not result.success:
            logger.debug(f"Target {anchor.tx_hash[:10]} not replayed: {result.error}")

    async def _execute(self, request: SettlementRequest,
                       venues: Dict[str, PaperVenue]) -> Tuple[Optional[str], List[float]]:
        if request.deadline_ts and time.time() > request.deadline_ts:
            return "EXPIRED", []

        borrowed = request.borrowed_token
        self._credit(borrowed, request.borrowed_amount)

        leg_amounts: List[float] = []
        previous_out = request.borrowed_amount
        anchor = request.anchor
        for index, leg in enumerate(request.legs):
            if anchor is not None and anchor.venue and anchor.legs_before == index:
                await self._replay_target(request, venues)
            amount_in = leg.amount_in if leg.amount_in is not None else previous_out
            if self.balances.get(leg.token_in, 0.0) + 1e-12 < amount_in:
                return f"insufficient {leg.token_in} balance for leg on {leg.venue}", leg_amounts
            result = await venues[leg.venue].swap(
                leg.token_in, leg.token_out, amount_in, leg.min_out, request.deadline_ts
            )
            if not result.success:
                return result.error or "swap failed", leg_amounts
            self._credit(leg.token_in, -amount_in)
            self._credit(leg.token_out, result.amount_out)
            leg_amounts.append(result.amount_out)
            previous_out = result.amount_out

        owed = request.borrowed_amount + request.loan_fee
        if self.balances.get(borrowed, 0.0) + 1e-12 < owed:
            return "flash loan not repaid", leg_amounts
        self._credit(borrowed, -owed)
        return None, leg_amounts

    def _credit(self, token: str, amount: float):
        self.balances[token] = self.balances.get(token, 0.0) + amount


@register_ledger("paper")
def build_paper_ledger(config: LedgerConfig, venues: Dict[str, ExchangeAdapter]) -> PaperLedger:
    return PaperLedger(config, venues)


class StaticGasOracle(GasPriceOracle):
    """Gas oracle returning configured prices, cycling through ``prices`` if several are given."""

    def __init__(self, prices: Union[float, Iterable[float]] = 5.0):
        self.prices = [float(prices)] if isinstance(prices, (int, float)) else [float(p) for p in prices]
        self.calls = 0

    async def gas_price_gwei(self) -> float:
        price = self.prices[min(self.calls, len(self.prices) - 1)]
        self.calls += 1
        return price


@register_gas_oracle("static")
def build_static_gas_oracle(config: GasOracleConfig, root: Config) -> StaticGasOracle:
    return StaticGasOracle(config.params.get("prices", root.gas.default_price_gwei))


class QueueFeed(PendingFeed):
    """Pending feed fed programmatically, one item at a time."""

    def __init__(self, maxsize: int = 0):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize)
        self._closed = False

    def push(self, item: Union[PendingTransaction, NewBlock]):
        self._queue.put_nowait(item)

    async def close(self):
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def events(self) -> AsyncIterator[Union[PendingTransaction, NewBlock]]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


@register_feed("queue")
def build_queue_feed(config: FeedConfig) -> QueueFeed:
    return QueueFeed(int(config.params.get("maxsize", 0)))
