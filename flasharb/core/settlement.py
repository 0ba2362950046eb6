"""Atomic flash-loan settlement: reprice, margin check, submit, interpret, report."""

import asyncio
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional, Tuple
from loguru import logger

from flasharb.config import Config
from flasharb.telemetry.events import outcome_event
from flasharb.telemetry.hub import TelemetrySink
from flasharb.venues.base import ExchangeAdapter, LedgerResult, SettlementLedger
from .amm import BPS, amount_out
from .safety import SafetyGovernor
from .types import (
    FailureReason, Opportunity, Pair, SettlementKind, SettlementLeg, SettlementOutcome,
    SettlementRequest, TxAnchor,
)

REVERT_PATTERNS: List[Tuple[FailureReason, Tuple[str, ...]]] = [
    (FailureReason.REVERTED_REENTRANCY, ("reentran",)),
    (FailureReason.REVERTED_AUTHORIZATION, (
        "unauthorized", "not owner", "ownable", "caller is not", "only owner", "forbidden",
    )),
    (FailureReason.FRONTRUN_DETECTED, ("frontrun", "front-run", "front run")),
    (FailureReason.REVERTED_LIQUIDITY, ("insufficient_liquidity", "insufficient liquidity", "drained")),
    (FailureReason.REVERTED_SLIPPAGE, (
        "insufficient_output_amount", "too little received", "slippage", "price moved",
    )),
    (FailureReason.DEADLINE_EXCEEDED, ("expired", "deadline")),
]


def classify_revert(reason: Optional[str]) -> FailureReason:
    """Map a ledger revert message onto a failure subtype."""
    text = (reason or "").lower()
    for failure, patterns in REVERT_PATTERNS:
        if any(pattern in text for pattern in patterns):
            return failure
    return FailureReason.SETTLEMENT_REVERTED


def request_for_opportunity(opportunity: Opportunity, loan_fee_bps: float, deadline_ts: int,
                            kind: SettlementKind = SettlementKind.ARBITRAGE,
                            anchor: Optional[TxAnchor] = None,
                            plan: Optional[object] = None) -> SettlementRequest:
    """Two-leg settlement request for a detected round trip.

    Minimum outputs are left at zero; the coordinator fills them from live
    quotes at submission time.
    """
    pair = opportunity.pair
    borrowed = opportunity.borrowed_token
    other = pair.other(borrowed)
    if borrowed == pair.token_b:
        first_venue, second_venue = opportunity.buy_venue, opportunity.sell_venue
    else:
        first_venue, second_venue = opportunity.sell_venue, opportunity.buy_venue

    legs = [
        SettlementLeg(
            venue=first_venue,
            token_in=borrowed,
            token_out=other,
            min_out=0.0,
            amount_in=opportunity.trade_size,
            expected_out=opportunity.metadata.get("intermediate_amount", 0.0),
        ),
        SettlementLeg(
            venue=second_venue,
            token_in=other,
            token_out=borrowed,
            min_out=0.0,
            expected_out=opportunity.expected_return,
        ),
    ]
    return SettlementRequest(
        kind=kind,
        pair=pair,
        borrowed_token=borrowed,
        borrowed_amount=opportunity.trade_size,
        loan_fee=opportunity.trade_size * loan_fee_bps / BPS,
        legs=legs,
        opportunity=opportunity,
        plan=plan,
        anchor=anchor,
        expected_profit=opportunity.net_profit,
        deadline_ts=deadline_ts,
    )


class SettlementCoordinator:
    """Drives one settlement request through to exactly one reported outcome.

    Settlements are serialized per pair; different pairs settle concurrently.
    Nothing is retried: a failed request is reported and dropped.
    """

    def __init__(self, config: Config, adapters: Dict[str, ExchangeAdapter],
                 ledger: SettlementLedger, governor: SafetyGovernor,
                 telemetry: Optional[TelemetrySink] = None,
                 clock: Callable[[], float] = time.time,
                 history_size: int = 1000):
        self.config = config
        self.adapters = adapters
        self.ledger = ledger
        self.governor = governor
        self.telemetry = telemetry
        self._clock = clock
        self.loan_fee_bps = config.fees.loan_fee_bps
        self.submission_timeout_s = config.settlement.submission_timeout_ms / 1000
        self.quote_timeout_s = config.settlement.quote_timeout_ms / 1000
        self.deadline_s = config.settlement.deadline_s
        self.history: Deque[SettlementOutcome] = deque(maxlen=history_size)
        self.stats: Dict[str, int] = {"submitted": 0, "succeeded": 0, "failed": 0, "rejected": 0}
        self._pair_locks: Dict[Pair, asyncio.Lock] = {}
        self._frontrun_flags: Dict[Pair, str] = {}

    def loan_fee(self, amount: float) -> float:
        return amount * self.loan_fee_bps / BPS

    def is_pair_busy(self, pair: Pair) -> bool:
        lock = self._pair_locks.get(pair)
        return lock is not None and lock.locked()

    def flag_frontrun(self, pair: Pair, tx_hash: str) -> bool:
        """Mark the in-flight settlement on ``pair`` as raced by ``tx_hash``.

        If that settlement then reverts or misses its deadline, it is reported
        as ``frontrun-detected``. Flags on idle pairs are ignored.
        """
        if not self.is_pair_busy(pair):
            return False
        self._frontrun_flags[pair] = tx_hash
        return True

    def build_request(self, opportunity: Opportunity) -> SettlementRequest:
        """Turn a detected opportunity into a settlement request."""
        return request_for_opportunity(
            opportunity, self.loan_fee_bps, int(self._clock()) + self.deadline_s
        )

    async def settle(self, request: SettlementRequest) -> SettlementOutcome:
        """Settle a request atomically and report its outcome once."""
        lock = self._pair_locks.setdefault(request.pair, asyncio.Lock())
        try:
            async with lock:
                self._frontrun_flags.pop(request.pair, None)
                outcome = await self._settle_locked(request)
                outcome = self._apply_frontrun_flag(request.pair, outcome)
        except asyncio.CancelledError:
            self._frontrun_flags.pop(request.pair, None)
            self._report(self._failure(request, FailureReason.SUBMISSION_ERROR, "settlement cancelled"))
            raise
        self._report(outcome)
        return outcome

    def _apply_frontrun_flag(self, pair: Pair, outcome: SettlementOutcome) -> SettlementOutcome:
        racer = self._frontrun_flags.pop(pair, None)
        if racer is None or outcome.success:
            return outcome
        reason = outcome.failure_reason
        if not (reason.is_revert or reason == FailureReason.DEADLINE_EXCEEDED):
            return outcome
        logger.warning(f"🏁 Settlement {outcome.request_id[:8]} on {pair} lost to {racer[:10]} ({reason.value})")
        return replace(
            outcome,
            failure_reason=FailureReason.FRONTRUN_DETECTED,
            error=f"{outcome.error} (raced by {racer})",
        )

    async def _settle_locked(self, request: SettlementRequest) -> SettlementOutcome:
        logger.info(
            f"Settling {request.kind.value} {request.pair}: borrow {request.borrowed_amount:.6f} "
            f"{request.borrowed_token} over {len(request.legs)} legs"
        )

        problem = self.validate(request)
        if problem:
            logger.warning(f"Rejecting request {request.request_id[:8]}: {problem}")
            self.stats["rejected"] += 1
            return self._failure(request, FailureReason.INVALID_REQUEST, problem)

        try:
            priced = await self.reprice(request)
        except Exception as e:
            logger.warning(f"Live repricing failed for {request.request_id[:8]}: {e}")
            self.stats["rejected"] += 1
            return self._failure(request, FailureReason.VENUE_UNAVAILABLE, str(e))

        if priced.final_min_out < priced.required_return:
            message = (
                f"final min out {priced.final_min_out:.6f} < principal + fee {priced.required_return:.6f}"
            )
            logger.warning(f"❌ Insufficient margin for {request.request_id[:8]}: {message}")
            self.stats["rejected"] += 1
            return self._failure(priced, FailureReason.INSUFFICIENT_MARGIN, message)

        self.stats["submitted"] += 1
        start = time.time()
        try:
            result = await asyncio.wait_for(self.ledger.submit(priced), timeout=self.submission_timeout_s)
        except asyncio.TimeoutError:
            logger.error(f"⏱️ Settlement {request.request_id[:8]} exceeded {self.submission_timeout_s:.1f}s deadline")
            return self._failure(priced, FailureReason.DEADLINE_EXCEEDED, "submission deadline exceeded")
        except Exception as e:
            logger.error(f"Settlement {request.request_id[:8]} submission failed: {e}")
            return self._failure(priced, FailureReason.SUBMISSION_ERROR, str(e))

        latency_ms = int((time.time() - start) * 1000)
        return self._interpret(priced, result, latency_ms)

    def validate(self, request: SettlementRequest) -> Optional[str]:
        """Structural checks; returns a description of the first problem found."""
        if not request.legs:
            return "request has no legs"
        if request.borrowed_amount <= 0:
            return f"borrowed amount must be positive, got {request.borrowed_amount}"
        if request.legs[0].token_in != request.borrowed_token:
            return f"first leg spends {request.legs[0].token_in}, not the borrowed {request.borrowed_token}"
        if request.legs[-1].token_out != request.borrowed_token:
            return f"last leg returns {request.legs[-1].token_out}, not the borrowed {request.borrowed_token}"
        for previous, leg in zip(request.legs, request.legs[1:]):
            if leg.token_in != previous.token_out:
                return f"leg on {leg.venue} spends {leg.token_in} but previous leg returns {previous.token_out}"
        for leg in request.legs:
            if leg.venue not in self.adapters:
                return f"unknown venue {leg.venue}"
        anchor = request.anchor
        if anchor is not None and not 0 <= anchor.legs_before <= len(request.legs):
            return f"anchor position {anchor.legs_before} outside 0..{len(request.legs)}"
        return None

    async def reprice(self, request: SettlementRequest) -> SettlementRequest:
        """Recompute every leg's minimum output from live quotes.

        Legs are simulated in order against constant-product reserves seeded
        from the live quotes, replaying the anchored transaction's swap at its
        position, and each minimum is reduced by the venue's slippage
        tolerance scaled by the governor's competitive multiplier.
        """
        pools = await self._live_pools(request)
        anchor = request.anchor

        legs: List[SettlementLeg] = []
        previous_min = request.borrowed_amount
        for index, leg in enumerate(request.legs):
            if anchor is not None and anchor.venue and anchor.legs_before == index:
                self._replay_anchor(anchor, pools)

            amount_in = leg.amount_in if leg.amount_in is not None else previous_min
            venue = self.config.get_venue(leg.venue)
            adapter = self.adapters[leg.venue]
            fee_bps = self._fee_bps(leg.venue, leg.token_in, leg.token_out, adapter)
            pool = pools[(leg.venue, Pair(leg.token_in, leg.token_out))]
            expected = amount_out(
                amount_in, pool[leg.token_in], pool[leg.token_out], fee_bps, adapter.impact_coefficient
            )
            pool[leg.token_in] += amount_in
            pool[leg.token_out] -= expected

            base_slippage = venue.max_slippage_bps if venue else 50.0
            slippage_bps = self.governor.apply_slippage(base_slippage)
            min_out = expected * (1 - slippage_bps / BPS)
            legs.append(replace(leg, min_out=min_out, expected_out=expected))
            previous_min = min_out
            logger.debug(
                f"Leg {index + 1} {leg.venue} {leg.token_in}->{leg.token_out}: in {amount_in:.6f}, "
                f"expected {expected:.6f}, min {min_out:.6f} ({slippage_bps:.1f} bps)"
            )

        return replace(request, legs=legs)

    async def _live_pools(self, request: SettlementRequest) -> Dict[Tuple[str, Pair], Dict[str, float]]:
        keys = []
        for leg in request.legs:
            keys.append((leg.venue, Pair(leg.token_in, leg.token_out)))
        anchor = request.anchor
        if anchor is not None and anchor.venue and anchor.token_in and anchor.token_out:
            keys.append((anchor.venue, Pair(anchor.token_in, anchor.token_out)))
        unique = sorted(set(keys), key=lambda key: (key[0], key[1].key))

        quotes = await asyncio.gather(*(
            asyncio.wait_for(self.adapters[venue_id].quote(pair), timeout=self.quote_timeout_s)
            for venue_id, pair in unique
        ))

        pools = {}
        for (venue_id, pair), raw in zip(unique, quotes):
            if raw.price <= 0 or raw.liquidity_a <= 0:
                raise ValueError(f"invalid live quote from {venue_id} for {pair}")
            # Reserves consistent with the quoted price.
            pools[(venue_id, pair)] = {
                pair.token_a: raw.liquidity_a,
                pair.token_b: raw.price * raw.liquidity_a,
            }
        return pools

    def _replay_anchor(self, anchor: TxAnchor, pools: Dict[Tuple[str, Pair], Dict[str, float]]):
        pool = pools.get((anchor.venue, Pair(anchor.token_in, anchor.token_out)))
        if pool is None or anchor.amount_in <= 0:
            return
        adapter = self.adapters[anchor.venue]
        fee_bps = self._fee_bps(anchor.venue, anchor.token_in, anchor.token_out, adapter)
        out = amount_out(anchor.amount_in, pool[anchor.token_in], pool[anchor.token_out],
                         fee_bps, adapter.impact_coefficient)
        pool[anchor.token_in] += anchor.amount_in
        pool[anchor.token_out] -= out

    def _fee_bps(self, venue_id: str, token_in: str, token_out: str, adapter: ExchangeAdapter) -> float:
        override = self.config.get_fee_override(venue_id, token_in, token_out)
        return override if override is not None else adapter.fee_bps

    def _interpret(self, request: SettlementRequest, result: LedgerResult, latency_ms: int) -> SettlementOutcome:
        if not result.success:
            reason = classify_revert(result.revert_reason)
            logger.warning(
                f"❌ Settlement {request.request_id[:8]} reverted ({reason.value}): {result.revert_reason}"
            )
            return self._failure(request, reason, result.revert_reason or "reverted",
                                 tx_reference=result.tx_reference, leg_amounts=result.leg_amounts)

        if result.balance_before is not None and result.balance_after is not None:
            realized = result.balance_after - result.balance_before - result.gas_cost
        elif result.leg_amounts:
            realized = result.leg_amounts[-1] - request.required_return - result.gas_cost
        else:
            realized = 0.0

        logger.info(
            f"✅ Settlement {request.request_id[:8]} {request.kind.value} {request.pair} "
            f"realized {realized:.6f} {request.borrowed_token} (expected {request.expected_profit:.6f}, "
            f"{latency_ms} ms, tx {result.tx_reference})"
        )
        return SettlementOutcome(
            request_id=request.request_id,
            success=True,
            realized_profit=realized,
            tx_reference=result.tx_reference,
            kind=request.kind,
            pair=request.pair,
            leg_amounts=tuple(result.leg_amounts),
        )

    def _failure(self, request: SettlementRequest, reason: FailureReason, error: str,
                 tx_reference: Optional[str] = None,
                 leg_amounts: Optional[List[float]] = None) -> SettlementOutcome:
        return SettlementOutcome(
            request_id=request.request_id,
            success=False,
            realized_profit=0.0,
            failure_reason=reason,
            tx_reference=tx_reference,
            kind=request.kind,
            pair=request.pair,
            leg_amounts=tuple(leg_amounts or ()),
            error=error,
        )

    def _report(self, outcome: SettlementOutcome):
        self.history.append(outcome)
        if outcome.success:
            self.stats["succeeded"] += 1
            self.governor.record_success(outcome.realized_profit)
        else:
            self.stats["failed"] += 1
            self.governor.record_failure(outcome.failure_reason)

        if self.telemetry is not None:
            try:
                self.telemetry.emit(outcome_event(outcome))
            except Exception as e:
                logger.error(f"Failed to emit settlement outcome {outcome.request_id[:8]}: {e}")

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
