"""Pending-transaction watcher proposing backrun and sandwich settlements."""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from dataclasses import dataclass, field, replace
from eth_abi import decode
from loguru import logger

from flasharb.config import Config
from flasharb.telemetry.events import proposal_event
from flasharb.telemetry.hub import TelemetrySink
from .amm import BPS, amount_out, reserves_after_swap
from .detector import OpportunityDetector
from .settlement import request_for_opportunity
from .types import (
    Pair, PendingTransaction, SettlementKind, SettlementLeg, SettlementRequest, TxAnchor,
    VenueQuote,
)

V2_EXACT_TOKENS_ARGS = ["uint256", "uint256", "address[]", "address", "uint256"]
V2_EXACT_ETH_ARGS = ["uint256", "address[]", "address", "uint256"]
V3_EXACT_INPUT_SINGLE_ARGS = ["(address,address,uint24,address,uint256,uint256,uint256,uint160)"]

# selector -> (method, argument types)
SWAP_SIGNATURES: Dict[str, Tuple[str, List[str]]] = {
    "38ed1739": ("swapExactTokensForTokens", V2_EXACT_TOKENS_ARGS),
    "5c11d795": ("swapExactTokensForTokensSupportingFeeOnTransferTokens", V2_EXACT_TOKENS_ARGS),
    "18cbafe5": ("swapExactTokensForETH", V2_EXACT_TOKENS_ARGS),
    "7ff36ab5": ("swapExactETHForTokens", V2_EXACT_ETH_ARGS),
    "fb3bdb41": ("swapETHForExactTokens", V2_EXACT_ETH_ARGS),
    "414bf389": ("exactInputSingle", V3_EXACT_INPUT_SINGLE_ARGS),
}


class WatchState(Enum):
    """Lifecycle of an observed pending transaction."""
    CANDIDATE = "candidate"
    CLASSIFIED = "classified"
    EVALUATED = "evaluated"
    PROPOSED = "proposed"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class SwapIntent:
    """Decoded swap of a pending transaction, in token units."""
    venue: str
    method: str
    token_in: str
    token_out: str
    amount_in: float
    amount_out_min: float
    recipient: str = ""


@dataclass
class MevPlan:
    """Scored backrun or sandwich around a pending swap."""
    kind: SettlementKind
    target_tx: str
    swap: SwapIntent
    borrowed_amount: float
    expected_profit: float
    gas_cost: float
    victim_impact_pct: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackedTransaction:
    """Watcher bookkeeping for one transaction hash."""
    tx: PendingTransaction
    block_seen: int
    seen_at: float = 0.0
    state: WatchState = WatchState.CANDIDATE
    swap: Optional[SwapIntent] = None
    plans: List[MevPlan] = field(default_factory=list)
    proposal: Optional[SettlementRequest] = None
    reason: Optional[str] = None
    transitions: List[WatchState] = field(default_factory=lambda: [WatchState.CANDIDATE])

    def move(self, state: WatchState, reason: Optional[str] = None):
        self.state = state
        self.transitions.append(state)
        if reason:
            self.reason = reason


ProposalCallback = Callable[[SettlementRequest], Awaitable[None]]
SnapshotProvider = Callable[[], Mapping[Pair, Sequence[VenueQuote]]]
FrontrunCallback = Callable[[Pair, str], None]


class OpportunisticWatcher:
    """Scores third-party pending swaps for backrun and sandwich settlements.

    Notifications are queued without blocking the feed and processed by a
    single consumer; per-hash state is evicted once it is older than
    ``max_backrun_blocks`` blocks, and a transaction that waited in the queue
    past that window is discarded unscored. Swaps that outbid our gas price
    on a pair with a settlement in flight are reported through ``on_frontrun``.
    """

    def __init__(self, config: Config, detector: OpportunityDetector,
                 snapshot_provider: SnapshotProvider,
                 gas_price_provider: Optional[Callable[[], float]] = None,
                 telemetry: Optional[TelemetrySink] = None,
                 on_proposal: Optional[ProposalCallback] = None,
                 busy_pair: Optional[Callable[[Pair], bool]] = None,
                 on_frontrun: Optional[FrontrunCallback] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.settings = config.watcher
        self.detector = detector
        self.snapshot_provider = snapshot_provider
        self.gas_price_provider = gas_price_provider or (lambda: config.gas.default_price_gwei)
        self.telemetry = telemetry
        self.on_proposal = on_proposal
        self.busy_pair = busy_pair
        self.on_frontrun = on_frontrun
        self._clock = clock
        self.own_address = (self.settings.own_address or "").lower()
        self.known_bots = {address.lower() for address in self.settings.known_bots}
        self.loan_fee_bps = config.fees.loan_fee_bps

        self.routers: Dict[str, str] = {
            venue.router.lower(): venue.id for venue in config.venues if venue.router
        }
        self.tokens_by_address: Dict[str, Tuple[str, int]] = {
            token.address.lower(): (symbol, token.decimals) for symbol, token in config.tokens.items()
        }
        self.tracked_pairs: Dict[Pair, Pair] = {
            Pair(pair.token_a, pair.token_b): Pair(pair.token_a, pair.token_b) for pair in config.pairs
        }

        self.current_block = 0
        self.tracked: Dict[str, TrackedTransaction] = {}
        self.queue: "asyncio.Queue[PendingTransaction]" = asyncio.Queue(maxsize=self.settings.queue_size)
        self.stats: Dict[str, int] = {
            "seen": 0,
            "ignored": 0,
            "dropped": 0,
            "candidates": 0,
            "own_excluded": 0,
            "discarded": 0,
            "expired": 0,
            "purged": 0,
            "evicted": 0,
            "frontrun_flagged": 0,
            "backrun_proposed": 0,
            "sandwich_proposed": 0,
        }

    # Feed side

    def submit(self, tx: PendingTransaction) -> bool:
        """Queue a pending transaction without blocking; drops it when the queue is full.

        Transactions without a block height are stamped with the height they were queued at.
        """
        self.stats["seen"] += 1
        if tx.block_seen is None:
            tx = replace(tx, block_seen=self.current_block)
        try:
            self.queue.put_nowait(tx)
            return True
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning(f"Watcher queue full ({self.settings.queue_size}), dropping {tx.tx_hash}")
            return False

    def on_new_block(self, block_number: int):
        """Advance the block height and purge entries older than the backrun window."""
        if block_number <= self.current_block:
            return
        self.current_block = block_number
        self.purge()

    def on_transaction_confirmed(self, tx_hash: str):
        self.tracked.pop(tx_hash, None)

    def purge(self) -> int:
        expired = [tx_hash for tx_hash, entry in self.tracked.items() if self.is_expired(entry.block_seen)]
        for tx_hash in expired:
            entry = self.tracked.pop(tx_hash)
            if entry.state != WatchState.DISCARDED:
                entry.move(WatchState.DISCARDED, "expired")
            self.stats["purged"] += 1
        if expired:
            logger.debug(f"Purged {len(expired)} pending transactions at block {self.current_block}")
        return len(expired)

    def evict_stale(self) -> int:
        """Drop entries past ``tracked_ttl_s``, then the oldest ones while over ``max_tracked``."""
        cutoff = self._clock() - self.settings.tracked_ttl_s
        stale = [tx_hash for tx_hash, entry in self.tracked.items() if entry.seen_at < cutoff]
        for tx_hash in stale:
            del self.tracked[tx_hash]
        evicted = len(stale)
        while len(self.tracked) >= self.settings.max_tracked:
            del self.tracked[next(iter(self.tracked))]
            evicted += 1
        self.stats["evicted"] += evicted
        return evicted

    def is_expired(self, block_seen: Optional[int]) -> bool:
        return block_seen is not None and self.current_block - block_seen > self.settings.max_backrun_blocks

    async def run(self):
        """Consume queued transactions until cancelled."""
        logger.info("Opportunistic watcher started")
        while True:
            tx = await self.queue.get()
            try:
                request = self.on_pending_transaction(tx)
                if request is not None and self.on_proposal is not None:
                    await self.on_proposal(request)
            except Exception as e:
                logger.error(f"Watcher failed on {tx.tx_hash}: {e}")
            finally:
                self.queue.task_done()

    # State machine

    def on_pending_transaction(self, tx: PendingTransaction) -> Optional[SettlementRequest]:
        """Run one pending transaction through the watcher state machine."""
        if tx.tx_hash in self.tracked:
            return None

        venue = self.routers.get((tx.to or "").lower())
        selector = _selector(tx.data)
        if venue is None or selector not in SWAP_SIGNATURES:
            self.stats["ignored"] += 1
            return None

        self.evict_stale()
        entry = TrackedTransaction(
            tx=tx,
            block_seen=tx.block_seen if tx.block_seen is not None else self.current_block,
            seen_at=self._clock(),
        )
        self.tracked[tx.tx_hash] = entry
        self.stats["candidates"] += 1

        if self.is_expired(entry.block_seen):
            self.stats["expired"] += 1
            return self._discard(entry, "expired")

        if self.own_address and (tx.sender or "").lower() == self.own_address:
            self.stats["own_excluded"] += 1
            return self._discard(entry, "own transaction")

        swap = self.decode_swap(tx, venue)
        if swap is None:
            return self._discard(entry, "undecodable or untracked swap")
        entry.swap = swap
        entry.move(WatchState.CLASSIFIED)
        logger.debug(
            f"Classified {tx.tx_hash[:10]} on {venue}: {swap.amount_in:.6f} {swap.token_in} -> {swap.token_out}"
        )
        self.check_frontrun(tx, swap)

        scored = [self.score_backrun(tx.tx_hash, swap)]
        if self.settings.sandwich_enabled:
            scored.append(self.score_sandwich(tx.tx_hash, swap))
        plans = [item for item in scored if item is not None]
        entry.plans = [plan for plan, _ in plans]
        entry.move(WatchState.EVALUATED)

        if not plans:
            return self._discard(entry, "no profitable backrun or sandwich")

        plan, request = max(plans, key=lambda item: (item[0].expected_profit, item[0].kind.value))
        entry.proposal = request
        entry.move(WatchState.PROPOSED)
        self.stats[f"{plan.kind.value}_proposed"] += 1
        logger.info(
            f"🎯 Proposing {plan.kind.value} on {tx.tx_hash[:10]} ({swap.venue} {swap.token_in}->{swap.token_out}), "
            f"expected {plan.expected_profit:.6f} {request.borrowed_token}"
        )
        if self.telemetry is not None:
            try:
                self.telemetry.emit(proposal_event(request, tx.tx_hash))
            except Exception as e:
                logger.error(f"Failed to emit proposal for {tx.tx_hash[:10]}: {e}")
        return request

    def check_frontrun(self, tx: PendingTransaction, swap: SwapIntent) -> bool:
        """Flag a swap on a pair we are settling that outbids our gas price or comes from a known bot."""
        pair = self.tracked_pairs[Pair(swap.token_in, swap.token_out)]
        if self.busy_pair is None or not self.busy_pair(pair):
            return False
        our_gas = self.gas_price_provider()
        outbids = our_gas > 0 and tx.gas_price_gwei >= our_gas * self.settings.frontrun_gas_premium
        known_bot = (tx.sender or "").lower() in self.known_bots
        if not (outbids or known_bot):
            return False

        self.stats["frontrun_flagged"] += 1
        logger.warning(
            f"⚠️ Possible front-run of our {pair} settlement: {tx.tx_hash[:10]} from {tx.sender} "
            f"at {tx.gas_price_gwei:.2f} gwei (ours {our_gas:.2f})"
        )
        if self.on_frontrun is not None:
            self.on_frontrun(pair, tx.tx_hash)
        return True

    def get_state(self, tx_hash: str) -> Optional[WatchState]:
        entry = self.tracked.get(tx_hash)
        return entry.state if entry else None

    def _discard(self, entry: TrackedTransaction, reason: str) -> None:
        entry.move(WatchState.DISCARDED, reason)
        self.stats["discarded"] += 1
        logger.debug(f"Discarded {entry.tx.tx_hash[:10]}: {reason}")
        return None

    # Decoding

    def decode_swap(self, tx: PendingTransaction, venue: str) -> Optional[SwapIntent]:
        """Decode router calldata into a swap between tokens of a tracked pair."""
        selector = _selector(tx.data)
        method, arg_types = SWAP_SIGNATURES[selector]
        try:
            payload = bytes.fromhex(_strip_hex(tx.data)[8:])
            args = decode(arg_types, payload)
        except Exception as e:
            logger.debug(f"Failed to decode {method} in {tx.tx_hash}: {e}")
            return None

        if method == "exactInputSingle":
            token_in, token_out, _, recipient, _, raw_in, raw_min_out, _ = args[0]
        elif arg_types is V2_EXACT_ETH_ARGS:
            raw_min_out, path, recipient, _ = args
            token_in, token_out = path[0], path[-1]
            raw_in = tx.value
        else:
            raw_in, raw_min_out, path, recipient, _ = args
            token_in, token_out = path[0], path[-1]

        token_in_info = self.tokens_by_address.get(str(token_in).lower())
        token_out_info = self.tokens_by_address.get(str(token_out).lower())
        if token_in_info is None or token_out_info is None:
            return None
        symbol_in, decimals_in = token_in_info
        symbol_out, decimals_out = token_out_info
        if Pair(symbol_in, symbol_out) not in self.tracked_pairs:
            return None

        # swapETHForExactTokens: value is the maximum spent, amountOut the exact output
        amount_in = raw_in / 10 ** decimals_in
        if amount_in <= 0:
            return None
        return SwapIntent(
            venue=venue,
            method=method,
            token_in=symbol_in,
            token_out=symbol_out,
            amount_in=amount_in,
            amount_out_min=raw_min_out / 10 ** decimals_out,
            recipient=str(recipient).lower(),
        )

    # Scoring

    def score_backrun(self, tx_hash: str, swap: SwapIntent) -> Optional[Tuple[MevPlan, SettlementRequest]]:
        """Simulate the pending swap and look for a cross-venue arbitrage it opens up."""
        snapshot = self.snapshot_provider()
        tracked_pair = self.tracked_pairs[Pair(swap.token_in, swap.token_out)]
        pair_quotes = list(snapshot.get(tracked_pair, ()))
        victim_quote = self._venue_quote(pair_quotes, swap.venue, Pair(swap.token_in, swap.token_out))
        if victim_quote is None:
            return None

        reserve_in, reserve_out = victim_quote.liquidity_a, victim_quote.liquidity_a * victim_quote.price
        _, new_in, new_out = reserves_after_swap(
            swap.amount_in, reserve_in, reserve_out, victim_quote.fee_bps, victim_quote.impact_coefficient
        )
        post_trade = VenueQuote(
            venue=victim_quote.venue,
            pair=Pair(swap.token_in, swap.token_out),
            price=new_out / new_in,
            liquidity_a=new_in,
            liquidity_b=new_out,
            fee_bps=victim_quote.fee_bps,
            observed_at_ms=victim_quote.observed_at_ms,
            impact_coefficient=victim_quote.impact_coefficient,
        ).oriented(tracked_pair)

        simulated = [post_trade if quote.venue == swap.venue else quote for quote in pair_quotes]
        opportunity = self.detector.evaluate_pair(
            tracked_pair, simulated, self.gas_price_provider(), snapshot,
            gas_units=self.settings.backrun_gas_units,
        )
        if opportunity is None or swap.venue not in (opportunity.buy_venue, opportunity.sell_venue):
            return None
        if opportunity.net_profit <= self.settings.backrun_min_profit:
            logger.debug(f"Backrun on {tx_hash[:10]} below threshold: {opportunity.net_profit:.6f}")
            return None

        plan = MevPlan(
            kind=SettlementKind.BACKRUN,
            target_tx=tx_hash,
            swap=swap,
            borrowed_amount=opportunity.trade_size,
            expected_profit=opportunity.net_profit,
            gas_cost=opportunity.gas_cost,
            metadata={"buy_venue": opportunity.buy_venue, "sell_venue": opportunity.sell_venue},
        )
        anchor = TxAnchor(tx_hash=tx_hash, legs_before=0, venue=swap.venue,
                          token_in=swap.token_in, token_out=swap.token_out, amount_in=swap.amount_in)
        request = request_for_opportunity(
            opportunity, self.loan_fee_bps, self._deadline(), kind=SettlementKind.BACKRUN,
            anchor=anchor, plan=plan,
        )
        return plan, request

    def score_sandwich(self, tx_hash: str, swap: SwapIntent) -> Optional[Tuple[MevPlan, SettlementRequest]]:
        """Simulate front-run, victim and back-run on the victim's pool."""
        snapshot = self.snapshot_provider()
        tracked_pair = self.tracked_pairs[Pair(swap.token_in, swap.token_out)]
        victim_quote = self._venue_quote(
            list(snapshot.get(tracked_pair, ())), swap.venue, Pair(swap.token_in, swap.token_out)
        )
        if victim_quote is None:
            return None

        fee_bps = victim_quote.fee_bps
        coefficient = victim_quote.impact_coefficient
        reserve_in, reserve_out = victim_quote.liquidity_a, victim_quote.liquidity_a * victim_quote.price
        front_amount = swap.amount_in * self.settings.sandwich_front_fraction

        victim_alone = amount_out(swap.amount_in, reserve_in, reserve_out, fee_bps, coefficient)
        front_out, in_1, out_1 = reserves_after_swap(front_amount, reserve_in, reserve_out, fee_bps, coefficient)
        victim_out, in_2, out_2 = reserves_after_swap(swap.amount_in, in_1, out_1, fee_bps, coefficient)
        if victim_alone <= 0 or front_out <= 0:
            return None
        if swap.amount_out_min and victim_out < swap.amount_out_min:
            logger.debug(f"Sandwich on {tx_hash[:10]} would revert the victim ({victim_out:.6f} < min)")
            return None

        back_out = amount_out(front_out, out_2, in_2, fee_bps, coefficient)
        victim_impact_pct = (victim_alone - victim_out) / victim_alone * 100
        loan_fee = front_amount * self.loan_fee_bps / BPS
        gas_cost = self.detector.gas_cost_in(
            swap.token_in, self.gas_price_provider(), snapshot, self.settings.sandwich_gas_units
        )
        if gas_cost is None:
            return None
        net = back_out - front_amount - loan_fee - gas_cost

        if net <= self.settings.sandwich_min_profit:
            logger.debug(f"Sandwich on {tx_hash[:10]} below threshold: {net:.6f}")
            return None
        if victim_impact_pct <= self.settings.min_victim_impact_pct:
            logger.debug(f"Sandwich on {tx_hash[:10]} victim impact {victim_impact_pct:.3f}% too small")
            return None

        plan = MevPlan(
            kind=SettlementKind.SANDWICH,
            target_tx=tx_hash,
            swap=swap,
            borrowed_amount=front_amount,
            expected_profit=net,
            gas_cost=gas_cost,
            victim_impact_pct=victim_impact_pct,
            metadata={"front_out": front_out, "back_out": back_out},
        )
        request = SettlementRequest(
            kind=SettlementKind.SANDWICH,
            pair=tracked_pair,
            borrowed_token=swap.token_in,
            borrowed_amount=front_amount,
            loan_fee=loan_fee,
            legs=[
                SettlementLeg(venue=swap.venue, token_in=swap.token_in, token_out=swap.token_out,
                              min_out=0.0, amount_in=front_amount, expected_out=front_out),
                SettlementLeg(venue=swap.venue, token_in=swap.token_out, token_out=swap.token_in,
                              min_out=0.0, expected_out=back_out),
            ],
            plan=plan,
            anchor=TxAnchor(tx_hash=tx_hash, legs_before=1, venue=swap.venue,
                            token_in=swap.token_in, token_out=swap.token_out, amount_in=swap.amount_in),
            expected_profit=net,
            deadline_ts=self._deadline(),
        )
        return plan, request

    def _venue_quote(self, quotes: Sequence[VenueQuote], venue: str, orientation: Pair) -> Optional[VenueQuote]:
        for quote in quotes:
            if quote.venue == venue and quote.is_valid():
                return quote.oriented(orientation)
        return None

    def _deadline(self) -> int:
        return int(self._clock()) + self.config.settlement.deadline_s

    def get_stats(self) -> Dict[str, Any]:
        """Get watcher statistics."""
        states: Dict[str, int] = {}
        for entry in self.tracked.values():
            states[entry.state.value] = states.get(entry.state.value, 0) + 1
        return {
            **self.stats,
            "block": self.current_block,
            "queued": self.queue.qsize(),
            "tracked": len(self.tracked),
            "states": states,
        }


def _strip_hex(data: str) -> str:
    data = data or ""
    return data[2:] if data.startswith("0x") else data


def _selector(data: str) -> str:
    return _strip_hex(data)[:8].lower()
