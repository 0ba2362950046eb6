"""
Shared types and data structures for the arbitrage engine.
Kept in one module so core components never import each other just for records.
"""

import time
import uuid
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field, replace
from enum import Enum


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True, eq=False)
class Pair:
    """Token pair; equality ignores token order, orientation is kept for pricing."""
    token_a: str
    token_b: str

    def __eq__(self, other) -> bool:
        if not isinstance(other, Pair):
            return NotImplemented
        return {self.token_a, self.token_b} == {other.token_a, other.token_b}

    def __hash__(self) -> int:
        return hash(frozenset((self.token_a, self.token_b)))

    def __str__(self) -> str:
        return f"{self.token_a}/{self.token_b}"

    @property
    def key(self) -> str:
        """Order-independent string key, used for storage and fee-tier lookups."""
        return "/".join(sorted((self.token_a, self.token_b)))

    def contains(self, token: str) -> bool:
        return token in (self.token_a, self.token_b)

    def other(self, token: str) -> str:
        """Get the counter token of the pair."""
        if token == self.token_a:
            return self.token_b
        if token == self.token_b:
            return self.token_a
        raise ValueError(f"{token} is not part of {self}")

    def same_orientation(self, other: "Pair") -> bool:
        return self.token_a == other.token_a and self.token_b == other.token_b


@dataclass(frozen=True)
class VenueQuote:
    """Normalized price/liquidity record for one venue and pair.

    ``price`` is token_b per token_a. ``liquidity_a``/``liquidity_b`` are the
    pool reserves of each side in their own token units.
    """
    venue: str
    pair: Pair
    price: float
    liquidity_a: float
    liquidity_b: float
    fee_bps: float
    observed_at_ms: int
    impact_coefficient: float = 1.0

    def age_ms(self, now: Optional[int] = None) -> int:
        return (now if now is not None else now_ms()) - self.observed_at_ms

    def is_valid(self) -> bool:
        return self.price > 0 and self.liquidity_a > 0 and self.liquidity_b > 0

    def reserve_of(self, token: str) -> float:
        """Get the reserve held for a token."""
        if token == self.pair.token_a:
            return self.liquidity_a
        if token == self.pair.token_b:
            return self.liquidity_b
        raise ValueError(f"{token} is not part of {self.pair}")

    def oriented(self, pair: Pair) -> "VenueQuote":
        """Return this quote expressed in the orientation of ``pair``."""
        if self.pair.same_orientation(pair):
            return self
        if self.pair != pair:
            raise ValueError(f"quote for {self.pair} cannot be oriented to {pair}")
        return replace(
            self,
            pair=pair,
            price=1.0 / self.price,
            liquidity_a=self.liquidity_b,
            liquidity_b=self.liquidity_a,
        )


@dataclass
class Opportunity:
    """Detected two-venue arbitrage round trip funded by a flash loan."""
    pair: Pair
    buy_venue: str
    sell_venue: str
    trade_size: float  # borrowed-token units
    gross_profit: float
    fees_cost: float
    gas_cost: float
    net_profit: float
    confidence: float

    borrowed_token: str = ""
    buy_price: float = 0.0
    sell_price: float = 0.0
    spread_bps: float = 0.0
    expected_return: float = 0.0  # borrowed-token amount out of the final leg
    detected_at_ms: int = 0
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        """Set default values after initialization."""
        if self.metadata is None:
            self.metadata = {}
        if not self.borrowed_token:
            self.borrowed_token = self.pair.token_b
        if self.detected_at_ms == 0:
            self.detected_at_ms = now_ms()

    @property
    def profit_pct(self) -> float:
        """Net profit as a percentage of trade size."""
        if self.trade_size <= 0:
            return 0.0
        return self.net_profit / self.trade_size * 100


class SettlementKind(Enum):
    """What produced a settlement request."""
    ARBITRAGE = "arbitrage"
    BACKRUN = "backrun"
    SANDWICH = "sandwich"


class FailureReason(Enum):
    """Failure tags carried by settlement outcomes."""
    INSUFFICIENT_MARGIN = "insufficient-margin"
    INVALID_REQUEST = "invalid-request"
    VENUE_UNAVAILABLE = "venue-unavailable"
    SUBMISSION_ERROR = "submission-error"
    DEADLINE_EXCEEDED = "deadline-exceeded"
    SETTLEMENT_REVERTED = "settlement-reverted"
    REVERTED_SLIPPAGE = "reverted-slippage"
    REVERTED_AUTHORIZATION = "reverted-authorization"
    REVERTED_REENTRANCY = "reverted-reentrancy"
    REVERTED_LIQUIDITY = "reverted-liquidity"
    FRONTRUN_DETECTED = "frontrun-detected"

    @property
    def is_revert(self) -> bool:
        return self in _REVERT_REASONS

    @property
    def is_competitive(self) -> bool:
        """Failures that point at another bot taking the same trade."""
        return self in _COMPETITIVE_REASONS

    @property
    def pre_submission(self) -> bool:
        return self in (
            FailureReason.INSUFFICIENT_MARGIN,
            FailureReason.INVALID_REQUEST,
            FailureReason.VENUE_UNAVAILABLE,
        )


_REVERT_REASONS = frozenset({
    FailureReason.SETTLEMENT_REVERTED,
    FailureReason.REVERTED_SLIPPAGE,
    FailureReason.REVERTED_AUTHORIZATION,
    FailureReason.REVERTED_REENTRANCY,
    FailureReason.REVERTED_LIQUIDITY,
    FailureReason.FRONTRUN_DETECTED,
})

_COMPETITIVE_REASONS = frozenset({
    FailureReason.SETTLEMENT_REVERTED,
    FailureReason.REVERTED_SLIPPAGE,
    FailureReason.FRONTRUN_DETECTED,
})


@dataclass(frozen=True)
class SettlementLeg:
    """One swap inside an atomic settlement.

    ``amount_in`` of ``None`` means the leg spends everything the previous
    leg produced.
    """
    venue: str
    token_in: str
    token_out: str
    min_out: float
    amount_in: Optional[float] = None
    expected_out: float = 0.0


@dataclass(frozen=True)
class TxAnchor:
    """Position of our legs relative to an observed pending transaction.

    The target's own swap is carried along so live repricing can replay it
    between our legs.
    """
    tx_hash: str
    legs_before: int = 0  # 0: backrun, 1: sandwich front leg lands before the target
    venue: Optional[str] = None
    token_in: Optional[str] = None
    token_out: Optional[str] = None
    amount_in: float = 0.0


@dataclass
class SettlementRequest:
    """Atomic borrow, swap(s), repay request handed to the ledger."""
    kind: SettlementKind
    pair: Pair
    borrowed_token: str
    borrowed_amount: float
    loan_fee: float
    legs: List[SettlementLeg]
    opportunity: Optional[Opportunity] = None
    plan: Optional[Any] = None  # watcher plan for backrun/sandwich
    anchor: Optional[TxAnchor] = None
    expected_profit: float = 0.0
    deadline_ts: int = 0
    request_id: str = ""
    created_at_ms: int = 0

    def __post_init__(self):
        if not self.request_id:
            self.request_id = uuid.uuid4().hex
        if self.created_at_ms == 0:
            self.created_at_ms = now_ms()

    @property
    def required_return(self) -> float:
        """Principal plus loan fee that the final leg must cover."""
        return self.borrowed_amount + self.loan_fee

    @property
    def final_min_out(self) -> float:
        return self.legs[-1].min_out if self.legs else 0.0


@dataclass(frozen=True)
class SettlementOutcome:
    """Immutable result of one settlement attempt."""
    request_id: str
    success: bool
    realized_profit: float
    failure_reason: Optional[FailureReason] = None
    tx_reference: Optional[str] = None
    kind: SettlementKind = SettlementKind.ARBITRAGE
    pair: Optional[Pair] = None
    leg_amounts: Tuple[float, ...] = ()
    error: Optional[str] = None
    completed_at_ms: int = field(default_factory=now_ms)

    def to_record(self) -> Dict[str, Any]:
        """Plain structured record for telemetry and storage."""
        return {
            "request_id": self.request_id,
            "kind": self.kind.value,
            "pair": self.pair.key if self.pair else None,
            "success": self.success,
            "realized_profit": self.realized_profit,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "tx_reference": self.tx_reference,
            "leg_amounts": list(self.leg_amounts),
            "error": self.error,
            "completed_at_ms": self.completed_at_ms,
        }


@dataclass(frozen=True)
class PendingTransaction:
    """Unconfirmed third-party transaction seen on the pending feed."""
    tx_hash: str
    sender: str
    to: str
    data: str  # hex calldata
    value: int = 0
    gas_price_gwei: float = 0.0
    block_seen: Optional[int] = None


@dataclass(frozen=True)
class NewBlock:
    """Block notification from the pending feed."""
    number: int
    base_fee_gwei: Optional[float] = None
