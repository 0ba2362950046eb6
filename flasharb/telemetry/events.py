"""Plain structured telemetry records."""

from typing import Any, Dict, List, Mapping, Optional

from flasharb.core.types import (
    Opportunity, Pair, SettlementOutcome, SettlementRequest, VenueQuote, now_ms,
)

PRICE_SNAPSHOT = "price_snapshot"
OPPORTUNITY_FOUND = "opportunity_found"
OPPORTUNITY_REJECTED = "opportunity_rejected"
SETTLEMENT_OUTCOME = "settlement_outcome"
SAFETY_TRANSITION = "safety_transition"
WATCHER_PROPOSAL = "watcher_proposal"

EVENT_TYPES = (
    PRICE_SNAPSHOT,
    OPPORTUNITY_FOUND,
    OPPORTUNITY_REJECTED,
    SETTLEMENT_OUTCOME,
    SAFETY_TRANSITION,
    WATCHER_PROPOSAL,
)

TelemetryEvent = Dict[str, Any]


def make_event(event_type: str, **payload) -> TelemetryEvent:
    event = {"type": event_type, "ts_ms": now_ms()}
    event.update(payload)
    return event


def quote_record(quote: VenueQuote) -> Dict[str, Any]:
    return {
        "venue": quote.venue,
        "pair": str(quote.pair),
        "token_a": quote.pair.token_a,
        "token_b": quote.pair.token_b,
        "price": quote.price,
        "liquidity_a": quote.liquidity_a,
        "liquidity_b": quote.liquidity_b,
        "fee_bps": quote.fee_bps,
        "observed_at_ms": quote.observed_at_ms,
        "impact_coefficient": quote.impact_coefficient,
    }


def snapshot_event(snapshot: Mapping[Pair, List[VenueQuote]], cycle: int = 0,
                   failed_venues: Optional[List[str]] = None) -> TelemetryEvent:
    quotes = [quote_record(quote) for pair_quotes in snapshot.values() for quote in pair_quotes]
    return make_event(
        PRICE_SNAPSHOT,
        cycle=cycle,
        quotes=quotes,
        failed_venues=sorted(failed_venues or []),
    )


def opportunity_record(opportunity: Opportunity) -> Dict[str, Any]:
    return {
        "pair": opportunity.pair.key,
        "buy_venue": opportunity.buy_venue,
        "sell_venue": opportunity.sell_venue,
        "borrowed_token": opportunity.borrowed_token,
        "trade_size": opportunity.trade_size,
        "gross_profit": opportunity.gross_profit,
        "fees_cost": opportunity.fees_cost,
        "gas_cost": opportunity.gas_cost,
        "net_profit": opportunity.net_profit,
        "spread_bps": opportunity.spread_bps,
        "confidence": opportunity.confidence,
        "detected_at_ms": opportunity.detected_at_ms,
    }


def opportunity_event(opportunity: Opportunity, rejected_reason: Optional[str] = None) -> TelemetryEvent:
    if rejected_reason:
        return make_event(OPPORTUNITY_REJECTED, reason=rejected_reason, **opportunity_record(opportunity))
    return make_event(OPPORTUNITY_FOUND, **opportunity_record(opportunity))


def outcome_event(outcome: SettlementOutcome) -> TelemetryEvent:
    return make_event(SETTLEMENT_OUTCOME, **outcome.to_record())


def safety_event(transition: str, details: Dict[str, Any]) -> TelemetryEvent:
    return make_event(SAFETY_TRANSITION, transition=transition, details=dict(details))


def proposal_event(request: SettlementRequest, tx_hash: str) -> TelemetryEvent:
    return make_event(
        WATCHER_PROPOSAL,
        request_id=request.request_id,
        kind=request.kind.value,
        pair=request.pair.key,
        target_tx=tx_hash,
        borrowed_token=request.borrowed_token,
        borrowed_amount=request.borrowed_amount,
        expected_profit=request.expected_profit,
    )
