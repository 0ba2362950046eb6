"""Running performance statistics built from telemetry records."""

import time
from typing import Any, Dict, List
from loguru import logger

from .events import (
    OPPORTUNITY_FOUND, OPPORTUNITY_REJECTED, SAFETY_TRANSITION, SETTLEMENT_OUTCOME,
    TelemetryEvent, WATCHER_PROPOSAL,
)
from .hub import TelemetrySink


class PerformanceTracker(TelemetrySink):
    """Tracks opportunity, settlement and backrun/sandwich statistics for a run."""

    def __init__(self, profit_window_s: int = 3600):
        self.started_at = time.time()
        self.profit_window_s = profit_window_s
        self.total_opportunities = 0
        self.profitable_opportunities = 0
        self.rejected_opportunities = 0
        self.executed_settlements = 0
        self.failed_settlements = 0
        self.total_profit = 0.0
        self.failure_reasons: Dict[str, int] = {}
        self.safety_transitions: Dict[str, int] = {}
        self.mev_stats = {
            "backrun_detected": 0,
            "backrun_executed": 0,
            "sandwich_detected": 0,
            "sandwich_executed": 0,
        }
        self.profit_records: List[Dict[str, Any]] = []

    def emit(self, event: TelemetryEvent):
        event_type = event.get("type")
        if event_type == OPPORTUNITY_FOUND:
            self.total_opportunities += 1
            if event.get("net_profit", 0) > 0:
                self.profitable_opportunities += 1
        elif event_type == OPPORTUNITY_REJECTED:
            self.rejected_opportunities += 1
        elif event_type == WATCHER_PROPOSAL:
            kind = event.get("kind")
            if kind in ("backrun", "sandwich"):
                self.mev_stats[f"{kind}_detected"] += 1
        elif event_type == SETTLEMENT_OUTCOME:
            self._record_outcome(event)
        elif event_type == SAFETY_TRANSITION:
            transition = event.get("transition", "unknown")
            self.safety_transitions[transition] = self.safety_transitions.get(transition, 0) + 1

    def _record_outcome(self, event: TelemetryEvent):
        kind = event.get("kind")
        if event.get("success"):
            profit = event.get("realized_profit", 0.0)
            self.executed_settlements += 1
            self.total_profit += profit
            if kind in ("backrun", "sandwich"):
                self.mev_stats[f"{kind}_executed"] += 1
            self.profit_records.append({
                "ts": event.get("ts_ms", int(time.time() * 1000)) / 1000,
                "profit": profit,
                "kind": kind,
            })
            self._prune_profit_records()
            logger.info(f"💰 Settlement profit {profit:.6f} ({kind}), total {self.total_profit:.6f}")
        else:
            self.failed_settlements += 1
            reason = event.get("failure_reason") or "unknown"
            self.failure_reasons[reason] = self.failure_reasons.get(reason, 0) + 1

    def _prune_profit_records(self):
        cutoff = time.time() - self.profit_window_s
        self.profit_records = [record for record in self.profit_records if record["ts"] >= cutoff]

    def window_profit(self) -> float:
        """Profit realized inside the rolling window."""
        self._prune_profit_records()
        return sum(record["profit"] for record in self.profit_records)

    def get_stats(self) -> Dict[str, Any]:
        """Get performance statistics."""
        attempts = self.executed_settlements + self.failed_settlements
        return {
            "uptime_s": round(time.time() - self.started_at, 1),
            "total_opportunities": self.total_opportunities,
            "profitable_opportunities": self.profitable_opportunities,
            "rejected_opportunities": self.rejected_opportunities,
            "executed_settlements": self.executed_settlements,
            "failed_settlements": self.failed_settlements,
            "success_rate": self.executed_settlements / attempts if attempts else 0.0,
            "total_profit": self.total_profit,
            "window_profit": self.window_profit(),
            "failure_reasons": dict(self.failure_reasons),
            "safety_transitions": dict(self.safety_transitions),
            "mev_stats": dict(self.mev_stats),
        }
