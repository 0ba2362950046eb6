"""Settlement journaling and reporting."""

from typing import Dict, List, Any
from loguru import logger

from flasharb.telemetry.events import (
    OPPORTUNITY_FOUND, OPPORTUNITY_REJECTED, SAFETY_TRANSITION, SETTLEMENT_OUTCOME, TelemetryEvent,
)
from flasharb.telemetry.hub import TelemetrySink
from .db import Database


class SettlementJournal:
    """Handles settlement journaling and reporting."""

    def __init__(self, database: Database):
        self.database = database

    async def journal_opportunity(self, record: Dict[str, Any]) -> bool:
        """Journal a detected (or rejected) opportunity."""
        try:
            await self.database.insert_opportunity(record)
            logger.debug(f"Journaled opportunity: {record['pair']} {record['buy_venue']} -> {record['sell_venue']}")
            return True
        except Exception as e:
            logger.error(f"Failed to journal opportunity: {e}")
            return False

    async def journal_settlement(self, record: Dict[str, Any]) -> bool:
        """Journal a settlement outcome."""
        try:
            await self.database.insert_settlement(record)
            status = "success" if record.get("success") else record.get("failure_reason")
            logger.debug(f"Journaled settlement {record['request_id'][:8]}: {status}")
            return True
        except Exception as e:
            logger.error(f"Failed to journal settlement: {e}")
            return False

    async def journal_safety_event(self, transition: str, details: Dict[str, Any], ts_ms: int = None) -> bool:
        try:
            await self.database.insert_safety_event(transition, details, ts_ms)
            return True
        except Exception as e:
            logger.error(f"Failed to journal safety event: {e}")
            return False

    async def generate_report(self, days: int) -> str:
        """Generate settlement report for last N days."""
        try:
            performance = await self.database.get_performance_summary(days)
            settlements = await self.database.get_recent_settlements(10)
            summary = performance.get('summary', {})

            report = f"""
=== FLASH-LOAN ARBITRAGE REPORT (Last {days} days) ===
Performance Summary:
- Opportunities: {summary.get('opportunities', 0)} ({summary.get('rejected_opportunities', 0)} rejected)
- Average Spread: {summary.get('avg_spread_bps', 0):.2f} bps
- Settlements: {summary.get('total_settlements', 0)}
- Success Rate: {summary.get('success_rate', 0):.2%}
- Total Profit: {summary.get('total_profit', 0):.6f}

Failure Reasons:
"""
            failure_reasons = performance.get('failure_reasons', {})
            if not failure_reasons:
                report += "- none\n"
            for reason, count in failure_reasons.items():
                report += f"- {reason}: {count}\n"

            by_kind = performance.get('by_kind', {})
            if by_kind:
                report += "\nProfit by Kind:\n"
                for kind, stats in sorted(by_kind.items()):
                    report += f"- {kind}: {stats['count']} settlements, {stats['profit']:.6f}\n"

            report += "\nRecent Settlements:\n"
            for settlement in settlements:
                status = "✅" if settlement['success'] else f"❌ {settlement['failure_reason']}"
                report += (
                    f"- {settlement['kind']} {settlement['pair']}: {status} "
                    f"profit {settlement['realized_profit']:.6f}\n"
                )

            return report

        except Exception as e:
            logger.error(f"Failed to generate report: {e}")
            return f"Error generating report: {e}"

    async def get_performance_summary(self, days: int) -> Dict[str, Any]:
        """Get performance summary for last N days."""
        return await self.database.get_performance_summary(days)


class JournalSink(TelemetrySink):
    """Buffers telemetry records and writes them to the journal on flush."""

    def __init__(self, journal: SettlementJournal):
        self.journal = journal
        self.buffer: List[TelemetryEvent] = []
        self.written = 0

    def emit(self, event: TelemetryEvent):
        if event.get("type") in (OPPORTUNITY_FOUND, OPPORTUNITY_REJECTED, SETTLEMENT_OUTCOME, SAFETY_TRANSITION):
            self.buffer.append(event)

    async def flush(self):
        if not self.buffer:
            return
        events, self.buffer = self.buffer, []
        for event in events:
            event_type = event["type"]
            if event_type == SETTLEMENT_OUTCOME:
                await self.journal.journal_settlement(event)
            elif event_type == SAFETY_TRANSITION:
                await self.journal.journal_safety_event(event["transition"], event.get("details", {}), event.get("ts_ms"))
            else:
                await self.journal.journal_opportunity(event)
            self.written += 1
        logger.debug(f"Journal flushed {len(events)} records")
