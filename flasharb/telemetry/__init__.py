"""Telemetry records and sinks."""

from .events import (
    OPPORTUNITY_FOUND, OPPORTUNITY_REJECTED, PRICE_SNAPSHOT, SAFETY_TRANSITION,
    SETTLEMENT_OUTCOME, WATCHER_PROPOSAL, TelemetryEvent,
)
from .hub import LogSink, MemorySink, TelemetryHub, TelemetrySink
from .tracker import PerformanceTracker

__all__ = [
    "OPPORTUNITY_FOUND",
    "OPPORTUNITY_REJECTED",
    "PRICE_SNAPSHOT",
    "SAFETY_TRANSITION",
    "SETTLEMENT_OUTCOME",
    "WATCHER_PROPOSAL",
    "TelemetryEvent",
    "LogSink",
    "MemorySink",
    "TelemetryHub",
    "TelemetrySink",
    "PerformanceTracker",
]
