"""Telemetry fan-out and basic sinks."""

from abc import ABC, abstractmethod
from typing import List, Optional
from loguru import logger

from .events import PRICE_SNAPSHOT, TelemetryEvent


class TelemetrySink(ABC):
    """Consumer of telemetry records."""

    @abstractmethod
    def emit(self, event: TelemetryEvent):
        pass

    async def flush(self):
        """Persist anything buffered. Called once per engine cycle and on shutdown."""
        pass


class TelemetryHub(TelemetrySink):
    """Fans each record out to every registered sink, absorbing sink errors."""

    def __init__(self, sinks: Optional[List[TelemetrySink]] = None):
        self.sinks: List[TelemetrySink] = list(sinks or [])
        self.emitted = 0
        self.sink_errors = 0

    def add_sink(self, sink: TelemetrySink):
        self.sinks.append(sink)

    def emit(self, event: TelemetryEvent):
        self.emitted += 1
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                self.sink_errors += 1
                logger.error(f"Telemetry sink {type(sink).__name__} failed on {event.get('type')}: {e}")

    async def flush(self):
        for sink in self.sinks:
            try:
                await sink.flush()
            except Exception as e:
                self.sink_errors += 1
                logger.error(f"Telemetry sink {type(sink).__name__} failed to flush: {e}")


class LogSink(TelemetrySink):
    """Writes telemetry records to the loguru logger."""

    def __init__(self, log_snapshots: bool = False):
        self.log_snapshots = log_snapshots

    def emit(self, event: TelemetryEvent):
        event_type = event.get("type", "unknown")
        if event_type == PRICE_SNAPSHOT:
            if self.log_snapshots:
                logger.bind(event=event_type).debug(
                    f"📊 Snapshot: {len(event.get('quotes', []))} quotes, failed venues {event.get('failed_venues')}"
                )
            return
        payload = {key: value for key, value in event.items() if key not in ("type", "ts_ms")}
        logger.bind(event=event_type).info(f"[{event_type}] {payload}")


class MemorySink(TelemetrySink):
    """Keeps records in memory, used for status views and tests."""

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self.events: List[TelemetryEvent] = []

    def emit(self, event: TelemetryEvent):
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def of_type(self, event_type: str) -> List[TelemetryEvent]:
        return [event for event in self.events if event.get("type") == event_type]
