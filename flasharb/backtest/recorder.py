"""Snapshot recorder saving polled venue quotes to parquet files."""

import asyncio
from typing import Dict, List, Any, Optional
from pathlib import Path
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from loguru import logger

from flasharb.core.quotes import PriceAggregator
from flasharb.telemetry.events import PRICE_SNAPSHOT, TelemetryEvent
from flasharb.telemetry.hub import TelemetrySink


class SnapshotRecorder(TelemetrySink):
    """Records price snapshots to parquet for offline replay.

    Receives ``price_snapshot`` telemetry records, so it can be attached to a
    running engine's hub or driven directly with ``record``.
    """

    def __init__(self, outfile: str, buffer_size: int = 1000):
        self.output_file = Path(outfile)
        self.output_file.parent.mkdir(parents=True, exist_ok=True)
        self.quotes_buffer: List[Dict[str, Any]] = []
        self.buffer_size = buffer_size  # Flush to disk every N quote rows
        self.rows_written = 0
        self.snapshots_seen = 0

    def emit(self, event: TelemetryEvent):
        if event.get("type") != PRICE_SNAPSHOT:
            return
        self.snapshots_seen += 1
        for quote in event.get("quotes", []):
            row = dict(quote)
            row["cycle"] = event.get("cycle", 0)
            row["snapshot_ts_ms"] = event.get("ts_ms", quote["observed_at_ms"])
            self.quotes_buffer.append(row)

    async def flush(self):
        if self.quotes_buffer:
            self._flush_quotes()

    async def record(self, aggregator: PriceAggregator, cycles: int, interval_s: Optional[float] = None):
        """Poll ``cycles`` times and record every snapshot."""
        interval = interval_s if interval_s is not None else aggregator.config.aggregator.poll_interval_ms / 1000
        logger.info(f"Recording {cycles} snapshots to {self.output_file}")
        try:
            for cycle in range(cycles):
                await aggregator.poll_all()
                if len(self.quotes_buffer) >= self.buffer_size:
                    self._flush_quotes()
                if cycle < cycles - 1:
                    await asyncio.sleep(interval)
        finally:
            await self.flush()
        logger.info(f"Recording finished: {self.snapshots_seen} snapshots, {self.rows_written} rows")

    def _flush_quotes(self):
        """Flush quotes buffer to parquet file."""
        df = pd.DataFrame(self.quotes_buffer)
        df['ts_ns'] = pd.to_datetime(df['observed_at_ms'], unit='ms').astype('int64')

        if self.output_file.exists():
            existing_df = pd.read_parquet(self.output_file)
            df = pd.concat([existing_df, df], ignore_index=True)
        pq.write_table(pa.Table.from_pandas(df, preserve_index=False), self.output_file)

        logger.info(f"Flushed {len(self.quotes_buffer)} quotes to {self.output_file}")
        self.rows_written += len(self.quotes_buffer)
        self.quotes_buffer.clear()

    def get_recording_status(self) -> Dict[str, Any]:
        """Get current recording status."""
        return {
            'buffer_size': len(self.quotes_buffer),
            'output_file': str(self.output_file),
            'snapshots_seen': self.snapshots_seen,
            'rows_written': self.rows_written,
        }
