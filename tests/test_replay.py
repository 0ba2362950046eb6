"""Test snapshot recording and replay."""

import asyncio

import pandas as pd
import pytest

from flasharb.backtest import SnapshotRecorder, SnapshotReplay
from flasharb.core.quotes import PriceAggregator
from flasharb.core.types import Pair
from flasharb.telemetry.events import snapshot_event
from flasharb.venues import build_adapters
from tests.sample_data import PAIR, make_config, make_quote, paper_venue_config


def spread_config():
    return make_config(venues=[
        paper_venue_config("uni", 1000.0, 100_000.0, fee_bps=25),
        paper_venue_config("sushi", 1000.0, 102_000.0, fee_bps=30),
    ])


class TestRecorder:
    """Test parquet recording."""

    def test_records_every_poll(self, tmp_path):
        config = spread_config()
        outfile = tmp_path / "snapshots" / "quotes.parquet"
        recorder = SnapshotRecorder(str(outfile), buffer_size=2)
        aggregator = PriceAggregator(config, build_adapters(config), telemetry=recorder)

        asyncio.run(recorder.record(aggregator, cycles=3, interval_s=0))

        df = pd.read_parquet(outfile)
        assert len(df) == 6
        assert sorted(df["cycle"].unique()) == [1, 2, 3]
        assert set(df["venue"]) == {"uni", "sushi"}
        assert "ts_ns" in df.columns
        status = recorder.get_recording_status()
        assert status["rows_written"] == 6
        assert status["snapshots_seen"] == 3
        assert status["buffer_size"] == 0

    def test_ignores_other_telemetry(self, tmp_path):
        recorder = SnapshotRecorder(str(tmp_path / "quotes.parquet"))

        recorder.emit({"type": "settlement_outcome", "request_id": "x"})

        assert recorder.quotes_buffer == []


class TestReplay:
    """Test offline detection over recorded snapshots."""

    def test_recorded_session_replays(self, tmp_path):
        config = spread_config()
        outfile = tmp_path / "quotes.parquet"
        recorder = SnapshotRecorder(str(outfile))
        aggregator = PriceAggregator(config, build_adapters(config), telemetry=recorder)
        asyncio.run(recorder.record(aggregator, cycles=2, interval_s=0))

        replay = SnapshotReplay(config)
        replay.load_parquet(str(outfile))
        summary = replay.run()

        assert summary["cycles"] == 2
        assert summary["opportunities"] == 2
        assert summary["by_pair"]["TKA/TKB"]["count"] == 2
        assert summary["best"]["buy_venue"] == "uni"
        assert summary["total_net_profit"] == pytest.approx(2 * summary["best"]["net_profit"])

    def test_snapshots_rebuild_quotes(self, tmp_path):
        outfile = tmp_path / "quotes.parquet"
        recorder = SnapshotRecorder(str(outfile))
        flipped = make_quote("curve", 0.01, liquidity_a=100_000.0, pair=Pair("TKB", "TKA"))
        recorder.emit(snapshot_event({PAIR: [make_quote("uni", 100.0), flipped]}, cycle=4))
        asyncio.run(recorder.flush())

        replay = SnapshotReplay(make_config())
        replay.load_parquet(str(outfile))
        snapshots = list(replay.snapshots())

        assert len(snapshots) == 1
        cycle, snapshot = snapshots[0]
        assert cycle == 4
        quotes = {quote.venue: quote for quote in snapshot[PAIR]}
        assert quotes["uni"].price == 100.0
        assert quotes["curve"].pair.same_orientation(Pair("TKB", "TKA"))

    def test_missing_file_raises(self, tmp_path):
        replay = SnapshotReplay(make_config())

        with pytest.raises(FileNotFoundError):
            replay.load_parquet(str(tmp_path / "missing.parquet"))

    def test_empty_replay(self):
        summary = SnapshotReplay(make_config()).run()

        assert summary["cycles"] == 0
        assert summary["best"] is None
