"""Basic tests for the flash-loan arbitrage engine."""

import asyncio

import yaml
from click.testing import CliRunner

from flasharb.config import Config
from flasharb.core.detector import OpportunityDetector
from flasharb.core.engine import ArbitrageEngine
from flasharb.core.settlement import SettlementCoordinator
from flasharb.core.types import Pair
from flasharb.main import FlashArbBot, cli
from flasharb.venues import QueueFeed
from flasharb.venues.base import ExchangeAdapter
from tests.sample_data import base_config_dict, make_config, paper_venue_config


class TestBasicImports:
    """Test that basic modules can be imported."""

    def test_config_import(self):
        assert Config is not None

    def test_detector_import(self):
        assert OpportunityDetector is not None

    def test_engine_import(self):
        assert ArbitrageEngine is not None
        assert SettlementCoordinator is not None

    def test_exchange_base_import(self):
        assert ExchangeAdapter is not None


class TestBotWiring:
    """Test FlashArbBot building the feed and gas oracle from configuration."""

    def make_bot(self, **sections):
        venues = [
            paper_venue_config("uni", 1000.0, 100_000.0, fee_bps=25),
            paper_venue_config("sushi", 1000.0, 102_000.0, fee_bps=30),
        ]
        return FlashArbBot(make_config(venues=venues, **sections))

    def test_configured_feed_enables_watcher(self):
        bot = self.make_bot(feed={"kind": "queue"})

        assert isinstance(bot.feed, QueueFeed)
        assert bot.engine.pending_feed is bot.feed
        assert bot.engine.watcher is not None

    def test_no_feed_leaves_watcher_off(self):
        bot = self.make_bot()

        assert bot.feed is None
        assert bot.engine.watcher is None

    def test_gas_oracle_from_config(self):
        bot = self.make_bot(gas_oracle={"kind": "static", "params": {"prices": 42.0}})

        assert bot.engine.gas_oracle is bot.gas_oracle
        assert asyncio.run(bot.gas_oracle.gas_price_gwei()) == 42.0


def write_config(tmp_path, venues=None, **overrides):
    data = base_config_dict()
    data["venues"] = venues or [
        paper_venue_config("uni", 1000.0, 100_000.0, fee_bps=25),
        paper_venue_config("sushi", 1000.0, 102_000.0, fee_bps=30),
    ]
    data["aggregator"] = {"poll_interval_ms": 10, "max_empty_polls": 2}
    data["storage"] = {"db_path": str(tmp_path / "flasharb.sqlite")}
    data["logging"] = {"level": "WARNING", "file": str(tmp_path / "flasharb.log")}
    data.update(overrides)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestCli:
    """Test the command line entry points."""

    def test_record_then_replay(self, tmp_path):
        config_path = write_config(tmp_path)
        outfile = str(tmp_path / "quotes.parquet")
        runner = CliRunner()

        recorded = runner.invoke(cli, ["record", "--config", config_path, "--outfile", outfile, "--cycles", "2"])
        replayed = runner.invoke(cli, ["replay", "--config", config_path, "--parquet-file", outfile])

        assert recorded.exit_code == 0, recorded.output
        assert replayed.exit_code == 0, replayed.output
        assert "Cycles: 2" in replayed.output
        assert "Opportunities: 2" in replayed.output
        assert "buy uni sell sushi" in replayed.output

    def test_missing_config_exits_with_error(self, tmp_path):
        result = CliRunner().invoke(cli, ["run", "--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 1

    def test_run_exits_when_all_venues_are_lost(self, tmp_path):
        # no venue has a TKA/TKB pool, so every quote fails
        venues = [
            paper_venue_config("uni", 1000.0, 1000.0, pair=Pair("TKA", "TKC")),
            paper_venue_config("sushi", 1000.0, 1000.0, pair=Pair("TKA", "TKC")),
        ]
        config_path = write_config(tmp_path, venues=venues, telemetry={"journal": True})

        result = CliRunner().invoke(cli, ["run", "--config", config_path])

        assert result.exit_code == 2

    def test_report_and_status_on_empty_journal(self, tmp_path):
        config_path = write_config(tmp_path)
        runner = CliRunner()

        report = runner.invoke(cli, ["report", "--config", config_path, "--days", "3"])
        status = runner.invoke(cli, ["status", "--config", config_path])

        assert report.exit_code == 0
        assert "FLASH-LOAN ARBITRAGE REPORT (Last 3 days)" in report.output
        assert status.exit_code == 0
        assert "ENGINE STATUS" in status.output
