"""Main entry point for the flash-loan arbitrage engine."""

import asyncio
import signal
import sys
from typing import Optional
import click
from dotenv import load_dotenv
from loguru import logger

from .config import Config, ConfigError, get_config
from .core.engine import ArbitrageEngine
from .core.quotes import PriceAggregator
from .core.safety import SafetyGovernor
from .storage.db import Database
from .storage.journal import JournalSink, SettlementJournal
from .telemetry.hub import LogSink, TelemetryHub
from .telemetry.tracker import PerformanceTracker
from .backtest.recorder import SnapshotRecorder
from .backtest.replay import SnapshotReplay
from .venues import build_adapters, build_feed, build_gas_oracle, build_ledger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(config: Optional[Config] = None, level: Optional[str] = None):
    """Console sink at the configured level plus a rotating DEBUG file sink."""
    logger.remove()
    console_level = level or (config.logging.level if config else "INFO")
    logger.add(sys.stderr, level=console_level, format=CONSOLE_FORMAT)
    if config is not None and config.logging.file:
        logger.add(config.logging.file, level="DEBUG", format=FILE_FORMAT,
                   rotation="50 MB", serialize=config.logging.serialize)


def load_config_or_exit(config_path: str) -> Config:
    try:
        return get_config(config_path)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)


class FlashArbBot:
    """Wires configured venues, ledger, telemetry and storage around the engine."""

    def __init__(self, config: Config):
        self.config = config
        self.adapters = build_adapters(config)
        self.ledger = build_ledger(config, self.adapters)
        self.tracker = PerformanceTracker()
        self.telemetry = TelemetryHub([LogSink(config.telemetry.log_snapshots), self.tracker])
        self.storage: Optional[Database] = None
        if config.telemetry.journal:
            self.storage = Database(config.storage.db_path)
            self.telemetry.add_sink(JournalSink(SettlementJournal(self.storage)))
        if config.telemetry.record_path:
            self.telemetry.add_sink(SnapshotRecorder(config.telemetry.record_path))

        self.gas_oracle = build_gas_oracle(config)
        self.feed = build_feed(config)
        if config.watcher.enabled and self.feed is None:
            logger.warning("Watcher is enabled but no pending feed is configured (feed.kind); backrun/sandwich disabled")

        self.engine = ArbitrageEngine(
            config,
            self.adapters,
            self.ledger,
            governor=SafetyGovernor(config.safety),
            telemetry=self.telemetry,
            gas_oracle=self.gas_oracle,
            pending_feed=self.feed,
        )

    async def start(self):
        if self.storage is not None:
            await self.storage.connect()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:
                pass  # Windows

        try:
            await self.engine.start()
        finally:
            stats = self.tracker.get_stats()
            logger.info(f"Session stats: {stats}")
            if self.storage is not None:
                await self.storage.disconnect()

    def _signal_handler(self, signum):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        asyncio.create_task(self.engine.stop())


@click.group()
def cli():
    """Flash-loan arbitrage engine CLI."""
    pass


@cli.command()
@click.option('--config', 'config_path', type=click.Path(), default='config.yaml',
              help='Path to config file')
def run(config_path):
    """Run the arbitrage engine with the configured venues and ledger."""
    load_dotenv()
    setup_logging()
    config = load_config_or_exit(config_path)
    setup_logging(config)

    try:
        bot = FlashArbBot(config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        asyncio.run(bot.start())
    except KeyboardInterrupt:
        logger.info("Engine stopped by user")
    except Exception as e:
        logger.error(f"Engine failed: {e}")
        sys.exit(1)

    if bot.engine.halted:
        logger.critical(f"Engine halted: {bot.engine.halt_reason}")
        sys.exit(2)


@cli.command()
@click.option('--config', 'config_path', type=click.Path(), default='config.yaml',
              help='Path to config file')
@click.option('--outfile', required=True, help='Parquet file to write snapshots to')
@click.option('--cycles', default=10, type=int, help='Number of polls to record (default: 10)')
def record(config_path, outfile, cycles):
    """Poll venues and record price snapshots to parquet."""
    load_dotenv()
    setup_logging()
    config = load_config_or_exit(config_path)
    setup_logging(config)

    async def record_snapshots():
        adapters = build_adapters(config)
        recorder = SnapshotRecorder(outfile)
        aggregator = PriceAggregator(config, adapters, telemetry=recorder)
        for adapter in adapters.values():
            await adapter.connect()
        try:
            await recorder.record(aggregator, cycles)
        finally:
            for adapter in adapters.values():
                await adapter.disconnect()

    try:
        asyncio.run(record_snapshots())
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Recording failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--config', 'config_path', type=click.Path(), default='config.yaml',
              help='Path to config file')
@click.option('--parquet-file', required=True, type=click.Path(exists=True), help='Recorded snapshots')
@click.option('--gas-price', type=float, default=None, help='Gas price in gwei (default: config)')
def replay(config_path, parquet_file, gas_price):
    """Run offline detection over recorded snapshots."""
    setup_logging(level="WARNING")
    config = load_config_or_exit(config_path)

    try:
        replayer = SnapshotReplay(config)
        replayer.load_parquet(parquet_file)
        results = replayer.run(gas_price)
    except Exception as e:
        logger.error(f"Replay failed: {e}")
        sys.exit(1)

    print("\n=== REPLAY RESULTS ===")
    print(f"Cycles: {results['cycles']}")
    print(f"Opportunities: {results['opportunities']}")
    print(f"Total net profit: {results['total_net_profit']:.6f}")
    for pair, stats in sorted(results['by_pair'].items()):
        print(f"- {pair}: {stats['count']} opportunities, net {stats['net_profit']:.6f}")
    if results['best']:
        best = results['best']
        print(f"Best: {best['pair']} buy {best['buy_venue']} sell {best['sell_venue']} "
              f"size {best['trade_size']:.4f} net {best['net_profit']:.6f}")


@cli.command()
@click.option('--config', 'config_path', type=click.Path(), default='config.yaml',
              help='Path to config file')
@click.option('--days', default=7, type=int, help='Number of days to report (default: 7)')
def report(config_path, days):
    """Generate settlement report."""
    setup_logging(level="WARNING")
    config = load_config_or_exit(config_path)

    async def generate_report():
        db = Database(config.storage.db_path)
        journal = SettlementJournal(db)
        try:
            await db.connect()
            print(await journal.generate_report(days))
        finally:
            await db.disconnect()

    asyncio.run(generate_report())


@cli.command()
@click.option('--config', 'config_path', type=click.Path(), default='config.yaml',
              help='Path to config file')
def status(config_path):
    """Show last-24h status from the journal."""
    setup_logging(level="WARNING")
    config = load_config_or_exit(config_path)

    async def show_status():
        db = Database(config.storage.db_path)
        journal = SettlementJournal(db)
        try:
            await db.connect()
            performance = await journal.get_performance_summary(1)
            summary = performance.get('summary', {})
            events = await db.get_safety_events(5)

            print(f"""
=== ENGINE STATUS ===
Last 24h:
- Opportunities: {summary.get('opportunities', 0)}
- Settlements: {summary.get('total_settlements', 0)} ({summary.get('failed', 0)} failed)
- Success Rate: {summary.get('success_rate', 0):.2%}
- Profit: {summary.get('total_profit', 0):.6f}
""")
            if events:
                print("Recent safety transitions:")
                for event in events:
                    print(f"- {event['transition']} {event['details']}")
        finally:
            await db.disconnect()

    asyncio.run(show_status())


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
