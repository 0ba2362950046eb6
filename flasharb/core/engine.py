"""Engine orchestrating quotes, detection, settlement, watcher and safety gates."""

import asyncio
from typing import Any, Dict, List, Optional, Set
from loguru import logger

from flasharb.config import Config
from flasharb.telemetry.events import opportunity_event, safety_event
from flasharb.telemetry.hub import TelemetrySink
from flasharb.venues.base import ExchangeAdapter, GasPriceOracle, PendingFeed, SettlementLedger
from .detector import OpportunityDetector
from .quotes import AllVenuesUnavailable, PriceAggregator
from .safety import SafetyGovernor
from .settlement import SettlementCoordinator
from .types import NewBlock, Opportunity, Pair, PendingTransaction, SettlementOutcome, SettlementRequest
from .watcher import OpportunisticWatcher


class ArbitrageEngine:
    """Flash-loan arbitrage engine."""

    def __init__(self, config: Config, adapters: Dict[str, ExchangeAdapter],
                 ledger: SettlementLedger,
                 governor: Optional[SafetyGovernor] = None,
                 telemetry: Optional[TelemetrySink] = None,
                 gas_oracle: Optional[GasPriceOracle] = None,
                 pending_feed: Optional[PendingFeed] = None):
        self.config = config
        self.adapters = adapters
        self.ledger = ledger
        self.telemetry = telemetry
        self.gas_oracle = gas_oracle
        self.pending_feed = pending_feed

        self.governor = governor or SafetyGovernor(config.safety)
        self.governor.set_transition_callback(self._on_safety_transition)
        self.aggregator = PriceAggregator(config, adapters, telemetry=telemetry)
        self.detector = OpportunityDetector(config)
        self.coordinator = SettlementCoordinator(config, adapters, ledger, self.governor, telemetry=telemetry)
        self.watcher: Optional[OpportunisticWatcher] = None
        if config.watcher.enabled and pending_feed is not None:
            self.watcher = OpportunisticWatcher(
                config,
                self.detector,
                self.aggregator.latest,
                gas_price_provider=lambda: self.gas_price_gwei,
                telemetry=telemetry,
                on_proposal=self._on_proposal,
                busy_pair=self.is_pair_busy,
                on_frontrun=self.coordinator.flag_frontrun,
            )

        self.poll_interval_s = config.aggregator.poll_interval_ms / 1000
        self.gas_price_gwei = config.gas.default_price_gwei
        self.running = False
        self.halted = False
        self.halt_reason: Optional[str] = None
        self._stop_event = asyncio.Event()
        self._background: List[asyncio.Task] = []
        self._inflight: Dict[Pair, asyncio.Task] = {}
        self._all_inflight: Set[asyncio.Task] = set()
        self.stats: Dict[str, int] = {
            "cycles": 0,
            "opportunities": 0,
            "dispatched": 0,
            "skipped_cooldown": 0,
            "skipped_congestion": 0,
            "skipped_busy": 0,
            "skipped_fees": 0,
            "proposals": 0,
        }

        logger.info("Flash-loan arbitrage engine initialized")
        logger.info(f"Venues: {sorted(adapters)}")
        logger.info(f"Pairs: {[pair.key for pair in config.pairs]}")
        logger.info(f"Ledger: {config.ledger.kind}, loan fee {config.fees.loan_fee_bps} bps")
        logger.info(f"Min spread: {config.detector.min_spread_bps} bps, min profit: {config.detector.min_profit_absolute}")

    async def start(self):
        """Connect components and run the monitoring loop until stopped or halted."""
        if self.running:
            return

        for venue_id, adapter in self.adapters.items():
            try:
                await adapter.connect()
                logger.info(f"Connected to {venue_id}")
            except Exception as e:
                logger.error(f"Failed to connect to {venue_id}: {e}")
        await self.ledger.connect()

        if self.gas_oracle is not None:
            await self._sample_gas_price()

        self.running = True
        self._stop_event.clear()
        if self.gas_oracle is not None:
            self._background.append(asyncio.create_task(self._gas_sampler()))
        if self.watcher is not None:
            self._background.append(asyncio.create_task(self.watcher.run()))
            self._background.append(asyncio.create_task(self._consume_feed()))

        try:
            await self._monitoring_loop()
        finally:
            await self.stop()

    async def stop(self):
        """Stop starting new work, let in-flight settlements finish, then shut down."""
        if not self.running and not self._background and not self._all_inflight:
            return
        logger.info("Stopping arbitrage engine")
        self.running = False
        self._stop_event.set()

        for task in self._background:
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []

        if self._all_inflight:
            logger.info(f"Waiting for {len(self._all_inflight)} in-flight settlements")
            await asyncio.gather(*list(self._all_inflight), return_exceptions=True)

        try:
            if self.pending_feed is not None:
                await self.pending_feed.close()
            for adapter in self.adapters.values():
                await adapter.disconnect()
            await self.ledger.disconnect()
            if self.telemetry is not None:
                await self.telemetry.flush()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    async def _monitoring_loop(self):
        logger.info("Entering monitoring loop")

        while self.running:
            try:
                await self.run_cycle()
            except AllVenuesUnavailable as e:
                self.halted = True
                self.halt_reason = str(e)
                logger.critical(f"🛑 Halting engine: {e}")
                break
            except Exception as e:
                logger.error(f"Error in monitoring loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> List[Opportunity]:
        """Poll, detect and dispatch once. Returns the opportunities dispatched."""
        self.stats["cycles"] += 1
        snapshot = await self.aggregator.poll_all()
        opportunities = self.detector.find_opportunities(snapshot, self.gas_price_gwei)
        self.stats["opportunities"] += len(opportunities)

        dispatched = []
        for opportunity in opportunities:
            reason = self._fee_gate(opportunity) or self._gate(opportunity.pair, opportunity.net_profit)
            if reason:
                logger.info(f"Skipping {opportunity.pair} opportunity (net {opportunity.net_profit:.6f}): {reason}")
                self._emit(opportunity_event(opportunity, rejected_reason=reason))
                continue
            self._emit(opportunity_event(opportunity))
            self._schedule(self.coordinator.build_request(opportunity))
            dispatched.append(opportunity)

        if self.telemetry is not None:
            try:
                await self.telemetry.flush()
            except Exception as e:
                logger.error(f"Telemetry flush failed: {e}")
        return dispatched

    def _gate(self, pair: Pair, expected_profit: float) -> Optional[str]:
        """Advisory gates consulted before a settlement is started."""
        if self.governor.is_in_cooldown():
            self.stats["skipped_cooldown"] += 1
            return f"cooldown ({self.governor.cooldown_remaining_s():.0f}s remaining)"
        if self.governor.is_congested():
            floor = self.config.safety.congestion_profit_multiplier * self.config.detector.min_profit_absolute
            if expected_profit < floor:
                self.stats["skipped_congestion"] += 1
                return f"network congested, profit below {floor:.6f}"
        if self.is_pair_busy(pair):
            self.stats["skipped_busy"] += 1
            return "settlement already in flight for pair"
        return None

    def _fee_gate(self, opportunity: Opportunity) -> Optional[str]:
        """Skip spreads that cannot pay both venues' swap fees; settlement would reject them for margin."""
        pair = opportunity.pair
        swap_fees = (
            self.config.get_fee_bps(opportunity.buy_venue, pair.token_a, pair.token_b)
            + self.config.get_fee_bps(opportunity.sell_venue, pair.token_a, pair.token_b)
        )
        if opportunity.spread_bps < swap_fees:
            self.stats["skipped_fees"] += 1
            return f"spread {opportunity.spread_bps:.1f} bps below round-trip swap fees {swap_fees:.1f} bps"
        return None

    def is_pair_busy(self, pair: Pair) -> bool:
        return pair in self._inflight or self.coordinator.is_pair_busy(pair)

    def _schedule(self, request: SettlementRequest) -> asyncio.Task:
        task = asyncio.create_task(self._settle(request))
        self._inflight[request.pair] = task
        self._all_inflight.add(task)
        task.add_done_callback(lambda done: self._settled(request.pair, done))
        self.stats["dispatched"] += 1
        return task

    async def _settle(self, request: SettlementRequest) -> SettlementOutcome:
        return await self.coordinator.settle(request)

    def _settled(self, pair: Pair, task: asyncio.Task):
        self._all_inflight.discard(task)
        if self._inflight.get(pair) is task:
            del self._inflight[pair]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Settlement task for {pair} failed: {task.exception()}")

    async def _on_proposal(self, request: SettlementRequest):
        self.stats["proposals"] += 1
        if not self.running:
            return
        reason = self._gate(request.pair, request.expected_profit)
        if reason:
            logger.info(f"Skipping {request.kind.value} proposal on {request.pair}: {reason}")
            return
        self._schedule(request)

    async def _sample_gas_price(self):
        try:
            price = await self.gas_oracle.gas_price_gwei()
        except Exception as e:
            logger.warning(f"Gas price sample failed: {e}")
            return
        if price and price > 0:
            self.gas_price_gwei = price
        self.governor.update_gas_price(price)

    async def _gas_sampler(self):
        interval = self.config.gas.sample_interval_ms / 1000
        while self.running:
            await asyncio.sleep(interval)
            await self._sample_gas_price()

    async def _consume_feed(self):
        try:
            async for item in self.pending_feed.events():
                if isinstance(item, NewBlock):
                    self.watcher.on_new_block(item.number)
                elif isinstance(item, PendingTransaction):
                    self.watcher.submit(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Pending feed failed, watcher idle: {e}")

    def _on_safety_transition(self, transition: str, details: Dict[str, Any]):
        self._emit(safety_event(transition, details))

    def _emit(self, event):
        if self.telemetry is None:
            return
        try:
            self.telemetry.emit(event)
        except Exception as e:
            logger.error(f"Telemetry emit failed: {e}")

    def get_summary(self) -> Dict[str, Any]:
        """Get engine status summary."""
        return {
            "running": self.running,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "gas_price_gwei": self.gas_price_gwei,
            "in_flight": len(self._all_inflight),
            "stats": dict(self.stats),
            "aggregator": self.aggregator.get_stats(),
            "settlement": self.coordinator.get_stats(),
            "safety": self.governor.get_status(),
            "watcher": self.watcher.get_stats() if self.watcher else None,
        }
