"""Concurrent price polling across venues for all tracked pairs."""

import asyncio
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple
from dataclasses import dataclass
from loguru import logger

from flasharb.config import Config
from flasharb.telemetry.events import snapshot_event
from flasharb.telemetry.hub import TelemetrySink
from flasharb.venues.base import ExchangeAdapter
from .types import Pair, VenueQuote, now_ms

Snapshot = Mapping[Pair, Tuple[VenueQuote, ...]]


class AllVenuesUnavailable(Exception):
    """Raised when no venue has answered for too many consecutive polls."""


@dataclass
class VenueHealth:
    """Per-venue polling statistics."""
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    stale: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_success_ms: int = 0


class PriceAggregator:
    """Polls every adapter for every tracked pair and keeps the latest snapshot."""

    def __init__(self, config: Config, adapters: Dict[str, ExchangeAdapter],
                 telemetry: Optional[TelemetrySink] = None,
                 clock: Callable[[], int] = now_ms):
        self.config = config
        self.adapters = adapters
        self.telemetry = telemetry
        self._clock = clock
        self.pairs = [Pair(pair.token_a, pair.token_b) for pair in config.pairs]
        self.quote_timeout_s = config.aggregator.quote_timeout_ms / 1000
        self.max_quote_age_ms = config.aggregator.max_quote_age_ms
        self.max_empty_polls = config.aggregator.max_empty_polls
        self.cycle = 0
        self.empty_polls = 0
        self.health: Dict[str, VenueHealth] = {venue_id: VenueHealth() for venue_id in adapters}
        self._snapshot: Snapshot = MappingProxyType({})

    async def poll_all(self) -> Dict[Pair, List[VenueQuote]]:
        """Query all venues for all pairs and return fresh quotes grouped by pair.

        A venue that times out or errors is skipped for this cycle. Raises
        ``AllVenuesUnavailable`` once no venue has answered for
        ``max_empty_polls`` consecutive polls.
        """
        self.cycle += 1
        jobs = [
            (pair, venue_id, adapter)
            for pair in self.pairs
            for venue_id, adapter in sorted(self.adapters.items())
        ]
        results = await asyncio.gather(
            *(self._query(pair, venue_id, adapter) for pair, venue_id, adapter in jobs)
        )

        now = self._clock()
        snapshot: Dict[Pair, List[VenueQuote]] = {pair: [] for pair in self.pairs}
        responded = set()
        failed = set()
        for (pair, venue_id, _), quote in zip(jobs, results):
            if quote is None:
                failed.add(venue_id)
                continue
            responded.add(venue_id)
            age = quote.age_ms(now)
            if age > self.max_quote_age_ms:
                self.health[venue_id].stale += 1
                logger.debug(f"Dropping stale quote {venue_id} {pair}: {age}ms > {self.max_quote_age_ms}ms")
                continue
            snapshot[pair].append(quote)

        self._snapshot = MappingProxyType({pair: tuple(quotes) for pair, quotes in snapshot.items()})

        if self.telemetry is not None:
            try:
                self.telemetry.emit(snapshot_event(snapshot, cycle=self.cycle, failed_venues=list(failed - responded)))
            except Exception as e:
                logger.error(f"Failed to emit snapshot for poll {self.cycle}: {e}")

        if jobs and not responded:
            self.empty_polls += 1
            logger.error(f"No venue answered in poll {self.cycle} ({self.empty_polls}/{self.max_empty_polls})")
            if self.empty_polls >= self.max_empty_polls:
                raise AllVenuesUnavailable(
                    f"all {len(self.adapters)} venues unavailable for {self.empty_polls} consecutive polls"
                )
        else:
            self.empty_polls = 0

        total = sum(len(quotes) for quotes in snapshot.values())
        logger.debug(f"Poll {self.cycle}: {total} fresh quotes, {len(failed - responded)} venues down")
        return snapshot

    async def _query(self, pair: Pair, venue_id: str, adapter: ExchangeAdapter) -> Optional[VenueQuote]:
        health = self.health.setdefault(venue_id, VenueHealth())
        try:
            raw = await asyncio.wait_for(adapter.quote(pair), timeout=self.quote_timeout_s)
        except asyncio.TimeoutError:
            health.timeouts += 1
            health.consecutive_failures += 1
            health.last_error = "timeout"
            logger.warning(f"⏱️ {venue_id} quote for {pair} timed out after {self.quote_timeout_s:.1f}s")
            return None
        except Exception as e:
            health.failures += 1
            health.consecutive_failures += 1
            health.last_error = str(e)
            logger.warning(f"{venue_id} quote for {pair} failed: {e}")
            return None

        fee_bps = self.config.get_fee_override(venue_id, pair.token_a, pair.token_b)
        if fee_bps is None:
            fee_bps = raw.fee_bps if raw.fee_bps is not None else adapter.fee_bps

        quote = VenueQuote(
            venue=venue_id,
            pair=pair,
            price=float(raw.price),
            liquidity_a=float(raw.liquidity_a),
            liquidity_b=float(raw.liquidity_b),
            fee_bps=float(fee_bps),
            observed_at_ms=raw.observed_at_ms if raw.observed_at_ms is not None else self._clock(),
            impact_coefficient=adapter.impact_coefficient,
        )
        if not quote.is_valid():
            health.failures += 1
            health.consecutive_failures += 1
            health.last_error = "invalid quote"
            logger.warning(f"{venue_id} returned an invalid quote for {pair}: price={quote.price}")
            return None

        health.successes += 1
        health.consecutive_failures = 0
        health.last_success_ms = self._clock()
        return quote

    def latest(self) -> Snapshot:
        """Read-only view of the last poll's fresh quotes."""
        return self._snapshot

    def get_quote(self, pair: Pair, venue_id: str) -> Optional[VenueQuote]:
        """Latest quote for a venue, oriented to ``pair``."""
        for quote in self._snapshot.get(pair, ()):
            if quote.venue == venue_id:
                return quote.oriented(pair)
        return None

    def get_stats(self):
        """Get polling statistics."""
        return {
            "cycle": self.cycle,
            "empty_polls": self.empty_polls,
            "pairs": [str(pair) for pair in self.pairs],
            "venues": {
                venue_id: {
                    "successes": health.successes,
                    "failures": health.failures,
                    "timeouts": health.timeouts,
                    "stale": health.stale,
                    "consecutive_failures": health.consecutive_failures,
                    "last_error": health.last_error,
                }
                for venue_id, health in sorted(self.health.items())
            },
        }
