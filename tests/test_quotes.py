"""Test price aggregation."""

import asyncio
from unittest.mock import Mock
import pytest

from flasharb.config import VenueConfig
from flasharb.core.quotes import AllVenuesUnavailable, PriceAggregator
from flasharb.core.types import Pair
from flasharb.telemetry import PRICE_SNAPSHOT, MemorySink
from flasharb.venues.base import AdapterQuote, ExchangeAdapter, SwapResult, VenueError
from tests.sample_data import PAIR, T0_MS, make_config


class FakeAdapter(ExchangeAdapter):
    """Adapter returning a fixed quote, or failing on demand."""

    def __init__(self, venue_id, price=100.0, liquidity_a=1000.0, fee_bps=None,
                 observed_at_ms=T0_MS, delay=0.0, error=None):
        super().__init__(VenueConfig(id=venue_id, kind="fake", fee_bps=30))
        self.price = price
        self.liquidity_a = liquidity_a
        self.raw_fee_bps = fee_bps
        self.observed_at_ms = observed_at_ms
        self.delay = delay
        self.error = error
        self.calls = 0

    async def quote(self, pair):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return AdapterQuote(
            price=self.price,
            liquidity_a=self.liquidity_a,
            liquidity_b=self.liquidity_a * self.price,
            fee_bps=self.raw_fee_bps,
            observed_at_ms=self.observed_at_ms,
        )

    async def swap(self, token_in, token_out, amount_in, min_out, deadline):
        return SwapResult(success=False, error="not supported")


class TestPolling:
    """Test polling behaviour."""

    def setup_method(self):
        self.config = make_config(aggregator={"quote_timeout_ms": 50, "max_empty_polls": 2})
        self.sink = MemorySink()

    def make_aggregator(self, adapters, now_ms=T0_MS):
        return PriceAggregator(self.config, adapters, telemetry=self.sink, clock=lambda: now_ms)

    def test_poll_all_returns_quotes_per_pair(self):
        aggregator = self.make_aggregator({
            "uni": FakeAdapter("uni", price=100.0),
            "sushi": FakeAdapter("sushi", price=100.5),
        })

        snapshot = asyncio.run(aggregator.poll_all())

        assert list(snapshot) == [PAIR]
        assert sorted(quote.venue for quote in snapshot[PAIR]) == ["sushi", "uni"]
        assert aggregator.get_quote(PAIR, "sushi").price == 100.5
        assert len(self.sink.of_type(PRICE_SNAPSHOT)) == 1

    def test_failing_venue_is_skipped(self):
        aggregator = self.make_aggregator({
            "uni": FakeAdapter("uni"),
            "sushi": FakeAdapter("sushi", error=VenueError("rpc down")),
        })

        snapshot = asyncio.run(aggregator.poll_all())

        assert [quote.venue for quote in snapshot[PAIR]] == ["uni"]
        stats = aggregator.get_stats()
        assert stats["venues"]["sushi"]["failures"] == 1
        assert stats["venues"]["sushi"]["last_error"] == "rpc down"
        assert self.sink.of_type(PRICE_SNAPSHOT)[0]["failed_venues"] == ["sushi"]

    def test_slow_venue_times_out(self):
        aggregator = self.make_aggregator({
            "uni": FakeAdapter("uni"),
            "sushi": FakeAdapter("sushi", delay=1.0),
        })

        snapshot = asyncio.run(aggregator.poll_all())

        assert [quote.venue for quote in snapshot[PAIR]] == ["uni"]
        assert aggregator.get_stats()["venues"]["sushi"]["timeouts"] == 1

    def test_stale_quotes_dropped(self):
        aggregator = self.make_aggregator({
            "uni": FakeAdapter("uni", observed_at_ms=T0_MS),
            "sushi": FakeAdapter("sushi", observed_at_ms=T0_MS - 61_000),
        }, now_ms=T0_MS)

        snapshot = asyncio.run(aggregator.poll_all())

        assert [quote.venue for quote in snapshot[PAIR]] == ["uni"]
        assert aggregator.get_stats()["venues"]["sushi"]["stale"] == 1

    def test_invalid_quote_dropped(self):
        aggregator = self.make_aggregator({
            "uni": FakeAdapter("uni"),
            "sushi": FakeAdapter("sushi", price=0.0),
        })

        snapshot = asyncio.run(aggregator.poll_all())

        assert [quote.venue for quote in snapshot[PAIR]] == ["uni"]

    def test_fee_resolution(self):
        self.config = make_config(fees={"venue_pair_bps": {"uni": {"TKA/TKB": 5}}})
        aggregator = self.make_aggregator({
            "uni": FakeAdapter("uni", fee_bps=25),
            "sushi": FakeAdapter("sushi", fee_bps=None),
            "curve": FakeAdapter("curve", fee_bps=4),
        })

        asyncio.run(aggregator.poll_all())

        assert aggregator.get_quote(PAIR, "uni").fee_bps == 5
        assert aggregator.get_quote(PAIR, "sushi").fee_bps == 30
        assert aggregator.get_quote(PAIR, "curve").fee_bps == 4

    def test_get_quote_orients_to_requested_pair(self):
        aggregator = self.make_aggregator({"uni": FakeAdapter("uni", price=100.0)})

        asyncio.run(aggregator.poll_all())
        flipped = aggregator.get_quote(Pair("TKB", "TKA"), "uni")

        assert flipped.price == pytest.approx(0.01)
        assert flipped.liquidity_a == pytest.approx(100_000.0)

    def test_latest_snapshot_is_read_only(self):
        aggregator = self.make_aggregator({"uni": FakeAdapter("uni")})

        asyncio.run(aggregator.poll_all())

        with pytest.raises(TypeError):
            aggregator.latest()[PAIR] = ()

    def test_failing_telemetry_does_not_abort_poll(self):
        sink = Mock()
        sink.emit.side_effect = RuntimeError("disk full")
        aggregator = PriceAggregator(self.config, {"uni": FakeAdapter("uni")}, telemetry=sink,
                                     clock=lambda: T0_MS)

        snapshot = asyncio.run(aggregator.poll_all())

        assert [quote.venue for quote in snapshot[PAIR]] == ["uni"]
        assert aggregator.latest()[PAIR][0].venue == "uni"
        assert aggregator.empty_polls == 0


class TestFatalLoss:
    """Test loss of all venues."""

    def test_all_venues_unavailable_after_consecutive_empty_polls(self):
        config = make_config(aggregator={"max_empty_polls": 2})
        adapters = {
            "uni": FakeAdapter("uni", error=VenueError("down")),
            "sushi": FakeAdapter("sushi", error=VenueError("down")),
        }
        aggregator = PriceAggregator(config, adapters, clock=lambda: T0_MS)

        first = asyncio.run(aggregator.poll_all())
        assert first[PAIR] == []

        with pytest.raises(AllVenuesUnavailable):
            asyncio.run(aggregator.poll_all())

    def test_recovery_resets_counter(self):
        config = make_config(aggregator={"max_empty_polls": 2})
        adapter = FakeAdapter("uni", error=VenueError("down"))
        aggregator = PriceAggregator(config, {"uni": adapter}, clock=lambda: T0_MS)

        asyncio.run(aggregator.poll_all())
        adapter.error = None
        asyncio.run(aggregator.poll_all())
        adapter.error = VenueError("down again")
        asyncio.run(aggregator.poll_all())

        assert aggregator.empty_polls == 1
