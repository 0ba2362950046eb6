"""Test paper venues, ledger and feeds."""

import asyncio

import pytest

from flasharb.config import ConfigError, LedgerConfig, VenueConfig
from flasharb.core.amm import amount_out
from flasharb.core.types import NewBlock, Pair, PendingTransaction, SettlementKind, SettlementLeg, SettlementRequest, TxAnchor
from flasharb.venues import PaperLedger, PaperVenue, QueueFeed, StaticGasOracle, VenueError, build_adapters, build_ledger
from tests.sample_data import PAIR, make_config, paper_venue_config


def round_trip(amount=50.0, first_min=0.0, second_min=0.0, loan_fee_bps=9.0):
    return SettlementRequest(
        kind=SettlementKind.ARBITRAGE,
        pair=PAIR,
        borrowed_token="TKB",
        borrowed_amount=amount,
        loan_fee=amount * loan_fee_bps / 10000,
        legs=[
            SettlementLeg(venue="uni", token_in="TKB", token_out="TKA", min_out=first_min, amount_in=amount),
            SettlementLeg(venue="sushi", token_in="TKA", token_out="TKB", min_out=second_min),
        ],
    )


class TestPaperVenue:
    """Test the constant-product paper venue."""

    def setup_method(self):
        self.venue = PaperVenue(VenueConfig(**paper_venue_config("uni", 1000.0, 100_000.0, fee_bps=25)))

    def test_quote_in_both_orientations(self):
        quote = asyncio.run(self.venue.quote(PAIR))
        flipped = asyncio.run(self.venue.quote(Pair("TKB", "TKA")))

        assert quote.price == pytest.approx(100.0)
        assert quote.liquidity_a == 1000.0
        assert quote.fee_bps == 25
        assert flipped.price == pytest.approx(0.01)
        assert flipped.liquidity_a == 100_000.0

    def test_swap_moves_reserves(self):
        result = asyncio.run(self.venue.swap("TKB", "TKA", 1000.0, 0.0, 0))

        assert result.success
        assert result.amount_out == pytest.approx(amount_out(1000.0, 100_000.0, 1000.0, 25))
        reserve_a, reserve_b = self.venue.snapshot()[PAIR]
        assert reserve_b == 101_000.0
        assert reserve_a == pytest.approx(1000.0 - result.amount_out)

    def test_swap_below_minimum_fails_without_changes(self):
        before = self.venue.snapshot()

        result = asyncio.run(self.venue.swap("TKB", "TKA", 1000.0, 100.0, 0))

        assert not result.success
        assert result.error == "INSUFFICIENT_OUTPUT_AMOUNT"
        assert self.venue.snapshot() == before

    def test_expired_deadline(self):
        result = asyncio.run(self.venue.swap("TKB", "TKA", 1.0, 0.0, 1))

        assert result.error == "EXPIRED"

    def test_unknown_pool(self):
        with pytest.raises(VenueError):
            asyncio.run(self.venue.quote(Pair("TKA", "TKC")))

    def test_invalid_pool_config(self):
        config = paper_venue_config("bad", 0.0, 100.0)

        with pytest.raises(ConfigError):
            PaperVenue(VenueConfig(**config))


class TestPaperLedger:
    """Test all-or-nothing settlement."""

    def setup_method(self):
        self.config = make_config(venues=[
            paper_venue_config("uni", 1000.0, 100_000.0, fee_bps=25),
            paper_venue_config("sushi", 1000.0, 102_000.0, fee_bps=30),
        ])
        self.adapters = build_adapters(self.config)
        self.ledger = build_ledger(self.config, self.adapters)

    def test_profitable_round_trip(self):
        result = asyncio.run(self.ledger.submit(round_trip()))

        assert isinstance(self.ledger, PaperLedger)
        assert result.success
        assert len(result.leg_amounts) == 2
        assert result.balance_after - result.balance_before == pytest.approx(
            result.leg_amounts[-1] - 50.0 * 1.0009
        )

    def test_failed_leg_rolls_everything_back(self):
        before = {venue_id: venue.snapshot() for venue_id, venue in self.adapters.items()}

        result = asyncio.run(self.ledger.submit(round_trip(second_min=1e9)))

        assert not result.success
        assert result.revert_reason == "INSUFFICIENT_OUTPUT_AMOUNT"
        assert len(result.leg_amounts) == 1
        assert {venue_id: venue.snapshot() for venue_id, venue in self.adapters.items()} == before
        assert self.ledger.balances.get("TKB", 0.0) == 0.0
        assert self.ledger.reverts == 1

    def test_unrepaid_loan_reverts(self):
        # 500 bps of loan fee is more than the spread returns
        result = asyncio.run(self.ledger.submit(round_trip(loan_fee_bps=500.0)))

        assert not result.success
        assert result.revert_reason == "flash loan not repaid"
        assert self.ledger.balances == {}

    def test_starting_balances_from_params(self):
        ledger = PaperLedger(LedgerConfig(params={"balances": {"TKB": 10}}), self.adapters)

        result = asyncio.run(ledger.submit(round_trip()))

        assert result.balance_before == 10.0
        assert result.balance_after > 10.0

    def test_non_paper_venue_rejected(self):
        ledger = PaperLedger(LedgerConfig(), {"uni": object(), "sushi": object()})

        with pytest.raises(VenueError):
            asyncio.run(ledger.submit(round_trip()))

    def test_anchor_replayed_at_its_position(self):
        request = round_trip()
        request.anchor = TxAnchor(tx_hash="0xaa", legs_before=1, venue="sushi",
                                  token_in="TKA", token_out="TKB", amount_in=5.0)

        result = asyncio.run(self.ledger.submit(request))

        # the target sells TKA on sushi just before our own TKA sale
        plain = amount_out(amount_out(50.0, 100_000.0, 1000.0, 25), 1000.0, 102_000.0, 30)
        assert result.leg_amounts[-1] < plain
        assert self.adapters["sushi"].swaps_executed == 2


class TestFeeds:
    """Test the static gas oracle and queue feed."""

    def test_gas_oracle_cycles_then_holds(self):
        oracle = StaticGasOracle([5.0, 20.0])

        async def sample():
            return [await oracle.gas_price_gwei() for _ in range(3)]

        assert asyncio.run(sample()) == [5.0, 20.0, 20.0]

    def test_queue_feed_yields_until_closed(self):
        async def scenario():
            feed = QueueFeed()
            feed.push(NewBlock(number=7))
            feed.push(PendingTransaction(tx_hash="0x1", sender="0x2", to="0x3", data="0x"))
            await feed.close()
            return [item async for item in feed.events()]

        items = asyncio.run(scenario())

        assert isinstance(items[0], NewBlock)
        assert items[1].tx_hash == "0x1"
        assert len(items) == 2
