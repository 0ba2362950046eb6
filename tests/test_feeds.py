"""Test pending feeds, gas oracles and their registry."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from flasharb.config import ConfigError
from flasharb.core.types import NewBlock, PendingTransaction
from flasharb.venues import (
    FileFeed, QueueFeed, RpcGasOracle, StaticGasOracle, VenueError, WebSocketFeed, build_feed,
    build_gas_oracle,
)
from flasharb.venues.feeds import parse_block, parse_item, parse_transaction
from tests.sample_data import ROUTERS, TRADER_ADDRESS, make_config

PENDING_TX = {
    "hash": "0xabc",
    "from": TRADER_ADDRESS,
    "to": ROUTERS["uni"],
    "input": "0x38ed1739",
    "value": "0xde0b6b3a7640000",
    "gasPrice": "0x12a05f200",
}
HEAD = {"number": "0x10", "baseFeePerGas": "0x3b9aca00"}


def collect(feed):
    async def drain():
        return [item async for item in feed.events()]
    return asyncio.run(drain())


class TestParsing:
    """Test JSON-RPC object parsing."""

    def test_parse_transaction(self):
        tx = parse_transaction(PENDING_TX)

        assert tx.tx_hash == "0xabc"
        assert tx.to == ROUTERS["uni"]
        assert tx.data == "0x38ed1739"
        assert tx.value == 10 ** 18
        assert tx.gas_price_gwei == pytest.approx(5.0)
        assert tx.block_seen is None

    def test_parse_transaction_eip1559_fee_and_block(self):
        data = dict(PENDING_TX, blockNumber="0x20", maxFeePerGas="0x2540be400")
        del data["gasPrice"]

        tx = parse_transaction(data)

        assert tx.gas_price_gwei == pytest.approx(10.0)
        assert tx.block_seen == 32

    def test_parse_block(self):
        block = parse_block(HEAD)

        assert block.number == 16
        assert block.base_fee_gwei == pytest.approx(1.0)

    def test_parse_item_dispatch(self):
        assert isinstance(parse_item(PENDING_TX), PendingTransaction)
        assert isinstance(parse_item({"number": 7}), NewBlock)
        assert parse_item({"foo": "bar"}) is None


class TestFileFeed:
    """Test JSON-lines replay."""

    def test_replays_blocks_and_transactions(self, tmp_path):
        path = tmp_path / "pending.jsonl"
        path.write_text("\n".join([json.dumps(HEAD), "", "not json", json.dumps(PENDING_TX)]) + "\n")

        items = collect(FileFeed(str(path)))

        assert [type(item) for item in items] == [NewBlock, PendingTransaction]
        assert items[1].tx_hash == "0xabc"

    def test_missing_file(self, tmp_path):
        with pytest.raises(VenueError):
            collect(FileFeed(str(tmp_path / "missing.jsonl")))


class TestWebSocketFeed:
    """Test subscription bookkeeping and notification parsing."""

    def setup_method(self):
        self.feed = WebSocketFeed("ws://localhost:8546")
        self.feed._pending_ids = {1: "block", 2: "tx"}
        self.feed.parse_message({"jsonrpc": "2.0", "id": 1, "result": "0xheads"})
        self.feed.parse_message({"jsonrpc": "2.0", "id": 2, "result": "0xpending"})

    @staticmethod
    def notification(subscription, result):
        return {
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": subscription, "result": result},
        }

    def test_subscription_ids_recorded(self):
        assert self.feed.subscriptions == {"0xheads": "block", "0xpending": "tx"}

    def test_head_notification(self):
        item = self.feed.parse_message(self.notification("0xheads", HEAD))

        assert item == NewBlock(number=16, base_fee_gwei=1.0)

    def test_transaction_notification(self):
        item = self.feed.parse_message(self.notification("0xpending", PENDING_TX))

        assert item.tx_hash == "0xabc"

    def test_hash_only_notification_ignored(self):
        assert self.feed.parse_message(self.notification("0xpending", "0xabc")) is None

    def test_unknown_subscription_ignored(self):
        assert self.feed.parse_message(self.notification("0xother", HEAD)) is None

    def test_subscription_error(self):
        self.feed._pending_ids = {1: "block"}

        with pytest.raises(VenueError):
            self.feed.parse_message({"jsonrpc": "2.0", "id": 1, "error": {"message": "not supported"}})


class TestRpcGasOracle:
    """Test eth_gasPrice sampling."""

    def test_gas_price_in_gwei(self):
        oracle = RpcGasOracle("http://localhost:8545")

        with patch.object(oracle, "_post", AsyncMock(return_value={"result": "0x12a05f200"})) as post:
            price = asyncio.run(oracle.gas_price_gwei())

        assert price == pytest.approx(5.0)
        assert post.call_args[0][0]["method"] == "eth_gasPrice"

    def test_rpc_error(self):
        oracle = RpcGasOracle("http://localhost:8545")

        with patch.object(oracle, "_post", AsyncMock(return_value={"error": {"message": "rate limited"}})):
            with pytest.raises(VenueError):
                asyncio.run(oracle.gas_price_gwei())


class TestRegistry:
    """Test building feeds and gas oracles from configuration."""

    def test_no_feed_by_default(self):
        assert build_feed(make_config()) is None

    def test_queue_feed(self):
        assert isinstance(build_feed(make_config(feed={"kind": "queue"})), QueueFeed)

    def test_file_feed(self, tmp_path):
        feed = build_feed(make_config(feed={"kind": "file", "params": {"path": str(tmp_path / "f.jsonl")}}))

        assert isinstance(feed, FileFeed)

    def test_websocket_feed_requires_url(self):
        with pytest.raises(ConfigError):
            build_feed(make_config(feed={"kind": "websocket"}))

    def test_unknown_feed_kind(self):
        with pytest.raises(ConfigError):
            build_feed(make_config(feed={"kind": "carrier-pigeon"}))

    def test_static_gas_oracle_defaults_to_config(self):
        oracle = build_gas_oracle(make_config(gas={"default_price_gwei": 7.0}))

        assert isinstance(oracle, StaticGasOracle)
        assert asyncio.run(oracle.gas_price_gwei()) == 7.0

    def test_static_gas_oracle_prices(self):
        oracle = build_gas_oracle(make_config(gas_oracle={"kind": "static", "params": {"prices": [3.0, 9.0]}}))

        assert [asyncio.run(oracle.gas_price_gwei()) for _ in range(3)] == [3.0, 9.0, 9.0]

    def test_rpc_gas_oracle(self):
        oracle = build_gas_oracle(make_config(gas_oracle={"kind": "rpc", "params": {"url": "http://node:8545"}}))

        assert isinstance(oracle, RpcGasOracle)
        assert oracle.url == "http://node:8545"

    def test_rpc_gas_oracle_requires_url(self):
        with pytest.raises(ConfigError):
            build_gas_oracle(make_config(gas_oracle={"kind": "rpc"}))

    def test_unknown_gas_oracle_kind(self):
        with pytest.raises(ConfigError):
            build_gas_oracle(make_config(gas_oracle={"kind": "crystal-ball"}))
