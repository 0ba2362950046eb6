"""Pending transaction feeds and gas price oracles backed by files and node RPC."""

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Union
import aiohttp
import websockets
from loguru import logger

from flasharb.config import Config, ConfigError, FeedConfig, GasOracleConfig
from flasharb.core.types import NewBlock, PendingTransaction
from .base import GasPriceOracle, PendingFeed, VenueError
from .registry import register_feed, register_gas_oracle

GWEI = 10 ** 9

FeedItem = Union[PendingTransaction, NewBlock]


def _quantity(value: Any, default: int = 0) -> int:
    """JSON-RPC quantity: hex string, decimal string or number."""
    if value is None:
        return default
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def parse_transaction(data: Mapping[str, Any]) -> PendingTransaction:
    """Build a pending transaction from an ``eth_getTransactionByHash``-shaped object."""
    gas_price = data.get("gasPrice") or data.get("maxFeePerGas")
    block = data.get("blockNumber")
    return PendingTransaction(
        tx_hash=data["hash"],
        sender=data.get("from") or "",
        to=data.get("to") or "",
        data=data.get("input") or data.get("data") or "0x",
        value=_quantity(data.get("value")),
        gas_price_gwei=_quantity(gas_price) / GWEI,
        block_seen=_quantity(block) if block is not None else None,
    )


def parse_block(data: Mapping[str, Any]) -> NewBlock:
    base_fee = data.get("baseFeePerGas")
    return NewBlock(
        number=_quantity(data["number"]),
        base_fee_gwei=_quantity(base_fee) / GWEI if base_fee is not None else None,
    )


def parse_item(data: Mapping[str, Any]) -> Optional[FeedItem]:
    if "hash" in data and ("input" in data or "data" in data):
        return parse_transaction(data)
    if "number" in data:
        return parse_block(data)
    return None


class FileFeed(PendingFeed):
    """Replays pending transactions and blocks from a JSON-lines file."""

    def __init__(self, path: str, interval_ms: int = 0):
        self.path = Path(path)
        self.interval_s = interval_ms / 1000
        self._closed = False

    async def events(self) -> AsyncIterator[FeedItem]:
        if not self.path.exists():
            raise VenueError(f"Feed file not found: {self.path}")
        with open(self.path, "r") as f:
            for line_no, line in enumerate(f, 1):
                if self._closed:
                    return
                line = line.strip()
                if not line:
                    continue
                try:
                    item = parse_item(json.loads(line))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping feed line {line_no} of {self.path}: {e}")
                    continue
                if item is None:
                    continue
                yield item
                await asyncio.sleep(self.interval_s)
        logger.info(f"Feed file {self.path} exhausted")

    async def close(self):
        self._closed = True


class WebSocketFeed(PendingFeed):
    """Node ``eth_subscribe`` feed of new heads and full pending transactions."""

    def __init__(self, url: str, reconnect_delay_s: float = 5.0):
        self.url = url
        self.reconnect_delay_s = reconnect_delay_s
        self.subscriptions: Dict[str, str] = {}
        self.ws = None
        self._pending_ids: Dict[int, str] = {}
        self._closed = False

    async def events(self) -> AsyncIterator[FeedItem]:
        while not self._closed:
            try:
                async with websockets.connect(self.url, ping_interval=30, ping_timeout=10, close_timeout=5) as ws:
                    self.ws = ws
                    await self._subscribe(ws)
                    logger.info(f"✅ Pending feed connected to {self.url}")
                    async for message in ws:
                        item = self.parse_message(json.loads(message))
                        if item is not None:
                            yield item
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._closed:
                    return
                logger.warning(f"Pending feed connection lost: {e}; reconnecting in {self.reconnect_delay_s}s")
                await asyncio.sleep(self.reconnect_delay_s)
            finally:
                self.ws = None

    async def _subscribe(self, ws):
        self.subscriptions = {}
        self._pending_ids = {1: "block", 2: "tx"}
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}))
        await ws.send(json.dumps({
            "jsonrpc": "2.0", "id": 2, "method": "eth_subscribe", "params": ["newPendingTransactions", True],
        }))

    def parse_message(self, message: Mapping[str, Any]) -> Optional[FeedItem]:
        """Record subscription ids from responses and turn notifications into feed items."""
        if "id" in message:
            if message.get("error"):
                raise VenueError(f"Subscription failed: {message['error']}")
            kind = self._pending_ids.pop(message["id"], None)
            if kind is not None:
                self.subscriptions[message["result"]] = kind
            return None

        params = message.get("params") or {}
        kind = self.subscriptions.get(params.get("subscription"))
        result = params.get("result")
        if kind == "block":
            return parse_block(result)
        if kind == "tx" and isinstance(result, dict):
            return parse_transaction(result)
        # hash-only notifications carry no calldata
        return None

    async def close(self):
        self._closed = True
        if self.ws is not None:
            await self.ws.close()


class RpcGasOracle(GasPriceOracle):
    """``eth_gasPrice`` over JSON-RPC HTTP."""

    def __init__(self, url: str, timeout_s: float = 5.0):
        self.url = url
        self.timeout_s = timeout_s

    async def gas_price_gwei(self) -> float:
        data = await self._post({"jsonrpc": "2.0", "id": 1, "method": "eth_gasPrice", "params": []})
        if data.get("error") or "result" not in data:
            raise VenueError(f"eth_gasPrice failed: {data.get('error')}")
        return _quantity(data["result"]) / GWEI

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.url, json=payload) as response:
                if response.status != 200:
                    raise VenueError(f"RPC error {response.status}: {await response.text()}")
                return await response.json()


def _required(params: Mapping[str, Any], key: str, kind: str) -> Any:
    if not params.get(key):
        raise ConfigError(f"{kind} requires params.{key}")
    return params[key]


@register_feed("file")
def build_file_feed(config: FeedConfig) -> FileFeed:
    return FileFeed(_required(config.params, "path", "file feed"), int(config.params.get("interval_ms", 0)))


@register_feed("websocket")
def build_websocket_feed(config: FeedConfig) -> WebSocketFeed:
    return WebSocketFeed(
        _required(config.params, "url", "websocket feed"),
        float(config.params.get("reconnect_delay_s", 5.0)),
    )


@register_gas_oracle("rpc")
def build_rpc_gas_oracle(config: GasOracleConfig, root: Config) -> RpcGasOracle:
    return RpcGasOracle(_required(config.params, "url", "rpc gas oracle"), float(config.params.get("timeout_s", 5.0)))
