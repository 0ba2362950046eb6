"""Venue adapters, settlement ledgers, pending feeds, gas oracles and their registry."""

from .base import (
    AdapterQuote, ExchangeAdapter, GasPriceOracle, LedgerError, LedgerResult,
    PendingFeed, SettlementLedger, SwapResult, VenueError,
)
from .registry import (
    ADAPTER_KINDS, FEED_KINDS, GAS_ORACLE_KINDS, LEDGER_KINDS, build_adapters, build_feed,
    build_gas_oracle, build_ledger, register_adapter, register_feed, register_gas_oracle, register_ledger,
)
from .paper import PaperLedger, PaperVenue, QueueFeed, StaticGasOracle
from .feeds import FileFeed, RpcGasOracle, WebSocketFeed

__all__ = [
    'AdapterQuote',
    'ExchangeAdapter',
    'GasPriceOracle',
    'LedgerError',
    'LedgerResult',
    'PendingFeed',
    'SettlementLedger',
    'SwapResult',
    'VenueError',
    'ADAPTER_KINDS',
    'FEED_KINDS',
    'GAS_ORACLE_KINDS',
    'LEDGER_KINDS',
    'build_adapters',
    'build_feed',
    'build_gas_oracle',
    'build_ledger',
    'register_adapter',
    'register_feed',
    'register_gas_oracle',
    'register_ledger',
    'PaperLedger',
    'PaperVenue',
    'QueueFeed',
    'StaticGasOracle',
    'FileFeed',
    'RpcGasOracle',
    'WebSocketFeed'
]
