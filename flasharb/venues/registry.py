"""Configuration lookup from venue, ledger, feed and gas oracle kind to implementation."""

from typing import Callable, Dict, Optional, Type
from loguru import logger

from flasharb.config import Config, ConfigError, FeedConfig, GasOracleConfig, LedgerConfig
from .base import ExchangeAdapter, GasPriceOracle, PendingFeed, SettlementLedger

LedgerFactory = Callable[[LedgerConfig, Dict[str, ExchangeAdapter]], SettlementLedger]
FeedFactory = Callable[[FeedConfig], PendingFeed]
GasOracleFactory = Callable[[GasOracleConfig, Config], GasPriceOracle]

ADAPTER_KINDS: Dict[str, Type[ExchangeAdapter]] = {}
LEDGER_KINDS: Dict[str, LedgerFactory] = {}
FEED_KINDS: Dict[str, FeedFactory] = {}
GAS_ORACLE_KINDS: Dict[str, GasOracleFactory] = {}


def register_adapter(kind: str):
    """Class decorator registering an adapter implementation for a venue kind."""
    def decorator(cls: Type[ExchangeAdapter]) -> Type[ExchangeAdapter]:
        ADAPTER_KINDS[kind] = cls
        return cls
    return decorator


def register_ledger(kind: str):
    """Decorator registering a ledger factory for a ledger kind."""
    def decorator(factory: LedgerFactory) -> LedgerFactory:
        LEDGER_KINDS[kind] = factory
        return factory
    return decorator


def register_feed(kind: str):
    def decorator(factory: FeedFactory) -> FeedFactory:
        FEED_KINDS[kind] = factory
        return factory
    return decorator


def register_gas_oracle(kind: str):
    def decorator(factory: GasOracleFactory) -> GasOracleFactory:
        GAS_ORACLE_KINDS[kind] = factory
        return factory
    return decorator


def build_adapters(config: Config) -> Dict[str, ExchangeAdapter]:
    """Instantiate one adapter per configured venue."""
    adapters = {}
    for venue in config.venues:
        adapter_cls = ADAPTER_KINDS.get(venue.kind)
        if adapter_cls is None:
            raise ConfigError(
                f"No adapter registered for venue kind '{venue.kind}' (venue {venue.id}); "
                f"known kinds: {sorted(ADAPTER_KINDS)}"
            )
        adapters[venue.id] = adapter_cls(venue)
        logger.info(f"Venue {venue.id} initialized ({venue.kind}, {venue.fee_bps} bps)")
    return adapters


def build_ledger(config: Config, adapters: Dict[str, ExchangeAdapter]) -> SettlementLedger:
    """Instantiate the configured settlement ledger."""
    factory = LEDGER_KINDS.get(config.ledger.kind)
    if factory is None:
        raise ConfigError(
            f"No ledger registered for kind '{config.ledger.kind}'; known kinds: {sorted(LEDGER_KINDS)}"
        )
    ledger = factory(config.ledger, adapters)
    logger.info(f"Settlement ledger initialized ({config.ledger.kind})")
    return ledger


def build_feed(config: Config) -> Optional[PendingFeed]:
    """Instantiate the configured pending transaction feed, if any."""
    kind = config.feed.kind
    if kind is None:
        return None
    factory = FEED_KINDS.get(kind)
    if factory is None:
        raise ConfigError(f"No pending feed registered for kind '{kind}'; known kinds: {sorted(FEED_KINDS)}")
    feed = factory(config.feed)
    logger.info(f"Pending transaction feed initialized ({kind})")
    return feed


def build_gas_oracle(config: Config) -> GasPriceOracle:
    """Instantiate the configured gas price oracle."""
    kind = config.gas_oracle.kind
    factory = GAS_ORACLE_KINDS.get(kind)
    if factory is None:
        raise ConfigError(
            f"No gas oracle registered for kind '{kind}'; known kinds: {sorted(GAS_ORACLE_KINDS)}"
        )
    oracle = factory(config.gas_oracle, config)
    logger.info(f"Gas price oracle initialized ({kind})")
    return oracle
