"""Configuration management for the flash-loan arbitrage engine."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator


class ConfigError(Exception):
    """Raised when configuration is missing or invalid at startup."""


class VenueConfig(BaseModel):
    """Exchange venue configuration."""
    id: str
    kind: str
    fee_bps: float = 30.0
    impact_coefficient: float = 1.0  # <1.0 for concentrated-liquidity venues
    max_slippage_bps: float = 50.0
    router: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class TokenConfig(BaseModel):
    """On-chain token identity, used to decode pending swaps."""
    address: str
    decimals: int = 18


class PairConfig(BaseModel):
    """Tracked token pair."""
    token_a: str
    token_b: str
    borrow_token: Optional[str] = None

    @model_validator(mode="after")
    def _check_tokens(self):
        if self.token_a == self.token_b:
            raise ValueError(f"pair tokens must differ: {self.token_a}")
        if self.borrow_token is not None and self.borrow_token not in (self.token_a, self.token_b):
            raise ValueError(f"borrow token {self.borrow_token} is not part of {self.token_a}/{self.token_b}")
        return self

    @property
    def key(self) -> str:
        return f"{self.token_a}/{self.token_b}"

    @property
    def borrowed(self) -> str:
        return self.borrow_token or self.token_b


class FeeConfig(BaseModel):
    """Fee configuration."""
    loan_fee_bps: float = 9.0  # 0.09% flash loan premium
    venue_pair_bps: Dict[str, Dict[str, float]] = Field(default_factory=dict)


class AggregatorConfig(BaseModel):
    """Price polling configuration."""
    poll_interval_ms: int = 10000
    quote_timeout_ms: int = 3000
    max_quote_age_ms: int = 60000
    max_empty_polls: int = 5


class DetectorConfig(BaseModel):
    """Opportunity detection configuration."""
    min_spread_bps: float = 10.0
    min_profit_absolute: float = 0.01
    min_profit_pct: float = 0.15
    max_liquidity_fraction: float = 0.025
    max_trade_size: float = 50.0
    max_trade_size_by_token: Dict[str, float] = Field(default_factory=dict)
    fee_basis: str = "profit"  # profit | notional
    gas_units: int = 400000
    size_search_iterations: int = 60


class GasConfig(BaseModel):
    """Gas pricing configuration."""
    native_token: str = "WBNB"
    default_price_gwei: float = 5.0
    native_price_fallback: Dict[str, float] = Field(default_factory=dict)
    sample_interval_ms: int = 15000


class SettlementConfig(BaseModel):
    """Settlement submission configuration."""
    submission_timeout_ms: int = 30000
    deadline_s: int = 300
    quote_timeout_ms: int = 3000


class SafetyConfig(BaseModel):
    """Circuit breaker configuration."""
    failure_threshold: int = 3
    cooldown_s: float = 300.0
    baseline_gas_price_gwei: float = 1.0
    gas_spike_factor: float = 2.5
    competitive_failure_threshold: int = 2
    competitive_slippage_multiplier: float = 1.3
    multiplier_decay_probability: float = 0.3
    multiplier_decay_step: float = 0.1
    congestion_profit_multiplier: float = 2.0
    seed: Optional[int] = None


class WatcherConfig(BaseModel):
    """Pending transaction watcher configuration."""
    enabled: bool = True
    own_address: Optional[str] = None
    queue_size: int = 1000
    max_backrun_blocks: int = 2
    backrun_min_profit: float = 0.01
    backrun_gas_units: int = 350000
    sandwich_enabled: bool = True
    sandwich_min_profit: float = 0.02
    sandwich_front_fraction: float = 0.2
    sandwich_gas_units: int = 500000
    min_victim_impact_pct: float = 0.5
    frontrun_gas_premium: float = 1.3  # pending gas >= 130% of ours on a busy pair
    known_bots: List[str] = Field(default_factory=list)
    max_tracked: int = 10000
    tracked_ttl_s: float = 120.0


class LedgerConfig(BaseModel):
    """Settlement ledger configuration."""
    kind: str = "paper"
    params: Dict[str, Any] = Field(default_factory=dict)


class FeedConfig(BaseModel):
    """Pending transaction feed; no feed leaves the watcher off."""
    kind: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class GasOracleConfig(BaseModel):
    """Gas price source sampled for congestion detection."""
    kind: str = "static"
    params: Dict[str, Any] = Field(default_factory=dict)


class StorageConfig(BaseModel):
    """Storage configuration."""
    db_path: str = "flasharb.sqlite"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    serialize: bool = False  # structured JSON file sink
    file: str = "flasharb.log"


class TelemetryConfig(BaseModel):
    """Telemetry sink configuration."""
    journal: bool = True
    log_snapshots: bool = False
    record_path: Optional[str] = None


class Config(BaseModel):
    """Main configuration model."""
    venues: List[VenueConfig]
    pairs: List[PairConfig]
    tokens: Dict[str, TokenConfig] = Field(default_factory=dict)
    fees: FeeConfig = Field(default_factory=FeeConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    gas: GasConfig = Field(default_factory=GasConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    gas_oracle: GasOracleConfig = Field(default_factory=GasOracleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @model_validator(mode="after")
    def _check_startup(self):
        if not self.venues:
            raise ValueError("at least one venue must be configured")
        if not self.pairs:
            raise ValueError("at least one pair must be tracked")

        ids = [venue.id for venue in self.venues]
        duplicates = sorted({venue_id for venue_id in ids if ids.count(venue_id) > 1})
        if duplicates:
            raise ValueError(f"duplicate venue ids: {duplicates}")

        for venue in self.venues:
            if venue.fee_bps < 0 or venue.impact_coefficient <= 0:
                raise ValueError(f"venue {venue.id}: fee_bps must be >= 0 and impact_coefficient > 0")

        detector = self.detector
        if not 0 < detector.max_liquidity_fraction <= 1:
            raise ValueError("detector.max_liquidity_fraction must be in (0, 1]")
        if detector.max_trade_size <= 0:
            raise ValueError("detector.max_trade_size must be positive")
        if detector.min_profit_absolute < 0 or detector.min_profit_pct < 0:
            raise ValueError("detector profit thresholds must not be negative")
        if detector.fee_basis not in ("profit", "notional"):
            raise ValueError(f"detector.fee_basis must be 'profit' or 'notional', got {detector.fee_basis}")

        safety = self.safety
        if safety.failure_threshold < 1 or safety.cooldown_s <= 0:
            raise ValueError("safety.failure_threshold and safety.cooldown_s must be positive")
        if safety.baseline_gas_price_gwei <= 0 or safety.gas_spike_factor <= 1:
            raise ValueError("safety.baseline_gas_price_gwei must be > 0 and gas_spike_factor > 1")
        if not 0 <= safety.multiplier_decay_probability <= 1:
            raise ValueError("safety.multiplier_decay_probability must be in [0, 1]")

        if self.aggregator.quote_timeout_ms <= 0 or self.aggregator.poll_interval_ms <= 0:
            raise ValueError("aggregator intervals must be positive")
        if not 0 < self.watcher.sandwich_front_fraction < 1:
            raise ValueError("watcher.sandwich_front_fraction must be in (0, 1)")
        if self.watcher.max_tracked < 1 or self.watcher.tracked_ttl_s <= 0:
            raise ValueError("watcher.max_tracked and watcher.tracked_ttl_s must be positive")
        return self

    def get_venue(self, venue_id: str) -> Optional[VenueConfig]:
        """Get venue configuration by id."""
        for venue in self.venues:
            if venue.id == venue_id:
                return venue
        return None

    def get_fee_override(self, venue_id: str, token_a: str, token_b: str) -> Optional[float]:
        """Get the per-pair fee tier for a venue, if one is configured."""
        overrides = self.fees.venue_pair_bps.get(venue_id, {})
        for key in (f"{token_a}/{token_b}", f"{token_b}/{token_a}"):
            if key in overrides:
                return overrides[key]
        return None

    def get_fee_bps(self, venue_id: str, token_a: Optional[str] = None,
                    token_b: Optional[str] = None) -> float:
        """Get swap fee in basis points for a venue, honouring per-pair fee tiers."""
        if token_a and token_b:
            override = self.get_fee_override(venue_id, token_a, token_b)
            if override is not None:
                return override
        venue = self.get_venue(venue_id)
        return venue.fee_bps if venue else 30.0

    def get_max_trade_size(self, token: str) -> float:
        """Get maximum notional for a borrowed token."""
        return self.detector.max_trade_size_by_token.get(token, self.detector.max_trade_size)

    @classmethod
    def load_from_file(cls, config_path: str = "config.yaml") -> "Config":
        """Load configuration from YAML file with environment variable substitution."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path, "r") as f:
            config_str = f.read()

        for key, value in os.environ.items():
            config_str = config_str.replace(f"${{{key}}}", value)

        config_data = yaml.safe_load(config_str) or {}
        try:
            return cls(**config_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e


def get_config(config_path: str = "config.yaml") -> Config:
    """Get configuration instance."""
    return Config.load_from_file(config_path)
