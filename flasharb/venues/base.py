"""Base venue, ledger and gas oracle interfaces."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Union
from dataclasses import dataclass, field

from flasharb.config import LedgerConfig, VenueConfig
from flasharb.core.types import NewBlock, Pair, PendingTransaction, SettlementRequest


class VenueError(Exception):
    """Raised by adapters when a venue cannot be queried or traded."""


class LedgerError(Exception):
    """Raised when a settlement cannot be submitted to the ledger."""


@dataclass
class AdapterQuote:
    """Raw quote returned by an adapter, in the orientation of the requested pair."""
    price: float
    liquidity_a: float
    liquidity_b: float
    fee_bps: Optional[float] = None
    observed_at_ms: Optional[int] = None


@dataclass
class SwapResult:
    """Swap execution result."""
    success: bool
    amount_out: float = 0.0
    tx_reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class LedgerResult:
    """Result of an atomic settlement on the ledger."""
    success: bool
    tx_reference: Optional[str] = None
    leg_amounts: List[float] = field(default_factory=list)
    balance_before: Optional[float] = None
    balance_after: Optional[float] = None
    gas_cost: float = 0.0  # borrowed-token units
    revert_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ExchangeAdapter(ABC):
    """One implementation per venue kind, selected by configuration."""

    def __init__(self, venue: VenueConfig):
        self.venue = venue
        self.venue_id = venue.id
        self._connected = False

    @property
    def fee_bps(self) -> float:
        return self.venue.fee_bps

    @property
    def impact_coefficient(self) -> float:
        return self.venue.impact_coefficient

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """Open venue connections. Stateless adapters need nothing."""
        self._connected = True
        return True

    async def disconnect(self):
        self._connected = False

    @abstractmethod
    async def quote(self, pair: Pair) -> AdapterQuote:
        """Get price and reserves for ``pair``. Must not have side effects."""
        pass

    @abstractmethod
    async def swap(self, token_in: str, token_out: str, amount_in: float,
                   min_out: float, deadline: int) -> SwapResult:
        """Submit a single swap."""
        pass


class SettlementLedger(ABC):
    """Boundary to the contract that borrows, swaps and repays atomically."""

    def __init__(self, config: LedgerConfig):
        self.config = config

    async def connect(self) -> bool:
        return True

    async def disconnect(self):
        pass

    @abstractmethod
    async def submit(self, request: SettlementRequest) -> LedgerResult:
        """Execute the request atomically; raise ``LedgerError`` if it cannot be sent."""
        pass


class GasPriceOracle(ABC):
    """Source of the current network gas price."""

    @abstractmethod
    async def gas_price_gwei(self) -> float:
        pass


class PendingFeed(ABC):
    """Stream of pending transactions and block notifications."""

    @abstractmethod
    def events(self) -> AsyncIterator[Union[PendingTransaction, NewBlock]]:
        pass

    async def close(self):
        pass
