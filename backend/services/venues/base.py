from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from models.strategy import PriceQuote, YieldListing
from services.errors import AdapterFailure


class Capability(str, Enum):
    SUPPLY = "supply"
    WITHDRAW = "withdraw"
    SWAP = "swap"
    QUOTE = "quote"
    APY = "apy"
    BALANCE = "balance"


@dataclass
class TxReceipt:
    """Settlement outcome of a submitted transaction."""

    tx_ref: str
    success: bool
    block_number: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SwapFill:
    tx_ref: str
    token_in: str
    token_out: str
    amount_in: Decimal
    amount_out: Decimal

    @property
    def price(self) -> float:
        """Executed price as token_out per token_in."""
        if not self.amount_in:
            return 0.0
        return float(self.amount_out / self.amount_in)


@runtime_checkable
class ChainClient(Protocol):
    """Chain access an adapter needs to settle real operations."""

    async def send_transaction(self, tx: dict[str, Any]) -> str:
        ...

    async def wait_for_receipt(self, tx_ref: str, timeout_seconds: float = 60.0) -> TxReceipt:
        ...

    async def read_only_call(self, call: dict[str, Any]) -> Any:
        ...


@dataclass
class SignerSession:
    """An owner's unlocked signing context for real (non-simulated) operations."""

    owner_id: str
    address: str
    chain_client: ChainClient


class VenueAdapter(ABC):
    """A trading or lending venue with an explicit capability set.

    Callers check :meth:`supports` before dispatching. Operations a venue
    does not declare raise :class:`AdapterFailure`.
    """

    name: str = "venue"
    capabilities: frozenset[Capability] = frozenset()
    paper_only: bool = False  # never settles on-chain, even with a signer

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def can_settle(self, capability: Capability, signer: Optional[SignerSession]) -> bool:
        """True when ``capability`` would run for real rather than simulated."""
        return signer is not None and not self.paper_only and self.supports(capability)

    def _unsupported(self, capability: Capability) -> AdapterFailure:
        return AdapterFailure(self.name, f"{capability.value} not supported by this venue")

    async def get_quote(self, token_in: str, token_out: str, amount_in: Decimal) -> PriceQuote:
        raise self._unsupported(Capability.QUOTE)

    async def get_apy(self, token: str) -> Optional[YieldListing]:
        raise self._unsupported(Capability.APY)

    async def get_balance(self, address: str, token: str) -> Decimal:
        raise self._unsupported(Capability.BALANCE)

    async def supply(self, signer: SignerSession, token: str, amount: Decimal) -> str:
        """Deposit ``amount`` and return the settlement reference."""
        raise self._unsupported(Capability.SUPPLY)

    async def withdraw(self, signer: SignerSession, token: str, amount: Decimal) -> str:
        raise self._unsupported(Capability.WITHDRAW)

    async def swap(
        self,
        signer: SignerSession,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        max_slippage_bps: float,
    ) -> SwapFill:
        raise self._unsupported(Capability.SWAP)
