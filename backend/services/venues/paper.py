"""In-process venue used for development and tests.

Prices are quoted in the configured quote token. With a signer session and
``paper_only=False`` the venue settles through the signer's ``ChainClient``
so the real-leg path can be exercised end to end.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Optional

from models.strategy import PriceQuote, YieldListing
from models.types import to_decimal
from services.errors import AdapterFailure
from services.venues.base import Capability, SignerSession, SwapFill, VenueAdapter
from utils.logger import get_logger

logger = get_logger("paper_venue")

SWAP_VENUE_CAPABILITIES = frozenset({Capability.SWAP, Capability.QUOTE, Capability.BALANCE})
LENDING_VENUE_CAPABILITIES = frozenset(
    {Capability.SUPPLY, Capability.WITHDRAW, Capability.APY, Capability.BALANCE}
)


class PaperVenue(VenueAdapter):
    def __init__(
        self,
        name: str,
        capabilities: Iterable[Capability],
        *,
        prices: Optional[dict[str, float]] = None,
        apys: Optional[dict[str, float]] = None,
        balances: Optional[dict[str, Any]] = None,
        quote_token: str = "USDT",
        paper_only: bool = True,
        fail_on: Iterable[Capability] = (),
    ):
        self.name = name
        self.capabilities = frozenset(capabilities)
        self.paper_only = paper_only
        self.quote_token = quote_token.upper()
        self.prices = {k.upper(): float(v) for k, v in (prices or {}).items()}
        self.apys = {k.upper(): float(v) for k, v in (apys or {}).items()}
        self.balances = {k.upper(): to_decimal(v) for k, v in (balances or {}).items()}
        self.fail_on = set(fail_on)
        self.calls: list[tuple[str, tuple]] = []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check(self, capability: Capability) -> None:
        if not self.supports(capability):
            raise self._unsupported(capability)
        if capability in self.fail_on:
            raise AdapterFailure(self.name, f"{capability.value} failed")

    def _rate(self, token_in: str, token_out: str) -> float:
        token_in, token_out = token_in.upper(), token_out.upper()
        if token_in == token_out:
            return 1.0
        price_in = 1.0 if token_in == self.quote_token else self.prices.get(token_in)
        price_out = 1.0 if token_out == self.quote_token else self.prices.get(token_out)
        if not price_in or not price_out:
            raise AdapterFailure(self.name, f"no market for {token_in}/{token_out}")
        return price_in / price_out

    async def _settle(self, signer: SignerSession, tx: dict[str, Any]) -> str:
        tx_ref = await signer.chain_client.send_transaction({"venue": self.name, "from": signer.address, **tx})
        receipt = await signer.chain_client.wait_for_receipt(tx_ref)
        if not receipt.success:
            raise AdapterFailure(self.name, f"transaction {tx_ref} reverted")
        return receipt.tx_ref

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def get_quote(self, token_in: str, token_out: str, amount_in: Decimal) -> PriceQuote:
        self._check(Capability.QUOTE)
        self.calls.append(("quote", (token_in, token_out, amount_in)))
        rate = self._rate(token_in, token_out)
        amount = float(amount_in)
        return PriceQuote(
            venue=self.name,
            token_in=token_in.upper(),
            token_out=token_out.upper(),
            amount_in=amount,
            amount_out=amount * rate,
            price=rate,
        )

    async def get_apy(self, token: str) -> Optional[YieldListing]:
        self._check(Capability.APY)
        apy = self.apys.get(token.upper())
        if apy is None:
            return None
        return YieldListing(
            venue=self.name,
            token=token.upper(),
            apy=apy,
            simulated=not self.supports(Capability.SUPPLY),
        )

    async def get_balance(self, address: str, token: str) -> Decimal:
        self._check(Capability.BALANCE)
        return self.balances.get(token.upper(), Decimal("0"))

    async def supply(self, signer: SignerSession, token: str, amount: Decimal) -> str:
        self._check(Capability.SUPPLY)
        self.calls.append(("supply", (signer.owner_id, token, amount)))
        tx_ref = await self._settle(signer, {"op": "supply", "token": token, "amount": str(amount)})
        key = token.upper()
        self.balances[key] = self.balances.get(key, Decimal("0")) - to_decimal(amount)
        return tx_ref

    async def withdraw(self, signer: SignerSession, token: str, amount: Decimal) -> str:
        self._check(Capability.WITHDRAW)
        self.calls.append(("withdraw", (signer.owner_id, token, amount)))
        tx_ref = await self._settle(signer, {"op": "withdraw", "token": token, "amount": str(amount)})
        key = token.upper()
        self.balances[key] = self.balances.get(key, Decimal("0")) + to_decimal(amount)
        return tx_ref

    async def swap(
        self,
        signer: SignerSession,
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        max_slippage_bps: float,
    ) -> SwapFill:
        self._check(Capability.SWAP)
        self.calls.append(("swap", (signer.owner_id, token_in, token_out, amount_in)))
        amount_in = to_decimal(amount_in)
        amount_out = amount_in * to_decimal(self._rate(token_in, token_out))
        tx_ref = await self._settle(
            signer,
            {
                "op": "swap",
                "token_in": token_in,
                "token_out": token_out,
                "amount_in": str(amount_in),
                "max_slippage_bps": max_slippage_bps,
            },
        )
        return SwapFill(
            tx_ref=tx_ref,
            token_in=token_in.upper(),
            token_out=token_out.upper(),
            amount_in=amount_in,
            amount_out=amount_out,
        )


def default_paper_venues(quote_token: str = "USDT") -> list[PaperVenue]:
    """Paper venues registered when no live adapters are configured."""
    return [
        PaperVenue("pancakeswap", SWAP_VENUE_CAPABILITIES, prices={"BNB": 600.0, "CAKE": 2.5}, quote_token=quote_token),
        PaperVenue("thena", SWAP_VENUE_CAPABILITIES, prices={"BNB": 600.4, "CAKE": 2.51}, quote_token=quote_token),
        PaperVenue("biswap", SWAP_VENUE_CAPABILITIES, prices={"BNB": 599.8, "CAKE": 2.49}, quote_token=quote_token),
        PaperVenue(
            "venus",
            LENDING_VENUE_CAPABILITIES,
            apys={"USDT": 4.2, "USDC": 3.9, "BNB": 1.8},
            balances={"USDT": 10000, "USDC": 10000, "BNB": 10},
            quote_token=quote_token,
        ),
    ]
