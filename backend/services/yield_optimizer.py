from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Iterable, Optional

from config import settings
from models.database import PositionKind, PositionStatus, TradeKind
from models.strategy import RiskAction, RotationPlan, StrategyResult, YieldListing
from models.types import to_decimal
from services.errors import AdapterFailure, InsufficientBalance, InvalidState, NotFound, RiskRejected, ValidationError
from services.position_ledger import PositionLedger, PositionSpec
from services.risk_gate import RiskGate
from services.trade_log import TradeLog, simulated_ref
from services.venues.base import Capability, SignerSession, VenueAdapter
from services.venues.registry import SignerSessions, VenueRegistry
from utils.logger import strategy_logger as logger


def improvement_bps(current_apy: float, best_apy: float) -> float:
    # APY is in percent; 1 percentage point = 100 bps
    return round((best_apy - current_apy) * 100, 6)


class YieldOptimizer:
    """Places idle balances with the highest-APY venue and rotates when a
    better listing appears."""

    def __init__(
        self,
        ledger: PositionLedger,
        trade_log: TradeLog,
        registry: VenueRegistry,
        signers: SignerSessions,
        prices=None,
        risk_gate: Optional[RiskGate] = None,
    ):
        self._ledger = ledger
        self._trade_log = trade_log
        self._registry = registry
        self._signers = signers
        self._prices = prices
        self._risk_gate = risk_gate

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def _listing(self, adapter: VenueAdapter, token: str) -> Optional[YieldListing]:
        try:
            return await adapter.get_apy(token)
        except Exception as exc:
            logger.warning("APY lookup failed", venue=adapter.name, token=token, error=str(exc))
            return None

    async def listings(self, token: str) -> list[YieldListing]:
        """APY listings for ``token`` across venues, best first."""
        token = token.upper()
        adapters = self._registry.with_capability(Capability.APY)
        results = await asyncio.gather(*(self._listing(a, token) for a in adapters))
        found = []
        for adapter, listing in zip(adapters, results):
            if listing is None:
                continue
            found.append(listing.model_copy(update={"simulated": not adapter.supports(Capability.SUPPLY)}))
        return sorted(found, key=lambda l: l.apy, reverse=True)

    async def listings_for(self, tokens: Iterable[str]) -> list[YieldListing]:
        per_token = await asyncio.gather(*(self.listings(t) for t in tokens))
        merged = [listing for listings in per_token for listing in listings]
        return sorted(merged, key=lambda l: l.apy, reverse=True)

    async def _usd_price(self, token: str) -> float:
        if self._prices is None:
            return 1.0
        price = await self._prices.get_price(token)
        if price is None or price.price_usd <= 0:
            logger.warning("No USD price for token, valuing at par", token=token)
            return 1.0
        return price.price_usd

    async def _available_balance(self, target: VenueAdapter, signer: SignerSession, token: str) -> Decimal:
        adapter = target if target.supports(Capability.BALANCE) else None
        if adapter is None:
            candidates = self._registry.with_capability(Capability.BALANCE)
            adapter = candidates[0] if candidates else None
        if adapter is None:
            raise AdapterFailure(target.name, "no venue can report balances")
        return await adapter.get_balance(signer.address, token)

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    async def deposit(
        self,
        owner_id: str,
        token: str,
        amount: Any,
        forced_venue: Optional[str] = None,
        trade_kind: TradeKind = TradeKind.DEPOSIT,
    ) -> StrategyResult:
        token = token.upper()
        try:
            quantity = to_decimal(amount)
        except ValueError:
            quantity = Decimal("0")
        if not quantity.is_finite() or quantity <= 0:
            return StrategyResult(success=False, message="Invalid deposit amount.", error=ValidationError.code)

        signer = self._signers.require(owner_id)

        listings = await self.listings(token)
        if not listings:
            return StrategyResult(success=False, message=f"No yield opportunities found for {token}.")

        target = listings[0]
        if forced_venue:
            target = next((l for l in listings if l.venue.lower() == forced_venue.lower()), None)
            if target is None:
                return StrategyResult(
                    success=False,
                    message=f'Venue "{forced_venue}" has no {token} yield listing.',
                    error=NotFound.code,
                )
        alternatives = [
            {"venue": l.venue, "apy": l.apy, "simulated": l.simulated} for l in listings if l is not target
        ][:3]

        price = await self._usd_price(token)
        amount_usd = float(quantity) * price
        if self._risk_gate is not None:
            decision = await self._risk_gate.check(
                owner_id, RiskAction(kind=PositionKind.YIELD.value, amount_usd=amount_usd, venue=target.venue)
            )
            if not decision.allowed:
                return StrategyResult(
                    success=False, message=decision.reason, error=RiskRejected.code, data={"alternatives": alternatives}
                )

        adapter = self._registry.get(target.venue)
        try:
            balance = await self._available_balance(adapter, signer, token)
        except Exception as exc:
            logger.warning("Balance lookup failed", owner_id=owner_id, venue=adapter.name, error=str(exc))
            return StrategyResult(
                success=False, message=f"Could not read {token} balance: {exc}", error=AdapterFailure.code
            )
        if balance < quantity:
            return StrategyResult(
                success=False,
                message=(
                    f"Insufficient balance: {balance} {token} available, {quantity} {token} needed. "
                    f"Fund your account: {signer.address}"
                ),
                error=InsufficientBalance.code,
                data={"venue": target.venue, "apy": target.apy, "alternatives": alternatives},
            )

        simulated = not adapter.can_settle(Capability.SUPPLY, signer)
        if simulated:
            tx_ref = simulated_ref("deposit")
            logger.info("Simulated deposit", owner_id=owner_id, venue=target.venue, token=token)
        else:
            try:
                tx_ref = await adapter.supply(signer, token, quantity)
            except Exception as exc:
                logger.warning("Deposit failed", owner_id=owner_id, venue=target.venue, error=str(exc))
                return StrategyResult(
                    success=False, message=f"{target.venue} deposit failed: {exc}", error=AdapterFailure.code
                )

        position = await self._ledger.open(
            PositionSpec(
                owner_id=owner_id,
                kind=PositionKind.YIELD,
                venue=target.venue,
                token=token,
                amount=quantity,
                entry_price=price,
                entry_apy=target.apy,
                current_value_usd=amount_usd,
                settlement_tx_ref=tx_ref,
                metadata={"simulated": simulated, "tvl_usd": target.tvl_usd},
            )
        )
        trade = await self._trade_log.log(
            owner_id,
            trade_kind,
            target.venue,
            to_token=token,
            to_amount=quantity,
            price_usd=price,
            settlement_tx_ref=tx_ref,
            position_id=position.id,
            simulated=simulated,
        )

        return StrategyResult(
            success=True,
            message=f"Deposited {quantity} {token} into {target.venue} at {target.apy:.2f}% APY"
            + (" (simulated)" if simulated else ""),
            position_id=position.id,
            trade_ids=[trade.id],
            tx_refs=[tx_ref],
            data={
                "venue": target.venue,
                "apy": target.apy,
                "amount": str(quantity),
                "token": token,
                "simulated": simulated,
                "alternatives": alternatives,
            },
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def should_rotate(self, position_id: str, min_improvement_bps: Optional[float] = None) -> Optional[RotationPlan]:
        if min_improvement_bps is None:
            min_improvement_bps = settings.DEFAULT_MIN_ROTATION_IMPROVEMENT_BPS

        position = await self._ledger.get(position_id)
        if position is None or position.status != PositionStatus.OPEN or position.kind != PositionKind.YIELD:
            return None

        candidates = [l for l in await self.listings(position.token) if l.venue.lower() != position.venue.lower()]
        if not candidates:
            return None
        best = candidates[0]

        current_apy = position.entry_apy or 0.0
        gain = improvement_bps(current_apy, best.apy)
        if gain < min_improvement_bps:
            return None

        return RotationPlan(
            position_id=position.id,
            current_venue=position.venue,
            current_apy=current_apy,
            target_venue=best.venue,
            target_apy=best.apy,
            improvement_bps=gain,
            net_benefit=f"+{gain / 100:.2f}% APY",
            estimated_gas_usd=0.0,
        )

    async def rotate(self, owner_id: str, position_id: str, min_improvement_bps: Optional[float] = None) -> StrategyResult:
        position = await self._ledger.get(position_id)
        if position is None or position.owner_id != owner_id:
            return StrategyResult(success=False, message=f"Position {position_id} not found.", error=NotFound.code)
        if position.status != PositionStatus.OPEN:
            return StrategyResult(success=False, message="Position is already closed.", error=InvalidState.code)

        plan = await self.should_rotate(position_id, min_improvement_bps)
        if plan is None:
            return StrategyResult(
                success=False,
                message="No profitable rotation found: current position is optimal or improvement below threshold.",
                position_id=position_id,
                data={"rotated": False},
            )

        signer = self._signers.require(owner_id)
        amount = to_decimal(position.amount)
        adapter = self._registry.find(position.venue)
        was_simulated = bool((position.meta or {}).get("simulated", True))

        if adapter is not None and not was_simulated and adapter.can_settle(Capability.WITHDRAW, signer):
            try:
                withdraw_ref = await adapter.withdraw(signer, position.token, amount)
            except Exception as exc:
                logger.warning("Withdrawal failed", owner_id=owner_id, venue=position.venue, error=str(exc))
                return StrategyResult(
                    success=False,
                    message=f"Withdrawal from {position.venue} failed: {exc}",
                    error=AdapterFailure.code,
                    position_id=position_id,
                )
            withdraw_simulated = False
        else:
            withdraw_ref = simulated_ref("withdraw")
            withdraw_simulated = True

        withdraw_trade = await self._trade_log.log(
            owner_id,
            TradeKind.WITHDRAW,
            position.venue,
            from_token=position.token,
            from_amount=amount,
            settlement_tx_ref=withdraw_ref,
            position_id=position.id,
            simulated=withdraw_simulated,
        )
        await self._ledger.close(position.id, settlement_ref=withdraw_ref)

        logger.info(
            "Rotating yield position",
            owner_id=owner_id,
            position_id=position.id,
            from_venue=plan.current_venue,
            to_venue=plan.target_venue,
            improvement_bps=plan.improvement_bps,
        )
        result = await self.deposit(
            owner_id, position.token, amount, forced_venue=plan.target_venue, trade_kind=TradeKind.ROTATION
        )
        result.trade_ids.insert(0, withdraw_trade.id)
        result.data.update({"rotated": result.success, "rotated_from": position.id, "plan": plan.model_dump()})
        if result.success:
            result.message = (
                f"Rotated {amount} {position.token} from {plan.current_venue} ({plan.current_apy:.2f}%) "
                f"to {plan.target_venue} ({plan.target_apy:.2f}%), {plan.net_benefit}"
            )
        return result
