"""Funding-rate harvesting: long spot plus an equal simulated perpetual short.

Price exposure nets out; the position earns the funding that shorts receive
while the rate is positive. Funding accrues per whole settlement interval.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from config import settings
from models.database import PositionKind, PositionStatus, TradeKind
from models.strategy import DeltaNeutralBreakdown, RiskAction, StrategyResult
from models.types import to_decimal
from services.errors import AdapterFailure, InvalidState, NotFound, RiskRejected, ValidationError
from services.position_ledger import PositionLedger, PositionSpec
from services.risk_gate import RiskGate
from services.trade_log import TradeLog, simulated_ref
from services.venues.base import Capability
from services.venues.registry import SignerSessions, VenueRegistry
from utils.logger import strategy_logger as logger
from utils.utcnow import Clock, hours_between, utcnow

SHORT_VENUE = "simulated_perp"


@dataclass
class DeltaPnl:
    spot_pnl_usd: float
    short_pnl_usd: float
    funding_pnl_usd: float
    funding_intervals: int

    @property
    def total_pnl_usd(self) -> float:
        return self.spot_pnl_usd + self.short_pnl_usd + self.funding_pnl_usd


def delta_neutral_pnl(
    spot_entry: float,
    spot_amount: float,
    short_entry: float,
    funding_rate_pct: float,
    current_price: float,
    hours_held: float,
    interval_hours: float = 8,
) -> DeltaPnl:
    """PnL of both legs plus funding; partial intervals earn nothing."""
    intervals = max(math.floor(hours_held / interval_hours), 0)
    return DeltaPnl(
        spot_pnl_usd=(current_price - spot_entry) * spot_amount,
        short_pnl_usd=(short_entry - current_price) * spot_amount,
        funding_pnl_usd=(funding_rate_pct / 100) * spot_amount * current_price * intervals,
        funding_intervals=intervals,
    )


def annualized_funding_pct(funding_rate_pct: float) -> float:
    return funding_rate_pct * settings.FUNDING_INTERVALS_PER_DAY * 365


class DeltaNeutralStrategy:
    def __init__(
        self,
        ledger: PositionLedger,
        trade_log: TradeLog,
        registry: VenueRegistry,
        signers: SignerSessions,
        prices,
        funding,
        risk_gate: Optional[RiskGate] = None,
        clock: Clock = utcnow,
        spot_venue: Optional[str] = None,
        quote_token: Optional[str] = None,
    ):
        self._ledger = ledger
        self._trade_log = trade_log
        self._registry = registry
        self._signers = signers
        self._prices = prices
        self._funding = funding
        self._risk_gate = risk_gate
        self._clock = clock
        self._spot_venue = spot_venue or settings.DELTA_SPOT_VENUE
        self._quote_token = (quote_token or settings.ARB_DEFAULT_QUOTE_TOKEN).upper()

    async def _current_price(self, token: str) -> Optional[float]:
        price = await self._prices.get_price(token)
        if price is None or price.price_usd <= 0:
            return None
        return price.price_usd

    async def _spot_swap(self, owner_id: str, token_in: str, token_out: str, amount_in: Decimal, tag: str):
        """Real swap on the spot venue when possible; ``(ref, amount_out, simulated)``."""
        adapter = self._registry.find(self._spot_venue)
        signer = self._signers.get(owner_id)
        if adapter is not None and adapter.can_settle(Capability.SWAP, signer):
            try:
                fill = await adapter.swap(signer, token_in, token_out, amount_in, settings.DEFAULT_ARB_SLIPPAGE_BPS)
                return fill.tx_ref, fill.amount_out, False
            except Exception as exc:
                logger.warning(
                    "Delta-neutral spot swap failed, recording simulated leg",
                    owner_id=owner_id,
                    venue=self._spot_venue,
                    error=str(exc),
                )
        return simulated_ref(tag), None, True

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open(
        self,
        owner_id: str,
        token: str,
        notional_usd: Any,
        max_funding_rate: Optional[float] = None,
    ) -> StrategyResult:
        token = token.upper()
        try:
            notional = float(notional_usd)
        except (TypeError, ValueError):
            notional = float("nan")
        if math.isnan(notional) or notional <= 0:
            return StrategyResult(success=False, message="Invalid notional amount.", error=ValidationError.code)

        funding = await self._funding.latest(token)
        if funding is None:
            return StrategyResult(
                success=False,
                message=f"Could not fetch funding rate for {token}. Try again later.",
                error=AdapterFailure.code,
            )

        rate = funding.funding_rate_pct
        if rate <= 0:
            return StrategyResult(
                success=False,
                message=(
                    f"Current {token} funding rate is {rate:.4f}% (not positive). "
                    "Delta-neutral is only profitable when funding rate is positive. Check back later."
                ),
            )
        if max_funding_rate is not None and abs(rate) > max_funding_rate:
            return StrategyResult(
                success=False,
                message=f"Funding rate {rate:.4f}% exceeds max {max_funding_rate}%.",
            )

        price = await self._current_price(token)
        if price is None:
            return StrategyResult(success=False, message=f"Could not get {token} price.", error=AdapterFailure.code)

        if self._risk_gate is not None:
            decision = await self._risk_gate.check(
                owner_id,
                RiskAction(kind=PositionKind.DELTA_NEUTRAL.value, amount_usd=notional, venue=self._spot_venue),
            )
            if not decision.allowed:
                return StrategyResult(success=False, message=decision.reason, error=RiskRejected.code)

        amount_text = f"{notional / price:.8f}"
        spot_amount = float(amount_text)

        spot_ref, filled, spot_simulated = await self._spot_swap(
            owner_id, self._quote_token, token, to_decimal(notional), "delta_spot"
        )
        if filled is not None:
            amount_text = format(to_decimal(filled).normalize(), "f")
            spot_amount = float(filled)
        short_ref = simulated_ref("delta_short")

        position = await self._ledger.open(
            PositionSpec(
                owner_id=owner_id,
                kind=PositionKind.DELTA_NEUTRAL,
                venue=self._spot_venue,
                token=token,
                amount=amount_text,
                entry_price=price,
                current_value_usd=notional,
                settlement_tx_ref=spot_ref,
                metadata={
                    "spot_entry": price,
                    "spot_amount": spot_amount,
                    "short_entry": price,
                    "short_size": notional,
                    "funding_rate_at_entry": rate,
                    "spot_simulated": spot_simulated,
                    "short_simulated": True,
                    "spot_tx_ref": spot_ref,
                    "short_tx_ref": short_ref,
                },
            )
        )

        spot_trade = await self._trade_log.log(
            owner_id,
            TradeKind.DELTA_SPOT_BUY,
            self._spot_venue,
            from_token=self._quote_token,
            from_amount=to_decimal(notional),
            to_token=token,
            to_amount=amount_text,
            price_usd=price,
            settlement_tx_ref=spot_ref,
            position_id=position.id,
            simulated=spot_simulated,
        )
        short_trade = await self._trade_log.log(
            owner_id,
            TradeKind.DELTA_SHORT_OPEN,
            SHORT_VENUE,
            from_token=token,
            from_amount=amount_text,
            to_token=self._quote_token,
            to_amount=to_decimal(notional),
            price_usd=price,
            settlement_tx_ref=short_ref,
            position_id=position.id,
            simulated=True,
        )

        annualized = annualized_funding_pct(rate)
        logger.info(
            "Delta-neutral position opened",
            owner_id=owner_id,
            position_id=position.id,
            token=token,
            notional_usd=notional,
            funding_rate_pct=rate,
            spot_simulated=spot_simulated,
        )
        return StrategyResult(
            success=True,
            message="\n".join(
                [
                    "Delta-neutral position opened!",
                    "",
                    f"  Spot: Bought {amount_text} {token} @ ${price:.2f}" + (" (simulated)" if spot_simulated else ""),
                    f"  Short: {amount_text} {token} @ ${price:.2f} (simulated)",
                    f"  Notional: ${notional:.2f}",
                    "",
                    f"  Current funding rate: {rate:.4f}%",
                    f"  Annualized yield estimate: ~{annualized:.2f}%",
                    "",
                    f"  Position ID: {position.id}",
                ]
            ),
            position_id=position.id,
            trade_ids=[spot_trade.id, short_trade.id],
            tx_refs=[spot_ref, short_ref],
            data={"annualized_yield_pct": annualized, "funding_rate_pct": rate, "spot_amount": spot_amount},
        )

    # ------------------------------------------------------------------
    # Close / mark
    # ------------------------------------------------------------------

    async def close(self, owner_id: str, position_id: str) -> StrategyResult:
        position = await self._ledger.get(position_id)
        if position is None or position.owner_id != owner_id:
            return StrategyResult(success=False, message=f"Position {position_id} not found.", error=NotFound.code)
        if position.kind != PositionKind.DELTA_NEUTRAL:
            return StrategyResult(
                success=False,
                message=f"Position {position_id} is not a delta-neutral position.",
                error=ValidationError.code,
            )
        if position.status != PositionStatus.OPEN:
            return StrategyResult(success=False, message="Position is already closed.", error=InvalidState.code)

        meta = dict(position.meta or {})
        breakdown = await self._breakdown(position, meta, funding_rate_pct=None)
        spot_amount = to_decimal(position.amount)

        if meta.get("spot_simulated", True):
            spot_ref, proceeds, spot_simulated = simulated_ref("delta_close"), None, True
        else:
            spot_ref, proceeds, spot_simulated = await self._spot_swap(
                owner_id, position.token, self._quote_token, spot_amount, "delta_close"
            )
        if proceeds is None:
            proceeds = spot_amount * to_decimal(breakdown.current_price)
        short_ref = simulated_ref("delta_short_close")

        spot_trade = await self._trade_log.log(
            owner_id,
            TradeKind.DELTA_SPOT_SELL,
            position.venue,
            from_token=position.token,
            from_amount=spot_amount,
            to_token=self._quote_token,
            to_amount=proceeds,
            price_usd=breakdown.current_price,
            settlement_tx_ref=spot_ref,
            position_id=position.id,
            simulated=spot_simulated,
        )
        short_trade = await self._trade_log.log(
            owner_id,
            TradeKind.DELTA_SHORT_CLOSE,
            SHORT_VENUE,
            from_token=self._quote_token,
            to_token=position.token,
            to_amount=spot_amount,
            price_usd=breakdown.current_price,
            settlement_tx_ref=short_ref,
            position_id=position.id,
            simulated=True,
        )

        try:
            await self._ledger.close(position.id, settlement_ref=spot_ref, realized_pnl_usd=breakdown.total_pnl_usd)
        except InvalidState:
            return StrategyResult(success=False, message="Position is already closed.", error=InvalidState.code)

        logger.info(
            "Delta-neutral position closed",
            owner_id=owner_id,
            position_id=position.id,
            total_pnl_usd=breakdown.total_pnl_usd,
            funding_intervals=breakdown.funding_intervals,
        )
        return StrategyResult(
            success=True,
            message="\n".join(
                [
                    "Delta-neutral position closed!",
                    "",
                    f"  Spot PnL: ${breakdown.spot_pnl_usd:.4f}",
                    f"  Short PnL: ${breakdown.short_pnl_usd:.4f}",
                    f"  Funding PnL: ${breakdown.funding_earned_usd:.4f} ({breakdown.funding_intervals} funding intervals)",
                    f"  Total PnL: ${breakdown.total_pnl_usd:.4f}",
                    "",
                    f"  Held for: {breakdown.hours_held:.1f} hours",
                ]
            ),
            position_id=position.id,
            trade_ids=[spot_trade.id, short_trade.id],
            tx_refs=[spot_ref, short_ref],
            data=breakdown.model_dump(),
        )

    async def mark_to_market(self, position_id: str) -> DeltaNeutralBreakdown:
        """Current breakdown of an open or closed position, without side effects."""
        position = await self._ledger.get(position_id)
        if position is None or position.kind != PositionKind.DELTA_NEUTRAL:
            raise NotFound(f"Delta-neutral position {position_id} not found")

        latest = await self._funding.latest(position.token)
        return await self._breakdown(
            position,
            dict(position.meta or {}),
            funding_rate_pct=latest.funding_rate_pct if latest else None,
        )

    async def _breakdown(self, position, meta: dict, funding_rate_pct: Optional[float]) -> DeltaNeutralBreakdown:
        spot_entry = float(meta.get("spot_entry", position.entry_price))
        current = await self._current_price(position.token)
        if current is None:
            logger.warning("Spot price unavailable, using entry price", token=position.token)
            current = spot_entry

        entry_rate = float(meta.get("funding_rate_at_entry", 0.0))
        hours_held = hours_between(position.opened_at, position.closed_at or self._clock())
        pnl = delta_neutral_pnl(
            spot_entry=spot_entry,
            spot_amount=float(meta.get("spot_amount", position.amount)),
            short_entry=float(meta.get("short_entry", spot_entry)),
            funding_rate_pct=entry_rate,
            current_price=current,
            hours_held=hours_held,
            interval_hours=settings.FUNDING_INTERVAL_HOURS,
        )
        return DeltaNeutralBreakdown(
            position_id=position.id,
            token=position.token,
            spot_pnl_usd=pnl.spot_pnl_usd,
            short_pnl_usd=pnl.short_pnl_usd,
            funding_earned_usd=pnl.funding_pnl_usd,
            total_pnl_usd=pnl.total_pnl_usd,
            hours_held=hours_held,
            funding_intervals=pnl.funding_intervals,
            current_price=current,
            funding_rate_pct=entry_rate if funding_rate_pct is None else funding_rate_pct,
        )
