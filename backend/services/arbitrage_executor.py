from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from config import settings
from models.database import TradeKind
from models.strategy import ArbOpportunity, RiskAction, StrategyResult
from models.types import to_decimal
from services.errors import AdapterFailure, RiskRejected
from services.opportunity_scanner import OpportunityScanner
from services.risk_gate import RiskGate
from services.trade_log import TradeLog, simulated_ref
from services.venues.base import Capability, SignerSession
from services.venues.registry import SignerSessions, VenueRegistry
from utils.logger import strategy_logger as logger


@dataclass
class LegFill:
    venue: str
    tx_ref: str
    amount_in: Decimal
    amount_out: Decimal
    simulated: bool


def no_opportunity_message(max_slippage_bps: float, best: Optional[ArbOpportunity]) -> str:
    best_info = ""
    if best is not None:
        best_info = (
            f" Best available spread is {best.spread_bps:.2f} bps "
            f"({best.buy_venue} -> {best.sell_venue})."
        )
    return (
        f"No arbitrage opportunities exceed your {max_slippage_bps:g} bps slippage limit.{best_info} "
        "Try again later or increase your slippage tolerance."
    )


class ArbitrageExecutor:
    """Buys on the cheap venue and sells on the rich one.

    A leg settles for real when its venue declares SWAP, is not paper-only
    and the owner has an active signer session; otherwise it is simulated.
    """

    def __init__(
        self,
        scanner: OpportunityScanner,
        registry: VenueRegistry,
        trade_log: TradeLog,
        signers: SignerSessions,
        risk_gate: Optional[RiskGate] = None,
        unit_amount=None,
    ):
        self._scanner = scanner
        self._registry = registry
        self._trade_log = trade_log
        self._signers = signers
        self._risk_gate = risk_gate
        self._unit_amount = to_decimal(settings.ARB_QUOTE_AMOUNT if unit_amount is None else unit_amount)

    @property
    def unit_amount(self) -> Decimal:
        return self._unit_amount

    async def execute(
        self,
        owner_id: str,
        opportunity_id: Optional[str] = None,
        max_slippage_bps: Optional[float] = None,
        session_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> StrategyResult:
        """Re-scan, keep spreads above the caller's tolerance and execute one."""
        if max_slippage_bps is None:
            max_slippage_bps = settings.DEFAULT_ARB_SLIPPAGE_BPS

        opportunities = await self._scanner.scan(token=token, quote_amount=self._unit_amount)
        qualifying = [o for o in opportunities if o.spread_bps > max_slippage_bps]
        if not qualifying:
            best = opportunities[0] if opportunities else None
            return StrategyResult(
                success=False,
                message=no_opportunity_message(max_slippage_bps, best),
                data={"best_spread_bps": best.spread_bps if best else None},
            )

        target = qualifying[0]
        if opportunity_id:
            target = next((o for o in qualifying if o.id == opportunity_id), qualifying[0])
            if target.id != opportunity_id:
                logger.info(
                    "Requested opportunity not available, using top-ranked",
                    requested=opportunity_id,
                    selected=target.id,
                )

        return await self.execute_opportunity(owner_id, target, max_slippage_bps, session_id=session_id)

    async def execute_opportunity(
        self,
        owner_id: str,
        opportunity: ArbOpportunity,
        max_slippage_bps: float,
        session_id: Optional[str] = None,
    ) -> StrategyResult:
        unit = self._unit_amount
        buy_cost = to_decimal(opportunity.buy_price) * unit

        if self._risk_gate is not None:
            for venue in (opportunity.buy_venue, opportunity.sell_venue):
                decision = await self._risk_gate.check(
                    owner_id,
                    RiskAction(
                        kind="arb",
                        amount_usd=float(buy_cost),
                        venue=venue,
                        slippage_bps=max_slippage_bps,
                    ),
                )
                if not decision.allowed:
                    return StrategyResult(success=False, message=decision.reason, error=RiskRejected.code)

        logger.info(
            "Executing arbitrage",
            owner_id=owner_id,
            opportunity_id=opportunity.id,
            buy_venue=opportunity.buy_venue,
            sell_venue=opportunity.sell_venue,
            spread_bps=round(opportunity.spread_bps, 4),
            session_id=session_id,
        )

        signer = self._signers.get(owner_id)
        quote_token = opportunity.quote_token
        try:
            buy = await self._leg(
                "arb_buy", opportunity.buy_venue, signer, quote_token, opportunity.token,
                buy_cost, unit, max_slippage_bps,
            )
        except Exception as exc:
            logger.warning("Arbitrage buy leg failed", owner_id=owner_id, venue=opportunity.buy_venue, error=str(exc))
            return StrategyResult(
                success=False,
                message=f"Buy leg on {opportunity.buy_venue} failed: {exc}",
                error=AdapterFailure.code,
            )

        buy_trade = await self._trade_log.log(
            owner_id,
            TradeKind.ARB_BUY,
            opportunity.buy_venue,
            from_token=quote_token,
            from_amount=buy.amount_in,
            to_token=opportunity.token,
            to_amount=buy.amount_out,
            price_usd=opportunity.buy_price,
            settlement_tx_ref=buy.tx_ref,
            session_id=session_id,
            simulated=buy.simulated,
        )

        sell_proceeds = to_decimal(opportunity.sell_price) * buy.amount_out
        try:
            sell = await self._leg(
                "arb_sell", opportunity.sell_venue, signer, opportunity.token, quote_token,
                buy.amount_out, sell_proceeds, max_slippage_bps,
            )
        except Exception as exc:
            logger.error(
                "Arbitrage sell leg failed after buy filled",
                owner_id=owner_id,
                venue=opportunity.sell_venue,
                buy_trade_id=buy_trade.id,
                error=str(exc),
            )
            return StrategyResult(
                success=False,
                message=(
                    f"Sell leg on {opportunity.sell_venue} failed: {exc}. "
                    f"Holding {buy.amount_out} {opportunity.token} from the buy on {opportunity.buy_venue}."
                ),
                error=AdapterFailure.code,
                trade_ids=[buy_trade.id],
                tx_refs=[buy.tx_ref],
                data={"open_leg": {"token": opportunity.token, "amount": str(buy.amount_out)}},
            )

        sell_trade = await self._trade_log.log(
            owner_id,
            TradeKind.ARB_SELL,
            opportunity.sell_venue,
            from_token=opportunity.token,
            from_amount=sell.amount_in,
            to_token=quote_token,
            to_amount=sell.amount_out,
            price_usd=opportunity.sell_price,
            settlement_tx_ref=sell.tx_ref,
            session_id=session_id,
            simulated=sell.simulated,
        )

        profit = float(sell.amount_out - buy.amount_in)
        message = "\n".join(
            [
                "Arbitrage executed:",
                f"  Buy:  {unit} {opportunity.token} on {opportunity.buy_venue} @ ${opportunity.buy_price:.4f}"
                + (" (simulated)" if buy.simulated else ""),
                f"  Sell: {unit} {opportunity.token} on {opportunity.sell_venue} @ ${opportunity.sell_price:.4f}"
                + (" (simulated)" if sell.simulated else ""),
                f"  Spread: {opportunity.spread_bps:.2f} bps",
                f"  Profit: ${profit:.4f}",
            ]
        )
        return StrategyResult(
            success=True,
            message=message,
            trade_ids=[buy_trade.id, sell_trade.id],
            tx_refs=[buy.tx_ref, sell.tx_ref],
            data={
                "opportunity": opportunity.model_dump(mode="json"),
                "profit_usd": profit,
                "buy_simulated": buy.simulated,
                "sell_simulated": sell.simulated,
            },
        )

    async def _leg(
        self,
        tag: str,
        venue_name: str,
        signer: Optional[SignerSession],
        token_in: str,
        token_out: str,
        amount_in: Decimal,
        expected_out: Decimal,
        max_slippage_bps: float,
    ) -> LegFill:
        adapter = self._registry.get(venue_name)
        if not adapter.can_settle(Capability.SWAP, signer):
            return LegFill(venue_name, simulated_ref(tag), amount_in, expected_out, simulated=True)

        fill = await adapter.swap(signer, token_in, token_out, amount_in, max_slippage_bps)
        return LegFill(venue_name, fill.tx_ref, fill.amount_in, fill.amount_out, simulated=False)
