"""Strategy engine facade.

Every front-end (REST, chat bot, tool API) calls these entry points. The
engine owns construction and teardown of its collaborators; nothing here is
a module-level singleton, so tests can build as many engines as they need.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Iterable, Optional

import httpx

from config import settings
from models.database import AsyncSessionLocal, TradeKind
from models.strategy import (
    ArbOpportunity,
    DeltaNeutralBreakdown,
    PortfolioSummary,
    RiskAction,
    RiskConfig,
    RotationPlan,
    SessionSummary,
    StrategyResult,
)
from models.types import to_decimal
from services.alert_fanout import AlertFanout
from services.arbitrage_executor import ArbitrageExecutor
from services.delta_neutral import DeltaNeutralStrategy
from services.errors import AdapterFailure, RiskRejected, ValidationError
from services.market_data import FundingRateOracle, PriceOracle
from services.market_snapshots import MarketSnapshotLogger, snapshot_to_dict
from services.opportunity_scanner import OpportunityScanner
from services.owners import OwnerDirectory
from services.position_health import PositionHealthMonitor
from services.position_ledger import PositionLedger
from services.risk_gate import RiskGate
from services.session_scheduler import SessionScheduler, session_summary
from services.trade_log import TradeLog, simulated_ref, trade_to_dict
from services.venues.base import Capability, SignerSession, VenueAdapter
from services.venues.paper import default_paper_venues
from services.venues.registry import SignerSessions, VenueRegistry
from services.yield_optimizer import YieldOptimizer
from utils.logger import get_logger
from utils.utcnow import Clock, utcnow

logger = get_logger("engine")

MARKET_CATEGORIES = ("yield", "prices", "funding_rates", "arbitrage", "all")
ARB_TRADE_KINDS = (TradeKind.ARB_BUY.value, TradeKind.ARB_SELL.value)
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def subscription_to_dict(subscription) -> dict[str, Any]:
    return {
        "id": subscription.id,
        "category": subscription.category,
        "active": subscription.active,
        "threshold": subscription.threshold,
        "last_triggered_at": subscription.last_triggered_at.isoformat() if subscription.last_triggered_at else None,
    }


class StrategyEngine:
    def __init__(
        self,
        *,
        registry: VenueRegistry,
        signers: SignerSessions,
        owners: OwnerDirectory,
        ledger: PositionLedger,
        trade_log: TradeLog,
        risk_gate: RiskGate,
        scanner: OpportunityScanner,
        executor: ArbitrageExecutor,
        scheduler: SessionScheduler,
        delta_neutral: DeltaNeutralStrategy,
        yields: YieldOptimizer,
        alerts: AlertFanout,
        health: PositionHealthMonitor,
        snapshots: MarketSnapshotLogger,
        prices: PriceOracle,
        funding: FundingRateOracle,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.registry = registry
        self.signers = signers
        self.owners = owners
        self.ledger = ledger
        self.trade_log = trade_log
        self.risk_gate = risk_gate
        self.scanner = scanner
        self.executor = executor
        self.scheduler = scheduler
        self.delta_neutral = delta_neutral
        self.yields = yields
        self.alerts = alerts
        self.health = health
        self.snapshots = snapshots
        self.prices = prices
        self.funding = funding
        self._http_client = http_client
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, run_loops: bool = True) -> None:
        if self._started:
            return
        if run_loops:
            self.scheduler.start_loop()
            self.health.start()
            self.snapshots.start()
        self._started = True
        logger.info("Strategy engine started", venues=self.registry.names(), loops=run_loops)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.health.stop()
        await self.snapshots.stop()
        await self.alerts.shutdown()
        await self.prices.close()
        await self.funding.close()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._started = False
        logger.info("Strategy engine stopped")

    # ------------------------------------------------------------------
    # Owners and signers
    # ------------------------------------------------------------------

    async def register_owner(self, owner_id: str, telegram_chat_id: Optional[str] = None) -> dict[str, Any]:
        owner = await self.owners.register(owner_id, telegram_chat_id)
        return {"owner_id": owner.id, "telegram_chat_id": owner.telegram_chat_id}

    async def activate_signer(self, session: SignerSession) -> None:
        await self.owners.require(session.owner_id)
        self.signers.activate(session)

    def deactivate_signer(self, owner_id: str) -> bool:
        return self.signers.deactivate(owner_id)

    # ------------------------------------------------------------------
    # Yield
    # ------------------------------------------------------------------

    async def yield_deposit(self, owner_id: str, token: str, amount: Any, venue: Optional[str] = None) -> StrategyResult:
        await self.owners.require(owner_id)
        logger.info("yield_deposit", owner_id=owner_id, token=token, amount=str(amount), venue=venue or "auto")
        return await self.yields.deposit(owner_id, token, amount, forced_venue=venue)

    async def yield_rotate(
        self, owner_id: str, position_id: str, min_improvement_bps: Optional[float] = None
    ) -> StrategyResult:
        await self.owners.require(owner_id)
        logger.info("yield_rotate", owner_id=owner_id, position_id=position_id, min_bps=min_improvement_bps)
        return await self.yields.rotate(owner_id, position_id, min_improvement_bps)

    async def check_rotation(self, position_id: str, min_improvement_bps: Optional[float] = None) -> Optional[RotationPlan]:
        return await self.yields.should_rotate(position_id, min_improvement_bps)

    # ------------------------------------------------------------------
    # Swaps
    # ------------------------------------------------------------------

    async def swap_tokens(
        self,
        owner_id: str,
        from_token: str,
        to_token: str,
        amount: Any,
        venue: Optional[str] = None,
        max_slippage_bps: Optional[float] = None,
    ) -> StrategyResult:
        await self.owners.require(owner_id)
        signer = self.signers.require(owner_id)
        venue = venue or settings.DEFAULT_SWAP_VENUE
        slippage = settings.DEFAULT_ARB_SLIPPAGE_BPS if max_slippage_bps is None else max_slippage_bps

        try:
            quantity = to_decimal(amount)
        except ValueError:
            return StrategyResult(success=False, message="Invalid swap amount.", error=ValidationError.code)
        if not quantity.is_finite() or quantity <= 0:
            return StrategyResult(success=False, message="Invalid swap amount.", error=ValidationError.code)

        adapter = self.registry.find(venue)
        if adapter is None or not adapter.supports(Capability.SWAP):
            return StrategyResult(success=False, message=f"Swaps are not supported by {venue}.", error=AdapterFailure.code)

        price = await self.prices.get_price(from_token)
        amount_usd = float(quantity) * (price.price_usd if price else 0.0)
        decision = await self.risk_gate.check(
            owner_id, RiskAction(kind="swap", amount_usd=amount_usd, venue=adapter.name, slippage_bps=slippage)
        )
        if not decision.allowed:
            return StrategyResult(success=False, message=decision.reason, error=RiskRejected.code)

        if adapter.can_settle(Capability.SWAP, signer):
            try:
                fill = await adapter.swap(signer, from_token, to_token, quantity, slippage)
            except Exception as exc:
                logger.warning("Swap failed", owner_id=owner_id, venue=adapter.name, error=str(exc))
                return StrategyResult(success=False, message=f"Swap failed: {exc}", error=AdapterFailure.code)
            tx_ref, amount_out, simulated = fill.tx_ref, fill.amount_out, False
        else:
            quote = await adapter.get_quote(from_token, to_token, quantity) if adapter.supports(Capability.QUOTE) else None
            tx_ref = simulated_ref("swap")
            amount_out = to_decimal(quote.amount_out) if quote else None
            simulated = True

        trade = await self.trade_log.log(
            owner_id,
            TradeKind.SWAP,
            adapter.name,
            from_token=from_token,
            from_amount=quantity,
            to_token=to_token,
            to_amount=amount_out,
            price_usd=price.price_usd if price else None,
            settlement_tx_ref=tx_ref,
            simulated=simulated,
        )
        return StrategyResult(
            success=True,
            message=f"Swapped {quantity} {from_token.upper()} -> {to_token.upper()} via {adapter.name}"
            + (" (simulated)" if simulated else ""),
            trade_ids=[trade.id],
            tx_refs=[tx_ref],
            data={"venue": adapter.name, "amount_out": str(amount_out) if amount_out is not None else None},
        )

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def market_yields(self, token: Optional[str] = None) -> list[dict[str, Any]]:
        tokens = [token] if token else settings.MARKET_YIELD_TOKENS
        return [l.model_dump() for l in await self.yields.listings_for(tokens)]

    async def market_prices(self, token: Optional[str] = None, quote_token: Optional[str] = None) -> dict[str, Any]:
        token = (token or settings.ARB_DEFAULT_TOKEN).upper()
        quote_token = (quote_token or settings.ARB_DEFAULT_QUOTE_TOKEN).upper()
        quotes, prices = await asyncio.gather(
            self.scanner.collect_quotes(token, quote_token, settings.ARB_QUOTE_AMOUNT),
            self.prices.get_prices(settings.MARKET_PRICE_TOKENS),
        )
        return {
            "token": token,
            "quote_token": quote_token,
            "quotes": [q.model_dump() for q in quotes],
            "prices": [p.model_dump() for p in prices],
        }

    async def funding_rates(self, tokens: Optional[Iterable[str]] = None) -> dict[str, dict[str, Any]]:
        """Funding history per perpetual symbol with the latest and mean rate."""
        histories = await self.funding.snapshot(tokens or settings.MARKET_FUNDING_TOKENS)
        rates: dict[str, dict[str, Any]] = {}
        for symbol, history in histories.items():
            latest = history[0] if history else None
            rates[symbol] = {
                "current_pct": latest.funding_rate_pct if latest else None,
                "average_pct": sum(r.funding_rate_pct for r in history) / len(history) if history else None,
                "annualized_pct": latest.annualized_pct if latest else None,
                # shorts earn funding while the rate is positive
                "favorable_for_delta_neutral": bool(latest and latest.funding_rate_pct > 0),
                "history": [r.model_dump() for r in history],
            }
        return rates

    async def market_history(self, limit: int = 100, token: Optional[str] = None) -> list[dict[str, Any]]:
        return [snapshot_to_dict(row) for row in await self.snapshots.history(limit, token)]

    async def scan_markets(self, category: str = "all") -> dict[str, Any]:
        """One-shot market overview for chat and tool front-ends."""
        category = (category or "all").lower()
        if category not in MARKET_CATEGORIES:
            raise ValidationError(f"Unknown market category {category!r}; expected one of {', '.join(MARKET_CATEGORIES)}")
        logger.info("scan_markets", category=category)

        sections: dict[str, Any] = {}
        if category in ("yield", "all"):
            sections["yield"] = await self.market_yields()
        if category in ("prices", "arbitrage", "all"):
            token, quote_token = settings.ARB_DEFAULT_TOKEN, settings.ARB_DEFAULT_QUOTE_TOKEN
            quotes = await self.scanner.collect_quotes(token, quote_token, settings.ARB_QUOTE_AMOUNT)
            if category in ("prices", "all"):
                prices = await self.prices.get_prices(settings.MARKET_PRICE_TOKENS)
                sections["prices"] = {
                    "quotes": [q.model_dump() for q in quotes],
                    "prices": [p.model_dump() for p in prices],
                }
            if category in ("arbitrage", "all"):
                opportunities = self.scanner.compare(token, quote_token, quotes, settings.ARB_QUOTE_AMOUNT)
                sections["arbitrage"] = [o.model_dump() for o in opportunities]
        if category in ("funding_rates", "all"):
            sections["funding_rates"] = await self.funding_rates()
        return sections

    # ------------------------------------------------------------------
    # Arbitrage
    # ------------------------------------------------------------------

    async def arb_scan(self, token: Optional[str] = None, quote_token: Optional[str] = None, amount=None) -> list[ArbOpportunity]:
        return await self.scanner.scan(token, quote_token, amount)

    async def arb_execute(
        self, owner_id: str, opportunity_id: Optional[str] = None, max_slippage_bps: Optional[float] = None
    ) -> StrategyResult:
        await self.owners.require(owner_id)
        logger.info("arb_execute", owner_id=owner_id, opportunity_id=opportunity_id, max_slippage_bps=max_slippage_bps)
        return await self.executor.execute(owner_id, opportunity_id, max_slippage_bps)

    async def arb_executions(self, owner_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Both legs of every arbitrage the owner ran, newest first."""
        await self.owners.require(owner_id)
        trades = await self.trade_log.history(owner_id, limit, kinds=ARB_TRADE_KINDS)
        return [trade_to_dict(t) for t in trades]

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def send_tokens(self, owner_id: str, token: str, amount: Any, to_address: str) -> StrategyResult:
        """Plain transfer from the owner's signer to ``to_address``."""
        await self.owners.require(owner_id)
        signer = self.signers.require(owner_id)
        logger.info("send_tokens", owner_id=owner_id, token=token, amount=str(amount), to_address=to_address)

        if not ADDRESS_RE.match(to_address or ""):
            return StrategyResult(
                success=False, message=f"Invalid recipient address: {to_address}", error=ValidationError.code
            )
        token = token.upper()
        supported = [t.upper() for t in settings.TRANSFER_TOKENS]
        if token not in supported:
            return StrategyResult(
                success=False,
                message=f"Unsupported token: {token}. Supported: {', '.join(supported)}",
                error=ValidationError.code,
            )
        try:
            quantity = to_decimal(amount)
        except ValueError:
            return StrategyResult(success=False, message="Invalid transfer amount.", error=ValidationError.code)
        if not quantity.is_finite() or quantity <= 0:
            return StrategyResult(success=False, message="Invalid transfer amount.", error=ValidationError.code)

        tx = {"op": "transfer", "from": signer.address, "to": to_address, "token": token, "amount": str(quantity)}
        try:
            tx_ref = await signer.chain_client.send_transaction(tx)
            receipt = await signer.chain_client.wait_for_receipt(tx_ref)
        except Exception as exc:
            logger.warning("Transfer failed", owner_id=owner_id, token=token, error=str(exc))
            return StrategyResult(success=False, message=f"Transfer failed: {exc}", error=AdapterFailure.code)
        if not receipt.success:
            return StrategyResult(
                success=False, message=f"Transfer failed: transaction {tx_ref} reverted", error=AdapterFailure.code
            )

        trade = await self.trade_log.log(
            owner_id,
            TradeKind.TRANSFER,
            "direct",
            from_token=token,
            from_amount=quantity,
            to_token=token,
            to_amount=quantity,
            settlement_tx_ref=receipt.tx_ref,
            simulated=False,
        )
        return StrategyResult(
            success=True,
            message=f"Sent {quantity} {token} to {to_address}",
            trade_ids=[trade.id],
            tx_refs=[receipt.tx_ref],
            data={"to_address": to_address},
        )

    # ------------------------------------------------------------------
    # Delta-neutral
    # ------------------------------------------------------------------

    async def delta_neutral_open(
        self, owner_id: str, token: str, notional_usd: Any, max_funding_rate: Optional[float] = None
    ) -> StrategyResult:
        await self.owners.require(owner_id)
        logger.info("delta_neutral_open", owner_id=owner_id, token=token, notional_usd=str(notional_usd))
        return await self.delta_neutral.open(owner_id, token, notional_usd, max_funding_rate)

    async def delta_neutral_close(self, owner_id: str, position_id: str) -> StrategyResult:
        await self.owners.require(owner_id)
        logger.info("delta_neutral_close", owner_id=owner_id, position_id=position_id)
        return await self.delta_neutral.close(owner_id, position_id)

    async def delta_neutral_pnl(self, position_id: str) -> DeltaNeutralBreakdown:
        return await self.delta_neutral.mark_to_market(position_id)

    # ------------------------------------------------------------------
    # Risk and alerts
    # ------------------------------------------------------------------

    async def get_risk_config(self, owner_id: str) -> RiskConfig:
        await self.owners.require(owner_id)
        return await self.risk_gate.get_config(owner_id)

    async def configure_risk(self, owner_id: str, updates: dict[str, Any]) -> RiskConfig:
        return await self.risk_gate.configure(owner_id, updates)

    async def set_alert(
        self, owner_id: str, category: str, active: bool = True, threshold: Optional[float] = None
    ) -> dict[str, Any]:
        subscription = await self.alerts.set_alert(owner_id, category, active, threshold)
        return subscription_to_dict(subscription)

    async def get_alerts(self, owner_id: str) -> list[dict[str, Any]]:
        await self.owners.require(owner_id)
        return [subscription_to_dict(s) for s in await self.alerts.list_alerts(owner_id)]

    async def notifications(self, owner_id: str, limit: int = 50) -> list[dict[str, Any]]:
        await self.owners.require(owner_id)
        return [
            {"id": n.id, "category": n.category, "message": n.message, "created_at": n.created_at.isoformat()}
            for n in await self.alerts.unread(owner_id, limit)
        ]

    async def mark_notifications_read(self, owner_id: str, notification_ids: Optional[list[str]] = None) -> int:
        return await self.alerts.mark_read(owner_id, notification_ids)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(
        self,
        owner_id: str,
        duration_hours: float,
        max_loss_usd: float,
        max_slippage_bps: Optional[int] = None,
    ) -> SessionSummary:
        row = await self.scheduler.start(owner_id, duration_hours, max_loss_usd, max_slippage_bps)
        return session_summary(row, row.started_at)

    async def stop_session(self, owner_id: str) -> SessionSummary:
        return await self.scheduler.stop(owner_id)

    async def session_status(self, owner_id: str) -> SessionSummary:
        return await self.scheduler.status(owner_id)

    # ------------------------------------------------------------------
    # Portfolio and history
    # ------------------------------------------------------------------

    async def portfolio(self, owner_id: str) -> PortfolioSummary:
        await self.owners.require(owner_id)
        return await self.ledger.portfolio(owner_id)

    async def trade_history(self, owner_id: str, limit: int = 50, kind: Optional[str] = None) -> list[dict[str, Any]]:
        await self.owners.require(owner_id)
        if kind is not None:
            try:
                TradeKind(kind)
            except ValueError:
                raise ValidationError(f"Unknown trade kind {kind!r}") from None
        return [trade_to_dict(t) for t in await self.trade_log.history(owner_id, limit, kind)]


def build_engine(
    session_factory=None,
    venues: Optional[Iterable[VenueAdapter]] = None,
    prices=None,
    funding=None,
    http_client: Optional[httpx.AsyncClient] = None,
    telegram_client: Optional[httpx.AsyncClient] = None,
    bot_token: Optional[str] = None,
    clock: Clock = utcnow,
    tick_interval_seconds: Optional[float] = None,
) -> StrategyEngine:
    """Wire an engine. Omitted collaborators come from ``settings``."""
    session_factory = session_factory or AsyncSessionLocal
    if venues is None:
        venues = default_paper_venues(settings.ARB_DEFAULT_QUOTE_TOKEN) if settings.PAPER_VENUES_ENABLED else []

    owned_client = None
    if (prices is None or funding is None) and http_client is None:
        owned_client = http_client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
    prices = prices or PriceOracle(http_client=http_client)
    funding = funding or FundingRateOracle(http_client=http_client)

    registry = VenueRegistry(venues)
    signers = SignerSessions()
    owners = OwnerDirectory(session_factory)
    ledger = PositionLedger(session_factory, clock=clock)
    trade_log = TradeLog(session_factory, clock=clock)
    risk_gate = RiskGate(ledger, session_factory)
    alerts = AlertFanout(session_factory, http_client=telegram_client, bot_token=bot_token, clock=clock)
    scanner = OpportunityScanner(registry, clock=clock)
    executor = ArbitrageExecutor(scanner, registry, trade_log, signers, risk_gate=risk_gate)
    scheduler = SessionScheduler(
        scanner, executor, alerts, session_factory=session_factory, clock=clock, interval_seconds=tick_interval_seconds
    )
    delta = DeltaNeutralStrategy(ledger, trade_log, registry, signers, prices, funding, risk_gate=risk_gate, clock=clock)
    yields = YieldOptimizer(ledger, trade_log, registry, signers, prices=prices, risk_gate=risk_gate)
    health = PositionHealthMonitor(ledger, funding, yields, alerts, scanner=scanner)
    snapshots = MarketSnapshotLogger(yields, prices, session_factory=session_factory, clock=clock)

    return StrategyEngine(
        registry=registry,
        signers=signers,
        owners=owners,
        ledger=ledger,
        trade_log=trade_log,
        risk_gate=risk_gate,
        scanner=scanner,
        executor=executor,
        scheduler=scheduler,
        delta_neutral=delta,
        yields=yields,
        alerts=alerts,
        health=health,
        snapshots=snapshots,
        prices=prices,
        funding=funding,
        http_client=owned_client,
    )
