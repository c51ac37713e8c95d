from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from config import settings
from models.database import PositionKind
from models.strategy import AlertCategory
from utils.logger import get_logger

logger = get_logger("position_health")


@dataclass
class HealthReport:
    delta_checked: int = 0
    funding_flips: int = 0
    yield_checked: int = 0
    apy_drops: int = 0
    arb_alerts: int = 0
    failures: list[str] = field(default_factory=list)


class PositionHealthMonitor:
    """
    Background checks over open positions and markets.

    - Delta-neutral: alert the owner when funding that was positive at entry
      is now zero or negative.
    - Yield: alert the owner when the venue's APY fell by at least
      APY_DROP_ALERT_PCT percentage points below entry.
    - Arbitrage: broadcast newly seen viable opportunities to subscribers.

    Each condition alerts once until it clears.
    """

    def __init__(
        self,
        ledger,
        funding,
        yields,
        alerts,
        scanner=None,
        interval_seconds: Optional[float] = None,
        apy_drop_pct: Optional[float] = None,
    ):
        self._ledger = ledger
        self._funding = funding
        self._yields = yields
        self._alerts = alerts
        self._scanner = scanner
        self._interval = settings.POSITION_HEALTH_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._apy_drop_pct = settings.APY_DROP_ALERT_PCT if apy_drop_pct is None else apy_drop_pct

        self._flipped: set[str] = set()
        self._apy_dropped: set[str] = set()
        self._seen_opportunities: set[str] = set()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> HealthReport:
        report = HealthReport()
        checks = [("delta_neutral", self._check_delta_neutral), ("yield", self._check_yield)]
        if self._scanner is not None:
            checks.append(("arbitrage", self._watch_arbitrage))
        for name, check in checks:
            try:
                await check(report)
            except Exception as exc:
                report.failures.append(name)
                logger.error("Health check failed", check=name, error=str(exc))
        return report

    async def _check_delta_neutral(self, report: HealthReport) -> None:
        positions = await self._ledger.list_open(kind=PositionKind.DELTA_NEUTRAL)
        self._flipped &= {p.id for p in positions}
        for position in positions:
            report.delta_checked += 1
            entry_rate = float((position.meta or {}).get("funding_rate_at_entry", 0.0))
            latest = await self._funding.latest(position.token)
            if latest is None:
                continue

            if entry_rate > 0 and latest.funding_rate_pct <= 0:
                if position.id in self._flipped:
                    continue
                self._flipped.add(position.id)
                report.funding_flips += 1
                logger.warning(
                    "Funding rate flipped negative",
                    position_id=position.id,
                    owner_id=position.owner_id,
                    entry_rate=entry_rate,
                    current_rate=latest.funding_rate_pct,
                )
                await self._alerts.dispatch(
                    position.owner_id,
                    AlertCategory.POSITION_HEALTH,
                    "\n".join(
                        [
                            f"Delta-neutral position {position.id}:",
                            f"{position.token} funding rate flipped negative!",
                            f"  Entry: +{entry_rate:.4f}%",
                            f"  Current: {latest.funding_rate_pct:.4f}%",
                            "",
                            "You are now paying funding instead of earning it. Consider closing this position.",
                        ]
                    ),
                )
            else:
                self._flipped.discard(position.id)

    async def _check_yield(self, report: HealthReport) -> None:
        positions = await self._ledger.list_open(kind=PositionKind.YIELD)
        self._apy_dropped &= {p.id for p in positions}
        listings_by_token: dict[str, dict[str, float]] = {}
        for position in positions:
            report.yield_checked += 1
            if position.entry_apy is None:
                continue
            if position.token not in listings_by_token:
                listings = await self._yields.listings(position.token)
                listings_by_token[position.token] = {l.venue.lower(): l.apy for l in listings}
            current = listings_by_token[position.token].get(position.venue.lower())
            if current is None:
                continue

            drop = position.entry_apy - current
            if drop >= self._apy_drop_pct:
                if position.id in self._apy_dropped:
                    continue
                self._apy_dropped.add(position.id)
                report.apy_drops += 1
                await self._alerts.dispatch(
                    position.owner_id,
                    AlertCategory.APY_DROP,
                    f"{position.venue} {position.token} APY dropped from {position.entry_apy:.2f}% "
                    f"to {current:.2f}% (position {position.id}). Check yield rotation for a better venue.",
                )
            else:
                self._apy_dropped.discard(position.id)

    async def _watch_arbitrage(self, report: HealthReport) -> None:
        opportunities = [o for o in await self._scanner.scan() if o.viable]
        current_ids = {o.id for o in opportunities}
        for opportunity in opportunities:
            if opportunity.id in self._seen_opportunities:
                continue
            sent = await self._alerts.broadcast(
                AlertCategory.ARB_OPPORTUNITY,
                f"{opportunity.token}: buy on {opportunity.buy_venue} @ ${opportunity.buy_price:.4f}, "
                f"sell on {opportunity.sell_venue} @ ${opportunity.sell_price:.4f} "
                f"({opportunity.spread_bps:.2f} bps)",
                value=opportunity.spread_bps,
            )
            report.arb_alerts += sent
        self._seen_opportunities = current_ids

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Position health monitor started", interval_seconds=self._interval)

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Position health check failed", error=str(exc))
            await asyncio.sleep(self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Position health monitor stopped")
