"""Auto-arbitrage sessions: lifecycle plus the periodic scan/execute tick.

A session is ``active`` until it becomes ``stopped`` (manual stop or loss
limit) or ``expired`` (time). Both are terminal and reached once. This is the
only component that executes trades on a session's behalf.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from config import settings
from models.database import AsyncSessionLocal, AutoArbSession, OwnerAccount, SessionStatus
from models.strategy import AlertCategory, ArbOpportunity, SessionSummary
from services.errors import InvalidState, NotFound, ValidationError
from utils.logger import session_logger as logger
from utils.utcnow import Clock, utcnow


@dataclass
class TickReport:
    skipped: bool = False
    sessions_checked: int = 0
    trades_executed: int = 0
    failures: int = 0
    expired: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)


def session_summary(row: AutoArbSession, now) -> SessionSummary:
    remaining = 0.0
    if row.status == SessionStatus.ACTIVE:
        remaining = max((row.expires_at - now).total_seconds(), 0.0)
    return SessionSummary(
        session_id=row.id,
        owner_id=row.owner_id,
        status=row.status.value,
        started_at=row.started_at,
        expires_at=row.expires_at,
        max_loss_usd=row.max_loss_usd,
        max_slippage_bps=row.max_slippage_bps,
        trades_count=row.trades_count,
        total_pnl_usd=row.total_pnl_usd,
        ended_at=row.ended_at,
        end_reason=row.end_reason,
        time_remaining_seconds=remaining,
    )


class SessionScheduler:
    def __init__(
        self,
        scanner,
        executor,
        alerts=None,
        session_factory=None,
        clock: Clock = utcnow,
        interval_seconds: Optional[float] = None,
    ):
        self._scanner = scanner
        self._executor = executor
        self._alerts = alerts
        self._session_factory = session_factory or AsyncSessionLocal
        self._clock = clock
        self._interval = settings.SESSION_TICK_INTERVAL_SECONDS if interval_seconds is None else interval_seconds

        self._locks: dict[str, asyncio.Lock] = {}
        self._start_lock = asyncio.Lock()
        self._busy = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._ticks_run = 0
        self._ticks_skipped = 0

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Lifecycle entry points
    # ------------------------------------------------------------------

    async def start(
        self,
        owner_id: str,
        duration_hours: float,
        max_loss_usd: float,
        max_slippage_bps: Optional[int] = None,
    ) -> AutoArbSession:
        if max_slippage_bps is None:
            max_slippage_bps = settings.DEFAULT_ARB_SLIPPAGE_BPS
        if duration_hours is None or duration_hours <= 0:
            raise ValidationError("duration_hours must be positive")
        if max_loss_usd is None or max_loss_usd <= 0:
            raise ValidationError("max_loss_usd must be positive")
        if max_slippage_bps < 0 or max_slippage_bps > 10000:
            raise ValidationError("max_slippage_bps must be between 0 and 10000")

        async with self._start_lock:
            async with self._session_factory() as session:
                if await session.get(OwnerAccount, owner_id) is None:
                    raise NotFound(f"Unknown owner {owner_id}")
                existing = await session.execute(
                    select(AutoArbSession.id).where(
                        AutoArbSession.owner_id == owner_id,
                        AutoArbSession.status == SessionStatus.ACTIVE,
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    raise InvalidState("An auto-arb session is already active; stop it first")

                now = self._clock()
                row = AutoArbSession(
                    id=f"arbs_{uuid.uuid4().hex[:12]}",
                    owner_id=owner_id,
                    started_at=now,
                    expires_at=now + timedelta(hours=float(duration_hours)),
                    max_loss_usd=float(max_loss_usd),
                    max_slippage_bps=int(max_slippage_bps),
                    trades_count=0,
                    total_pnl_usd=0.0,
                    status=SessionStatus.ACTIVE,
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)

        logger.info(
            "Auto-arb session started",
            session_id=row.id,
            owner_id=owner_id,
            expires_at=row.expires_at,
            max_loss_usd=row.max_loss_usd,
            max_slippage_bps=row.max_slippage_bps,
        )
        return row

    async def stop(self, owner_id: str) -> SessionSummary:
        """Stop the owner's active session; a terminal session is returned as-is."""
        latest = await self._latest_for_owner(owner_id)
        if latest is None:
            raise NotFound(f"No auto-arb sessions for owner {owner_id}")

        if latest.status == SessionStatus.ACTIVE:
            async with self._lock_for(latest.id):
                ended = await self._end(latest.id, SessionStatus.STOPPED, "manual")
            self._locks.pop(latest.id, None)
            if ended is not None:
                latest = ended
                await self._notify(
                    owner_id,
                    "\n".join(
                        [
                            "Auto-arb session stopped.",
                            "",
                            f"Trades executed: {latest.trades_count}",
                            f"Total P&L: ${latest.total_pnl_usd:.4f}",
                        ]
                    ),
                )
            else:
                latest = await self._load(latest.id)
        return session_summary(latest, self._clock())

    async def status(self, owner_id: str) -> SessionSummary:
        latest = await self._latest_for_owner(owner_id)
        if latest is None:
            raise NotFound(f"No auto-arb sessions for owner {owner_id}")
        return session_summary(latest, self._clock())

    async def active_sessions(self) -> list[AutoArbSession]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoArbSession)
                .where(AutoArbSession.status == SessionStatus.ACTIVE)
                .order_by(AutoArbSession.started_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        """Run one pass over active sessions. Overlapping calls are skipped."""
        if self._busy:
            self._ticks_skipped += 1
            logger.info("Tick skipped, previous tick still running")
            return TickReport(skipped=True)

        self._busy = True
        report = TickReport()
        try:
            for row in await self.active_sessions():
                report.sessions_checked += 1
                try:
                    await self._process_session(row.id, report)
                except Exception as exc:
                    report.failures += 1
                    logger.exception("Session processing failed", session_id=row.id, error=str(exc))
            self._ticks_run += 1
        finally:
            self._busy = False

        if report.trades_executed or report.expired or report.stopped:
            logger.info(
                "Tick complete",
                sessions=report.sessions_checked,
                trades=report.trades_executed,
                expired=report.expired,
                stopped=report.stopped,
                failures=report.failures,
            )
        return report

    async def _process_session(self, session_id: str, report: TickReport) -> None:
        lock = self._lock_for(session_id)

        async with lock:
            row = await self._load(session_id)
            if row is None or row.status != SessionStatus.ACTIVE:
                return
            if await self._check_terminal(row, report):
                return
            owner_id = row.owner_id
            slippage = row.max_slippage_bps

        opportunities: list[ArbOpportunity] = await self._scanner.scan()
        qualifying = [o for o in opportunities if o.spread_bps > slippage]

        for opportunity in qualifying:
            async with lock:
                row = await self._load(session_id)
                if row is None or row.status != SessionStatus.ACTIVE:
                    break
                if await self._check_terminal(row, report):
                    break

                try:
                    result = await self._executor.execute_opportunity(
                        owner_id, opportunity, row.max_slippage_bps, session_id=session_id
                    )
                except Exception as exc:
                    report.failures += 1
                    logger.exception(
                        "Session trade failed",
                        session_id=session_id,
                        opportunity_id=opportunity.id,
                        error=str(exc),
                    )
                    continue

                if not result.success:
                    report.failures += 1
                    logger.warning(
                        "Session trade not executed",
                        session_id=session_id,
                        opportunity_id=opportunity.id,
                        reason=result.message,
                        error=result.error,
                    )
                    continue

                profit = float(result.data.get("profit_usd", 0.0))
                row = await self._credit(session_id, profit)
                report.trades_executed += 1

                remaining_min = max((row.expires_at - self._clock()).total_seconds() / 60, 0.0)
                await self._notify(
                    owner_id,
                    "\n".join(
                        [
                            f"Auto-arb trade #{row.trades_count}",
                            f"  Buy {opportunity.token} on {opportunity.buy_venue}, sell on {opportunity.sell_venue}",
                            f"  Spread: {opportunity.spread_bps:.2f} bps",
                            f"  P&L: ${profit:.4f}",
                            f"  Session P&L: ${row.total_pnl_usd:.4f}",
                            f"  Time left: {remaining_min:.0f} min",
                        ]
                    ),
                )

                if row.total_pnl_usd < -row.max_loss_usd:
                    await self._stop_for_loss(row, report)
                    break

        if session_id in report.expired or session_id in report.stopped:
            self._locks.pop(session_id, None)

    async def _check_terminal(self, row: AutoArbSession, report: TickReport) -> bool:
        """Expire or loss-stop ``row`` if due. Caller holds the session lock."""
        if self._clock() > row.expires_at:
            ended = await self._end(row.id, SessionStatus.EXPIRED, "expired")
            if ended is not None:
                report.expired.append(row.id)
                await self._notify(
                    row.owner_id,
                    "\n".join(
                        [
                            "Auto-arb session expired.",
                            "",
                            f"Trades executed: {ended.trades_count}",
                            f"Total P&L: ${ended.total_pnl_usd:.4f}",
                        ]
                    ),
                )
            return True

        if row.total_pnl_usd < -row.max_loss_usd:
            await self._stop_for_loss(row, report)
            return True

        return False

    async def _stop_for_loss(self, row: AutoArbSession, report: TickReport) -> None:
        ended = await self._end(row.id, SessionStatus.STOPPED, "loss_limit")
        if ended is None:
            return
        report.stopped.append(row.id)
        await self._notify(
            row.owner_id,
            "\n".join(
                [
                    "Auto-arb session stopped: loss limit reached.",
                    "",
                    f"Cumulative P&L: ${ended.total_pnl_usd:.4f} (limit -${ended.max_loss_usd:.2f})",
                    f"Trades executed: {ended.trades_count}",
                ]
            ),
        )

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    async def _load(self, session_id: str) -> Optional[AutoArbSession]:
        async with self._session_factory() as session:
            return await session.get(AutoArbSession, session_id)

    async def _latest_for_owner(self, owner_id: str) -> Optional[AutoArbSession]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoArbSession)
                .where(AutoArbSession.owner_id == owner_id)
                .order_by(
                    (AutoArbSession.status == SessionStatus.ACTIVE).desc(),
                    AutoArbSession.started_at.desc(),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _credit(self, session_id: str, profit_usd: float) -> AutoArbSession:
        async with self._session_factory() as session:
            row = await session.get(AutoArbSession, session_id)
            row.total_pnl_usd = (row.total_pnl_usd or 0.0) + profit_usd
            row.trades_count = (row.trades_count or 0) + 1
            await session.commit()
            await session.refresh(row)
        logger.info(
            "Session credited",
            session_id=session_id,
            profit_usd=profit_usd,
            total_pnl_usd=row.total_pnl_usd,
            trades_count=row.trades_count,
        )
        return row

    async def _end(self, session_id: str, status: SessionStatus, reason: str) -> Optional[AutoArbSession]:
        """Move an active session to ``status``. Returns None if it was already terminal."""
        async with self._session_factory() as session:
            row = await session.get(AutoArbSession, session_id)
            if row is None or row.status != SessionStatus.ACTIVE:
                return None
            row.status = status
            row.ended_at = self._clock()
            row.end_reason = reason
            await session.commit()
            await session.refresh(row)
        logger.info(
            "Auto-arb session ended",
            session_id=session_id,
            owner_id=row.owner_id,
            status=status.value,
            reason=reason,
            trades_count=row.trades_count,
            total_pnl_usd=row.total_pnl_usd,
        )
        return row

    async def _notify(self, owner_id: str, message: str) -> None:
        if self._alerts is None:
            return
        try:
            await self._alerts.dispatch(owner_id, AlertCategory.AUTO_ARB, message)
        except Exception as exc:
            logger.warning("Session alert failed", owner_id=owner_id, error=str(exc))

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start_loop(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Session scheduler started", interval_seconds=self._interval)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Session scheduler tick error", error=str(exc))
            await asyncio.sleep(self._interval)

    async def shutdown(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Session scheduler stopped")

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "busy": self._busy,
            "interval_seconds": self._interval,
            "ticks_run": self._ticks_run,
            "ticks_skipped": self._ticks_skipped,
        }
