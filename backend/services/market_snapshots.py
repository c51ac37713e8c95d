"""Periodic market history: top APY listings and spot prices, one row each."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select

from config import settings
from models.database import AsyncSessionLocal, MarketSnapshot
from utils.logger import get_logger
from utils.utcnow import Clock, utcnow

logger = get_logger("market_snapshots")

MARKET_VENUE = "market"


def snapshot_to_dict(row: MarketSnapshot) -> dict[str, Any]:
    return {
        "id": row.id,
        "venue": row.venue,
        "token": row.token,
        "apy": row.apy,
        "price_usd": row.price_usd,
        "tvl_usd": row.tvl_usd,
        "recorded_at": row.recorded_at.isoformat() if row.recorded_at else None,
    }


@dataclass
class SnapshotReport:
    yields: int = 0
    prices: int = 0


class MarketSnapshotLogger:
    def __init__(
        self,
        yields,
        prices,
        session_factory=None,
        clock: Clock = utcnow,
        interval_seconds: Optional[float] = None,
        yield_tokens: Optional[list[str]] = None,
        price_tokens: Optional[list[str]] = None,
        top_yields: Optional[int] = None,
    ):
        self._yields = yields
        self._prices = prices
        self._session_factory = session_factory or AsyncSessionLocal
        self._clock = clock
        self._interval = settings.SNAPSHOT_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._yield_tokens = list(settings.MARKET_YIELD_TOKENS if yield_tokens is None else yield_tokens)
        self._price_tokens = list(settings.MARKET_PRICE_TOKENS if price_tokens is None else price_tokens)
        self._top_yields = settings.SNAPSHOT_TOP_YIELDS if top_yields is None else top_yields

        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def record_once(self) -> SnapshotReport:
        listings, prices = await asyncio.gather(
            self._yields.listings_for(self._yield_tokens),
            self._prices.get_prices(self._price_tokens),
        )
        listings = listings[: self._top_yields]
        now = self._clock()

        async with self._session_factory() as session:
            for listing in listings:
                session.add(
                    MarketSnapshot(
                        venue=listing.venue,
                        token=listing.token,
                        apy=listing.apy,
                        tvl_usd=listing.tvl_usd,
                        recorded_at=now,
                    )
                )
            for price in prices:
                session.add(
                    MarketSnapshot(venue=MARKET_VENUE, token=price.token, price_usd=price.price_usd, recorded_at=now)
                )
            await session.commit()

        logger.info("Snapshot logged", yields=len(listings), prices=len(prices))
        return SnapshotReport(yields=len(listings), prices=len(prices))

    async def history(self, limit: int = 100, token: Optional[str] = None) -> list[MarketSnapshot]:
        async with self._session_factory() as session:
            query = select(MarketSnapshot)
            if token:
                query = query.where(MarketSnapshot.token == token.upper())
            query = query.order_by(MarketSnapshot.recorded_at.desc(), MarketSnapshot.id.desc()).limit(max(1, int(limit)))
            result = await session.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._snapshot_loop())
        logger.info("Snapshot logger started", interval_seconds=self._interval)

    async def _snapshot_loop(self) -> None:
        while self._running:
            try:
                await self.record_once()
            except Exception as exc:
                logger.error("Snapshot logger failed", error=str(exc))
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
        logger.info("Snapshot logger stopped")
