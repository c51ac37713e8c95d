import uuid
from typing import Any, Iterable, Optional

from sqlalchemy import select

from models.database import AsyncSessionLocal, Trade, TradeKind
from utils.logger import ledger_logger as logger
from utils.utcnow import Clock, utcnow

SIMULATED_REF_PREFIX = "0xsim_"


def simulated_ref(tag: str) -> str:
    """Settlement reference for a leg that never touched a chain."""
    return f"{SIMULATED_REF_PREFIX}{tag}_{uuid.uuid4().hex[:16]}"


def is_simulated_ref(ref: Optional[str]) -> bool:
    return bool(ref) and ref.startswith(SIMULATED_REF_PREFIX)


def trade_to_dict(trade: Trade) -> dict[str, Any]:
    return {
        "id": trade.id,
        "owner_id": trade.owner_id,
        "kind": trade.kind,
        "venue": trade.venue,
        "from_token": trade.from_token,
        "from_amount": trade.from_amount,
        "to_token": trade.to_token,
        "to_amount": trade.to_amount,
        "price_usd": trade.price_usd,
        "settlement_tx_ref": trade.settlement_tx_ref,
        "position_id": trade.position_id,
        "session_id": trade.session_id,
        "simulated": trade.simulated,
        "executed_at": trade.executed_at.isoformat() if trade.executed_at else None,
    }


class TradeLog:
    """Append-only trade history. Rows are inserted once and never updated."""

    def __init__(self, session_factory=None, clock: Clock = utcnow):
        self._session_factory = session_factory or AsyncSessionLocal
        self._clock = clock

    async def log(
        self,
        owner_id: str,
        kind: TradeKind,
        venue: str,
        *,
        from_token: Optional[str] = None,
        from_amount: Any = None,
        to_token: Optional[str] = None,
        to_amount: Any = None,
        price_usd: Optional[float] = None,
        settlement_tx_ref: Optional[str] = None,
        position_id: Optional[str] = None,
        session_id: Optional[str] = None,
        simulated: Optional[bool] = None,
    ) -> Trade:
        if simulated is None:
            simulated = is_simulated_ref(settlement_tx_ref)
        async with self._session_factory() as session:
            trade = Trade(
                id=f"trd_{uuid.uuid4().hex[:12]}",
                owner_id=owner_id,
                kind=TradeKind(kind).value,
                venue=venue,
                from_token=from_token.upper() if from_token else None,
                from_amount=from_amount,
                to_token=to_token.upper() if to_token else None,
                to_amount=to_amount,
                price_usd=price_usd,
                settlement_tx_ref=settlement_tx_ref,
                position_id=position_id,
                session_id=session_id,
                simulated=simulated,
                executed_at=self._clock(),
            )
            session.add(trade)
            await session.commit()
            await session.refresh(trade)

        logger.info(
            "Trade logged",
            trade_id=trade.id,
            owner_id=owner_id,
            kind=trade.kind,
            venue=venue,
            simulated=simulated,
            session_id=session_id,
        )
        return trade

    async def get(self, trade_id: str) -> Optional[Trade]:
        async with self._session_factory() as session:
            return await session.get(Trade, trade_id)

    async def history(
        self,
        owner_id: str,
        limit: int = 50,
        kind: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None,
    ) -> list[Trade]:
        async with self._session_factory() as session:
            query = select(Trade).where(Trade.owner_id == owner_id)
            if kind:
                query = query.where(Trade.kind == TradeKind(kind).value)
            if kinds is not None:
                query = query.where(Trade.kind.in_([TradeKind(k).value for k in kinds]))
            query = query.order_by(Trade.executed_at.desc(), Trade.id).limit(max(1, int(limit)))
            result = await session.execute(query)
            return list(result.scalars().all())

    async def for_session(self, session_id: str) -> list[Trade]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trade).where(Trade.session_id == session_id).order_by(Trade.executed_at, Trade.id)
            )
            return list(result.scalars().all())
