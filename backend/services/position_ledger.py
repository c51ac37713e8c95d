import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, select

from models.database import AsyncSessionLocal, Position, PositionKind, PositionStatus
from models.strategy import PortfolioSummary
from services.errors import InvalidState, NotFound
from utils.logger import ledger_logger as logger
from utils.utcnow import Clock, utcnow


@dataclass
class PositionSpec:
    """Fields a strategy supplies when opening a position."""

    owner_id: str
    kind: PositionKind
    venue: str
    token: str
    amount: Any  # Decimal, numeric string or number
    entry_price: float = 0.0
    entry_apy: Optional[float] = None
    current_value_usd: Optional[float] = None
    settlement_tx_ref: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


def new_position_id() -> str:
    return f"pos_{uuid.uuid4().hex[:12]}"


def position_to_dict(position: Position) -> dict[str, Any]:
    return {
        "id": position.id,
        "owner_id": position.owner_id,
        "kind": position.kind.value,
        "venue": position.venue,
        "token": position.token,
        "amount": position.amount,
        "entry_price": position.entry_price,
        "entry_apy": position.entry_apy,
        "current_value_usd": position.current_value_usd,
        "realized_pnl_usd": position.realized_pnl_usd,
        "status": position.status.value,
        "settlement_tx_ref": position.settlement_tx_ref,
        "opened_at": position.opened_at.isoformat() if position.opened_at else None,
        "closed_at": position.closed_at.isoformat() if position.closed_at else None,
        "metadata": dict(position.meta or {}),
    }


class PositionLedger:
    """Sole writer of ``positions`` rows.

    Status moves open -> closed exactly once. After closing, the only
    permitted write is appending to ``metadata["close_refs"]``.
    """

    def __init__(self, session_factory=None, clock: Clock = utcnow):
        self._session_factory = session_factory or AsyncSessionLocal
        self._clock = clock

    async def open(self, spec: PositionSpec) -> Position:
        async with self._session_factory() as session:
            position = Position(
                id=new_position_id(),
                owner_id=spec.owner_id,
                kind=spec.kind,
                venue=spec.venue,
                token=spec.token.upper(),
                amount=spec.amount,
                entry_price=spec.entry_price,
                entry_apy=spec.entry_apy,
                current_value_usd=spec.current_value_usd,
                realized_pnl_usd=0.0,
                status=PositionStatus.OPEN,
                settlement_tx_ref=spec.settlement_tx_ref,
                opened_at=self._clock(),
                meta=dict(spec.metadata),
            )
            session.add(position)
            await session.commit()
            await session.refresh(position)

        logger.info(
            "Position opened",
            position_id=position.id,
            owner_id=position.owner_id,
            kind=position.kind.value,
            venue=position.venue,
            token=position.token,
            amount=position.amount,
        )
        return position

    async def close(
        self,
        position_id: str,
        settlement_ref: Optional[str] = None,
        realized_pnl_usd: Optional[float] = None,
    ) -> Position:
        async with self._session_factory() as session:
            position = await session.get(Position, position_id)
            if position is None:
                raise NotFound(f"Position {position_id} not found")
            if position.status == PositionStatus.CLOSED:
                raise InvalidState(f"Position {position_id} is already closed")

            position.status = PositionStatus.CLOSED
            position.closed_at = self._clock()
            if realized_pnl_usd is not None:
                position.realized_pnl_usd = realized_pnl_usd
            if settlement_ref:
                meta = dict(position.meta or {})
                meta["close_refs"] = list(meta.get("close_refs", [])) + [settlement_ref]
                position.meta = meta
            await session.commit()
            await session.refresh(position)

        logger.info(
            "Position closed",
            position_id=position_id,
            owner_id=position.owner_id,
            realized_pnl_usd=position.realized_pnl_usd,
            settlement_ref=settlement_ref,
        )
        return position

    async def annotate_close(self, position_id: str, ref: str) -> Position:
        """Append a close reference to an already-closed position."""
        async with self._session_factory() as session:
            position = await session.get(Position, position_id)
            if position is None:
                raise NotFound(f"Position {position_id} not found")
            if position.status != PositionStatus.CLOSED:
                raise InvalidState(f"Position {position_id} is still open")
            meta = dict(position.meta or {})
            meta["close_refs"] = list(meta.get("close_refs", [])) + [ref]
            position.meta = meta
            await session.commit()
            await session.refresh(position)
            return position

    async def update_value(self, position_id: str, current_value_usd: float) -> Position:
        async with self._session_factory() as session:
            position = await session.get(Position, position_id)
            if position is None:
                raise NotFound(f"Position {position_id} not found")
            if position.status != PositionStatus.OPEN:
                raise InvalidState(f"Position {position_id} is closed")
            position.current_value_usd = current_value_usd
            await session.commit()
            await session.refresh(position)
            return position

    async def get(self, position_id: str) -> Optional[Position]:
        async with self._session_factory() as session:
            return await session.get(Position, position_id)

    async def require(self, position_id: str) -> Position:
        position = await self.get(position_id)
        if position is None:
            raise NotFound(f"Position {position_id} not found")
        return position

    async def list_for_owner(self, owner_id: str, status: Optional[PositionStatus] = None) -> list[Position]:
        async with self._session_factory() as session:
            query = select(Position).where(Position.owner_id == owner_id)
            if status is not None:
                query = query.where(Position.status == status)
            result = await session.execute(query.order_by(Position.opened_at.desc()))
            return list(result.scalars().all())

    async def list_open(self, kind: Optional[PositionKind] = None, owner_id: Optional[str] = None) -> list[Position]:
        async with self._session_factory() as session:
            query = select(Position).where(Position.status == PositionStatus.OPEN)
            if kind is not None:
                query = query.where(Position.kind == kind)
            if owner_id is not None:
                query = query.where(Position.owner_id == owner_id)
            result = await session.execute(query.order_by(Position.opened_at))
            return list(result.scalars().all())

    async def count_open(self, owner_id: str, kind: PositionKind) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(Position.id)).where(
                    Position.owner_id == owner_id,
                    Position.kind == kind,
                    Position.status == PositionStatus.OPEN,
                )
            )
            return int(result.scalar() or 0)

    async def portfolio(self, owner_id: str) -> PortfolioSummary:
        open_positions = await self.list_open(owner_id=owner_id)

        total_value = 0.0
        yield_earned = 0.0
        arb_profits = 0.0
        for position in open_positions:
            total_value += position.current_value_usd or 0.0
            if position.kind == PositionKind.YIELD:
                yield_earned += position.realized_pnl_usd or 0.0
            elif position.kind == PositionKind.SPOT and (position.meta or {}).get("is_arb"):
                arb_profits += position.realized_pnl_usd or 0.0

        return PortfolioSummary(
            owner_id=owner_id,
            total_value_usd=total_value,
            yield_earned_usd=yield_earned,
            arb_profits_usd=arb_profits,
            open_positions=len(open_positions),
            positions=[position_to_dict(p) for p in open_positions],
        )
