from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import enum
import logging

from config import settings
from models.types import DecimalString, PreciseFloat as Float
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class PositionKind(enum.Enum):
    YIELD = "yield"
    DELTA_NEUTRAL = "delta_neutral"
    LP = "lp"
    SPOT = "spot"


class PositionStatus(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class SessionStatus(enum.Enum):
    ACTIVE = "active"
    STOPPED = "stopped"  # manual stop or loss limit
    EXPIRED = "expired"


class TradeKind(str, enum.Enum):
    SWAP = "swap"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    ARB_BUY = "arb_buy"
    ARB_SELL = "arb_sell"
    ROTATION = "rotation"
    DELTA_SPOT_BUY = "delta_spot_buy"
    DELTA_SPOT_SELL = "delta_spot_sell"
    DELTA_SHORT_OPEN = "delta_short_open"
    DELTA_SHORT_CLOSE = "delta_short_close"
    TRANSFER = "transfer"


# ==================== OWNERS ====================


class OwnerAccount(Base):
    """Account owner; strategies and sessions are scoped to one owner."""

    __tablename__ = "owner_accounts"

    id = Column(String, primary_key=True)
    telegram_chat_id = Column(String, nullable=True)
    risk_config = Column(JSON, nullable=False, default=dict)  # overrides merged over defaults
    created_at = Column(DateTime, default=utcnow)


# ==================== POSITIONS ====================


class Position(Base):
    """Capital placed with a venue under one strategy.

    open -> closed happens once. A closed row only ever gains entries in
    ``meta["close_refs"]``.
    """

    __tablename__ = "positions"

    id = Column(String, primary_key=True)
    owner_id = Column(String, ForeignKey("owner_accounts.id"), nullable=False)
    kind = Column(SQLEnum(PositionKind), nullable=False)
    venue = Column(String, nullable=False)
    token = Column(String, nullable=False)

    amount = Column(DecimalString, nullable=False)
    entry_price = Column(Float, nullable=False, default=0.0)
    entry_apy = Column(Float, nullable=True)
    current_value_usd = Column(Float, nullable=True)
    realized_pnl_usd = Column(Float, nullable=False, default=0.0)

    status = Column(SQLEnum(PositionStatus), nullable=False, default=PositionStatus.OPEN)
    settlement_tx_ref = Column(String, nullable=True)
    opened_at = Column(DateTime, default=utcnow)
    closed_at = Column(DateTime, nullable=True)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_positions_owner_status", "owner_id", "status"),
        Index("idx_positions_kind_status", "kind", "status"),
    )


# ==================== TRADES ====================


class Trade(Base):
    """Executed (or simulated) value movement. Rows are never updated."""

    __tablename__ = "trades"

    id = Column(String, primary_key=True)
    owner_id = Column(String, ForeignKey("owner_accounts.id"), nullable=False)
    kind = Column(String, nullable=False)  # TradeKind value
    venue = Column(String, nullable=False)

    from_token = Column(String, nullable=True)
    from_amount = Column(DecimalString, nullable=True)
    to_token = Column(String, nullable=True)
    to_amount = Column(DecimalString, nullable=True)
    price_usd = Column(Float, nullable=True)

    settlement_tx_ref = Column(String, nullable=True)
    position_id = Column(String, ForeignKey("positions.id"), nullable=True)
    session_id = Column(String, ForeignKey("auto_arb_sessions.id"), nullable=True)
    simulated = Column(Boolean, nullable=False, default=False)
    executed_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_trades_owner_time", "owner_id", "executed_at"),
        Index("idx_trades_session", "session_id"),
    )


# ==================== AUTO-ARB SESSIONS ====================


class AutoArbSession(Base):
    """Time-boxed, loss-capped automatic arbitrage run for one owner."""

    __tablename__ = "auto_arb_sessions"

    id = Column(String, primary_key=True)
    owner_id = Column(String, ForeignKey("owner_accounts.id"), nullable=False)
    started_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    max_loss_usd = Column(Float, nullable=False)
    max_slippage_bps = Column(Integer, nullable=False, default=50)
    trades_count = Column(Integer, nullable=False, default=0)
    total_pnl_usd = Column(Float, nullable=False, default=0.0)
    status = Column(SQLEnum(SessionStatus), nullable=False, default=SessionStatus.ACTIVE)
    ended_at = Column(DateTime, nullable=True)
    end_reason = Column(String, nullable=True)  # manual, loss_limit, expired

    __table_args__ = (
        Index("idx_sessions_owner_status", "owner_id", "status"),
        Index("idx_sessions_status", "status"),
    )


# ==================== ALERTS ====================


class AlertSubscription(Base):
    __tablename__ = "alert_subscriptions"

    id = Column(String, primary_key=True)
    owner_id = Column(String, ForeignKey("owner_accounts.id"), nullable=False)
    category = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    threshold = Column(Float, nullable=True)
    last_triggered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "category", name="uq_alert_owner_category"),
        Index("idx_alerts_category_active", "category", "active"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    owner_id = Column(String, ForeignKey("owner_accounts.id"), nullable=False)
    category = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_notifications_owner_read", "owner_id", "read"),)


# ==================== MARKET SNAPSHOTS ====================


class MarketSnapshot(Base):
    """Periodic APY / price sample. ``venue`` is "market" for spot prices."""

    __tablename__ = "market_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    venue = Column(String, nullable=False)
    token = Column(String, nullable=False)
    apy = Column(Float, nullable=True)
    price_usd = Column(Float, nullable=True)
    tvl_usd = Column(Float, nullable=True)
    recorded_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_snapshots_time", "recorded_at"),)


# ==================== DATABASE SETUP ====================


def _is_memory_url(url: str) -> bool:
    return url.rstrip("/").endswith(":memory:") or url in {"sqlite+aiosqlite://", "sqlite://"}


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure file-backed SQLite for concurrent access (WAL mode, busy timeout)."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


def build_async_engine(url: str) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    engine_kw: dict = {"echo": False}
    if "sqlite" in url:
        if _is_memory_url(url):
            engine_kw["poolclass"] = StaticPool
            engine_kw["connect_args"] = {"check_same_thread": False}
        else:
            engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

    engine = create_async_engine(url, **engine_kw)
    if "sqlite" in url and not _is_memory_url(url):
        event.listens_for(engine.sync_engine, "connect")(_set_sqlite_pragma)
    return engine


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async_engine = build_async_engine(settings.DATABASE_URL)
AsyncSessionLocal = create_session_factory(async_engine)


async def init_database():
    """Create any missing tables on the configured database."""
    await create_tables(async_engine)
    logger.info("Database initialized")


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session
