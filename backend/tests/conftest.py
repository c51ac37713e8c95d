"""Shared fixtures for strategy engine tests."""

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Keep the module-level engine off disk during tests.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest

from models.database import build_async_engine, create_session_factory, create_tables
from models.strategy import FundingRate, TokenPrice
from services.owners import OwnerDirectory
from services.position_ledger import PositionLedger
from services.risk_gate import RiskGate
from services.trade_log import TradeLog
from services.venues.base import SignerSession, TxReceipt
from services.venues.paper import LENDING_VENUE_CAPABILITIES, SWAP_VENUE_CAPABILITIES, PaperVenue
from services.venues.registry import SignerSessions, VenueRegistry

OWNER_ID = "owner-1"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Pinned clock; tests move time with :meth:`advance`."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChainClient:
    def __init__(self, revert: bool = False):
        self.revert = revert
        self.sent: list[dict] = []

    async def send_transaction(self, tx):
        self.sent.append(tx)
        return f"0xtx{len(self.sent):04d}"

    async def wait_for_receipt(self, tx_ref, timeout_seconds=60.0):
        return TxReceipt(tx_ref=tx_ref, success=not self.revert, block_number=len(self.sent))

    async def read_only_call(self, call):
        return None


class FakePriceOracle:
    def __init__(self, prices=None):
        self.prices = {k.upper(): v for k, v in (prices or {}).items()}

    async def get_price(self, token):
        price = self.prices.get(token.upper())
        if price is None:
            return None
        return TokenPrice(token=token.upper(), price_usd=price, source="test")

    async def get_prices(self, tokens):
        found = [await self.get_price(t) for t in tokens]
        return [p for p in found if p is not None]

    async def close(self):
        return None


class FakeFundingOracle:
    def __init__(self, rates=None):
        self.rates = {k.upper(): v for k, v in (rates or {}).items()}

    async def latest(self, token):
        rate = self.rates.get(token.upper())
        if rate is None:
            return None
        return FundingRate(symbol=f"{token.upper()}USDT", funding_rate_pct=rate)

    async def history(self, token):
        latest = await self.latest(token)
        return [latest] if latest else []

    async def snapshot(self, tokens):
        return {f"{t.upper()}USDT": await self.history(t) for t in tokens}

    async def close(self):
        return None


def swap_venue(name, price, *, paper_only=True, fail_on=()):
    return PaperVenue(
        name,
        SWAP_VENUE_CAPABILITIES,
        prices={"BNB": price},
        paper_only=paper_only,
        fail_on=fail_on,
    )


def lending_venue(name, apys, *, balances=None, paper_only=True, fail_on=()):
    return PaperVenue(
        name,
        LENDING_VENUE_CAPABILITIES,
        apys=apys,
        balances=balances if balances is not None else {"USDT": 10000},
        paper_only=paper_only,
        fail_on=fail_on,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture
async def session_factory():
    engine = build_async_engine("sqlite+aiosqlite://")
    await create_tables(engine)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
async def owner(session_factory):
    return await OwnerDirectory(session_factory).register(OWNER_ID, telegram_chat_id="4242")


@pytest.fixture
def ledger(session_factory, clock):
    return PositionLedger(session_factory, clock=clock)


@pytest.fixture
def trade_log(session_factory, clock):
    return TradeLog(session_factory, clock=clock)


@pytest.fixture
def risk_gate(ledger, session_factory):
    return RiskGate(ledger, session_factory)


@pytest.fixture
def chain_client():
    return FakeChainClient()


@pytest.fixture
def signer(chain_client):
    return SignerSession(owner_id=OWNER_ID, address="0xowner", chain_client=chain_client)


@pytest.fixture
def signers():
    return SignerSessions()


@pytest.fixture
def registry():
    return VenueRegistry()
