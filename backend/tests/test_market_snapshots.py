import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.market_snapshots import MARKET_VENUE, MarketSnapshotLogger, snapshot_to_dict
from services.venues.registry import VenueRegistry
from services.yield_optimizer import YieldOptimizer
from conftest import FakePriceOracle, lending_venue


@pytest.fixture
def yields(ledger, trade_log, signers):
    venues = [
        lending_venue("venus", {"USDT": 4.2, "BNB": 1.8}),
        lending_venue("alpaca", {"USDT": 6.1}),
    ]
    return YieldOptimizer(ledger, trade_log, VenueRegistry(venues), signers)


def _logger(yields, session_factory, clock, **kwargs):
    return MarketSnapshotLogger(
        yields,
        FakePriceOracle({"BNB": 600.0, "USDT": 1.0}),
        session_factory=session_factory,
        clock=clock,
        yield_tokens=["USDT", "BNB"],
        price_tokens=["BNB", "USDT", "CAKE"],
        **kwargs,
    )


@pytest.mark.asyncio
async def test_record_once_stores_top_yields_and_prices(yields, session_factory, clock):
    snapshots = _logger(yields, session_factory, clock, top_yields=2)

    report = await snapshots.record_once()

    assert report.yields == 2
    assert report.prices == 2
    rows = [snapshot_to_dict(r) for r in await snapshots.history()]
    apys = {(r["venue"], r["token"]): r["apy"] for r in rows if r["apy"] is not None}
    assert apys == {("alpaca", "USDT"): pytest.approx(6.1), ("venus", "USDT"): pytest.approx(4.2)}
    prices = {r["token"]: r["price_usd"] for r in rows if r["venue"] == MARKET_VENUE}
    assert prices == {"BNB": pytest.approx(600.0), "USDT": pytest.approx(1.0)}
    assert all(r["recorded_at"] == clock.now.isoformat() for r in rows)


@pytest.mark.asyncio
async def test_history_is_newest_first_with_limit_and_token_filter(yields, session_factory, clock):
    snapshots = _logger(yields, session_factory, clock)
    await snapshots.record_once()
    first_at = clock.now
    clock.advance(minutes=5)
    await snapshots.record_once()

    latest = await snapshots.history(limit=2)
    assert len(latest) == 2
    assert all(r.recorded_at == clock.now for r in latest)

    bnb = await snapshots.history(token="bnb")
    assert {r.token for r in bnb} == {"BNB"}
    assert [r.recorded_at for r in bnb][-1] == first_at
