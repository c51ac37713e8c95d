import sys
from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from api.routes_engine import router
from services.engine import build_engine
from services.venues.base import SignerSession
from services.venues.paper import default_paper_venues
from conftest import OWNER_ID, FakeChainClient, FakeFundingOracle, FakePriceOracle


@pytest.fixture
async def engine(session_factory, clock):
    engine = build_engine(
        session_factory=session_factory,
        venues=default_paper_venues(),
        prices=FakePriceOracle({"BNB": 600.0, "USDT": 1.0}),
        funding=FakeFundingOracle({"BNB": 0.01}),
        bot_token="",
        clock=clock,
    )
    yield engine
    await engine.shutdown()


@pytest.fixture
async def client(engine):
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.state.engine = engine
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
async def registered(client, engine):
    resp = await client.post("/api/engine/owners", json={"owner_id": OWNER_ID, "telegram_chat_id": "4242"})
    assert resp.status_code == 200
    await engine.activate_signer(SignerSession(OWNER_ID, "0xowner", FakeChainClient()))
    return OWNER_ID


@pytest.mark.asyncio
async def test_unknown_owner_maps_to_404(client):
    resp = await client.get("/api/engine/owners/ghost/portfolio")
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "NotFound"


@pytest.mark.asyncio
async def test_request_validation_rejects_non_positive_amounts(client, registered):
    resp = await client.post(f"/api/engine/owners/{registered}/yield/deposit", json={"token": "USDT", "amount": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_yield_deposit_and_portfolio(client, registered):
    resp = await client.post(f"/api/engine/owners/{registered}/yield/deposit", json={"token": "USDT", "amount": 100})
    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["data"]["venue"] == "venus"

    portfolio = (await client.get(f"/api/engine/owners/{registered}/portfolio")).json()
    assert portfolio["open_positions"] == 1

    trades = (await client.get(f"/api/engine/owners/{registered}/trades", params={"kind": "deposit"})).json()
    assert trades["count"] == 1


@pytest.mark.asyncio
async def test_arb_opportunities_listing(client):
    resp = await client.get("/api/engine/arb/opportunities", params={"token": "BNB"})
    body = resp.json()
    assert resp.status_code == 200
    assert body["count"] == 1
    assert body["opportunities"][0]["id"] == "arb_bnb_biswap_thena"


@pytest.mark.asyncio
async def test_second_session_conflicts(client, registered):
    payload = {"duration_hours": 1, "max_loss_usd": 5}
    first = await client.post(f"/api/engine/owners/{registered}/sessions", json=payload)
    second = await client.post(f"/api/engine/owners/{registered}/sessions", json=payload)

    assert first.status_code == 200
    assert first.json()["status"] == "active"
    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "InvalidState"

    stopped = await client.delete(f"/api/engine/owners/{registered}/sessions")
    assert stopped.json()["end_reason"] == "manual"


@pytest.mark.asyncio
async def test_risk_update_and_bad_alert_category(client, registered):
    empty = await client.put(f"/api/engine/owners/{registered}/risk", json={})
    assert empty.status_code == 422

    updated = await client.put(f"/api/engine/owners/{registered}/risk", json={"allowed_venues": ["venus"]})
    assert updated.json()["allowed_venues"] == ["venus"]

    bad = await client.put(f"/api/engine/owners/{registered}/alerts", json={"category": "moon"})
    assert bad.status_code == 422
    assert bad.json()["detail"]["code"] == "ValidationError"


@pytest.mark.asyncio
async def test_missing_engine_returns_503():
    app = FastAPI()
    app.include_router(router, prefix="/api")
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/api/engine/status")
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_market_endpoints(client, engine):
    prices = (await client.get("/api/engine/markets/prices")).json()
    assert prices["token"] == "BNB"
    assert len(prices["quotes"]) == 3

    funding = (await client.get("/api/engine/markets/funding", params={"token": ["BNB"]})).json()
    assert list(funding["rates"]) == ["BNBUSDT"]

    await engine.snapshots.record_once()
    history = (await client.get("/api/engine/markets/history", params={"limit": 2})).json()
    assert history["count"] == 2

    bad = await client.get("/api/engine/markets/scan", params={"category": "moon"})
    assert bad.status_code == 422
    assert bad.json()["detail"]["code"] == "ValidationError"


@pytest.mark.asyncio
async def test_arb_executions_and_transfer(client, registered):
    await client.post(f"/api/engine/owners/{registered}/arb/execute", json={"max_slippage_bps": 5})
    executions = (await client.get(f"/api/engine/owners/{registered}/arb/executions")).json()
    assert executions["count"] == 2

    sent = await client.post(
        f"/api/engine/owners/{registered}/transfer",
        json={"token": "BNB", "amount": 0.5, "to_address": "0x" + "cd" * 20},
    )
    assert sent.status_code == 200
    assert sent.json()["success"] is True
