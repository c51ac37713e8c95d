import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.engine import build_engine
from services.errors import NotFound, ValidationError
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
    await engine.start(run_loops=False)
    yield engine
    await engine.shutdown()


@pytest.fixture
async def ready_owner(engine):
    await engine.register_owner(OWNER_ID, telegram_chat_id="4242")
    await engine.activate_signer(SignerSession(OWNER_ID, "0xowner", FakeChainClient()))
    return OWNER_ID


@pytest.mark.asyncio
async def test_entry_points_require_known_owner(engine):
    with pytest.raises(NotFound):
        await engine.portfolio("ghost")
    with pytest.raises(NotFound):
        await engine.yield_deposit("ghost", "USDT", 10)
    with pytest.raises(NotFound):
        await engine.activate_signer(SignerSession("ghost", "0x0", FakeChainClient()))


@pytest.mark.asyncio
async def test_register_owner_is_idempotent(engine):
    first = await engine.register_owner(OWNER_ID)
    second = await engine.register_owner(OWNER_ID, telegram_chat_id="99")
    assert first == {"owner_id": OWNER_ID, "telegram_chat_id": None}
    assert second["telegram_chat_id"] == "99"

    with pytest.raises(ValidationError):
        await engine.register_owner("  ")


@pytest.mark.asyncio
async def test_swap_on_paper_venue_is_simulated_and_logged(engine, ready_owner):
    result = await engine.swap_tokens(ready_owner, "USDT", "BNB", 120)

    assert result.success
    assert result.data["venue"] == "pancakeswap"
    assert float(result.data["amount_out"]) == pytest.approx(0.2)
    assert result.tx_refs[0].startswith("0xsim_swap_")

    [trade] = await engine.trade_history(ready_owner)
    assert trade["kind"] == "swap"
    assert trade["simulated"] is True


@pytest.mark.asyncio
async def test_swap_guards(engine, ready_owner):
    too_big = await engine.swap_tokens(ready_owner, "BNB", "USDT", 2)
    assert too_big.error == "RiskRejected"
    assert too_big.message.startswith("Position size $1200.00 exceeds max $1000.00")

    unsupported = await engine.swap_tokens(ready_owner, "USDT", "BNB", 10, venue="venus")
    assert unsupported.error == "AdapterFailure"

    assert await engine.trade_history(ready_owner) == []


@pytest.mark.asyncio
async def test_trade_history_rejects_unknown_kind(engine, ready_owner):
    with pytest.raises(ValidationError):
        await engine.trade_history(ready_owner, kind="teleport")


@pytest.mark.asyncio
async def test_arb_scan_and_execute(engine, ready_owner):
    opportunities = await engine.arb_scan()
    assert [o.id for o in opportunities] == ["arb_bnb_biswap_thena"]

    refused = await engine.arb_execute(ready_owner)
    assert not refused.success
    assert "Best available spread is 10.00 bps" in refused.message

    executed = await engine.arb_execute(ready_owner, max_slippage_bps=5)
    assert executed.success
    assert executed.data["profit_usd"] == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_yield_deposit_shows_in_portfolio(engine, ready_owner):
    result = await engine.yield_deposit(ready_owner, "USDT", 250)
    assert result.success
    assert result.data["venue"] == "venus"

    summary = await engine.portfolio(ready_owner)
    assert summary.open_positions == 1
    assert summary.total_value_usd == pytest.approx(250.0)
    assert await engine.check_rotation(result.position_id) is None


@pytest.mark.asyncio
async def test_delta_neutral_round_trip(engine, ready_owner, clock):
    opened = await engine.delta_neutral_open(ready_owner, "BNB", 300)
    assert opened.success

    clock.advance(hours=8)
    pnl = await engine.delta_neutral_pnl(opened.position_id)
    assert pnl.funding_intervals == 1

    closed = await engine.delta_neutral_close(ready_owner, opened.position_id)
    assert closed.success
    assert (await engine.portfolio(ready_owner)).open_positions == 0


@pytest.mark.asyncio
async def test_risk_and_alert_settings(engine, ready_owner):
    config = await engine.configure_risk(ready_owner, {"max_slippage_bps": 20})
    assert config.max_slippage_bps == 20
    assert (await engine.get_risk_config(ready_owner)).max_slippage_bps == 20

    alert = await engine.set_alert(ready_owner, "apy_drop", threshold=0.25)
    assert alert["category"] == "apy_drop"
    assert [a["category"] for a in await engine.get_alerts(ready_owner)] == ["apy_drop"]


@pytest.mark.asyncio
async def test_session_lifecycle_through_engine(engine, ready_owner):
    started = await engine.start_session(ready_owner, duration_hours=2, max_loss_usd=10)
    assert started.status == "active"
    assert started.time_remaining_seconds == pytest.approx(7200.0)

    report = await engine.scheduler.tick()
    assert report.sessions_checked == 1

    stopped = await engine.stop_session(ready_owner)
    assert stopped.status == "stopped"
    assert (await engine.session_status(ready_owner)).end_reason == "manual"

    inbox = await engine.notifications(ready_owner)
    assert any(n["message"].startswith("Auto-arb session stopped.") for n in inbox)


RECIPIENT = "0x" + "ab" * 20


@pytest.mark.asyncio
async def test_scan_markets_sections(engine):
    everything = await engine.scan_markets("all")
    assert set(everything) == {"yield", "prices", "arbitrage", "funding_rates"}
    assert everything["yield"][0]["venue"] == "venus"
    assert [p["token"] for p in everything["prices"]["prices"]] == ["BNB", "USDT"]
    assert {q["venue"] for q in everything["prices"]["quotes"]} == {"pancakeswap", "thena", "biswap"}
    assert [o["id"] for o in everything["arbitrage"]] == ["arb_bnb_biswap_thena"]

    funding = (await engine.scan_markets("funding_rates"))["funding_rates"]
    assert funding["BNBUSDT"]["current_pct"] == pytest.approx(0.01)
    assert funding["BNBUSDT"]["favorable_for_delta_neutral"] is True
    assert funding["ETHUSDT"]["current_pct"] is None

    assert set(await engine.scan_markets("prices")) == {"prices"}
    with pytest.raises(ValidationError):
        await engine.scan_markets("weather")


@pytest.mark.asyncio
async def test_arb_executions_list_both_legs(engine, ready_owner):
    await engine.swap_tokens(ready_owner, "USDT", "BNB", 10)
    executed = await engine.arb_execute(ready_owner, max_slippage_bps=5)
    assert executed.success

    executions = await engine.arb_executions(ready_owner)

    assert sorted(e["kind"] for e in executions) == ["arb_buy", "arb_sell"]
    with pytest.raises(NotFound):
        await engine.arb_executions("ghost")


@pytest.mark.asyncio
async def test_send_tokens_settles_through_signer(engine, ready_owner):
    sent = await engine.send_tokens(ready_owner, "usdt", 25, RECIPIENT)

    assert sent.success
    assert sent.tx_refs == ["0xtx0001"]
    [trade] = await engine.trade_history(ready_owner, kind="transfer")
    assert trade["venue"] == "direct"
    assert trade["from_token"] == "USDT"
    assert trade["simulated"] is False


@pytest.mark.asyncio
async def test_send_tokens_guards(engine, ready_owner):
    bad_address = await engine.send_tokens(ready_owner, "USDT", 1, "0x1234")
    assert bad_address.error == "ValidationError"
    assert bad_address.message == "Invalid recipient address: 0x1234"

    unsupported = await engine.send_tokens(ready_owner, "DOGE", 1, RECIPIENT)
    assert unsupported.message.startswith("Unsupported token: DOGE.")

    await engine.register_owner("owner-2")
    with pytest.raises(NotFound):
        await engine.send_tokens("owner-2", "USDT", 1, RECIPIENT)

    assert await engine.trade_history(ready_owner) == []


@pytest.mark.asyncio
async def test_reverted_transfer_is_not_logged(engine):
    await engine.register_owner("owner-3")
    await engine.activate_signer(SignerSession("owner-3", "0xowner3", FakeChainClient(revert=True)))

    result = await engine.send_tokens("owner-3", "BNB", 1, RECIPIENT)

    assert result.error == "AdapterFailure"
    assert "reverted" in result.message
    assert await engine.trade_history("owner-3") == []
