import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.arbitrage_executor import ArbitrageExecutor
from services.opportunity_scanner import OpportunityScanner
from services.venues.base import Capability
from services.venues.registry import VenueRegistry
from conftest import OWNER_ID, swap_venue


def _executor(venues, trade_log, signers, risk_gate=None):
    registry = VenueRegistry(venues)
    scanner = OpportunityScanner(registry, detection_floor_bps=10.0, viable_spread_bps=30.0)
    return ArbitrageExecutor(scanner, registry, trade_log, signers, risk_gate=risk_gate, unit_amount=1)


@pytest.mark.asyncio
async def test_paper_venues_execute_as_simulated_legs(owner, trade_log, signers):
    executor = _executor([swap_venue("alpha", 600.0), swap_venue("beta", 606.0)], trade_log, signers)

    result = await executor.execute(OWNER_ID, max_slippage_bps=50)

    assert result.success
    assert result.data["profit_usd"] == pytest.approx(6.0)
    assert result.data["buy_simulated"] and result.data["sell_simulated"]
    assert all(ref.startswith("0xsim_") for ref in result.tx_refs)

    trades = await trade_log.history(OWNER_ID)
    assert sorted(t.kind for t in trades) == ["arb_buy", "arb_sell"]
    assert all(t.simulated for t in trades)


@pytest.mark.asyncio
async def test_signer_and_live_venues_settle_both_legs(owner, trade_log, signers, signer, chain_client):
    signers.activate(signer)
    executor = _executor(
        [swap_venue("alpha", 600.0, paper_only=False), swap_venue("beta", 606.0, paper_only=False)],
        trade_log,
        signers,
    )

    result = await executor.execute(OWNER_ID, max_slippage_bps=50)

    assert result.success
    assert result.tx_refs == ["0xtx0001", "0xtx0002"]
    assert [tx["venue"] for tx in chain_client.sent] == ["alpha", "beta"]
    assert result.data["profit_usd"] == pytest.approx(6.0, rel=1e-6)
    trades = await trade_log.history(OWNER_ID)
    assert not any(t.simulated for t in trades)


@pytest.mark.asyncio
async def test_no_spread_above_slippage_reports_best_spread(owner, trade_log, signers):
    executor = _executor([swap_venue("alpha", 600.0), swap_venue("beta", 606.0)], trade_log, signers)

    result = await executor.execute(OWNER_ID, max_slippage_bps=150)

    assert not result.success
    assert result.error is None
    assert "Best available spread is 100.00 bps (alpha -> beta)" in result.message
    assert await trade_log.history(OWNER_ID) == []


@pytest.mark.asyncio
async def test_unknown_opportunity_id_falls_back_to_top_ranked(owner, trade_log, signers):
    executor = _executor(
        [swap_venue("alpha", 600.0), swap_venue("beta", 603.0), swap_venue("gamma", 606.0)],
        trade_log,
        signers,
    )

    picked = await executor.execute(OWNER_ID, opportunity_id="arb_bnb_alpha_beta", max_slippage_bps=10)
    fallback = await executor.execute(OWNER_ID, opportunity_id="arb_bnb_gone_away", max_slippage_bps=10)

    assert picked.data["opportunity"]["id"] == "arb_bnb_alpha_beta"
    assert fallback.data["opportunity"]["id"] == "arb_bnb_alpha_gamma"


@pytest.mark.asyncio
async def test_buy_leg_failure_logs_nothing(owner, trade_log, signers, signer):
    signers.activate(signer)
    executor = _executor(
        [
            swap_venue("alpha", 600.0, paper_only=False, fail_on={Capability.SWAP}),
            swap_venue("beta", 606.0, paper_only=False),
        ],
        trade_log,
        signers,
    )

    result = await executor.execute(OWNER_ID, max_slippage_bps=50)

    assert not result.success
    assert result.error == "AdapterFailure"
    assert await trade_log.history(OWNER_ID) == []


@pytest.mark.asyncio
async def test_sell_leg_failure_reports_open_buy_leg(owner, trade_log, signers, signer):
    signers.activate(signer)
    executor = _executor(
        [
            swap_venue("alpha", 600.0, paper_only=False),
            swap_venue("beta", 606.0, paper_only=False, fail_on={Capability.SWAP}),
        ],
        trade_log,
        signers,
    )

    result = await executor.execute(OWNER_ID, max_slippage_bps=50)

    assert not result.success
    assert result.error == "AdapterFailure"
    assert len(result.trade_ids) == 1
    assert result.data["open_leg"]["token"] == "BNB"
    trades = await trade_log.history(OWNER_ID)
    assert [t.kind for t in trades] == ["arb_buy"]


@pytest.mark.asyncio
async def test_risk_gate_rejects_disallowed_venue(owner, trade_log, signers, risk_gate):
    await risk_gate.configure(OWNER_ID, {"allowed_venues": ["alpha"]})
    executor = _executor(
        [swap_venue("alpha", 600.0), swap_venue("beta", 606.0)], trade_log, signers, risk_gate=risk_gate
    )

    result = await executor.execute(OWNER_ID, max_slippage_bps=50)

    assert not result.success
    assert result.error == "RiskRejected"
    assert result.message == 'Venue "beta" is not in your allowed list: alpha.'
    assert await trade_log.history(OWNER_ID) == []
