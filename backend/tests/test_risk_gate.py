import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import PositionKind, PositionStatus
from models.strategy import RiskAction, RiskConfig
from services.errors import NotFound, ValidationError
from services.position_ledger import PositionSpec
from services.risk_gate import evaluate_risk, position_exposure_usd
from conftest import OWNER_ID


def _position(value, kind=PositionKind.YIELD):
    return SimpleNamespace(current_value_usd=value, amount="0", entry_price=0.0, kind=kind, status=PositionStatus.OPEN)


def _config(**overrides):
    values = dict(
        max_position_usd=1000.0,
        max_total_exposure_usd=5000.0,
        max_slippage_bps=100,
        allowed_venues=[],
        max_concurrent_delta_neutral_positions=3,
    )
    values.update(overrides)
    return RiskConfig(**values)


def test_position_size_limit():
    decision = evaluate_risk(_config(), [], RiskAction(kind="yield", amount_usd=1500))
    assert not decision.allowed
    assert decision.reason == "Position size $1500.00 exceeds max $1000.00. Update risk settings to increase."


def test_total_exposure_limit():
    decision = evaluate_risk(_config(), [_position(4500.0)], RiskAction(kind="yield", amount_usd=600))
    assert not decision.allowed
    assert decision.reason == "Total exposure would be $5100.00, exceeding max $5000.00."


def test_slippage_limit():
    decision = evaluate_risk(_config(), [], RiskAction(kind="swap", amount_usd=10, slippage_bps=150))
    assert decision.reason == "Slippage 150 bps exceeds max 100 bps."


def test_allowed_venues_is_case_insensitive_and_lists_allowed():
    config = _config(allowed_venues=["venus", "thena"])

    rejected = evaluate_risk(config, [], RiskAction(kind="arb", amount_usd=10, venue="biswap"))
    assert rejected.reason == 'Venue "biswap" is not in your allowed list: venus, thena.'

    accepted = evaluate_risk(config, [], RiskAction(kind="arb", amount_usd=10, venue="Thena"))
    assert accepted.allowed


def test_empty_allowed_venues_allows_any_venue():
    decision = evaluate_risk(_config(), [], RiskAction(kind="arb", amount_usd=10, venue="anything"))
    assert decision.allowed


def test_delta_neutral_concurrency_limit():
    positions = [_position(10.0, PositionKind.DELTA_NEUTRAL) for _ in range(3)]
    decision = evaluate_risk(_config(), positions, RiskAction(kind="delta_neutral", amount_usd=100))
    assert decision.reason == "Already have 3 delta-neutral positions (max: 3)."

    # The count limit only applies to delta-neutral actions.
    assert evaluate_risk(_config(), positions, RiskAction(kind="yield", amount_usd=100)).allowed


def test_first_failing_check_decides():
    decision = evaluate_risk(_config(), [], RiskAction(kind="swap", amount_usd=2000, slippage_bps=500))
    assert decision.reason.startswith("Position size")
    assert [c.key for c in decision.checks] == ["max_position"]


def test_exposure_falls_back_to_amount_times_entry_price():
    position = SimpleNamespace(current_value_usd=None, amount="2", entry_price=300.0)
    assert position_exposure_usd(position) == pytest.approx(600.0)


@pytest.mark.asyncio
async def test_configure_merges_over_defaults_and_persists(owner, risk_gate):
    updated = await risk_gate.configure(OWNER_ID, {"max_position_usd": 50, "allowed_venues": ["venus"]})
    assert updated.max_position_usd == 50

    config = await risk_gate.get_config(OWNER_ID)
    assert config.max_position_usd == 50
    assert config.allowed_venues == ["venus"]
    assert config.max_concurrent_delta_neutral_positions == updated.max_concurrent_delta_neutral_positions


@pytest.mark.asyncio
async def test_configure_rejects_bad_updates(owner, risk_gate):
    with pytest.raises(ValidationError):
        await risk_gate.configure(OWNER_ID, {"max_leverage": 3})
    with pytest.raises(ValidationError):
        await risk_gate.configure(OWNER_ID, {"max_position_usd": -1})
    with pytest.raises(NotFound):
        await risk_gate.configure("nobody", {"max_position_usd": 10})


@pytest.mark.asyncio
async def test_check_uses_owner_limits_and_open_positions(owner, risk_gate, ledger):
    await risk_gate.configure(OWNER_ID, {"max_total_exposure_usd": 150})
    await ledger.open(
        PositionSpec(owner_id=OWNER_ID, kind=PositionKind.YIELD, venue="venus", token="USDT", amount="100", current_value_usd=100.0)
    )

    allowed = await risk_gate.check(OWNER_ID, RiskAction(kind="yield", amount_usd=40))
    rejected = await risk_gate.check(OWNER_ID, RiskAction(kind="yield", amount_usd=60))

    assert allowed.allowed
    assert rejected.reason == "Total exposure would be $160.00, exceeding max $150.00."
