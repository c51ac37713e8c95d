import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import TradeKind
from services.trade_log import is_simulated_ref, simulated_ref, trade_to_dict
from conftest import OWNER_ID


def test_simulated_ref_shape():
    ref = simulated_ref("arb_buy")
    assert ref.startswith("0xsim_arb_buy_")
    assert len(ref.rsplit("_", 1)[1]) == 16
    assert is_simulated_ref(ref)
    assert not is_simulated_ref("0xabc")
    assert not is_simulated_ref(None)


@pytest.mark.asyncio
async def test_log_infers_simulated_from_settlement_ref(owner, trade_log):
    simulated = await trade_log.log(
        OWNER_ID, TradeKind.SWAP, "pancakeswap", from_token="usdt", from_amount="10", settlement_tx_ref=simulated_ref("swap")
    )
    real = await trade_log.log(OWNER_ID, TradeKind.SWAP, "pancakeswap", settlement_tx_ref="0xdeadbeef")

    assert simulated.simulated is True
    assert real.simulated is False
    assert simulated.kind == "swap"
    assert simulated.from_token == "USDT"
    assert simulated.id.startswith("trd_")


@pytest.mark.asyncio
async def test_history_is_newest_first_and_filters_by_kind(owner, trade_log, clock):
    first = await trade_log.log(OWNER_ID, TradeKind.DEPOSIT, "venus")
    clock.advance(minutes=1)
    second = await trade_log.log(OWNER_ID, TradeKind.SWAP, "thena")
    clock.advance(minutes=1)
    third = await trade_log.log(OWNER_ID, TradeKind.DEPOSIT, "venus")

    history = await trade_log.history(OWNER_ID)
    assert [t.id for t in history] == [third.id, second.id, first.id]

    deposits = await trade_log.history(OWNER_ID, kind="deposit")
    assert [t.id for t in deposits] == [third.id, first.id]

    limited = await trade_log.history(OWNER_ID, limit=1)
    assert [t.id for t in limited] == [third.id]


@pytest.mark.asyncio
async def test_amounts_keep_decimal_precision(owner, trade_log):
    trade = await trade_log.log(
        OWNER_ID,
        TradeKind.ARB_BUY,
        "biswap",
        from_amount="0.000000000000000001",
        to_amount="1.10",
    )

    row = trade_to_dict(await trade_log.get(trade.id))
    assert row["from_amount"] == "0.000000000000000001"
    assert row["to_amount"] == "1.1"


@pytest.mark.asyncio
async def test_history_filters_by_several_kinds(owner, trade_log, clock):
    buy = await trade_log.log(OWNER_ID, TradeKind.ARB_BUY, "biswap")
    clock.advance(seconds=1)
    await trade_log.log(OWNER_ID, TradeKind.SWAP, "pancakeswap")
    clock.advance(seconds=1)
    sell = await trade_log.log(OWNER_ID, TradeKind.ARB_SELL, "thena")

    legs = await trade_log.history(OWNER_ID, kinds=["arb_buy", "arb_sell"])

    assert [t.id for t in legs] == [sell.id, buy.id]
