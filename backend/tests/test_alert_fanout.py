import json
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.strategy import AlertCategory
from services.alert_fanout import AlertFanout, _escape_md
from services.errors import NotFound, ValidationError
from services.owners import OwnerDirectory
from conftest import OWNER_ID


class TelegramRecorder:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code == 200})


@pytest.fixture
def telegram():
    return TelegramRecorder()


@pytest.fixture
async def fanout(session_factory, clock, telegram):
    client = httpx.AsyncClient(transport=httpx.MockTransport(telegram))
    yield AlertFanout(session_factory, http_client=client, bot_token="TOKEN", clock=clock)
    await client.aclose()


def test_escape_markdown_v2():
    assert _escape_md("P&L: -1.5 (ok)!") == "P&L: \\-1\\.5 \\(ok\\)\\!"


@pytest.mark.asyncio
async def test_set_alert_upserts_one_row_per_category(owner, fanout):
    await fanout.set_alert(OWNER_ID, "arb_opportunity", active=True, threshold=40)
    updated = await fanout.set_alert(OWNER_ID, AlertCategory.ARB_OPPORTUNITY, active=False)

    alerts = await fanout.list_alerts(OWNER_ID)
    assert len(alerts) == 1
    assert updated.active is False
    assert updated.threshold is None


@pytest.mark.asyncio
async def test_set_alert_validation(owner, fanout):
    with pytest.raises(ValidationError):
        await fanout.set_alert(OWNER_ID, "price_moon")
    with pytest.raises(NotFound):
        await fanout.set_alert("nobody", "apy_drop")


@pytest.mark.asyncio
async def test_dispatch_stores_notification_and_sends_telegram(owner, fanout, telegram, clock):
    notification = await fanout.dispatch(OWNER_ID, AlertCategory.AUTO_ARB, "Session P&L: $1.50")

    assert notification.created_at == clock.now
    assert [n.id for n in await fanout.unread(OWNER_ID)] == [notification.id]

    assert len(telegram.requests) == 1
    request = telegram.requests[0]
    assert request.url.path == "/botTOKEN/sendMessage"
    payload = json.loads(request.content)
    assert payload["chat_id"] == "4242"
    assert payload["parse_mode"] == "MarkdownV2"
    assert payload["text"].startswith("*Auto\\-arb*")
    assert fanout.get_status()["delivered"] == 1


@pytest.mark.asyncio
async def test_inactive_subscription_mutes_delivery_but_keeps_inbox(owner, fanout, telegram):
    subscription = await fanout.set_alert(OWNER_ID, "apy_drop", active=False)

    await fanout.dispatch(OWNER_ID, "apy_drop", "Venus APY dropped")

    assert telegram.requests == []
    assert len(await fanout.unread(OWNER_ID)) == 1
    refreshed = (await fanout.list_alerts(OWNER_ID))[0]
    assert refreshed.id == subscription.id
    assert refreshed.last_triggered_at is not None


@pytest.mark.asyncio
async def test_telegram_errors_are_logged_not_raised(owner, session_factory, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(TelegramRecorder(status_code=500)))
    fanout = AlertFanout(session_factory, http_client=client, bot_token="TOKEN", clock=clock)

    notification = await fanout.dispatch(OWNER_ID, "position_health", "Funding flipped")

    assert notification is not None
    assert fanout.get_status()["delivery_failures"] == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_dispatch_to_unknown_owner_is_dropped(fanout):
    assert await fanout.dispatch("ghost", "auto_arb", "hello") is None


@pytest.mark.asyncio
async def test_broadcast_honours_threshold(owner, session_factory, fanout, telegram):
    await OwnerDirectory(session_factory).register("owner-2")
    await fanout.set_alert(OWNER_ID, "arb_opportunity", threshold=50)
    await fanout.set_alert("owner-2", "arb_opportunity", threshold=20)

    sent = await fanout.broadcast("arb_opportunity", "BNB spread 30 bps", value=30)

    assert sent == 1
    assert await fanout.unread(OWNER_ID) == []
    assert len(await fanout.unread("owner-2")) == 1
    # owner-2 has no chat id
    assert telegram.requests == []


@pytest.mark.asyncio
async def test_mark_read(owner, fanout):
    first = await fanout.dispatch(OWNER_ID, "auto_arb", "one")
    await fanout.dispatch(OWNER_ID, "auto_arb", "two")

    assert await fanout.mark_read(OWNER_ID, [first.id]) == 1
    assert len(await fanout.unread(OWNER_ID)) == 1
    assert await fanout.mark_read(OWNER_ID) == 1
    assert await fanout.unread(OWNER_ID) == []
