"""Owner notifications: stored inbox plus best-effort Telegram delivery."""

from __future__ import annotations

import uuid
from typing import Optional

import httpx
from sqlalchemy import select, update

from config import settings
from models.database import AlertSubscription, AsyncSessionLocal, Notification, OwnerAccount
from models.strategy import AlertCategory
from services.errors import NotFound, ValidationError
from utils.logger import get_logger
from utils.utcnow import Clock, utcnow

logger = get_logger("alerts")

CATEGORY_TITLES = {
    AlertCategory.APY_DROP: "APY drop",
    AlertCategory.ARB_OPPORTUNITY: "Arbitrage opportunity",
    AlertCategory.POSITION_HEALTH: "Position health",
    AlertCategory.AUTO_ARB: "Auto-arb",
}


def _escape_md(text: str) -> str:
    """Escape special characters for Telegram MarkdownV2."""
    special = r"\_*[]()~`>#+=|{}.!-"
    return "".join(f"\\{ch}" if ch in special else ch for ch in str(text))


def _category(value) -> AlertCategory:
    try:
        return AlertCategory(value)
    except ValueError:
        valid = ", ".join(c.value for c in AlertCategory)
        raise ValidationError(f"Unknown alert category {value!r}. Valid categories: {valid}") from None


class AlertFanout:
    """Sole writer of ``notifications`` and ``alert_subscriptions`` rows.

    ``dispatch`` always stores the notification. Telegram delivery happens
    when the owner has a chat id, a bot token is configured and the owner
    has not muted the category; delivery failures are logged, never raised.
    """

    def __init__(
        self,
        session_factory=None,
        http_client: Optional[httpx.AsyncClient] = None,
        bot_token: Optional[str] = None,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._http_client = http_client
        self._owns_client = http_client is None
        self._bot_token = bot_token if bot_token is not None else settings.TELEGRAM_BOT_TOKEN
        self._clock = clock
        self._delivered = 0
        self._delivery_failures = 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def set_alert(
        self,
        owner_id: str,
        category,
        active: bool = True,
        threshold: Optional[float] = None,
    ) -> AlertSubscription:
        category = _category(category)
        async with self._session_factory() as session:
            if await session.get(OwnerAccount, owner_id) is None:
                raise NotFound(f"Unknown owner {owner_id}")
            result = await session.execute(
                select(AlertSubscription).where(
                    AlertSubscription.owner_id == owner_id,
                    AlertSubscription.category == category.value,
                )
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                subscription = AlertSubscription(
                    id=f"alr_{uuid.uuid4().hex[:12]}",
                    owner_id=owner_id,
                    category=category.value,
                    created_at=self._clock(),
                )
                session.add(subscription)
            subscription.active = bool(active)
            subscription.threshold = threshold
            await session.commit()
            await session.refresh(subscription)

        logger.info(
            "Alert subscription updated",
            owner_id=owner_id,
            category=category.value,
            active=subscription.active,
            threshold=threshold,
        )
        return subscription

    async def list_alerts(self, owner_id: str) -> list[AlertSubscription]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertSubscription)
                .where(AlertSubscription.owner_id == owner_id)
                .order_by(AlertSubscription.category)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def dispatch(self, owner_id: str, category, message: str) -> Optional[Notification]:
        category = _category(category)
        now = self._clock()
        async with self._session_factory() as session:
            owner = await session.get(OwnerAccount, owner_id)
            if owner is None:
                logger.warning("Alert for unknown owner dropped", owner_id=owner_id, category=category.value)
                return None

            result = await session.execute(
                select(AlertSubscription).where(
                    AlertSubscription.owner_id == owner_id,
                    AlertSubscription.category == category.value,
                )
            )
            subscription = result.scalar_one_or_none()
            if subscription is not None:
                subscription.last_triggered_at = now

            notification = Notification(
                id=f"ntf_{uuid.uuid4().hex[:12]}",
                owner_id=owner_id,
                category=category.value,
                message=message,
                read=False,
                created_at=now,
            )
            session.add(notification)
            await session.commit()
            await session.refresh(notification)

            chat_id = owner.telegram_chat_id
            muted = subscription is not None and not subscription.active

        if chat_id and not muted:
            await self._send_telegram(chat_id, category, message)
        return notification

    async def broadcast(self, category, message: str, value: Optional[float] = None) -> int:
        """Dispatch to every owner with an active subscription.

        When ``value`` is given, owners whose threshold exceeds it are skipped.
        """
        category = _category(category)
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertSubscription).where(
                    AlertSubscription.category == category.value,
                    AlertSubscription.active.is_(True),
                )
            )
            subscriptions = list(result.scalars().all())

        sent = 0
        for subscription in subscriptions:
            if value is not None and subscription.threshold is not None and value < subscription.threshold:
                continue
            if await self.dispatch(subscription.owner_id, category, message) is not None:
                sent += 1
        return sent

    async def _send_telegram(self, chat_id: str, category: AlertCategory, message: str) -> bool:
        if not self._bot_token:
            logger.debug("Telegram bot token not configured, skipping delivery")
            return False

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)

        url = f"{settings.TELEGRAM_API_URL}/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": f"*{_escape_md(CATEGORY_TITLES[category])}*\n{_escape_md(message)}",
            "parse_mode": "MarkdownV2",
            "disable_web_page_preview": True,
        }
        try:
            resp = await self._http_client.post(url, json=payload)
        except httpx.HTTPError as exc:
            self._delivery_failures += 1
            logger.warning("Telegram delivery failed", chat_id=chat_id, error=str(exc))
            return False

        if resp.status_code != 200:
            self._delivery_failures += 1
            logger.warning("Telegram API error", status=resp.status_code, body=resp.text[:300])
            return False

        self._delivered += 1
        return True

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def unread(self, owner_id: str, limit: int = 50) -> list[Notification]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Notification)
                .where(Notification.owner_id == owner_id, Notification.read.is_(False))
                .order_by(Notification.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_read(self, owner_id: str, notification_ids: Optional[list[str]] = None) -> int:
        """Mark the given notifications (or all of the owner's) as read."""
        async with self._session_factory() as session:
            stmt = update(Notification).where(Notification.owner_id == owner_id, Notification.read.is_(False))
            if notification_ids is not None:
                stmt = stmt.where(Notification.id.in_(notification_ids))
            result = await session.execute(stmt.values(read=True))
            await session.commit()
            return int(result.rowcount or 0)

    def get_status(self) -> dict:
        return {
            "telegram_configured": bool(self._bot_token),
            "delivered": self._delivered,
            "delivery_failures": self._delivery_failures,
        }

    async def shutdown(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
