from typing import Optional

from models.database import AsyncSessionLocal, OwnerAccount
from services.errors import NotFound, ValidationError
from utils.logger import get_logger

logger = get_logger("owners")


class OwnerDirectory:
    """Owner accounts. Front-ends resolve their own user ids to these."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def register(self, owner_id: str, telegram_chat_id: Optional[str] = None) -> OwnerAccount:
        """Create the owner, or update the chat id of an existing one."""
        owner_id = str(owner_id or "").strip()
        if not owner_id:
            raise ValidationError("owner_id is required")

        async with self._session_factory() as session:
            owner = await session.get(OwnerAccount, owner_id)
            created = owner is None
            if created:
                owner = OwnerAccount(id=owner_id, telegram_chat_id=telegram_chat_id, risk_config={})
                session.add(owner)
            elif telegram_chat_id is not None:
                owner.telegram_chat_id = telegram_chat_id
            await session.commit()
            await session.refresh(owner)

        if created:
            logger.info("Owner registered", owner_id=owner_id)
        return owner

    async def get(self, owner_id: str) -> Optional[OwnerAccount]:
        async with self._session_factory() as session:
            return await session.get(OwnerAccount, owner_id)

    async def require(self, owner_id: str) -> OwnerAccount:
        owner = await self.get(owner_id)
        if owner is None:
            raise NotFound(f"Unknown owner {owner_id}")
        return owner
