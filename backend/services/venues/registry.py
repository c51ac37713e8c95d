from __future__ import annotations

from typing import Iterable, Optional

from services.errors import NotFound, ValidationError
from services.venues.base import Capability, SignerSession, VenueAdapter
from utils.logger import get_logger

logger = get_logger("venues")


class VenueRegistry:
    """Venue adapters by lower-cased name, in registration order."""

    def __init__(self, adapters: Iterable[VenueAdapter] = ()):
        self._adapters: dict[str, VenueAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: VenueAdapter) -> None:
        key = adapter.name.lower()
        if key in self._adapters:
            raise ValidationError(f"Venue {adapter.name!r} is already registered")
        self._adapters[key] = adapter
        logger.debug(
            "Venue registered",
            venue=adapter.name,
            capabilities=sorted(c.value for c in adapter.capabilities),
            paper_only=adapter.paper_only,
        )

    def get(self, name: str) -> VenueAdapter:
        adapter = self._adapters.get(str(name or "").lower())
        if adapter is None:
            raise NotFound(f"Unknown venue: {name}")
        return adapter

    def find(self, name: str) -> Optional[VenueAdapter]:
        return self._adapters.get(str(name or "").lower())

    def with_capability(self, capability: Capability) -> list[VenueAdapter]:
        return [a for a in self._adapters.values() if a.supports(capability)]

    def names(self) -> list[str]:
        return [a.name for a in self._adapters.values()]

    def __len__(self) -> int:
        return len(self._adapters)


class SignerSessions:
    """Active signer sessions per owner.

    Wallet provisioning and key custody live outside the engine; they hand
    an unlocked :class:`SignerSession` in through :meth:`activate`.
    """

    def __init__(self):
        self._sessions: dict[str, SignerSession] = {}

    def activate(self, session: SignerSession) -> None:
        self._sessions[session.owner_id] = session
        logger.info("Signer session activated", owner_id=session.owner_id, address=session.address)

    def deactivate(self, owner_id: str) -> bool:
        removed = self._sessions.pop(owner_id, None) is not None
        if removed:
            logger.info("Signer session deactivated", owner_id=owner_id)
        return removed

    def get(self, owner_id: str) -> Optional[SignerSession]:
        return self._sessions.get(owner_id)

    def require(self, owner_id: str) -> SignerSession:
        session = self._sessions.get(owner_id)
        if session is None:
            raise NotFound(f"No active signer session for owner {owner_id}")
        return session
