"""Cross-venue arbitrage detection.

Quotes ``token -> quote_token`` at a fixed quote size on every venue that declares
the QUOTE capability, then compares every unordered pair of venues once.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from itertools import combinations
from typing import Optional

from config import settings
from models.strategy import ArbOpportunity, PriceQuote
from models.types import to_decimal
from services.venues.base import Capability, VenueAdapter
from services.venues.registry import VenueRegistry
from utils.logger import get_logger
from utils.utcnow import Clock, utcnow

logger = get_logger("opportunity_scanner")


def opportunity_id(token: str, buy_venue: str, sell_venue: str) -> str:
    """Stable across scans so callers can execute an id they saw earlier."""
    return f"arb_{token}_{buy_venue}_{sell_venue}".lower()


def spread_bps(price_a: float, price_b: float) -> float:
    low, high = sorted((float(price_a), float(price_b)))
    if low <= 0:
        return 0.0
    return (high - low) / low * 10000


class OpportunityScanner:
    def __init__(
        self,
        registry: VenueRegistry,
        detection_floor_bps: Optional[float] = None,
        viable_spread_bps: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self._registry = registry
        self._floor_bps = settings.ARB_DETECTION_FLOOR_BPS if detection_floor_bps is None else detection_floor_bps
        self._viable_bps = settings.ARB_VIABLE_SPREAD_BPS if viable_spread_bps is None else viable_spread_bps
        self._clock = clock

    async def _quote(self, adapter: VenueAdapter, token: str, quote_token: str, amount: Decimal) -> Optional[PriceQuote]:
        try:
            quote = await adapter.get_quote(token, quote_token, amount)
        except Exception as exc:
            logger.warning("Venue quote failed", venue=adapter.name, token=token, error=str(exc))
            return None
        if quote is None or not quote.price or quote.price <= 0:
            logger.debug("Venue returned no usable price", venue=adapter.name, token=token)
            return None
        return quote

    async def collect_quotes(self, token: str, quote_token: str, quote_amount) -> list[PriceQuote]:
        amount = to_decimal(quote_amount)
        adapters = self._registry.with_capability(Capability.QUOTE)
        results = await asyncio.gather(*(self._quote(a, token, quote_token, amount) for a in adapters))
        return [q for q in results if q is not None]

    def compare(self, token: str, quote_token: str, quotes: list[PriceQuote], quote_amount) -> list[ArbOpportunity]:
        """Pairwise spreads over already-collected quotes, widest first."""
        if len(quotes) < 2:
            return []

        amount = float(quote_amount)
        detected_at = self._clock()
        opportunities: list[ArbOpportunity] = []
        for first, second in combinations(quotes, 2):
            cheap, rich = (first, second) if first.price <= second.price else (second, first)
            spread = spread_bps(cheap.price, rich.price)
            if spread <= self._floor_bps:
                continue
            opportunities.append(
                ArbOpportunity(
                    id=opportunity_id(token, cheap.venue, rich.venue),
                    token=token.upper(),
                    quote_token=quote_token.upper(),
                    buy_venue=cheap.venue,
                    buy_price=cheap.price,
                    sell_venue=rich.venue,
                    sell_price=rich.price,
                    spread_bps=spread,
                    estimated_profit_usd=(rich.price - cheap.price) * amount,
                    viable=spread > self._viable_bps,
                    detected_at=detected_at,
                )
            )

        opportunities.sort(key=lambda o: (-o.spread_bps, o.id))
        return opportunities

    async def scan(
        self,
        token: Optional[str] = None,
        quote_token: Optional[str] = None,
        quote_amount=None,
    ) -> list[ArbOpportunity]:
        token = (token or settings.ARB_DEFAULT_TOKEN).upper()
        quote_token = (quote_token or settings.ARB_DEFAULT_QUOTE_TOKEN).upper()
        quote_amount = settings.ARB_QUOTE_AMOUNT if quote_amount is None else quote_amount

        quotes = await self.collect_quotes(token, quote_token, quote_amount)
        if len(quotes) < 2:
            logger.info("Insufficient quotes for arbitrage scan", token=token, quotes=len(quotes))
            return []

        opportunities = self.compare(token, quote_token, quotes, quote_amount)
        logger.info(
            "Arbitrage scan complete",
            token=token,
            quotes=len(quotes),
            opportunities=len(opportunities),
            viable=sum(1 for o in opportunities if o.viable),
        )
        return opportunities
