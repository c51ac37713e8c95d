"""Price and funding-rate oracles.

Both hit free public JSON endpoints through a shared ``httpx.AsyncClient``
and keep results in a small TTL cache. Network failures degrade: prices fall
back to a static table, funding lookups come back empty.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Generic, Iterable, Optional, TypeVar

import httpx

from config import settings
from models.strategy import FundingRate, TokenPrice
from utils.logger import get_logger
from utils.utcnow import utcfromtimestamp

logger = get_logger("market_data")

T = TypeVar("T")

COINGECKO_IDS = {
    "BNB": "binancecoin",
    "WBNB": "binancecoin",
    "USDT": "tether",
    "USDC": "usd-coin",
    "BUSD": "binance-usd",
    "CAKE": "pancakeswap-token",
    "ETH": "ethereum",
    "BTC": "bitcoin",
}

FALLBACK_PRICES_USD = {"BNB": 600.0, "USDT": 1.0, "USDC": 1.0, "BUSD": 1.0}


class TTLCache(Generic[T]):
    """Key/value cache with a fixed time-to-live per entry."""

    def __init__(self, ttl_seconds: float, clock=time.monotonic):
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[float, T]] = {}

    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self._ttl:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: T) -> None:
        self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        self._entries.clear()


class _HttpOracle:
    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None):
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
        return self._http_client

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        resp = await self._client().get(f"{self._base_url}{path}", params=params)
        resp.raise_for_status()
        return resp.json()

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None


class PriceOracle(_HttpOracle):
    """USD spot prices (CoinGecko ``/simple/price``)."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        fallback_prices: Optional[dict[str, float]] = None,
    ):
        super().__init__(base_url or settings.PRICE_API_URL, http_client)
        self._cache: TTLCache[TokenPrice] = TTLCache(
            settings.PRICE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )
        self._fallback = dict(FALLBACK_PRICES_USD if fallback_prices is None else fallback_prices)

    async def get_price(self, token: str) -> Optional[TokenPrice]:
        symbol = token.upper()
        cached = self._cache.get(symbol)
        if cached is not None:
            return cached

        price = await self._fetch(symbol)
        if price is None and symbol in self._fallback:
            price = TokenPrice(token=symbol, price_usd=self._fallback[symbol], source="fallback")
        if price is not None:
            self._cache.set(symbol, price)
        return price

    async def get_prices(self, tokens: Iterable[str]) -> list[TokenPrice]:
        """Prices for ``tokens`` in order; tokens with no price are left out."""
        results = await asyncio.gather(*(self.get_price(t) for t in tokens))
        return [p for p in results if p is not None]

    async def _fetch(self, symbol: str) -> Optional[TokenPrice]:
        coin_id = COINGECKO_IDS.get(symbol, symbol.lower())
        try:
            data = await self._get_json("/simple/price", {"ids": coin_id, "vs_currencies": "usd"})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Price fetch failed", token=symbol, error=str(exc))
            return None

        usd = (data or {}).get(coin_id, {}).get("usd")
        if not usd or float(usd) <= 0:
            logger.debug("Price missing from response", token=symbol)
            return None
        return TokenPrice(token=symbol, price_usd=float(usd), source="coingecko")


class FundingRateOracle(_HttpOracle):
    """Perpetual funding rates (Binance futures ``/fapi/v1/fundingRate``)."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        history_limit: Optional[int] = None,
    ):
        super().__init__(base_url or settings.FUNDING_API_URL, http_client)
        self._cache: TTLCache[list[FundingRate]] = TTLCache(
            settings.FUNDING_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )
        self._limit = settings.FUNDING_HISTORY_LIMIT if history_limit is None else history_limit

    @staticmethod
    def symbol_for(token: str) -> str:
        token = token.upper()
        return token if token.endswith("USDT") else f"{token}USDT"

    async def latest(self, token: str) -> Optional[FundingRate]:
        rates = await self.history(token)
        return rates[0] if rates else None

    async def history(self, token: str) -> list[FundingRate]:
        """Recent settlements for ``token``, newest first. Empty on failure."""
        symbol = self.symbol_for(token)
        cached = self._cache.get(symbol)
        if cached is not None:
            return cached

        try:
            rows = await self._get_json("/fapi/v1/fundingRate", {"symbol": symbol, "limit": self._limit})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Funding rate fetch failed", symbol=symbol, error=str(exc))
            return []

        if not isinstance(rows, list) or not rows:
            return []

        rates: list[FundingRate] = []
        for row in rows:
            try:
                rates.append(
                    FundingRate(
                        symbol=row.get("symbol", symbol),
                        funding_rate_pct=float(row["fundingRate"]) * 100,
                        funding_time=utcfromtimestamp(int(row["fundingTime"]) / 1000) if row.get("fundingTime") else None,
                        mark_price=float(row["markPrice"]) if row.get("markPrice") else None,
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed funding rate entry", symbol=symbol, error=str(exc))

        rates.sort(key=lambda r: r.funding_time or datetime.min, reverse=True)
        if rates:
            self._cache.set(symbol, rates)
        return rates

    async def snapshot(self, tokens: Iterable[str]) -> dict[str, list[FundingRate]]:
        """Funding history per symbol, for every token in ``tokens``."""
        tokens = list(tokens)
        histories = await asyncio.gather(*(self.history(t) for t in tokens))
        return {self.symbol_for(t): rates for t, rates in zip(tokens, histories)}
