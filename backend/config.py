from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "engine.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # Background loops
    SESSION_TICK_INTERVAL_SECONDS: int = 30
    POSITION_HEALTH_INTERVAL_SECONDS: int = 300

    # Arbitrage detection
    ARB_DETECTION_FLOOR_BPS: float = 10.0  # spreads at or below are noise
    ARB_VIABLE_SPREAD_BPS: float = 30.0  # above this an opportunity is flagged viable
    ARB_DEFAULT_TOKEN: str = "BNB"
    ARB_DEFAULT_QUOTE_TOKEN: str = "USDT"
    ARB_QUOTE_AMOUNT: float = 1.0
    DEFAULT_ARB_SLIPPAGE_BPS: int = 50

    # Funding model (perpetuals settle every 8h)
    FUNDING_INTERVAL_HOURS: int = 8
    FUNDING_INTERVALS_PER_DAY: int = 3

    # Yield rotation
    DEFAULT_MIN_ROTATION_IMPROVEMENT_BPS: float = 50.0
    APY_DROP_ALERT_PCT: float = 0.5  # percentage points

    # Default risk limits (per-owner overrides are merged on top)
    RISK_MAX_POSITION_USD: float = 1000.0
    RISK_MAX_TOTAL_EXPOSURE_USD: float = 5000.0
    RISK_MAX_SLIPPAGE_BPS: int = 100
    RISK_MAX_CONCURRENT_DELTA_NEUTRAL: int = 3

    # Venues
    DELTA_SPOT_VENUE: str = "pancakeswap"
    DEFAULT_SWAP_VENUE: str = "pancakeswap"
    PAPER_VENUES_ENABLED: bool = True
    TRANSFER_TOKENS: list[str] = ["BNB", "USDT", "USDC", "BUSD", "CAKE"]

    # Market data
    PRICE_API_URL: str = "https://api.coingecko.com/api/v3"
    FUNDING_API_URL: str = "https://fapi.binance.com"
    PRICE_CACHE_TTL_SECONDS: int = 60
    FUNDING_CACHE_TTL_SECONDS: int = 300
    API_TIMEOUT_SECONDS: float = 10.0
    MARKET_PRICE_TOKENS: list[str] = ["BNB", "USDT", "CAKE"]
    MARKET_FUNDING_TOKENS: list[str] = ["BNB", "ETH", "BTC"]
    MARKET_YIELD_TOKENS: list[str] = ["USDT", "USDC", "BNB"]
    FUNDING_HISTORY_LIMIT: int = 10

    # Market snapshots (history for charts)
    SNAPSHOT_INTERVAL_SECONDS: int = 300
    SNAPSHOT_TOP_YIELDS: int = 10

    # Notifications
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_URL: str = "https://api.telegram.org"

    @field_validator("PRICE_API_URL", "FUNDING_API_URL", "TELEGRAM_API_URL", mode="before")
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"

        return text

    @field_validator("ARB_DETECTION_FLOOR_BPS", "ARB_VIABLE_SPREAD_BPS", "ARB_QUOTE_AMOUNT")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    class Config:
        # Load project-root .env first, then backend/.env as an override.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
