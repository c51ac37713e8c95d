from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AlertCategory(str, Enum):
    APY_DROP = "apy_drop"
    ARB_OPPORTUNITY = "arb_opportunity"
    POSITION_HEALTH = "position_health"
    AUTO_ARB = "auto_arb"


class RiskConfig(BaseModel):
    """Per-owner risk limits. An empty ``allowed_venues`` means unrestricted."""

    max_position_usd: float = 1000.0
    max_total_exposure_usd: float = 5000.0
    max_slippage_bps: int = 100
    allowed_venues: list[str] = Field(default_factory=list)
    max_concurrent_delta_neutral_positions: int = 3


class RiskAction(BaseModel):
    """What a strategy is about to do, as seen by the risk gate."""

    kind: str  # yield, swap, arb, delta_neutral
    amount_usd: float
    venue: Optional[str] = None
    slippage_bps: Optional[float] = None


class PriceQuote(BaseModel):
    venue: str
    token_in: str
    token_out: str
    amount_in: float
    amount_out: float
    price: float  # token_out per token_in


class YieldListing(BaseModel):
    venue: str
    token: str
    apy: float  # percent
    tvl_usd: Optional[float] = None
    simulated: bool = False  # venue cannot SUPPLY on-chain


class TokenPrice(BaseModel):
    token: str
    price_usd: float
    source: str


class FundingRate(BaseModel):
    symbol: str
    funding_rate_pct: float  # percent per 8h interval
    funding_time: Optional[datetime] = None
    mark_price: Optional[float] = None

    @property
    def annualized_pct(self) -> float:
        return self.funding_rate_pct * 3 * 365


class ArbOpportunity(BaseModel):
    """Cross-venue price dislocation; derived per scan, never persisted."""

    id: str
    token: str
    quote_token: str = "USDT"
    buy_venue: str
    buy_price: float
    sell_venue: str
    sell_price: float
    spread_bps: float
    estimated_profit_usd: float
    viable: bool
    detected_at: Optional[datetime] = None


class StrategyResult(BaseModel):
    """Outcome of a strategy operation.

    Business outcomes (risk rejection, insufficient balance, no opportunity)
    come back here with ``success=False``; precondition violations raise.
    """

    success: bool
    message: str
    error: Optional[str] = None  # error code, e.g. "RiskRejected"
    position_id: Optional[str] = None
    trade_ids: list[str] = Field(default_factory=list)
    tx_refs: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class RotationPlan(BaseModel):
    position_id: str
    current_venue: str
    current_apy: float
    target_venue: str
    target_apy: float
    improvement_bps: float
    net_benefit: str  # "+1.20% APY"
    estimated_gas_usd: float = 0.0


class DeltaNeutralBreakdown(BaseModel):
    position_id: str
    token: str
    spot_pnl_usd: float
    short_pnl_usd: float
    funding_earned_usd: float
    total_pnl_usd: float
    hours_held: float
    funding_intervals: int
    current_price: float
    funding_rate_pct: float


class PortfolioSummary(BaseModel):
    owner_id: str
    total_value_usd: float
    yield_earned_usd: float
    arb_profits_usd: float
    open_positions: int
    positions: list[dict[str, Any]] = Field(default_factory=list)


class SessionSummary(BaseModel):
    session_id: str
    owner_id: str
    status: str
    started_at: datetime
    expires_at: datetime
    max_loss_usd: float
    max_slippage_bps: int
    trades_count: int
    total_pnl_usd: float
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    time_remaining_seconds: float = 0.0
