from .strategy import (
    AlertCategory,
    ArbOpportunity,
    DeltaNeutralBreakdown,
    FundingRate,
    PortfolioSummary,
    PriceQuote,
    RiskAction,
    RiskConfig,
    RotationPlan,
    SessionSummary,
    StrategyResult,
    TokenPrice,
    YieldListing,
)

__all__ = [
    "AlertCategory",
    "ArbOpportunity",
    "DeltaNeutralBreakdown",
    "FundingRate",
    "PortfolioSummary",
    "PriceQuote",
    "RiskAction",
    "RiskConfig",
    "RotationPlan",
    "SessionSummary",
    "StrategyResult",
    "TokenPrice",
    "YieldListing",
]
