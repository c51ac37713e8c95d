from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from config import settings
from models.database import AsyncSessionLocal, OwnerAccount, PositionKind, PositionStatus
from models.strategy import RiskAction, RiskConfig
from services.errors import NotFound, ValidationError
from services.position_ledger import PositionLedger
from utils.logger import get_logger

logger = get_logger("risk_gate")


@dataclass
class RiskCheck:
    key: str
    passed: bool
    detail: str


@dataclass
class RiskDecision:
    allowed: bool
    reason: Optional[str] = None
    checks: list[RiskCheck] = field(default_factory=list)


def default_risk_config() -> RiskConfig:
    return RiskConfig(
        max_position_usd=settings.RISK_MAX_POSITION_USD,
        max_total_exposure_usd=settings.RISK_MAX_TOTAL_EXPOSURE_USD,
        max_slippage_bps=settings.RISK_MAX_SLIPPAGE_BPS,
        allowed_venues=[],
        max_concurrent_delta_neutral_positions=settings.RISK_MAX_CONCURRENT_DELTA_NEUTRAL,
    )


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _fmt_bps(value: float) -> str:
    return f"{value:g}"


def position_exposure_usd(position: Any) -> float:
    """Marked value when refreshed, otherwise amount x entry price."""
    current = getattr(position, "current_value_usd", None)
    if current:
        return float(current)
    return _safe_float(getattr(position, "amount", 0)) * _safe_float(getattr(position, "entry_price", 0))


def evaluate_risk(config: RiskConfig, open_positions: Iterable[Any], action: RiskAction) -> RiskDecision:
    """Run the ordered limit checks; the first failure decides.

    Pure: reads only ``config``, the owner's open positions and ``action``.
    """
    positions = list(open_positions)
    checks: list[RiskCheck] = []

    def reject(key: str, reason: str) -> RiskDecision:
        checks.append(RiskCheck(key=key, passed=False, detail=reason))
        return RiskDecision(allowed=False, reason=reason, checks=checks)

    amount = float(action.amount_usd)
    if amount > config.max_position_usd:
        return reject(
            "max_position",
            f"Position size ${amount:.2f} exceeds max ${config.max_position_usd:.2f}. "
            "Update risk settings to increase.",
        )
    checks.append(RiskCheck("max_position", True, f"size={amount:.2f} max={config.max_position_usd:.2f}"))

    exposure = sum(position_exposure_usd(p) for p in positions)
    projected = exposure + amount
    if projected > config.max_total_exposure_usd:
        return reject(
            "total_exposure",
            f"Total exposure would be ${projected:.2f}, exceeding max ${config.max_total_exposure_usd:.2f}.",
        )
    checks.append(RiskCheck("total_exposure", True, f"projected={projected:.2f}"))

    if action.slippage_bps is not None and action.slippage_bps > config.max_slippage_bps:
        return reject(
            "max_slippage",
            f"Slippage {_fmt_bps(action.slippage_bps)} bps exceeds max {_fmt_bps(config.max_slippage_bps)} bps.",
        )
    checks.append(RiskCheck("max_slippage", True, f"slippage={action.slippage_bps}"))

    if config.allowed_venues and action.venue:
        allowed = {v.lower() for v in config.allowed_venues}
        if action.venue.lower() not in allowed:
            return reject(
                "allowed_venues",
                f'Venue "{action.venue}" is not in your allowed list: {", ".join(config.allowed_venues)}.',
            )
    checks.append(RiskCheck("allowed_venues", True, f"venue={action.venue}"))

    if action.kind == PositionKind.DELTA_NEUTRAL.value:
        open_delta = sum(
            1
            for p in positions
            if getattr(p, "kind", None) == PositionKind.DELTA_NEUTRAL
            and getattr(p, "status", PositionStatus.OPEN) == PositionStatus.OPEN
        )
        limit = config.max_concurrent_delta_neutral_positions
        if open_delta >= limit:
            return reject(
                "delta_neutral_count",
                f"Already have {open_delta} delta-neutral positions (max: {limit}).",
            )
        checks.append(RiskCheck("delta_neutral_count", True, f"open={open_delta} max={limit}"))

    return RiskDecision(allowed=True, checks=checks)


class RiskGate:
    """Per-owner limits stored as overrides on the owner row."""

    def __init__(self, ledger: PositionLedger, session_factory=None):
        self._ledger = ledger
        self._session_factory = session_factory or AsyncSessionLocal

    async def get_config(self, owner_id: str) -> RiskConfig:
        async with self._session_factory() as session:
            owner = await session.get(OwnerAccount, owner_id)
            stored = dict(owner.risk_config or {}) if owner else {}
        merged = {**default_risk_config().model_dump(), **stored}
        return RiskConfig(**merged)

    async def configure(self, owner_id: str, updates: dict[str, Any]) -> RiskConfig:
        unknown = set(updates) - set(RiskConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown risk settings: {', '.join(sorted(unknown))}")
        for key, value in updates.items():
            if key == "allowed_venues":
                if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
                    raise ValidationError("allowed_venues must be a list of venue names")
            elif _safe_float(value, -1.0) < 0:
                raise ValidationError(f"{key} must be a non-negative number")

        async with self._session_factory() as session:
            owner = await session.get(OwnerAccount, owner_id)
            if owner is None:
                raise NotFound(f"Unknown owner {owner_id}")
            current = {**default_risk_config().model_dump(), **(owner.risk_config or {})}
            merged = RiskConfig(**{**current, **updates})
            owner.risk_config = merged.model_dump()
            await session.commit()

        logger.info("Risk config updated", owner_id=owner_id, config=merged.model_dump())
        return merged

    async def check(self, owner_id: str, action: RiskAction) -> RiskDecision:
        config = await self.get_config(owner_id)
        open_positions = await self._ledger.list_open(owner_id=owner_id)
        decision = evaluate_risk(config, open_positions, action)
        if not decision.allowed:
            logger.info("Risk rejected", owner_id=owner_id, action=action.kind, reason=decision.reason)
        return decision
