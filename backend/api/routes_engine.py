"""
Strategy Engine API Routes

REST front-end over the strategy engine: market data, yield, swaps, arbitrage,
delta-neutral, auto-arb sessions, risk settings, alerts and portfolio.
Every handler resolves the engine from ``request.app.state.engine``.
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from models.strategy import StrategyResult
from services.errors import EngineError, InvalidState, NotFound, ValidationError
from utils.logger import api_logger as logger

router = APIRouter(prefix="/engine", tags=["Strategy Engine"])


# ==================== REQUEST MODELS ====================


class RegisterOwnerRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    telegram_chat_id: Optional[str] = None


class YieldDepositRequest(BaseModel):
    token: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    venue: Optional[str] = Field(default=None, description="Force a venue instead of the best APY")


class YieldRotateRequest(BaseModel):
    position_id: str
    min_improvement_bps: Optional[float] = Field(default=None, ge=0)


class SwapRequest(BaseModel):
    from_token: str = Field(..., min_length=1)
    to_token: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    venue: Optional[str] = None
    max_slippage_bps: Optional[float] = Field(default=None, ge=0, le=10000)


class ArbExecuteRequest(BaseModel):
    opportunity_id: Optional[str] = None
    max_slippage_bps: Optional[float] = Field(default=None, ge=0, le=10000)


class DeltaOpenRequest(BaseModel):
    token: str = Field(..., min_length=1)
    notional_usd: float = Field(..., gt=0)
    max_funding_rate: Optional[float] = Field(default=None, gt=0)


class DeltaCloseRequest(BaseModel):
    position_id: str


class RiskUpdateRequest(BaseModel):
    max_position_usd: Optional[float] = Field(default=None, ge=0)
    max_total_exposure_usd: Optional[float] = Field(default=None, ge=0)
    max_slippage_bps: Optional[int] = Field(default=None, ge=0)
    allowed_venues: Optional[list[str]] = None
    max_concurrent_delta_neutral_positions: Optional[int] = Field(default=None, ge=0)


class AlertRequest(BaseModel):
    category: str
    active: bool = True
    threshold: Optional[float] = None


class SessionStartRequest(BaseModel):
    duration_hours: float = Field(..., gt=0, le=24 * 30)
    max_loss_usd: float = Field(..., gt=0)
    max_slippage_bps: Optional[int] = Field(default=None, ge=0, le=10000)


class MarkReadRequest(BaseModel):
    notification_ids: Optional[list[str]] = None


class TransferRequest(BaseModel):
    token: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    to_address: str = Field(..., min_length=1)


# ==================== HELPERS ====================


def _engine(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Strategy engine not initialized")
    return engine


def _status_for(exc: EngineError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, InvalidState):
        return 409
    return 400


async def _call(coro) -> Any:
    try:
        return await coro
    except EngineError as exc:
        logger.info("Engine request rejected", code=exc.code, error=exc.message)
        raise HTTPException(status_code=_status_for(exc), detail={"code": exc.code, "message": exc.message})


def _result(result: StrategyResult) -> dict:
    return result.model_dump()


# ==================== OWNERS ====================


@router.post("/owners")
async def register_owner(request: Request, body: RegisterOwnerRequest):
    return await _call(_engine(request).register_owner(body.owner_id, body.telegram_chat_id))


# ==================== YIELD ====================


@router.post("/owners/{owner_id}/yield/deposit")
async def yield_deposit(request: Request, owner_id: str, body: YieldDepositRequest):
    engine = _engine(request)
    return _result(await _call(engine.yield_deposit(owner_id, body.token, body.amount, body.venue)))


@router.post("/owners/{owner_id}/yield/rotate")
async def yield_rotate(request: Request, owner_id: str, body: YieldRotateRequest):
    engine = _engine(request)
    return _result(await _call(engine.yield_rotate(owner_id, body.position_id, body.min_improvement_bps)))


@router.get("/positions/{position_id}/rotation")
async def check_rotation(
    request: Request, position_id: str, min_improvement_bps: Optional[float] = Query(default=None, ge=0)
):
    plan = await _call(_engine(request).check_rotation(position_id, min_improvement_bps))
    return {"should_rotate": plan is not None, "plan": plan.model_dump() if plan else None}


@router.get("/yield/{token}")
async def yield_listings(request: Request, token: str):
    listings = await _call(_engine(request).yields.listings(token))
    return {"token": token.upper(), "listings": [l.model_dump() for l in listings]}


# ==================== SWAPS ====================


@router.post("/owners/{owner_id}/swap")
async def swap_tokens(request: Request, owner_id: str, body: SwapRequest):
    engine = _engine(request)
    return _result(
        await _call(
            engine.swap_tokens(
                owner_id, body.from_token, body.to_token, body.amount, body.venue, body.max_slippage_bps
            )
        )
    )


# ==================== MARKETS ====================


@router.get("/markets/yields")
async def market_yields(request: Request, token: Optional[str] = None):
    return {"yields": await _call(_engine(request).market_yields(token))}


@router.get("/markets/prices")
async def market_prices(request: Request, token: Optional[str] = None, quote_token: Optional[str] = None):
    return await _call(_engine(request).market_prices(token, quote_token))


@router.get("/markets/funding")
async def market_funding(request: Request, token: Optional[list[str]] = Query(default=None)):
    return {"rates": await _call(_engine(request).funding_rates(token))}


@router.get("/markets/history")
async def market_history(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    token: Optional[str] = None,
):
    snapshots = await _call(_engine(request).market_history(limit, token))
    return {"count": len(snapshots), "snapshots": snapshots}


@router.get("/markets/scan")
async def scan_markets(request: Request, category: str = "all"):
    return await _call(_engine(request).scan_markets(category))


# ==================== ARBITRAGE ====================


@router.get("/arb/opportunities")
async def arb_scan(
    request: Request,
    token: Optional[str] = None,
    quote_token: Optional[str] = None,
    amount: Optional[float] = Query(default=None, gt=0),
):
    opportunities = await _call(_engine(request).arb_scan(token, quote_token, amount))
    return {"count": len(opportunities), "opportunities": [o.model_dump() for o in opportunities]}


@router.post("/owners/{owner_id}/arb/execute")
async def arb_execute(request: Request, owner_id: str, body: ArbExecuteRequest):
    engine = _engine(request)
    return _result(await _call(engine.arb_execute(owner_id, body.opportunity_id, body.max_slippage_bps)))


@router.get("/owners/{owner_id}/arb/executions")
async def arb_executions(request: Request, owner_id: str, limit: int = Query(default=50, ge=1, le=500)):
    executions = await _call(_engine(request).arb_executions(owner_id, limit))
    return {"count": len(executions), "executions": executions}


# ==================== TRANSFERS ====================


@router.post("/owners/{owner_id}/transfer")
async def send_tokens(request: Request, owner_id: str, body: TransferRequest):
    engine = _engine(request)
    return _result(await _call(engine.send_tokens(owner_id, body.token, body.amount, body.to_address)))


# ==================== DELTA-NEUTRAL ====================


@router.post("/owners/{owner_id}/delta-neutral/open")
async def delta_neutral_open(request: Request, owner_id: str, body: DeltaOpenRequest):
    engine = _engine(request)
    return _result(
        await _call(engine.delta_neutral_open(owner_id, body.token, body.notional_usd, body.max_funding_rate))
    )


@router.post("/owners/{owner_id}/delta-neutral/close")
async def delta_neutral_close(request: Request, owner_id: str, body: DeltaCloseRequest):
    return _result(await _call(_engine(request).delta_neutral_close(owner_id, body.position_id)))


@router.get("/positions/{position_id}/pnl")
async def delta_neutral_pnl(request: Request, position_id: str):
    breakdown = await _call(_engine(request).delta_neutral_pnl(position_id))
    return breakdown.model_dump()


# ==================== SESSIONS ====================


@router.post("/owners/{owner_id}/sessions")
async def start_session(request: Request, owner_id: str, body: SessionStartRequest):
    engine = _engine(request)
    summary = await _call(
        engine.start_session(owner_id, body.duration_hours, body.max_loss_usd, body.max_slippage_bps)
    )
    return summary.model_dump()


@router.delete("/owners/{owner_id}/sessions")
async def stop_session(request: Request, owner_id: str):
    return (await _call(_engine(request).stop_session(owner_id))).model_dump()


@router.get("/owners/{owner_id}/sessions")
async def session_status(request: Request, owner_id: str):
    return (await _call(_engine(request).session_status(owner_id))).model_dump()


# ==================== RISK ====================


@router.get("/owners/{owner_id}/risk")
async def get_risk_config(request: Request, owner_id: str):
    return (await _call(_engine(request).get_risk_config(owner_id))).model_dump()


@router.put("/owners/{owner_id}/risk")
async def configure_risk(request: Request, owner_id: str, body: RiskUpdateRequest):
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=422, detail="No risk settings given")
    return (await _call(_engine(request).configure_risk(owner_id, updates))).model_dump()


# ==================== ALERTS ====================


@router.put("/owners/{owner_id}/alerts")
async def set_alert(request: Request, owner_id: str, body: AlertRequest):
    return await _call(_engine(request).set_alert(owner_id, body.category, body.active, body.threshold))


@router.get("/owners/{owner_id}/alerts")
async def get_alerts(request: Request, owner_id: str):
    return {"alerts": await _call(_engine(request).get_alerts(owner_id))}


@router.get("/owners/{owner_id}/notifications")
async def notifications(request: Request, owner_id: str, limit: int = Query(default=50, ge=1, le=500)):
    return {"notifications": await _call(_engine(request).notifications(owner_id, limit))}


@router.post("/owners/{owner_id}/notifications/read")
async def mark_notifications_read(request: Request, owner_id: str, body: MarkReadRequest):
    marked = await _call(_engine(request).mark_notifications_read(owner_id, body.notification_ids))
    return {"marked": marked}


# ==================== PORTFOLIO ====================


@router.get("/owners/{owner_id}/portfolio")
async def portfolio(request: Request, owner_id: str):
    return (await _call(_engine(request).portfolio(owner_id))).model_dump()


@router.get("/owners/{owner_id}/trades")
async def trade_history(
    request: Request,
    owner_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    kind: Optional[str] = None,
):
    trades = await _call(_engine(request).trade_history(owner_id, limit, kind))
    return {"count": len(trades), "trades": trades}


# ==================== STATUS ====================


@router.get("/status")
async def engine_status(request: Request):
    engine = _engine(request)
    return {
        "venues": engine.registry.names(),
        "scheduler": engine.scheduler.get_status(),
        "alerts": engine.alerts.get_status(),
    }
