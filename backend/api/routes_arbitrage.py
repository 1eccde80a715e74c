"""
Arbitrage API Routes

Operator endpoints for system settings, safe mode, alerts, strategies,
runs, stage triggers and quote debugging.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import (
    ArbitrageRun,
    ArbitrageStrategy,
    AutomationLog,
    ChainType,
    get_db_session,
)
from services import alerts as alert_service
from services.atomic_executor import RunNotFound, SafeModeActive, StrategyDisabled, atomic_executor
from services.chain import get_quote_source
from services.circuit_breaker import clear_safe_mode
from services.jupiter_client import QuoteSourceError, jupiter_client
from services.risk_ledger import get_strategy_usage
from services.scanner import describe_leg, validate_strategy_config
from services.system_state import (
    InvalidTransitionError,
    StaleSettingsError,
    apply_state_transition,
    read_settings_snapshot,
    read_system_settings,
)
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import validate_bps
from workers import arbitrage_worker

logger = get_logger(__name__)
router = APIRouter(prefix="/arbitrage", tags=["Arbitrage"])


# ==================== REQUEST MODELS ====================


class ChainLimitsRequest(BaseModel):
    min_fee_payer_balance: Optional[int] = Field(default=None, ge=0)
    fee_payer_top_up: Optional[int] = Field(default=None, ge=0)
    ops_wallet_reserve: Optional[int] = Field(default=None, ge=0)


class SettingsUpdateRequest(BaseModel):
    expected_version: Optional[int] = Field(default=None, description="Reject the write if settings moved on")
    operator: Optional[str] = None
    auto_arbitrage_enabled: Optional[bool] = None
    auto_flash_loans_enabled: Optional[bool] = None
    safe_mode_enabled: Optional[bool] = None
    max_global_daily_loss: Optional[int] = Field(default=None, ge=0)
    max_global_trades_per_day: Optional[int] = Field(default=None, ge=0)
    is_mainnet_mode: Optional[bool] = None
    chain_limits: Optional[dict[str, ChainLimitsRequest]] = None


class OperatorRequest(BaseModel):
    operator: str = Field(min_length=1)


class StrategyCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    chain: str = ChainType.SOLANA.value
    network: str = "devnet"
    token_in: str
    token_out: str
    venue_a: Optional[str] = None
    venue_b: Optional[str] = None
    trade_amount: int = Field(gt=0)
    slippage_bps: int = Field(default=50, ge=0)
    is_enabled: bool = True
    is_auto_enabled: bool = False
    is_for_fee_payer_refill: bool = False
    is_for_ops_refill: bool = False
    min_expected_profit: int = Field(default=0, ge=0)
    min_profit_to_gas_ratio: float = Field(default=0.0, ge=0)
    max_daily_loss: int = Field(default=0, ge=0)
    max_trades_per_day: int = Field(default=0, ge=0)
    max_trade_notional: Optional[int] = Field(default=None, gt=0)
    use_flash_loan: bool = False
    flash_loan_provider: Optional[str] = None
    flash_loan_token: Optional[str] = None
    flash_loan_amount: Optional[int] = Field(default=None, gt=0)
    flash_loan_fee_bps: Optional[int] = Field(default=None, ge=0)


class StrategyUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    network: Optional[str] = None
    token_in: Optional[str] = None
    token_out: Optional[str] = None
    venue_a: Optional[str] = None
    venue_b: Optional[str] = None
    trade_amount: Optional[int] = Field(default=None, gt=0)
    slippage_bps: Optional[int] = Field(default=None, ge=0)
    is_for_fee_payer_refill: Optional[bool] = None
    is_for_ops_refill: Optional[bool] = None
    min_expected_profit: Optional[int] = Field(default=None, ge=0)
    min_profit_to_gas_ratio: Optional[float] = Field(default=None, ge=0)
    max_daily_loss: Optional[int] = Field(default=None, ge=0)
    max_trades_per_day: Optional[int] = Field(default=None, ge=0)
    max_trade_notional: Optional[int] = Field(default=None, gt=0)
    use_flash_loan: Optional[bool] = None
    flash_loan_provider: Optional[str] = None
    flash_loan_token: Optional[str] = None
    flash_loan_amount: Optional[int] = Field(default=None, gt=0)
    flash_loan_fee_bps: Optional[int] = Field(default=None, ge=0)


class StrategyToggleRequest(BaseModel):
    is_enabled: Optional[bool] = None
    is_auto_enabled: Optional[bool] = None


class DebugQuoteRequest(BaseModel):
    chain: str = ChainType.SOLANA.value
    network: str = "devnet"
    input_mint: str
    output_mint: str
    amount: int = Field(gt=0)
    slippage_bps: Optional[int] = Field(default=None, ge=0)
    venue: Optional[str] = None
    leg: Optional[str] = None


# ==================== HELPERS ====================


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def _serialize_strategy(row: ArbitrageStrategy) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "chain": row.chain,
        "network": row.network,
        "token_in": row.token_in,
        "token_out": row.token_out,
        "venue_a": row.venue_a,
        "venue_b": row.venue_b,
        "trade_amount": row.trade_amount,
        "slippage_bps": row.slippage_bps,
        "is_enabled": bool(row.is_enabled),
        "is_auto_enabled": bool(row.is_auto_enabled),
        "is_for_fee_payer_refill": bool(row.is_for_fee_payer_refill),
        "is_for_ops_refill": bool(row.is_for_ops_refill),
        "min_expected_profit": row.min_expected_profit,
        "min_profit_to_gas_ratio": row.min_profit_to_gas_ratio,
        "max_daily_loss": row.max_daily_loss,
        "max_trades_per_day": row.max_trades_per_day,
        "max_trade_notional": row.max_trade_notional,
        "use_flash_loan": bool(row.use_flash_loan),
        "flash_loan_provider": row.flash_loan_provider,
        "flash_loan_token": row.flash_loan_token,
        "flash_loan_amount": row.flash_loan_amount,
        "flash_loan_fee_bps": row.flash_loan_fee_bps,
        "created_at": _to_iso(row.created_at),
        "updated_at": _to_iso(row.updated_at),
    }


def _serialize_run(row: ArbitrageRun, include_details: bool = False) -> dict[str, Any]:
    payload = {
        "id": row.id,
        "strategy_id": row.strategy_id,
        "chain": row.chain,
        "status": row.status,
        "run_type": row.run_type,
        "purpose": row.purpose,
        "started_at": _to_iso(row.started_at),
        "finished_at": _to_iso(row.finished_at),
        "input_amount": row.input_amount,
        "estimated_profit": row.estimated_profit,
        "estimated_gas_cost": row.estimated_gas_cost,
        "actual_profit": row.actual_profit,
        "profit_drift": row.profit_drift,
        "accounting_basis": row.accounting_basis,
        "is_fallback_quote": bool(row.is_fallback_quote),
        "used_flash_loan": bool(row.used_flash_loan),
        "approved_for_auto_execution": row.approved_for_auto_execution,
        "decision_reason": row.decision_reason,
        "decided_at": _to_iso(row.decided_at),
        "auto_executed": bool(row.auto_executed),
        "tx_signature": row.tx_signature,
        "error_message": row.error_message,
    }
    if include_details:
        payload["details"] = row.details or {}
    return payload


def _serialize_log(row: AutomationLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "trigger_type": row.trigger_type,
        "cycle_started_at": _to_iso(row.cycle_started_at),
        "cycle_finished_at": _to_iso(row.cycle_finished_at),
        "scan_result": row.scan_result,
        "decision_result": row.decision_result,
        "execution_result": row.execution_result,
        "wallet_check_result": row.wallet_check_result,
        "overall_status": row.overall_status,
        "error_message": row.error_message,
    }


def _check_strategy(strategy: ArbitrageStrategy) -> None:
    errors = validate_strategy_config(strategy)
    try:
        validate_bps(int(strategy.slippage_bps), "slippage_bps")
        if strategy.flash_loan_fee_bps is not None:
            validate_bps(int(strategy.flash_loan_fee_bps), "flash_loan_fee_bps")
    except ValueError as exc:
        errors.append(str(exc))
    if errors:
        raise HTTPException(status_code=422, detail=errors)


async def _get_strategy_or_404(session: AsyncSession, strategy_id: str) -> ArbitrageStrategy:
    strategy = await session.get(ArbitrageStrategy, strategy_id)
    if strategy is None:
        raise HTTPException(status_code=404, detail=f"Strategy {strategy_id} not found")
    return strategy


# ==================== SETTINGS & SAFE MODE ====================


@router.get("/settings")
async def get_settings(session: AsyncSession = Depends(get_db_session)):
    return await read_system_settings(session)


@router.put("/settings")
async def update_settings(
    request: SettingsUpdateRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Update settings. ``safe_mode_enabled`` trips or clears safe mode."""
    fields = request.model_dump(
        exclude_none=True,
        exclude={"expected_version", "operator", "safe_mode_enabled"},
    )
    try:
        if fields:
            await apply_state_transition(
                session,
                "update_settings",
                expected_version=request.expected_version,
                operator=request.operator,
                **fields,
            )
        if request.safe_mode_enabled is True:
            await apply_state_transition(
                session,
                "trip_safe_mode",
                operator=request.operator,
                reason="Manually enabled by operator",
            )
        elif request.safe_mode_enabled is False:
            await clear_safe_mode(session, request.operator or "")
    except StaleSettingsError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return await read_system_settings(session)


@router.post("/settings/safe-mode/clear")
async def clear_safe_mode_endpoint(
    request: OperatorRequest,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await clear_safe_mode(session, request.operator)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


# ==================== ALERTS ====================


@router.get("/alerts")
async def get_alerts(
    include_acknowledged: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db_session),
):
    return {"alerts": await alert_service.list_alerts(session, include_acknowledged=include_acknowledged, limit=limit)}


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    request: OperatorRequest,
    session: AsyncSession = Depends(get_db_session),
):
    alert = await alert_service.acknowledge_alert(session, alert_id, request.operator)
    if alert is None:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return alert


# ==================== STRATEGIES ====================


@router.get("/strategies")
async def list_strategies(
    chain: Optional[str] = Query(default=None),
    enabled_only: bool = Query(default=False),
    session: AsyncSession = Depends(get_db_session),
):
    query = select(ArbitrageStrategy).order_by(ArbitrageStrategy.created_at.asc())
    if chain:
        query = query.where(ArbitrageStrategy.chain == chain.upper())
    if enabled_only:
        query = query.where(ArbitrageStrategy.is_enabled == True)  # noqa: E712
    rows = (await session.execute(query)).scalars().all()
    return {"strategies": [_serialize_strategy(row) for row in rows]}


@router.post("/strategies", status_code=201)
async def create_strategy(
    request: StrategyCreateRequest,
    session: AsyncSession = Depends(get_db_session),
):
    values = request.model_dump()
    values["chain"] = values["chain"].upper()
    values["network"] = values["network"].lower()
    now = utcnow()
    strategy = ArbitrageStrategy(id=uuid.uuid4().hex, created_at=now, updated_at=now, **values)
    _check_strategy(strategy)
    session.add(strategy)
    await session.commit()
    await session.refresh(strategy)
    logger.info("Strategy created", strategy_id=strategy.id, name=strategy.name, chain=strategy.chain)
    return _serialize_strategy(strategy)


@router.get("/strategies/{strategy_id}")
async def get_strategy(strategy_id: str, session: AsyncSession = Depends(get_db_session)):
    strategy = await _get_strategy_or_404(session, strategy_id)
    usage = await get_strategy_usage(session, strategy_id)
    return {**_serialize_strategy(strategy), "usage_today": usage.to_dict()}


@router.put("/strategies/{strategy_id}")
async def update_strategy(
    strategy_id: str,
    request: StrategyUpdateRequest,
    session: AsyncSession = Depends(get_db_session),
):
    strategy = await _get_strategy_or_404(session, strategy_id)
    for key, value in request.model_dump(exclude_unset=True).items():
        if key == "network" and value:
            value = value.lower()
        setattr(strategy, key, value)
    _check_strategy(strategy)
    strategy.updated_at = utcnow()
    await session.commit()
    await session.refresh(strategy)
    return _serialize_strategy(strategy)


@router.post("/strategies/{strategy_id}/toggle")
async def toggle_strategy(
    strategy_id: str,
    request: StrategyToggleRequest,
    session: AsyncSession = Depends(get_db_session),
):
    strategy = await _get_strategy_or_404(session, strategy_id)
    if request.is_enabled is not None:
        strategy.is_enabled = request.is_enabled
    if request.is_auto_enabled is not None:
        strategy.is_auto_enabled = request.is_auto_enabled
    strategy.updated_at = utcnow()
    await session.commit()
    await session.refresh(strategy)
    return _serialize_strategy(strategy)


@router.delete("/strategies/{strategy_id}")
async def delete_strategy(strategy_id: str, session: AsyncSession = Depends(get_db_session)):
    """Delete a strategy with no runs; one with history is disabled instead."""
    strategy = await _get_strategy_or_404(session, strategy_id)
    run_count = (
        await session.execute(select(func.count(ArbitrageRun.id)).where(ArbitrageRun.strategy_id == strategy_id))
    ).scalar_one()
    if run_count:
        strategy.is_enabled = False
        strategy.is_auto_enabled = False
        strategy.updated_at = utcnow()
        await session.commit()
        return {"id": strategy_id, "deleted": False, "disabled": True, "run_count": run_count}
    await session.delete(strategy)
    await session.commit()
    return {"id": strategy_id, "deleted": True, "disabled": False, "run_count": 0}


@router.post("/strategies/{strategy_id}/execute")
async def execute_strategy(strategy_id: str):
    """Scan one strategy now and execute the fresh run."""
    try:
        outcome = await atomic_executor.execute_strategy_now(strategy_id)
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (SafeModeActive, StrategyDisabled) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return outcome.to_dict()


# ==================== RUNS ====================


@router.get("/runs")
async def list_runs(
    strategy_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    chain: Optional[str] = Query(default=None),
    approved: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    query = select(ArbitrageRun)
    count_query = select(func.count(ArbitrageRun.id))
    filters = []
    if strategy_id:
        filters.append(ArbitrageRun.strategy_id == strategy_id)
    if status:
        filters.append(ArbitrageRun.status == status.upper())
    if chain:
        filters.append(ArbitrageRun.chain == chain.upper())
    if approved is not None:
        filters.append(ArbitrageRun.approved_for_auto_execution == approved)
    if filters:
        query = query.where(*filters)
        count_query = count_query.where(*filters)
    total = (await session.execute(count_query)).scalar_one()
    rows = (
        await session.execute(query.order_by(ArbitrageRun.started_at.desc()).offset(offset).limit(limit))
    ).scalars().all()
    return {
        "total": total,
        "offset": offset,
        "limit": limit,
        "runs": [_serialize_run(row) for row in rows],
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str, session: AsyncSession = Depends(get_db_session)):
    run = await session.get(ArbitrageRun, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return _serialize_run(run, include_details=True)


# ==================== STAGE TRIGGERS ====================


@router.post("/stages/scan")
async def trigger_scan():
    return await arbitrage_worker.run_scan_stage()


@router.post("/stages/decide")
async def trigger_decision():
    return await arbitrage_worker.run_decision_stage()


@router.post("/stages/execute")
async def trigger_execution(
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    session: AsyncSession = Depends(get_db_session),
):
    snapshot = await read_settings_snapshot(session)
    if snapshot.safe_mode_enabled:
        raise HTTPException(status_code=409, detail=f"Safe mode enabled: {snapshot.safe_mode_reason}")
    return await arbitrage_worker.run_execution_stage(limit=limit)


@router.post("/stages/wallets")
async def trigger_wallets():
    return await arbitrage_worker.run_wallet_stage()


@router.post("/stages/cycle")
async def trigger_cycle():
    return await arbitrage_worker.run_cycle("manual")


@router.get("/automation-logs")
async def list_automation_logs(
    limit: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
):
    rows = (
        await session.execute(select(AutomationLog).order_by(AutomationLog.cycle_started_at.desc()).limit(limit))
    ).scalars().all()
    return {"logs": [_serialize_log(row) for row in rows]}


# ==================== DEBUG ====================


@router.post("/debug-quote")
async def debug_quote(request: DebugQuoteRequest):
    """Fetch one quote leg and return it with any error verbatim."""
    logger.info(
        "Debug quote",
        chain=request.chain,
        leg=request.leg,
        input_mint=request.input_mint,
        output_mint=request.output_mint,
        amount=request.amount,
    )
    venues = [request.venue] if request.venue else None
    if request.chain.upper() == ChainType.SOLANA.value:
        source = jupiter_client
    else:
        try:
            source = get_quote_source(request.chain, request.network)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
    try:
        quote = await source.get_quote(
            request.input_mint,
            request.output_mint,
            request.amount,
            slippage_bps=request.slippage_bps,
            allowed_venues=venues,
        )
    except QuoteSourceError as exc:
        return {
            "success": False,
            "leg": request.leg,
            "error": str(exc),
            "status_code": exc.status_code,
            "cause": str(exc.cause) if exc.cause is not None else None,
        }
    described = describe_leg(quote)
    return {
        "success": not described.get("no_route", False),
        "leg": request.leg,
        "quote": described,
        "error": described.get("reason"),
    }
