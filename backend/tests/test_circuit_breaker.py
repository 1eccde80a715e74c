import sys
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import SOL_MINT, USDC_MINT
from models.database import ArbitrageAlert, ArbitrageRun, ArbitrageStrategy, Base, RunStatus
from services.alerts import list_alerts, raise_alert
from services.circuit_breaker import SafeModeCircuitBreaker, clear_safe_mode
from services.risk_ledger import record_trade
from services.system_state import apply_state_transition, read_settings_snapshot


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "circuit_breaker.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


async def _seed(session: AsyncSession, *, estimated: int, actual, max_daily_loss: int = 0):
    strategy = ArbitrageStrategy(
        id="strat-1",
        name="sol-usdc",
        token_in=SOL_MINT,
        token_out=USDC_MINT,
        trade_amount=100_000_000,
        max_daily_loss=max_daily_loss,
    )
    run = ArbitrageRun(
        id="run-1",
        strategy_id="strat-1",
        status=RunStatus.EXECUTED.value,
        estimated_profit=estimated,
        actual_profit=actual,
        details={},
    )
    session.add_all([strategy, run])
    await session.commit()
    return strategy, run


def test_divergence_needs_both_ratio_and_absolute_shortfall():
    breaker = SafeModeCircuitBreaker(divergence_ratio=0.5, min_divergence_delta=1_000_000)

    assert breaker.divergence_reason(4_000_000, 1_000_000) is not None
    assert breaker.divergence_reason(4_000_000, 2_000_000) is None
    assert breaker.divergence_reason(1_500_000, 600_000) is None
    assert breaker.divergence_reason(4_000_000, None) is None
    assert breaker.divergence_reason(0, -5_000_000) is None


@pytest.mark.asyncio
async def test_divergent_run_trips_safe_mode_once(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        breaker = SafeModeCircuitBreaker(divergence_ratio=0.5, min_divergence_delta=1_000_000)
        async with session_factory() as session:
            strategy, run = await _seed(session, estimated=5_000_000, actual=500_000)
            first = await breaker.evaluate_run(session, run, strategy)
            second = await breaker.evaluate_run(session, run, strategy)
            snapshot = await read_settings_snapshot(session)
            tripped_alerts = (
                await session.execute(select(ArbitrageAlert).where(ArbitrageAlert.alert_type == "SAFE_MODE_TRIPPED"))
            ).scalars().all()

        assert first.tripped is True
        assert first.newly_tripped is True
        assert second.tripped is True
        assert second.newly_tripped is False
        assert snapshot.safe_mode_enabled is True
        assert "realized 500000 vs estimated 5000000" in snapshot.safe_mode_reason
        assert len(tripped_alerts) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_daily_loss_caps_trip_safe_mode(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        breaker = SafeModeCircuitBreaker()
        async with session_factory() as session:
            strategy, run = await _seed(session, estimated=100_000, actual=-600_000, max_daily_loss=500_000)
            await record_trade(session, "strat-1", -600_000)
            verdict = await breaker.evaluate_run(session, run, strategy)

        assert verdict.tripped is True
        assert verdict.reasons == ["Strategy sol-usdc daily loss 600000 exceeds cap 500000"]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_global_loss_cap_trips_safe_mode(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        breaker = SafeModeCircuitBreaker()
        async with session_factory() as session:
            await apply_state_transition(session, "update_settings", max_global_daily_loss=300_000)
            strategy, run = await _seed(session, estimated=100_000, actual=-300_000)
            await record_trade(session, "strat-1", -300_000)
            verdict = await breaker.evaluate_run(session, run, strategy)

        assert verdict.reasons == ["Global daily loss 300000 reached cap 300000"]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_healthy_run_leaves_safe_mode_off(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        breaker = SafeModeCircuitBreaker()
        async with session_factory() as session:
            strategy, run = await _seed(session, estimated=1_493_000, actual=1_995_000)
            verdict = await breaker.evaluate_run(session, run, strategy)
            snapshot = await read_settings_snapshot(session)

        assert verdict.tripped is False
        assert snapshot.safe_mode_enabled is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_clear_requires_operator_and_acknowledges_trip_alerts(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        breaker = SafeModeCircuitBreaker()
        async with session_factory() as session:
            await breaker.trip(session, "manual test trip")
            await raise_alert(session, "PROFIT_DIVERGENCE", "drift on run-1")

            with pytest.raises(ValueError, match="operator is required"):
                await clear_safe_mode(session, "")
            result = await clear_safe_mode(session, "ops@desk")
            open_alerts = await list_alerts(session)
            snapshot = await read_settings_snapshot(session)

        assert result["cleared"] is True
        assert result["acknowledged_alerts"] == 2
        assert open_alerts == []
        assert snapshot.safe_mode_enabled is False
    finally:
        await engine.dispose()
