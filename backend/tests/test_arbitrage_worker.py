import sys
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import SOL_MINT, USDC_MINT, new_address, profitable_round_trip
from models.database import ArbitrageStrategy, AutomationLog, Base
from services import scanner
from services.atomic_executor import AtomicExecutor
from services.circuit_breaker import SafeModeCircuitBreaker
from services.refill_dispatcher import RefillDispatcher
from services.system_state import apply_state_transition
from workers import arbitrage_worker


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "arbitrage_worker.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


async def _seed_strategy(session_factory) -> None:
    async with session_factory() as session:
        session.add(
            ArbitrageStrategy(
                id="strat-1",
                name="sol-usdc",
                token_in=SOL_MINT,
                token_out=USDC_MINT,
                trade_amount=100_000_000,
                is_enabled=True,
                is_auto_enabled=True,
                max_trades_per_day=10,
            )
        )
        await session.commit()


def _wire(monkeypatch, session_factory, fake_adapter) -> AtomicExecutor:
    owner = new_address()
    fake_adapter.native[owner] = 1_000_000_000

    def _on_submit(adapter, signer):
        adapter.native[signer] += 1_995_000

    fake_adapter.on_submit = _on_submit
    source = profitable_round_trip()
    monkeypatch.setattr(arbitrage_worker, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(scanner, "jupiter_client", source)
    return AtomicExecutor(
        session_factory,
        quote_source=source,
        breaker=SafeModeCircuitBreaker(),
        dispatcher=RefillDispatcher(session_factory),
        executor_secret=owner,
    )


@pytest.mark.asyncio
async def test_cycle_is_skipped_when_automation_is_off(tmp_path, monkeypatch, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        executor = _wire(monkeypatch, session_factory, fake_adapter)
        await _seed_strategy(session_factory)

        result = await arbitrage_worker.run_cycle("manual", executor=executor)

        async with session_factory() as session:
            log = await session.get(AutomationLog, result["log_id"])

        assert result["overall_status"] == "SKIPPED"
        assert log.overall_status == "SKIPPED"
        assert log.trigger_type == "manual"
        assert log.scan_result is None
        assert fake_adapter.submitted == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_full_cycle_scans_decides_and_executes(tmp_path, monkeypatch, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        executor = _wire(monkeypatch, session_factory, fake_adapter)
        await _seed_strategy(session_factory)
        async with session_factory() as session:
            await apply_state_transition(session, "update_settings", auto_arbitrage_enabled=True)

        result = await arbitrage_worker.run_cycle(executor=executor)

        async with session_factory() as session:
            log = await session.get(AutomationLog, result["log_id"])

        assert result["overall_status"] == "SUCCESS"
        assert result["scan"]["opportunities"] == 1
        assert result["decision"]["approved_count"] == 1
        assert result["execution"]["executed_count"] == 1
        assert result["execution"]["total_pnl"] == 1_995_000
        assert log.overall_status == "SUCCESS"
        assert log.cycle_finished_at is not None
        assert log.execution_result["executed_count"] == 1
        assert log.wallet_check_result["top_up"]["checked"] == 0
        assert len(fake_adapter.submitted) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_safe_mode_cycle_scans_but_never_executes(tmp_path, monkeypatch, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        executor = _wire(monkeypatch, session_factory, fake_adapter)
        await _seed_strategy(session_factory)
        async with session_factory() as session:
            await apply_state_transition(session, "update_settings", auto_arbitrage_enabled=True)
            await apply_state_transition(session, "trip_safe_mode", reason="drift")

        result = await arbitrage_worker.run_cycle(executor=executor)

        assert result["overall_status"] == "SUCCESS"
        assert result["scan"]["runs_created"] == 1
        assert result["decision"]["approved_count"] == 0
        assert result["execution"]["skipped"] is True
        assert fake_adapter.submitted == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_failing_stage_marks_cycle_partial(tmp_path, monkeypatch, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        executor = _wire(monkeypatch, session_factory, fake_adapter)
        async with session_factory() as session:
            await apply_state_transition(session, "update_settings", auto_arbitrage_enabled=True)

        async def _broken_wallet_stage(snapshot=None):
            raise RuntimeError("rpc unavailable")

        monkeypatch.setattr(arbitrage_worker, "run_wallet_stage", _broken_wallet_stage)

        result = await arbitrage_worker.run_cycle(executor=executor)

        async with session_factory() as session:
            log = await session.get(AutomationLog, result["log_id"])

        assert result["overall_status"] == "PARTIAL"
        assert result["error"] == "wallets: rpc unavailable"
        assert log.wallet_check_result == {"error": "rpc unavailable"}
        assert log.error_message == "wallets: rpc unavailable"
    finally:
        await engine.dispose()
