import sys
from pathlib import Path

import pytest
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import SOL_MINT, USDC_MINT, FakeQuoteSource, make_quote, profitable_round_trip
from api import routes_arbitrage
from models.database import ArbitrageRun, ArbitrageStrategy, Base, RunStatus
from services.atomic_executor import AtomicExecutor
from services.chain import register_quote_source
from services.circuit_breaker import SafeModeCircuitBreaker
from services.jupiter_client import QuoteSourceError
from services.refill_dispatcher import RefillDispatcher
from services.system_state import apply_state_transition


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "routes_arbitrage.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


def _create_request(**overrides) -> routes_arbitrage.StrategyCreateRequest:
    values = {
        "name": "sol-usdc",
        "chain": "solana",
        "network": "DEVNET",
        "token_in": SOL_MINT,
        "token_out": USDC_MINT,
        "trade_amount": 100_000_000,
    }
    values.update(overrides)
    return routes_arbitrage.StrategyCreateRequest(**values)


@pytest.mark.asyncio
async def test_settings_update_uses_version_guard(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            updated = await routes_arbitrage.update_settings(
                routes_arbitrage.SettingsUpdateRequest(
                    expected_version=1,
                    operator="ops",
                    auto_arbitrage_enabled=True,
                    chain_limits={"SOLANA": routes_arbitrage.ChainLimitsRequest(min_fee_payer_balance=60_000_000)},
                ),
                session=session,
            )
            with pytest.raises(HTTPException) as stale:
                await routes_arbitrage.update_settings(
                    routes_arbitrage.SettingsUpdateRequest(expected_version=1, auto_arbitrage_enabled=False),
                    session=session,
                )

        assert updated["version"] == 2
        assert updated["auto_arbitrage_enabled"] is True
        assert updated["chain_limits"]["SOLANA"]["min_fee_payer_balance"] == 60_000_000
        assert stale.value.status_code == 409
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_manual_safe_mode_toggle_needs_operator_to_clear(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            enabled = await routes_arbitrage.update_settings(
                routes_arbitrage.SettingsUpdateRequest(safe_mode_enabled=True, operator="ops"),
                session=session,
            )
            with pytest.raises(HTTPException) as missing_operator:
                await routes_arbitrage.update_settings(
                    routes_arbitrage.SettingsUpdateRequest(safe_mode_enabled=False),
                    session=session,
                )
            cleared = await routes_arbitrage.clear_safe_mode_endpoint(
                routes_arbitrage.OperatorRequest(operator="ops"),
                session=session,
            )

        assert enabled["safe_mode_enabled"] is True
        assert enabled["safe_mode_reason"] == "Manually enabled by operator"
        assert missing_operator.value.status_code == 422
        assert cleared["cleared"] is True
        assert cleared["acknowledged_alerts"] == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_strategy_crud_and_validation(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            created = await routes_arbitrage.create_strategy(_create_request(venue_a="Orca"), session=session)
            with pytest.raises(HTTPException) as invalid:
                await routes_arbitrage.create_strategy(
                    _create_request(token_out=SOL_MINT, slippage_bps=20_000),
                    session=session,
                )
            updated = await routes_arbitrage.update_strategy(
                created["id"],
                routes_arbitrage.StrategyUpdateRequest(max_trades_per_day=10),
                session=session,
            )
            toggled = await routes_arbitrage.toggle_strategy(
                created["id"],
                routes_arbitrage.StrategyToggleRequest(is_auto_enabled=True),
                session=session,
            )
            detail = await routes_arbitrage.get_strategy(created["id"], session=session)
            listed = await routes_arbitrage.list_strategies(chain="solana", enabled_only=True, session=session)

        assert created["chain"] == "SOLANA"
        assert created["network"] == "devnet"
        assert invalid.value.status_code == 422
        assert "token_in and token_out must differ" in invalid.value.detail
        assert "slippage_bps must be between 0 and 10000 bps" in invalid.value.detail
        assert updated["max_trades_per_day"] == 10
        assert toggled["is_auto_enabled"] is True
        assert detail["usage_today"] == {"total_trades": 0, "total_pnl": 0, "total_loss": 0}
        assert [item["id"] for item in listed["strategies"]] == [created["id"]]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delete_keeps_strategies_with_history(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            fresh = await routes_arbitrage.create_strategy(_create_request(name="fresh"), session=session)
            used = await routes_arbitrage.create_strategy(_create_request(name="used"), session=session)
            session.add(ArbitrageRun(id="run-1", strategy_id=used["id"], status=RunStatus.FAILED.value, details={}))
            await session.commit()

            deleted = await routes_arbitrage.delete_strategy(fresh["id"], session=session)
            disabled = await routes_arbitrage.delete_strategy(used["id"], session=session)
            with pytest.raises(HTTPException) as gone:
                await routes_arbitrage.get_strategy(fresh["id"], session=session)

        assert deleted["deleted"] is True
        assert disabled == {"id": used["id"], "deleted": False, "disabled": True, "run_count": 1}
        assert gone.value.status_code == 404
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_runs_listing_filters_and_missing_run(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            strategy = await routes_arbitrage.create_strategy(_create_request(), session=session)
            session.add_all(
                [
                    ArbitrageRun(
                        id="run-ok",
                        strategy_id=strategy["id"],
                        status=RunStatus.SIMULATED.value,
                        approved_for_auto_execution=True,
                        details={"waterfall": {"net_profit": 1}},
                    ),
                    ArbitrageRun(id="run-bad", strategy_id=strategy["id"], status=RunStatus.FAILED.value, details={}),
                ]
            )
            await session.commit()

            approved = await routes_arbitrage.list_runs(
                strategy_id=None, status=None, chain="solana", approved=True, limit=50, offset=0, session=session
            )
            failed = await routes_arbitrage.list_runs(
                strategy_id=strategy["id"], status="failed", chain=None, approved=None, limit=50, offset=0, session=session
            )
            detail = await routes_arbitrage.get_run("run-ok", session=session)
            with pytest.raises(HTTPException) as missing:
                await routes_arbitrage.get_run("nope", session=session)

        assert approved["total"] == 1
        assert approved["runs"][0]["id"] == "run-ok"
        assert "details" not in approved["runs"][0]
        assert [run["id"] for run in failed["runs"]] == ["run-bad"]
        assert detail["details"] == {"waterfall": {"net_profit": 1}}
        assert missing.value.status_code == 404
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_execute_endpoint_maps_safe_mode_and_missing_strategy(tmp_path, monkeypatch, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        executor = AtomicExecutor(
            session_factory,
            quote_source=profitable_round_trip(),
            breaker=SafeModeCircuitBreaker(),
            dispatcher=RefillDispatcher(session_factory),
            executor_secret="executor",
        )
        monkeypatch.setattr(routes_arbitrage, "atomic_executor", executor)

        with pytest.raises(HTTPException) as missing:
            await routes_arbitrage.execute_strategy("nope")

        async with session_factory() as session:
            await apply_state_transition(session, "trip_safe_mode", reason="hold")
        with pytest.raises(HTTPException) as halted:
            await routes_arbitrage.execute_strategy("nope")

        assert missing.value.status_code == 404
        assert halted.value.status_code == 409
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_execute_endpoint_rejects_disabled_strategy(tmp_path, monkeypatch, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        source = profitable_round_trip()
        executor = AtomicExecutor(
            session_factory,
            quote_source=source,
            breaker=SafeModeCircuitBreaker(),
            dispatcher=RefillDispatcher(session_factory),
            executor_secret="executor",
        )
        monkeypatch.setattr(routes_arbitrage, "atomic_executor", executor)
        async with session_factory() as session:
            session.add(
                ArbitrageStrategy(
                    id="strat-off",
                    name="paused",
                    token_in=SOL_MINT,
                    token_out=USDC_MINT,
                    trade_amount=100_000_000,
                    is_enabled=False,
                )
            )
            await session.commit()

        with pytest.raises(HTTPException) as disabled:
            await routes_arbitrage.execute_strategy("strat-off")

        assert disabled.value.status_code == 409
        assert disabled.value.detail == "Strategy strat-off is disabled"
        assert source.quote_calls == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_debug_quote_reports_route_no_route_and_errors(monkeypatch):
    source = FakeQuoteSource(
        {
            (SOL_MINT, USDC_MINT): make_quote(SOL_MINT, USDC_MINT, 1_000, 1_010, venue="Raydium"),
            (SOL_MINT, SOL_MINT): QuoteSourceError("Jupiter quote API failed: 502", status_code=502, cause="bad gateway"),
        }
    )
    monkeypatch.setattr(routes_arbitrage, "jupiter_client", source)

    found = await routes_arbitrage.debug_quote(
        routes_arbitrage.DebugQuoteRequest(input_mint=SOL_MINT, output_mint=USDC_MINT, amount=1_000, venue="Raydium", leg="A")
    )
    no_route = await routes_arbitrage.debug_quote(
        routes_arbitrage.DebugQuoteRequest(input_mint=USDC_MINT, output_mint=SOL_MINT, amount=1_000, leg="B")
    )
    failed = await routes_arbitrage.debug_quote(
        routes_arbitrage.DebugQuoteRequest(input_mint=SOL_MINT, output_mint=SOL_MINT, amount=1_000)
    )

    assert found["success"] is True
    assert found["quote"]["venues"] == ["Raydium"]
    assert source.quote_calls[0]["allowed_venues"] == ["Raydium"]
    assert no_route["success"] is False
    assert no_route["error"] == "no route found"
    assert failed == {
        "success": False,
        "leg": None,
        "error": "Jupiter quote API failed: 502",
        "status_code": 502,
        "cause": "bad gateway",
    }


@pytest.mark.asyncio
async def test_debug_quote_uses_the_chain_quote_source():
    weth = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
    usdc = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
    source = FakeQuoteSource({(weth, usdc): make_quote(weth, usdc, 1_000, 2_500, venue="Uniswap_V3")})
    register_quote_source("ETHEREUM", "mainnet", source)

    found = await routes_arbitrage.debug_quote(
        routes_arbitrage.DebugQuoteRequest(
            chain="ETHEREUM", network="mainnet", input_mint=weth, output_mint=usdc, amount=1_000
        )
    )
    with pytest.raises(HTTPException) as exc_info:
        await routes_arbitrage.debug_quote(
            routes_arbitrage.DebugQuoteRequest(chain="TRON", input_mint=weth, output_mint=usdc, amount=1_000)
        )

    assert found["success"] is True
    assert found["quote"]["venues"] == ["Uniswap_V3"]
    assert source.quote_calls[0]["amount"] == 1_000
    assert exc_info.value.status_code == 400
