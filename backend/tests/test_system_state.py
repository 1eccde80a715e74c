import sys
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base
from services.system_state import (
    InvalidTransitionError,
    StaleSettingsError,
    apply_state_transition,
    read_settings_snapshot,
    read_system_settings,
)


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "system_state.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


@pytest.mark.asyncio
async def test_settings_row_is_created_with_safe_defaults(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            snapshot = await read_settings_snapshot(session)
            payload = await read_system_settings(session)

        assert snapshot.auto_arbitrage_enabled is False
        assert snapshot.safe_mode_enabled is False
        assert snapshot.max_global_trades_per_day == 50
        assert snapshot.version == 1
        assert snapshot.network == "devnet"
        assert snapshot.limits_for("solana").min_fee_payer_balance == 50_000_000
        assert snapshot.limits_for("polygon").min_fee_payer_balance == 10_000_000_000_000_000
        assert payload["chain_limits"]["SOLANA"]["fee_payer_top_up"] == 200_000_000
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_update_bumps_version_and_records_operator(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            snapshot, changed = await apply_state_transition(
                session,
                "update_settings",
                expected_version=1,
                operator="ops@desk",
                auto_arbitrage_enabled=True,
                max_global_trades_per_day=12,
            )
            payload = await read_system_settings(session)

        assert changed is True
        assert snapshot.version == 2
        assert snapshot.auto_arbitrage_enabled is True
        assert snapshot.max_global_trades_per_day == 12
        assert payload["updated_by"] == "ops@desk"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_stale_version_is_rejected_without_writing(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await apply_state_transition(session, "update_settings", auto_arbitrage_enabled=True)

        async with session_factory() as session:
            with pytest.raises(StaleSettingsError):
                await apply_state_transition(
                    session,
                    "update_settings",
                    expected_version=1,
                    auto_arbitrage_enabled=False,
                )
            snapshot = await read_settings_snapshot(session)

        assert snapshot.version == 2
        assert snapshot.auto_arbitrage_enabled is True
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_negative_caps_and_unknown_transitions_are_invalid(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await apply_state_transition(session, "update_settings", max_global_daily_loss=-1)
            with pytest.raises(InvalidTransitionError):
                await apply_state_transition(
                    session,
                    "update_settings",
                    chain_limits={"SOLANA": {"fee_payer_top_up": -5}},
                )
            with pytest.raises(InvalidTransitionError):
                await apply_state_transition(session, "rename_everything")
            snapshot = await read_settings_snapshot(session)

        assert snapshot.version == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_trip_and_clear_are_idempotent(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            tripped, changed = await apply_state_transition(session, "trip_safe_mode", reason="drift")
            again, changed_again = await apply_state_transition(session, "trip_safe_mode", reason="other")
            cleared, cleared_changed = await apply_state_transition(session, "clear_safe_mode", operator="ops")
            _, cleared_again = await apply_state_transition(session, "clear_safe_mode", operator="ops")

        assert changed is True
        assert tripped.safe_mode_enabled is True
        assert tripped.safe_mode_reason == "drift"
        assert tripped.safe_mode_triggered_at is not None
        assert changed_again is False
        assert again.safe_mode_reason == "drift"
        assert again.version == tripped.version
        assert cleared_changed is True
        assert cleared.safe_mode_enabled is False
        assert cleared.safe_mode_reason is None
        assert cleared_again is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_chain_limits_merge_per_key(tmp_path):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            snapshot, _ = await apply_state_transition(
                session,
                "update_settings",
                chain_limits={"solana": {"min_fee_payer_balance": 75_000_000}, "base": {"ops_wallet_reserve": 1}},
            )

        solana = snapshot.limits_for("SOLANA")
        assert solana.min_fee_payer_balance == 75_000_000
        assert solana.fee_payer_top_up == 200_000_000
        base = snapshot.limits_for("BASE")
        assert base.ops_wallet_reserve == 1
        assert base.min_fee_payer_balance == 10_000_000_000_000_000
        assert base.fee_payer_top_up == 50_000_000_000_000_000
    finally:
        await engine.dispose()
