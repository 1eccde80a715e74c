import sys
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import FakeChainAdapter, new_address
from config import settings
from models.database import ArbitrageAlert, Base, FeePayer, WalletRefillRequest
from models.settlement import SettlementRejected
from services import fee_payer_manager
from services.chain import register_chain_adapter
from utils.secrets import SecretsUnavailableError, decrypt_secret, is_encrypted, reset_secrets_cache


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "fee_payers.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


@pytest.mark.asyncio
async def test_register_validates_address_and_rejects_duplicates(tmp_path, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        address = new_address()
        async with session_factory() as session:
            row = await fee_payer_manager.register_fee_payer(session, public_key=address, chain="solana", label="main")
            with pytest.raises(ValueError, match="already registered"):
                await fee_payer_manager.register_fee_payer(session, public_key=address)
            with pytest.raises(ValueError, match="Invalid Solana address"):
                await fee_payer_manager.register_fee_payer(session, public_key="not-a-key")
            listed = await fee_payer_manager.list_fee_payers(session, chain="solana")

        assert row["chain"] == "SOLANA"
        assert row["has_managed_key"] is False
        assert [item["public_key"] for item in listed] == [address]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_generate_requires_secrets_key_and_encrypts(tmp_path, fake_adapter, monkeypatch):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        monkeypatch.delenv("APP_SECRETS_KEY", raising=False)
        reset_secrets_cache()
        async with session_factory() as session:
            with pytest.raises(SecretsUnavailableError):
                await fee_payer_manager.generate_fee_payer(session)

        monkeypatch.setenv("APP_SECRETS_KEY", "test-secrets-key")
        reset_secrets_cache()
        async with session_factory() as session:
            created = await fee_payer_manager.generate_fee_payer(session)
            stored = await session.get(FeePayer, created["id"])

        public_key, secret = fake_adapter.generated[-1]
        assert created["public_key"] == public_key
        assert created["has_managed_key"] is True
        assert is_encrypted(stored.encrypted_secret)
        assert decrypt_secret(stored.encrypted_secret) == secret
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_deactivate_and_mark_used(tmp_path, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            row = await fee_payer_manager.register_fee_payer(session, public_key=new_address())
            used = await fee_payer_manager.mark_used(session, row["id"])
            inactive = await fee_payer_manager.deactivate_fee_payer(session, row["id"])
            active_only = await fee_payer_manager.list_fee_payers(session, include_inactive=False)
            missing = await fee_payer_manager.mark_used(session, "missing")

        assert used["usage_count"] == 1
        assert used["last_used_at"] is not None
        assert inactive["is_active"] is False
        assert active_only == []
        assert missing is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_top_up_moves_configured_amount_from_ops_wallet(tmp_path, fake_adapter, monkeypatch):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        ops_wallet = new_address()
        low, healthy = new_address(), new_address()
        fake_adapter.native.update({ops_wallet: 1_000_000_000, low: 10_000_000, healthy: 80_000_000})
        monkeypatch.setattr(settings, "OPS_WALLET_SECRET_KEY", ops_wallet)

        async with session_factory() as session:
            await fee_payer_manager.register_fee_payer(session, public_key=low)
            await fee_payer_manager.register_fee_payer(session, public_key=healthy)
            summary = await fee_payer_manager.run_top_up_pass(session)
            top_ups = await fee_payer_manager.list_top_ups(session)
            listed = {item["public_key"]: item for item in await fee_payer_manager.list_fee_payers(session)}

        assert summary["checked"] == 2
        assert summary["topped_up"] == 1
        assert fake_adapter.transfers == [{"from": ops_wallet, "to": low, "amount": 200_000_000}]
        assert listed[low]["balance"] == 210_000_000
        assert listed[healthy]["balance"] == 80_000_000
        assert top_ups[0]["status"] == "SUCCESS"
        assert top_ups[0]["source_address"] == ops_wallet
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_shortfall_opens_one_refill_request_and_alert(tmp_path, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        ops_wallet = new_address()
        payer = new_address()
        fake_adapter.native.update({ops_wallet: 150_000_000, payer: 0})

        async with session_factory() as session:
            await fee_payer_manager.register_fee_payer(session, public_key=payer)
            first = await fee_payer_manager.run_top_up_pass(session, funding_secret=ops_wallet)
            second = await fee_payer_manager.run_top_up_pass(session, funding_secret=ops_wallet)
            requests = (await session.execute(select(WalletRefillRequest))).scalars().all()
            alerts = (await session.execute(select(ArbitrageAlert))).scalars().all()

        assert first["skipped"] == 1
        assert first["refill_requests"] == 1
        assert second["skipped"] == 1
        assert second["refill_requests"] == 0
        assert fake_adapter.transfers == []
        assert len(requests) == 1
        assert requests[0].wallet_address == payer
        assert requests[0].required_amount == 200_000_000
        assert [alert.alert_type for alert in alerts] == ["FEE_PAYER_SHORTFALL"]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_unconfigured_funding_wallet_is_a_shortfall(tmp_path, fake_adapter, monkeypatch):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        monkeypatch.setattr(settings, "OPS_WALLET_SECRET_KEY", None)
        async with session_factory() as session:
            await fee_payer_manager.register_fee_payer(session, public_key=new_address())
            summary = await fee_payer_manager.run_top_up_pass(session)

        assert summary["skipped"] == 1
        assert summary["results"][0]["reason"] == "OPS_WALLET wallet is not configured"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_failed_transfer_is_recorded(tmp_path, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        ops_wallet = new_address()
        fake_adapter.native[ops_wallet] = 1_000_000_000
        fake_adapter.transfer_error = SettlementRejected("blockhash not found", signature="sig-x")

        async with session_factory() as session:
            await fee_payer_manager.register_fee_payer(session, public_key=new_address())
            summary = await fee_payer_manager.run_top_up_pass(session, funding_secret=ops_wallet)
            top_ups = await fee_payer_manager.list_top_ups(session)

        assert summary["failed"] == 1
        assert top_ups[0]["status"] == "FAILED"
        assert top_ups[0]["tx_signature"] == "sig-x"
        assert top_ups[0]["error_message"] == "blockhash not found"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_unknown_source_is_rejected(tmp_path, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            with pytest.raises(ValueError, match="Unknown top-up source"):
                await fee_payer_manager.run_top_up_pass(session, source="TREASURY")
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_profitable_run_fulfills_oldest_pending_request(tmp_path, fake_adapter):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        ops_wallet = new_address()
        fake_adapter.native[ops_wallet] = 0
        async with session_factory() as session:
            await fee_payer_manager.register_fee_payer(session, public_key=new_address())
            await fee_payer_manager.run_top_up_pass(session, funding_secret=ops_wallet)

            request_id = await fee_payer_manager.fulfill_refill_request(session, "SOLANA", "run-9")
            again = await fee_payer_manager.fulfill_refill_request(session, "SOLANA", "run-10")
            request = await session.get(WalletRefillRequest, request_id)

        assert request.status == "FULFILLED"
        assert request.fulfilled_by_run_id == "run-9"
        assert again is None
    finally:
        await engine.dispose()


class _BaseChainAdapter(FakeChainAdapter):
    chain = "BASE"
    native_mint = "0x4200000000000000000000000000000000000006"

    async def transfer_fee(self):
        return 21_000 * 1_000_000_000


@pytest.mark.asyncio
async def test_evm_fee_payers_use_evm_wallet_and_limits(tmp_path, monkeypatch):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        adapter = _BaseChainAdapter("mainnet")
        register_chain_adapter("BASE", "mainnet", adapter)
        ops_wallet = "0x00000000000000000000000000000000000000a1"
        low = "0x00000000000000000000000000000000000000b2"
        healthy = "0x00000000000000000000000000000000000000b3"
        adapter.native.update({ops_wallet: 10**17, low: 5 * 10**15, healthy: 2 * 10**16})
        monkeypatch.setattr(settings, "OPS_WALLET_SECRET_KEY", None)
        monkeypatch.setattr(settings, "EVM_OPS_WALLET_SECRET_KEY", ops_wallet)

        async with session_factory() as session:
            await fee_payer_manager.register_fee_payer(session, public_key=low, chain="base", network="mainnet")
            await fee_payer_manager.register_fee_payer(session, public_key=healthy, chain="base", network="mainnet")
            refreshed = await fee_payer_manager.refresh_balances(session, chain="BASE")
            summary = await fee_payer_manager.run_top_up_pass(session, chain="BASE")
            second = await fee_payer_manager.run_top_up_pass(session, chain="BASE")

        assert refreshed["refreshed"] == 2
        assert summary["topped_up"] == 1
        assert adapter.transfers == [{"from": ops_wallet, "to": low, "amount": 5 * 10**16}]
        assert adapter.native[low] == 55 * 10**15
        assert second["topped_up"] == 0
        assert second["skipped"] == 0
    finally:
        await engine.dispose()
