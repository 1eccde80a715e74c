"""Fee-payer inventory: registration, balance refresh and top-ups.

Fee payers are never deleted, only deactivated. A top-up moves the chain's
configured amount from a funding wallet (the ops wallet, or the executor
wallet when spending arbitrage profit) and is skipped when it would take
the funding wallet below its reserve. A skipped top-up opens a refill
request and a standing alert instead.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import (
    AlertType,
    FeePayer,
    FeePayerTopUp,
    RefillStatus,
    WalletRefillRequest,
)
from models.settlement import InsufficientFundingError, SettlementError
from services.alerts import raise_alert
from services.chain import get_chain_adapter
from services.system_state import SettingsSnapshot, read_settings_snapshot
from utils.logger import wallet_logger as logger
from utils.secrets import encrypt_secret
from utils.utcnow import utcnow
from utils.validation import validate_chain_address

TOP_UP_SOURCES = ("OPS_WALLET", "ARBITRAGE_PROFIT")


def _to_iso(value) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def _serialize_fee_payer(row: FeePayer) -> dict[str, Any]:
    return {
        "id": row.id,
        "label": row.label,
        "public_key": row.public_key,
        "chain": row.chain,
        "network": row.network,
        "is_active": bool(row.is_active),
        "balance": int(row.balance or 0),
        "balance_updated_at": _to_iso(row.balance_updated_at),
        "usage_count": int(row.usage_count or 0),
        "last_used_at": _to_iso(row.last_used_at),
        "has_managed_key": bool(row.encrypted_secret),
        "created_at": _to_iso(row.created_at),
    }


def _serialize_top_up(row: FeePayerTopUp) -> dict[str, Any]:
    return {
        "id": row.id,
        "fee_payer_id": row.fee_payer_id,
        "source": row.source,
        "source_address": row.source_address,
        "destination_address": row.destination_address,
        "chain": row.chain,
        "amount": int(row.amount or 0),
        "status": row.status,
        "tx_signature": row.tx_signature,
        "error_message": row.error_message,
        "created_at": _to_iso(row.created_at),
    }


# ==================== INVENTORY ====================


async def list_fee_payers(
    session: AsyncSession,
    *,
    chain: Optional[str] = None,
    network: Optional[str] = None,
    include_inactive: bool = True,
) -> list[dict[str, Any]]:
    query = select(FeePayer)
    if chain:
        query = query.where(FeePayer.chain == chain.upper())
    if network:
        query = query.where(FeePayer.network == network.lower())
    if not include_inactive:
        query = query.where(FeePayer.is_active == True)  # noqa: E712
    rows = (await session.execute(query.order_by(FeePayer.created_at.asc()))).scalars().all()
    return [_serialize_fee_payer(row) for row in rows]


async def register_fee_payer(
    session: AsyncSession,
    *,
    public_key: str,
    chain: str = "SOLANA",
    network: str = "devnet",
    label: Optional[str] = None,
) -> dict[str, Any]:
    """Track an externally held wallet (no key stored)."""
    chain = chain.upper()
    public_key = validate_chain_address(chain, public_key)
    existing = (await session.execute(select(FeePayer).where(FeePayer.public_key == public_key))).scalar_one_or_none()
    if existing is not None:
        raise ValueError(f"Fee payer {public_key} is already registered")
    row = FeePayer(
        id=uuid.uuid4().hex,
        label=label,
        public_key=public_key,
        chain=chain,
        network=network.lower(),
        is_active=True,
        balance=0,
        usage_count=0,
        created_at=utcnow(),
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    logger.info("Fee payer registered", fee_payer_id=row.id, public_key=public_key, chain=chain)
    return _serialize_fee_payer(row)


async def generate_fee_payer(
    session: AsyncSession,
    *,
    chain: str = "SOLANA",
    network: str = "devnet",
    label: Optional[str] = None,
) -> dict[str, Any]:
    """Create a new wallet; its key is stored encrypted."""
    chain = chain.upper()
    adapter = get_chain_adapter(chain, network)
    public_key, secret = adapter.generate_signer()
    row = FeePayer(
        id=uuid.uuid4().hex,
        label=label or f"{chain.lower()}-fee-payer-{public_key[:6]}",
        public_key=public_key,
        encrypted_secret=encrypt_secret(secret, required=True),
        chain=chain,
        network=network.lower(),
        is_active=True,
        balance=0,
        usage_count=0,
        created_at=utcnow(),
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    logger.info("Fee payer generated", fee_payer_id=row.id, public_key=public_key, chain=chain, network=network)
    return _serialize_fee_payer(row)


async def deactivate_fee_payer(session: AsyncSession, fee_payer_id: str) -> Optional[dict[str, Any]]:
    row = await session.get(FeePayer, fee_payer_id)
    if row is None:
        return None
    row.is_active = False
    await session.commit()
    await session.refresh(row)
    logger.info("Fee payer deactivated", fee_payer_id=fee_payer_id)
    return _serialize_fee_payer(row)


async def mark_used(session: AsyncSession, fee_payer_id: str) -> Optional[dict[str, Any]]:
    result = await session.execute(
        update(FeePayer)
        .where(FeePayer.id == fee_payer_id)
        .values(usage_count=FeePayer.usage_count + 1, last_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if not result.rowcount:
        return None
    row = await session.get(FeePayer, fee_payer_id)
    await session.refresh(row)
    return _serialize_fee_payer(row)


async def list_top_ups(session: AsyncSession, *, limit: int = 100) -> list[dict[str, Any]]:
    rows = (
        await session.execute(select(FeePayerTopUp).order_by(FeePayerTopUp.created_at.desc()).limit(limit))
    ).scalars().all()
    return [_serialize_top_up(row) for row in rows]


# ==================== BALANCES ====================


async def refresh_balances(session: AsyncSession, *, chain: Optional[str] = None) -> dict[str, Any]:
    """Re-read every active fee payer's native balance."""
    query = select(FeePayer).where(FeePayer.is_active == True)  # noqa: E712
    if chain:
        query = query.where(FeePayer.chain == chain.upper())
    rows = (await session.execute(query)).scalars().all()

    refreshed, errors = 0, []
    for row in rows:
        try:
            adapter = get_chain_adapter(row.chain, row.network)
            row.balance = await adapter.get_native_balance(row.public_key)
            row.balance_updated_at = utcnow()
            refreshed += 1
        except Exception as exc:
            logger.warning("Fee payer balance refresh failed", fee_payer_id=row.id, error=str(exc))
            errors.append({"fee_payer_id": row.id, "error": str(exc)})
    await session.commit()
    return {"checked": len(rows), "refreshed": refreshed, "errors": errors}


# ==================== TOP-UPS ====================


def _funding_secret(source: str, chain: str) -> Optional[str]:
    if source == "OPS_WALLET":
        return settings.ops_secret_for(chain)
    return settings.executor_secret_for(chain)


async def _open_refill_request(session: AsyncSession, row: FeePayer, amount: int) -> Optional[str]:
    existing = (
        await session.execute(
            select(WalletRefillRequest.id).where(
                WalletRefillRequest.wallet_address == row.public_key,
                WalletRefillRequest.status == RefillStatus.PENDING.value,
            )
        )
    ).first()
    if existing is not None:
        return None
    request = WalletRefillRequest(
        id=uuid.uuid4().hex,
        wallet_type="FEE_PAYER",
        wallet_address=row.public_key,
        chain=row.chain,
        reason="FEE_PAYER_LOW_BALANCE",
        required_amount=amount,
        status=RefillStatus.PENDING.value,
        created_at=utcnow(),
    )
    session.add(request)
    await session.commit()
    return request.id


async def run_top_up_pass(
    session: AsyncSession,
    *,
    source: str = "OPS_WALLET",
    chain: Optional[str] = None,
    snapshot: Optional[SettingsSnapshot] = None,
    funding_secret: Optional[str] = None,
) -> dict[str, Any]:
    """Top up every active fee payer below its chain minimum."""
    if source not in TOP_UP_SOURCES:
        raise ValueError(f"Unknown top-up source: {source}")
    snapshot = snapshot or await read_settings_snapshot(session)

    query = select(FeePayer).where(FeePayer.is_active == True)  # noqa: E712
    if chain:
        query = query.where(FeePayer.chain == chain.upper())
    rows = (await session.execute(query.order_by(FeePayer.balance.asc()))).scalars().all()

    summary: dict[str, Any] = {
        "source": source,
        "checked": len(rows),
        "topped_up": 0,
        "skipped": 0,
        "failed": 0,
        "refill_requests": 0,
        "results": [],
    }

    for row in rows:
        limits = snapshot.limits_for(row.chain)
        secret = funding_secret or _funding_secret(source, row.chain)
        adapter = get_chain_adapter(row.chain, row.network)
        entry: dict[str, Any] = {"fee_payer_id": row.id, "public_key": row.public_key}
        try:
            balance = await adapter.get_native_balance(row.public_key)
        except Exception as exc:
            logger.warning("Fee payer balance read failed", fee_payer_id=row.id, error=str(exc))
            summary["failed"] += 1
            summary["results"].append({**entry, "topped_up": False, "error": str(exc)})
            continue
        row.balance = balance
        row.balance_updated_at = utcnow()
        entry["balance"] = balance

        if balance >= limits.min_fee_payer_balance:
            summary["results"].append({**entry, "topped_up": False, "reason": "Balance above threshold"})
            continue

        amount = limits.fee_payer_top_up
        try:
            if not secret:
                raise InsufficientFundingError(f"{source} wallet is not configured")
            signer = adapter.load_signer(secret)
            funding_address = adapter.signer_address(signer)
            funding_balance = await adapter.get_native_balance(funding_address)
            if funding_balance - amount - await adapter.transfer_fee() < limits.ops_wallet_reserve:
                raise InsufficientFundingError(
                    f"{source} balance {funding_balance} cannot cover {amount} + fee "
                    f"while keeping reserve {limits.ops_wallet_reserve}"
                )
        except InsufficientFundingError as exc:
            await session.commit()
            request_id = await _open_refill_request(session, row, amount)
            if request_id:
                summary["refill_requests"] += 1
                await raise_alert(
                    session,
                    AlertType.FEE_PAYER_SHORTFALL,
                    f"Fee payer {row.label or row.public_key} is below minimum and could not be topped up: {exc}",
                    chain=row.chain,
                    details={"fee_payer_id": row.id, "balance": balance, "required_amount": amount},
                )
            logger.warning("Top-up skipped", fee_payer_id=row.id, reason=str(exc))
            summary["skipped"] += 1
            summary["results"].append({**entry, "topped_up": False, "reason": str(exc)})
            continue

        top_up = FeePayerTopUp(
            id=uuid.uuid4().hex,
            fee_payer_id=row.id,
            source=source,
            source_address=funding_address,
            destination_address=row.public_key,
            chain=row.chain,
            amount=amount,
            created_at=utcnow(),
        )
        try:
            receipt = await adapter.transfer_native(signer, row.public_key, amount)
            top_up.status = "SUCCESS"
            top_up.tx_signature = receipt.signature
            row.balance = await adapter.get_native_balance(row.public_key)
            row.balance_updated_at = utcnow()
            summary["topped_up"] += 1
            summary["results"].append(
                {**entry, "topped_up": True, "amount": amount, "tx_signature": receipt.signature}
            )
            logger.info("Fee payer topped up", fee_payer_id=row.id, amount=amount, signature=receipt.signature)
        except SettlementError as exc:
            top_up.status = "FAILED"
            top_up.tx_signature = exc.signature
            top_up.error_message = str(exc)
            summary["failed"] += 1
            summary["results"].append({**entry, "topped_up": False, "error": str(exc)})
            logger.error("Fee payer top-up failed", fee_payer_id=row.id, error=str(exc))
        session.add(top_up)
        await session.commit()

    await session.commit()
    return summary


async def fulfill_refill_request(session: AsyncSession, chain: str, run_id: str) -> Optional[str]:
    """Close the oldest pending refill request on ``chain`` against a profitable run."""
    request = (
        await session.execute(
            select(WalletRefillRequest)
            .where(WalletRefillRequest.status == RefillStatus.PENDING.value, WalletRefillRequest.chain == chain)
            .order_by(WalletRefillRequest.created_at.asc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if request is None:
        return None
    request.status = RefillStatus.FULFILLED.value
    request.fulfilled_by_run_id = run_id
    request.fulfilled_at = utcnow()
    await session.commit()
    logger.info("Refill request fulfilled", request_id=request.id, run_id=run_id, chain=chain)
    return request.id
