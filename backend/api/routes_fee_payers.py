"""Fee-payer inventory routes: wallets, balances and top-ups."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import ChainType, get_db_session
from services import fee_payer_manager
from utils.logger import get_logger
from utils.secrets import SecretsUnavailableError

logger = get_logger(__name__)
router = APIRouter(prefix="/arbitrage/fee-payers", tags=["Fee Payers"])


class FeePayerGenerateRequest(BaseModel):
    chain: str = ChainType.SOLANA.value
    network: str = "devnet"
    label: Optional[str] = None


class FeePayerRegisterRequest(BaseModel):
    public_key: str = Field(min_length=1)
    chain: str = ChainType.SOLANA.value
    network: str = "devnet"
    label: Optional[str] = None


class TopUpRequest(BaseModel):
    source: str = "OPS_WALLET"
    chain: Optional[str] = None


@router.get("")
async def list_fee_payers(
    chain: Optional[str] = Query(default=None),
    network: Optional[str] = Query(default=None),
    include_inactive: bool = Query(default=True),
    session: AsyncSession = Depends(get_db_session),
):
    return {
        "fee_payers": await fee_payer_manager.list_fee_payers(
            session, chain=chain, network=network, include_inactive=include_inactive
        )
    }


@router.post("/generate", status_code=201)
async def generate_fee_payer(
    request: FeePayerGenerateRequest,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await fee_payer_manager.generate_fee_payer(
            session, chain=request.chain, network=request.network, label=request.label
        )
    except SecretsUnavailableError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("", status_code=201)
async def register_fee_payer(
    request: FeePayerRegisterRequest,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await fee_payer_manager.register_fee_payer(
            session,
            public_key=request.public_key,
            chain=request.chain,
            network=request.network,
            label=request.label,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/{fee_payer_id}/deactivate")
async def deactivate_fee_payer(fee_payer_id: str, session: AsyncSession = Depends(get_db_session)):
    row = await fee_payer_manager.deactivate_fee_payer(session, fee_payer_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Fee payer {fee_payer_id} not found")
    return row


@router.post("/{fee_payer_id}/mark-used")
async def mark_fee_payer_used(fee_payer_id: str, session: AsyncSession = Depends(get_db_session)):
    row = await fee_payer_manager.mark_used(session, fee_payer_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Fee payer {fee_payer_id} not found")
    return row


@router.post("/refresh")
async def refresh_fee_payer_balances(
    chain: Optional[str] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
):
    return await fee_payer_manager.refresh_balances(session, chain=chain)


@router.post("/top-up")
async def top_up_fee_payers(
    request: TopUpRequest,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await fee_payer_manager.run_top_up_pass(session, source=request.source, chain=request.chain)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/top-ups")
async def list_top_ups(
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db_session),
):
    return {"top_ups": await fee_payer_manager.list_top_ups(session, limit=limit)}
