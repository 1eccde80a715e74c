"""Standing operator alerts (open until acknowledged)."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import ArbitrageAlert
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("alerts")


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def serialize_alert(row: ArbitrageAlert) -> dict[str, Any]:
    return {
        "id": row.id,
        "alert_type": row.alert_type,
        "severity": row.severity,
        "chain": row.chain,
        "run_id": row.run_id,
        "strategy_id": row.strategy_id,
        "message": row.message,
        "details": row.details or {},
        "created_at": _to_iso(row.created_at),
        "acknowledged_at": _to_iso(row.acknowledged_at),
        "acknowledged_by": row.acknowledged_by,
    }


async def raise_alert(
    session: AsyncSession,
    alert_type: str,
    message: str,
    *,
    severity: str = "warning",
    chain: Optional[str] = None,
    run_id: Optional[str] = None,
    strategy_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> ArbitrageAlert:
    row = ArbitrageAlert(
        id=uuid.uuid4().hex,
        alert_type=str(getattr(alert_type, "value", alert_type)),
        severity=severity,
        chain=chain,
        run_id=run_id,
        strategy_id=strategy_id,
        message=message,
        details=details or {},
        created_at=utcnow(),
    )
    session.add(row)
    await session.commit()
    logger.warning("Alert raised", alert_type=row.alert_type, severity=severity, chain=chain, run_id=run_id)
    return row


async def list_alerts(
    session: AsyncSession,
    *,
    include_acknowledged: bool = False,
    limit: int = 100,
) -> list[dict[str, Any]]:
    query = select(ArbitrageAlert)
    if not include_acknowledged:
        query = query.where(ArbitrageAlert.acknowledged_at.is_(None))
    rows = (await session.execute(query.order_by(ArbitrageAlert.created_at.desc()).limit(limit))).scalars().all()
    return [serialize_alert(row) for row in rows]


async def acknowledge_alert(session: AsyncSession, alert_id: str, operator: str) -> Optional[dict[str, Any]]:
    row = await session.get(ArbitrageAlert, alert_id)
    if row is None:
        return None
    if row.acknowledged_at is None:
        row.acknowledged_at = utcnow()
        row.acknowledged_by = operator
        await session.commit()
        await session.refresh(row)
    return serialize_alert(row)


async def acknowledge_open_alerts(
    session: AsyncSession,
    operator: str,
    *,
    since: Optional[datetime] = None,
) -> int:
    query = update(ArbitrageAlert).where(ArbitrageAlert.acknowledged_at.is_(None))
    if since is not None:
        query = query.where(ArbitrageAlert.created_at >= since)
    result = await session.execute(
        query.values(acknowledged_at=utcnow(), acknowledged_by=operator).execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)
