"""Daily per-strategy risk ledger.

Counters are keyed on (strategy, UTC day) and only ever move through a
single ``UPDATE ... SET col = col + :delta`` statement so two writers can
never lose an increment. A missing row is inserted; if another writer
inserted it first the unique constraint fires and the update is retried.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import AsyncIterator, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import ArbitrageRun, DailyRiskLimit, RunStatus
from utils.logger import get_logger
from utils.utcnow import utc_today, utcnow

logger = get_logger("risk_ledger")

_MAX_UPSERT_ATTEMPTS = 3


class StrategyLocks:
    """One ``asyncio.Lock`` per strategy id, created on first use.

    ``for_caps`` takes the strategy lock and then the global-cap lock, in
    that order, for any read-then-write against the daily trade caps.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._global = asyncio.Lock()

    def for_strategy(self, strategy_id: str) -> asyncio.Lock:
        return self._locks[str(strategy_id)]

    @asynccontextmanager
    async def for_caps(self, strategy_id: str) -> AsyncIterator[None]:
        async with self.for_strategy(strategy_id):
            async with self._global:
                yield

    def clear(self) -> None:
        self._locks.clear()
        self._global = asyncio.Lock()


strategy_locks = StrategyLocks()


@dataclass(frozen=True)
class LedgerUsage:
    total_trades: int = 0
    total_pnl: int = 0
    total_loss: int = 0

    def to_dict(self) -> dict:
        return {"total_trades": self.total_trades, "total_pnl": self.total_pnl, "total_loss": self.total_loss}


async def get_strategy_usage(session: AsyncSession, strategy_id: str, day: Optional[date] = None) -> LedgerUsage:
    row = (
        await session.execute(
            select(DailyRiskLimit).where(
                DailyRiskLimit.strategy_id == strategy_id,
                DailyRiskLimit.date == (day or utc_today()),
            )
        )
    ).scalar_one_or_none()
    if row is None:
        return LedgerUsage()
    await session.refresh(row)
    return LedgerUsage(
        total_trades=int(row.total_trades or 0),
        total_pnl=int(row.total_pnl or 0),
        total_loss=int(row.total_loss or 0),
    )


async def get_global_usage(session: AsyncSession, day: Optional[date] = None) -> LedgerUsage:
    row = (
        await session.execute(
            select(
                func.coalesce(func.sum(DailyRiskLimit.total_trades), 0),
                func.coalesce(func.sum(DailyRiskLimit.total_pnl), 0),
                func.coalesce(func.sum(DailyRiskLimit.total_loss), 0),
            ).where(DailyRiskLimit.date == (day or utc_today()))
        )
    ).one()
    return LedgerUsage(total_trades=int(row[0] or 0), total_pnl=int(row[1] or 0), total_loss=int(row[2] or 0))


async def count_open_trades(
    session: AsyncSession,
    strategy_id: Optional[str] = None,
    *,
    exclude_run_id: Optional[str] = None,
    day: Optional[date] = None,
) -> int:
    """Trades that hold a cap slot but have not reached the ledger yet.

    A SIMULATED run counts when it was approved on ``day`` or is claimed
    for execution (manual runs included). Pass no ``strategy_id`` for the
    global figure.
    """
    day_start = datetime.combine(day or utc_today(), time.min)
    query = select(func.count(ArbitrageRun.id)).where(
        ArbitrageRun.status == RunStatus.SIMULATED.value,
        or_(
            and_(
                ArbitrageRun.approved_for_auto_execution == True,  # noqa: E712
                ArbitrageRun.decided_at >= day_start,
            ),
            ArbitrageRun.run_type == "EXECUTION",
        ),
    )
    if strategy_id is not None:
        query = query.where(ArbitrageRun.strategy_id == strategy_id)
    if exclude_run_id is not None:
        query = query.where(ArbitrageRun.id != exclude_run_id)
    return int((await session.execute(query)).scalar_one() or 0)


async def record_trade(
    session: AsyncSession,
    strategy_id: str,
    pnl: int,
    *,
    chain: str = "SOLANA",
    day: Optional[date] = None,
) -> LedgerUsage:
    """Count one trade and its realized PnL (negative for a loss)."""
    day = day or utc_today()
    pnl = int(pnl)
    loss = max(0, -pnl)

    for _ in range(_MAX_UPSERT_ATTEMPTS):
        result = await session.execute(
            update(DailyRiskLimit)
            .where(DailyRiskLimit.strategy_id == strategy_id, DailyRiskLimit.date == day)
            .values(
                total_trades=DailyRiskLimit.total_trades + 1,
                total_pnl=DailyRiskLimit.total_pnl + pnl,
                total_loss=DailyRiskLimit.total_loss + loss,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            await session.commit()
            break

        session.add(
            DailyRiskLimit(
                id=uuid.uuid4().hex,
                strategy_id=strategy_id,
                date=day,
                chain=chain,
                total_trades=1,
                total_pnl=pnl,
                total_loss=loss,
                updated_at=utcnow(),
            )
        )
        try:
            await session.commit()
            break
        except IntegrityError:
            await session.rollback()
            logger.debug("Ledger row created concurrently, retrying update", strategy_id=strategy_id)
    else:
        raise RuntimeError(f"Could not update risk ledger for strategy {strategy_id}")

    usage = await get_strategy_usage(session, strategy_id, day)
    logger.info(
        "Risk ledger updated",
        strategy_id=strategy_id,
        pnl=pnl,
        total_trades=usage.total_trades,
        total_loss=usage.total_loss,
    )
    return usage
