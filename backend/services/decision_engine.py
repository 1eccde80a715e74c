"""Decision stage: approve or reject pending SIMULATED runs.

Approval is advisory state on the run row. Nothing here touches the daily
ledger or any chain; execution is a separate, explicit stage. An approved
run holds a slot against the daily trade caps until it is executed, so
approvals from earlier passes count the same as ledger trades.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select, update

from models.database import ArbitrageRun, ArbitrageStrategy, AsyncSessionLocal, RefillStatus, RunStatus, WalletRefillRequest
from services.risk_ledger import count_open_trades, get_global_usage, get_strategy_usage, strategy_locks
from services.risk_manager import evaluate_opportunity
from services.system_state import SettingsSnapshot, read_settings_snapshot
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("decision_engine")


async def _has_pending_refill(session, chain: str) -> bool:
    row = (
        await session.execute(
            select(WalletRefillRequest.id)
            .where(WalletRefillRequest.status == RefillStatus.PENDING.value, WalletRefillRequest.chain == chain)
            .limit(1)
        )
    ).first()
    return row is not None


async def run_decision_engine(
    session_factory=None,
    snapshot: Optional[SettingsSnapshot] = None,
) -> dict[str, Any]:
    """Decide every undecided SIMULATED run, oldest first.

    Runs decided by an overlapping pass are skipped, never re-decided.
    """
    session_factory = session_factory or AsyncSessionLocal
    approved: list[str] = []
    rejected: dict[str, str] = {}
    skipped = 0

    async with session_factory() as session:
        snapshot = snapshot or await read_settings_snapshot(session)
        runs = list(
            (
                await session.execute(
                    select(ArbitrageRun)
                    .where(ArbitrageRun.status == RunStatus.SIMULATED.value, ArbitrageRun.decided_at.is_(None))
                    .order_by(ArbitrageRun.started_at.asc())
                )
            )
            .scalars()
            .all()
        )

        for run in runs:
            async with strategy_locks.for_caps(run.strategy_id):
                await session.refresh(run)
                if run.decided_at is not None or run.status != RunStatus.SIMULATED.value:
                    skipped += 1
                    continue

                strategy = await session.get(ArbitrageStrategy, run.strategy_id)
                usage = await get_strategy_usage(session, run.strategy_id)
                global_usage = await get_global_usage(session)
                open_trades = await count_open_trades(session, run.strategy_id)
                global_open_trades = await count_open_trades(session)
                has_pending_refill = None
                if strategy is not None and strategy.is_for_fee_payer_refill:
                    has_pending_refill = await _has_pending_refill(session, strategy.chain)

                result = evaluate_opportunity(
                    strategy=strategy,
                    estimated_profit=run.estimated_profit or 0,
                    estimated_gas_cost=run.estimated_gas_cost or 0,
                    auto_arbitrage_enabled=snapshot.auto_arbitrage_enabled,
                    safe_mode_enabled=snapshot.safe_mode_enabled,
                    flash_loans_enabled=snapshot.auto_flash_loans_enabled,
                    strategy_trades_today=usage.total_trades + open_trades,
                    strategy_loss_today=usage.total_loss,
                    global_trades_today=global_usage.total_trades + global_open_trades,
                    global_loss_today=global_usage.total_loss,
                    max_global_trades_per_day=snapshot.max_global_trades_per_day,
                    max_global_daily_loss=snapshot.max_global_daily_loss,
                    has_pending_refill=has_pending_refill,
                    scan_error=run.error_message,
                )

                details = dict(run.details or {})
                details["decision"] = result.to_dict()
                written = await session.execute(
                    update(ArbitrageRun)
                    .where(
                        ArbitrageRun.id == run.id,
                        ArbitrageRun.status == RunStatus.SIMULATED.value,
                        ArbitrageRun.decided_at.is_(None),
                    )
                    .values(
                        approved_for_auto_execution=result.allowed,
                        decision_reason=result.reason,
                        decided_at=utcnow(),
                        details=details,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if not written.rowcount:
                    logger.info("Run decided concurrently, skipping", run_id=run.id)
                    skipped += 1
                    continue

                if result.allowed:
                    approved.append(run.id)
                else:
                    rejected[run.id] = result.reason

    evaluated = len(approved) + len(rejected)
    logger.info(
        "Decision stage complete",
        evaluated=evaluated,
        approved=len(approved),
        rejected=len(rejected),
        skipped=skipped,
        safe_mode=snapshot.safe_mode_enabled,
    )
    return {
        "evaluated": evaluated,
        "approved_count": len(approved),
        "approved_run_ids": approved,
        "rejected_count": len(rejected),
        "rejection_reasons": rejected,
        "skipped_count": skipped,
    }
