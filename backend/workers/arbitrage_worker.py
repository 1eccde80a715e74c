"""
Arbitrage worker: runs the full cycle (scan -> decide -> execute -> wallets)
on a fixed interval and records one automation log row per cycle.
Run from backend: python -m workers.arbitrage_worker
"""

import asyncio
import logging
import os
import sys
import uuid
from typing import Any, Optional

# Ensure backend is on path when run as python -m workers.arbitrage_worker from project root
_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from config import settings
from models.database import AsyncSessionLocal, AutomationLog, CycleStatus, init_database
from services import fee_payer_manager
from services.atomic_executor import AtomicExecutor, atomic_executor
from services.decision_engine import run_decision_engine
from services.refill_dispatcher import refill_dispatcher
from services.scanner import scan_all
from services.system_state import SettingsSnapshot, read_settings_snapshot
from utils.utcnow import utcnow

logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO")),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("arbitrage_worker")


# ==================== STAGES ====================


async def run_scan_stage() -> dict[str, Any]:
    return await scan_all(AsyncSessionLocal)


async def run_decision_stage(snapshot: Optional[SettingsSnapshot] = None) -> dict[str, Any]:
    return await run_decision_engine(AsyncSessionLocal, snapshot)


async def run_execution_stage(executor: Optional[AtomicExecutor] = None, limit: Optional[int] = None) -> dict[str, Any]:
    executor = executor or atomic_executor
    return await executor.execute_approved_runs(limit=limit)


async def run_wallet_stage(snapshot: Optional[SettingsSnapshot] = None) -> dict[str, Any]:
    async with AsyncSessionLocal() as session:
        refreshed = await fee_payer_manager.refresh_balances(session)
        top_ups = await fee_payer_manager.run_top_up_pass(session, source="OPS_WALLET", snapshot=snapshot)
    return {"refresh": refreshed, "top_up": top_ups}


def _overall_status(outcomes: dict[str, bool]) -> str:
    if all(outcomes.values()):
        return CycleStatus.SUCCESS.value
    if any(outcomes.values()):
        return CycleStatus.PARTIAL.value
    return CycleStatus.FAILED.value


async def _write_log(log_id: str, **fields: Any) -> None:
    async with AsyncSessionLocal() as session:
        row = await session.get(AutomationLog, log_id)
        for key, value in fields.items():
            setattr(row, key, value)
        await session.commit()


async def run_cycle(trigger: str = "scheduled", *, executor: Optional[AtomicExecutor] = None) -> dict[str, Any]:
    """One full cycle. The settings snapshot is read once at the start."""
    log_id = uuid.uuid4().hex
    async with AsyncSessionLocal() as session:
        snapshot = await read_settings_snapshot(session)
        session.add(
            AutomationLog(
                id=log_id,
                trigger_type=trigger,
                cycle_started_at=utcnow(),
                overall_status=CycleStatus.RUNNING.value,
            )
        )
        await session.commit()

    if not snapshot.auto_arbitrage_enabled:
        logger.info("Cycle skipped: auto arbitrage disabled")
        await _write_log(
            log_id,
            overall_status=CycleStatus.SKIPPED.value,
            error_message="Auto arbitrage is disabled",
            cycle_finished_at=utcnow(),
        )
        return {"log_id": log_id, "overall_status": CycleStatus.SKIPPED.value, "reason": "Auto arbitrage is disabled"}

    results: dict[str, Any] = {}
    outcomes: dict[str, bool] = {}
    first_error: Optional[str] = None

    async def _stage(name: str, coro) -> None:
        nonlocal first_error
        try:
            results[name] = await coro
            outcomes[name] = True
        except Exception as exc:
            logger.exception("Cycle stage %s failed: %s", name, exc)
            results[name] = {"error": str(exc)}
            outcomes[name] = False
            first_error = first_error or f"{name}: {exc}"
        column = {
            "scan": "scan_result",
            "decision": "decision_result",
            "execution": "execution_result",
            "wallets": "wallet_check_result",
        }[name]
        await _write_log(log_id, **{column: results[name]})

    await _stage("scan", run_scan_stage())
    await _stage("decision", run_decision_stage(snapshot))

    if snapshot.safe_mode_enabled:
        results["execution"] = {"skipped": True, "reason": f"Safe mode enabled: {snapshot.safe_mode_reason}"}
        outcomes["execution"] = True
        await _write_log(log_id, execution_result=results["execution"])
    else:
        async with AsyncSessionLocal() as session:
            current = await read_settings_snapshot(session)
        if current.safe_mode_enabled:
            results["execution"] = {"skipped": True, "reason": f"Safe mode tripped mid-cycle: {current.safe_mode_reason}"}
            outcomes["execution"] = True
            await _write_log(log_id, execution_result=results["execution"])
        else:
            await _stage("execution", run_execution_stage(executor))

    await _stage("wallets", run_wallet_stage(snapshot))

    status = _overall_status(outcomes)
    await _write_log(log_id, overall_status=status, error_message=first_error, cycle_finished_at=utcnow())
    logger.info("Cycle %s finished with status %s", log_id, status)
    return {"log_id": log_id, "overall_status": status, "error": first_error, **results}


async def run_worker_loop() -> None:
    logger.info("Starting arbitrage worker loop")
    interval = max(1, int(settings.ARB_CYCLE_INTERVAL_SECONDS))

    while True:
        try:
            await run_cycle("scheduled")
        except Exception as exc:
            logger.exception("Arbitrage cycle failed: %s", exc)
        await asyncio.sleep(interval)


async def main() -> None:
    """Initialize DB schema before entering the cycle loop."""
    await init_database()
    logger.info("Database initialized")
    try:
        await run_worker_loop()
    except asyncio.CancelledError:
        logger.info("Arbitrage worker shutting down")
    finally:
        await refill_dispatcher.drain(timeout=settings.SETTLEMENT_CONFIRM_TIMEOUT_SECONDS)


if __name__ == "__main__":
    asyncio.run(main())
