"""Detached post-execution refill task.

``dispatch`` returns immediately; the top-up pass runs in its own task with
its own session and error boundary, so nothing it does can reach the
caller that triggered it. Completion and failure are only logged.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from models import database
from services import fee_payer_manager
from utils.logger import wallet_logger as logger


class RefillDispatcher:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()
        self.completed: list[dict[str, Any]] = []

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def dispatch(
        self,
        reason: str,
        *,
        source: str = "ARBITRAGE_PROFIT",
        chain: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._run(reason, source=source, chain=chain, run_id=run_id),
            name=f"fee-payer-refill-{run_id or 'manual'}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Refill dispatched", reason=reason, source=source, chain=chain, run_id=run_id)
        return task

    async def _run(self, reason: str, *, source: str, chain: Optional[str], run_id: Optional[str]) -> None:
        session_factory = self._session_factory or database.AsyncSessionLocal
        try:
            async with session_factory() as session:
                summary = await fee_payer_manager.run_top_up_pass(session, source=source, chain=chain)
            self.completed.append({"reason": reason, "run_id": run_id, "summary": summary})
            logger.info(
                "Refill completed",
                reason=reason,
                run_id=run_id,
                topped_up=summary.get("topped_up"),
                skipped=summary.get("skipped"),
                failed=summary.get("failed"),
            )
        except asyncio.CancelledError:
            logger.warning("Refill cancelled", reason=reason, run_id=run_id)
            raise
        except Exception as exc:
            logger.error("Refill failed", reason=reason, run_id=run_id, error=str(exc), exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight refills (shutdown and tests)."""
        tasks = [task for task in self._tasks if not task.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)


refill_dispatcher = RefillDispatcher()
