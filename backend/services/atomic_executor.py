"""Atomic execution of approved round trips.

For one run: re-check the daily caps, snapshot balances, re-quote both
legs, re-check thresholds on the fresh quotes, merge both legs into a
single instruction bundle, submit it once, and reconcile realized profit
from the balance delta. Everything before the submit is safe to abandon:
a cancelled caller hands the run back for retry. The submit and the
finalization that follows run in a shielded task, so a cancelled caller
never leaves a run in flight.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy import select, update

from config import settings
from interfaces.chain_execution import ChainExecutionAdapter, QuoteSource
from models.database import (
    AccountingBasis,
    ArbitrageRun,
    ArbitrageStrategy,
    AsyncSessionLocal,
    RunStatus,
)
from models.quote import InstructionSpec, NoRoute
from models.settlement import BalanceSnapshot, SettlementError, SettlementTimeout
from services import fee_payer_manager
from services.chain import get_chain_adapter
from services.circuit_breaker import SafeModeCircuitBreaker, circuit_breaker
from services.instruction_bundle import merge_leg_instructions
from services.jupiter_client import FallbackQuoteBlocked, QuoteSourceError
from services.profit_waterfall import ProfitThresholds, ProfitWaterfall, are_quotes_executable, profit_waterfall
from services.refill_dispatcher import RefillDispatcher, refill_dispatcher
from services.risk_ledger import count_open_trades, get_global_usage, get_strategy_usage, record_trade, strategy_locks
from services.risk_manager import evaluate_daily_caps
from services.scanner import describe_round_trip, quote_round_trip, quote_source_for, scan_strategy
from services.system_state import read_settings_snapshot
from utils.logger import execution_logger as logger
from utils.utcnow import utcnow
from utils.validation import same_address

# Extra wait on top of the adapter's own confirmation deadline.
_SUBMIT_GRACE_SECONDS = 30.0


class StaleQuoteBlocked(Exception):
    """Fresh quotes no longer support the approved opportunity."""


class RunNotFound(LookupError):
    pass


class SafeModeActive(RuntimeError):
    pass


class StrategyDisabled(RuntimeError):
    pass


@dataclass
class PreparedSubmit:
    """Everything the settle step needs once quoting is done."""

    adapter: ChainExecutionAdapter
    signer: Any
    owner: str
    mints: list[str]
    before: BalanceSnapshot
    instructions: list[InstructionSpec]
    lookup_tables: list[Any]
    estimate: int
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionOutcome:
    run_id: str
    status: str
    reason: Optional[str] = None
    estimated_profit: Optional[int] = None
    actual_profit: Optional[int] = None
    profit_drift: Optional[int] = None
    tx_signature: Optional[str] = None
    accounting_basis: Optional[str] = None
    refill_dispatched: bool = False
    safe_mode_tripped: bool = False

    @property
    def success(self) -> bool:
        return self.status == RunStatus.EXECUTED.value

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return payload


def accounting_basis_for(strategy: ArbitrageStrategy, adapter: ChainExecutionAdapter) -> AccountingBasis:
    """NATIVE when the round trip starts in the chain's (wrapped) native asset."""
    if same_address(adapter.chain, strategy.token_in, adapter.native_mint):
        return AccountingBasis.NATIVE
    return AccountingBasis.TOKEN_IN


def realized_profit(
    basis: AccountingBasis,
    before: BalanceSnapshot,
    after: BalanceSnapshot,
    *,
    token_in: str,
) -> int:
    """Balance delta on the chosen basis.

    Under NATIVE, ``token_in`` is the wrapped native token, so native plus
    wrapped balances are counted and wrapping or unwrapping inside the
    bundle nets out; transaction fees paid by the owner are included.
    """
    if basis == AccountingBasis.NATIVE:
        return (after.native + after.token(token_in)) - (before.native + before.token(token_in))
    return after.token(token_in) - before.token(token_in)


class AtomicExecutor:
    def __init__(
        self,
        session_factory=None,
        *,
        quote_source: Optional[QuoteSource] = None,
        waterfall: Optional[ProfitWaterfall] = None,
        thresholds: Optional[ProfitThresholds] = None,
        breaker: Optional[SafeModeCircuitBreaker] = None,
        dispatcher: Optional[RefillDispatcher] = None,
        executor_secret: Optional[str] = None,
        refill_trigger: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.quote_source = quote_source
        self.waterfall = waterfall or profit_waterfall
        self.thresholds = thresholds
        self.breaker = breaker or circuit_breaker
        self.dispatcher = dispatcher or refill_dispatcher
        self._executor_secret = executor_secret
        self.refill_trigger = int(settings.AUTO_REFILL_PROFIT_TRIGGER if refill_trigger is None else refill_trigger)
        self._in_flight: set[asyncio.Task] = set()

    @property
    def session_factory(self):
        return self._session_factory or AsyncSessionLocal

    def _secret(self, chain: str) -> Optional[str]:
        return self._executor_secret or settings.executor_secret_for(chain)

    def _quote_source_for(self, strategy: ArbitrageStrategy) -> QuoteSource:
        return self.quote_source or quote_source_for(strategy)

    # ==================== STAGE ====================

    async def execute_approved_runs(self, limit: Optional[int] = None) -> dict[str, Any]:
        """Execute approved runs oldest first; stop as soon as safe mode trips."""
        limit = int(limit or settings.EXECUTION_BATCH_LIMIT)
        async with self.session_factory() as session:
            snapshot = await read_settings_snapshot(session)
            if snapshot.safe_mode_enabled:
                logger.warning("Execution stage skipped: safe mode active", reason=snapshot.safe_mode_reason)
                return {"skipped": True, "reason": "Safe mode enabled", "executed_count": 0, "failed_count": 0}
            run_ids = list(
                (
                    await session.execute(
                        select(ArbitrageRun.id)
                        .where(
                            ArbitrageRun.status == RunStatus.SIMULATED.value,
                            ArbitrageRun.approved_for_auto_execution == True,  # noqa: E712
                        )
                        .order_by(ArbitrageRun.started_at.asc())
                        .limit(limit)
                    )
                )
                .scalars()
                .all()
            )

        results: list[dict[str, Any]] = []
        halted = False
        for run_id in run_ids:
            try:
                outcome = await self.execute_run(run_id, auto=True)
            except ValueError as exc:
                # Claimed by a concurrent caller between selection and execution.
                logger.info("Run skipped", run_id=run_id, reason=str(exc))
                continue
            results.append(outcome.to_dict())
            if outcome.safe_mode_tripped:
                halted = True
                break

        executed = [r for r in results if r["success"]]
        summary = {
            "skipped": False,
            "executed_count": len(executed),
            "failed_count": len(results) - len(executed),
            "total_pnl": sum(int(r["actual_profit"] or 0) for r in executed),
            "safe_mode_tripped": halted,
            "results": results,
        }
        logger.info(
            "Execution stage complete",
            executed=summary["executed_count"],
            failed=summary["failed_count"],
            safe_mode_tripped=halted,
        )
        return summary

    async def execute_strategy_now(self, strategy_id: str) -> ExecutionOutcome:
        """Manual path: scan the strategy now and execute the fresh run."""
        async with self.session_factory() as session:
            snapshot = await read_settings_snapshot(session)
            if snapshot.safe_mode_enabled:
                raise SafeModeActive(f"Safe mode enabled: {snapshot.safe_mode_reason}")
            strategy = await session.get(ArbitrageStrategy, strategy_id)
            if strategy is None:
                raise RunNotFound(f"Strategy {strategy_id} not found")
            if not strategy.is_enabled:
                raise StrategyDisabled(f"Strategy {strategy_id} is disabled")
            run = await scan_strategy(
                session,
                strategy,
                quote_source=self._quote_source_for(strategy),
                waterfall=self.waterfall,
                thresholds=self.thresholds,
            )
            run.approved_for_auto_execution = False
            run.decided_at = run.decided_at or utcnow()
            if run.status == RunStatus.FAILED.value:
                await session.commit()
                return ExecutionOutcome(run_id=run.id, status=run.status, reason=run.error_message)
            if run.error_message:
                run.status = RunStatus.FAILED.value
                run.run_type = "EXECUTION"
                run.decision_reason = run.error_message
                run.finished_at = utcnow()
                await session.commit()
                return ExecutionOutcome(
                    run_id=run.id,
                    status=run.status,
                    reason=run.error_message,
                    estimated_profit=run.estimated_profit,
                )
            run.decision_reason = "Manual execution"
            await session.commit()
            run_id = run.id
        return await self.execute_run(run_id, auto=False)

    # ==================== SINGLE RUN ====================

    async def _claim(self, run_id: str) -> tuple[Optional[ArbitrageStrategy], Optional[str]]:
        """Move the run to EXECUTION and re-check what approval assumed.

        The claim and the cap check share one cap-lock hold, so two claims
        for the same strategy always see each other. Returns the strategy
        and a refusal reason, if any.
        """
        async with self.session_factory() as session:
            run = await session.get(ArbitrageRun, run_id)
            if run is None:
                raise RunNotFound(f"Run {run_id} not found")
            strategy_id = run.strategy_id

        async with strategy_locks.for_caps(strategy_id):
            async with self.session_factory() as session:
                result = await session.execute(
                    update(ArbitrageRun)
                    .where(
                        ArbitrageRun.id == run_id,
                        ArbitrageRun.status == RunStatus.SIMULATED.value,
                        ArbitrageRun.run_type == "SCAN",
                    )
                    .values(run_type="EXECUTION")
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if not result.rowcount:
                    raise ValueError(f"Run {run_id} is already executing or finalized")
                try:
                    strategy = await session.get(ArbitrageStrategy, strategy_id)
                    return strategy, await self._refusal(session, run_id, strategy)
                except BaseException:
                    await asyncio.shield(self._release_claim(run_id))
                    raise

    async def _refusal(
        self,
        session,
        run_id: str,
        strategy: Optional[ArbitrageStrategy],
    ) -> Optional[str]:
        if strategy is None:
            return "Strategy not found"
        if not strategy.is_enabled:
            return "Strategy disabled"
        snapshot = await read_settings_snapshot(session)
        if snapshot.safe_mode_enabled:
            return "Safe mode is enabled"
        usage = await get_strategy_usage(session, strategy.id)
        global_usage = await get_global_usage(session)
        open_trades = await count_open_trades(session, strategy.id, exclude_run_id=run_id)
        global_open_trades = await count_open_trades(session, exclude_run_id=run_id)
        caps = evaluate_daily_caps(
            strategy=strategy,
            strategy_trades_today=usage.total_trades + open_trades,
            strategy_loss_today=usage.total_loss,
            global_trades_today=global_usage.total_trades + global_open_trades,
            global_loss_today=global_usage.total_loss,
            max_global_trades_per_day=snapshot.max_global_trades_per_day,
            max_global_daily_loss=snapshot.max_global_daily_loss,
        )
        return None if caps.allowed else caps.reason

    async def _release_claim(self, run_id: str) -> None:
        """Hand an unsubmitted run back to SCAN so the next stage retries it."""
        async with self.session_factory() as session:
            await session.execute(
                update(ArbitrageRun)
                .where(
                    ArbitrageRun.id == run_id,
                    ArbitrageRun.status == RunStatus.SIMULATED.value,
                    ArbitrageRun.run_type == "EXECUTION",
                )
                .values(run_type="SCAN")
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.warning("Run released before submit", run_id=run_id)

    async def execute_run(self, run_id: str, *, auto: bool = True) -> ExecutionOutcome:
        strategy, refusal = await self._claim(run_id)
        try:
            prepared = await self._prepare(run_id, strategy, refusal, auto=auto)
        except BaseException:
            # Nothing was sent; only an unfinished claim is left to undo.
            await asyncio.shield(self._release_claim(run_id))
            raise
        if isinstance(prepared, ExecutionOutcome):
            return prepared

        # Point of no return: settle and finalize even if the caller goes away.
        task = asyncio.create_task(
            self._settle(run_id, strategy, prepared, auto=auto),
            name=f"settle-{run_id}",
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def _prepare(
        self,
        run_id: str,
        strategy: Optional[ArbitrageStrategy],
        refusal: Optional[str],
        *,
        auto: bool,
    ) -> Union[ExecutionOutcome, PreparedSubmit]:
        """Everything up to the submit. Failures finalize the run here."""
        async with self.session_factory() as session:
            run = await session.get(ArbitrageRun, run_id)
            estimate = run.estimated_profit
            input_amount = int(run.input_amount or 0)

        log = logger.with_context(run_id=run_id, strategy_id=run.strategy_id)
        if refusal:
            log.warning("Execution refused", reason=refusal)
            return await self._finalize_failure(run_id, refusal, auto=auto, estimate=estimate)
        if strategy.use_flash_loan:
            return await self._finalize_failure(
                run_id,
                f"Flash loan execution is not supported on {strategy.chain}",
                auto=auto,
                estimate=estimate,
            )
        secret = self._secret(strategy.chain)
        if not secret:
            return await self._finalize_failure(run_id, "Executor wallet is not configured", auto=auto, estimate=estimate)

        details: dict[str, Any] = {}
        try:
            adapter = get_chain_adapter(strategy.chain, strategy.network)
            quote_source = self._quote_source_for(strategy)
            signer = adapter.load_signer(secret)
            owner = adapter.trading_address(signer)
            mints = [strategy.token_in, strategy.token_out]
            if not any(same_address(adapter.chain, mint, adapter.native_mint) for mint in mints):
                mints.append(adapter.native_mint)
            before = await adapter.snapshot_balances(owner, mints)
            details["balances_before"] = before.to_dict()

            trip = await quote_round_trip(quote_source, strategy, input_amount)
            if isinstance(trip.leg_a, NoRoute) or isinstance(trip.leg_b, NoRoute):
                raise StaleQuoteBlocked(f"blocked: stale quote (no route: {trip.no_route.reason})")
            check = are_quotes_executable(trip.leg_a, trip.leg_b)
            if not check.executable:
                raise FallbackQuoteBlocked(check.reason)
            result = self.waterfall.calculate(input_amount, trip.leg_a, trip.leg_b, self.thresholds)
            estimate = result.net_profit
            details.update(describe_round_trip(trip, result))
            if not result.meets_thresholds:
                raise StaleQuoteBlocked(
                    f"blocked: stale quote (net profit {result.net_profit}, "
                    f"{result.net_profit_bps} bps no longer clears thresholds)"
                )

            legs = await asyncio.gather(
                quote_source.get_swap_instructions(trip.leg_a, owner),
                quote_source.get_swap_instructions(trip.leg_b, owner),
            )
            bundle = merge_leg_instructions(*legs)
            lookup_tables = await adapter.resolve_lookup_tables(bundle.lookup_table_addresses)
            details["bundle"] = {
                "instructions": len(bundle.instructions),
                "duplicates_removed": bundle.duplicates_removed,
                "lookup_tables": bundle.lookup_table_addresses,
            }
        except (StaleQuoteBlocked, FallbackQuoteBlocked) as exc:
            log.warning("Execution blocked", reason=str(exc))
            return await self._finalize_failure(run_id, str(exc), auto=auto, estimate=estimate, details=details)
        except QuoteSourceError as exc:
            log.error("Quote source failed during execution", error=str(exc), status_code=exc.status_code)
            details["cause"] = str(exc.cause)[:1000] if exc.cause else None
            return await self._finalize_failure(
                run_id, f"Quote source error: {exc}", auto=auto, estimate=estimate, details=details
            )
        except SettlementError as exc:
            log.error("Pre-submit settlement call failed", error=str(exc))
            return await self._finalize_failure(run_id, str(exc), auto=auto, estimate=estimate, details=details)
        except Exception as exc:
            log.error("Execution preparation failed", error=str(exc), exc_info=exc)
            return await self._finalize_failure(
                run_id, f"Execution error: {exc}", auto=auto, estimate=estimate, details=details
            )

        return PreparedSubmit(
            adapter=adapter,
            signer=signer,
            owner=owner,
            mints=mints,
            before=before,
            instructions=bundle.instructions,
            lookup_tables=lookup_tables,
            estimate=estimate,
            details=details,
        )

    async def _settle(
        self,
        run_id: str,
        strategy: ArbitrageStrategy,
        prepared: PreparedSubmit,
        *,
        auto: bool,
    ) -> ExecutionOutcome:
        log = logger.with_context(run_id=run_id, strategy_id=strategy.id)
        adapter = prepared.adapter
        estimate = prepared.estimate
        details = prepared.details
        try:
            receipt = await asyncio.wait_for(
                adapter.submit_atomic(prepared.instructions, prepared.lookup_tables, prepared.signer),
                timeout=settings.SETTLEMENT_CONFIRM_TIMEOUT_SECONDS + _SUBMIT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            error = SettlementTimeout("Settlement did not resolve before the execution deadline")
            log.error("Settlement timed out", error=str(error))
            finalize = partial(
                self._finalize_failure, run_id, str(error), auto=auto, estimate=estimate, details=details
            )
            return await self._after_settlement(finalize, strategy, pnl=0)
        except SettlementError as exc:
            log.error("Settlement failed", error=str(exc), signature=exc.signature, kind=type(exc).__name__)
            finalize = partial(
                self._finalize_failure,
                run_id,
                str(exc),
                auto=auto,
                estimate=estimate,
                details=details,
                signature=exc.signature,
            )
            return await self._after_settlement(finalize, strategy, pnl=0)

        basis = accounting_basis_for(strategy, adapter)
        actual: Optional[int] = None
        try:
            after = await adapter.snapshot_balances(prepared.owner, prepared.mints)
            details["balances_after"] = after.to_dict()
            actual = realized_profit(
                basis,
                prepared.before,
                after,
                token_in=strategy.token_in,
            )
        except Exception as exc:
            log.error("Post-settlement balance snapshot failed", error=str(exc), signature=receipt.signature)
            details["reconciliation_error"] = str(exc)

        drift = actual - estimate if actual is not None else None
        details["settlement"] = {"slot": receipt.slot, "confirmation_status": receipt.confirmation_status}
        finalize = partial(
            self._finalize_success,
            run_id,
            auto=auto,
            estimate=estimate,
            actual=actual,
            drift=drift,
            basis=basis,
            signature=receipt.signature,
            details=details,
        )
        return await self._after_settlement(finalize, strategy, pnl=actual or 0)

    async def _finalize_success(
        self,
        run_id: str,
        *,
        auto: bool,
        estimate: int,
        actual: Optional[int],
        drift: Optional[int],
        basis: AccountingBasis,
        signature: str,
        details: dict[str, Any],
    ) -> ExecutionOutcome:
        async with self.session_factory() as session:
            run = await session.get(ArbitrageRun, run_id)
            run.status = RunStatus.EXECUTED.value
            run.auto_executed = auto
            run.estimated_profit = estimate
            run.actual_profit = actual
            run.profit_drift = drift
            run.accounting_basis = basis.value
            run.tx_signature = signature
            run.error_message = None
            run.finished_at = utcnow()
            run.details = {**(run.details or {}), **details}
            await session.commit()

        logger.info(
            "Run executed",
            run_id=run_id,
            signature=signature,
            estimated_profit=estimate,
            actual_profit=actual,
            drift=drift,
            basis=basis.value,
        )
        return ExecutionOutcome(
            run_id=run_id,
            status=RunStatus.EXECUTED.value,
            estimated_profit=estimate,
            actual_profit=actual,
            profit_drift=drift,
            tx_signature=signature,
            accounting_basis=basis.value,
        )

    async def _finalize_failure(
        self,
        run_id: str,
        reason: str,
        *,
        auto: bool,
        estimate: Optional[int],
        details: Optional[dict[str, Any]] = None,
        signature: Optional[str] = None,
    ) -> ExecutionOutcome:
        async with self.session_factory() as session:
            run = await session.get(ArbitrageRun, run_id)
            run.status = RunStatus.FAILED.value
            run.auto_executed = auto
            run.estimated_profit = estimate
            run.actual_profit = None
            run.profit_drift = None
            run.tx_signature = signature
            run.error_message = reason
            run.finished_at = utcnow()
            if details:
                run.details = {**(run.details or {}), **details}
            await session.commit()
        logger.warning("Run failed", run_id=run_id, reason=reason)
        return ExecutionOutcome(run_id=run_id, status=RunStatus.FAILED.value, reason=reason, estimated_profit=estimate)

    async def _after_settlement(
        self,
        finalize: Callable[[], Awaitable[ExecutionOutcome]],
        strategy: ArbitrageStrategy,
        *,
        pnl: int,
    ) -> ExecutionOutcome:
        """Finalize a run that reached the chain, then ledger, breaker and refill bookkeeping.

        The final run write and the ledger increment share one cap-lock
        hold, so a cap check never sees the trade in neither place.
        """
        async with strategy_locks.for_caps(strategy.id):
            outcome = await finalize()
            async with self.session_factory() as session:
                await record_trade(session, strategy.id, pnl, chain=strategy.chain)

        async with self.session_factory() as session:
            run = await session.get(ArbitrageRun, outcome.run_id)
            verdict = await self.breaker.evaluate_run(session, run, strategy)
            outcome.safe_mode_tripped = verdict.tripped

            if outcome.success and (strategy.is_for_fee_payer_refill or strategy.is_for_ops_refill):
                await fee_payer_manager.fulfill_refill_request(session, strategy.chain, outcome.run_id)

        if outcome.success and outcome.actual_profit is not None and outcome.actual_profit > self.refill_trigger:
            self.dispatcher.dispatch(
                f"Realized profit {outcome.actual_profit} exceeded refill trigger {self.refill_trigger}",
                source="ARBITRAGE_PROFIT",
                chain=strategy.chain,
                run_id=outcome.run_id,
            )
            outcome.refill_dispatched = True
        return outcome


atomic_executor = AtomicExecutor()
