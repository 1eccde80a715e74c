"""Scan stage: quote every enabled strategy's round trip and record a run.

Each scan produces exactly one ``ArbitrageRun``:

* quotes priced and clearing thresholds   -> SIMULATED, awaiting decision
* no route / fallback price / below bar   -> SIMULATED with ``error_message``
  (the decision stage rejects it with that reason)
* invalid strategy config / transport err -> FAILED, decided immediately
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select

from config import settings
from interfaces.chain_execution import QuoteSource
from models.database import ArbitrageRun, ArbitrageStrategy, AsyncSessionLocal, RunPurpose, RunStatus
from models.quote import FallbackQuote, NoRoute, QuoteResult, RealQuote
from services.chain import get_quote_source
from services.chain.evm_networks import is_evm_chain
from services.jupiter_client import QuoteSourceError, jupiter_client, validate_venue_name
from services.profit_waterfall import ProfitThresholds, ProfitWaterfall, WaterfallResult, profit_waterfall
from services.zerox_client import validate_source_name
from utils.logger import scanner_logger as logger
from utils.utcnow import utcnow
from utils.validation import same_address, validate_chain_address


@dataclass
class RoundTrip:
    """Both legs of one round trip; leg B is absent when leg A has no route."""

    input_amount: int
    leg_a: QuoteResult
    leg_b: Optional[QuoteResult] = None

    @property
    def no_route(self) -> Optional[NoRoute]:
        for leg in (self.leg_a, self.leg_b):
            if isinstance(leg, NoRoute):
                return leg
        return None

    @property
    def is_fallback(self) -> bool:
        return isinstance(self.leg_a, FallbackQuote) or isinstance(self.leg_b, FallbackQuote)

    @property
    def priced(self) -> bool:
        return isinstance(self.leg_a, (RealQuote, FallbackQuote)) and isinstance(
            self.leg_b, (RealQuote, FallbackQuote)
        )


def run_purpose_for(strategy: ArbitrageStrategy) -> str:
    if strategy.is_for_fee_payer_refill:
        return RunPurpose.FEE_PAYER_REFILL.value
    if strategy.is_for_ops_refill:
        return RunPurpose.OPS_REFILL.value
    return RunPurpose.MANUAL.value


def trade_amount_for(strategy: ArbitrageStrategy, thresholds: ProfitThresholds) -> int:
    """Configured size, capped by the strategy and global notional limits."""
    amount = int(strategy.trade_amount or 0)
    if strategy.use_flash_loan and strategy.flash_loan_amount:
        amount = int(strategy.flash_loan_amount)
    caps = [thresholds.max_notional]
    if strategy.max_trade_notional:
        caps.append(int(strategy.max_trade_notional))
    return min([amount, *[cap for cap in caps if cap > 0]])


def quote_source_for(strategy: ArbitrageStrategy) -> QuoteSource:
    """Jupiter prices Solana strategies; EVM strategies get their chain's 0x client."""
    if str(strategy.chain or "SOLANA").upper() == "SOLANA":
        return jupiter_client
    return get_quote_source(strategy.chain, strategy.network)


def validate_strategy_config(strategy: ArbitrageStrategy) -> list[str]:
    errors: list[str] = []
    chain = str(strategy.chain or "SOLANA").upper()
    if chain != "SOLANA" and not is_evm_chain(chain):
        return [f"chain: unsupported chain '{strategy.chain}'"]
    validate_venue = validate_venue_name if chain == "SOLANA" else validate_source_name
    for label, mint in (("token_in", strategy.token_in), ("token_out", strategy.token_out)):
        try:
            validate_chain_address(strategy.chain, mint)
        except ValueError as exc:
            errors.append(f"{label}: {exc}")
    if strategy.token_in and same_address(chain, strategy.token_in, strategy.token_out):
        errors.append("token_in and token_out must differ")
    for label, venue in (("venue_a", strategy.venue_a), ("venue_b", strategy.venue_b)):
        if not venue:
            continue
        valid, suggestion = validate_venue(venue)
        if not valid:
            hint = f" (did you mean '{suggestion}'?)" if suggestion else ""
            errors.append(f"{label}: unsupported venue '{venue}'{hint}")
    if int(strategy.trade_amount or 0) <= 0:
        errors.append("trade_amount must be positive")
    return errors


async def quote_round_trip(
    quote_source: QuoteSource,
    strategy: ArbitrageStrategy,
    amount: int,
) -> RoundTrip:
    """Leg A token_in -> token_out, then leg B back with leg A's exact output."""
    leg_a = await quote_source.get_quote(
        strategy.token_in,
        strategy.token_out,
        amount,
        slippage_bps=strategy.slippage_bps,
        allowed_venues=[strategy.venue_a] if strategy.venue_a else None,
    )
    if isinstance(leg_a, NoRoute):
        return RoundTrip(input_amount=amount, leg_a=leg_a)
    leg_b = await quote_source.get_quote(
        strategy.token_out,
        strategy.token_in,
        leg_a.out_amount,
        slippage_bps=strategy.slippage_bps,
        allowed_venues=[strategy.venue_b] if strategy.venue_b else None,
    )
    return RoundTrip(input_amount=amount, leg_a=leg_a, leg_b=leg_b)


def describe_round_trip(trip: RoundTrip, result: Optional[WaterfallResult]) -> dict[str, Any]:
    details: dict[str, Any] = {
        "leg_a": describe_leg(trip.leg_a),
        "leg_b": describe_leg(trip.leg_b),
    }
    if result is not None:
        details["waterfall"] = result.to_dict()
    return details


def describe_leg(leg: Optional[QuoteResult]) -> Optional[dict[str, Any]]:
    if leg is None:
        return None
    if isinstance(leg, NoRoute):
        return {"no_route": True, "reason": leg.reason}
    return {
        "in_amount": leg.in_amount,
        "out_amount": leg.out_amount,
        "venues": leg.venues,
        "route_fees": leg.route_fee_total,
        "price_impact_pct": leg.price_impact_pct,
        "is_fallback": leg.is_fallback,
    }


def _flash_loan_fee(strategy: ArbitrageStrategy, amount: int) -> int:
    if not strategy.use_flash_loan or not strategy.flash_loan_fee_bps:
        return 0
    return -((-amount * int(strategy.flash_loan_fee_bps)) // 10_000)


async def scan_strategy(
    session,
    strategy: ArbitrageStrategy,
    *,
    quote_source: Optional[QuoteSource] = None,
    waterfall: Optional[ProfitWaterfall] = None,
    thresholds: Optional[ProfitThresholds] = None,
) -> ArbitrageRun:
    """Quote one strategy and persist the resulting run."""
    waterfall = waterfall or profit_waterfall
    thresholds = thresholds or ProfitThresholds.from_settings()

    run = ArbitrageRun(
        id=uuid.uuid4().hex,
        strategy_id=strategy.id,
        chain=strategy.chain,
        status=RunStatus.SIMULATED.value,
        run_type="SCAN",
        purpose=run_purpose_for(strategy),
        started_at=utcnow(),
        used_flash_loan=bool(strategy.use_flash_loan),
        details={},
    )

    errors = validate_strategy_config(strategy)
    if errors:
        run.status = RunStatus.FAILED.value
        run.error_message = "Validation failed: " + "; ".join(errors)
        run.approved_for_auto_execution = False
        run.decision_reason = run.error_message
        run.decided_at = utcnow()
        run.finished_at = utcnow()
        session.add(run)
        await session.commit()
        logger.warning("Strategy failed validation", strategy_id=strategy.id, errors=errors)
        return run

    quote_source = quote_source or quote_source_for(strategy)
    amount = trade_amount_for(strategy, thresholds)
    run.input_amount = amount
    if amount < int(strategy.trade_amount or 0):
        run.details = {**run.details, "notional_capped_from": int(strategy.trade_amount)}

    try:
        trip = await quote_round_trip(quote_source, strategy, amount)
    except QuoteSourceError as exc:
        run.status = RunStatus.FAILED.value
        run.error_message = f"Quote source error: {exc}"
        run.details = {**run.details, "status_code": exc.status_code, "cause": str(exc.cause)[:1000] if exc.cause else None}
        run.approved_for_auto_execution = False
        run.decision_reason = run.error_message
        run.decided_at = utcnow()
        run.finished_at = utcnow()
        session.add(run)
        await session.commit()
        logger.error("Quote source failed", strategy_id=strategy.id, error=str(exc), status_code=exc.status_code)
        return run

    result: Optional[WaterfallResult] = None
    no_route = trip.no_route
    if no_route is not None:
        run.error_message = f"No route: {no_route.reason}"
    else:
        result = waterfall.calculate(amount, trip.leg_a, trip.leg_b, thresholds)
        flash_fee = _flash_loan_fee(strategy, amount)
        run.estimated_profit = result.net_profit - flash_fee
        run.estimated_gas_cost = result.costs.priority_fee + result.costs.compute_budget
        run.is_fallback_quote = trip.is_fallback
        if trip.is_fallback:
            leg = "leg A" if isinstance(trip.leg_a, FallbackQuote) else "leg B"
            run.error_message = f"blocked: quote is mock data ({leg})"
        elif not result.meets_thresholds:
            run.error_message = (
                f"Below profit thresholds: net={result.net_profit} bps={result.net_profit_bps} "
                f"notional={amount}"
            )
        if flash_fee:
            run.details = {**run.details, "flash_loan_fee": flash_fee}

    run.details = {**run.details, **describe_round_trip(trip, result)}
    session.add(run)
    await session.commit()

    logger.info(
        "Strategy scanned",
        strategy_id=strategy.id,
        run_id=run.id,
        input_amount=amount,
        estimated_profit=run.estimated_profit,
        fallback=run.is_fallback_quote,
        note=run.error_message,
    )
    return run


async def scan_all(
    session_factory=None,
    *,
    quote_source: Optional[QuoteSource] = None,
    strategy_ids: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Scan every enabled strategy; strategies on different chains run concurrently."""
    session_factory = session_factory or AsyncSessionLocal
    async with session_factory() as session:
        query = select(ArbitrageStrategy).where(ArbitrageStrategy.is_enabled == True)  # noqa: E712
        if strategy_ids:
            query = query.where(ArbitrageStrategy.id.in_(strategy_ids))
        strategies = list((await session.execute(query.order_by(ArbitrageStrategy.created_at.asc()))).scalars().all())

    by_chain: dict[str, list[str]] = {}
    for strategy in strategies:
        by_chain.setdefault(strategy.chain, []).append(strategy.id)

    async def _scan_one(strategy_id: str, semaphore: asyncio.Semaphore) -> dict[str, Any]:
        async with semaphore:
            async with session_factory() as session:
                strategy = await session.get(ArbitrageStrategy, strategy_id)
                try:
                    run = await scan_strategy(session, strategy, quote_source=quote_source)
                except Exception as exc:
                    logger.error("Scan crashed", strategy_id=strategy_id, exc_info=exc)
                    return {"strategy_id": strategy_id, "error": str(exc)}
                return {
                    "strategy_id": strategy_id,
                    "run_id": run.id,
                    "status": run.status,
                    "estimated_profit": run.estimated_profit,
                    "note": run.error_message,
                }

    async def _scan_chain(chain: str, ids: list[str]) -> list[dict[str, Any]]:
        semaphore = asyncio.Semaphore(max(1, settings.SCAN_CONCURRENCY_PER_CHAIN))
        return list(await asyncio.gather(*(_scan_one(sid, semaphore) for sid in ids)))

    chain_results = await asyncio.gather(*(_scan_chain(chain, ids) for chain, ids in by_chain.items()))
    results = [item for group in chain_results for item in group]
    errors = [item for item in results if item.get("error")]
    opportunities = [
        item for item in results if item.get("status") == RunStatus.SIMULATED.value and not item.get("note")
    ]
    summary = {
        "strategies_scanned": len(strategies),
        "chains": sorted(by_chain),
        "runs_created": len(results) - len(errors),
        "opportunities": len(opportunities),
        "errors": len(errors),
        "results": results,
    }
    logger.info(
        "Scan stage complete",
        strategies=len(strategies),
        opportunities=len(opportunities),
        errors=len(errors),
    )
    return summary
