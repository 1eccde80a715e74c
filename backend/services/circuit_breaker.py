"""Safe-mode circuit breaker.

Trips the global halt when a settled run realizes materially less than its
estimate, or when daily loss for a strategy or the whole book passes its
cap. Only an operator can clear it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import AlertType, ArbitrageRun, ArbitrageStrategy
from services.alerts import acknowledge_open_alerts, raise_alert
from services.risk_ledger import get_global_usage, get_strategy_usage
from services.system_state import SettingsSnapshot, apply_state_transition, read_settings_snapshot
from utils.logger import get_logger

logger = get_logger("circuit_breaker")


@dataclass
class BreakerVerdict:
    tripped: bool = False
    reasons: list[str] = field(default_factory=list)
    newly_tripped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"tripped": self.tripped, "reasons": list(self.reasons), "newly_tripped": self.newly_tripped}


class SafeModeCircuitBreaker:
    def __init__(self, divergence_ratio: Optional[float] = None, min_divergence_delta: Optional[int] = None):
        self.divergence_ratio = Decimal(
            str(settings.MAX_PROFIT_DIVERGENCE_RATIO if divergence_ratio is None else divergence_ratio)
        )
        self.min_divergence_delta = int(
            settings.MIN_DIVERGENCE_DELTA if min_divergence_delta is None else min_divergence_delta
        )

    def divergence_reason(self, estimated: Optional[int], actual: Optional[int]) -> Optional[str]:
        """Reason string when ``actual`` falls materially short of ``estimated``."""
        if estimated is None or actual is None or estimated <= 0:
            return None
        floor = Decimal(estimated) * (Decimal(1) - self.divergence_ratio)
        shortfall = estimated - actual
        if Decimal(actual) < floor and shortfall >= self.min_divergence_delta:
            return f"Profit divergence: realized {actual} vs estimated {estimated} (shortfall {shortfall})"
        return None

    async def evaluate_run(
        self,
        session: AsyncSession,
        run: ArbitrageRun,
        strategy: Optional[ArbitrageStrategy],
        snapshot: Optional[SettingsSnapshot] = None,
    ) -> BreakerVerdict:
        """Check one finalized run plus today's ledger; trip safe mode on breach."""
        snapshot = snapshot or await read_settings_snapshot(session)
        causes: list[tuple[AlertType, str, dict[str, Any]]] = []

        reason = self.divergence_reason(run.estimated_profit, run.actual_profit)
        if reason:
            causes.append(
                (
                    AlertType.PROFIT_DIVERGENCE,
                    reason,
                    {"estimated_profit": run.estimated_profit, "actual_profit": run.actual_profit},
                )
            )

        if strategy is not None and int(strategy.max_daily_loss or 0) > 0:
            usage = await get_strategy_usage(session, strategy.id)
            if usage.total_loss > int(strategy.max_daily_loss):
                causes.append(
                    (
                        AlertType.DAILY_LOSS_BREACH,
                        f"Strategy {strategy.name} daily loss {usage.total_loss} exceeds cap {strategy.max_daily_loss}",
                        {"scope": "strategy", "total_loss": usage.total_loss, "cap": int(strategy.max_daily_loss)},
                    )
                )

        if snapshot.max_global_daily_loss > 0:
            global_usage = await get_global_usage(session)
            if global_usage.total_loss >= snapshot.max_global_daily_loss:
                causes.append(
                    (
                        AlertType.DAILY_LOSS_BREACH,
                        f"Global daily loss {global_usage.total_loss} reached cap {snapshot.max_global_daily_loss}",
                        {"scope": "global", "total_loss": global_usage.total_loss, "cap": snapshot.max_global_daily_loss},
                    )
                )

        if not causes:
            return BreakerVerdict()

        verdict = BreakerVerdict(tripped=True, reasons=[message for _, message, _ in causes])
        verdict.newly_tripped = await self.trip(
            session,
            verdict.reasons[0],
            causes=causes,
            chain=run.chain,
            run_id=run.id,
            strategy_id=run.strategy_id,
        )
        return verdict

    async def trip(
        self,
        session: AsyncSession,
        reason: str,
        *,
        causes: Optional[list[tuple[AlertType, str, dict[str, Any]]]] = None,
        chain: Optional[str] = None,
        run_id: Optional[str] = None,
        strategy_id: Optional[str] = None,
        operator: Optional[str] = None,
    ) -> bool:
        """Enter safe mode. Returns True only for the transition that flipped the flag."""
        _, changed = await apply_state_transition(
            session,
            "trip_safe_mode",
            reason=reason,
            operator=operator or "circuit_breaker",
        )
        if changed:
            await raise_alert(
                session,
                AlertType.SAFE_MODE_TRIPPED,
                f"Safe mode tripped: {reason}",
                severity="critical",
                chain=chain,
                run_id=run_id,
                strategy_id=strategy_id,
            )
            logger.critical("Safe mode tripped", reason=reason, run_id=run_id, strategy_id=strategy_id)
        for alert_type, message, details in causes or []:
            await raise_alert(
                session,
                alert_type,
                message,
                severity="critical",
                chain=chain,
                run_id=run_id,
                strategy_id=strategy_id,
                details=details,
            )
        return changed


async def clear_safe_mode(session: AsyncSession, operator: str) -> dict[str, Any]:
    """Operator action: acknowledge alerts raised during the trip, then clear the flag."""
    if not operator:
        raise ValueError("operator is required to clear safe mode")
    before = await read_settings_snapshot(session)
    acknowledged = await acknowledge_open_alerts(session, operator, since=before.safe_mode_triggered_at)
    snapshot, changed = await apply_state_transition(session, "clear_safe_mode", operator=operator)
    logger.info("Safe mode cleared", operator=operator, acknowledged_alerts=acknowledged, changed=changed)
    return {"settings": snapshot.to_dict(), "acknowledged_alerts": acknowledged, "cleared": changed}


circuit_breaker = SafeModeCircuitBreaker()
