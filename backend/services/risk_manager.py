from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class RiskCheck:
    key: str
    passed: bool
    detail: str
    score: float | None = None


@dataclass
class RiskResult:
    allowed: bool
    reason: str
    checks: list[RiskCheck] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "checks": [
                {"key": c.key, "passed": c.passed, "detail": c.detail, "score": c.score} for c in self.checks
            ],
        }


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return default


def _attr(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def evaluate_opportunity(
    *,
    strategy: Any,
    estimated_profit: int,
    estimated_gas_cost: int,
    auto_arbitrage_enabled: bool,
    safe_mode_enabled: bool,
    flash_loans_enabled: bool = False,
    strategy_trades_today: int = 0,
    strategy_loss_today: int = 0,
    global_trades_today: int = 0,
    global_loss_today: int = 0,
    max_global_trades_per_day: int = 0,
    max_global_daily_loss: int = 0,
    has_pending_refill: Optional[bool] = None,
    scan_error: Optional[str] = None,
) -> RiskResult:
    """Ordered approval checks for one simulated run.

    Trade counts passed in must already include approved runs that have
    not reached the ledger yet. The reason names the first failed check.
    """
    checks: list[RiskCheck] = []

    checks.append(
        RiskCheck(
            key="automation_enabled",
            passed=bool(auto_arbitrage_enabled),
            detail="enabled" if auto_arbitrage_enabled else "Auto arbitrage is disabled",
        )
    )
    checks.append(
        RiskCheck(
            key="safe_mode",
            passed=not safe_mode_enabled,
            detail="Safe mode is enabled" if safe_mode_enabled else "clear",
        )
    )

    if strategy is None:
        checks.append(RiskCheck(key="strategy_exists", passed=False, detail="Strategy not found"))
        return _result(checks)

    is_enabled = bool(_attr(strategy, "is_enabled", True))
    checks.append(
        RiskCheck(key="strategy_enabled", passed=is_enabled, detail="enabled" if is_enabled else "Strategy disabled")
    )

    checks.append(
        RiskCheck(
            key="scan_result",
            passed=not scan_error,
            detail=scan_error or "quotes valid",
        )
    )

    auto_enabled = bool(_attr(strategy, "is_auto_enabled", False))
    checks.append(
        RiskCheck(
            key="strategy_auto_enabled",
            passed=auto_enabled,
            detail="enabled" if auto_enabled else "Strategy auto-execution disabled",
        )
    )

    estimated_profit = _safe_int(estimated_profit)
    min_profit = _safe_int(_attr(strategy, "min_expected_profit"), 0)
    checks.append(
        RiskCheck(
            key="min_expected_profit",
            passed=estimated_profit >= min_profit,
            detail=f"Profit below threshold: {estimated_profit} < {min_profit}"
            if estimated_profit < min_profit
            else f"profit={estimated_profit} min={min_profit}",
            score=float(estimated_profit),
        )
    )

    gas_cost = _safe_int(estimated_gas_cost) or 1
    ratio = estimated_profit / gas_cost
    raw_ratio = _attr(strategy, "min_profit_to_gas_ratio")
    min_ratio = 1.0 if raw_ratio is None else _safe_float(raw_ratio, 1.0)
    checks.append(
        RiskCheck(
            key="profit_to_gas_ratio",
            passed=ratio >= min_ratio,
            detail=f"Profit/gas ratio too low: {ratio:.2f} < {min_ratio}"
            if ratio < min_ratio
            else f"ratio={ratio:.2f} min={min_ratio}",
            score=ratio,
        )
    )

    if bool(_attr(strategy, "use_flash_loan", False)):
        checks.append(
            RiskCheck(
                key="flash_loans_enabled",
                passed=bool(flash_loans_enabled),
                detail="enabled" if flash_loans_enabled else "Flash loans are disabled globally",
            )
        )

    if bool(_attr(strategy, "is_for_fee_payer_refill", False)) and has_pending_refill is not None:
        checks.append(
            RiskCheck(
                key="pending_refill",
                passed=bool(has_pending_refill),
                detail="pending request found" if has_pending_refill else "No pending refill requests",
            )
        )

    checks.extend(
        _cap_checks(
            strategy,
            strategy_trades_today=strategy_trades_today,
            strategy_loss_today=strategy_loss_today,
            global_trades_today=global_trades_today,
            global_loss_today=global_loss_today,
            max_global_trades_per_day=max_global_trades_per_day,
            max_global_daily_loss=max_global_daily_loss,
        )
    )
    return _result(checks)


def evaluate_daily_caps(
    *,
    strategy: Any,
    strategy_trades_today: int = 0,
    strategy_loss_today: int = 0,
    global_trades_today: int = 0,
    global_loss_today: int = 0,
    max_global_trades_per_day: int = 0,
    max_global_daily_loss: int = 0,
) -> RiskResult:
    """Only the daily trade and loss caps, for the last check before submit."""
    checks = _cap_checks(
        strategy,
        strategy_trades_today=strategy_trades_today,
        strategy_loss_today=strategy_loss_today,
        global_trades_today=global_trades_today,
        global_loss_today=global_loss_today,
        max_global_trades_per_day=max_global_trades_per_day,
        max_global_daily_loss=max_global_daily_loss,
    )
    return _result(checks, approved_reason="Within daily limits")


def _cap_checks(
    strategy: Any,
    *,
    strategy_trades_today: int,
    strategy_loss_today: int,
    global_trades_today: int,
    global_loss_today: int,
    max_global_trades_per_day: int,
    max_global_daily_loss: int,
) -> list[RiskCheck]:
    checks: list[RiskCheck] = []
    max_trades = _safe_int(_attr(strategy, "max_trades_per_day"), 0)
    checks.append(
        RiskCheck(
            key="strategy_trades_per_day",
            passed=max_trades <= 0 or strategy_trades_today < max_trades,
            detail=f"Daily trade limit reached: {strategy_trades_today}/{max_trades}"
            if max_trades > 0 and strategy_trades_today >= max_trades
            else f"trades={strategy_trades_today} max={max_trades or 'unlimited'}",
            score=float(strategy_trades_today),
        )
    )

    max_loss = _safe_int(_attr(strategy, "max_daily_loss"), 0)
    checks.append(
        RiskCheck(
            key="strategy_daily_loss",
            passed=max_loss <= 0 or strategy_loss_today < max_loss,
            detail=f"Daily loss limit reached: {strategy_loss_today}/{max_loss}"
            if max_loss > 0 and strategy_loss_today >= max_loss
            else f"loss={strategy_loss_today} max={max_loss or 'unlimited'}",
            score=float(strategy_loss_today),
        )
    )

    max_global_trades = _safe_int(max_global_trades_per_day, 0)
    checks.append(
        RiskCheck(
            key="global_trades_per_day",
            passed=max_global_trades <= 0 or global_trades_today < max_global_trades,
            detail=f"Global daily trade limit reached: {global_trades_today}/{max_global_trades}"
            if max_global_trades > 0 and global_trades_today >= max_global_trades
            else f"trades={global_trades_today} max={max_global_trades or 'unlimited'}",
            score=float(global_trades_today),
        )
    )

    max_global_loss = _safe_int(max_global_daily_loss, 0)
    checks.append(
        RiskCheck(
            key="global_daily_loss",
            passed=max_global_loss <= 0 or global_loss_today < max_global_loss,
            detail="Global daily loss limit reached"
            if max_global_loss > 0 and global_loss_today >= max_global_loss
            else f"loss={global_loss_today} max={max_global_loss or 'unlimited'}",
            score=float(global_loss_today),
        )
    )
    return checks


def _result(checks: list[RiskCheck], approved_reason: str = "Approved for auto-execution") -> RiskResult:
    failed = [check for check in checks if not check.passed]
    if failed:
        return RiskResult(allowed=False, reason=failed[0].detail, checks=checks)
    return RiskResult(allowed=True, reason=approved_reason, checks=checks)
