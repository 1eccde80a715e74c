"""Profit waterfall for a two-leg round trip.

Every figure is an exact integer in the base asset's smallest unit:

    gross  = leg_b.out_amount - input_amount
    costs  = route fees (both legs) + priority fees + compute budget
             + slippage buffer (SLIPPAGE_BUFFER_BPS of notional, rounded up)
    net    = gross - costs
    bps    = net * 10_000 // input_amount   (0 when input_amount <= 0)

Associated-token-account rent is refundable, so it is reported in the
breakdown but never subtracted.

Usage:
    result = profit_waterfall.calculate(100_000_000, leg_a, leg_b)
    if result.meets_thresholds and are_quotes_executable(leg_a, leg_b).executable:
        ...
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from config import settings
from models.quote import FallbackQuote, PricedQuote, QuoteResult, RealQuote


@dataclass(frozen=True)
class ProfitThresholds:
    min_net_profit: int
    min_profit_bps: int
    max_notional: int

    @classmethod
    def from_settings(cls) -> "ProfitThresholds":
        return cls(
            min_net_profit=int(settings.MIN_NET_PROFIT),
            min_profit_bps=int(settings.MIN_PROFIT_BPS),
            max_notional=int(settings.MAX_NOTIONAL),
        )


@dataclass(frozen=True)
class CostBreakdown:
    route_fees: int
    priority_fee: int
    compute_budget: int
    slippage_buffer: int
    ata_rent: int  # informational
    total_costs: int


@dataclass(frozen=True)
class WaterfallResult:
    input_amount: int
    final_amount: int
    gross_profit: int
    costs: CostBreakdown
    net_profit: int
    net_profit_bps: int
    is_profitable: bool
    meets_thresholds: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExecutableCheck:
    executable: bool
    reason: Optional[str] = None


def _ceil_div(numerator: int, denominator: int) -> int:
    return -((-numerator) // denominator)


def net_profit_bps(net_profit: int, input_amount: int) -> int:
    if input_amount <= 0:
        return 0
    return (net_profit * 10_000) // input_amount


def meets_thresholds(net_profit: int, profit_bps: int, input_amount: int, thresholds: ProfitThresholds) -> bool:
    return (
        net_profit >= thresholds.min_net_profit
        and profit_bps >= thresholds.min_profit_bps
        and input_amount <= thresholds.max_notional
    )


class ProfitWaterfall:
    """Conservative net-profit estimator for round-trip quotes."""

    def __init__(
        self,
        compute_budget_fee: Optional[int] = None,
        default_priority_fee: Optional[int] = None,
        slippage_buffer_bps: Optional[int] = None,
        ata_rent: Optional[int] = None,
    ):
        self.compute_budget_fee = int(settings.COMPUTE_BUDGET_FEE if compute_budget_fee is None else compute_budget_fee)
        self.default_priority_fee = int(
            settings.DEFAULT_PRIORITY_FEE if default_priority_fee is None else default_priority_fee
        )
        self.slippage_buffer_bps = int(
            settings.SLIPPAGE_BUFFER_BPS if slippage_buffer_bps is None else slippage_buffer_bps
        )
        self.ata_rent = int(settings.ATA_RENT_EXEMPT if ata_rent is None else ata_rent)

    def priority_fee_for(self, quote: PricedQuote) -> int:
        if quote.priority_fee is None or quote.priority_fee <= 0:
            return self.default_priority_fee
        return int(quote.priority_fee)

    def slippage_buffer_for(self, input_amount: int) -> int:
        if input_amount <= 0:
            return 0
        return _ceil_div(input_amount * self.slippage_buffer_bps, 10_000)

    def calculate(
        self,
        input_amount: int,
        leg_a: PricedQuote,
        leg_b: PricedQuote,
        thresholds: Optional[ProfitThresholds] = None,
    ) -> WaterfallResult:
        """Run the waterfall. Raises ``ValueError`` when the legs do not chain."""
        input_amount = int(input_amount)
        if leg_b.in_amount != leg_a.out_amount:
            raise ValueError(
                f"Leg B input ({leg_b.in_amount}) must equal leg A output ({leg_a.out_amount})"
            )
        limits = thresholds or ProfitThresholds.from_settings()

        gross_profit = leg_b.out_amount - input_amount
        route_fees = leg_a.route_fee_total + leg_b.route_fee_total
        priority_fee = self.priority_fee_for(leg_a) + self.priority_fee_for(leg_b)
        slippage_buffer = self.slippage_buffer_for(input_amount)
        total_costs = route_fees + priority_fee + self.compute_budget_fee + slippage_buffer

        net_profit = gross_profit - total_costs
        bps = net_profit_bps(net_profit, input_amount)

        return WaterfallResult(
            input_amount=input_amount,
            final_amount=leg_b.out_amount,
            gross_profit=gross_profit,
            costs=CostBreakdown(
                route_fees=route_fees,
                priority_fee=priority_fee,
                compute_budget=self.compute_budget_fee,
                slippage_buffer=slippage_buffer,
                ata_rent=self.ata_rent,
                total_costs=total_costs,
            ),
            net_profit=net_profit,
            net_profit_bps=bps,
            is_profitable=net_profit > 0,
            meets_thresholds=meets_thresholds(net_profit, bps, input_amount, limits),
        )


def are_quotes_executable(leg_a: Optional[QuoteResult], leg_b: Optional[QuoteResult]) -> ExecutableCheck:
    """Fail closed on anything other than two real quotes."""
    for label, quote in (("leg A", leg_a), ("leg B", leg_b)):
        if isinstance(quote, FallbackQuote):
            return ExecutableCheck(False, f"blocked: quote is mock data ({label})")
        if not isinstance(quote, RealQuote):
            return ExecutableCheck(False, f"missing quote for {label}")
    return ExecutableCheck(True)


# Module-level singleton for convenient import
profit_waterfall = ProfitWaterfall()
