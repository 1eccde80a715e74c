import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import SOL_MINT, USDC_MINT, make_quote
from models.quote import NoRoute
from services.profit_waterfall import (
    ProfitThresholds,
    ProfitWaterfall,
    are_quotes_executable,
    meets_thresholds,
    net_profit_bps,
)

THRESHOLDS = ProfitThresholds(min_net_profit=150_000, min_profit_bps=10, max_notional=10_000_000_000)


def _scenario_legs(*, fallback_b: bool = False):
    leg_a = make_quote(SOL_MINT, USDC_MINT, 100_000_000, 101_000_000, fee=140_000, priority_fee=2_500)
    leg_b = make_quote(
        USDC_MINT,
        SOL_MINT,
        101_000_000,
        100_500_000,
        fee=100_000,
        priority_fee=2_500,
        fallback=fallback_b,
    )
    return leg_a, leg_b


def test_round_trip_costs_and_net_profit():
    waterfall = ProfitWaterfall(compute_budget_fee=5_000, slippage_buffer_bps=5)
    leg_a, leg_b = _scenario_legs()

    result = waterfall.calculate(100_000_000, leg_a, leg_b, THRESHOLDS)

    assert result.gross_profit == 500_000
    assert result.costs.route_fees == 240_000
    assert result.costs.priority_fee == 5_000
    assert result.costs.compute_budget == 5_000
    assert result.costs.slippage_buffer == 50_000
    assert result.costs.total_costs == 300_000
    assert result.net_profit == 200_000
    assert result.net_profit_bps == 20
    assert result.is_profitable is True
    assert result.meets_thresholds is True


def test_net_profit_is_gross_minus_itemized_costs():
    waterfall = ProfitWaterfall(compute_budget_fee=7_000, slippage_buffer_bps=13)
    leg_a = make_quote(SOL_MINT, USDC_MINT, 123_456_789, 98_765_432, fee=33_333)
    leg_b = make_quote(USDC_MINT, SOL_MINT, 98_765_432, 124_000_001, fee=11_111, priority_fee=4_321)

    first = waterfall.calculate(123_456_789, leg_a, leg_b, THRESHOLDS)
    second = waterfall.calculate(123_456_789, leg_a, leg_b, THRESHOLDS)

    costs = first.costs
    assert first.net_profit == first.gross_profit - (
        costs.route_fees + costs.priority_fee + costs.compute_budget + costs.slippage_buffer
    )
    assert costs.total_costs == first.gross_profit - first.net_profit
    assert first == second


def test_ata_rent_is_reported_but_not_subtracted():
    waterfall = ProfitWaterfall(compute_budget_fee=0, default_priority_fee=0, slippage_buffer_bps=0, ata_rent=2_039_280)
    leg_a = make_quote(SOL_MINT, USDC_MINT, 1_000, 1_000)
    leg_b = make_quote(USDC_MINT, SOL_MINT, 1_000, 1_500)

    result = waterfall.calculate(1_000, leg_a, leg_b, THRESHOLDS)

    assert result.costs.ata_rent == 2_039_280
    assert result.net_profit == 500


def test_missing_priority_fee_uses_default_per_leg():
    waterfall = ProfitWaterfall(compute_budget_fee=0, default_priority_fee=1_000, slippage_buffer_bps=0)
    leg_a = make_quote(SOL_MINT, USDC_MINT, 10_000, 10_000)
    leg_b = make_quote(USDC_MINT, SOL_MINT, 10_000, 10_000, priority_fee=0)

    result = waterfall.calculate(10_000, leg_a, leg_b, THRESHOLDS)

    assert result.costs.priority_fee == 2_000


def test_slippage_buffer_rounds_up():
    waterfall = ProfitWaterfall(slippage_buffer_bps=5)
    assert waterfall.slippage_buffer_for(1) == 1
    assert waterfall.slippage_buffer_for(20_000) == 10
    assert waterfall.slippage_buffer_for(0) == 0


def test_legs_must_chain():
    waterfall = ProfitWaterfall()
    leg_a = make_quote(SOL_MINT, USDC_MINT, 100, 90)
    leg_b = make_quote(USDC_MINT, SOL_MINT, 91, 120)

    with pytest.raises(ValueError, match="must equal leg A output"):
        waterfall.calculate(100, leg_a, leg_b)


def test_threshold_boundaries_are_inclusive():
    assert meets_thresholds(150_000, 10, 10_000_000_000, THRESHOLDS) is True
    assert meets_thresholds(149_999, 10, 1_000, THRESHOLDS) is False
    assert meets_thresholds(150_000, 9, 1_000, THRESHOLDS) is False
    assert meets_thresholds(150_000, 10, 10_000_000_001, THRESHOLDS) is False


def test_net_profit_bps_floors_and_handles_zero_notional():
    assert net_profit_bps(200_000, 100_000_000) == 20
    assert net_profit_bps(199_999, 100_000_000) == 19
    assert net_profit_bps(-200_000, 100_000_000) == -20
    assert net_profit_bps(500, 0) == 0


def test_fallback_quote_is_never_executable():
    leg_a, leg_b = _scenario_legs(fallback_b=True)

    check = are_quotes_executable(leg_a, leg_b)

    assert check.executable is False
    assert check.reason == "blocked: quote is mock data (leg B)"
    assert are_quotes_executable(leg_b, leg_a).reason == "blocked: quote is mock data (leg A)"


def test_real_quotes_are_executable_and_missing_legs_are_not():
    leg_a, leg_b = _scenario_legs()

    assert are_quotes_executable(leg_a, leg_b).executable is True
    no_route = NoRoute(input_mint=USDC_MINT, output_mint=SOL_MINT, amount=1)
    assert are_quotes_executable(leg_a, no_route).executable is False
    assert are_quotes_executable(leg_a, None).reason == "missing quote for leg B"


def test_fallback_quote_still_prices_for_display():
    waterfall = ProfitWaterfall(compute_budget_fee=5_000, slippage_buffer_bps=5)
    leg_a, leg_b = _scenario_legs(fallback_b=True)

    result = waterfall.calculate(100_000_000, leg_a, leg_b, THRESHOLDS)

    assert result.net_profit == 200_000
