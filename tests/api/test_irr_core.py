#!/usr/bin/env python3
"""
Core tests for windcube.finance.irr

We verify:
- npv() matches the documented example and is the plain sum at rate 0.
- irr() recovers simple closed-form roots, including year gaps.
- degenerate cashflows (no sign change, single value) give 0 with a flag.
- a rate held at the solver window is clamped, never reported converged.
"""

import pytest

from windcube.contracts import TimeSeriesPoint
from windcube.finance.irr import as_year_values, irr, npv, solve_irr


def test_npv_matches_doc_example():
    """
    Example from irr.py docstring:

        >>> npv([-1000, 500, 500, 500], 0.10)
        243.426...
    """
    value = npv([-1000.0, 500.0, 500.0, 500.0], 0.10)

    assert value == pytest.approx(243.425995, rel=1e-6, abs=1e-6)


def test_npv_at_zero_rate_is_plain_sum():
    cashflows = [(0, -1000.0), (1, 300.0), (2, 400.0), (5, 500.0)]

    assert npv(cashflows, 0.0) == pytest.approx(200.0)


def test_npv_uses_point_years_not_positions():
    points = [TimeSeriesPoint(0, -100.0), TimeSeriesPoint(2, 121.0)]

    assert npv(points, 0.10) == pytest.approx(0.0, abs=1e-9)


def test_irr_single_period_root():
    rate = irr([(0, -100.0), (1, 110.0)])

    assert rate == pytest.approx(0.10, abs=1e-6)


def test_irr_matches_expected_range_for_example():
    """
    The classic three-year annuity example sits around 23.4%.
    """
    result = solve_irr([-1000.0, 500.0, 500.0, 500.0])

    assert result.converged
    assert not result.degenerate
    assert result.rate == pytest.approx(0.2343, abs=1e-3)
    assert npv([-1000.0, 500.0, 500.0, 500.0], result.rate) == pytest.approx(0.0, abs=1e-4)


def test_irr_respects_year_gaps():
    rate = irr([TimeSeriesPoint(0, -100.0), TimeSeriesPoint(2, 121.0)])

    assert rate == pytest.approx(0.10, abs=1e-6)


@pytest.mark.parametrize(
    "cashflows",
    [
        [100.0, 50.0],
        [-100.0, -50.0],
        [-100.0],
        [],
    ],
)
def test_irr_degenerate_inputs_return_zero(cashflows):
    result = solve_irr(cashflows)

    assert result.rate == 0.0
    assert result.degenerate
    assert not result.converged


def test_as_year_values_drops_non_finite_and_sorts():
    pairs = as_year_values(
        [
            {"year": 2, "value": 5.0},
            {"year": 0, "value": -10.0},
            {"year": 1, "value": float("nan")},
            {"year": 3, "value": None},
        ]
    )

    assert pairs == [(0, -10.0), (2, 5.0)]


def test_irr_long_tenor_root_has_zero_npv():
    """
    A 20-year level annuity starts far from its root; the returned rate
    must actually zero the NPV.
    """
    cashflows = [-1000.0] + [150.0] * 20

    result = solve_irr(cashflows)

    assert result.converged
    assert not result.clamped
    assert result.rate == pytest.approx(0.1389, abs=5e-4)
    assert npv(cashflows, result.rate) == pytest.approx(0.0, abs=1e-3)


def test_irr_beyond_solver_window_is_clamped_not_converged():
    """
    True IRR is 9900%. The iteration window caps the rate at 200%, where
    NPV is far from zero, so the result must not be reported as converged.
    """
    cashflows = [(0, -1.0), (1, 100.0)]

    result = solve_irr(cashflows)

    assert result.clamped
    assert not result.converged
    assert not result.degenerate
    assert result.rate == pytest.approx(2.0)
    assert npv(cashflows, result.rate) > 1.0


def test_irr_iteration_limit_reports_non_convergence():
    result = solve_irr([-1000.0, 300.0, 400.0, 500.0], max_iterations=1)

    assert result.iterations == 1
    assert not result.converged
    assert not result.clamped
    assert not result.degenerate


def test_irr_all_positive_series_is_degenerate():
    result = solve_irr([(1, 10.0), (2, 20.0), (3, 30.0)])

    assert result.degenerate
    assert result.rate == 0.0
    assert result.iterations == 0
