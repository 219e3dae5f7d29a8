"""
Tests for windcube.metrics.calculators and metric value formatting.
"""

from __future__ import annotations

from typing import Any, Dict

import pytest

from windcube.contracts import MetricInput, MetricMetadata, MetricResult, TimeSeriesPoint
from windcube.metrics.calculators import DEFAULT_CALCULATORS, run_calculator
from windcube.metrics.pipeline import format_value


def _points(values: Dict[int, float]):
    return tuple(TimeSeriesPoint(y, v) for y, v in sorted(values.items()))


def _input(options: Dict[str, Any], sources=None, metrics=None, references=None) -> MetricInput:
    return MetricInput(
        metric_id="m",
        percentile=50,
        sources=sources or {},
        metrics=metrics or {},
        references=references or {},
        options=options,
        project_life=10,
    )


CASHFLOW = _points({0: -1000.0, 1: 500.0, 2: 500.0, 3: 500.0})


def test_npv_with_literal_rate():
    inp = _input({"series": {"source": "cf"}, "discount_rate": 0.10}, sources={"cf": CASHFLOW})

    result = run_calculator(DEFAULT_CALCULATORS["npv"], inp)

    assert result.error is None
    assert result.value == pytest.approx(243.425995, rel=1e-6)
    assert "defaults_used" not in result.metadata


def test_npv_falls_back_to_default_cost_of_equity():
    inp = _input({"series": {"metric": "cf"}}, metrics={"cf": MetricResult(value=CASHFLOW)})

    result = run_calculator(DEFAULT_CALCULATORS["npv"], inp)

    assert result.metadata["defaults_used"] == ["discount_rate"]
    assert result.metadata["discount_rate"] == pytest.approx(0.08)


def test_irr_reports_degenerate_cashflow():
    inp = _input({"series": {"source": "cf"}}, sources={"cf": _points({1: 10.0, 2: 10.0})})

    result = run_calculator(DEFAULT_CALCULATORS["irr"], inp)

    assert result.value == 0.0
    assert result.metadata["degenerate"] is True
    assert "warning" in result.metadata


def test_irr_without_root_in_window_is_an_error():
    inp = _input({"series": {"source": "cf"}}, sources={"cf": _points({0: -1.0, 1: 100.0})})

    result = run_calculator(DEFAULT_CALCULATORS["irr"], inp)

    assert result.value is None
    assert "did not converge" in result.error
    assert result.metadata["clamped"] is True
    assert result.metadata["converged"] is False
    assert result.metadata["last_rate"] == pytest.approx(2.0)


def test_irr_converged_result_carries_solver_metadata():
    inp = _input({"series": {"source": "cf"}}, sources={"cf": CASHFLOW})

    result = run_calculator(DEFAULT_CALCULATORS["irr"], inp)

    assert result.error is None
    assert result.value == pytest.approx(0.2343, abs=1e-3)
    assert result.metadata["converged"] is True
    assert "warning" not in result.metadata


def test_min_and_avg_coverage():
    sources = {
        "cfads": _points({0: -50.0, 1: 130.0, 2: 110.0}),
        "ds": _points({0: 0.0, 1: 100.0, 2: 100.0}),
    }
    options = {"numerator": {"source": "cfads"}, "denominator": {"source": "ds"}}

    low = run_calculator(DEFAULT_CALCULATORS["min_coverage"], _input(options, sources))
    avg = run_calculator(DEFAULT_CALCULATORS["avg_coverage"], _input(options, sources))

    assert low.value == pytest.approx(1.1)
    assert avg.value == pytest.approx(1.2)
    assert low.stats["years_with_ratio"] == 2


def test_payback_horizon_defaults_to_project_life():
    inp = _input({"series": {"source": "cf"}}, sources={"cf": _points({0: -100.0, 1: 1.0})})

    result = run_calculator(DEFAULT_CALCULATORS["payback"], inp)

    assert result.value == 10.0


def test_aggregate_window_statistics():
    inp = _input(
        {"series": {"source": "rev"}, "stat": "mean", "from_year": 1},
        sources={"rev": _points({0: 1000.0, 1: 10.0, 2: 20.0})},
    )

    result = run_calculator(DEFAULT_CALCULATORS["aggregate"], inp)

    assert result.value == pytest.approx(15.0)
    assert result.stats["count"] == 2


def test_series_combine_signs():
    inp = _input(
        {"terms": [{"source": "a", "sign": 1}, {"source": "b", "sign": -1}]},
        sources={"a": _points({1: 10.0}), "b": _points({1: 4.0, 2: 1.0})},
    )

    result = run_calculator(DEFAULT_CALCULATORS["series_combine"], inp)

    assert result.value == _points({1: 6.0, 2: -1.0})


@pytest.mark.parametrize(
    "calculator, options",
    [
        ("npv", {"series": {"source": "missing"}, "discount_rate": 0.1}),
        ("npv", {"series": {"source": "cf"}, "discount_rate": {"reference": "financing"}}),
        ("lcoe", {"cost": {"source": "cf"}, "energy": {"source": "zero"}, "discount_rate": 0.1}),
        ("aggregate", {"series": {"source": "cf"}, "stat": "mode"}),
        ("series_copy", {}),
    ],
)
def test_failures_become_error_results(calculator, options):
    inp = _input(options, sources={"cf": CASHFLOW, "zero": _points({1: 0.0})})

    result = run_calculator(DEFAULT_CALCULATORS[calculator], inp)

    assert result.value is None
    assert result.error
    assert not result.ok


def test_unexpected_exceptions_are_contained():
    def broken(inp):
        raise KeyError("boom")

    result = run_calculator(broken, _input({}))

    assert result.error.startswith("KeyError")


@pytest.mark.parametrize(
    "units, precision, value, expected",
    [
        ("currency", 0, 1234567.4, "EUR 1,234,567"),
        ("percent", 2, 0.1234, "12.34%"),
        ("ratio", 2, 1.456, "1.46x"),
        ("years", 1, 7.26, "7.3 years"),
        ("", 2, 3.14159, "3.14"),
    ],
)
def test_format_value(units, precision, value, expected):
    meta = MetricMetadata(name="x", units=units, precision=precision)

    assert format_value(meta, value, "EUR") == expected


def test_format_value_for_series_and_missing():
    meta = MetricMetadata(units="currency")

    assert format_value(meta, _points({1: 1.0, 2: 2.0})) == "2 years"
    assert format_value(meta, None) is None
