"""
Metric calculators.

Each calculator receives a ``MetricInput`` for one (metric, percentile)
and returns a ``MetricResult``. Calculators may raise; ``run_calculator``
converts any failure into ``MetricResult(value=None, error=...)`` so one
failing metric never aborts the batch.

Series options name either a source (``source: id``) or a foundational
metric (``metric: id``). Rates use the parameter policy of
``windcube.utils.resolve_parameter``.

Foundational calculators
------------------------
series_combine    signed sum of source series (``terms: [{source, sign}]``)
series_copy       one source series as-is
cumulative_series running total of a series

Analytical calculators
----------------------
npv, irr, payback, min_coverage, avg_coverage, llcr, lcoe, aggregate
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from windcube.contracts import MetricInput, MetricResult, TimeSeriesPoint
from windcube.errors import CalculationError
from windcube.finance.coverage import (
    avg_coverage as _avg_coverage,
    coverage_ratio_series,
    llcr_series,
    min_coverage as _min_coverage,
    summarize_coverage,
)
from windcube.finance.irr import npv as _npv
from windcube.finance.irr import solve_irr
from windcube.finance.payback import payback_period
from windcube.timeseries import combine, cumulative, window
from windcube.utils import as_int, resolve_parameter

logger = logging.getLogger(__name__)

CalculatorFn = Callable[[MetricInput], MetricResult]
Points = Tuple[TimeSeriesPoint, ...]

COST_OF_EQUITY = {"reference": "financing", "path": ["costOfEquity"], "scale": 0.01, "default": 0.08}
COST_OF_DEBT = {"reference": "financing", "path": ["costOfOperationalDebt"], "scale": 0.01, "default": 0.06}


# ============================================================================
# HELPERS
# ============================================================================


def _series(inp: MetricInput, spec: Any, label: str = "series") -> Points:
    """Resolve a series option: ``{source: id}``, ``{metric: id}`` or a bare id."""
    if isinstance(spec, str):
        spec = {"metric": spec} if spec in inp.metrics else {"source": spec}
    if not isinstance(spec, Mapping):
        raise CalculationError(f"{label}: expected a source or metric selector, got {spec!r}")

    if "metric" in spec:
        mid = spec["metric"]
        result = inp.metrics.get(mid)
        if result is None or result.value is None:
            raise CalculationError(f"{label}: metric '{mid}' has no value")
        if not isinstance(result.value, tuple):
            raise CalculationError(f"{label}: metric '{mid}' is not a time series")
        points = result.value
    elif "source" in spec:
        sid = spec["source"]
        if sid not in inp.sources:
            raise CalculationError(f"{label}: source '{sid}' not available")
        points = inp.sources[sid]
    else:
        raise CalculationError(f"{label}: selector needs 'source' or 'metric'")

    if not points:
        raise CalculationError(f"{label}: empty series")
    return tuple(points)


def _option_series(inp: MetricInput, name: str) -> Points:
    if name not in inp.options:
        raise CalculationError(f"option '{name}' is required")
    return _series(inp, inp.options[name], name)


def _rate(inp: MetricInput, name: str, default_spec: Any) -> Tuple[float, Dict[str, Any]]:
    value, used_default = resolve_parameter(inp.options.get(name, default_spec), inp.references, name)
    meta: Dict[str, Any] = {name: value}
    if used_default:
        meta["defaults_used"] = [name]
    return value, meta


def _series_stats(points: Points) -> Dict[str, float]:
    arr = np.array([p.value for p in points], dtype=float)
    return {
        "min": float(arr.min()),
        "max": float(arr.max()),
        "mean": float(arr.mean()),
        "sum": float(arr.sum()),
        "stdev": float(arr.std(ddof=1)) if arr.size > 1 else 0.0,
        "median": float(np.median(arr)),
        "count": int(arr.size),
    }


# ============================================================================
# FOUNDATIONAL
# ============================================================================


def series_combine(inp: MetricInput) -> MetricResult:
    terms = inp.options.get("terms") or ()
    if not terms:
        raise CalculationError("series_combine needs at least one term")
    parts: List[Tuple[Points, float]] = []
    for term in terms:
        sign = float(term.get("sign", 1.0))
        sid = term["source"]
        points = inp.sources.get(sid)
        if points is None:
            raise CalculationError(f"source '{sid}' not available")
        parts.append((points, sign))
    points = combine(parts)
    if not points:
        raise CalculationError("all combined sources are empty")
    return MetricResult(value=points, stats=_series_stats(points))


def series_copy(inp: MetricInput) -> MetricResult:
    points = _option_series(inp, "source")
    return MetricResult(value=points, stats=_series_stats(points))


def cumulative_series(inp: MetricInput) -> MetricResult:
    points = cumulative(_option_series(inp, "source"))
    return MetricResult(value=points, stats=_series_stats(points))


# ============================================================================
# ANALYTICAL
# ============================================================================


def npv(inp: MetricInput) -> MetricResult:
    """Net present value at ``discount_rate`` (default: cost of equity, 8%)."""
    points = _option_series(inp, "series")
    rate, meta = _rate(inp, "discount_rate", COST_OF_EQUITY)
    return MetricResult(value=_npv(points, rate), metadata=meta)


def irr(inp: MetricInput) -> MetricResult:
    result = solve_irr(_option_series(inp, "series"))
    meta = {
        "iterations": result.iterations,
        "converged": result.converged,
        "clamped": result.clamped,
        "degenerate": result.degenerate,
    }
    if result.degenerate:
        meta["warning"] = "cashflow has no sign change; IRR reported as 0"
        return MetricResult(value=result.rate, metadata=meta)
    if not result.converged:
        meta["last_rate"] = result.rate
        reason = "held at solver bounds" if result.clamped else f"after {result.iterations} iterations"
        return MetricResult(value=None, error=f"IRR did not converge ({reason})", metadata=meta)
    if result.clamped:
        meta["warning"] = "IRR clamped to [-95%, 1000%]"
    return MetricResult(value=result.rate, metadata=meta)


def payback(inp: MetricInput) -> MetricResult:
    cumulative_input = bool(inp.options.get("cumulative", False))
    value = payback_period(
        _option_series(inp, "series"),
        horizon=inp.project_life,
        cumulative=cumulative_input,
    )
    return MetricResult(value=value, metadata={"horizon": inp.project_life})


def _coverage(inp: MetricInput) -> List[Tuple[int, Optional[float]]]:
    return coverage_ratio_series(
        _option_series(inp, "numerator"),
        _option_series(inp, "denominator"),
        operational_start=as_int(inp.options.get("operational_start"), 1),
        operational_end=as_int(inp.options.get("operational_end")),
    )


def min_coverage(inp: MetricInput) -> MetricResult:
    """Minimum per-year coverage (e.g. minimum DSCR)."""
    series = _coverage(inp)
    return MetricResult(value=_min_coverage(series), stats=summarize_coverage(series))


def avg_coverage(inp: MetricInput) -> MetricResult:
    series = _coverage(inp)
    return MetricResult(value=_avg_coverage(series), stats=summarize_coverage(series))


def llcr(inp: MetricInput) -> MetricResult:
    """Minimum loan life coverage ratio across the loan tenor."""
    rate, meta = _rate(inp, "discount_rate", COST_OF_DEBT)
    series = llcr_series(
        _option_series(inp, "cfads"),
        _option_series(inp, "debt_service"),
        rate,
        operational_start=as_int(inp.options.get("operational_start"), 1),
    )
    return MetricResult(value=_min_coverage(series), stats=summarize_coverage(series), metadata=meta)


def lcoe(inp: MetricInput) -> MetricResult:
    """Levelised cost: PV(costs) / PV(energy)."""
    rate, meta = _rate(inp, "discount_rate", COST_OF_EQUITY)
    pv_cost = _npv(_option_series(inp, "cost"), rate)
    pv_energy = _npv(_option_series(inp, "energy"), rate)
    if pv_energy <= 0:
        raise CalculationError("discounted energy production is not positive")
    return MetricResult(value=pv_cost / pv_energy, metadata=meta)


def aggregate(inp: MetricInput) -> MetricResult:
    """Summary statistic over a series window (``stat``: min/max/mean/sum/stdev/median)."""
    stat = inp.options.get("stat", "mean")
    points = window(
        _option_series(inp, "series"),
        as_int(inp.options.get("from_year")),
        as_int(inp.options.get("to_year")),
    )
    if not points:
        raise CalculationError("no points inside the requested window")
    stats = _series_stats(points)
    if stat not in stats:
        raise CalculationError(f"unknown statistic '{stat}'")
    return MetricResult(value=stats[stat], stats=stats)


DEFAULT_CALCULATORS: Dict[str, CalculatorFn] = {
    "series_combine": series_combine,
    "series_copy": series_copy,
    "cumulative_series": cumulative_series,
    "npv": npv,
    "irr": irr,
    "payback": payback,
    "min_coverage": min_coverage,
    "avg_coverage": avg_coverage,
    "llcr": llcr,
    "lcoe": lcoe,
    "aggregate": aggregate,
}


def run_calculator(fn: CalculatorFn, inp: MetricInput) -> MetricResult:
    """Call ``fn``; any failure becomes an error result."""
    try:
        result = fn(inp)
    except CalculationError as exc:
        logger.warning("Metric '%s' (P%s): %s", inp.metric_id, inp.percentile, exc)
        return MetricResult(value=None, error=str(exc))
    except Exception as exc:
        logger.warning(
            "Metric '%s' (P%s) failed: %s: %s",
            inp.metric_id, inp.percentile, type(exc).__name__, exc,
        )
        return MetricResult(value=None, error=f"{type(exc).__name__}: {exc}")
    if not isinstance(result, MetricResult):
        return MetricResult(value=None, error=f"calculator returned {type(result).__name__}")
    return result


__all__ = [
    "CalculatorFn",
    "DEFAULT_CALCULATORS",
    "run_calculator",
]
