"""
Coverage ratios (DSCR / ICR / LLCR) over operational years.

COVERAGE:
---------
- ratio_t = cashflow_t / obligation_t for every operational year
- construction years (year < operational_start) are excluded
- years without an obligation are undefined (None), not zero

LLCR:
-----
- LLCR_t = PV_t(CFADS over t..loan end) / PV_t(debt service over t..loan end)
- outstanding debt is taken as the PV of remaining debt service at the
  loan rate, so the ratio needs only the two series
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from windcube.errors import CalculationError
from windcube.finance.irr import as_year_values

logger = logging.getLogger(__name__)

RatioSeries = List[Tuple[int, Optional[float]]]


def coverage_ratio_series(
    cashflow: Sequence[Any],
    obligation: Sequence[Any],
    operational_start: int = 1,
    operational_end: Optional[int] = None,
) -> RatioSeries:
    """
    Per-year coverage ratio.

    Returns ``(year, ratio)`` for every operational year present in the
    obligation series; ``ratio`` is None where the obligation is not
    positive (undefined, e.g. grace years).
    """
    cf = dict(as_year_values(cashflow))
    out: RatioSeries = []
    for year, due in as_year_values(obligation):
        if year < operational_start:
            continue
        if operational_end is not None and year > operational_end:
            continue
        if due > 0:
            out.append((year, cf.get(year, 0.0) / due))
        else:
            out.append((year, None))
    return out


def _defined(series: RatioSeries) -> List[float]:
    return [r for _, r in series if r is not None]


def min_coverage(series: RatioSeries) -> float:
    values = _defined(series)
    if not values:
        raise CalculationError("no operational years with a positive obligation")
    return float(min(values))


def avg_coverage(series: RatioSeries) -> float:
    values = _defined(series)
    if not values:
        raise CalculationError("no operational years with a positive obligation")
    return float(np.mean(values))


def summarize_coverage(series: RatioSeries) -> Dict[str, Any]:
    """
    Summary statistics for a coverage series.

    Returns
    -------
    dict
        {
            'min': float or None,
            'avg': float or None,
            'max': float or None,
            'years_with_ratio': int,
            'years_below_1_0': int,
            'years_below_1_3': int
        }
    """
    values = _defined(series)
    if not values:
        return {
            "min": None,
            "avg": None,
            "max": None,
            "years_with_ratio": 0,
            "years_below_1_0": 0,
            "years_below_1_3": 0,
        }
    return {
        "min": float(min(values)),
        "avg": float(np.mean(values)),
        "max": float(max(values)),
        "years_with_ratio": len(values),
        "years_below_1_0": sum(1 for v in values if v < 1.0),
        "years_below_1_3": sum(1 for v in values if v < 1.3),
    }


def llcr_series(
    cfads: Sequence[Any],
    debt_service: Sequence[Any],
    rate: float,
    operational_start: int = 1,
) -> RatioSeries:
    """
    Loan Life Coverage Ratio per operational year of the loan.

    Parameters
    ----------
    cfads : Sequence
        Cash flow available for debt service.
    debt_service : Sequence
        Interest + principal per year.
    rate : float
        Loan discount rate (decimal).
    operational_start : int, default 1
        First year that counts as operational.
    """
    ds = [(y, v) for y, v in as_year_values(debt_service) if y >= operational_start]
    loan_years = [y for y, v in ds if v > 0]
    if not loan_years:
        return []
    loan_end = max(loan_years)
    cf = dict(as_year_values(cfads))
    ds_map = dict(ds)

    out: RatioSeries = []
    for year in sorted(y for y in ds_map if y <= loan_end):
        pv_cf = 0.0
        pv_ds = 0.0
        for t in range(year, loan_end + 1):
            disc = (1.0 + rate) ** (t - year)
            pv_cf += cf.get(t, 0.0) / disc
            pv_ds += ds_map.get(t, 0.0) / disc
        out.append((year, pv_cf / pv_ds if pv_ds > 0 else None))
    return out


__all__ = [
    "RatioSeries",
    "coverage_ratio_series",
    "min_coverage",
    "avg_coverage",
    "summarize_coverage",
    "llcr_series",
]
