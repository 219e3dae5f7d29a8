"""Year-indexed NPV / IRR for annual project cashflows.

Cashflows are either ``TimeSeriesPoint``-like objects (anything with
``year`` and ``value``), ``(year, value)`` pairs, or a plain sequence of
numbers (index = year, starting at 0). Year 0 is undiscounted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

IRR_TOLERANCE = 1e-6
IRR_MAX_ITERATIONS = 150
IRR_DAMPING = 0.5
IRR_GUESS_BOUNDS = (0.001, 0.8)
IRR_RESULT_BOUNDS = (-0.95, 10.0)


# ============================================================================
# INPUT NORMALISATION
# ============================================================================


def as_year_values(cashflows: Sequence[Any]) -> List[Tuple[int, float]]:
    """Normalise supported cashflow shapes into sorted ``(year, value)`` pairs.

    Entries whose value is missing or not finite are dropped.
    """
    pairs: List[Tuple[int, float]] = []
    for i, cf in enumerate(cashflows):
        if hasattr(cf, "year") and hasattr(cf, "value"):
            year, value = cf.year, cf.value
        elif isinstance(cf, dict):
            year, value = cf.get("year"), cf.get("value")
        elif isinstance(cf, (tuple, list)) and len(cf) == 2:
            year, value = cf
        else:
            year, value = i, cf
        if year is None or value is None:
            continue
        try:
            y, v = int(year), float(value)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(v):
            continue
        pairs.append((y, v))
    pairs.sort(key=lambda p: p[0])
    return pairs


# ============================================================================
# NPV
# ============================================================================


def npv(cashflows: Sequence[Any], rate: float) -> float:
    """Net Present Value of year-indexed cashflows.

    NPV(r) = sum_t CF[t] / (1+r)^year[t]

    Parameters
    ----------
    cashflows : Sequence
        Points, ``(year, value)`` pairs or plain numbers (index = year).
    rate : float
        Discount rate (decimal, e.g. 0.08 for 8%).

    Returns
    -------
    float

    Notes
    -----
    - ``rate = 0`` returns the plain sum.
    - Rates at or below -100% are clamped to -99.9999%.

    Examples
    --------
    >>> npv([-1000, 500, 500, 500], 0.10)
    243.426...
    """
    pairs = as_year_values(cashflows)
    if not pairs:
        return 0.0
    r = float(rate)
    if r <= -1.0:
        r = -0.999999
    years = np.array([p[0] for p in pairs], dtype=float)
    values = np.array([p[1] for p in pairs], dtype=float)
    if r == 0.0:
        return float(values.sum())
    return float(np.sum(values / np.power(1.0 + r, years)))


# ============================================================================
# IRR (Newton-Raphson with damping)
# ============================================================================


@dataclass(frozen=True)
class IrrResult:
    """IRR solver outcome. ``rate`` is a decimal (0.10 = 10%)."""

    rate: float
    iterations: int = 0
    converged: bool = False
    clamped: bool = False
    degenerate: bool = False


def _npv_and_derivative(pairs: Sequence[Tuple[int, float]], rate: float) -> Tuple[float, float]:
    value = 0.0
    derivative = 0.0
    base = 1.0 + rate
    for year, cf in pairs:
        if year == 0:
            value += cf
            continue
        disc = base ** year
        value += cf / disc
        derivative -= year * cf / (disc * base)
    return value, derivative


def _initial_guess(pairs: Sequence[Tuple[int, float]]) -> float:
    inflows = sum(v for _, v in pairs if v > 0)
    outflows = -sum(v for _, v in pairs if v < 0)
    weighted_years = sum(y * v for y, v in pairs if v > 0)
    avg_inflow_year = weighted_years / inflows if inflows > 0 else 1.0
    if avg_inflow_year <= 0:
        avg_inflow_year = 1.0
    guess = (inflows / outflows) ** (1.0 / avg_inflow_year) - 1.0
    lo, hi = IRR_GUESS_BOUNDS
    return min(max(guess, lo), hi)


def solve_irr(cashflows: Sequence[Any], max_iterations: int = IRR_MAX_ITERATIONS) -> IrrResult:
    """
    Internal Rate of Return with full solver diagnostics.

    Degenerate input (fewer than two cashflows, or no sign change) returns
    ``IrrResult(rate=0.0, degenerate=True)``.

    The solver runs Newton-Raphson on NPV(rate) = 0 from a guess based on
    the simple return ratio. When |NPV| grows between iterations the step
    is damped by 0.5. The admissible rate window starts at [-0.95, 5.0]
    and narrows toward [-0.99, 2.0] as iterations proceed.

    ``converged`` is only set when |NPV| at the returned rate is within
    tolerance (relative to the largest cashflow). A rate held at the
    iteration window, or outside [-95%, 1000%], is reported ``clamped``.
    """
    pairs = as_year_values(cashflows)
    has_negative = any(v < 0 for _, v in pairs)
    has_positive = any(v > 0 for _, v in pairs)
    if len(pairs) < 2 or not (has_negative and has_positive):
        return IrrResult(rate=0.0, degenerate=True)

    tolerance = IRR_TOLERANCE * max(1.0, max(abs(v) for _, v in pairs))
    rate = _initial_guess(pairs)
    previous_abs_npv = math.inf
    converged = False
    at_bound = False
    iterations = 0

    for i in range(max_iterations):
        iterations = i + 1
        value, derivative = _npv_and_derivative(pairs, rate)
        if abs(value) < tolerance:
            converged = True
            break
        if abs(derivative) < IRR_TOLERANCE:
            break

        step = value / derivative
        if abs(value) > previous_abs_npv:
            step *= IRR_DAMPING
        previous_abs_npv = abs(value)

        max_bound = max(2.0, 5.0 - i * 0.03)
        min_bound = max(-0.99, -0.95 - i * 0.001)
        unbounded = rate - step
        new_rate = min(max(unbounded, min_bound), max_bound)
        at_bound = new_rate != unbounded

        if abs(new_rate - rate) < IRR_TOLERANCE:
            rate = new_rate
            converged = abs(_npv_and_derivative(pairs, rate)[0]) < tolerance
            break
        rate = new_rate

    lo, hi = IRR_RESULT_BOUNDS
    clamped = (at_bound and not converged) or rate < lo or rate > hi
    if clamped:
        logger.warning(
            "IRR %.4f held at the solver bounds or outside [%.2f, %.2f] (cashflow likely ill-posed)",
            rate, lo, hi,
        )
        rate = min(max(rate, lo), hi)
    if not converged:
        logger.warning("IRR did not converge after %d iterations (last rate %.6f)", iterations, rate)

    return IrrResult(rate=rate, iterations=iterations, converged=converged, clamped=clamped)


def irr(cashflows: Sequence[Any]) -> float:
    """Internal Rate of Return as a decimal.

    Examples
    --------
    >>> irr([(0, -100.0), (1, 110.0)])
    0.1
    >>> irr([100.0, 50.0])   # no sign change
    0.0
    """
    return solve_irr(cashflows).rate


__all__ = [
    "as_year_values",
    "npv",
    "IrrResult",
    "solve_irr",
    "irr",
    "IRR_TOLERANCE",
    "IRR_MAX_ITERATIONS",
]
