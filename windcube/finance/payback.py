"""Payback period with linear interpolation between annual points."""

from __future__ import annotations

from typing import Any, Optional, Sequence

from windcube.finance.irr import as_year_values


def payback_period(
    cashflows: Sequence[Any],
    horizon: Optional[float] = None,
    cumulative: bool = False,
) -> Optional[float]:
    """
    Years until cumulative cashflow is recovered (reaches zero or above).

    Parameters
    ----------
    cashflows : Sequence
        Annual cashflows (points, ``(year, value)`` pairs or numbers).
    horizon : float, optional
        Returned when the cumulative position never recovers (usually the
        project life). ``None`` leaves the result unset in that case.
    cumulative : bool
        Set when ``cashflows`` already holds cumulative values.

    Returns
    -------
    float or None

    Examples
    --------
    >>> payback_period([-100, 40, 40, 40])
    2.5
    """
    pairs = as_year_values(cashflows)
    running = 0.0
    prev_year: Optional[int] = None
    prev_value: Optional[float] = None

    for year, value in pairs:
        current = value if cumulative else running + value
        running = current
        # exact break-even after a deficit counts as recovered
        if current > 0 or (current == 0 and prev_value is not None and prev_value < 0):
            if prev_value is None or prev_value >= 0:
                return float(year)
            fraction = abs(prev_value) / (current - prev_value)
            return float(prev_year) + fraction * (year - prev_year)
        prev_year, prev_value = year, current

    return float(horizon) if horizon is not None else None


__all__ = ["payback_period"]
