"""
Time-series helpers shared by sources, transformers and metrics.

Raw data coming out of the path lookup takes one of three shapes:

  * a scalar (or ``{"value": x}``), broadcast to every year and percentile;
  * a list of ``{year, value}`` points, copied to every percentile;
  * percentile data: a list of ``{percentile, data: [...]}`` entries or a
    ``{percentile: [...]}`` mapping, kept per percentile.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from windcube.contracts import PercentileTimeSeries, TimeSeriesPoint
from windcube.utils import as_float, as_int

logger = logging.getLogger(__name__)

SeriesMap = Dict[int, PercentileTimeSeries]


# ---------------------------------------------------------------------------
# Point construction
# ---------------------------------------------------------------------------


def to_points(raw: Iterable[Any]) -> Tuple[TimeSeriesPoint, ...]:
    """Build a sorted point tuple from dicts, pairs or points.

    Invalid entries are skipped. On a duplicate year the later entry wins.
    """
    by_year: Dict[int, float] = {}
    for item in raw:
        if isinstance(item, TimeSeriesPoint):
            year, value = item.year, item.value
        elif isinstance(item, Mapping):
            year, value = as_int(item.get("year")), as_float(item.get("value"))
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            year, value = as_int(item[0]), as_float(item[1])
        else:
            continue
        if year is None or value is None or year < 0:
            continue
        by_year[year] = value
    return tuple(TimeSeriesPoint(y, by_year[y]) for y in sorted(by_year))


def expand_scalar(
    value: float,
    project_life: int,
    percentiles: Sequence[int],
    start_year: int = 1,
) -> SeriesMap:
    """Broadcast a scalar to years ``start_year..project_life`` for every percentile."""
    v = float(value)
    points = tuple(TimeSeriesPoint(y, v) for y in range(start_year, project_life + 1))
    return {p: PercentileTimeSeries(p, points) for p in percentiles}


def empty_series(percentiles: Sequence[int]) -> SeriesMap:
    return {p: PercentileTimeSeries(p, ()) for p in percentiles}


def _is_point_list(raw: Any) -> bool:
    return (
        isinstance(raw, (list, tuple))
        and bool(raw)
        and all(isinstance(x, (Mapping, TimeSeriesPoint)) and _looks_like_point(x) for x in raw)
    )


def _looks_like_point(x: Any) -> bool:
    if isinstance(x, TimeSeriesPoint):
        return True
    return "year" in x and "value" in x


def percentile_entries(raw: Any) -> Optional[Dict[int, Any]]:
    """Return ``{percentile: data}`` when ``raw`` is percentile data."""
    if isinstance(raw, Mapping) and raw and all(as_int(k) is not None for k in raw):
        return {int(k): v for k, v in raw.items()}
    if isinstance(raw, (list, tuple)) and raw and all(
        isinstance(x, Mapping) and "percentile" in x for x in raw
    ):
        out: Dict[int, Any] = {}
        for entry in raw:
            p = as_int(entry.get("percentile"))
            if p is None:
                continue
            out[p] = entry.get("data", entry.get("points", ()))
        return out
    return None


def normalize_series(
    raw: Any,
    has_percentiles: bool,
    percentiles: Sequence[int],
    project_life: int,
) -> Tuple[SeriesMap, List[str]]:
    """
    Normalise raw data (or transformer output) into a series per percentile.

    Returns the series map and a list of warnings. Unrecognised shapes give
    empty series plus a warning rather than an exception.
    """
    warnings: List[str] = []

    if raw is None:
        return empty_series(percentiles), ["no data"]

    if isinstance(raw, Mapping) and set(raw) == {"value"}:
        raw = raw["value"]

    if isinstance(raw, (list, tuple)) and not raw:
        return empty_series(percentiles), warnings

    scalar = as_float(raw) if not isinstance(raw, (Mapping, list, tuple)) else None
    if scalar is not None:
        return expand_scalar(scalar, project_life, percentiles), warnings

    by_percentile = percentile_entries(raw)
    if by_percentile is not None:
        if not has_percentiles and len(by_percentile) > 0:
            logger.debug("Percentile data supplied for a source not flagged has_percentiles")
        out: SeriesMap = {}
        for p in percentiles:
            data = by_percentile.get(p)
            if data is None:
                warnings.append(f"percentile {p} missing from data")
                out[p] = PercentileTimeSeries(p, ())
                continue
            if isinstance(data, PercentileTimeSeries):
                out[p] = PercentileTimeSeries(p, data.points)
                continue
            single = as_float(data) if not isinstance(data, (Mapping, list, tuple)) else None
            if single is not None:
                out[p] = expand_scalar(single, project_life, [p])[p]
            else:
                out[p] = PercentileTimeSeries(p, to_points(data or ()))
        return out, warnings

    if isinstance(raw, (list, tuple)) and all(isinstance(x, PercentileTimeSeries) for x in raw):
        return normalize_series(
            {s.percentile: s for s in raw}, True, percentiles, project_life
        )

    if _is_point_list(raw):
        points = to_points(raw)
        return {p: PercentileTimeSeries(p, points) for p in percentiles}, warnings

    warnings.append(f"unsupported data shape {type(raw).__name__}")
    return empty_series(percentiles), warnings


# ---------------------------------------------------------------------------
# Arithmetic over point tuples
# ---------------------------------------------------------------------------


def combine(terms: Sequence[Tuple[Sequence[TimeSeriesPoint], float]]) -> Tuple[TimeSeriesPoint, ...]:
    """Signed sum of several series over the union of their years."""
    totals: Dict[int, float] = {}
    for points, sign in terms:
        for p in points:
            totals[p.year] = totals.get(p.year, 0.0) + sign * p.value
    return tuple(TimeSeriesPoint(y, totals[y]) for y in sorted(totals))


def cumulative(points: Sequence[TimeSeriesPoint]) -> Tuple[TimeSeriesPoint, ...]:
    running = 0.0
    out = []
    for p in sorted(points, key=lambda x: x.year):
        running += p.value
        out.append(TimeSeriesPoint(p.year, running))
    return tuple(out)


def window(
    points: Sequence[TimeSeriesPoint],
    from_year: Optional[int] = None,
    to_year: Optional[int] = None,
) -> Tuple[TimeSeriesPoint, ...]:
    return tuple(
        p
        for p in points
        if (from_year is None or p.year >= from_year) and (to_year is None or p.year <= to_year)
    )


def values(points: Sequence[TimeSeriesPoint]) -> List[float]:
    return [p.value for p in points]


__all__ = [
    "SeriesMap",
    "to_points",
    "expand_scalar",
    "empty_series",
    "percentile_entries",
    "normalize_series",
    "combine",
    "cumulative",
    "window",
    "values",
]
