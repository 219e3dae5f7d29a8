"""
Multiplier application.

Multipliers run in declared order after the transformer. Each one
resolves its operand at the same percentile as the series it adjusts:

  * a computed source (earlier wave) -> that source's value for the year;
  * a scalar reference -> the same value every year;
  * a ``{year, value}`` reference series -> value for the year;
  * percentile reference data -> the matching percentile's value.

A year for which the operand has no value is left unchanged.

Operations (``m`` = operand value, ``n = year - base_year``)::

    multiply   v * m
    compound   v * (1 + m) ** n
    simple     v * (1 + m * n)
    summation  v + m      (m may be the sum of a filtered set of sources)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from windcube.audit import AuditTrail
from windcube.contracts import (
    ComputedSource,
    MultiplierDef,
    MultiplierOperation,
    PercentileTimeSeries,
    TimeSeriesPoint,
)
from windcube.timeseries import SeriesMap, to_points
from windcube.utils import as_float, as_int

logger = logging.getLogger(__name__)

YearLookup = Callable[[int], Optional[float]]


def _combine(operation: MultiplierOperation, value: float, operand: float, n: int) -> float:
    if operation is MultiplierOperation.MULTIPLY:
        return value * operand
    if operation is MultiplierOperation.COMPOUND:
        return value * (1.0 + operand) ** n
    if operation is MultiplierOperation.SIMPLE:
        return value * (1.0 + operand * n)
    return value + operand


def _reference_lookup(value: Any, percentile: int) -> Optional[YearLookup]:
    scalar = as_float(value) if not isinstance(value, (Mapping, list, tuple)) else None
    if scalar is not None:
        return lambda year: scalar

    if isinstance(value, Mapping) and value and all(as_int(k) is not None for k in value):
        data = value.get(percentile, value.get(str(percentile)))
        if data is None:
            return lambda year: None
        return _reference_lookup(data, percentile)

    if isinstance(value, (list, tuple)):
        if value and all(isinstance(x, Mapping) and "percentile" in x for x in value):
            for entry in value:
                if as_int(entry.get("percentile")) == percentile:
                    return _reference_lookup(entry.get("data", ()), percentile)
            return lambda year: None
        by_year = {p.year: p.value for p in to_points(value)}
        return by_year.get

    return None


def _source_lookup(sources: Sequence[ComputedSource], percentile: int) -> YearLookup:
    totals: Dict[int, float] = {}
    for src in sources:
        for p in src.points(percentile):
            totals[p.year] = totals.get(p.year, 0.0) + p.value
    return totals.get


def select_sources(
    source_filter: Mapping[str, Any],
    computed: Mapping[str, ComputedSource],
    exclude: str,
) -> List[ComputedSource]:
    ids = source_filter.get("ids")
    group = source_filter.get("cashflow_group")
    category = source_filter.get("category")
    out = []
    for sid, src in computed.items():
        if sid == exclude:
            continue
        if ids is not None and sid not in ids:
            continue
        if group is not None and src.metadata.cashflow_group != group:
            continue
        if category is not None and src.metadata.category != category:
            continue
        out.append(src)
    return out


def resolve_operand(
    multiplier: MultiplierDef,
    percentile: int,
    computed: Mapping[str, ComputedSource],
    references: Mapping[str, Any],
    owner_id: str,
) -> Tuple[Optional[YearLookup], Tuple[str, ...]]:
    """
    Year lookup for the operand at ``percentile`` plus the ids consulted.

    Returns ``(None, ids)`` when the operand cannot be resolved at all.
    Computed sources take precedence over references of the same id.
    """
    if multiplier.source_filter:
        selected = select_sources(multiplier.source_filter, computed, owner_id)
        return _source_lookup(selected, percentile), tuple(s.id for s in selected)

    oid = multiplier.operand_id
    if oid is None:
        return None, ()
    if oid in computed:
        return _source_lookup([computed[oid]], percentile), (oid,)
    value = references.get(oid)
    if value is None:
        return None, (oid,)
    return _reference_lookup(value, percentile), (oid,)


def apply_multiplier(
    series: SeriesMap,
    multiplier: MultiplierDef,
    computed: Mapping[str, ComputedSource],
    references: Mapping[str, Any],
    owner_id: str,
) -> Tuple[SeriesMap, Tuple[str, ...], Optional[str]]:
    """
    Apply one multiplier to every percentile.

    Returns ``(new_series, dependency_ids, warning)``; on an unresolved
    operand the series comes back unchanged with a warning message.
    """
    out: SeriesMap = {}
    deps: Tuple[str, ...] = ()
    for pct, pts in series.items():
        lookup, deps = resolve_operand(multiplier, pct, computed, references, owner_id)
        if lookup is None:
            label = multiplier.operand_id or "filtered sources"
            return series, deps, f"operand '{label}' unresolved for {multiplier.operation.value}"
        new_points = []
        for p in pts.points:
            m = lookup(p.year) if multiplier.applies_to(p.year) else None
            if m is None:
                new_points.append(p)
                continue
            n = p.year - multiplier.base_year
            new_points.append(TimeSeriesPoint(p.year, _combine(multiplier.operation, p.value, m, n)))
        out[pct] = PercentileTimeSeries(pct, tuple(new_points))
    return out, deps, None


def apply_multipliers(
    series: SeriesMap,
    multipliers: Sequence[MultiplierDef],
    computed: Mapping[str, ComputedSource],
    references: Mapping[str, Any],
    trail: AuditTrail,
    owner_id: str,
) -> Tuple[SeriesMap, List[str]]:
    """Apply ``multipliers`` in order, writing one audit entry per step."""
    warnings: List[str] = []
    for index, mult in enumerate(multipliers):
        series, deps, warning = apply_multiplier(series, mult, computed, references, owner_id)
        details = {
            "index": index,
            "operation": mult.operation.value,
            "operand": mult.operand_id,
            "base_year": mult.base_year,
        }
        if warning:
            logger.warning("Source '%s': %s", owner_id, warning)
            warnings.append(warning)
            trail.add("multiply", mult.operation.value, dict(details, warning=warning), deps, level="warning")
            continue
        trail.add("multiply", mult.operation.value, details, deps, data=series)
    return series, warnings


__all__ = [
    "resolve_operand",
    "select_sources",
    "apply_multiplier",
    "apply_multipliers",
]
