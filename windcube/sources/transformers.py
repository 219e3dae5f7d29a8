"""
Source transformers.

A transformer turns the raw data fetched for a source (or, for virtual
sources, the sources computed in earlier waves) into annual values. It
receives a ``TransformerCall`` and returns either

  * a list of ``{year, value}`` points (same values for every percentile); or
  * a ``{percentile: points}`` mapping.

The pipeline normalises the return value. Transformers are addressed by
key through a closed table (``DEFAULT_TRANSFORMERS``); registries naming
an unknown key are rejected at load time.

Every lookup made through the call (``source``, ``reference``, ``select``)
is recorded in ``consulted`` and ends up in the audit entry's dependency
ids.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from windcube.contracts import (
    CUSTOM_PERCENTILE,
    ComputedSource,
    PercentileSelection,
    TimeSeriesPoint,
)
from windcube.finance.coverage import coverage_ratio_series
from windcube.timeseries import combine, cumulative, percentile_entries, to_points
from windcube.utils import as_float, as_int, resolve_parameter

logger = logging.getLogger(__name__)

Points = Tuple[TimeSeriesPoint, ...]


@dataclass
class TransformerCall:
    source_id: str
    raw_data: Any
    has_percentiles: bool
    percentiles: Tuple[int, ...]
    references: Mapping[str, Any]
    computed: Mapping[str, ComputedSource]
    options: Mapping[str, Any] = field(default_factory=dict)
    project_life: int = 20
    num_wtgs: float = 1.0
    selection: Optional[PercentileSelection] = None
    primary_percentile: int = 50
    consulted: List[str] = field(default_factory=list)
    defaults_used: List[str] = field(default_factory=list)

    def _note(self, dep_id: str) -> None:
        if dep_id not in self.consulted:
            self.consulted.append(dep_id)

    def data_percentile(self, percentile: int) -> int:
        """Raw-data percentile behind ``percentile``.

        Under a per-source selection the composite key maps to the
        percentile selected for this source.
        """
        if percentile == CUSTOM_PERCENTILE and self.selection is not None:
            return self.selection.percentile_for(self.source_id, self.primary_percentile)
        return percentile

    def raw_for(self, percentile: int) -> Any:
        """Raw data of one percentile (the whole raw data when it is not percentile data)."""
        entries = percentile_entries(self.raw_data)
        if entries is None:
            return self.raw_data
        return entries.get(self.data_percentile(percentile))

    def source(self, source_id: str) -> Optional[ComputedSource]:
        self._note(source_id)
        return self.computed.get(source_id)

    def reference(self, ref_id: str) -> Any:
        self._note(ref_id)
        return self.references.get(ref_id)

    def parameter(self, name: str, default_spec: Any) -> float:
        """Resolve option ``name`` (falling back to ``default_spec``)."""
        spec = self.options.get(name, default_spec)
        if isinstance(spec, Mapping) and spec.get("reference"):
            self._note(spec["reference"])
        value, used_default = resolve_parameter(spec, self.references, name)
        if used_default:
            self.defaults_used.append(name)
        return value

    def select(
        self,
        cashflow_group: Optional[str] = None,
        category: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
        exclude: Sequence[str] = (),
    ) -> List[ComputedSource]:
        """Computed sources matching every given filter, in processing order."""
        out = []
        for sid, src in self.computed.items():
            if sid == self.source_id or sid in exclude:
                continue
            if ids is not None and sid not in ids:
                continue
            if cashflow_group is not None and src.metadata.cashflow_group != cashflow_group:
                continue
            if category is not None and src.metadata.category != category:
                continue
            self._note(sid)
            out.append(src)
        return out


TransformerFn = Callable[[TransformerCall], Any]


class TransformerKind(str, Enum):
    CAPEX_DRAWDOWN = "capex_drawdown"
    DEBT_DRAWDOWN = "debt_drawdown"
    CONTRACT_FEES = "contract_fees"
    MAJOR_REPAIRS = "major_repairs"
    RESERVE_FUNDS = "reserve_funds"
    INTEREST_DURING_CONSTRUCTION = "interest_during_construction"
    OPERATIONAL_PRINCIPAL = "operational_principal"
    OPERATIONAL_INTEREST = "operational_interest"
    DEBT_SERVICE = "debt_service"
    TOTAL_BY_GROUP = "total_by_group"
    NET_CASHFLOW = "net_cashflow"
    CUMULATIVE = "cumulative"
    COVERAGE_SERIES = "coverage_series"


def _financing(name: str, default: float, scale: float = 0.01) -> Dict[str, Any]:
    return {"reference": "financing", "path": [name], "scale": scale, "default": default}


def _year_totals(rows: Sequence[Tuple[int, float]]) -> List[Dict[str, float]]:
    totals: Dict[int, float] = {}
    for year, value in rows:
        totals[year] = totals.get(year, 0.0) + value
    return [{"year": y, "value": totals[y]} for y in sorted(totals)]


# ============================================================================
# CONSTRUCTION / DRAWDOWN
# ============================================================================


def _drawdown_rows(raw: Any, ratio: float = 1.0) -> List[Tuple[int, float]]:
    """Spread ``totalAmount`` by ``drawdownSchedule`` percentages."""
    rows: List[Tuple[int, float]] = []
    for item in raw or ():
        total = as_float(item.get("totalAmount"))
        if not total:
            continue
        for step in item.get("drawdownSchedule") or ():
            year, pct = as_int(step.get("year")), as_float(step.get("value"))
            if year is None or pct is None:
                continue
            rows.append((year, pct / 100.0 * total * ratio))
    return rows


def capex_drawdown(call: TransformerCall) -> Any:
    """Construction cost items -> annual capex drawdown."""
    return _year_totals(_drawdown_rows(call.raw_data))


def debt_drawdown(call: TransformerCall) -> Any:
    """Construction cost items -> debt-funded share of each drawdown."""
    ratio = call.parameter("debt_ratio", _financing("debtFinancingRatio", 0.70))
    return _year_totals(_drawdown_rows(call.raw_data, ratio))


# ============================================================================
# OPERATING COSTS
# ============================================================================


def contract_fees(call: TransformerCall) -> Any:
    """OEM contracts -> annual fees, scaled by turbine count when per-turbine."""
    num_wtgs = as_float(call.reference("numWTGs"), call.num_wtgs)
    rows: List[Tuple[int, float]] = []
    for contract in call.raw_data or ():
        factor = num_wtgs if contract.get("isPerTurbine") else 1.0
        series = contract.get("fixedFeeTimeSeries") or ()
        if series:
            for p in to_points(series):
                rows.append((p.year, p.value * factor))
            continue
        fee = as_float(contract.get("fixedFee"))
        if fee is None:
            continue
        for year in contract.get("years") or ():
            rows.append((int(year), fee * factor))
    return _year_totals(rows)


def major_repairs(call: TransformerCall) -> Any:
    """Repair events -> probability-weighted annual cost."""
    rows: List[Tuple[int, float]] = []
    for event in call.raw_data or ():
        year, cost = as_int(event.get("year")), as_float(event.get("cost"))
        if year is None or cost is None:
            raise ValueError(f"repair event requires year and cost: {event!r}")
        probability = as_float(event.get("probability"))
        if probability is not None:
            if not 0.0 <= probability <= 100.0:
                raise ValueError(f"repair probability {probability} outside 0..100")
            cost *= probability / 100.0
        rows.append((year, cost))
    return _year_totals(rows)


def reserve_funds(call: TransformerCall) -> Any:
    """Reserve amount -> equal provisions over the first few operating years."""
    amount = as_float(call.raw_data)
    if amount is None:
        raise ValueError(f"reserve amount must be numeric, got {call.raw_data!r}")
    years = min(as_int(call.options.get("provision_years"), 5), call.project_life)
    return [{"year": y, "value": amount / years} for y in range(1, years + 1)]


# ============================================================================
# FINANCING
# ============================================================================


def interest_during_construction(call: TransformerCall) -> Any:
    """Interest on cumulative construction debt drawn."""
    financing = call.reference("financing")
    if isinstance(financing, Mapping) and financing.get("idcCapitalization") is False:
        return []
    drawdown = call.source(call.options.get("drawdown_source", "debtDrawdown"))
    if drawdown is None:
        return []
    rate = call.parameter("rate", _financing("costOfConstructionDebt", 0.05))

    out: Dict[int, Points] = {}
    for pct in call.percentiles:
        running = 0.0
        points = []
        for p in drawdown.points(pct):
            running += p.value
            interest = running * rate
            if interest > 0:
                points.append(TimeSeriesPoint(p.year, interest))
        out[pct] = tuple(points)
    return out


def _annuity_schedule(principal: float, rate: float, start: int, duration: int, last_year: int) -> Points:
    if rate == 0:
        payment = principal / duration
    else:
        growth = (1.0 + rate) ** duration
        payment = principal * rate * growth / (growth - 1.0)
    remaining = principal
    points = []
    for year in range(start, min(last_year, start + duration - 1) + 1):
        interest = remaining * rate
        repaid = payment - interest
        points.append(TimeSeriesPoint(year, repaid))
        remaining = max(0.0, remaining - repaid)
    return tuple(points)


def operational_principal(call: TransformerCall) -> Any:
    """Principal repayment schedule for drawn debt plus capitalised IDC."""
    drawdown = call.source(call.options.get("drawdown_source", "debtDrawdown"))
    idc = call.source(call.options.get("idc_source", "interestDuringConstruction"))
    if drawdown is None:
        return []
    rate = call.parameter("rate", _financing("costOfOperationalDebt", 0.05))
    duration = int(call.parameter("loan_duration", _financing("loanDuration", 15, scale=1.0)))
    grace = int(call.parameter("grace_period", _financing("gracePeriod", 1, scale=1.0)))
    financing = call.references.get("financing")
    bullet = isinstance(financing, Mapping) and financing.get("amortizationType") == "bullet"

    out: Dict[int, Points] = {}
    for pct in call.percentiles:
        principal = sum(p.value for p in drawdown.points(pct))
        if idc is not None:
            principal += sum(p.value for p in idc.points(pct))
        if principal <= 0:
            out[pct] = ()
            continue
        if bullet:
            out[pct] = (TimeSeriesPoint(min(duration, call.project_life), principal),)
        else:
            out[pct] = _annuity_schedule(principal, rate, 1 + grace, duration, call.project_life)
    return out


def operational_interest(call: TransformerCall) -> Any:
    """Interest on the balance outstanding before each principal payment."""
    principal_src = call.source(call.options.get("principal_source", "operationalPrincipal"))
    if principal_src is None:
        return []
    rate = call.parameter("rate", _financing("costOfOperationalDebt", 0.05))

    out: Dict[int, Points] = {}
    for pct in call.percentiles:
        schedule = principal_src.points(pct)
        outstanding = sum(p.value for p in schedule)
        points = []
        for p in schedule:
            points.append(TimeSeriesPoint(p.year, outstanding * rate))
            outstanding -= p.value
        out[pct] = tuple(points)
    return out


def debt_service(call: TransformerCall) -> Any:
    """Interest + principal."""
    components = call.options.get("components", ["operationalInterest", "operationalPrincipal"])
    sources = [s for s in (call.source(c) for c in components) if s is not None]
    if not sources:
        return []
    return {pct: combine([(s.points(pct), 1.0) for s in sources]) for pct in call.percentiles}


# ============================================================================
# AGGREGATES
# ============================================================================


def total_by_group(call: TransformerCall) -> Any:
    """Sum of the computed sources selected by cashflow group / category / ids."""
    selected = call.select(
        cashflow_group=call.options.get("cashflow_group"),
        category=call.options.get("category"),
        ids=call.options.get("ids"),
        exclude=call.options.get("exclude", ()),
    )
    return {pct: combine([(s.points(pct), 1.0) for s in selected]) for pct in call.percentiles}


def net_cashflow(call: TransformerCall) -> Any:
    """Revenue minus cost."""
    revenue = call.source(call.options.get("revenue", "totalRevenue"))
    cost = call.source(call.options.get("cost", "totalCost"))
    if revenue is None or cost is None:
        return []
    return {
        pct: combine([(revenue.points(pct), 1.0), (cost.points(pct), -1.0)])
        for pct in call.percentiles
    }


def cumulative_source(call: TransformerCall) -> Any:
    src = call.source(call.options["source"])
    if src is None:
        return []
    return {pct: cumulative(src.points(pct)) for pct in call.percentiles}


def coverage_series(call: TransformerCall) -> Any:
    """Per-year coverage ratio over years with a positive obligation."""
    numerator = call.source(call.options.get("numerator", "netCashflow"))
    denominator = call.source(call.options.get("denominator", "debtService"))
    if numerator is None or denominator is None:
        return []
    start = as_int(call.options.get("operational_start"), 1)
    out: Dict[int, Points] = {}
    for pct in call.percentiles:
        ratios = coverage_ratio_series(numerator.points(pct), denominator.points(pct), start)
        out[pct] = tuple(TimeSeriesPoint(y, r) for y, r in ratios if r is not None)
    return out


DEFAULT_TRANSFORMERS: Dict[str, TransformerFn] = {
    TransformerKind.CAPEX_DRAWDOWN.value: capex_drawdown,
    TransformerKind.DEBT_DRAWDOWN.value: debt_drawdown,
    TransformerKind.CONTRACT_FEES.value: contract_fees,
    TransformerKind.MAJOR_REPAIRS.value: major_repairs,
    TransformerKind.RESERVE_FUNDS.value: reserve_funds,
    TransformerKind.INTEREST_DURING_CONSTRUCTION.value: interest_during_construction,
    TransformerKind.OPERATIONAL_PRINCIPAL.value: operational_principal,
    TransformerKind.OPERATIONAL_INTEREST.value: operational_interest,
    TransformerKind.DEBT_SERVICE.value: debt_service,
    TransformerKind.TOTAL_BY_GROUP.value: total_by_group,
    TransformerKind.NET_CASHFLOW.value: net_cashflow,
    TransformerKind.CUMULATIVE.value: cumulative_source,
    TransformerKind.COVERAGE_SERIES.value: coverage_series,
}


__all__ = [
    "TransformerCall",
    "TransformerFn",
    "TransformerKind",
    "DEFAULT_TRANSFORMERS",
]
