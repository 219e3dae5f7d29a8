"""Cube engine contracts and data structures.

Central repository for the dataclasses shared by the source pipeline,
the metric pipeline, the result store and the audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

# Store key for the composite "per-source" percentile selection.
CUSTOM_PERCENTILE = 0


# =============================================================================
# Enumerations
# =============================================================================


class SourceKind(str, Enum):
    """Dependency class of a source; also its processing wave."""

    DIRECT = "direct"
    INDIRECT = "indirect"
    VIRTUAL = "virtual"

    @property
    def wave(self) -> int:
        return {"direct": 1, "indirect": 2, "virtual": 3}[self.value]


class MetricTier(str, Enum):
    FOUNDATIONAL = "foundational"
    ANALYTICAL = "analytical"


class MultiplierOperation(str, Enum):
    MULTIPLY = "multiply"
    COMPOUND = "compound"
    SIMPLE = "simple"
    SUMMATION = "summation"


class PercentileStrategy(str, Enum):
    UNIFIED = "unified"
    PER_SOURCE = "perSource"


# =============================================================================
# Time series
# =============================================================================


@dataclass(frozen=True)
class TimeSeriesPoint:
    year: int
    value: float


@dataclass(frozen=True)
class PercentileTimeSeries:
    """Annual series for one percentile. Years are unique and ascending."""

    percentile: int
    points: Tuple[TimeSeriesPoint, ...] = ()

    def value_at(self, year: int) -> Optional[float]:
        for p in self.points:
            if p.year == year:
                return p.value
        return None

    def as_dict(self) -> Dict[int, float]:
        return {p.year: p.value for p in self.points}

    @property
    def is_empty(self) -> bool:
        return not self.points


# =============================================================================
# Sources
# =============================================================================


@dataclass(frozen=True)
class ReferenceDef:
    """Named reference resolved through the external path lookup."""

    id: str
    path: Tuple[str, ...]


@dataclass(frozen=True)
class MultiplierDef:
    """
    One sequential adjustment applied to a source's values.

    ``operand_id`` names a computed source or a reference. ``summation``
    may instead select a subset of already computed sources through
    ``source_filter`` (keys: ``cashflow_group``, ``category``, ``ids``).
    ``from_year`` / ``to_year`` optionally restrict the years adjusted.
    """

    operation: MultiplierOperation
    operand_id: Optional[str] = None
    base_year: int = 1
    source_filter: Optional[Mapping[str, Any]] = None
    from_year: Optional[int] = None
    to_year: Optional[int] = None

    def applies_to(self, year: int) -> bool:
        if self.from_year is not None and year < self.from_year:
            return False
        if self.to_year is not None and year > self.to_year:
            return False
        return True


@dataclass(frozen=True)
class SourceMetadata:
    name: str = ""
    type: str = ""
    cashflow_group: Optional[str] = None
    category: Optional[str] = None
    description: str = ""
    units: str = ""


@dataclass(frozen=True)
class SourceDefinition:
    """Static registry entry for one source (line item)."""

    id: str
    kind: SourceKind
    priority: int
    path: Optional[Tuple[str, ...]] = None
    references: Tuple[ReferenceDef, ...] = ()
    transformer: Optional[str] = None
    transformer_options: Mapping[str, Any] = field(default_factory=dict)
    multipliers: Tuple[MultiplierDef, ...] = ()
    has_percentiles: bool = False
    metadata: SourceMetadata = field(default_factory=SourceMetadata)
    depends_on: Tuple[str, ...] = ()

    @property
    def wave_key(self) -> Tuple[int, int]:
        return (self.kind.wave, self.priority)


# =============================================================================
# Audit
# =============================================================================


@dataclass(frozen=True)
class AuditEntry:
    """One append-only audit record."""

    timestamp: float
    step: str
    op_type: str
    details: Mapping[str, Any]
    dependency_ids: Tuple[str, ...] = ()
    sample: Optional[Mapping[str, Any]] = None
    duration_ms: float = 0.0
    level: str = "info"

    def signature(self) -> Tuple[Any, ...]:
        """Timing-free identity of the entry, stable across recomputes."""
        return (self.step, self.op_type, self.dependency_ids, self.level)


@dataclass(frozen=True)
class ComputedSource:
    """Result of one source pipeline run; replaced wholesale on recompute."""

    id: str
    series: Mapping[int, PercentileTimeSeries]
    metadata: SourceMetadata
    audit_trail: Tuple[AuditEntry, ...] = ()
    error: Optional[str] = None
    warnings: Tuple[str, ...] = ()

    def points(self, percentile: int) -> Tuple[TimeSeriesPoint, ...]:
        s = self.series.get(percentile)
        return s.points if s is not None else ()

    def restricted_to(self, percentile: int) -> "ComputedSource":
        kept = {percentile: self.series[percentile]} if percentile in self.series else {}
        return replace(self, series=kept)


# =============================================================================
# Metrics
# =============================================================================


@dataclass(frozen=True)
class ThresholdRule:
    """
    Annotation rule evaluated against a metric value.

    ``comparison`` is one of below, above, at_most, at_least, between,
    outside. ``value`` (and ``upper`` for the range comparisons) is a
    literal or a reference parameter spec.
    """

    comparison: str
    value: Any
    priority: int
    annotation: str
    upper: Any = None
    severity: str = "info"
    color: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class ThresholdEvaluation:
    annotation: str
    priority: int
    rule_index: int
    severity: str = "info"
    color: Optional[str] = None


@dataclass(frozen=True)
class MetricDependencies:
    sources: Tuple[str, ...] = ()
    metrics: Tuple[str, ...] = ()
    references: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MetricMetadata:
    name: str = ""
    units: str = ""
    precision: int = 2
    description: str = ""


@dataclass(frozen=True)
class MetricDefinition:
    """Static registry entry for one metric."""

    id: str
    tier: MetricTier
    priority: int
    calculator: str
    depends_on: MetricDependencies = field(default_factory=MetricDependencies)
    options: Mapping[str, Any] = field(default_factory=dict)
    thresholds: Tuple[ThresholdRule, ...] = ()
    usage: Tuple[str, ...] = ()
    category: str = ""
    metadata: MetricMetadata = field(default_factory=MetricMetadata)


@dataclass(frozen=True)
class MetricResult:
    """``{value, formatted, error, metadata}`` plus stats and threshold."""

    value: Any = None
    formatted: Optional[str] = None
    error: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    stats: Mapping[str, Any] = field(default_factory=dict)
    threshold: Optional[ThresholdEvaluation] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None


@dataclass(frozen=True)
class ComputedMetric:
    id: str
    results: Mapping[int, MetricResult]
    audit_trail: Tuple[AuditEntry, ...] = ()

    def result(self, percentile: int) -> Optional[MetricResult]:
        return self.results.get(percentile)


@dataclass
class MetricInput:
    """Everything a calculator may read for one (metric, percentile)."""

    metric_id: str
    percentile: int
    sources: Mapping[str, Tuple[TimeSeriesPoint, ...]]
    metrics: Mapping[str, MetricResult]
    references: Mapping[str, Any]
    options: Mapping[str, Any]
    project_life: int
    currency: str = "USD"


# =============================================================================
# Selection and reporting
# =============================================================================


@dataclass(frozen=True)
class PercentileSelection:
    """User-facing percentile selection (read-only to the engine)."""

    strategy: PercentileStrategy = PercentileStrategy.UNIFIED
    unified: Optional[int] = None
    per_source: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def unified_at(cls, percentile: int) -> "PercentileSelection":
        return cls(strategy=PercentileStrategy.UNIFIED, unified=int(percentile))

    @classmethod
    def by_source(cls, mapping: Mapping[str, int]) -> "PercentileSelection":
        return cls(
            strategy=PercentileStrategy.PER_SOURCE,
            per_source={str(k): int(v) for k, v in mapping.items()},
        )

    def percentile_for(self, source_id: str, primary: int) -> int:
        if self.strategy is PercentileStrategy.PER_SOURCE:
            return int(self.per_source.get(source_id, primary))
        return int(self.unified if self.unified is not None else primary)


@dataclass
class RecomputeReport:
    """Aggregated outcome of one recompute."""

    generation: int
    superseded: bool = False
    computed_sources: List[str] = field(default_factory=list)
    failed_sources: Dict[str, str] = field(default_factory=dict)
    computed_metrics: List[str] = field(default_factory=list)
    failed_metrics: Dict[str, Dict[int, str]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.superseded and not self.failed_sources and not self.failed_metrics


__all__ = [
    "CUSTOM_PERCENTILE",
    "SourceKind",
    "MetricTier",
    "MultiplierOperation",
    "PercentileStrategy",
    "TimeSeriesPoint",
    "PercentileTimeSeries",
    "ReferenceDef",
    "MultiplierDef",
    "SourceMetadata",
    "SourceDefinition",
    "AuditEntry",
    "ComputedSource",
    "ThresholdRule",
    "ThresholdEvaluation",
    "MetricDependencies",
    "MetricMetadata",
    "MetricDefinition",
    "MetricResult",
    "ComputedMetric",
    "MetricInput",
    "PercentileSelection",
    "RecomputeReport",
]
