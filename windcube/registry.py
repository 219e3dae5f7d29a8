"""
Source and metric registries.

Registries are declarative YAML/JSON documents (or already-loaded
mappings). Loading validates every entry through windcube.schema_guard
and then freezes the result; an invalid document never partially loads.

Source document::

    references:            # global references
      - {id: projectLife, path: [settings, project_life]}
    sources:
      - id: electricityPrice
        kind: direct
        priority: 9
        path: [market, electricityPrice]
        has_percentiles: true
        metadata: {name: Electricity price, type: price}

Metric document::

    references:            # extra references visible to metrics
      - {id: financing, path: [financing]}
    metrics:
      - id: projectIrr
        tier: analytical
        priority: 20
        calculator: irr
        depends_on: {metrics: [projectCashflow]}
        options: {metric: projectCashflow}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import groupby
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

from windcube.config import SETTINGS_REFERENCE_IDS, DocumentSource, as_mapping
from windcube.contracts import (
    MetricDefinition,
    MetricDependencies,
    MetricMetadata,
    MetricTier,
    MultiplierDef,
    MultiplierOperation,
    ReferenceDef,
    SourceDefinition,
    SourceKind,
    SourceMetadata,
    ThresholdRule,
)
from windcube.errors import ConfigurationError
from windcube.metrics.calculators import DEFAULT_CALCULATORS, CalculatorFn
from windcube.metrics.thresholds import COMPARISONS
from windcube.schema_guard import dependency_levels, validate_metric_entries, validate_source_entries
from windcube.sources.transformers import DEFAULT_TRANSFORMERS, TransformerFn

logger = logging.getLogger(__name__)

REGISTRY_DIR = Path(__file__).with_name("registries")
DEFAULT_SOURCES_PATH = REGISTRY_DIR / "sources.yaml"
DEFAULT_METRICS_PATH = REGISTRY_DIR / "metrics.yaml"


# ============================================================================
# Parsing
# ============================================================================


def _parse_references(raw: Any, label: str) -> Tuple[ReferenceDef, ...]:
    refs = []
    for item in raw or ():
        if not isinstance(item, Mapping) or not item.get("id") or not item.get("path"):
            raise ConfigurationError(f"{label}: reference entries need 'id' and 'path' ({item!r})")
        refs.append(ReferenceDef(id=str(item["id"]), path=tuple(item["path"])))
    ids = [r.id for r in refs]
    if len(ids) != len(set(ids)):
        raise ConfigurationError(f"{label}: duplicate reference ids")
    return tuple(refs)


def _parse_multiplier(raw: Mapping[str, Any]) -> MultiplierDef:
    return MultiplierDef(
        operation=MultiplierOperation(raw["operation"]),
        operand_id=raw.get("operand_id"),
        base_year=int(raw.get("base_year", 1)),
        source_filter=dict(raw["source_filter"]) if raw.get("source_filter") else None,
        from_year=raw.get("from_year"),
        to_year=raw.get("to_year"),
    )


def _parse_source(raw: Mapping[str, Any]) -> SourceDefinition:
    meta = raw.get("metadata") or {}
    return SourceDefinition(
        id=raw["id"],
        kind=SourceKind(raw["kind"]),
        priority=int(raw["priority"]),
        path=tuple(raw["path"]) if raw.get("path") else None,
        references=_parse_references(raw.get("references"), f"source '{raw['id']}'"),
        transformer=raw.get("transformer"),
        transformer_options=dict(raw.get("options") or {}),
        multipliers=tuple(_parse_multiplier(m) for m in raw.get("multipliers") or ()),
        has_percentiles=bool(raw.get("has_percentiles", False)),
        metadata=SourceMetadata(
            name=meta.get("name", raw["id"]),
            type=meta.get("type", ""),
            cashflow_group=meta.get("cashflow_group"),
            category=meta.get("category"),
            description=meta.get("description", ""),
            units=meta.get("units", ""),
        ),
        depends_on=tuple(raw.get("depends_on") or ()),
    )


def _parse_threshold(raw: Mapping[str, Any], label: str) -> ThresholdRule:
    comparison = raw.get("comparison")
    if comparison not in COMPARISONS:
        raise ConfigurationError(f"{label}: unknown threshold comparison {comparison!r}")
    if comparison in ("between", "outside") and raw.get("upper") is None:
        raise ConfigurationError(f"{label}: '{comparison}' thresholds need 'upper'")
    if "value" not in raw or "annotation" not in raw:
        raise ConfigurationError(f"{label}: thresholds need 'value' and 'annotation'")
    return ThresholdRule(
        comparison=comparison,
        value=raw["value"],
        upper=raw.get("upper"),
        priority=int(raw.get("priority", 0)),
        annotation=str(raw["annotation"]),
        severity=raw.get("severity", "info"),
        color=raw.get("color"),
        description=raw.get("description", ""),
    )


def _parse_metric(raw: Mapping[str, Any]) -> MetricDefinition:
    deps = raw.get("depends_on") or {}
    meta = raw.get("metadata") or {}
    label = f"metric '{raw['id']}'"
    return MetricDefinition(
        id=raw["id"],
        tier=MetricTier(raw["tier"]),
        priority=int(raw["priority"]),
        calculator=raw["calculator"],
        depends_on=MetricDependencies(
            sources=tuple(deps.get("sources") or ()),
            metrics=tuple(deps.get("metrics") or ()),
            references=tuple(deps.get("references") or ()),
        ),
        options=dict(raw.get("options") or {}),
        thresholds=tuple(_parse_threshold(t, label) for t in raw.get("thresholds") or ()),
        usage=tuple(raw.get("usage") or ()),
        category=raw.get("category", ""),
        metadata=MetricMetadata(
            name=meta.get("name", raw["id"]),
            units=meta.get("units", ""),
            precision=int(meta.get("precision", 2)),
            description=meta.get("description", ""),
        ),
    )


# ============================================================================
# Registries
# ============================================================================


@dataclass(frozen=True)
class SourceRegistry:
    """Validated, read-only source configuration."""

    references: Tuple[ReferenceDef, ...]
    sources: Tuple[SourceDefinition, ...]
    transformers: Mapping[str, TransformerFn] = field(default_factory=dict)

    def get(self, source_id: str) -> Optional[SourceDefinition]:
        for s in self.sources:
            if s.id == source_id:
                return s
        return None

    @property
    def ids(self) -> List[str]:
        return [s.id for s in self.sources]

    def waves(self) -> List[List[SourceDefinition]]:
        """Sources grouped by (kind wave, priority), in processing order."""
        groups: List[List[SourceDefinition]] = []
        last_key = None
        for s in self.sources:
            if s.wave_key != last_key:
                groups.append([])
                last_key = s.wave_key
            groups[-1].append(s)
        return groups


@dataclass(frozen=True)
class MetricRegistry:
    """Validated, read-only metric configuration."""

    references: Tuple[ReferenceDef, ...]
    metrics: Tuple[MetricDefinition, ...]
    calculators: Mapping[str, CalculatorFn] = field(default_factory=dict)
    foundational_waves: Tuple[Tuple[str, ...], ...] = ()
    analytical_waves: Tuple[Tuple[str, ...], ...] = ()

    def get(self, metric_id: str) -> Optional[MetricDefinition]:
        for m in self.metrics:
            if m.id == metric_id:
                return m
        return None

    def get_metrics_by_usage(self, tag: str) -> List[MetricDefinition]:
        return [m for m in self.metrics if tag in m.usage]

    def get_metrics_by_category(self, category: str) -> List[MetricDefinition]:
        return [m for m in self.metrics if m.category == category]


def load_source_registry(
    source: Optional[DocumentSource] = None,
    transformers: Optional[Mapping[str, TransformerFn]] = None,
) -> SourceRegistry:
    """Load and validate a source registry (defaults to the bundled one)."""
    doc = as_mapping(source if source is not None else DEFAULT_SOURCES_PATH)
    table = dict(transformers if transformers is not None else DEFAULT_TRANSFORMERS)
    entries = doc.get("sources")
    if not isinstance(entries, list):
        raise ConfigurationError("source registry needs a 'sources' list")

    references = _parse_references(doc.get("references"), "global references")
    validate_source_entries(
        entries, table.keys(), [r.id for r in references] + list(SETTINGS_REFERENCE_IDS)
    )

    parsed = [_parse_source(e) for e in entries]
    order = sorted(range(len(parsed)), key=lambda i: (parsed[i].wave_key, i))
    registry = SourceRegistry(
        references=references,
        sources=tuple(parsed[i] for i in order),
        transformers=table,
    )
    logger.info("Loaded %d sources in %d waves", len(parsed), len(registry.waves()))
    return registry


def load_metric_registry(
    source: Optional[DocumentSource] = None,
    source_registry: Optional[SourceRegistry] = None,
    calculators: Optional[Mapping[str, CalculatorFn]] = None,
) -> MetricRegistry:
    """Load and validate a metric registry against a source registry."""
    doc = as_mapping(source if source is not None else DEFAULT_METRICS_PATH)
    table = dict(calculators if calculators is not None else DEFAULT_CALCULATORS)
    entries = doc.get("metrics")
    if not isinstance(entries, list):
        raise ConfigurationError("metric registry needs a 'metrics' list")

    sources = source_registry if source_registry is not None else load_source_registry()
    references = _parse_references(doc.get("references"), "metric references")
    reference_ids = (
        [r.id for r in sources.references]
        + [r.id for r in references]
        + list(SETTINGS_REFERENCE_IDS)
    )
    validate_metric_entries(entries, table.keys(), sources.ids, reference_ids)

    parsed = [_parse_metric(e) for e in entries]
    foundational = sorted(
        (m for m in parsed if m.tier is MetricTier.FOUNDATIONAL),
        key=lambda m: m.priority,
    )
    f_waves = [
        tuple(m.id for m in group) for _, group in groupby(foundational, key=lambda m: m.priority)
    ]

    analytical = {m.id: m for m in parsed if m.tier is MetricTier.ANALYTICAL}
    levels, _ = dependency_levels(
        list(analytical),
        {m.id: m.depends_on.metrics for m in analytical.values()},
        {m.id: m.priority for m in analytical.values()},
    )

    registry = MetricRegistry(
        references=references,
        metrics=tuple(foundational) + tuple(analytical[mid] for level in levels for mid in level),
        calculators=table,
        foundational_waves=tuple(f_waves),
        analytical_waves=tuple(tuple(level) for level in levels),
    )
    logger.info(
        "Loaded %d metrics (%d foundational waves, %d analytical waves)",
        len(parsed), len(f_waves), len(levels),
    )
    return registry


__all__ = [
    "DEFAULT_SOURCES_PATH",
    "DEFAULT_METRICS_PATH",
    "SourceRegistry",
    "MetricRegistry",
    "load_source_registry",
    "load_metric_registry",
]
