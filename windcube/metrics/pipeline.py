"""
Metric pipeline.

Foundational metrics run first, one wave per priority value; analytical
metrics follow in dependency levels computed at registry load. Within a
wave every (metric, percentile) pair is independent and may run
concurrently. Each metric's audit trail is assembled after its wave, in
percentile order, so it is identical across recomputes.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from windcube.audit import AuditTrail
from windcube.config import EngineSettings
from windcube.contracts import (
    ComputedMetric,
    ComputedSource,
    MetricDefinition,
    MetricInput,
    MetricMetadata,
    MetricResult,
)
from windcube.metrics.calculators import run_calculator
from windcube.metrics.thresholds import evaluate_thresholds
from windcube.registry import MetricRegistry
from windcube.scheduling import RecomputeToken, run_wave

logger = logging.getLogger(__name__)

WorkItem = Tuple[str, int]


def format_value(meta: MetricMetadata, value: Any, currency: str = "USD") -> Optional[str]:
    """Display string for a scalar metric value; series are summarised by length."""
    if value is None:
        return None
    if isinstance(value, tuple):
        return f"{len(value)} years"
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return str(value)
    p = meta.precision
    if meta.units == "currency":
        return f"{currency} {value:,.{p}f}"
    if meta.units == "percent":
        return f"{value * 100:.{p}f}%"
    if meta.units == "ratio":
        return f"{value:.{p}f}x"
    if meta.units == "years":
        return f"{value:.{p}f} years"
    return f"{value:,.{p}f}"


def _dependency_ids(defn: MetricDefinition) -> Tuple[str, ...]:
    d = defn.depends_on
    return tuple(d.sources) + tuple(d.metrics) + tuple(d.references)


class MetricRunner:
    """Evaluates single (metric, percentile) pairs."""

    def __init__(
        self,
        registry: MetricRegistry,
        sources: Mapping[str, ComputedSource],
        references: Mapping[str, Any],
        settings: EngineSettings,
    ) -> None:
        self.registry = registry
        self.sources = sources
        self.references = references
        self.settings = settings

    def build_input(
        self,
        defn: MetricDefinition,
        percentile: int,
        metrics: Mapping[str, ComputedMetric],
    ) -> MetricInput:
        source_points = {
            sid: self.sources[sid].points(percentile)
            for sid in defn.depends_on.sources
            if sid in self.sources
        }
        metric_results: Dict[str, MetricResult] = {}
        for mid in defn.depends_on.metrics:
            computed = metrics.get(mid)
            result = computed.result(percentile) if computed is not None else None
            if result is not None:
                metric_results[mid] = result
        return MetricInput(
            metric_id=defn.id,
            percentile=percentile,
            sources=source_points,
            metrics=metric_results,
            references=self.references,
            options=defn.options,
            project_life=self.settings.project_life,
            currency=self.settings.currency,
        )

    def evaluate(
        self,
        item: WorkItem,
        metrics: Mapping[str, ComputedMetric],
    ) -> Tuple[MetricResult, float]:
        metric_id, percentile = item
        defn = self.registry.get(metric_id)
        started = time.perf_counter()
        result = run_calculator(
            self.registry.calculators[defn.calculator],
            self.build_input(defn, percentile, metrics),
        )
        if result.error is None:
            result = replace(
                result,
                formatted=format_value(defn.metadata, result.value, self.settings.currency),
                threshold=evaluate_thresholds(defn.thresholds, result.value, self.references),
            )
        return result, (time.perf_counter() - started) * 1000.0

    def assemble(
        self,
        defn: MetricDefinition,
        percentiles: Sequence[int],
        outcomes: Mapping[WorkItem, Tuple[MetricResult, float]],
    ) -> ComputedMetric:
        trail = AuditTrail(defn.id, self.settings.primary_percentile, self.settings.audit_sampling)
        deps = _dependency_ids(defn)
        threshold_refs = [
            t.value["reference"]
            for t in defn.thresholds
            if isinstance(t.value, Mapping) and t.value.get("reference")
        ]
        trail.add(
            "processing_start",
            "start",
            {"tier": defn.tier.value, "priority": defn.priority, "calculator": defn.calculator},
        )
        results: Dict[int, MetricResult] = {}
        for pct in percentiles:
            result, elapsed = outcomes[(defn.id, pct)]
            results[pct] = result
            if result.error is not None:
                trail.add(
                    "error",
                    "processing_error",
                    {"percentile": pct, "error": result.error},
                    deps,
                    level="error",
                )
                continue
            trail.add(
                "calculate",
                defn.calculator,
                {"percentile": pct, "elapsed_ms": round(elapsed, 3), **dict(result.metadata)},
                deps,
                data=result,
            )
            if result.threshold is not None:
                trail.add(
                    "threshold",
                    "evaluate",
                    {
                        "percentile": pct,
                        "annotation": result.threshold.annotation,
                        "priority": result.threshold.priority,
                    },
                    threshold_refs,
                )
        trail.add("processing_end", "end", {"percentiles": list(percentiles)})
        return ComputedMetric(
            id=defn.id,
            results=MappingProxyType(results),
            audit_trail=trail.get_trail(),
        )


def compute_metrics(
    registry: MetricRegistry,
    sources: Mapping[str, ComputedSource],
    references: Mapping[str, Any],
    settings: EngineSettings,
    percentiles: Sequence[int],
    token: Optional[RecomputeToken] = None,
    executor: Optional[Executor] = None,
) -> Dict[str, ComputedMetric]:
    """Compute every metric for every percentile, tier by tier."""
    runner = MetricRunner(registry, sources, references, settings)
    computed: Dict[str, ComputedMetric] = {}
    waves: List[Tuple[str, Tuple[str, ...]]] = [
        ("foundational", w) for w in registry.foundational_waves
    ] + [("analytical", w) for w in registry.analytical_waves]

    for index, (tier, wave) in enumerate(waves):
        if token is not None:
            token.check(f"{tier} metric wave {index}")
        snapshot = MappingProxyType(dict(computed))
        items: List[WorkItem] = [(mid, pct) for mid in wave for pct in percentiles]
        logger.debug("Metric wave %d (%s): %s", index, tier, ", ".join(wave))
        outcomes = run_wave(
            items,
            lambda item: runner.evaluate(item, snapshot),
            key=lambda item: item,
            on_error=lambda item, exc: (
                MetricResult(value=None, error=f"{type(exc).__name__}: {exc}"),
                0.0,
            ),
            executor=executor,
        )
        for mid in wave:
            computed[mid] = runner.assemble(registry.get(mid), percentiles, outcomes)

    if token is not None:
        token.check("metric pipeline end")
    return computed


__all__ = ["format_value", "MetricRunner", "compute_metrics"]
