"""
Computation engine.

``ComputationContext`` bundles the read-only registries and settings with
the mutable ResultStore. ``CubeEngine`` drives one recompute at a time
through the source and metric pipelines and exposes the read interface
consumers use:

    engine = CubeEngine.from_files("settings.yaml")
    report = engine.recompute(scenario_data)
    irr = engine.get_metric_result("projectIrr", 50)

A newer ``recompute`` supersedes an in-flight one: the older run stops at
its next wave boundary and its partial results are discarded.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from windcube.audit import DependencyGraph, build_dependency_graph
from windcube.config import DocumentSource, EngineSettings, load_engine_settings
from windcube.contracts import (
    ComputedMetric,
    ComputedSource,
    MetricDefinition,
    PercentileSelection,
    PercentileStrategy,
    RecomputeReport,
)
from windcube.errors import SupersededError
from windcube.metrics.pipeline import compute_metrics
from windcube.references import PathLookup, make_path_lookup, resolve_references
from windcube.registry import (
    MetricRegistry,
    SourceRegistry,
    load_metric_registry,
    load_source_registry,
)
from windcube.scheduling import RecomputeToken
from windcube.sources.pipeline import compute_sources, effective_percentiles
from windcube.store import ResultStore, Selector

logger = logging.getLogger(__name__)

ScenarioInput = Union[Mapping[str, Any], PathLookup]


@dataclass(frozen=True)
class ComputationContext:
    """Immutable configuration plus the one mutable result store."""

    sources: SourceRegistry
    metrics: MetricRegistry
    settings: EngineSettings
    store: ResultStore


class CubeEngine:
    """Runs recomputes against a ComputationContext."""

    def __init__(self, context: ComputationContext) -> None:
        self.context = context
        self._lock = threading.Lock()
        self._generation = 0
        self._active: Optional[RecomputeToken] = None

    @classmethod
    def create(
        cls,
        settings: EngineSettings,
        sources: Optional[SourceRegistry] = None,
        metrics: Optional[MetricRegistry] = None,
    ) -> "CubeEngine":
        source_registry = sources if sources is not None else load_source_registry()
        metric_registry = (
            metrics if metrics is not None else load_metric_registry(source_registry=source_registry)
        )
        store = ResultStore(primary_percentile=settings.primary_percentile)
        return cls(ComputationContext(source_registry, metric_registry, settings, store))

    @classmethod
    def from_files(
        cls,
        settings: DocumentSource,
        sources: Optional[DocumentSource] = None,
        metrics: Optional[DocumentSource] = None,
    ) -> "CubeEngine":
        source_registry = load_source_registry(sources)
        metric_registry = load_metric_registry(metrics, source_registry=source_registry)
        return cls.create(load_engine_settings(settings), source_registry, metric_registry)

    @property
    def store(self) -> ResultStore:
        return self.context.store

    @property
    def settings(self) -> EngineSettings:
        return self.context.settings

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def _start(self) -> RecomputeToken:
        with self._lock:
            if self._active is not None:
                self._active.supersede()
            self._generation += 1
            token = RecomputeToken(self._generation)
            self._active = token
            return token

    def _references(self, path_lookup: PathLookup) -> Dict[str, Dict[str, Any]]:
        base = self.settings.as_references()
        resolved = resolve_references(self.context.sources.references, path_lookup)
        global_refs = dict(base)
        global_refs.update({k: v for k, v in resolved.items() if v is not None or k not in base})
        metric_refs = dict(global_refs)
        metric_refs.update(resolve_references(self.context.metrics.references, path_lookup))
        return {"global": global_refs, "metric": metric_refs}

    def recompute(
        self,
        scenario: ScenarioInput,
        selection: Optional[PercentileSelection] = None,
    ) -> RecomputeReport:
        """
        Recompute every source and metric for every configured percentile.

        ``scenario`` is the project data document or a path lookup
        callable. A per-source ``selection`` adds the composite percentile.
        Errors inside entities are reported, never raised.
        """
        path_lookup = scenario if callable(scenario) else make_path_lookup(scenario)
        token = self._start()
        report = RecomputeReport(generation=token.generation)
        started = time.perf_counter()
        custom = selection if (
            selection is not None and selection.strategy is PercentileStrategy.PER_SOURCE
        ) else None
        percentiles = effective_percentiles(self.settings, custom)

        executor = (
            ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="windcube")
            if self.settings.max_workers > 1
            else None
        )
        try:
            refs = self._references(path_lookup)
            sources = compute_sources(
                self.context.sources,
                self.settings,
                path_lookup,
                token=token,
                selection=custom,
                executor=executor,
                global_references=refs["global"],
            )
            metrics = compute_metrics(
                self.context.metrics,
                sources,
                refs["metric"],
                self.settings,
                percentiles,
                token=token,
                executor=executor,
            )
        except SupersededError:
            report.superseded = True
            report.duration_ms = (time.perf_counter() - started) * 1000.0
            return report
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        if token.superseded or not self.store.commit(
            sources, metrics, token.generation, custom, references=refs["metric"]
        ):
            report.superseded = True
            logger.info("Recompute #%d superseded before commit; results discarded", token.generation)
        self._fill_report(report, sources, metrics)
        report.duration_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "Recompute #%d: %d sources (%d failed), %d metrics (%d with errors) in %.1f ms",
            token.generation,
            len(sources),
            len(report.failed_sources),
            len(metrics),
            len(report.failed_metrics),
            report.duration_ms,
        )
        return report

    @staticmethod
    def _fill_report(
        report: RecomputeReport,
        sources: Mapping[str, ComputedSource],
        metrics: Mapping[str, ComputedMetric],
    ) -> None:
        for sid, src in sources.items():
            if src.error:
                report.failed_sources[sid] = src.error
            else:
                report.computed_sources.append(sid)
            report.warnings.extend(f"{sid}: {w}" for w in src.warnings)
        for mid, metric in metrics.items():
            errors = {p: r.error for p, r in metric.results.items() if r.error}
            if errors:
                report.failed_metrics[mid] = errors
            else:
                report.computed_metrics.append(mid)

    # ------------------------------------------------------------------
    # Read interface
    # ------------------------------------------------------------------

    def get_data_by_percentile(self, selector: Selector) -> List[ComputedSource]:
        return self.store.get_data_by_percentile(selector)

    def get_data_by_source_id(self, source_id: str) -> Optional[ComputedSource]:
        return self.store.get_data_by_source_id(source_id)

    def get_data_by_category(self, category: str) -> List[ComputedSource]:
        return self.store.get_data_by_category(category)

    def get_metric_result(self, metric_id: str, selector: Selector) -> Optional[ComputedMetric]:
        return self.store.get_metric_result(metric_id, selector)

    def get_metrics_by_usage(self, tag: str) -> List[MetricDefinition]:
        return self.context.metrics.get_metrics_by_usage(tag)

    def get_metrics_by_category(self, category: str) -> List[MetricDefinition]:
        return self.context.metrics.get_metrics_by_category(category)

    def get_references(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Reference values consulted by a committed source or metric."""
        return self.store.get_references(entity_id)

    def dependency_graph(self, root_ids: Sequence[str], max_depth: int = 20) -> DependencyGraph:
        return build_dependency_graph(root_ids, self.store.audit_trail, max_depth)


__all__ = ["ComputationContext", "CubeEngine", "ScenarioInput"]
