"""
Percentile result store.

Holds every computed source and metric for every computed percentile, so
switching the active percentile selection is a lookup, never a
recompute. It is the only mutable shared state of the engine: entities
are replaced whole (all percentiles at once) under a lock, and a full
recompute is committed in a single step.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd

from windcube.audit import get_references as references_in_trail
from windcube.contracts import (
    CUSTOM_PERCENTILE,
    AuditEntry,
    ComputedMetric,
    ComputedSource,
    PercentileSelection,
    PercentileStrategy,
)
from windcube.errors import DataUnavailableError

logger = logging.getLogger(__name__)

Selector = Union[int, PercentileSelection]


class ResultStore:
    """Thread-safe cache of computed sources and metrics."""

    def __init__(self, primary_percentile: int = 50) -> None:
        self._lock = threading.Lock()
        self._sources: Dict[str, ComputedSource] = {}
        self._metrics: Dict[str, ComputedMetric] = {}
        self._generation = -1
        self._custom_selection: Optional[PercentileSelection] = None
        self._references: Dict[str, Any] = {}
        self.primary_percentile = primary_percentile

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit(
        self,
        sources: Mapping[str, ComputedSource],
        metrics: Mapping[str, ComputedMetric],
        generation: int,
        custom_selection: Optional[PercentileSelection] = None,
        references: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Replace the whole result set; older generations are ignored.

        ``references`` are the resolved references of the recompute, kept
        for ``get_references``.
        """
        with self._lock:
            if generation < self._generation:
                logger.info(
                    "Discarding results of generation %d (store holds %d)",
                    generation, self._generation,
                )
                return False
            self._sources = dict(sources)
            self._metrics = dict(metrics)
            self._generation = generation
            self._custom_selection = custom_selection
            self._references = dict(references or {})
        return True

    @property
    def generation(self) -> int:
        return self._generation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _snapshot(self) -> Tuple[Dict[str, ComputedSource], Dict[str, ComputedMetric]]:
        with self._lock:
            return self._sources, self._metrics

    def resolve_percentile(self, selector: Selector) -> int:
        """Store key for a percentile or a selection."""
        if isinstance(selector, PercentileSelection):
            if selector.strategy is PercentileStrategy.PER_SOURCE:
                if self._custom_selection != selector:
                    raise DataUnavailableError(
                        "per-source selection has not been computed; recompute with it first"
                    )
                return CUSTOM_PERCENTILE
            return selector.unified if selector.unified is not None else self.primary_percentile
        return int(selector)

    def get_data_by_percentile(self, selector: Selector) -> List[ComputedSource]:
        percentile = self.resolve_percentile(selector)
        sources, _ = self._snapshot()
        return [s.restricted_to(percentile) for s in sources.values()]

    def get_data_by_source_id(self, source_id: str) -> Optional[ComputedSource]:
        sources, _ = self._snapshot()
        return sources.get(source_id)

    def get_data_by_category(self, category: str) -> List[ComputedSource]:
        sources, _ = self._snapshot()
        return [s for s in sources.values() if s.metadata.category == category]

    def get_metric_result(self, metric_id: str, selector: Selector) -> Optional[ComputedMetric]:
        """The metric narrowed to the selected percentile (None when unknown)."""
        percentile = self.resolve_percentile(selector)
        _, metrics = self._snapshot()
        metric = metrics.get(metric_id)
        if metric is None:
            return None
        result = metric.result(percentile)
        if result is None:
            return ComputedMetric(id=metric.id, results={}, audit_trail=metric.audit_trail)
        return ComputedMetric(id=metric.id, results={percentile: result}, audit_trail=metric.audit_trail)

    def audit_trail(self, entity_id: str) -> Optional[Tuple[AuditEntry, ...]]:
        """Trail of a source or metric; the lookup used by dependency graphs."""
        sources, metrics = self._snapshot()
        if entity_id in sources:
            return sources[entity_id].audit_trail
        if entity_id in metrics:
            return metrics[entity_id].audit_trail
        return None

    def get_references(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Reference values the committed trail of ``entity_id`` consulted."""
        with self._lock:
            entity = self._sources.get(entity_id) or self._metrics.get(entity_id)
            references = self._references
        if entity is None:
            return None
        return references_in_trail(entity.audit_trail, references)

    @property
    def source_ids(self) -> List[str]:
        return list(self._snapshot()[0])

    @property
    def metric_ids(self) -> List[str]:
        return list(self._snapshot()[1])

    # ------------------------------------------------------------------
    # Tabular export
    # ------------------------------------------------------------------

    def to_frame(self, percentile: Optional[int] = None) -> pd.DataFrame:
        """
        Long-format source values.

        Columns: source_id, category, cashflow_group, percentile, year, value.
        """
        sources, _ = self._snapshot()
        rows: List[Dict[str, Any]] = []
        for src in sources.values():
            for pct, series in src.series.items():
                if percentile is not None and pct != percentile:
                    continue
                for p in series.points:
                    rows.append(
                        {
                            "source_id": src.id,
                            "category": src.metadata.category,
                            "cashflow_group": src.metadata.cashflow_group,
                            "percentile": pct,
                            "year": p.year,
                            "value": p.value,
                        }
                    )
        columns = ["source_id", "category", "cashflow_group", "percentile", "year", "value"]
        return pd.DataFrame(rows, columns=columns)

    def metrics_frame(self) -> pd.DataFrame:
        """
        Scalar metric values, one row per (metric, percentile).

        Columns: metric_id, percentile, value, formatted, annotation, error.
        Series-valued metrics are reported by their formatted summary.
        """
        _, metrics = self._snapshot()
        rows: List[Dict[str, Any]] = []
        for metric in metrics.values():
            for pct in sorted(metric.results):
                r = metric.results[pct]
                rows.append(
                    {
                        "metric_id": metric.id,
                        "percentile": pct,
                        "value": None if isinstance(r.value, tuple) else r.value,
                        "formatted": r.formatted,
                        "annotation": r.threshold.annotation if r.threshold else None,
                        "error": r.error,
                    }
                )
        columns = ["metric_id", "percentile", "value", "formatted", "annotation", "error"]
        return pd.DataFrame(rows, columns=columns)


__all__ = ["ResultStore", "Selector"]
