"""
Source pipeline.

Sources are processed in waves: direct, then indirect, then virtual, and
within each kind by ascending priority. Sources sharing a (kind, priority)
wave are independent and may run concurrently; each sees only the
sources finalised in earlier waves. For one source:

  1. merge global and local references;
  2. fetch raw data by path (not for virtual sources);
  3. apply the transformer, or normalise the raw data directly (a scalar
     is broadcast over years 1..project_life and every percentile);
  4. apply the multipliers in declared order;
  5. write an audit entry for every step.

A missing path, an unresolved reference or a transformer exception
degrades the source to an empty series with a warning / error recorded
on it and in its audit trail. Computation of other sources continues.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from windcube.audit import AuditTrail
from windcube.config import EngineSettings
from windcube.contracts import (
    CUSTOM_PERCENTILE,
    ComputedSource,
    PercentileSelection,
    PercentileStrategy,
    PercentileTimeSeries,
    SourceDefinition,
)
from windcube.registry import SourceRegistry
from windcube.references import PathLookup, lookup_path, merge_references, resolve_references
from windcube.scheduling import RecomputeToken, run_wave
from windcube.sources.multipliers import apply_multipliers
from windcube.sources.transformers import TransformerCall, TransformerFn
from windcube.timeseries import SeriesMap, empty_series, normalize_series, percentile_entries

logger = logging.getLogger(__name__)


def effective_percentiles(
    settings: EngineSettings,
    selection: Optional[PercentileSelection] = None,
) -> Tuple[int, ...]:
    """Configured percentiles, plus the composite key for a per-source selection."""
    percentiles = tuple(settings.available_percentiles)
    if selection is not None and selection.strategy is PercentileStrategy.PER_SOURCE:
        percentiles = percentiles + (CUSTOM_PERCENTILE,)
    return percentiles


def _with_custom(
    series: SeriesMap,
    source_id: str,
    settings: EngineSettings,
    selection: Optional[PercentileSelection],
) -> SeriesMap:
    if selection is None or selection.strategy is not PercentileStrategy.PER_SOURCE:
        return series
    chosen = selection.percentile_for(source_id, settings.primary_percentile)
    base = series.get(chosen)
    out = dict(series)
    out[CUSTOM_PERCENTILE] = PercentileTimeSeries(CUSTOM_PERCENTILE, base.points if base else ())
    return out


class SourceProcessor:
    """Runs the per-source steps against one frozen view of earlier waves."""

    def __init__(
        self,
        settings: EngineSettings,
        path_lookup: PathLookup,
        global_references: Mapping[str, Any],
        transformers: Mapping[str, TransformerFn],
        selection: Optional[PercentileSelection] = None,
    ) -> None:
        self.settings = settings
        self.path_lookup = path_lookup
        self.global_references = global_references
        self.transformers = transformers
        self.selection = selection
        self.percentiles = effective_percentiles(settings, selection)

    def _finish(
        self,
        defn: SourceDefinition,
        trail: AuditTrail,
        series: SeriesMap,
        warnings: Sequence[str],
        error: Optional[str] = None,
    ) -> ComputedSource:
        trail.add(
            "processing_end",
            "end",
            {"percentiles": sorted(series), "warnings": len(warnings), "error": error},
            data=series,
            level="error" if error else ("warning" if warnings else "info"),
        )
        return ComputedSource(
            id=defn.id,
            series=MappingProxyType(dict(series)),
            metadata=defn.metadata,
            audit_trail=trail.get_trail(),
            error=error,
            warnings=tuple(warnings),
        )

    def process(self, defn: SourceDefinition, computed: Mapping[str, ComputedSource]) -> ComputedSource:
        trail = AuditTrail(defn.id, self.settings.primary_percentile, self.settings.audit_sampling)
        warnings: List[str] = []
        trail.add(
            "processing_start",
            "start",
            {"kind": defn.kind.value, "priority": defn.priority, "path": defn.path},
        )

        local = resolve_references(defn.references, self.path_lookup)
        references = merge_references(self.global_references, local)
        unresolved = [ref_id for ref_id, value in local.items() if value is None]
        warnings.extend(f"reference '{ref_id}' unresolved" for ref_id in unresolved)
        if local:
            trail.add(
                "references",
                "resolve",
                {
                    "local": sorted(local),
                    "unresolved": unresolved,
                    "values": {k: v for k, v in local.items() if v is not None},
                },
                tuple(local),
                level="warning" if unresolved else "info",
            )

        raw: Any = None
        if defn.path:
            raw = lookup_path(self.path_lookup, defn.path)
            if raw is None:
                message = f"path {'.'.join(map(str, defn.path))} unresolved"
                logger.warning("Source '%s': %s", defn.id, message)
                warnings.append(message)
                trail.add("raw_data", "fetch", {"path": defn.path, "warning": message}, level="warning")
                return self._finish(defn, trail, empty_series(self.percentiles), warnings)
            trail.add("raw_data", "fetch", {"path": defn.path, "type": type(raw).__name__})

        if defn.transformer:
            call = TransformerCall(
                source_id=defn.id,
                raw_data=raw,
                has_percentiles=defn.has_percentiles,
                percentiles=self.percentiles,
                references=references,
                computed=computed,
                options=defn.transformer_options,
                project_life=self.settings.project_life,
                num_wtgs=self.settings.num_wtgs,
                selection=self.selection,
                primary_percentile=self.settings.primary_percentile,
            )
            try:
                output = self.transformers[defn.transformer](call)
            except Exception as exc:
                message = f"transformer '{defn.transformer}' failed: {type(exc).__name__}: {exc}"
                logger.warning("Source '%s': %s", defn.id, message)
                trail.add("transform", defn.transformer, {"error": message}, call.consulted, level="error")
                return self._finish(defn, trail, empty_series(self.percentiles), warnings, message)
            entries = percentile_entries(output)
            if entries is not None and CUSTOM_PERCENTILE not in entries:
                # per-percentile output without the composite key
                series, shape_warnings = normalize_series(
                    output, True, self.settings.available_percentiles, self.settings.project_life
                )
                series = _with_custom(series, defn.id, self.settings, self.selection)
            else:
                series, shape_warnings = normalize_series(
                    output, True, self.percentiles, self.settings.project_life
                )
            details: Dict[str, Any] = {"transformer": defn.transformer}
            if call.defaults_used:
                details["defaults_used"] = list(call.defaults_used)
            trail.add("transform", defn.transformer, details, call.consulted, data=series)
        else:
            series, shape_warnings = normalize_series(
                raw, defn.has_percentiles, self.settings.available_percentiles, self.settings.project_life
            )
            series = _with_custom(series, defn.id, self.settings, self.selection)
            trail.add("transform", "normalize", {"has_percentiles": defn.has_percentiles}, data=series)
        warnings.extend(shape_warnings)

        if defn.multipliers:
            series, mult_warnings = apply_multipliers(
                series, defn.multipliers, computed, references, trail, defn.id
            )
            warnings.extend(mult_warnings)

        return self._finish(defn, trail, series, warnings)

    def failed(self, defn: SourceDefinition, exc: Exception) -> ComputedSource:
        trail = AuditTrail(defn.id, self.settings.primary_percentile, self.settings.audit_sampling)
        message = f"{type(exc).__name__}: {exc}"
        trail.add("error", "exception", {"error": message}, level="error")
        return self._finish(defn, trail, empty_series(self.percentiles), (), message)


def compute_sources(
    registry: SourceRegistry,
    settings: EngineSettings,
    path_lookup: PathLookup,
    token: Optional[RecomputeToken] = None,
    selection: Optional[PercentileSelection] = None,
    executor: Optional[Executor] = None,
    global_references: Optional[Mapping[str, Any]] = None,
) -> Dict[str, ComputedSource]:
    """
    Run every source of ``registry`` (a SourceRegistry) wave by wave.

    Returns computed sources keyed by id in processing order. Raises
    SupersededError when ``token`` is superseded between waves.
    """
    if global_references is None:
        global_references = resolve_references(registry.references, path_lookup)
    processor = SourceProcessor(
        settings, path_lookup, global_references, registry.transformers, selection
    )
    computed: Dict[str, ComputedSource] = {}

    for index, wave in enumerate(registry.waves()):
        if token is not None:
            token.check(f"source wave {index}")
        snapshot = MappingProxyType(dict(computed))
        logger.debug(
            "Source wave %d %s: %s", index, wave[0].wave_key, ", ".join(d.id for d in wave)
        )
        results = run_wave(
            wave,
            lambda defn: processor.process(defn, snapshot),
            key=lambda defn: defn.id,
            on_error=processor.failed,
            executor=executor,
        )
        for defn in wave:
            computed[defn.id] = results[defn.id]

    if token is not None:
        token.check("source pipeline end")
    return computed


__all__ = [
    "effective_percentiles",
    "SourceProcessor",
    "compute_sources",
]
