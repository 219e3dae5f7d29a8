"""
Engine-level behaviour on the bundled registries and on small custom ones:

- wave ordering (each wave sees only earlier waves);
- idempotence across repeated and concurrent recomputes;
- percentile switching served from the store without recomputation;
- graceful degradation on missing data and failing transformers.
"""

from __future__ import annotations

import dataclasses
import threading
from collections import Counter
from typing import Dict, List

import pandas as pd
import pytest

from windcube.engine import CubeEngine
from windcube.registry import (
    DEFAULT_METRICS_PATH,
    load_metric_registry,
    load_source_registry,
)
from windcube.metrics.calculators import DEFAULT_CALCULATORS
from windcube.sources.transformers import DEFAULT_TRANSFORMERS
from windcube.contracts import CUSTOM_PERCENTILE, PercentileSelection
from windcube.references import make_path_lookup


def _counting(table, counts: Counter, lock: threading.Lock, key):
    def wrap(fn):
        def inner(arg):
            with lock:
                counts[key(arg)] += 1
            return fn(arg)

        return inner

    return {name: wrap(fn) for name, fn in table.items()}


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def test_each_wave_sees_only_earlier_waves(settings):
    seen: Dict[str, List[str]] = {}
    lock = threading.Lock()

    def record_visible(call):
        with lock:
            seen[call.source_id] = sorted(call.computed)
        return [{"year": 1, "value": 1.0}]

    doc = {
        "sources": [
            {"id": "e", "kind": "virtual", "priority": 9, "transformer": "record_visible"},
            {"id": "c", "kind": "virtual", "priority": 5, "transformer": "record_visible"},
            {"id": "a", "kind": "direct", "priority": 1, "path": ["a"]},
            {"id": "d", "kind": "virtual", "priority": 5, "transformer": "record_visible"},
            {"id": "b", "kind": "direct", "priority": 1, "path": ["b"]},
        ]
    }
    table = dict(DEFAULT_TRANSFORMERS, record_visible=record_visible)
    sources = load_source_registry(doc, transformers=table)
    metrics = load_metric_registry({"metrics": []}, source_registry=sources)
    engine = CubeEngine.create(dataclasses.replace(settings, max_workers=4), sources, metrics)

    report = engine.recompute({"a": 1.0, "b": 2.0})

    assert report.ok
    assert engine.store.source_ids == ["a", "b", "c", "d", "e"]
    assert seen["c"] == ["a", "b"]
    assert seen["d"] == ["a", "b"]
    assert seen["e"] == ["a", "b", "c", "d"]


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------


def _signatures(engine: CubeEngine):
    ids = engine.store.source_ids + engine.store.metric_ids
    return {i: [e.signature() for e in engine.store.audit_trail(i)] for i in ids}


def test_recompute_is_idempotent_and_independent_of_parallelism(scenario, settings):
    serial = CubeEngine.create(settings)
    parallel = CubeEngine.create(dataclasses.replace(settings, max_workers=4))

    serial.recompute(scenario)
    first_sources = serial.store.to_frame()
    first_metrics = serial.store.metrics_frame()
    first_trails = _signatures(serial)

    serial.recompute(scenario)
    parallel.recompute(scenario)

    for engine in (serial, parallel):
        pd.testing.assert_frame_equal(engine.store.to_frame(), first_sources)
        pd.testing.assert_frame_equal(engine.store.metrics_frame(), first_metrics)
        assert _signatures(engine) == first_trails


# ---------------------------------------------------------------------------
# Percentile switching
# ---------------------------------------------------------------------------


def test_percentile_switch_does_not_recompute(scenario, settings):
    lock = threading.Lock()
    transformer_calls: Counter = Counter()
    calculator_calls: Counter = Counter()
    sources = load_source_registry(
        transformers=_counting(DEFAULT_TRANSFORMERS, transformer_calls, lock, lambda c: c.source_id)
    )
    metrics = load_metric_registry(
        DEFAULT_METRICS_PATH,
        source_registry=sources,
        calculators=_counting(DEFAULT_CALCULATORS, calculator_calls, lock, lambda i: i.metric_id),
    )
    engine = CubeEngine.create(settings, sources, metrics)

    engine.recompute(scenario)

    # one transformer call per source, one calculator call per (metric, percentile)
    assert set(transformer_calls.values()) == {1}
    assert set(calculator_calls.values()) == {len(settings.available_percentiles)}
    before = (dict(transformer_calls), dict(calculator_calls))

    values = {}
    for pct in settings.available_percentiles:
        for selector in (pct, PercentileSelection.unified_at(pct)):
            metric = engine.get_metric_result("projectNpv", selector)
            values[pct] = metric.result(pct).value
        engine.get_data_by_percentile(pct)

    assert (dict(transformer_calls), dict(calculator_calls)) == before
    assert values[10] < values[50] < values[90]


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------


def test_missing_path_degrades_to_empty_series(scenario, settings):
    del scenario["operations"]["majorRepairs"]
    engine = CubeEngine.create(settings)

    report = engine.recompute(scenario)

    repairs = engine.get_data_by_source_id("majorRepairs")
    assert repairs.error is None
    assert all(s.is_empty for s in repairs.series.values())
    assert repairs.warnings == ("path operations.majorRepairs unresolved",)
    raw_steps = [e for e in repairs.audit_trail if e.step == "raw_data"]
    assert raw_steps and raw_steps[0].level == "warning"

    assert "majorRepairs: path operations.majorRepairs unresolved" in report.warnings
    assert not report.failed_sources
    assert not engine.get_data_by_source_id("totalCost").series[50].is_empty
    assert engine.get_metric_result("projectNpv", 50).result(50).ok


def test_failing_transformer_is_isolated(scenario, settings):
    scenario["operations"]["majorRepairs"] = [{"year": 5, "cost": 10_000, "probability": 150}]
    engine = CubeEngine.create(settings)

    report = engine.recompute(scenario)

    assert "majorRepairs" in report.failed_sources
    assert "probability" in report.failed_sources["majorRepairs"]
    repairs = engine.get_data_by_source_id("majorRepairs")
    assert repairs.audit_trail[-1].level == "error"
    assert "netCashflow" in report.computed_sources
    assert engine.get_metric_result("minDscr", 50).result(50).ok


def test_missing_financing_block_uses_documented_defaults(scenario, settings):
    del scenario["financing"]
    engine = CubeEngine.create(settings)

    report = engine.recompute(scenario)

    debt = engine.get_data_by_source_id("debtDrawdown")
    transform = [e for e in debt.audit_trail if e.step == "transform"][0]
    assert transform.details["defaults_used"] == ["debt_ratio"]
    assert debt.series[50].value_at(0) == pytest.approx(0.70 * 1_800_000)

    npv = engine.get_metric_result("projectNpv", 50).result(50)
    assert npv.metadata["defaults_used"] == ["discount_rate"]
    assert not report.failed_sources


def test_raising_path_lookup_is_isolated_per_reference(scenario, settings):
    base = make_path_lookup(scenario)

    def lookup(path):
        if path and path[0] == "financing":
            raise ValueError("financing sheet is locked")
        return base(path)

    engine = CubeEngine.create(settings)

    report = engine.recompute(lookup)

    assert not report.superseded
    assert not report.failed_sources
    debt = engine.get_data_by_source_id("debtDrawdown")
    assert debt.series[50].value_at(0) == pytest.approx(0.70 * 1_800_000)
    assert engine.get_metric_result("projectNpv", 50).result(50).ok


def test_unresolved_local_reference_marks_the_references_step(settings):
    doc = {
        "sources": [
            {
                "id": "fees",
                "kind": "direct",
                "priority": 1,
                "path": ["fees"],
                "references": [
                    {"id": "contractIndex", "path": ["indices", "contract"]},
                    {"id": "lostIndex", "path": ["indices", "missing"]},
                ],
            }
        ]
    }
    sources = load_source_registry(doc)
    metrics = load_metric_registry({"metrics": []}, source_registry=sources)
    engine = CubeEngine.create(settings, sources, metrics)

    engine.recompute({"fees": 10.0, "indices": {"contract": 1.5}})

    fees = engine.get_data_by_source_id("fees")
    step = [e for e in fees.audit_trail if e.step == "references"][0]
    assert step.level == "warning"
    assert step.details["unresolved"] == ["lostIndex"]
    assert "reference 'lostIndex' unresolved" in fees.warnings
    assert engine.get_references("fees") == {"contractIndex": 1.5}


def test_transformer_reads_selected_percentile_for_composite_key(settings):
    def doubled(call):
        return {
            pct: [{"year": p["year"], "value": 2 * p["value"]} for p in call.raw_for(pct)]
            for pct in call.percentiles
        }

    def passthrough(call):
        # only the configured percentiles; the composite key is filled by the pipeline
        return {pct: call.raw_for(pct) for pct in (10, 50, 90)}

    raw = {
        10: [{"year": 1, "value": 1.0}],
        50: [{"year": 1, "value": 5.0}],
        90: [{"year": 1, "value": 9.0}],
    }
    doc = {
        "sources": [
            {"id": "doubled", "kind": "direct", "priority": 1, "path": ["raw"],
             "has_percentiles": True, "transformer": "doubled"},
            {"id": "plain", "kind": "direct", "priority": 1, "path": ["raw"],
             "has_percentiles": True, "transformer": "passthrough"},
        ]
    }
    table = dict(DEFAULT_TRANSFORMERS, doubled=doubled, passthrough=passthrough)
    sources = load_source_registry(doc, transformers=table)
    metrics = load_metric_registry({"metrics": []}, source_registry=sources)
    engine = CubeEngine.create(settings, sources, metrics)
    selection = PercentileSelection.by_source({"doubled": 90, "plain": 10})

    report = engine.recompute({"raw": raw}, selection)

    assert report.ok
    doubled_series = engine.get_data_by_source_id("doubled").series
    assert doubled_series[CUSTOM_PERCENTILE].value_at(1) == pytest.approx(18.0)
    assert doubled_series[50].value_at(1) == pytest.approx(10.0)
    plain = engine.get_data_by_source_id("plain")
    assert plain.series[CUSTOM_PERCENTILE].value_at(1) == pytest.approx(1.0)
    assert not plain.warnings
