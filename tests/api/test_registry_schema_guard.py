"""
Unit tests for windcube.config_schema + windcube.schema_guard, exercised
through the registry loaders.

Invalid registries must fail as a whole with one ConfigurationError that
lists every problem; valid ones load into frozen, wave-ordered registries.
"""

from __future__ import annotations

import copy

import pytest

from windcube.config_schema import build_rules_dataframe, get_field_rules
from windcube.errors import ConfigurationError
from windcube.registry import load_metric_registry, load_source_registry
from windcube.schema_guard import dependency_levels

SOURCES = {
    "references": [{"id": "market", "path": ["market"]}],
    "sources": [
        {"id": "price", "kind": "direct", "priority": 1, "path": ["market", "price"]},
        {"id": "volume", "kind": "direct", "priority": 2, "path": ["volume"]},
        {
            "id": "revenue",
            "kind": "indirect",
            "priority": 1,
            "path": ["volume"],
            "multipliers": [{"operand_id": "price", "operation": "multiply"}],
            "metadata": {"cashflow_group": "revenue"},
        },
        {
            "id": "total",
            "kind": "virtual",
            "priority": 1,
            "transformer": "total_by_group",
            "options": {"cashflow_group": "revenue"},
        },
    ],
}

METRICS = {
    "metrics": [
        {
            "id": "totalSeries",
            "tier": "foundational",
            "priority": 1,
            "calculator": "series_copy",
            "depends_on": {"sources": ["total"]},
            "options": {"source": "total"},
        },
        {
            "id": "totalNpv",
            "tier": "analytical",
            "priority": 50,
            "calculator": "npv",
            "depends_on": {"metrics": ["totalSeries"]},
            "options": {"series": {"metric": "totalSeries"}, "discount_rate": 0.1},
            "usage": ["financeability"],
        },
        {
            "id": "totalIrr",
            "tier": "analytical",
            "priority": 1,
            "calculator": "irr",
            "depends_on": {"metrics": ["totalSeries", "totalNpv"]},
            "options": {"series": {"metric": "totalSeries"}},
        },
    ],
}


def _sources():
    return copy.deepcopy(SOURCES)


def _metrics():
    return copy.deepcopy(METRICS)


def test_rules_are_registered_per_scope():
    names = {r.name for r in get_field_rules("virtual")}
    assert {"path", "transformer"} <= names

    df = build_rules_dataframe()
    assert not df.empty
    assert {"scope", "name", "presence"}.issubset(df.columns)
    assert (df["scope"] == "indirect").any()


def test_valid_source_registry_is_wave_ordered():
    registry = load_source_registry(_sources())

    assert registry.ids == ["price", "volume", "revenue", "total"]
    assert [[s.id for s in w] for w in registry.waves()] == [
        ["price"],
        ["volume"],
        ["revenue"],
        ["total"],
    ]


def test_virtual_source_without_transformer_is_rejected():
    doc = _sources()
    del doc["sources"][3]["transformer"]

    with pytest.raises(ConfigurationError) as ei:
        load_source_registry(doc)

    assert any("transformer" in p for p in ei.value.problems)


def test_unknown_transformer_is_rejected():
    doc = _sources()
    doc["sources"][3]["transformer"] = "no_such_transformer"

    with pytest.raises(ConfigurationError, match="unknown transformer"):
        load_source_registry(doc)


def test_multiplier_operand_must_come_from_an_earlier_wave():
    doc = _sources()
    doc["sources"].append(
        {
            "id": "late",
            "kind": "indirect",
            "priority": 1,
            "path": ["volume"],
            "multipliers": [{"operand_id": "revenue", "operation": "compound"}],
        }
    )

    with pytest.raises(ConfigurationError, match="earlier wave"):
        load_source_registry(doc)


def test_direct_source_with_multipliers_and_bad_kind_are_collected():
    doc = _sources()
    doc["sources"][0]["multipliers"] = [{"operand_id": "market", "operation": "multiply"}]
    doc["sources"][1]["kind"] = "derived"

    with pytest.raises(ConfigurationError) as ei:
        load_source_registry(doc)

    problems = ei.value.problems
    assert len(problems) >= 2
    assert any("multipliers" in p and "'price'" in p for p in problems)
    assert any("unknown kind" in p for p in problems)


def test_duplicate_source_ids_are_rejected():
    doc = _sources()
    doc["sources"].append(dict(doc["sources"][0]))

    with pytest.raises(ConfigurationError, match="duplicate source id"):
        load_source_registry(doc)


def test_metric_registry_orders_analytical_by_dependency_then_priority():
    sources = load_source_registry(_sources())

    registry = load_metric_registry(_metrics(), source_registry=sources)

    assert registry.foundational_waves == (("totalSeries",),)
    # totalIrr has the lower priority number but depends on totalNpv
    assert registry.analytical_waves == (("totalNpv",), ("totalIrr",))
    assert [m.id for m in registry.get_metrics_by_usage("financeability")] == ["totalNpv"]


def test_metric_cycle_is_rejected():
    sources = load_source_registry(_sources())
    doc = _metrics()
    doc["metrics"][1]["depends_on"]["metrics"].append("totalIrr")

    with pytest.raises(ConfigurationError, match="cyclic"):
        load_metric_registry(doc, source_registry=sources)


def test_metric_unknown_dependencies_are_rejected():
    sources = load_source_registry(_sources())
    doc = _metrics()
    doc["metrics"][0]["depends_on"]["sources"] = ["nope"]
    doc["metrics"][2]["depends_on"]["metrics"] = ["ghost"]

    with pytest.raises(ConfigurationError) as ei:
        load_metric_registry(doc, source_registry=sources)

    text = "\n".join(ei.value.problems)
    assert "unknown source 'nope'" in text
    assert "unknown metric 'ghost'" in text


def test_foundational_metric_may_not_depend_on_metrics():
    sources = load_source_registry(_sources())
    doc = _metrics()
    doc["metrics"][0]["depends_on"]["metrics"] = ["totalNpv"]

    with pytest.raises(ConfigurationError, match="depends_on.metrics"):
        load_metric_registry(doc, source_registry=sources)


def test_dependency_levels_reports_cycle_members():
    levels, leftover = dependency_levels(
        ["a", "b", "c", "d"],
        {"b": ["a"], "c": ["d"], "d": ["c"]},
        {"a": 1, "b": 1, "c": 1, "d": 1},
    )

    assert levels == [["a"], ["b"]]
    assert sorted(leftover) == ["c", "d"]


def test_non_integer_metric_priority_is_reported_not_raised_raw():
    sources = load_source_registry(_sources())
    doc = _metrics()
    doc["metrics"][2]["priority"] = "high"

    with pytest.raises(ConfigurationError) as ei:
        load_metric_registry(doc, source_registry=sources)

    assert any("'priority' has invalid value 'high'" in p for p in ei.value.problems)


def test_list_valued_metric_depends_on_is_reported():
    sources = load_source_registry(_sources())
    doc = _metrics()
    doc["metrics"][1]["depends_on"] = ["totalSeries"]

    with pytest.raises(ConfigurationError) as ei:
        load_metric_registry(doc, source_registry=sources)

    assert any("'depends_on' has invalid value" in p and "'totalNpv'" in p for p in ei.value.problems)


def test_malformed_source_dependencies_are_reported():
    doc = _sources()
    doc["sources"][3]["depends_on"] = "price"
    doc["sources"][3]["multipliers"] = {"operand_id": "price", "operation": "multiply"}
    doc["sources"][1]["priority"] = 2.5

    with pytest.raises(ConfigurationError) as ei:
        load_source_registry(doc)

    text = "\n".join(ei.value.problems)
    assert "source 'total': 'depends_on' has invalid value" in text
    assert "source 'total': 'multipliers' has invalid value" in text
    assert "source 'volume': 'priority' has invalid value 2.5" in text
