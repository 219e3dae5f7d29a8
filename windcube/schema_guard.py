"""
Registry guard.

Validates raw source / metric registry entries before any computation:

  * field-presence rules registered in windcube.config_schema, per
    source kind and metric tier;
  * unique ids, known transformer / calculator keys, known multiplier
    operations;
  * every dependency resolvable and ordered (a source may only depend on
    sources of an earlier wave; analytical metrics must be acyclic).

All problems are collected and raised together as one ConfigurationError.
"""

from __future__ import annotations

import heapq
import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from windcube.config_schema import FORBIDDEN, REQUIRED, get_field_rules
from windcube.contracts import MetricTier, MultiplierOperation, SourceKind
from windcube.errors import ConfigurationError
from windcube.utils import get_nested

logger = logging.getLogger(__name__)

_MISSING = object()


def _is_empty(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        return True
    return False


def check_entry_fields(entry: Mapping[str, Any], scopes: Sequence[str], label: str) -> List[str]:
    """Apply every rule registered for ``scopes`` to one raw entry."""
    problems: List[str] = []
    for scope in scopes:
        for rule in get_field_rules(scope):
            value = get_nested(entry, rule.name.split("."), _MISSING)
            if rule.presence == REQUIRED and _is_empty(value):
                problems.append(f"{label}: '{rule.name}' is required ({rule.description})")
                continue
            if rule.presence == FORBIDDEN and not _is_empty(value):
                problems.append(f"{label}: '{rule.name}' is not allowed ({rule.description})")
                continue
            if value is not _MISSING and value is not None and rule.validator is not None:
                if not rule.validator(value):
                    problems.append(f"{label}: '{rule.name}' has invalid value {value!r}")
    return problems


def _ids(entries: Sequence[Mapping[str, Any]], what: str, problems: List[str]) -> None:
    seen: Set[str] = set()
    for entry in entries:
        eid = entry.get("id")
        if eid in seen:
            problems.append(f"duplicate {what} id '{eid}'")
        seen.add(eid)


def _id_list(value: Any) -> List[str]:
    """Ids from a well-formed list; anything else is reported by the field rules."""
    if isinstance(value, (list, tuple)):
        return [v for v in value if isinstance(v, str)]
    return []


def _kind(entry: Mapping[str, Any]) -> Any:
    try:
        return SourceKind(entry.get("kind"))
    except ValueError:
        return None


def _wave_key(entry: Mapping[str, Any]) -> Tuple[int, int]:
    kind = _kind(entry)
    priority = entry.get("priority")
    return (kind.wave if kind else 99, priority if isinstance(priority, int) else 0)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


def validate_source_entries(
    entries: Sequence[Mapping[str, Any]],
    transformer_keys: Iterable[str],
    global_reference_ids: Iterable[str],
) -> None:
    """Raise ConfigurationError listing every problem in a source registry."""
    problems: List[str] = []
    known_transformers = set(transformer_keys)
    global_refs = set(global_reference_ids)
    by_id: Dict[str, Mapping[str, Any]] = {}

    for i, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            problems.append(f"source #{i}: expected a mapping, got {type(entry).__name__}")
            continue
        label = f"source '{entry.get('id', f'#{i}')}'"
        problems.extend(check_entry_fields(entry, ["source"], label))
        kind = _kind(entry)
        if kind is None:
            problems.append(f"{label}: unknown kind {entry.get('kind')!r}")
        else:
            problems.extend(check_entry_fields(entry, [kind.value], label))
        transformer = entry.get("transformer")
        if transformer is not None and transformer not in known_transformers:
            problems.append(f"{label}: unknown transformer '{transformer}'")
        if isinstance(entry.get("id"), str):
            by_id[entry["id"]] = entry

    _ids([e for e in entries if isinstance(e, Mapping)], "source", problems)

    for sid, entry in by_id.items():
        label = f"source '{sid}'"
        local_refs = {r.get("id") for r in entry.get("references") or () if isinstance(r, Mapping)}
        refs = global_refs | local_refs
        key = _wave_key(entry)

        for dep in _id_list(entry.get("depends_on")):
            if dep not in by_id:
                problems.append(f"{label}: depends on unknown source '{dep}'")
            elif _wave_key(by_id[dep]) >= key:
                problems.append(f"{label}: depends on '{dep}' which is not computed in an earlier wave")

        multipliers = entry.get("multipliers") or ()
        if not isinstance(multipliers, (list, tuple)):
            continue
        for j, mult in enumerate(multipliers):
            mlabel = f"{label} multiplier #{j}"
            if not isinstance(mult, Mapping):
                problems.append(f"{mlabel}: expected a mapping")
                continue
            try:
                op = MultiplierOperation(mult.get("operation"))
            except ValueError:
                problems.append(f"{mlabel}: unknown operation {mult.get('operation')!r}")
                continue
            operand = mult.get("operand_id")
            if operand is None:
                if not (op is MultiplierOperation.SUMMATION and mult.get("source_filter")):
                    problems.append(f"{mlabel}: operand_id is required")
                continue
            if operand in by_id:
                if _wave_key(by_id[operand]) >= key:
                    problems.append(
                        f"{mlabel}: operand '{operand}' is not computed in an earlier wave"
                    )
            elif operand not in refs:
                problems.append(f"{mlabel}: operand '{operand}' is neither a source nor a reference")

    if problems:
        raise ConfigurationError("Invalid source registry", problems)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def dependency_levels(
    ids: Sequence[str],
    edges: Mapping[str, Sequence[str]],
    priorities: Mapping[str, int],
) -> Tuple[List[List[str]], List[str]]:
    """
    Kahn layering over integer-indexed nodes.

    ``edges[a]`` lists the nodes ``a`` depends on (only those within
    ``ids`` are considered). Returns ``(levels, leftover)``: each level is
    ordered by (priority, declaration order); ``leftover`` holds the nodes
    on or behind a cycle.
    """
    index = {node: i for i, node in enumerate(ids)}
    indegree = [0] * len(ids)
    dependents: List[List[int]] = [[] for _ in ids]
    for node, deps in edges.items():
        if node not in index:
            continue
        for dep in set(deps):
            if dep in index and dep != node:
                indegree[index[node]] += 1
                dependents[index[dep]].append(index[node])
            elif dep == node:
                indegree[index[node]] += 1

    def key(i: int) -> Tuple[int, int]:
        return (priorities.get(ids[i], 0), i)

    frontier = [key(i) for i in range(len(ids)) if indegree[i] == 0]
    heapq.heapify(frontier)
    levels: List[List[str]] = []
    placed = 0
    while frontier:
        current = [heapq.heappop(frontier)[1] for _ in range(len(frontier))]
        levels.append([ids[i] for i in current])
        placed += len(current)
        nxt: List[Tuple[int, int]] = []
        for i in current:
            for d in dependents[i]:
                indegree[d] -= 1
                if indegree[d] == 0:
                    nxt.append(key(d))
        heapq.heapify(nxt)
        frontier = nxt

    leftover = [ids[i] for i in range(len(ids)) if indegree[i] > 0]
    return levels, leftover


def validate_metric_entries(
    entries: Sequence[Mapping[str, Any]],
    calculator_keys: Iterable[str],
    source_ids: Iterable[str],
    reference_ids: Iterable[str],
) -> None:
    """Raise ConfigurationError listing every problem in a metric registry."""
    problems: List[str] = []
    known_calculators = set(calculator_keys)
    sources = set(source_ids)
    references = set(reference_ids)
    by_id: Dict[str, Mapping[str, Any]] = {}
    tiers: Dict[str, MetricTier] = {}

    for i, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            problems.append(f"metric #{i}: expected a mapping, got {type(entry).__name__}")
            continue
        label = f"metric '{entry.get('id', f'#{i}')}'"
        problems.extend(check_entry_fields(entry, ["metric"], label))
        try:
            tier = MetricTier(entry.get("tier"))
        except ValueError:
            problems.append(f"{label}: unknown tier {entry.get('tier')!r}")
            tier = None
        if tier is not None:
            problems.extend(check_entry_fields(entry, [tier.value], label))
        calc = entry.get("calculator")
        if calc is not None and calc not in known_calculators:
            problems.append(f"{label}: unknown calculator '{calc}'")
        if isinstance(entry.get("id"), str):
            by_id[entry["id"]] = entry
            if tier is not None:
                tiers[entry["id"]] = tier

    _ids([e for e in entries if isinstance(e, Mapping)], "metric", problems)

    edges: Dict[str, List[str]] = {}
    for mid, entry in by_id.items():
        label = f"metric '{mid}'"
        deps = entry.get("depends_on") or {}
        if not isinstance(deps, Mapping):
            deps = {}
        for sid in _id_list(deps.get("sources")):
            if sid not in sources:
                problems.append(f"{label}: depends on unknown source '{sid}'")
        for rid in _id_list(deps.get("references")):
            if rid not in references:
                problems.append(f"{label}: depends on unknown reference '{rid}'")
        metric_deps = _id_list(deps.get("metrics"))
        for dep in metric_deps:
            if dep not in by_id:
                problems.append(f"{label}: depends on unknown metric '{dep}'")
        edges[mid] = [d for d in metric_deps if d in by_id]

    # layering needs well-formed entries; report field problems first
    if not problems:
        analytical = [m for m in by_id if tiers.get(m) is MetricTier.ANALYTICAL]
        priorities = {m: by_id[m].get("priority", 0) for m in by_id}
        _, cyclic = dependency_levels(analytical, edges, priorities)
        if cyclic:
            problems.append(f"cyclic metric dependencies among: {', '.join(sorted(cyclic))}")

    if problems:
        raise ConfigurationError("Invalid metric registry", problems)


__all__ = [
    "check_entry_fields",
    "validate_source_entries",
    "validate_metric_entries",
    "dependency_levels",
]
