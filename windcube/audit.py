"""
Audit trail recorder and dependency reconstruction.

Every computed source and metric owns one append-only ``AuditTrail``.
Entries carry the dependency ids that were consulted and a small sample
of the data at that step, taken at the preferred percentile (falling back
to the first percentile available).

``build_dependency_graph`` is the read-side helper used by graph
consumers: it walks ``dependency_ids`` breadth-first from a set of roots.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from windcube.contracts import AuditEntry, MetricResult, PercentileTimeSeries

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 20


def _series_sample(series: Mapping[int, PercentileTimeSeries], preferred: int) -> Dict[str, Any]:
    if preferred in series:
        chosen = preferred
    else:
        chosen = sorted(series)[0]
    points = series[chosen].points
    return {"percentile": chosen, "data": tuple((p.year, p.value) for p in points)}


def make_sample(data: Any, preferred_percentile: int) -> Optional[Dict[str, Any]]:
    """Build the audit sample for a step's output."""
    if data is None:
        return None
    if isinstance(data, Mapping) and data and all(
        isinstance(v, PercentileTimeSeries) for v in data.values()
    ):
        return _series_sample(data, preferred_percentile)
    if isinstance(data, MetricResult):
        value = data.value
        if isinstance(value, (list, tuple)):
            value = tuple((p.year, p.value) for p in value)
        return {"value": value, "error": data.error}
    if isinstance(data, (int, float, str)):
        return {"value": data}
    return {"value": repr(data)}


class AuditTrail:
    """Append-only log of computation steps for one entity."""

    def __init__(self, entity_id: str, preferred_percentile: int = 50, sampling: bool = True) -> None:
        self.entity_id = entity_id
        self.preferred_percentile = preferred_percentile
        self.sampling = sampling
        self._entries: List[AuditEntry] = []
        self._last_tick = time.perf_counter()

    def add(
        self,
        step: str,
        op_type: str,
        details: Optional[Mapping[str, Any]] = None,
        dependency_ids: Sequence[str] = (),
        data: Any = None,
        level: str = "info",
    ) -> AuditEntry:
        now = time.perf_counter()
        entry = AuditEntry(
            timestamp=time.time(),
            step=step,
            op_type=op_type,
            details=dict(details or {}),
            dependency_ids=tuple(dependency_ids),
            sample=make_sample(data, self.preferred_percentile) if self.sampling else None,
            duration_ms=(now - self._last_tick) * 1000.0,
            level=level,
        )
        self._last_tick = now
        self._entries.append(entry)
        return entry

    def get_trail(self) -> Tuple[AuditEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def get_references(trail: Sequence[AuditEntry], all_references: Mapping[str, Any]) -> Dict[str, Any]:
    """
    References (by id) that any step of ``trail`` consulted.

    Values recorded by a ``references`` step (local references) take
    precedence over ``all_references``. Ids that are not references, such
    as other sources, are skipped.
    """
    used: Dict[str, Any] = {}
    for entry in trail:
        local = entry.details.get("values") if entry.step == "references" else None
        for dep in entry.dependency_ids:
            if dep in used:
                continue
            if isinstance(local, Mapping) and dep in local:
                used[dep] = local[dep]
            elif dep in all_references:
                used[dep] = all_references[dep]
    return used


# ---------------------------------------------------------------------------
# Dependency reconstruction
# ---------------------------------------------------------------------------


@dataclass
class DependencyGraph:
    """Nodes are referenced by integer index into ``nodes``."""

    nodes: List[str] = field(default_factory=list)
    index: Dict[str, int] = field(default_factory=dict)
    depth: List[int] = field(default_factory=list)
    edges: List[Tuple[int, int]] = field(default_factory=list)
    unresolved: List[int] = field(default_factory=list)
    truncated: bool = False

    def _intern(self, node_id: str, depth: int) -> Tuple[int, bool]:
        idx = self.index.get(node_id)
        if idx is not None:
            return idx, False
        idx = len(self.nodes)
        self.nodes.append(node_id)
        self.index[node_id] = idx
        self.depth.append(depth)
        return idx, True

    def edge_ids(self) -> List[Tuple[str, str]]:
        return [(self.nodes[a], self.nodes[b]) for a, b in self.edges]


def build_dependency_graph(
    root_ids: Sequence[str],
    trail_lookup: Callable[[str], Optional[Sequence[AuditEntry]]],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> DependencyGraph:
    """
    Reconstruct the dependency graph reachable from ``root_ids``.

    ``trail_lookup(id)`` returns the entity's audit trail, or None for ids
    with no trail (references, unknown ids); those become leaf nodes and
    are listed in ``unresolved``. Edges point from an entity to each
    dependency it consulted. Traversal stops expanding at ``max_depth``.
    """
    graph = DependencyGraph()
    queue: Deque[int] = deque()
    visited = set()

    for rid in root_ids:
        idx, _ = graph._intern(rid, 0)
        if idx not in visited:
            visited.add(idx)
            queue.append(idx)

    while queue:
        idx = queue.popleft()
        depth = graph.depth[idx]
        trail = trail_lookup(graph.nodes[idx])
        if trail is None:
            graph.unresolved.append(idx)
            continue
        if depth >= max_depth:
            graph.truncated = True
            logger.warning("Dependency walk truncated at depth %d (%s)", depth, graph.nodes[idx])
            continue

        seen_edges = set()
        for entry in trail:
            for dep in entry.dependency_ids:
                dep_idx, _ = graph._intern(dep, depth + 1)
                if dep_idx == idx or dep_idx in seen_edges:
                    continue
                seen_edges.add(dep_idx)
                graph.edges.append((idx, dep_idx))
                if dep_idx not in visited:
                    visited.add(dep_idx)
                    queue.append(dep_idx)

    return graph


__all__ = [
    "AuditTrail",
    "make_sample",
    "get_references",
    "DependencyGraph",
    "build_dependency_graph",
    "DEFAULT_MAX_DEPTH",
]
