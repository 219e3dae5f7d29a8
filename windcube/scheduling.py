"""
Wave scheduling and supersession.

A wave is a list of independent work items. ``run_wave`` executes them on
a thread pool (or inline when no pool is given) and returns results keyed
by item key, in the order the items were given, whatever the completion
order. A failing item is isolated: ``on_error`` builds its result.

``RecomputeToken`` is checked at every wave boundary; once a newer
recompute supersedes it, ``check()`` raises SupersededError.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, as_completed
from typing import Callable, Dict, Hashable, List, Optional, Sequence, TypeVar

from windcube.errors import SupersededError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class RecomputeToken:
    """Generation marker for one recompute request."""

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self._superseded = threading.Event()

    def supersede(self) -> None:
        self._superseded.set()

    @property
    def superseded(self) -> bool:
        return self._superseded.is_set()

    def check(self, where: str = "") -> None:
        if self._superseded.is_set():
            logger.info("Recompute #%d superseded%s", self.generation, f" at {where}" if where else "")
            raise SupersededError(f"recompute #{self.generation} superseded")


def run_wave(
    items: Sequence[T],
    fn: Callable[[T], R],
    key: Callable[[T], Hashable],
    on_error: Callable[[T, Exception], R],
    executor: Optional[Executor] = None,
) -> Dict[Hashable, R]:
    """Run ``fn`` over ``items``; the wave finishes only when every item has."""
    results: Dict[Hashable, R] = {}

    if executor is None or len(items) <= 1:
        for item in items:
            try:
                results[key(item)] = fn(item)
            except Exception as exc:
                logger.error("Wave item %s failed: %s", key(item), exc)
                results[key(item)] = on_error(item, exc)
        return results

    futures = {executor.submit(fn, item): item for item in items}
    unordered: Dict[Hashable, R] = {}
    for future in as_completed(futures):
        item = futures[future]
        try:
            unordered[key(item)] = future.result()
        except Exception as exc:
            logger.error("Wave item %s failed: %s", key(item), exc)
            unordered[key(item)] = on_error(item, exc)

    ordered_keys: List[Hashable] = [key(item) for item in items]
    for k in ordered_keys:
        results[k] = unordered[k]
    return results


__all__ = ["RecomputeToken", "run_wave"]
