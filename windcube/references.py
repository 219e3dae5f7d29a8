"""
Reference resolution.

A reference is a named value read from project data through the external
path lookup. An unresolved path yields None for that id; consumers treat
None as "no adjustment available". Local references declared on a source
are merged over the global ones and win on id collision.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from windcube.contracts import ReferenceDef
from windcube.errors import DataUnavailableError
from windcube.utils import get_nested

logger = logging.getLogger(__name__)

PathLookup = Callable[[Sequence[str]], Any]


def make_path_lookup(data: Mapping[str, Any]) -> PathLookup:
    """Path accessor over an in-memory scenario document.

    Missing paths return None.
    """

    def lookup(path: Sequence[str]) -> Any:
        return get_nested(data, path)

    return lookup


def lookup_path(path_lookup: PathLookup, path: Optional[Sequence[str]]) -> Any:
    """Call the external lookup; any failure inside it leaves the path unresolved (None)."""
    if not path:
        return None
    try:
        return path_lookup(tuple(path))
    except DataUnavailableError as exc:
        logger.warning("Path %s could not be resolved: %s", ".".join(map(str, path)), exc)
        return None
    except Exception as exc:
        logger.warning(
            "Path lookup for %s failed: %s: %s",
            ".".join(map(str, path)), type(exc).__name__, exc,
        )
        return None


def resolve_references(defs: Sequence[ReferenceDef], path_lookup: PathLookup) -> Dict[str, Any]:
    """Resolve each reference by path; unresolved ids map to None."""
    resolved: Dict[str, Any] = {}
    for ref in defs:
        value = lookup_path(path_lookup, ref.path)
        if value is None:
            logger.warning("Reference '%s' unresolved at path %s", ref.id, ".".join(ref.path))
        resolved[ref.id] = value
    return resolved


def merge_references(
    global_refs: Mapping[str, Any],
    local_refs: Mapping[str, Any],
) -> Dict[str, Any]:
    """Global references overlaid with local ones (local wins)."""
    merged = dict(global_refs)
    merged.update(local_refs)
    return merged


__all__ = [
    "PathLookup",
    "make_path_lookup",
    "lookup_path",
    "resolve_references",
    "merge_references",
]
