"""Shared helpers: nested lookups, safe conversions and option resolution."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Tuple

from windcube.errors import CalculationError


def get_nested(d: Mapping[str, Any], path: Iterable[Any], default: Any = None) -> Any:
    """Walk a nested mapping (or list, for integer segments) by path segments.

    Returns ``default`` as soon as a segment is missing. A stored ``0`` or
    ``False`` is returned as-is; only absence maps to ``default``.
    """
    current: Any = d
    for key in path:
        if isinstance(current, Mapping):
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, (list, tuple)) and isinstance(key, int):
            if key < 0 or key >= len(current):
                return default
            current = current[key]
        else:
            return default
    return current


def as_float(v: Any, default: Optional[float] = None) -> Optional[float]:
    """Safely convert value to float with fallback."""
    if v is None or isinstance(v, bool):
        return default
    try:
        return float(v)
    except (ValueError, TypeError):
        return default


def as_int(v: Any, default: Optional[int] = None) -> Optional[int]:
    """Safely convert value to int with fallback."""
    if v is None or isinstance(v, bool):
        return default
    try:
        return int(v)
    except (ValueError, TypeError):
        return default


def resolve_parameter(
    spec: Any,
    references: Mapping[str, Any],
    name: str = "parameter",
) -> Tuple[float, bool]:
    """
    Resolve a numeric option against the reference map.

    This is the single default-resolution policy used by transformers and
    calculators. ``spec`` is either

      * a literal number, returned unchanged; or
      * a mapping ``{reference, path, scale, default}``.

    For the mapping form the reference value is looked up first (walking
    ``path`` when the reference is itself a mapping) and multiplied by
    ``scale`` (default 1). When the reference is unset, ``default`` is
    returned as-is (not scaled). When neither exists a CalculationError is
    raised so the caller can turn it into an error result.

    Returns
    -------
    (value, used_default)
    """
    if isinstance(spec, Mapping):
        value: Any = None
        ref_id = spec.get("reference")
        if ref_id is not None:
            value = references.get(ref_id)
            path = spec.get("path") or ()
            if value is not None and path:
                value = get_nested(value, path) if isinstance(value, Mapping) else None
        number = as_float(value)
        if number is not None:
            return number * float(spec.get("scale", 1.0)), False
        if "default" in spec and spec["default"] is not None:
            return float(spec["default"]), True
        raise CalculationError(
            f"{name}: reference '{ref_id}' is unset and no default is declared"
        )

    number = as_float(spec)
    if number is None:
        raise CalculationError(f"{name}: expected a number, got {spec!r}")
    return number, False


__all__ = [
    "get_nested",
    "as_float",
    "as_int",
    "resolve_parameter",
]
