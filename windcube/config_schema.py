from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

ValidatorFn = Callable[[Any], bool]

REQUIRED = "required"
FORBIDDEN = "forbidden"
OPTIONAL = "optional"


@dataclass(frozen=True)
class FieldRule:
    """
    Field-presence rule for one kind of registry entry.

    Attributes
    ----------
    scope:
        Entry kind the rule applies to ("source", "direct", "indirect",
        "virtual", "metric", "foundational", "analytical").
    name:
        Dotted field name, e.g. "path" or "depends_on.metrics".
    presence:
        "required" (present and non-empty), "forbidden" (absent or empty)
        or "optional".
    description:
        Human-friendly explanation used in error messages / rule dumps.
    validator:
        Optional predicate applied when the field is present.
    """

    scope: str
    name: str
    presence: str = REQUIRED
    description: str = ""
    validator: Optional[ValidatorFn] = field(default=None)


_RULES: Dict[str, List[FieldRule]] = {}


def register_field_rules(scope: str, rules: Iterable[FieldRule]) -> None:
    """Register rules for a scope (usually at import time)."""
    _RULES.setdefault(scope, []).extend(rules)


def get_field_rules(scope: Optional[str] = None) -> List[FieldRule]:
    """All registered rules, optionally limited to one scope."""
    if scope is None:
        out: List[FieldRule] = []
        for rules in _RULES.values():
            out.extend(rules)
        return out
    return list(_RULES.get(scope, []))


def build_rules_dataframe() -> pd.DataFrame:
    """
    Flatten the rule registry into a DataFrame for inspection.

    Columns: scope, name, presence, has_validator, description.
    """
    rows: List[Dict[str, Any]] = [
        {
            "scope": r.scope,
            "name": r.name,
            "presence": r.presence,
            "has_validator": r.validator is not None,
            "description": r.description,
        }
        for r in get_field_rules()
    ]
    columns = ["scope", "name", "presence", "has_validator", "description"]
    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame(rows, columns=columns).sort_values(["scope", "name"]).reset_index(drop=True)


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _is_path(v: Any) -> bool:
    return isinstance(v, (list, tuple)) and all(isinstance(s, (str, int)) for s in v)


def _is_id_list(v: Any) -> bool:
    return isinstance(v, (list, tuple)) and all(isinstance(s, str) for s in v)


register_field_rules(
    "source",
    [
        FieldRule("source", "id", description="unique source id", validator=lambda v: isinstance(v, str)),
        FieldRule("source", "kind", description="direct | indirect | virtual"),
        FieldRule("source", "priority", description="ordering within a wave", validator=_is_int),
        FieldRule("source", "references", OPTIONAL, "local references", lambda v: isinstance(v, list)),
        FieldRule("source", "metadata", OPTIONAL, "display and grouping metadata", lambda v: isinstance(v, dict)),
        FieldRule("source", "depends_on", OPTIONAL, "earlier-wave source ids", _is_id_list),
    ],
)
register_field_rules(
    "direct",
    [
        FieldRule("direct", "path", description="direct sources read raw data", validator=_is_path),
        FieldRule("direct", "multipliers", FORBIDDEN, "direct sources are not adjusted"),
    ],
)
register_field_rules(
    "indirect",
    [
        FieldRule("indirect", "path", description="indirect sources read raw data", validator=_is_path),
        FieldRule("indirect", "multipliers", description="indirect sources need adjustments",
                  validator=lambda v: isinstance(v, list)),
    ],
)
register_field_rules(
    "virtual",
    [
        FieldRule("virtual", "path", FORBIDDEN, "virtual sources derive from other sources"),
        FieldRule("virtual", "transformer", description="virtual sources need a transformer",
                  validator=lambda v: isinstance(v, str)),
        FieldRule("virtual", "multipliers", OPTIONAL, "adjustments applied after the transformer",
                  lambda v: isinstance(v, list)),
    ],
)
register_field_rules(
    "metric",
    [
        FieldRule("metric", "id", description="unique metric id", validator=lambda v: isinstance(v, str)),
        FieldRule("metric", "tier", description="foundational | analytical"),
        FieldRule("metric", "priority", description="ordering within a tier", validator=_is_int),
        FieldRule("metric", "calculator", description="calculator key", validator=lambda v: isinstance(v, str)),
        FieldRule("metric", "depends_on", OPTIONAL, "dependency mapping", lambda v: isinstance(v, dict)),
        FieldRule("metric", "depends_on.sources", OPTIONAL, "source ids", _is_id_list),
        FieldRule("metric", "depends_on.references", OPTIONAL, "reference ids", _is_id_list),
        FieldRule("metric", "usage", OPTIONAL, "usage tags", _is_id_list),
        FieldRule("metric", "thresholds", OPTIONAL, "annotation rules", lambda v: isinstance(v, list)),
    ],
)
register_field_rules(
    "foundational",
    [
        FieldRule("foundational", "depends_on.metrics", FORBIDDEN,
                  "foundational metrics derive only from sources and references"),
    ],
)
register_field_rules(
    "analytical",
    [
        FieldRule("analytical", "depends_on.metrics", OPTIONAL, "metric ids", _is_id_list),
    ],
)


__all__ = [
    "FieldRule",
    "ValidatorFn",
    "REQUIRED",
    "FORBIDDEN",
    "OPTIONAL",
    "register_field_rules",
    "get_field_rules",
    "build_rules_dataframe",
]
