"""
Engine settings and document loading.

Responsibilities:
- Load YAML / JSON documents (settings, scenarios, registries).
- Build the immutable EngineSettings used by every pipeline call.

Settings may sit at the top level of a document or under a ``settings:``
key, so a scenario file can carry its own settings block.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple, Union

import yaml

from windcube.errors import ConfigurationError
from windcube.utils import as_int

logger = logging.getLogger(__name__)

DEFAULT_PERCENTILES: Tuple[int, ...] = (10, 25, 50, 75, 90)
DEFAULT_PROJECT_LIFE = 20

DocumentSource = Union[str, Path, Mapping[str, Any]]

# Reference ids always available, filled from EngineSettings.
SETTINGS_REFERENCE_IDS: Tuple[str, ...] = ("projectLife", "numWTGs", "currency")


def load_document(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML or JSON document whose top level is a mapping.

    Only the container is checked here; content rules live with the
    registry loaders and EngineSettings.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")

    suffix = path.suffix.lower()
    with path.open("r", encoding="utf-8") as f:
        if suffix in (".yml", ".yaml"):
            data = yaml.safe_load(f)
        elif suffix == ".json":
            data = json.load(f)
        else:
            raise ConfigurationError(f"Unsupported document extension '{suffix}' for {path}")

    if data is None:
        raise ConfigurationError(f"Empty document: {path}")
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a mapping at top level of {path}, got {type(data).__name__}"
        )
    return data


def as_mapping(source: DocumentSource) -> Dict[str, Any]:
    if isinstance(source, Mapping):
        return dict(source)
    return load_document(source)


@dataclass(frozen=True)
class EngineSettings:
    """Caller-supplied scalars plus execution knobs."""

    available_percentiles: Tuple[int, ...] = DEFAULT_PERCENTILES
    primary_percentile: int = 50
    project_life: int = DEFAULT_PROJECT_LIFE
    num_wtgs: float = 1.0
    currency: str = "USD"
    max_workers: int = 4
    audit_sampling: bool = True

    def __post_init__(self) -> None:
        problems = []
        if not self.available_percentiles:
            problems.append("available_percentiles must not be empty")
        for p in self.available_percentiles:
            if not 1 <= int(p) <= 99:
                problems.append(f"percentile {p} outside 1..99")
        if len(set(self.available_percentiles)) != len(self.available_percentiles):
            problems.append("available_percentiles contains duplicates")
        if self.primary_percentile not in self.available_percentiles:
            problems.append(
                f"primary_percentile {self.primary_percentile} not in available_percentiles"
            )
        if self.project_life <= 0:
            problems.append("project_life must be positive")
        if self.max_workers < 1:
            problems.append("max_workers must be >= 1")
        if problems:
            raise ConfigurationError("Invalid engine settings", problems)

    def as_references(self) -> Dict[str, Any]:
        return {
            "projectLife": self.project_life,
            "numWTGs": self.num_wtgs,
            "currency": self.currency,
        }


def load_engine_settings(source: DocumentSource) -> EngineSettings:
    """Build EngineSettings from a mapping or a YAML/JSON file."""
    raw = as_mapping(source)
    block = raw.get("settings", raw)
    if not isinstance(block, Mapping):
        raise ConfigurationError("'settings' must be a mapping")

    percentiles = block.get("available_percentiles", DEFAULT_PERCENTILES)
    try:
        percentiles = tuple(int(p) for p in percentiles)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"available_percentiles must be integers: {exc}") from exc

    project_life = as_int(block.get("project_life"), DEFAULT_PROJECT_LIFE)
    settings = EngineSettings(
        available_percentiles=percentiles,
        primary_percentile=as_int(block.get("primary_percentile"), 50),
        project_life=project_life if project_life is not None else DEFAULT_PROJECT_LIFE,
        num_wtgs=float(block.get("num_wtgs", 1.0)),
        currency=str(block.get("currency", "USD")),
        max_workers=as_int(block.get("max_workers"), 4),
        audit_sampling=bool(block.get("audit_sampling", True)),
    )
    logger.debug("Loaded engine settings: %s", settings)
    return settings


__all__ = [
    "DEFAULT_PERCENTILES",
    "DEFAULT_PROJECT_LIFE",
    "DocumentSource",
    "SETTINGS_REFERENCE_IDS",
    "load_document",
    "as_mapping",
    "EngineSettings",
    "load_engine_settings",
]
