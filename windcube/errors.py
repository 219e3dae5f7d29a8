"""
Error taxonomy for the cube engine.

Two families:
  * configuration problems (bad registry entries, unresolvable
    dependencies) are fatal and raised at load time;
  * data / calculation problems are recovered locally and surface as
    error fields on computed results, never as exceptions crossing an
    entity boundary.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class WindCubeError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(WindCubeError, ValueError):
    """Raised when a registry or settings document is malformed."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None) -> None:
        self.problems: List[str] = list(problems or [])
        if self.problems:
            lines = [message] + [f"  - {p}" for p in self.problems]
            message = "\n".join(lines)
        super().__init__(message)


class DataUnavailableError(WindCubeError, LookupError):
    """A path or reference resolved to nothing."""


class CalculationError(WindCubeError, ArithmeticError):
    """Numeric failure inside a calculation (no convergence, zero divisor)."""


class SupersededError(WindCubeError):
    """An in-flight recompute was replaced by a newer request."""


__all__ = [
    "WindCubeError",
    "ConfigurationError",
    "DataUnavailableError",
    "CalculationError",
    "SupersededError",
]
