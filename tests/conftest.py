"""
Shared fixtures: a small wind-project scenario document and matching
engine settings.

The scenario uses three percentiles so the expected numbers stay easy to
derive by hand:

- P50 production 10,000 MWh at 50/MWh, escalated 2% a year from year 1;
- construction: 1.5M turbines (year 0) + 0.5M civil works (60% year 0,
  40% year 1), 70% debt funded;
- 8 year annuity loan at 5% after one grace year.
"""

from __future__ import annotations

import copy
from typing import Any, Dict

import pytest

from windcube.config import EngineSettings

SCENARIO: Dict[str, Any] = {
    "settings": {
        "available_percentiles": [10, 50, 90],
        "primary_percentile": 50,
        "project_life": 10,
        "num_wtgs": 5,
        "currency": "EUR",
        "max_workers": 2,
    },
    "financing": {
        "debtFinancingRatio": 70,
        "costOfConstructionDebt": 5,
        "costOfOperationalDebt": 5,
        "loanDuration": 8,
        "gracePeriod": 1,
        "amortizationType": "annuity",
        "costOfEquity": 8,
        "targetIrr": 8,
        "minimumDSCR": 1.3,
    },
    "market": {
        "escalationRate": [
            {"percentile": 10, "data": 0.01},
            {"percentile": 50, "data": 0.02},
            {"percentile": 90, "data": 0.03},
        ],
        "electricityPrice": {10: 45.0, 50: 50.0, 90: 55.0},
    },
    "production": {
        "energyProduction": {10: 9000.0, 50: 10000.0, 90: 11000.0},
    },
    "construction": {
        "costs": [
            {
                "name": "turbines",
                "totalAmount": 1_500_000,
                "drawdownSchedule": [{"year": 0, "value": 100}],
            },
            {
                "name": "civil works",
                "totalAmount": 500_000,
                "drawdownSchedule": [{"year": 0, "value": 60}, {"year": 1, "value": 40}],
            },
        ],
    },
    "operations": {
        "oemContracts": [
            {
                "name": "full service",
                "fixedFee": 20_000,
                "isPerTurbine": True,
                "years": list(range(1, 11)),
            },
        ],
        "majorRepairs": [{"year": 5, "cost": 50_000, "probability": 50}],
        "reserveFunds": 50_000,
    },
}


@pytest.fixture
def scenario() -> Dict[str, Any]:
    """Fresh deep copy of the reference scenario (tests may mutate it)."""
    return copy.deepcopy(SCENARIO)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        available_percentiles=(10, 50, 90),
        primary_percentile=50,
        project_life=10,
        num_wtgs=5,
        currency="EUR",
        max_workers=1,
    )
