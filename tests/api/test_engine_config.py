"""
Tests for windcube.config: document loading and EngineSettings.
"""

from __future__ import annotations

import json

import pytest
import yaml

from windcube.config import EngineSettings, load_document, load_engine_settings
from windcube.errors import ConfigurationError


def test_settings_from_nested_block():
    settings = load_engine_settings(
        {
            "settings": {
                "available_percentiles": [10, 50, 90],
                "primary_percentile": 90,
                "project_life": 25,
                "currency": "EUR",
            },
            "financing": {"ignored": True},
        }
    )

    assert settings.available_percentiles == (10, 50, 90)
    assert settings.primary_percentile == 90
    assert settings.project_life == 25
    assert settings.as_references() == {"projectLife": 25, "numWTGs": 1.0, "currency": "EUR"}


def test_settings_defaults_from_top_level():
    settings = load_engine_settings({"project_life": 15})

    assert settings.available_percentiles == (10, 25, 50, 75, 90)
    assert settings.primary_percentile == 50
    assert settings.project_life == 15


def test_invalid_settings_collect_all_problems():
    with pytest.raises(ConfigurationError) as ei:
        EngineSettings(available_percentiles=(10, 10, 150), primary_percentile=42, project_life=0)

    problems = ei.value.problems
    assert any("outside 1..99" in p for p in problems)
    assert any("duplicates" in p for p in problems)
    assert any("primary_percentile 42" in p for p in problems)
    assert any("project_life" in p for p in problems)


def test_non_integer_percentiles_are_rejected():
    with pytest.raises(ConfigurationError, match="integers"):
        load_engine_settings({"available_percentiles": ["low", "high"]})


def test_load_yaml_and_json_documents(tmp_path):
    doc = {"settings": {"project_life": 12}}
    yml = tmp_path / "scenario.yaml"
    yml.write_text(yaml.safe_dump(doc), encoding="utf-8")
    jsn = tmp_path / "scenario.json"
    jsn.write_text(json.dumps(doc), encoding="utf-8")

    assert load_document(yml) == doc
    assert load_document(jsn) == doc
    assert load_engine_settings(str(yml)).project_life == 12


def test_load_document_rejects_bad_containers(tmp_path):
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    toml = tmp_path / "settings.toml"
    toml.write_text("x = 1\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Empty document"):
        load_document(empty)
    with pytest.raises(ConfigurationError, match="Expected a mapping"):
        load_document(listing)
    with pytest.raises(ConfigurationError, match="Unsupported"):
        load_document(toml)
    with pytest.raises(FileNotFoundError):
        load_document(tmp_path / "missing.yaml")
