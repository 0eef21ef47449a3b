from __future__ import annotations

import json

import pytest

from modkeeper.core.config import load_config, write_default_config
from modkeeper.core.config.loader import ENV_CONFIG_PATH, config_from_dict, default_config_path
from modkeeper.core.errors import ConfigError
from modkeeper.core.events.bus import OverflowPolicy


def test_missing_file_yields_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "absent.json"))
    assert cfg.graph.hub_threshold == 5
    assert cfg.graph.criticality.direct_dependents == 1.0
    assert cfg.graph.criticality.impact_radius == 0.5
    assert cfg.lifecycle.max_commit_attempts == 3
    assert cfg.registry.lock_timeout_seconds == 10.0


def test_values_override_defaults(tmp_path):
    path = tmp_path / "modkeeper.json"
    path.write_text(
        json.dumps(
            {
                "modules_root": "plugins",
                "graph": {"hub_threshold": 3, "criticality": {"impact_radius": 2.0}},
                "events": {"overflow_policy": "DROP_NEWEST"},
            }
        ),
        encoding="utf-8",
    )
    cfg = load_config(str(path))
    assert cfg.modules_root == "plugins"
    assert cfg.graph.hub_threshold == 3
    assert cfg.graph.criticality.impact_radius == 2.0
    assert cfg.graph.criticality.direct_dependents == 1.0
    assert cfg.events.overflow_policy is OverflowPolicy.DROP_NEWEST


def test_invalid_values_raise_config_error():
    with pytest.raises(ConfigError) as ei:
        config_from_dict({"registry": {"lock_timeout_seconds": 0}, "surprise": True}, source="inline")
    err = ei.value
    assert err.code == "config_error"
    assert "inline" in err.user_message
    problems = err.context["problems"]
    assert any(p.startswith("registry.lock_timeout_seconds") for p in problems)
    assert any(p.startswith("surprise") for p in problems)


def test_unreadable_json_raises(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_env_var_names_default_path(monkeypatch, tmp_path):
    monkeypatch.setenv(ENV_CONFIG_PATH, str(tmp_path / "x.json"))
    assert default_config_path() == str(tmp_path / "x.json")
    monkeypatch.delenv(ENV_CONFIG_PATH)
    assert default_config_path().endswith("modkeeper.json")


def test_write_default_round_trips(tmp_path):
    path = str(tmp_path / "config" / "modkeeper.json")
    written = write_default_config(path)
    assert load_config(path) == written
