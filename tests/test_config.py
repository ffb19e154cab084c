"""
Tests for the YAML server configuration.
"""
import logging
from pathlib import Path

import pytest

from agelum.config import Config, ConfigError, default_config_path


def test_defaults_without_file(home, tmp_path):
    cfg = Config.load(str(tmp_path / "missing.yaml"))
    assert cfg.port == 6500
    assert cfg.host == "127.0.0.1"
    assert cfg.home_dir == str(home)
    assert cfg.activity_db == str(home / "activity.db")


def test_yaml_overrides_and_unknown_keys_ignored(home, tmp_path, caplog):
    path = tmp_path / "config.yaml"
    path.write_text("port: 7000\nwatch: true\nrunner_command: [node, run.js]\nbogus: 1\n")
    with caplog.at_level(logging.INFO, logger="agelum.config"):
        cfg = Config.load(str(path))
    assert f"Loaded config from {path}" in caplog.text
    assert cfg.port == 7000
    assert cfg.watch is True
    assert cfg.runner_command == ["node", "run.js"]
    assert not hasattr(cfg, "bogus")


def test_non_mapping_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        Config.load(str(path))


def test_invalid_yaml_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("port: [unclosed\n")
    with pytest.raises(ConfigError):
        Config.load(str(path))


def test_config_path_from_env(home, monkeypatch, tmp_path):
    assert default_config_path() == Path(home) / "config.yaml"
    monkeypatch.setenv("AGELUM_CONFIG", str(tmp_path / "alt.yaml"))
    assert default_config_path() == tmp_path / "alt.yaml"
