"""Tests for configuration loading and validation."""

import json
import os
import tempfile
from pathlib import Path

import pytest

from milestone_orchestrator.config import Config, TierThresholds, get_config
from milestone_orchestrator.errors import ConfigError


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def clean_env():
    saved = {k: os.environ.pop(k) for k in ("MO_CONFIG", "MO_DATA_DIR") if k in os.environ}
    yield
    for k in ("MO_CONFIG", "MO_DATA_DIR"):
        os.environ.pop(k, None)
    os.environ.update(saved)


class TestDefaults:
    def test_defaults(self):
        config = Config()
        assert config.tier_thresholds == TierThresholds(hybrid=25, database=100)
        assert config.heartbeat_timeout_seconds == 300
        assert config.disconnect_grace_seconds == 120
        assert config.checkpoint_retention_count == 10
        assert config.migration_hysteresis_samples == 1
        config.validate()


class TestFromDict:
    def test_camel_case_keys(self):
        config = Config.from_dict({
            "tierThresholds": {"hybrid": 5, "database": 10},
            "heartbeatTimeoutSeconds": 60,
            "checkpointRetentionCount": 2,
        })
        assert config.tier_thresholds.hybrid == 5
        assert config.heartbeat_timeout_seconds == 60
        assert config.checkpoint_retention_count == 2

    def test_snake_case_keys(self, tmp_dir):
        config = Config.from_dict({"data_dir": str(tmp_dir), "auto_migrate": False})
        assert config.data_dir == tmp_dir
        assert config.auto_migrate is False

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown configuration key: colour"):
            Config.from_dict({"colour": "blue"})

    @pytest.mark.parametrize("data", [
        {"tierThresholds": {"hybrid": 50, "database": 10}},
        {"tierThresholds": {"hybrid": 0, "database": 10}},
        {"tierThresholds": {"hybrid": 5, "database": 10, "cloud": 20}},
        {"tierThresholds": [5, 10]},
        {"heartbeatTimeoutSeconds": 0},
        {"heartbeatTimeoutSeconds": "300"},
        {"disconnectGraceSeconds": -1},
        {"migrationHysteresisSamples": 0},
        {"latencyThresholdMs": 0},
        {"autoMigrate": "yes"},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError):
            Config.from_dict(data)


class TestLoad:
    def test_load_file(self, tmp_dir):
        path = tmp_dir / "mo.json"
        path.write_text(json.dumps({"tierThresholds": {"hybrid": 3, "database": 7}}))
        assert Config.load(path).tier_thresholds.database == 7

    def test_invalid_json(self, tmp_dir):
        path = tmp_dir / "mo.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Invalid config file"):
            Config.load(path)

    def test_not_an_object(self, tmp_dir):
        path = tmp_dir / "mo.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            Config.load(path)


class TestFromEnv:
    def test_data_dir_override(self, tmp_dir, clean_env):
        os.environ["MO_DATA_DIR"] = str(tmp_dir / "data")
        assert get_config().data_dir == tmp_dir / "data"

    def test_config_file_from_env(self, tmp_dir, clean_env):
        path = tmp_dir / "mo.json"
        path.write_text(json.dumps({"heartbeatTimeoutSeconds": 45}))
        os.environ["MO_CONFIG"] = str(path)
        assert get_config().heartbeat_timeout_seconds == 45
