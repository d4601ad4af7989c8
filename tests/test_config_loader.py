import sys
import os
import json

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
import yaml
from local_replanner.utils.config_loader import (
    DEFAULT_CONFIG,
    ConfigManager,
    ReplannerConfig,
    default_config,
    load_config,
    merge_configs,
    validate_config,
)

PROJECT_CONFIG = os.path.join(os.path.dirname(__file__), "..", "config", "replanner_config.yaml")


class TestMergeConfigs:

    def test_nested_merge(self):

        merged = merge_configs({"a": {"x": 1, "y": 2}, "b": 3}, {"a": {"y": 5}})

        assert merged == {"a": {"x": 1, "y": 5}, "b": 3}

    def test_base_is_not_modified(self):

        base = {"a": {"x": 1}}
        merge_configs(base, {"a": {"x": 2}})

        assert base["a"]["x"] == 1


class TestConfigManager:

    @pytest.fixture
    def manager(self, tmp_path):

        return ConfigManager(str(tmp_path))

    def test_missing_file_uses_defaults(self, manager):

        config = manager.load_config("main")

        assert isinstance(config, ReplannerConfig)
        assert config.limits["max_velocity"] == DEFAULT_CONFIG["limits"]["max_velocity"]
        assert config.optimizer["unknown_distance_policy"] == "conservative"

    def test_yaml_overrides_defaults(self, manager, tmp_path):

        (tmp_path / "replanner_config.yaml").write_text(
            yaml.safe_dump({"limits": {"max_velocity": 0.5}, "bogus": {"x": 1}})
        )

        config = manager.load_config("main")

        assert config.limits["max_velocity"] == 0.5
        assert config.limits["max_acceleration"] == 0.5
        assert not hasattr(config, "bogus")

    def test_configs_are_cached(self, manager):

        assert manager.load_config("main") is manager.load_config("main")

    def test_environment_overrides(self, manager, monkeypatch):

        monkeypatch.setenv("LOCAL_REPLANNER_OPTIMIZER__DISTANCE_THRESHOLD", "0.45")
        monkeypatch.setenv("LOCAL_REPLANNER_MAPPING__CARVE_FREE_SPACE", "false")

        config = manager.load_config("main")

        assert config.optimizer["distance_threshold"] == 0.45
        assert config.mapping["carve_free_space"] is False

    def test_json_file(self, manager, tmp_path):

        path = tmp_path / "custom.json"
        path.write_text(json.dumps({"control": {"yaw_mode": "velocity"}}))

        data = manager.load_config_file(path)

        assert data == {"control": {"yaw_mode": "velocity"}}

    def test_unsupported_format(self, manager, tmp_path):

        with pytest.raises(ValueError):
            manager.load_config_file(tmp_path / "config.toml")

    def test_malformed_yaml_yields_empty(self, manager, tmp_path):

        path = tmp_path / "broken.yaml"
        path.write_text("limits: [unclosed")

        assert manager.load_config_file(path) == {}

    def test_save_and_reload(self, manager, tmp_path):

        config = default_config()
        config.limits["max_velocity"] = 0.25
        path = tmp_path / "saved.yaml"

        manager.save_config(config, str(path))
        reloaded = load_config(str(path))

        assert reloaded.limits["max_velocity"] == 0.25
        assert reloaded.to_dict() == config.to_dict()


class TestValidateConfig:

    def test_defaults_are_valid(self):

        assert validate_config(default_config()) == {}

    def test_shipped_config_is_valid(self):

        config = load_config(PROJECT_CONFIG)

        assert validate_config(config) == {}
        assert config.trajectory["limit_scale"] == 0.6

    def test_errors_by_section(self):

        config = default_config()
        config.limits["max_velocity"] = -1.0
        config.optimizer["unknown_distance_policy"] = "maybe"
        config.mapping["pow"] = 0
        config.control["yaw_mode"] = "spin"

        errors = validate_config(config)

        assert "max_velocity must be positive" in errors["limits"]
        assert any("unknown_distance_policy" in e for e in errors["optimizer"])
        assert "pow must be a positive integer" in errors["mapping"]
        assert any("yaw_mode" in e for e in errors["control"])
        assert "camera" not in errors
