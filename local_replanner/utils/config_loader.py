"""
Configuration Management
Centralized configuration loading and validation for the replanner components.
Supports YAML, JSON, and environment variable overrides.
"""

import os
import yaml
import json
import logging
import copy
from typing import Dict, List, Optional, Any
from pathlib import Path
from dataclasses import dataclass, field, asdict


DEFAULT_CONFIG: Dict[str, Any] = {
    "camera": {
        "fx": 457.815979003906,
        "fy": 457.815979003906,
        "cx": 249.322647094727,
        "cy": 179.5,
        "depth_scale": 1.0 / 5000.0,
        "stride": 4,
        "max_depth": None,
        "camera_offset": [0.0, 0.0, 0.0],
        "camera_rotation": [0.0, 0.0, 0.0],
    },
    "mapping": {
        "pow": 6,
        "resolution": 0.1,
        "radius": 1.0,
        "carve_free_space": True,
    },
    "limits": {
        "max_velocity": 0.3,
        "max_acceleration": 0.5,
    },
    "trajectory": {
        "degree": 10,
        "cost_derivative": 4,
        "boundary_derivatives": 4,
        "continuity_derivatives": 6,
        "samples_per_segment": 200,
        "time_scaling_iterations": 10,
        "limit_tolerance": 0.01,
        "spline_dt": 0.5,
        "min_segment_duration": 1.0,
        "limit_scale": 0.6,
        "spline_order": 6,
    },
    "optimizer": {
        "num_opt_points": 7,
        "distance_threshold": 0.3,
        "unknown_distance_policy": "conservative",
        "max_iterations": 20,
        "convergence_tolerance": 0.01,
        "samples_per_segment": 5,
        "step_gain": 1.0,
        "max_step": 0.1,
        "max_backtracks": 5,
        "limit_tolerance": 0.01,
        "clearance_margin": 0.05,
        "lateral_corrections": True,
        "fix_goal": True,
    },
    "control": {
        "control_rate_hz": 20.0,
        "lookahead_time": 0.05,
        "optimize_on_depth": True,
        "optimize_every_n_ticks": 0,
        "yaw_mode": "hold",
        "min_yaw_speed": 0.05,
    },
    "logging": {},
}


@dataclass
class ReplannerConfig:
    """Complete replanner configuration."""

    camera: Dict[str, Any] = field(default_factory=dict)
    mapping: Dict[str, Any] = field(default_factory=dict)
    limits: Dict[str, Any] = field(default_factory=dict)
    trajectory: Dict[str, Any] = field(default_factory=dict)
    optimizer: Dict[str, Any] = field(default_factory=dict)
    control: Dict[str, Any] = field(default_factory=dict)
    logging: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def merge_configs(
    base_config: Dict[str, Any], override_config: Dict[str, Any]
) -> Dict[str, Any]:
    """Recursively merge configuration dictionaries."""
    result = copy.deepcopy(base_config)

    for key, value in override_config.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def default_config() -> ReplannerConfig:
    return ReplannerConfig(**copy.deepcopy(DEFAULT_CONFIG))


class ConfigManager:
    """
    Configuration management for the replanner.
    Handles loading, default merging, environment overrides, and caching.
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self.logger = logging.getLogger(__name__)

        # Configuration cache
        self._config_cache: Dict[str, ReplannerConfig] = {}

        self.default_configs = {
            "main": self.config_dir / "replanner_config.yaml",
        }

        # Environment variable prefix; "__" separates nesting levels
        self.env_prefix = "LOCAL_REPLANNER_"

        self.logger.info(f"Config Manager initialized: {config_dir}")

    def load_config(self, config_name: str = "main") -> ReplannerConfig:
        """
        Load configuration from file with defaults and environment overrides.

        Args:
            config_name: Configuration name to load

        Returns:
            Loaded replanner configuration
        """
        if config_name in self._config_cache:
            return self._config_cache[config_name]

        config_path = self.default_configs.get(
            config_name, self.config_dir / f"{config_name}_config.yaml"
        )

        if config_path.exists():
            file_data = self.load_config_file(config_path)
        else:
            self.logger.warning(f"Config file not found: {config_path}, using defaults")
            file_data = {}

        replanner_config = self.build_config(file_data)
        self._config_cache[config_name] = replanner_config

        self.logger.info(f"Configuration loaded: {config_name}")
        return replanner_config

    def build_config(self, config_data: Dict[str, Any]) -> ReplannerConfig:
        """Merge raw data over the defaults and apply environment overrides."""
        unknown = set(config_data) - set(DEFAULT_CONFIG)
        if unknown:
            self.logger.warning(f"Ignoring unknown config sections: {sorted(unknown)}")
            config_data = {k: v for k, v in config_data.items() if k in DEFAULT_CONFIG}

        merged = merge_configs(DEFAULT_CONFIG, config_data)
        merged = self._apply_env_overrides(merged)
        return ReplannerConfig(**merged)

    def load_config_file(self, config_path: Path) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        config_path = Path(config_path)
        suffix = config_path.suffix.lower()
        if suffix not in [".yaml", ".yml", ".json"]:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")

        try:
            with open(config_path, "r") as f:
                if suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            self.logger.error(f"Failed to load config {config_path}: {e}")
            return {}

        return data or {}

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        overrides: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                config_key = key[len(self.env_prefix) :].lower()
                config_path = [part for part in config_key.split("__") if part]
                if not config_path:
                    continue

                self._set_nested_value(overrides, config_path, self._parse_env_value(value))

        if overrides:
            config_data = merge_configs(config_data, overrides)
            self.logger.info(f"Applied {len(overrides)} environment overrides")

        return config_data

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ["true", "false"]:
            return value.lower() == "true"

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        try:
            return json.loads(value)
        except (json.JSONDecodeError, ValueError):
            pass

        return value

    def _set_nested_value(self, config: Dict[str, Any], path: List[str], value: Any):
        """Set value in nested dictionary."""
        current = config
        for key in path[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[path[-1]] = value

    def save_config(self, config: ReplannerConfig, output_path: str):
        """Save configuration to file."""
        output_path = Path(output_path)
        config_dict = config.to_dict()

        with open(output_path, "w") as f:
            if output_path.suffix.lower() in [".yaml", ".yml"]:
                yaml.safe_dump(config_dict, f, default_flow_style=False, indent=2)
            else:
                json.dump(config_dict, f, indent=2)

        self.logger.info(f"Configuration saved to {output_path}")


# Convenience functions
def load_config(config_path: Optional[str] = None) -> ReplannerConfig:
    """Load replanner configuration."""
    if config_path:
        custom_path = Path(config_path)
        manager = ConfigManager(str(custom_path.parent))
        if custom_path.exists():
            return manager.build_config(manager.load_config_file(custom_path))
        manager.logger.warning(f"Config file not found: {custom_path}, using defaults")
        return manager.build_config({})

    return ConfigManager().load_config("main")


def validate_config(config: ReplannerConfig) -> Dict[str, List[str]]:
    """
    Validate replanner configuration.

    Returns:
        Dictionary of validation errors by section
    """
    errors: Dict[str, List[str]] = {}

    def _positive(section: Dict[str, Any], key: str) -> bool:
        value = section.get(key)
        return isinstance(value, (int, float)) and value > 0

    camera_errors = []
    for key in ["fx", "fy", "depth_scale"]:
        if not _positive(config.camera, key):
            camera_errors.append(f"{key} must be positive")
    if int(config.camera.get("stride", 0)) < 1:
        camera_errors.append("stride must be at least 1")
    if camera_errors:
        errors["camera"] = camera_errors

    mapping_errors = []
    if not isinstance(config.mapping.get("pow"), int) or config.mapping["pow"] < 1:
        mapping_errors.append("pow must be a positive integer")
    for key in ["resolution", "radius"]:
        if not _positive(config.mapping, key):
            mapping_errors.append(f"{key} must be positive")
    if mapping_errors:
        errors["mapping"] = mapping_errors

    limit_errors = []
    for key in ["max_velocity", "max_acceleration"]:
        if not _positive(config.limits, key):
            limit_errors.append(f"{key} must be positive")
    if limit_errors:
        errors["limits"] = limit_errors

    trajectory_errors = []
    if not _positive(config.trajectory, "spline_dt"):
        trajectory_errors.append("spline_dt must be positive")
    if int(config.trajectory.get("spline_order", 0)) < 2:
        trajectory_errors.append("spline_order must be at least 2")
    if trajectory_errors:
        errors["trajectory"] = trajectory_errors

    optimizer_errors = []
    if int(config.optimizer.get("num_opt_points", 0)) < 1:
        optimizer_errors.append("num_opt_points must be at least 1")
    if not _positive(config.optimizer, "distance_threshold"):
        optimizer_errors.append("distance_threshold must be positive")
    if float(config.optimizer.get("clearance_margin", 0.0)) < 0:
        optimizer_errors.append("clearance_margin must be non-negative")
    if config.optimizer.get("unknown_distance_policy") not in ("conservative", "optimistic"):
        optimizer_errors.append("unknown_distance_policy must be 'conservative' or 'optimistic'")
    if int(config.optimizer.get("max_iterations", 0)) < 1:
        optimizer_errors.append("max_iterations must be at least 1")
    if optimizer_errors:
        errors["optimizer"] = optimizer_errors

    control_errors = []
    if not _positive(config.control, "control_rate_hz"):
        control_errors.append("control_rate_hz must be positive")
    if config.control.get("yaw_mode") not in ("hold", "velocity"):
        control_errors.append("yaw_mode must be 'hold' or 'velocity'")
    if control_errors:
        errors["control"] = control_errors

    return errors
