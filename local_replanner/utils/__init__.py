"""
Core Utilities Module
Configuration, logging and plotting shared by the replanner components.
"""

from local_replanner.utils.config_loader import (
    ConfigManager,
    ReplannerConfig,
    load_config,
    validate_config,
)
from local_replanner.utils.logger import SystemLogger, setup_logging, get_logger, log_exceptions
from local_replanner.utils.visualization import TrajectoryPlotter

__all__ = [
    # Config
    "ConfigManager",
    "ReplannerConfig",
    "load_config",
    "validate_config",
    # Logging
    "SystemLogger",
    "setup_logging",
    "get_logger",
    "log_exceptions",
    # Plotting
    "TrajectoryPlotter",
]
