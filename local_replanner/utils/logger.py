"""
Logging setup for the replanner.

`setup_logging` installs console and rotating-file handlers on the root
logger and gives each package component (`local_replanner.<component>`) its
own level, taken from the `logging` section of the replanner config.
"""

import logging
import logging.handlers
import sys
import functools
from typing import Dict, List, Any, Optional
from pathlib import Path

from local_replanner.utils.config_loader import ReplannerConfig, merge_configs

COMPONENTS = ["perception", "mapping", "planning", "integration", "utils"]

DEFAULT_LOGGING = {
    "level": "INFO",
    "log_dir": "logs",
    "console_logging": True,
    "file_logging": False,
    "error_file_logging": False,
    "max_file_size_mb": 10,
    "backup_count": 5,
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "components": {"utils": {"level": "WARNING"}},
}


def _level(name: Optional[str], default: int = logging.INFO) -> int:
    return getattr(logging, str(name).upper()) if name else default


class SystemLogger:
    """Handlers and component loggers installed by `setup_logging`."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.level = _level(config.get("level"))
        self.log_dir = Path(config.get("log_dir", "logs"))
        self.max_bytes = int(config.get("max_file_size_mb", 10)) * 1024 * 1024
        self.backup_count = int(config.get("backup_count", 5))
        self.formatter = logging.Formatter(config.get("format", DEFAULT_LOGGING["format"]))

        self.handlers: List[logging.Handler] = []
        self.component_loggers: Dict[str, logging.Logger] = {}

        root = logging.getLogger()
        root.setLevel(self.level)
        root.handlers.clear()

        if config.get("console_logging", True):
            self._attach(root, logging.StreamHandler(sys.stdout), self.level)
        if config.get("file_logging", False):
            self._attach(root, self._rotating_file("replanner.log"), self.level)
        if config.get("error_file_logging", False):
            self._attach(root, self._rotating_file("errors.log"), logging.ERROR)

        components = config.get("components") or {}
        for component in COMPONENTS:
            settings = components.get(component) or {}
            logger = logging.getLogger(f"local_replanner.{component}")
            logger.setLevel(_level(settings.get("level"), self.level))

            if settings.get("separate_file", False):
                self._attach(logger, self._rotating_file(f"{component}.log"), logger.level)

            self.component_loggers[component] = logger

        logging.getLogger(__name__).info(
            f"Logging configured: level {logging.getLevelName(self.level)}, "
            f"{len(self.handlers)} handlers"
        )

    def _rotating_file(self, filename: str) -> logging.Handler:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            self.log_dir / filename, maxBytes=self.max_bytes, backupCount=self.backup_count
        )

    def _attach(self, logger: logging.Logger, handler: logging.Handler, level: int):
        handler.setLevel(level)
        handler.setFormatter(self.formatter)
        logger.addHandler(handler)
        self.handlers.append(handler)

    def close(self):
        """Detach and close every handler this instance installed."""
        for handler in self.handlers:
            for logger in [logging.getLogger()] + list(self.component_loggers.values()):
                if handler in logger.handlers:
                    logger.removeHandler(handler)
            handler.close()
        self.handlers.clear()


def setup_logging(config: Optional[Any] = None) -> SystemLogger:
    """
    Configure logging from a `logging` config section.

    Args:
        config: the section as a dict, or a whole ReplannerConfig
    """
    if isinstance(config, ReplannerConfig):
        config = config.logging
    return SystemLogger(merge_configs(DEFAULT_LOGGING, config or {}))


def get_logger(name: str) -> logging.Logger:

    return logging.getLogger(name)


def log_exceptions(component: str):
    """Decorator: log any exception on the component logger, then re-raise it."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger = logging.getLogger(f"local_replanner.{component}")
                logger.error(f"Exception in {func.__name__}: {e}", exc_info=True)
                raise

        return wrapper

    return decorator
