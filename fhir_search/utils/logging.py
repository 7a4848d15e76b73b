"""
Logging setup for the FHIR search engine.

Logging is configured once by the embedding application through
``configure_logging``; modules only ever call ``get_logger(__name__)``.
"""

import logging
import logging.config
import os
import sys
from typing import Any, Dict, Optional

import yaml

SIMPLE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(module)s:%(lineno)d %(message)s"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _console_only() -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {"format": SIMPLE_FORMAT},
            "file": {"format": FILE_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "INFO",
                "formatter": "simple",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "": {"handlers": ["console"], "level": "INFO"},
        },
    }


def _read_yaml(config_path: str) -> Optional[Dict[str, Any]]:
    try:
        with open(config_path, "r") as file:
            return yaml.safe_load(file) or None
    except (OSError, yaml.YAMLError) as e:
        print(f"Could not read logging config {config_path} ({e}); using console logging")
        return None


def _attach_file_handler(config: Dict[str, Any], log_file: str) -> None:
    directory = os.path.dirname(log_file)
    if directory:
        os.makedirs(directory, exist_ok=True)

    config.setdefault("formatters", {}).setdefault("file", {"format": FILE_FORMAT})
    config.setdefault("handlers", {})["file"] = {
        "class": "logging.handlers.RotatingFileHandler",
        "level": "DEBUG",
        "formatter": "file",
        "filename": log_file,
        "maxBytes": LOG_FILE_MAX_BYTES,
        "backupCount": LOG_FILE_BACKUPS,
        "encoding": "utf8",
    }

    root = config.setdefault("loggers", {}).setdefault("", {"level": "INFO"})
    handlers = root.setdefault("handlers", [])
    if "file" not in handlers:
        handlers.append("file")


def _apply_level(config: Dict[str, Any], log_level: str) -> None:
    level = log_level.upper()
    if not isinstance(logging.getLevelName(level), int):
        print(f"Ignoring unknown log level {log_level!r}")
        return

    if "" in config.get("loggers", {}):
        config["loggers"][""]["level"] = level
    if "console" in config.get("handlers", {}):
        config["handlers"]["console"]["level"] = level


def configure_logging(
    config_path: Optional[str] = None,
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the search engine.

    Without a YAML file, records go to stdout. A rotating file handler is
    added when ``log_file`` is given.

    Args:
        config_path: dictConfig-style YAML file replacing the console default
        log_level: Level for the root logger and console handler
        log_file: Path of a rotating log file
    """
    config = _console_only()
    if config_path and os.path.exists(config_path):
        config = _read_yaml(config_path) or config

    if log_file:
        _attach_file_handler(config, log_file)

    if log_level:
        _apply_level(config, log_level)

    try:
        logging.config.dictConfig(config)
    except (ValueError, TypeError, AttributeError, ImportError) as e:
        print(f"Invalid logging configuration ({e}); using basic console logging")
        logging.basicConfig(level=logging.INFO, format=SIMPLE_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
