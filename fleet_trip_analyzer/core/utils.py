"""
Utility Module

This module provides utility functions for the fleet trip analyzer,
including configuration loading, logging setup and per-unit time budgets.
"""

import os
import copy
import json
import time
import logging
import colorlog
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Callable, Tuple
from datetime import datetime, timedelta
import pytz

from fleet_trip_analyzer.config import EngineConfig
from fleet_trip_analyzer.core.exceptions import ConfigurationError, UnitTimeout


def setup_logging(log_level: str = "INFO") -> None:
    """
    Set up logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level: {log_level}")

    formatter = colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger.handlers = []  # Remove any existing handlers
    root_logger.addHandler(console_handler)

    # Set library loggers to a higher level to reduce noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


# Environment overrides: variable -> (section, key, type)
ENV_OVERRIDES = {
    "FLEET_TRIPS_MOVING_SPEED_KMH": ("segmentation", "moving_speed_kmh", float),
    "FLEET_TRIPS_STOP_DWELL_SECONDS": ("segmentation", "stop_dwell_seconds", float),
    "FLEET_TRIPS_MAX_SAMPLE_GAP_SECONDS": ("segmentation", "max_sample_gap_seconds", float),
    "FLEET_TRIPS_ANOMALY_SPEED_KMH": ("metrics", "anomaly_speed_kmh", float),
    "FLEET_TRIPS_SPEEDING_LIMIT_KMH": ("metrics", "speeding_limit_kmh", float),
    "FLEET_TRIPS_TIMEZONE": ("monitors", "timezone", str),
    "FLEET_TRIPS_MAX_WORKERS": ("analysis", "max_workers", int),
    "FLEET_TRIPS_UNIT_TIMEOUT_SECONDS": ("analysis", "unit_timeout_seconds", float),
    "FLEET_TRIPS_WEBHOOK_URL": ("notifications", "webhook_url", str),
    "FLEET_TRIPS_REDIS_URL": ("cache", "redis_url", str),
    "FLEET_TRIPS_OUTPUT_DIR": ("output", "dir", str),
}


def default_config() -> Dict[str, Any]:
    """Default configuration as a nested dictionary."""
    config = EngineConfig().to_dict()
    config.update({
        "notifications": {
            "webhook_url": None,
            "timeout_seconds": 10.0,
            "max_retries": 3
        },
        "cache": {
            "redis_url": None,
            "key_prefix": "fleet_trips:"
        },
        "output": {
            "dir": None
        }
    })
    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from defaults, a YAML file and environment variables.

    Later sources win: defaults <- YAML file <- FLEET_TRIPS_* variables.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary containing configuration
    """
    config = default_config()

    if config_path:
        if not os.path.exists(config_path):
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                yaml_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error loading config from {config_path}: {e}") from e
        if not isinstance(yaml_config, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
        config = deep_update(config, yaml_config)

    for variable, (section, key, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(variable)
        if raw is None or raw == "":
            continue
        try:
            config.setdefault(section, {})[key] = cast(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {variable}: {raw!r}",
                details={'variable': variable}
            ) from e

    return config


def build_engine_config(config: Dict[str, Any]) -> EngineConfig:
    """Build a validated EngineConfig from the dictionary returned by load_config."""
    return EngineConfig.from_dict(copy.deepcopy(config))


def deep_update(original: Dict, update: Dict) -> Dict:
    """
    Recursively update a dictionary.

    Args:
        original: Original dictionary
        update: Dictionary with updates

    Returns:
        Updated dictionary
    """
    for key, value in update.items():
        if isinstance(value, dict) and key in original and isinstance(original[key], dict):
            deep_update(original[key], value)
        else:
            original[key] = value
    return original


def ensure_dir(directory: str) -> str:
    """
    Ensure that a directory exists.

    Args:
        directory: Directory path

    Returns:
        Absolute path to the directory
    """
    path = Path(directory)
    path.mkdir(parents=True, exist_ok=True)
    return str(path.absolute())


def calculate_time_window(hours: float, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Calculate the start and end times of a look-back window.

    Args:
        hours: Number of hours to look back
        now: Reference time (defaults to the current UTC time)

    Returns:
        Tuple containing (start_time, end_time) as UTC datetimes
    """
    end_time = now or datetime.now(pytz.UTC)
    end_time = end_time.replace(microsecond=0)
    start_time = end_time - timedelta(hours=hours)
    return start_time, end_time


def save_json_data(data: Any, output_dir: str, filename: str) -> str:
    """
    Save data to a JSON file.

    Args:
        data: Data to save
        output_dir: Output directory
        filename: Filename

    Returns:
        Path to the saved file
    """
    ensure_dir(output_dir)
    file_path = os.path.join(output_dir, filename)
    with open(file_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, default=str, ensure_ascii=False)
    return file_path


class Deadline:
    """Wall-clock budget for one unit of work, checked cooperatively."""

    def __init__(self, unit_id: Any, budget_seconds: Optional[float],
                 clock: Callable[[], float] = time.monotonic):
        self.unit_id = unit_id
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def expired(self) -> bool:
        return self.budget_seconds is not None and self.elapsed > self.budget_seconds

    def check(self) -> None:
        """Raise UnitTimeout once the budget is spent."""
        if self.expired():
            raise UnitTimeout(self.unit_id, self.budget_seconds)
