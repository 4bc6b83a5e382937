"""
Boomerang Configuration

Defaults below are overridden, in order, by an optional YAML file and by
BOOMERANG_* environment variables. The resulting BoomerangConfig is passed
explicitly to every service that needs it.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_STORAGE_DIR = "storage"
DEFAULT_MAX_CONCURRENT_TASKS = 5
DEFAULT_WORKER_INTERVAL_SECONDS = 1.0
DEFAULT_QUEUE_MAX_SIZE = 1000
DEFAULT_QUEUE_CLEANUP_INTERVAL_SECONDS = 60.0
DEFAULT_CACHE_TTL_SECONDS = 3600.0
DEFAULT_CACHE_MAX_SIZE = 1000
DEFAULT_TASK_TIMEOUT_SECONDS = 300.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_SIMULATION_DELAY_SECONDS = (1.0, 3.0)

# Priority -> (max wait, max execution), seconds
DEFAULT_SLA_PROFILES: Dict[str, Tuple[float, float]] = {
    "high": (30.0, 300.0),
    "medium": (120.0, 600.0),
    "low": (600.0, 1800.0),
}

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Environment variable -> config field
ENV_OVERRIDES = {
    "BOOMERANG_STORAGE_DIR": "storage_dir",
    "BOOMERANG_MAX_CONCURRENT_TASKS": "max_concurrent_tasks",
    "BOOMERANG_EXECUTOR_MAX_CONCURRENT": "executor_max_concurrent",
    "BOOMERANG_WORKER_INTERVAL": "worker_interval_seconds",
    "BOOMERANG_QUEUE_MAX_SIZE": "queue_max_size",
    "BOOMERANG_QUEUE_CLEANUP_INTERVAL": "queue_cleanup_interval_seconds",
    "BOOMERANG_CACHE_TTL": "cache_ttl_seconds",
    "BOOMERANG_CACHE_MAX_SIZE": "cache_max_size",
    "BOOMERANG_CACHE_ENABLED": "cache_enabled",
    "BOOMERANG_TASK_TIMEOUT": "task_timeout_seconds",
    "BOOMERANG_HTTP_TIMEOUT": "http_timeout_seconds",
    "BOOMERANG_LOG_LEVEL": "log_level",
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in ("false", "0", "no", "off", "")


@dataclass
class BoomerangConfig:
    """Runtime configuration for a Boomerang service instance."""
    storage_dir: Path = Path(DEFAULT_STORAGE_DIR)
    max_concurrent_tasks: int = DEFAULT_MAX_CONCURRENT_TASKS
    executor_max_concurrent: int = DEFAULT_MAX_CONCURRENT_TASKS
    worker_interval_seconds: float = DEFAULT_WORKER_INTERVAL_SECONDS
    queue_max_size: int = DEFAULT_QUEUE_MAX_SIZE
    queue_cleanup_interval_seconds: float = DEFAULT_QUEUE_CLEANUP_INTERVAL_SECONDS
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    cache_max_size: int = DEFAULT_CACHE_MAX_SIZE
    cache_enabled: bool = True
    task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    simulation_delay_seconds: Tuple[float, float] = DEFAULT_SIMULATION_DELAY_SECONDS
    sla_profiles: Dict[str, Tuple[float, float]] = field(
        default_factory=lambda: dict(DEFAULT_SLA_PROFILES)
    )
    log_level: str = "INFO"

    def __post_init__(self):
        self.storage_dir = Path(self.storage_dir)
        if self.max_concurrent_tasks < 1:
            raise ValueError(f"max_concurrent_tasks must be >= 1: {self.max_concurrent_tasks}")
        if self.executor_max_concurrent < 1:
            raise ValueError(f"executor_max_concurrent must be >= 1: {self.executor_max_concurrent}")
        if self.queue_max_size < 1:
            raise ValueError(f"queue_max_size must be >= 1: {self.queue_max_size}")
        low, high = self.simulation_delay_seconds
        if low < 0 or high < low:
            raise ValueError(f"Invalid simulation delay range: {self.simulation_delay_seconds}")
        self.simulation_delay_seconds = (float(low), float(high))
        missing = {"high", "medium", "low"} - set(self.sla_profiles)
        if missing:
            raise ValueError(f"SLA profiles missing tiers: {sorted(missing)}")
        self.sla_profiles = {
            tier: (float(values[0]), float(values[1]))
            for tier, values in self.sla_profiles.items()
        }

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoomerangConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        values = {key: value for key, value in data.items() if key in known}
        if "simulation_delay_seconds" in values:
            values["simulation_delay_seconds"] = tuple(values["simulation_delay_seconds"])
        if "sla_profiles" in values:
            profiles = dict(DEFAULT_SLA_PROFILES)
            for tier, profile in values["sla_profiles"].items():
                if isinstance(profile, dict):
                    profiles[tier] = (profile["max_wait_time"], profile["max_execution_time"])
                else:
                    profiles[tier] = tuple(profile)
            values["sla_profiles"] = profiles
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path) -> "BoomerangConfig":
        """Load a config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
        return cls.from_dict(data)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Dict[str, str]] = None,
        config_file: Optional[Path] = None,
    ) -> "BoomerangConfig":
        """
        Load configuration from an optional YAML file plus env overrides.

        Args:
            environ: Environment mapping (defaults to os.environ)
            config_file: YAML file path (defaults to $BOOMERANG_CONFIG_FILE)
        """
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}

        config_file = config_file or environ.get("BOOMERANG_CONFIG_FILE")
        if config_file:
            path = Path(config_file)
            if path.exists():
                with open(path) as f:
                    data.update(yaml.safe_load(f) or {})
                logger.info(f"Loaded config file {path}")
            else:
                logger.warning(f"Config file {path} not found, using defaults")

        types = {f.name: f.type for f in fields(cls)}
        for env_key, field_name in ENV_OVERRIDES.items():
            raw = environ.get(env_key)
            if raw is None or raw == "":
                continue
            field_type = types[field_name]
            if field_type is int:
                data[field_name] = int(raw)
            elif field_type is float:
                data[field_name] = float(raw)
            elif field_type is bool:
                data[field_name] = _parse_bool(raw)
            else:
                data[field_name] = raw

        return cls.from_dict(data)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the service process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
