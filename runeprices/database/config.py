"""
Database Configuration

Two kinds of settings live here:

- DatabaseConfig: where the backends are (host, port, credentials, data dir).
  Loaded from config/database.yaml and overridable through environment
  variables (RUNEPRICES_DB_HOST, RUNEPRICES_DB_PORT, RUNEPRICES_DB_USER,
  RUNEPRICES_DB_PASSWORD, RUNEPRICES_DATA_DIR).
- PoolSettings: connection pool policy. Fixed defaults tuned for a
  low-to-moderate traffic analytical workload; never read from files or
  the environment.

Usage:
    from runeprices.database.config import load_database_config

    config = load_database_config()                        # defaults + env
    config = load_database_config('config/custom.yaml')    # explicit file
"""
import os
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path('config') / 'database.yaml'

# env var -> (field, converter)
ENV_OVERRIDES = {
    'RUNEPRICES_DB_HOST': ('host', str),
    'RUNEPRICES_DB_PORT': ('port', int),
    'RUNEPRICES_DB_USER': ('user', str),
    'RUNEPRICES_DB_PASSWORD': ('password', str),
    'RUNEPRICES_DATA_DIR': ('data_dir', str),
}


@dataclass(frozen=True)
class DatabaseConfig:
    """Backend locations and credentials"""
    host: str = 'localhost'
    port: int = 5432
    database: str = 'runescape_prices'
    user: str = 'admin'
    password: str = 'elfe'
    data_dir: str = './data'
    probe_timeout: float = 3.0


@dataclass(frozen=True)
class PoolSettings:
    """
    Connection pool policy (seconds for all durations).

    Shared by both backends. Tests build their own instance to shrink the
    timeouts; production code uses the defaults.
    """
    max_size: int = 10
    min_idle: int = 2
    idle_timeout: float = 30.0
    max_lifetime: float = 1800.0
    acquire_timeout: float = 30.0
    validation_query: str = 'SELECT 1'
    validation_timeout: float = 5.0
    leak_detection_threshold: float = 60.0

    def __post_init__(self):
        if self.max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {self.max_size}")
        if not 0 <= self.min_idle <= self.max_size:
            raise ValueError(
                f"min_idle must be between 0 and max_size ({self.max_size}), got {self.min_idle}"
            )
        if self.idle_timeout <= 0 or self.leak_detection_threshold <= 0:
            raise ValueError("idle_timeout and leak_detection_threshold must be positive")

    @property
    def housekeeping_interval(self) -> float:
        """Period of the pool's idle reaper and leak check"""
        return min(self.idle_timeout, self.leak_detection_threshold) / 4


def _read_yaml_section(path: Path) -> Dict[str, Any]:
    with open(path, 'r') as f:
        document = yaml.safe_load(f) or {}

    section = document.get('database', {}) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'database' section in {path} must be a mapping")

    known = {f.name for f in fields(DatabaseConfig)}
    unknown = set(section) - known
    if unknown:
        logger.warning(f"Ignoring unknown database settings in {path}: {sorted(unknown)}")

    return {k: v for k, v in section.items() if k in known}


def load_database_config(path: Optional[Union[str, Path]] = None) -> DatabaseConfig:
    """
    Build a DatabaseConfig from defaults, a YAML file and the environment.

    Args:
        path: YAML file with a top-level 'database' mapping. When omitted,
            config/database.yaml is used if it exists.

    Returns:
        DatabaseConfig

    Raises:
        FileNotFoundError: If an explicit path does not exist
    """
    config = DatabaseConfig()

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Database config file not found: {config_path}")
    else:
        config_path = DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None

    if config_path is not None:
        logger.info(f"Loading database configuration from {config_path}")
        config = replace(config, **_read_yaml_section(config_path))

    overrides = {}
    for env_var, (field_name, convert) in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            overrides[field_name] = convert(value)
    if overrides:
        logger.debug(f"Environment overrides: {sorted(overrides)}")
        config = replace(config, **overrides)

    return config
