# =============================================================================
# TASK TRACKER OBSERVABILITY - CONFIGURATION LOADING
# =============================================================================
"""
Configuration Loading

Reads the monitoring configuration from a YAML file and applies
environment variable overrides on top of it.

File layout (every key optional; a top-level ``monitoring:`` wrapper is
accepted)::

    metrics_interval: 60
    health_check_interval: 300
    metrics_port: 9464
    thresholds:
      error_rate: 0.05
      response_time: 5000
      memory_usage: 0.8
    logger:
      level: INFO
      log_directory: .speco/logs
      structured_output: true
    audit:
      directory: .speco/audit
      flush_interval: 30

Usage::

    config = load_config("config/monitoring.yaml")
    system = create_monitoring_system(config)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from monitoring.exceptions import ConfigError
from monitoring.system import MonitoringConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/monitoring.yaml"

# Environment variable -> (section, key); section None = top level
ENV_OVERRIDES: Dict[str, Tuple[Optional[str], str]] = {
    # Logger
    "MONITORING_LOG_LEVEL": ("logger", "level"),
    "MONITORING_LOG_DIR": ("logger", "log_directory"),
    "MONITORING_LOG_CONSOLE": ("logger", "enable_console"),
    "MONITORING_LOG_FILE": ("logger", "enable_file"),
    "MONITORING_STRUCTURED_OUTPUT": ("logger", "structured_output"),
    "MONITORING_MAX_FILE_SIZE": ("logger", "max_file_size"),
    "MONITORING_MAX_FILES": ("logger", "max_files"),
    # Audit
    "MONITORING_AUDIT_DIR": ("audit", "directory"),
    "MONITORING_AUDIT_FLUSH_INTERVAL": ("audit", "flush_interval"),
    # Thresholds
    "MONITORING_ERROR_RATE_THRESHOLD": ("thresholds", "error_rate"),
    "MONITORING_RESPONSE_TIME_THRESHOLD": ("thresholds", "response_time"),
    "MONITORING_MEMORY_USAGE_THRESHOLD": ("thresholds", "memory_usage"),
    # Scheduling
    "MONITORING_METRICS_INTERVAL": (None, "metrics_interval"),
    "MONITORING_HEALTH_INTERVAL": (None, "health_check_interval"),
    "MONITORING_METRICS_PORT": (None, "metrics_port"),
}


def _coerce(value: str) -> Any:
    """Convert an environment string to the YAML scalar it spells."""
    try:
        parsed = yaml.safe_load(value)
    except yaml.YAMLError:
        return value
    if isinstance(parsed, (bool, int, float)):
        return parsed
    return value


def apply_env_overrides(
    config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Overlay ``MONITORING_*`` environment variables onto a raw config dict."""
    environ = os.environ if environ is None else environ
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value is None:
            continue
        if section is None:
            config[key] = _coerce(value)
        else:
            target = config.setdefault(section, {})
            if not isinstance(target, dict):
                raise ConfigError(section, "must be a mapping")
            target[key] = _coerce(value)
    return config


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MonitoringConfig:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override YAML values. A missing file falls back
    to the defaults.

    Args:
        config_path: Path to the YAML file (default ``config/monitoring.yaml``).
        environ: Environment mapping (default ``os.environ``).

    Returns:
        Validated MonitoringConfig.

    Raises:
        ConfigError: The file is not valid YAML or holds invalid values.
    """
    config_path = config_path or DEFAULT_CONFIG_PATH
    raw: Dict[str, Any] = {}

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with open(config_file, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(str(config_file), f"invalid YAML: {e}") from e
        logger.info(f"Loaded config from {config_path}")
    else:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    if not isinstance(raw, dict):
        raise ConfigError(str(config_file), "top level must be a mapping")
    if "monitoring" in raw:
        raw = raw["monitoring"] or {}
        if not isinstance(raw, dict):
            raise ConfigError("monitoring", "must be a mapping")

    apply_env_overrides(raw, environ)

    try:
        return MonitoringConfig.from_dict(raw)
    except TypeError as e:
        raise ConfigError(str(config_file), str(e)) from e


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ENV_OVERRIDES",
    "apply_env_overrides",
    "load_config",
]
