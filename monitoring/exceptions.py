# =============================================================================
# TASK TRACKER OBSERVABILITY - EXCEPTIONS
# =============================================================================
"""
Exception types for the monitoring package.

Only configuration problems are raised to callers. Runtime failures of the
logging, metrics and audit pipelines are caught and reported on the
diagnostic logger instead.
"""

from __future__ import annotations

__all__ = [
    "MonitoringError",
    "ConfigError",
]


class MonitoringError(Exception):
    """Base exception for monitoring errors."""
    pass


class ConfigError(MonitoringError, ValueError):
    """Raised when a configuration value is missing or out of range."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid configuration for '{field}': {message}")
