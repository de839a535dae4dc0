"""Shared fixtures for the monitoring tests."""

import pytest

from monitoring.audit import AuditConfig
from monitoring.events import EventBus
from monitoring.logger import LoggerConfig, LogLevel
from monitoring.system import MonitoringConfig


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def log_dir(tmp_path):
    """Directory for log files."""
    return tmp_path / "logs"


@pytest.fixture
def audit_dir(tmp_path):
    """Directory for audit snapshots."""
    return tmp_path / "audit"


@pytest.fixture
def logger_config(log_dir):
    """File-only logger configuration at DEBUG level."""
    return LoggerConfig(
        level=LogLevel.DEBUG,
        enable_console=False,
        enable_file=True,
        log_directory=str(log_dir),
    )


@pytest.fixture
def audit_config(audit_dir):
    return AuditConfig(directory=str(audit_dir))


@pytest.fixture
def monitoring_config(logger_config, audit_config):
    """Monitoring configuration whose periodic loops never fire during a test."""
    return MonitoringConfig(
        metrics_interval=3600,
        health_check_interval=3600,
        logger=logger_config,
        audit=audit_config,
    )


@pytest.fixture
def events():
    return EventBus()
