# =============================================================================
# TASK TRACKER OBSERVABILITY - MONITORING PACKAGE
# =============================================================================
"""
Monitoring Package

This package provides logging, metrics and auditing infrastructure for
the task tracker.

Components:
    - Logger: Structured logging with rotating, queryable file sinks
    - Metrics: Counters, gauges, histograms and timers with Prometheus export
    - Audit: Buffered, redacted audit trail persisted as JSON snapshots
    - System: Process sampling, health checks, alerts and reports
    - Events: Bounded publish/subscribe channel for monitoring events

Usage:
    from monitoring import MonitoringConfig, create_monitoring_system

    system = create_monitoring_system(MonitoringConfig())
    await system.start()

    # Logging
    system.logger.info("Task created", {"task_id": 12})

    # Metrics
    system.metrics.increment("tasks_created", tags={"tag": "master"})
    op = system.start_operation("save_tasks")
    system.end_operation(op, success=True)

    # Audit trail
    system.audit("task.delete", {"task_id": 12}, {"user_id": "alice"})

    await system.stop()
"""

# Exceptions
from monitoring.exceptions import ConfigError, MonitoringError

# Events
from monitoring.events import EventBus, MonitoringEvent, Subscription

# Logger
from monitoring.logger import (
    LogEntry,
    Logger,
    LoggerConfig,
    LogLevel,
    LogQuery,
    LogType,
    mask_sensitive_data,
    sanitize_value,
    setup_logging,
)

# Metrics
from monitoring.metrics import (
    MonitoringMetrics,
    PrometheusExporter,
    render_prometheus,
    start_metrics_server,
)

# Audit
from monitoring.audit import AuditConfig, AuditEntry, AuditQuery, AuditTracker

# System
from monitoring.system import (
    AlertThresholds,
    HealthStatus,
    MonitoringConfig,
    MonitoringSystem,
    ProcessSampler,
    create_monitoring_system,
)

# Configuration
from monitoring.config import load_config


__all__ = [
    # Exceptions
    "MonitoringError",
    "ConfigError",
    # Events
    "EventBus",
    "MonitoringEvent",
    "Subscription",
    # Logger
    "LogEntry",
    "Logger",
    "LoggerConfig",
    "LogLevel",
    "LogQuery",
    "LogType",
    "mask_sensitive_data",
    "sanitize_value",
    "setup_logging",
    # Metrics
    "MonitoringMetrics",
    "PrometheusExporter",
    "render_prometheus",
    "start_metrics_server",
    # Audit
    "AuditConfig",
    "AuditEntry",
    "AuditQuery",
    "AuditTracker",
    # System
    "AlertThresholds",
    "HealthStatus",
    "MonitoringConfig",
    "MonitoringSystem",
    "ProcessSampler",
    "create_monitoring_system",
    # Configuration
    "load_config",
]
