# =============================================================================
# TASK TRACKER OBSERVABILITY - MONITORING SYSTEM
# =============================================================================
"""
Monitoring System

Coordinates the structured Logger, the metrics store and the audit trail,
samples process resources, evaluates health and raises alerts.

Features:
    - Periodic process sampling through psutil (memory, CPU, handles,
      threads, pending tasks, event loop delay)
    - Health state machine (healthy / warning / critical)
    - Alert history and event publication on the shared EventBus
    - Operation timing with performance logging
    - Combined JSON report
    - Optional Prometheus HTTP endpoint

Usage::

    system = create_monitoring_system(MonitoringConfig(metrics_interval=30))
    await system.start()

    op = system.start_operation("save_tasks", {"tag": "master"})
    ...
    system.end_operation(op, success=True, result={"saved": 12})

    report = system.generate_report()
    await system.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import sys
import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import psutil
from prometheus_client import CollectorRegistry

from monitoring.audit import AuditConfig, AuditEntry, AuditTracker
from monitoring.events import DEFAULT_QUEUE_SIZE, EventBus, MonitoringEvent
from monitoring.exceptions import ConfigError
from monitoring.logger import Logger, LoggerConfig, utc_now_iso
from monitoring.metrics import MonitoringMetrics, start_metrics_server

logger = logging.getLogger(__name__)

# Result strings longer than this are replaced by their length in performance logs
MAX_RESULT_STRING_LENGTH = 100


# =============================================================================
# CONFIGURATION
# =============================================================================


class HealthStatus(Enum):
    """Overall system health."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class AlertThresholds:
    """Limits evaluated by the health check."""
    error_rate: float = 0.05  # errors / total logs
    response_time: float = 5000.0  # ms, event loop p95 and operation duration
    memory_usage: float = 0.8  # used / total memory

    def __post_init__(self):
        if not 0 < self.error_rate <= 1:
            raise ConfigError("error_rate", "must be in (0, 1]")
        if self.response_time <= 0:
            raise ConfigError("response_time", "must be positive")
        if not 0 < self.memory_usage <= 1:
            raise ConfigError("memory_usage", "must be in (0, 1]")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "AlertThresholds":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(unknown[0], "unrecognized threshold")
        return cls(**data)


@dataclass
class MonitoringConfig:
    """Top-level monitoring configuration."""
    metrics_interval: float = 60.0  # seconds
    health_check_interval: float = 300.0  # seconds
    thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    logger: LoggerConfig = field(default_factory=LoggerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    metrics_port: Optional[int] = None  # None = no HTTP endpoint
    metrics_namespace: str = "tasker"
    event_queue_size: int = DEFAULT_QUEUE_SIZE

    def __post_init__(self):
        if self.metrics_interval <= 0:
            raise ConfigError("metrics_interval", "must be positive")
        if self.health_check_interval <= 0:
            raise ConfigError("health_check_interval", "must be positive")
        if self.metrics_port is not None and not 0 < int(self.metrics_port) < 65536:
            raise ConfigError("metrics_port", "must be a TCP port number")
        if self.event_queue_size < 1:
            raise ConfigError("event_queue_size", "must be at least 1")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "MonitoringConfig":
        """Build from a nested dict (``logger``, ``audit`` and ``thresholds`` sections)."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(unknown[0], "unrecognized monitoring option")

        data["thresholds"] = AlertThresholds.from_dict(data.get("thresholds"))
        data["logger"] = LoggerConfig.from_dict(data.get("logger"))
        data["audit"] = AuditConfig.from_dict(data.get("audit"))
        return cls(**data)


# =============================================================================
# PROCESS SAMPLING
# =============================================================================


class ProcessSampler:
    """Reads resource usage of the current process through psutil."""

    def __init__(self, process: Optional[psutil.Process] = None):
        self.process = process or psutil.Process()
        self._last_cpu: Optional[Any] = None

    def sample(self) -> Dict[str, float]:
        """
        Take one resource sample.

        CPU values are milliseconds spent since the previous sample (since
        process start for the first one). ``memory_external`` is the shared
        memory mapped into the process (libraries, shared buffers); it is 0
        on platforms where psutil does not report it.
        """
        with self.process.oneshot():
            memory = self.process.memory_info()
            cpu = self.process.cpu_times()
            threads = self.process.num_threads()
            handles = self._open_handles()
        total_memory = psutil.virtual_memory().total

        last = self._last_cpu
        self._last_cpu = cpu
        cpu_user = cpu.user - (last.user if last else 0)
        cpu_system = cpu.system - (last.system if last else 0)

        return {
            "memory_heap_used": memory.rss,
            "memory_heap_total": total_memory,
            "memory_rss": memory.rss,
            "memory_vms": memory.vms,
            "memory_external": getattr(memory, "shared", 0),
            "cpu_user": cpu_user * 1000,
            "cpu_system": cpu_system * 1000,
            "active_handles": handles,
            "active_threads": threads,
        }

    def _open_handles(self) -> int:
        if hasattr(self.process, "num_fds"):
            return self.process.num_fds()
        return self.process.num_handles()

    def uptime(self) -> float:
        """Seconds since the process started."""
        return time.time() - self.process.create_time()


def sanitize_result(result: Any, max_length: int = MAX_RESULT_STRING_LENGTH) -> Any:
    """Replace long top-level string fields with ``[<key> length: <n>]``."""
    if not isinstance(result, dict):
        return result
    return {
        key: f"[{key} length: {len(value)}]"
        if isinstance(value, str) and len(value) > max_length
        else value
        for key, value in result.items()
    }


# =============================================================================
# MONITORING SYSTEM
# =============================================================================


class MonitoringSystem:
    """
    Coordinator for logging, metrics and auditing.

    All components can be injected; anything not given is created from
    ``config``. Periodic sampling and health checks run as asyncio tasks
    between ``start()`` and ``stop()``.
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        logger: Optional[Logger] = None,
        metrics: Optional[MonitoringMetrics] = None,
        audit_tracker: Optional[AuditTracker] = None,
        events: Optional[EventBus] = None,
        sampler: Optional[ProcessSampler] = None,
    ):
        self.config = config or MonitoringConfig()
        if events is None:
            events = logger.events if logger is not None else EventBus(
                self.config.event_queue_size
            )
        self.events = events
        self.logger = logger or Logger(self.config.logger, events=self.events)
        self.metrics = metrics or MonitoringMetrics()
        self.audit_tracker = audit_tracker or AuditTracker(
            self.logger, self.config.audit, events=self.events
        )
        self.sampler = sampler or ProcessSampler()

        self.health_status = HealthStatus.HEALTHY
        self.alerts: List[Dict[str, Any]] = []
        self.registry: Optional[CollectorRegistry] = None

        self._operations: Dict[str, str] = {}
        self._tasks: List[asyncio.Task] = []
        self._shutdown_event: Optional[asyncio.Event] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> None:
        """Start the logger, the audit flush loop and the periodic loops."""
        if self._running:
            return

        await self.logger.start()
        await self.audit_tracker.start()

        self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._run_periodic(
                "metrics collection", self.config.metrics_interval, self.collect_system_metrics
            )),
            loop.create_task(self._run_periodic(
                "health check", self.config.health_check_interval, self.perform_health_check
            )),
        ]
        if self.config.metrics_port is not None:
            self.start_metrics_server(self.config.metrics_port)

        self._running = True
        self.logger.info("Monitoring system started", {
            "metrics_interval": self.config.metrics_interval,
            "health_check_interval": self.config.health_check_interval,
            "thresholds": asdict(self.config.thresholds),
        })

    async def stop(self) -> None:
        """Stop the periodic loops, then the audit trail, then the logger."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._running:
            self.logger.info("Monitoring system stopped", {
                "uptime": self.metrics.get_uptime(),
                "alerts": len(self.alerts),
            })
        self._running = False

        await self.audit_tracker.stop()
        await self.logger.close()

    async def __aenter__(self) -> "MonitoringSystem":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run_periodic(
        self, name: str, interval: float, step: Callable[[], Any]
    ) -> None:
        while True:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                step()
            except Exception as e:
                logger.error(f"Periodic {name} failed: {e}", exc_info=True)

    # -----------------------------------------------------------------
    # Sampling and health
    # -----------------------------------------------------------------

    def collect_system_metrics(self) -> None:
        """Record one resource sample as gauges; never raises."""
        try:
            for name, value in self.sampler.sample().items():
                self.metrics.gauge(name, value)

            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
            self.metrics.gauge("active_requests", len(pending))
            self._probe_event_loop_delay(loop)
        except Exception as e:
            self.logger.error("Failed to collect system metrics", {"error": str(e)})

    def _probe_event_loop_delay(self, loop: asyncio.AbstractEventLoop) -> None:
        scheduled = time.perf_counter()

        def record_delay() -> None:
            self.metrics.histogram(
                "event_loop_delay", (time.perf_counter() - scheduled) * 1000
            )

        loop.call_soon(record_delay)

    def _memory_ratio(self) -> Optional[float]:
        used = self.metrics.get_gauge("memory_heap_used")
        total = self.metrics.get_gauge("memory_heap_total")
        if used is None or not total:
            return None
        return used / total

    def _error_rate(self) -> float:
        log_metrics = self.logger.get_metrics()
        return log_metrics["errors"] / max(log_metrics["total_logs"], 1)

    def perform_health_check(self) -> Dict[str, Any]:
        """
        Evaluate health, record alerts and publish status changes.

        Returns:
            ``{"status": ..., "issues": [...]}``. A failing check keeps the
            previous status.
        """
        try:
            return self._evaluate_health()
        except Exception as e:
            self.logger.error("Health check failed", {"error": str(e)})
            return {"status": self.health_status.value, "issues": [], "error": str(e)}

    def _evaluate_health(self) -> Dict[str, Any]:
        thresholds = self.config.thresholds
        issues: List[str] = []
        critical = False
        warning = False

        memory_ratio = self._memory_ratio()
        if memory_ratio is not None and memory_ratio > thresholds.memory_usage:
            warning = True
            issues.append(f"High memory usage: {memory_ratio * 100:.1f}%")

        error_rate = self._error_rate()
        if error_rate > thresholds.error_rate:
            critical = True
            issues.append(f"High error rate: {error_rate * 100:.1f}%")

        snapshot = self.metrics.get_snapshot()
        loop_delay = snapshot["histograms"].get("event_loop_delay")
        if loop_delay and loop_delay["p95"] > thresholds.response_time:
            warning = True
            issues.append(
                f"High event loop delay: {loop_delay['p95']:.0f}ms (95th percentile)"
            )

        if critical:
            new_status = HealthStatus.CRITICAL
        elif warning:
            new_status = HealthStatus.WARNING
        else:
            new_status = HealthStatus.HEALTHY

        if new_status != self.health_status:
            old_status = self.health_status
            self.health_status = new_status
            change = {
                "old_status": old_status.value,
                "new_status": new_status.value,
                "issues": list(issues),
                "timestamp": utc_now_iso(),
            }
            self.events.publish(MonitoringEvent.SYSTEM_HEALTH_CHANGED, change)
            self.logger.info("System health status changed", change)

        if issues:
            alert = {
                "level": "critical" if critical else "warning",
                "message": f"System health issues detected: {', '.join(issues)}",
                "timestamp": utc_now_iso(),
                "metrics": snapshot,
            }
            self.alerts.append(alert)
            self.events.publish(MonitoringEvent.SECURITY_ALERT, alert)

        return {"status": new_status.value, "issues": issues}

    # -----------------------------------------------------------------
    # Operations and auditing
    # -----------------------------------------------------------------

    def start_operation(self, operation: str, context: Optional[Dict[str, Any]] = None) -> str:
        """
        Start timing an operation.

        Returns:
            Operation id to pass to ``end_operation``.
        """
        context = dict(context or {})
        operation_id = self.metrics.start_timer(f"operation_{operation}", context)
        self.metrics.increment("operations_started", 1, {"operation": operation})
        self._operations[operation_id] = operation
        self.logger.debug(f"Operation started: {operation}", {
            "operation_id": operation_id,
            "context": context,
        })
        return operation_id

    def end_operation(
        self, operation_id: str, success: bool = True, result: Any = None
    ) -> float:
        """
        Finish an operation started with ``start_operation``.

        Returns:
            Duration in milliseconds (0 for an unknown id).
        """
        duration = self.metrics.stop_timer(operation_id)
        tags = {"success": "true" if success else "false"}
        self.metrics.increment("operations_completed", 1, tags)
        self.metrics.histogram("operation_duration", duration, tags)
        if not success:
            self.metrics.increment("operations_failed", 1)

        operation = self._operations.pop(operation_id, None)
        self.logger.performance(f"operation_{operation_id}", duration, {
            "operation": operation,
            "success": success,
            "result": sanitize_result(result if result is not None else {}),
        })

        threshold = self.config.thresholds.response_time
        if duration > threshold:
            self.events.publish(MonitoringEvent.PERFORMANCE_THRESHOLD_EXCEEDED, {
                "operation_id": operation_id,
                "operation": operation,
                "duration": duration,
                "threshold": threshold,
                "timestamp": utc_now_iso(),
            })
        return duration

    def audit(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Record an audit event through the audit trail."""
        return self.audit_tracker.audit(action, details, context)

    # -----------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------

    def generate_report(self, period: Optional[str] = None) -> Dict[str, Any]:
        """Combined report of system, metrics, logging, auditing and alerts."""
        snapshot = self.metrics.get_snapshot()
        return {
            "generated_at": utc_now_iso(),
            "period": period or "current-session",
            "system": {
                "health": self.health_status.value,
                "uptime": self.sampler.uptime(),
                "python_version": platform.python_version(),
                "platform": sys.platform,
                "architecture": platform.machine(),
                "pid": os.getpid(),
            },
            "metrics": snapshot,
            "logging": self.logger.generate_report(period),
            "auditing": self.audit_tracker.generate_audit_report(period),
            "alerts": self.alerts[-10:],
            "recommendations": self._generate_recommendations(),
        }

    def _generate_recommendations(self) -> List[Dict[str, str]]:
        recommendations = []

        memory_ratio = self._memory_ratio()
        if memory_ratio is not None and memory_ratio > 0.7:
            recommendations.append({
                "priority": "medium",
                "category": "memory",
                "message": "Memory usage is high, consider optimizing memory consumption",
                "action": "Review memory-intensive operations and implement cleanup",
            })

        if self._error_rate() > 0.03:
            recommendations.append({
                "priority": "high",
                "category": "reliability",
                "message": "Error rate is elevated, investigate recent errors",
                "action": "Review error logs and fix underlying issues",
            })
        return recommendations

    def get_current_metrics(self) -> Dict[str, Any]:
        return self.metrics.get_snapshot()

    def get_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent alerts, oldest first."""
        if limit <= 0:
            return []
        return self.alerts[-limit:]

    def clear_alerts(self) -> None:
        self.alerts.clear()

    def update_thresholds(self, **values: Any) -> AlertThresholds:
        """
        Replace some alert thresholds.

        Raises:
            ConfigError: Unknown threshold or out-of-range value; the
                current thresholds are kept.
        """
        old = self.config.thresholds
        merged = asdict(old)
        for key in values:
            if key not in merged:
                raise ConfigError(key, "unrecognized threshold")
        merged.update(values)
        new = AlertThresholds(**merged)

        self.config.thresholds = new
        change = {
            "section": "thresholds",
            "old": asdict(old),
            "new": asdict(new),
            "timestamp": utc_now_iso(),
        }
        self.events.publish(MonitoringEvent.CONFIGURATION_CHANGED, change)
        self.logger.info("Monitoring thresholds updated", change)
        return new

    def start_metrics_server(self, port: int) -> Optional[CollectorRegistry]:
        """Expose the metrics over HTTP in the Prometheus text format."""
        try:
            self.registry = start_metrics_server(
                self.metrics, port, self.config.metrics_namespace
            )
        except OSError as e:
            self.logger.warn("Failed to start metrics server", {"port": port, "error": str(e)})
            return None
        return self.registry


def create_monitoring_system(config: Optional[MonitoringConfig] = None) -> MonitoringSystem:
    """Factory function to create a monitoring system."""
    return MonitoringSystem(config)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "HealthStatus",
    "AlertThresholds",
    "MonitoringConfig",
    "ProcessSampler",
    "MonitoringSystem",
    "create_monitoring_system",
    "sanitize_result",
]
