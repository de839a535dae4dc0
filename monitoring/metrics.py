# =============================================================================
# TASK TRACKER OBSERVABILITY - METRICS COLLECTION
# =============================================================================
"""
Metrics Collection Module

In-memory counters, gauges, histograms and timers for the task tracker,
keyed by metric name plus a canonical (sorted) tag set, e.g.
``operations_completed{success=true}``.

Histograms keep a sliding window of the most recent 1000 samples and
report count/sum/mean/median/min/max/p95/p99 using nearest-rank
percentiles (no interpolation).

The metrics can be exported in the Prometheus text format through
``PrometheusExporter``, a ``prometheus_client`` custom collector.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterator, List, Optional, Sequence, Tuple

from prometheus_client import CollectorRegistry, generate_latest, start_http_server
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    SummaryMetricFamily,
)
from prometheus_client.registry import Collector

logger = logging.getLogger(__name__)

# Samples retained per histogram series
HISTOGRAM_WINDOW = 1000

Tags = Dict[str, Any]


# =============================================================================
# STATISTICS
# =============================================================================


def nearest_rank(sorted_values: Sequence[float], percentile: float) -> float:
    """Value at index ``floor(count * percentile)`` of an ascending sequence."""
    index = int(len(sorted_values) * percentile)
    return sorted_values[min(index, len(sorted_values) - 1)]


def histogram_stats(values: Sequence[float]) -> Dict[str, float]:
    """
    Distribution statistics of a sample series.

    Percentiles are nearest-rank on a sorted copy, so they jump between
    samples at small counts.
    """
    if not values:
        return {}

    nums = sorted(values)
    count = len(nums)
    total = sum(nums)
    return {
        "count": count,
        "sum": total,
        "mean": total / count,
        "median": nums[count // 2],
        "min": nums[0],
        "max": nums[-1],
        "p95": nearest_rank(nums, 0.95),
        "p99": nearest_rank(nums, 0.99),
    }


def _format_tag_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# =============================================================================
# METRICS STORE
# =============================================================================


class MonitoringMetrics:
    """
    In-memory metric store.

    All mutation happens on the event loop thread, so no locking is done.

    Usage::

        metrics = MonitoringMetrics()
        metrics.increment("tasks_created", tags={"tag": "master"})
        metrics.gauge("queue_depth", 4)
        timer_id = metrics.start_timer("save_tasks")
        ...
        metrics.stop_timer(timer_id)   # records save_tasks_duration
        snapshot = metrics.get_snapshot()
    """

    def __init__(self, histogram_window: int = HISTOGRAM_WINDOW):
        if histogram_window < 1:
            raise ValueError("histogram_window must be at least 1")
        self.histogram_window = histogram_window
        self._start = time.monotonic()

        self.counters: Dict[str, float] = {}
        self.gauges: Dict[str, Dict[str, Any]] = {}
        self.histograms: Dict[str, Deque[Tuple[float, int]]] = {}
        self.timers: Dict[str, Dict[str, Any]] = {}

        # key -> (name, tags) for exporters
        self._series: Dict[str, Tuple[str, Dict[str, str]]] = {}

    # -----------------------------------------------------------------
    # Keys
    # -----------------------------------------------------------------

    @staticmethod
    def make_key(name: str, tags: Optional[Tags] = None) -> str:
        """``name`` or ``name{k1=v1,k2=v2}`` with tags sorted by key."""
        if not tags:
            return name
        tag_str = ",".join(
            f"{k}={_format_tag_value(v)}"
            for k, v in sorted(tags.items(), key=lambda item: str(item[0]))
        )
        return f"{name}{{{tag_str}}}"

    def _key(self, name: str, tags: Optional[Tags]) -> str:
        key = self.make_key(name, tags)
        if key not in self._series:
            self._series[key] = (
                name,
                {str(k): _format_tag_value(v) for k, v in (tags or {}).items()},
            )
        return key

    def describe_key(self, key: str) -> Tuple[str, Dict[str, str]]:
        """Return the (name, tags) a key was built from."""
        return self._series.get(key, (key, {}))

    # -----------------------------------------------------------------
    # Recording
    # -----------------------------------------------------------------

    def increment(self, name: str, value: float = 1, tags: Optional[Tags] = None) -> None:
        """Add ``value`` to a counter, creating it if absent."""
        if value < 0:
            logger.warning(f"Ignoring negative increment of counter {name}: {value}")
            return
        key = self._key(name, tags)
        self.counters[key] = self.counters.get(key, 0) + value

    def gauge(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        """Overwrite a gauge with the latest value."""
        key = self._key(name, tags)
        self.gauges[key] = {"value": value, "timestamp": int(time.time() * 1000)}

    def histogram(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        """Append a sample; the oldest sample is evicted past the window."""
        key = self._key(name, tags)
        series = self.histograms.get(key)
        if series is None:
            series = deque(maxlen=self.histogram_window)
            self.histograms[key] = series
        series.append((value, int(time.time() * 1000)))

    def start_timer(self, name: str, tags: Optional[Tags] = None) -> str:
        """
        Start a named timer.

        Returns:
            Unique timer id ``<name>_<epoch-ms>_<random>``.
        """
        timer_id = f"{name}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        self.timers[timer_id] = {
            "name": name,
            "tags": dict(tags or {}),
            "start": time.perf_counter(),
        }
        return timer_id

    def stop_timer(self, timer_id: str) -> float:
        """
        Stop a timer and record its duration into ``<name>_duration``.

        Returns:
            Elapsed milliseconds, or 0 for an unknown id.
        """
        timer = self.timers.pop(timer_id, None)
        if timer is None:
            return 0

        duration = (time.perf_counter() - timer["start"]) * 1000
        self.histogram(f"{timer['name']}_duration", duration, timer["tags"])
        return duration

    # -----------------------------------------------------------------
    # Reading
    # -----------------------------------------------------------------

    def get_counter(self, name: str, tags: Optional[Tags] = None) -> float:
        return self.counters.get(self.make_key(name, tags), 0)

    def get_gauge(self, name: str, tags: Optional[Tags] = None) -> Optional[float]:
        gauge = self.gauges.get(self.make_key(name, tags))
        return gauge["value"] if gauge else None

    def get_histogram_values(self, name: str, tags: Optional[Tags] = None) -> List[float]:
        return [value for value, _ in self.histograms.get(self.make_key(name, tags), ())]

    def get_uptime(self) -> float:
        """Milliseconds since creation or the last reset."""
        return (time.monotonic() - self._start) * 1000

    def get_snapshot(self) -> Dict[str, Any]:
        """Return copies of all series plus histogram statistics."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": self.get_uptime(),
            "counters": dict(self.counters),
            "gauges": {key: dict(gauge) for key, gauge in self.gauges.items()},
            "histograms": {
                key: histogram_stats([value for value, _ in series])
                for key, series in self.histograms.items()
            },
            "active_timers": len(self.timers),
        }

    def reset(self) -> None:
        """Clear every series and restart the uptime clock."""
        self.counters.clear()
        self.gauges.clear()
        self.histograms.clear()
        self.timers.clear()
        self._series.clear()
        self._start = time.monotonic()


# =============================================================================
# PROMETHEUS EXPORT
# =============================================================================

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_INVALID_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def _metric_name(namespace: str, name: str) -> str:
    cleaned = _INVALID_NAME_CHARS.sub("_", f"{namespace}_{name}" if namespace else name)
    return f"_{cleaned}" if cleaned[0].isdigit() else cleaned


def _label_name(name: str) -> str:
    cleaned = _INVALID_LABEL_CHARS.sub("_", name)
    return f"_{cleaned}" if cleaned[0].isdigit() else cleaned


class PrometheusExporter(Collector):
    """
    Custom collector exposing a ``MonitoringMetrics`` store.

    Counters and gauges map to their Prometheus namesakes. Each histogram
    series becomes a summary (count/sum) plus a ``<name>_percentile``
    gauge labelled by quantile.
    """

    def __init__(self, metrics: MonitoringMetrics, namespace: str = "tasker"):
        self.metrics = metrics
        self.namespace = namespace

    def _grouped(self, store: Dict[str, Any]) -> Dict[str, List[Tuple[Dict[str, str], Any]]]:
        grouped: Dict[str, List[Tuple[Dict[str, str], Any]]] = {}
        for key, value in store.items():
            name, tags = self.metrics.describe_key(key)
            grouped.setdefault(name, []).append((tags, value))
        return grouped

    @staticmethod
    def _label_names(samples: List[Tuple[Dict[str, str], Any]]) -> List[str]:
        return sorted({label for tags, _ in samples for label in tags})

    def collect(self) -> Iterator[Any]:
        for name, samples in self._grouped(self.metrics.counters).items():
            labels = self._label_names(samples)
            family = CounterMetricFamily(
                _metric_name(self.namespace, name), f"Counter {name}",
                labels=[_label_name(l) for l in labels],
            )
            for tags, value in samples:
                family.add_metric([tags.get(l, "") for l in labels], value)
            yield family

        for name, samples in self._grouped(self.metrics.gauges).items():
            labels = self._label_names(samples)
            family = GaugeMetricFamily(
                _metric_name(self.namespace, name), f"Gauge {name}",
                labels=[_label_name(l) for l in labels],
            )
            for tags, gauge in samples:
                family.add_metric([tags.get(l, "") for l in labels], gauge["value"])
            yield family

        for name, samples in self._grouped(self.metrics.histograms).items():
            labels = self._label_names(samples)
            metric_name = _metric_name(self.namespace, name)
            summary = SummaryMetricFamily(
                metric_name, f"Sliding window of {name}",
                labels=[_label_name(l) for l in labels],
            )
            quantiles = GaugeMetricFamily(
                f"{metric_name}_percentile", f"Nearest-rank percentiles of {name}",
                labels=[_label_name(l) for l in labels] + ["quantile"],
            )
            for tags, series in samples:
                stats = histogram_stats([value for value, _ in series])
                if not stats:
                    continue
                label_values = [tags.get(l, "") for l in labels]
                summary.add_metric(label_values, count_value=stats["count"], sum_value=stats["sum"])
                for quantile, stat in (("0.5", "median"), ("0.95", "p95"), ("0.99", "p99")):
                    quantiles.add_metric(label_values + [quantile], stats[stat])
            yield summary
            yield quantiles


def create_registry(metrics: MonitoringMetrics, namespace: str = "tasker") -> CollectorRegistry:
    """Create a registry holding only the exporter for ``metrics``."""
    registry = CollectorRegistry()
    registry.register(PrometheusExporter(metrics, namespace))
    return registry


def render_prometheus(metrics: MonitoringMetrics, namespace: str = "tasker") -> str:
    """Render ``metrics`` in the Prometheus text exposition format."""
    return generate_latest(create_registry(metrics, namespace)).decode("utf-8")


def start_metrics_server(
    metrics: MonitoringMetrics, port: int, namespace: str = "tasker"
) -> CollectorRegistry:
    """
    Start an HTTP server that exposes ``metrics`` on ``port``.

    Returns:
        The registry served by the endpoint.
    """
    registry = create_registry(metrics, namespace)
    start_http_server(port, registry=registry)
    logger.info(f"Metrics HTTP server started on port {port}")
    return registry


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Core
    "MonitoringMetrics",
    "HISTOGRAM_WINDOW",
    # Statistics
    "histogram_stats",
    "nearest_rank",
    # Prometheus
    "PrometheusExporter",
    "create_registry",
    "render_prometheus",
    "start_metrics_server",
]
