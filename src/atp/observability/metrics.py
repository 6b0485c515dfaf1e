"""In-process metrics for the ATP runtime.

Counters and histograms are keyed by sorted label tuples and exported in
Prometheus text format so a hosting application can expose them on its own
metrics endpoint.

Example:
    >>> from atp.observability.metrics import get_metrics
    >>> metrics = get_metrics()
    >>> metrics.increment_counter("atp_invocations_total", {"outcome": "success"})
    >>> "atp_invocations_total" in metrics.export_prometheus()
    True
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import ClassVar

LabelKey = tuple[tuple[str, str], ...]

DEFAULT_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


@dataclass
class Counter:
    """A monotonically increasing counter."""

    name: str
    help_text: str
    values: dict[LabelKey, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def increment(self, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
        key = _label_key(labels)
        with self._lock:
            self.values[key] = self.values.get(key, 0.0) + value

    def get(self, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self.values.get(_label_key(labels), 0.0)


@dataclass
class HistogramSeries:
    bucket_counts: dict[float, float]
    total: float = 0.0
    count: float = 0.0


@dataclass
class Histogram:
    """A histogram with fixed upper-bound buckets."""

    name: str
    help_text: str
    buckets: tuple[float, ...] = DEFAULT_LATENCY_BUCKETS
    values: dict[LabelKey, HistogramSeries] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def observe(self, value: float, labels: dict[str, str] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            series = self.values.get(key)
            if series is None:
                series = HistogramSeries(bucket_counts=dict.fromkeys(self.buckets, 0.0))
                self.values[key] = series
            for bound in self.buckets:
                if value <= bound:
                    series.bucket_counts[bound] += 1.0
            series.total += value
            series.count += 1.0

    def get_count(self, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            series = self.values.get(_label_key(labels))
            return series.count if series is not None else 0.0


class MetricsCollector:
    """Thread-safe collector of the runtime's counters and histograms."""

    DEFAULT_COUNTERS: ClassVar[dict[str, str]] = {
        "atp_invocations_total": "Capability invocations by outcome",
        "atp_invocation_retries_total": "Capability dispatch retries",
        "atp_discovery_fetch_total": "Manifest discovery fetches by result",
        "atp_auth_refresh_total": "Session refresh attempts by result",
        "atp_rate_limited_total": "Requests denied by the rate limiter",
        "atp_workflow_runs_total": "Workflow runs by final status",
    }

    DEFAULT_HISTOGRAMS: ClassVar[dict[str, str]] = {
        "atp_invocation_duration_seconds": "Capability invocation duration in seconds",
    }

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters = {
            name: Counter(name=name, help_text=text) for name, text in self.DEFAULT_COUNTERS.items()
        }
        self._histograms = {
            name: Histogram(name=name, help_text=text)
            for name, text in self.DEFAULT_HISTOGRAMS.items()
        }
        self._start_time = time.time()

    def increment_counter(
        self, name: str, labels: dict[str, str] | None = None, value: float = 1.0
    ) -> None:
        with self._lock:
            counter = self._counters.get(name)
        if counter is not None:
            counter.increment(labels, value)

    def observe_histogram(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            histogram = self._histograms.get(name)
        if histogram is not None:
            histogram.observe(value, labels)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            counter = self._counters.get(name)
        return counter.get(labels) if counter is not None else 0.0

    def get_histogram_count(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            histogram = self._histograms.get(name)
        return histogram.get_count(labels) if histogram is not None else 0.0

    @staticmethod
    def _format_labels(labels: LabelKey, extra: str = "") -> str:
        def escape_label_value(value: str) -> str:
            # Backslashes first to avoid double-escaping
            value = value.replace("\\", "\\\\")
            return value.replace('"', '\\"')

        parts = [f'{k}="{escape_label_value(v)}"' for k, v in labels]
        if extra:
            parts.append(extra)
        return "{" + ",".join(parts) + "}" if parts else ""

    def export_prometheus(self) -> str:
        """Export every metric in Prometheus text exposition format."""
        lines: list[str] = []
        with self._lock:
            counters = list(self._counters.values())
            histograms = list(self._histograms.values())

        for counter in counters:
            lines.append(f"# HELP {counter.name} {counter.help_text}")
            lines.append(f"# TYPE {counter.name} counter")
            with counter._lock:
                items = list(counter.values.items())
            if not items:
                lines.append(f"{counter.name} 0")
            for key, value in items:
                lines.append(f"{counter.name}{self._format_labels(key)} {value}")

        for histogram in histograms:
            lines.append(f"# HELP {histogram.name} {histogram.help_text}")
            lines.append(f"# TYPE {histogram.name} histogram")
            with histogram._lock:
                items_h = [
                    (key, dict(series.bucket_counts), series.total, series.count)
                    for key, series in histogram.values.items()
                ]
            for key, bucket_counts, total, count in items_h:
                cumulative = 0.0
                for bound in histogram.buckets:
                    cumulative += bucket_counts.get(bound, 0.0)
                    label_str = self._format_labels(key, f'le="{bound}"')
                    lines.append(f"{histogram.name}_bucket{label_str} {cumulative}")
                label_str = self._format_labels(key, 'le="+Inf"')
                lines.append(f"{histogram.name}_bucket{label_str} {count}")
                lines.append(f"{histogram.name}_sum{self._format_labels(key)} {total}")
                lines.append(f"{histogram.name}_count{self._format_labels(key)} {count}")

        uptime = time.time() - self._start_time
        lines.append("# HELP atp_process_uptime_seconds Time since the collector was created")
        lines.append("# TYPE atp_process_uptime_seconds gauge")
        lines.append(f"atp_process_uptime_seconds {uptime:.3f}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """Reset all metrics to zero. Useful for testing."""
        with self._lock:
            for counter in self._counters.values():
                with counter._lock:
                    counter.values.clear()
            for histogram in self._histograms.values():
                with histogram._lock:
                    histogram.values.clear()


_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics() -> MetricsCollector:
    """Return the process-wide metrics collector."""
    global _metrics_collector
    with _collector_lock:
        if _metrics_collector is None:
            _metrics_collector = MetricsCollector()
        return _metrics_collector


def reset_metrics() -> None:
    """Reset the process-wide collector. Useful for testing."""
    with _collector_lock:
        if _metrics_collector is not None:
            _metrics_collector.reset()
