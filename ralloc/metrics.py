"""Application metrics for observability.

Provides Prometheus-compatible metrics for:
- HTTP request counts and latencies
- Allocation transitions by operation and outcome
- Capacity conflicts by detector mode
- Lifecycle event deliveries
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any


@dataclass
class Histogram:
    """Simple cumulative histogram for latency tracking."""

    buckets: list[float] = field(
        default_factory=lambda: [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
    )
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation."""
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket:
                self.counts[bucket] += 1

    def to_prometheus(self, name: str, labels: str = "") -> str:
        """Generate Prometheus histogram format."""
        lines = []
        label_str = f"{{{labels}}}" if labels else ""
        extra = f", {labels}" if labels else ""

        for bucket in self.buckets:
            lines.append(f'{name}_bucket{{le="{bucket}"{extra}}} {self.counts[bucket]}')
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        lines.append(f"{name}_sum{label_str} {self.sum}")
        lines.append(f"{name}_count{label_str} {self.count}")

        return "\n".join(lines)


class MetricsRegistry:
    """Thread-safe registry of counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        """Increment a counter metric."""
        label_key = self._labels_to_key(labels)
        with self._lock:
            self._counters[name][label_key] += value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Set a gauge metric."""
        label_key = self._labels_to_key(labels)
        with self._lock:
            self._gauges[name][label_key] = value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Record a histogram observation."""
        label_key = self._labels_to_key(labels)
        with self._lock:
            if label_key not in self._histograms[name]:
                self._histograms[name][label_key] = Histogram()
            self._histograms[name][label_key].observe(value)

    def counter_value(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Read back a counter, 0 if never incremented."""
        label_key = self._labels_to_key(labels)
        with self._lock:
            return self._counters.get(name, {}).get(label_key, 0)

    def _labels_to_key(self, labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def to_prometheus(self) -> str:
        """Generate Prometheus text format output."""
        lines = []

        with self._lock:
            for name, label_values in self._counters.items():
                lines.append(f"# TYPE {name} counter")
                for label_key, value in label_values.items():
                    label_str = f"{{{label_key}}}" if label_key else ""
                    lines.append(f"{name}{label_str} {value}")
                lines.append("")

            for name, label_values in self._gauges.items():
                lines.append(f"# TYPE {name} gauge")
                for label_key, value in label_values.items():
                    label_str = f"{{{label_key}}}" if label_key else ""
                    lines.append(f"{name}{label_str} {value}")
                lines.append("")

            for name, label_histograms in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for label_key, histogram in label_histograms.items():
                    lines.append(histogram.to_prometheus(name, label_key))
                lines.append("")

        return "\n".join(lines)

    def get_stats(self) -> dict[str, Any]:
        """Get metrics as a dictionary (for JSON endpoints)."""
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self._counters.items()},
                "gauges": {k: dict(v) for k, v in self._gauges.items()},
                "histograms": {
                    k: {lk: {"count": h.count, "sum": h.sum} for lk, h in v.items()}
                    for k, v in self._histograms.items()
                },
            }


# Global metrics registry
metrics = MetricsRegistry()


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request."""
    labels = {"method": method, "path": path, "status": str(status_code)}
    metrics.inc_counter("ralloc_http_requests_total", labels)
    metrics.observe_histogram("ralloc_http_request_duration_seconds", duration, labels)


def record_transition(operation: str, outcome: str, duration: float) -> None:
    """Record an engine operation (propose, approve, ...) and its outcome."""
    metrics.inc_counter("ralloc_operations_total", {"operation": operation, "outcome": outcome})
    metrics.observe_histogram(
        "ralloc_operation_duration_seconds", duration, {"operation": operation}
    )


def record_conflict(mode: str) -> None:
    """Record a capacity conflict found by the detector (soft or hard)."""
    metrics.inc_counter("ralloc_conflicts_total", {"mode": mode})


def record_event_delivery(event_type: str, status: str) -> None:
    """Record a lifecycle event delivery attempt."""
    metrics.inc_counter(
        "ralloc_event_deliveries_total", {"event_type": event_type, "status": status}
    )
