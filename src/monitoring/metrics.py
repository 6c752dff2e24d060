"""
Metrics collection for Punto Settlement.

Thread-safe counters, gauges and histograms for the review and payout
flows, exported in Prometheus text format under the ``punto_`` prefix.

Recorded by the engine:
    submissions_created_total                  intake
    submissions_reviewed_total{decision}       every applied review
    payments_created_total{role}               contributor payments and stipends
    payments_paid_total                        receipts recorded
    payment_creation_failures_total            acceptances left without a payment
    payouts_rejected_total{reason}             declined | reverted
    payout_confirmation_ms                     transfer submitted -> receipt confirmed

Recorded by the request middleware:
    http_requests_total{method,path,status}
    http_request_duration_ms{method,path}
    http_requests_active
"""

import threading
import time
from bisect import bisect_left
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field

METRIC_PREFIX = "punto"

# Milliseconds; chain confirmations run into minutes
LATENCY_BOUNDS_MS = (5, 25, 100, 500, 1000, 5000, 15000, 60000, 300000)

DESCRIPTIONS = {
    "uptime_seconds": "Time since application start",
    "submissions_created_total": "Submissions received",
    "submissions_reviewed_total": "Review decisions applied",
    "payments_created_total": "Payment records created",
    "payments_paid_total": "Payments marked paid with a receipt",
    "payment_creation_failures_total": "Acceptances whose payment could not be written",
    "payouts_rejected_total": "Transfers declined by the signer or reverted on chain",
    "payout_confirmation_ms": "Time from transfer submission to confirmed receipt",
    "http_requests_total": "HTTP requests served",
    "http_request_duration_ms": "HTTP request latency",
    "http_requests_active": "HTTP requests in flight",
}

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _render_labels(key: LabelKey, *extra: tuple[str, str]) -> str:
    pairs = key + extra
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"


@dataclass
class Histogram:
    """Observations counted into fixed upper bounds."""

    bounds: tuple[float, ...] = LATENCY_BOUNDS_MS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.counts:
            self.counts = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        index = bisect_left(self.bounds, value)
        if index < len(self.bounds):
            self.counts[index] += 1

    def cumulative(self) -> list[tuple[str, int]]:
        """``(le, count)`` pairs, cumulative, ending with ``+Inf``."""
        pairs = []
        running = 0
        for bound, n in zip(self.bounds, self.counts):
            running += n
            pairs.append((str(bound), running))
        pairs.append(("+Inf", self.count))
        return pairs


class MetricsCollector:
    """
    Thread-safe metrics registry.

    Series are keyed by metric name and a sorted tuple of label pairs, so
    ``{"status": "200", "method": "GET"}`` and ``{"method": "GET", "status": "200"}``
    address the same series.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[LabelKey, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][_label_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][_label_key(labels)] = value

    def increment_gauge(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][_label_key(labels)] += value

    def decrement_gauge(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        self.increment_gauge(name, -value, labels)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels), 0.0)

    # Histograms

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a duration in milliseconds."""
        with self._lock:
            series = self._histograms[name]
            key = _label_key(labels)
            if key not in series:
                series[key] = Histogram()
            series[key].observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Time the enclosed block, whether or not it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    def get_histogram(self, name: str, labels: dict[str, str] | None = None) -> Histogram | None:
        with self._lock:
            return self._histograms.get(name, {}).get(_label_key(labels))

    # Export

    def to_prometheus(self) -> str:
        """Render every series in Prometheus text exposition format."""
        lines: list[str] = []

        def family(name: str, kind: str) -> str:
            metric = f"{METRIC_PREFIX}_{name}"
            if name in DESCRIPTIONS:
                lines.append(f"# HELP {metric} {DESCRIPTIONS[name]}")
            lines.append(f"# TYPE {metric} {kind}")
            return metric

        with self._lock:
            metric = family("uptime_seconds", "gauge")
            lines.append(f"{metric} {time.time() - self._start_time:.2f}")

            for name, series in self._counters.items():
                metric = family(name, "counter")
                lines.extend(f"{metric}{_render_labels(key)} {value}" for key, value in series.items())

            for name, series in self._gauges.items():
                metric = family(name, "gauge")
                lines.extend(f"{metric}{_render_labels(key)} {value}" for key, value in series.items())

            for name, series in self._histograms.items():
                metric = family(name, "histogram")
                for key, hist in series.items():
                    for le, count in hist.cumulative():
                        lines.append(f"{metric}_bucket{_render_labels(key, ('le', le))} {count}")
                    lines.append(f"{metric}_sum{_render_labels(key)} {hist.sum:.2f}")
                    lines.append(f"{metric}_count{_render_labels(key)} {hist.count}")

        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
