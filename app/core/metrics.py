"""
In-memory metrics for the trial lifecycle service.

Counters (optionally labelled), gauges and timers. GET /metrics renders
them in the Prometheus text format; GET /health reads the last-run gauge.
Values live in process memory only and reset on restart.
"""

import threading
import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

# Samples kept per timer for percentile stats
TIMER_WINDOW = 1000

LabelSet = Tuple[Tuple[str, str], ...]


def _label_set(labels: Optional[Dict[str, str]]) -> LabelSet:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _render_labels(label_set: LabelSet) -> str:
    if not label_set:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in label_set) + "}"


class Metrics:
    """Thread-safe metric registry. One counter series per label set."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: Dict[str, Dict[LabelSet, float]] = defaultdict(dict)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, Deque[float]] = {}
        self._help: Dict[str, str] = {}

    def describe(self, name: str, help_text: str) -> None:
        with self._lock:
            self._help[name] = help_text

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        key = _label_set(labels)
        with self._lock:
            series = self._counters[name]
            series[key] = series.get(key, 0.0) + value

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def record_timer(self, name: str, duration_ms: float) -> None:
        with self._lock:
            if name not in self._timers:
                self._timers[name] = deque(maxlen=TIMER_WINDOW)
            self._timers[name].append(duration_ms)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_label_set(labels), 0.0)

    def get_gauge(self, name: str) -> Optional[float]:
        with self._lock:
            return self._gauges.get(name)

    def get_timer_stats(self, name: str) -> Dict[str, float]:
        """min/max/avg/p50/p95/count over the kept window; {} if empty."""
        with self._lock:
            values = sorted(self._timers.get(name, ()))
        if not values:
            return {}
        n = len(values)
        return {
            "min": values[0],
            "max": values[-1],
            "avg": sum(values) / n,
            "p50": values[int(n * 0.50)],
            "p95": values[min(n - 1, int(n * 0.95))],
            "count": n,
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            counters = {
                f"{name}{_render_labels(key)}": value
                for name, series in self._counters.items()
                for key, value in series.items()
            }
            gauges = dict(self._gauges)
            timer_names = list(self._timers)
        return {
            "counters": counters,
            "gauges": gauges,
            "timers": {name: self.get_timer_stats(name) for name in timer_names},
        }

    def render_text(self) -> str:
        """Prometheus text exposition (timers as summaries over the window)."""
        lines: List[str] = []
        with self._lock:
            help_text = dict(self._help)
            counters = {name: dict(series) for name, series in self._counters.items()}
            gauges = dict(self._gauges)
            timer_names = sorted(self._timers)

        def header(name: str, kind: str) -> None:
            if name in help_text:
                lines.append(f"# HELP {name} {help_text[name]}")
            lines.append(f"# TYPE {name} {kind}")

        for name in sorted(counters):
            header(name, "counter")
            for key, value in sorted(counters[name].items()):
                lines.append(f"{name}{_render_labels(key)} {value:g}")
        for name in sorted(gauges):
            header(name, "gauge")
            lines.append(f"{name} {gauges[name]:g}")
        for name in timer_names:
            stats = self.get_timer_stats(name)
            if not stats:
                continue
            header(name, "summary")
            lines.append(f'{name}{{quantile="0.5"}} {stats["p50"]:g}')
            lines.append(f'{name}{{quantile="0.95"}} {stats["p95"]:g}')
            lines.append(f"{name}_sum {stats['avg'] * stats['count']:g}")
            lines.append(f"{name}_count {stats['count']}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()
            self._help.clear()


_metrics: Optional[Metrics] = None


def get_metrics() -> Metrics:
    global _metrics

    if _metrics is None:
        _metrics = Metrics()
        _describe_defaults(_metrics)

    return _metrics


def reset_metrics() -> None:
    """Drop the global registry (for testing)"""
    global _metrics
    _metrics = None


def _describe_defaults(metrics: Metrics) -> None:
    metrics.describe("trial_runs_total", "Lifecycle runs by trigger and outcome")
    metrics.describe("trial_transitions_total", "Committed lifecycle transitions by target state")
    metrics.describe("trial_notifications_total", "Delivered trial notifications by event")
    metrics.describe("trial_notification_gaps_total", "Committed transitions whose notification was not delivered")
    metrics.describe("trial_conflicts_total", "Writes skipped because another run moved the record first")
    metrics.describe("trial_tenant_errors_total", "Tenants that failed inside a run, by stage")
    metrics.describe("trial_run_duration_ms", "Wall time of a lifecycle run")
    metrics.describe("trial_last_run_timestamp", "Unix time the last run finished")
    metrics.describe("db_latency_ms", "Latency of trial store queries")
    metrics.set_gauge("trial_last_run_timestamp", 0.0)


class TimerContext:
    """with timer("db_latency_ms"): ...  records the block's wall time."""

    def __init__(self, metric_name: str):
        self.metric_name = metric_name
        self.duration_ms: Optional[float] = None
        self._start: Optional[float] = None

    def __enter__(self):
        self._start = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._start is not None:
            self.duration_ms = (time.monotonic() - self._start) * 1000.0
            get_metrics().record_timer(self.metric_name, self.duration_ms)
        return False


def timer(metric_name: str) -> TimerContext:
    return TimerContext(metric_name)
