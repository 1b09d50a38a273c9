"""In-process Prometheus metrics for the AI mediation core.

Counters, gauges and latency histograms live in one ``MetricsRegistry``
behind a lock and are rendered in the Prometheus text format at
``/metrics``.  The module-level helpers write to the process-wide registry.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field

from fastapi import APIRouter, Response

# Label key type: tuple of (key, value) pairs
LabelKey = tuple[tuple[str, str], ...]

LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted((name, str(value)) for name, value in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(label_pairs: LabelKey, **extra: str) -> str:
    pairs = sorted([*label_pairs, *extra.items()])
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{_escape(value)}"' for name, value in pairs) + "}"


@dataclass
class _Histogram:
    buckets: list[int] = field(default_factory=lambda: [0] * len(LATENCY_BUCKETS))
    total: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.total += value
        self.count += 1
        for index, bound in enumerate(LATENCY_BUCKETS):
            if value <= bound:
                self.buckets[index] += 1
                break


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._gauges: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[LabelKey, _Histogram]] = defaultdict(
            lambda: defaultdict(_Histogram)
        )

    def inc(self, name: str, labels: dict[str, str], value: float = 1.0) -> None:
        with self._lock:
            self._counters[name][_key(labels)] += value

    def set(self, name: str, labels: dict[str, str], value: float) -> None:
        with self._lock:
            self._gauges[name][_key(labels)] = value

    def observe(self, name: str, labels: dict[str, str], value: float) -> None:
        with self._lock:
            self._histograms[name][_key(labels)].observe(value)

    def counter(self, name: str, labels: dict[str, str]) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_key(labels), 0.0)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def render(self) -> str:
        lines: list[str] = []
        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in sorted(series.items()):
                    lines.append(f"# TYPE {name} {kind}")
                    lines.extend(
                        f"{name}{_format_labels(labels)} {value}"
                        for labels, value in sorted(values.items())
                    )
            for name, histograms in sorted(self._histograms.items()):
                lines.append(f"# TYPE {name} histogram")
                for labels, histogram in sorted(histograms.items()):
                    cumulative = 0
                    for bound, hits in zip(LATENCY_BUCKETS, histogram.buckets, strict=True):
                        cumulative += hits
                        lines.append(
                            f"{name}_bucket{_format_labels(labels, le=str(bound))} {cumulative}"
                        )
                    lines.append(
                        f"{name}_bucket{_format_labels(labels, le='+Inf')} {histogram.count}"
                    )
                    lines.append(f"{name}_sum{_format_labels(labels)} {histogram.total}")
                    lines.append(f"{name}_count{_format_labels(labels)} {histogram.count}")
        lines.append("")
        return "\n".join(lines)


REGISTRY = MetricsRegistry()


def inc_counter(name: str, labels: dict[str, str], value: float = 1.0) -> None:
    REGISTRY.inc(name, labels, value)


def set_gauge(name: str, labels: dict[str, str], value: float) -> None:
    REGISTRY.set(name, labels, value)


def observe_histogram(name: str, labels: dict[str, str], value: float) -> None:
    REGISTRY.observe(name, labels, value)


def counter_value(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.counter(name, labels)


def reset_metrics() -> None:
    REGISTRY.clear()


def render_metrics() -> str:
    return REGISTRY.render()


def record_request(
    operation: str,
    provider: str,
    outcome: str,
    latency_s: float,
    cached: bool = False,
    cost_cents: float = 0.0,
    attempts: int = 1,
) -> None:
    """Record all metrics for a request that reached a terminal state."""
    base_labels = {"operation": operation, "provider": provider}
    inc_counter(
        "aic_requests_total",
        {**base_labels, "outcome": outcome, "cached": "true" if cached else "false"},
    )
    observe_histogram("aic_request_duration_seconds", base_labels, latency_s)
    if cost_cents > 0:
        inc_counter("aic_cost_cents_total", base_labels, cost_cents)
    if attempts > 1:
        inc_counter("aic_request_retries_total", {"operation": operation}, float(attempts - 1))


metrics_router = APIRouter()


@metrics_router.get("/metrics")
def prometheus_metrics() -> Response:
    return Response(content=render_metrics(), media_type="text/plain; version=0.0.4")
