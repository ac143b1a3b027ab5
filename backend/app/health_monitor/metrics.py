"""
Health Monitor Metrics — Prometheus-compatible observability.

All metrics use the `health_monitor_` namespace prefix.

Tracks:
- health_monitor_state: current PerformanceState (0=excellent … 4=emergency)
- health_monitor_state_transitions_total{previous,current}
- health_monitor_signal_value{signal}: latest sampled value
- health_monitor_source_read_failures_total{signal}
- health_monitor_predictions_total{signal,kind}: adverse predictions
- health_monitor_dispatch_total{action,outcome}
- health_monitor_dispatch_cycle_seconds: dispatch cycle duration
"""

import logging
import time
from contextlib import contextmanager
from typing import Dict, Generator

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

_VALID_OUTCOMES = frozenset({"fired", "failed", "suppressed"})
_VALID_PREDICTION_KINDS = frozenset({"growing", "variance_high", "compound"})


class HealthMetrics:
    """
    Prometheus metrics for the health monitor.

    Thread-safe via prometheus_client built-in thread safety.
    Uses an instance-level CollectorRegistry so every controller (and every
    test) has its own isolated set.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()
        self._init_metrics()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def _init_metrics(self) -> None:
        self._state = Gauge(
            "health_monitor_state",
            "Current performance state (0=excellent, 4=emergency)",
            registry=self._registry,
        )
        self._state_transitions_total = Counter(
            "health_monitor_state_transitions_total",
            "Performance state transitions",
            labelnames=["previous", "current"],
            registry=self._registry,
        )
        self._signal_value = Gauge(
            "health_monitor_signal_value",
            "Latest sampled value per signal",
            labelnames=["signal"],
            registry=self._registry,
        )
        self._source_read_failures_total = Counter(
            "health_monitor_source_read_failures_total",
            "Metric source reads that failed and fell back to the last value",
            labelnames=["signal"],
            registry=self._registry,
        )
        self._predictions_total = Counter(
            "health_monitor_predictions_total",
            "Adverse trend predictions",
            labelnames=["signal", "kind"],
            registry=self._registry,
        )
        self._dispatch_total = Counter(
            "health_monitor_dispatch_total",
            "Mitigation dispatch decisions",
            labelnames=["action", "outcome"],
            registry=self._registry,
        )
        self._dispatch_cycle_seconds = Histogram(
            "health_monitor_dispatch_cycle_seconds",
            "Dispatch cycle duration",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
            registry=self._registry,
        )

    # ── State ─────────────────────────────────────────────────────────────

    def set_state(self, state: int) -> None:
        self._state.set(state)

    def inc_state_transition(self, previous: str, current: str) -> None:
        self._state_transitions_total.labels(previous=previous, current=current).inc()
        logger.debug(f"[METRICS] state_transitions_total{{{previous}->{current}}} += 1")

    # ── Sampling ──────────────────────────────────────────────────────────

    def set_signal_value(self, signal: str, value: float) -> None:
        self._signal_value.labels(signal=signal).set(value)

    def inc_source_read_failure(self, signal: str) -> None:
        self._source_read_failures_total.labels(signal=signal).inc()

    # ── Prediction ────────────────────────────────────────────────────────

    def inc_prediction(self, signal: str, kind: str) -> None:
        if kind not in _VALID_PREDICTION_KINDS:
            logger.warning(f"[METRICS] Invalid prediction kind: {kind}")
            return
        self._predictions_total.labels(signal=signal, kind=kind).inc()

    # ── Dispatch ──────────────────────────────────────────────────────────

    def inc_dispatch(self, action: str, outcome: str) -> None:
        if outcome not in _VALID_OUTCOMES:
            logger.warning(f"[METRICS] Invalid dispatch outcome: {outcome}")
            return
        self._dispatch_total.labels(action=action, outcome=outcome).inc()

    def observe_dispatch_cycle(self, duration_seconds: float) -> None:
        self._dispatch_cycle_seconds.observe(duration_seconds)

    @contextmanager
    def time_dispatch_cycle(self) -> Generator[None, None, None]:
        start = time.monotonic()
        try:
            yield
        finally:
            self.observe_dispatch_cycle(time.monotonic() - start)

    # ── Export / snapshot (test/debug only) ───────────────────────────────

    def generate_latest(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self._registry)

    def snapshot(self) -> Dict:
        """
        Plain dict of current values. Intended for tests and debugging only.
        """
        return {
            "state": self._state._value.get(),
            "dispatch_total": self._collect_labeled(self._dispatch_total),
            "state_transitions_total": self._collect_labeled(self._state_transitions_total),
            "source_read_failures_total": self._collect_labeled(self._source_read_failures_total),
            "predictions_total": self._collect_labeled(self._predictions_total),
        }

    @staticmethod
    def _collect_labeled(counter: Counter) -> Dict[tuple, int]:
        """Map label-value tuple → count, read from the collector samples."""
        values: Dict[tuple, int] = {}
        for metric in counter.collect():
            for sample in metric.samples:
                if not sample.name.endswith("_total"):
                    continue
                key = tuple(sample.labels.values())
                values[key] = int(sample.value)
        return values
