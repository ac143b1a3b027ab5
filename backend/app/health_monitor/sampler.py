"""
Sampler — periodic reader of one MetricSource into one HistoryBuffer.

Runs on its own daemon thread and stops through a threading.Event. A failed
read never stops the loop: the last good value is pushed again (sticky
fallback) and consecutive failures are counted. When the count reaches
`read_failure_log_after`, one DEBUG line is logged and the failure metric
is incremented.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional

from backend.app.health_monitor.history import HistoryBuffer
from backend.app.health_monitor.metrics import HealthMetrics
from backend.app.health_monitor.signals import Sample, Signal
from backend.app.health_monitor.sources import MetricSource

logger = logging.getLogger(__name__)

SampleCallback = Callable[[Signal, float, float], None]


class Sampler:
    def __init__(
        self,
        signal: Signal,
        source: MetricSource,
        period_seconds: float,
        buffer: HistoryBuffer,
        on_sample: Optional[SampleCallback] = None,
        metrics: Optional[HealthMetrics] = None,
        read_failure_log_after: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._signal = signal
        self._source = source
        self._period = period_seconds
        self._buffer = buffer
        self._on_sample = on_sample
        self._metrics = metrics
        self._read_failure_log_after = max(1, read_failure_log_after)
        self._clock = clock

        self._last_good: Optional[float] = None
        self._consecutive_failures = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def signal(self) -> Signal:
        return self._signal

    @property
    def buffer(self) -> HistoryBuffer:
        return self._buffer

    @property
    def period(self) -> float:
        return self._period

    @period.setter
    def period(self, value: float) -> None:
        """Takes effect on the next wait."""
        if value > 0:
            self._period = value

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ── One tick ──────────────────────────────────────────────────────────

    def sample_once(self, now: Optional[float] = None) -> Optional[float]:
        """Read once, push the result (or the sticky fallback). Returns the pushed value."""
        now = self._clock() if now is None else now
        value, ok = self._read()

        if ok:
            self._consecutive_failures = 0
            self._last_good = value
        else:
            self._consecutive_failures += 1
            if self._consecutive_failures == self._read_failure_log_after:
                logger.debug(
                    f"[HEALTH-MONITOR] {self._signal.value} source failed "
                    f"{self._consecutive_failures} times in a row, reusing last value "
                    f"{self._last_good}"
                )
                if self._metrics:
                    self._metrics.inc_source_read_failure(self._signal.value)
            if self._last_good is None:
                return None
            value = self._last_good

        self._buffer.push(Sample(timestamp=now, value=value))
        if self._metrics:
            self._metrics.set_signal_value(self._signal.value, value)
        if self._on_sample:
            self._on_sample(self._signal, value, now)
        return value

    def _read(self) -> tuple[float, bool]:
        try:
            value, ok = self._source.read()
        except Exception as exc:
            logger.debug(f"[HEALTH-MONITOR] {self._signal.value} source raised: {exc}")
            return 0.0, False
        if not ok or not math.isfinite(value):
            return 0.0, False
        return float(value), True

    # ── Thread lifecycle ──────────────────────────────────────────────────

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"health-sampler-{self._signal.value}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        logger.debug(f"[HEALTH-MONITOR] Sampler {self._signal.value} started (period={self._period}s)")
        while not self._stop_event.is_set():
            try:
                self.sample_once()
            except Exception as exc:
                logger.exception(f"[HEALTH-MONITOR] Sampler {self._signal.value} error: {exc}")
            self._stop_event.wait(timeout=self._period)
        logger.debug(f"[HEALTH-MONITOR] Sampler {self._signal.value} stopped")
