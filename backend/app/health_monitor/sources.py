"""
Metric sources + action executor — the monitor's boundary with the host server.

The monitor never reaches into the host directly. It reads signals through
MetricSource.read() and requests mitigations through ActionExecutor.apply().
Both may be slow or fail; callers treat every failure as data, not as a crash.
"""

from __future__ import annotations

import gc
import logging
import math
import os
import threading
import time
from collections import deque
from typing import Callable, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class MetricSource(Protocol):
    def read(self) -> tuple[float, bool]:
        """Return (value, ok). ok=False means the reading is unusable."""
        ...


@runtime_checkable
class ActionExecutor(Protocol):
    def apply(self, action_kind: str) -> bool:
        """Perform one mitigation. False or an exception counts as failure."""
        ...


# ── Adapters ──────────────────────────────────────────────────────────────────

class CallableSource:
    """Wraps a zero-arg callable returning a number. Exceptions → (0.0, False)."""

    def __init__(self, fn: Callable[[], float], name: str = "callable") -> None:
        self._fn = fn
        self._name = name

    def read(self) -> tuple[float, bool]:
        try:
            value = float(self._fn())
        except Exception as exc:
            logger.debug(f"[HEALTH-MONITOR] Source {self._name} read failed: {exc}")
            return 0.0, False
        if not math.isfinite(value):
            return 0.0, False
        return value, True


class TickRateMeter:
    """
    Ticks-per-second meter fed by the host's main loop.

    The host calls tick() once per main-loop iteration. read() reports the
    number of ticks inside the trailing window divided by the window length,
    capped at the nominal rate. No tick in the window → (0.0, False), so a
    stalled loop reads as a failed sample instead of a zero rate.
    """

    def __init__(
        self,
        nominal_rate: float = 20.0,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._nominal_rate = nominal_rate
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._ticks: deque[float] = deque()

    def tick(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        with self._lock:
            self._ticks.append(now)
            self._prune(now)

    def read(self, now: Optional[float] = None) -> tuple[float, bool]:
        now = self._clock() if now is None else now
        with self._lock:
            self._prune(now)
            count = len(self._ticks)
        if count == 0:
            return 0.0, False
        return min(self._nominal_rate, count / self._window_seconds), True

    def _prune(self, now: float) -> None:
        """Drop ticks older than the window. Must hold lock."""
        cutoff = now - self._window_seconds
        while self._ticks and self._ticks[0] <= cutoff:
            self._ticks.popleft()


class ThreadCountSource:
    """Live thread count of this process."""

    def read(self) -> tuple[float, bool]:
        return float(threading.active_count()), True


class SystemLoadSource:
    """
    1-minute system load average.

    Platforms without a load average, and negative readings, report
    (0.0, False).
    """

    def __init__(self, loadavg: Optional[Callable[[], tuple[float, float, float]]] = None) -> None:
        self._loadavg = loadavg or getattr(os, "getloadavg", None)

    def read(self) -> tuple[float, bool]:
        if self._loadavg is None:
            return 0.0, False
        try:
            value = float(self._loadavg()[0])
        except OSError as exc:
            logger.debug(f"[HEALTH-MONITOR] System load unavailable: {exc}")
            return 0.0, False
        if value < 0 or not math.isfinite(value):
            return 0.0, False
        return value, True


class GcTimeSource:
    """
    Milliseconds the garbage collector ran since the previous read().

    Timing comes from gc.callbacks; start() registers the hook and stop()
    removes it. The first read() covers everything since start().
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at: Optional[float] = None
        self._total_seconds = 0.0
        self._read_seconds = 0.0
        self._installed = False

    def start(self) -> None:
        if not self._installed:
            gc.callbacks.append(self.on_gc)
            self._installed = True

    def stop(self) -> None:
        if self._installed:
            if self.on_gc in gc.callbacks:
                gc.callbacks.remove(self.on_gc)
            self._installed = False

    def on_gc(self, phase: str, info: dict) -> None:
        now = self._clock()
        with self._lock:
            if phase == "start":
                self._started_at = now
            elif phase == "stop" and self._started_at is not None:
                self._total_seconds += now - self._started_at
                self._started_at = None

    def read(self) -> tuple[float, bool]:
        with self._lock:
            delta = self._total_seconds - self._read_seconds
            self._read_seconds = self._total_seconds
        return delta * 1000.0, True


class CallableExecutor:
    """Wraps `fn(action_kind) -> bool | None`. None is treated as success."""

    def __init__(self, fn: Callable[[str], Optional[bool]]) -> None:
        self._fn = fn

    def apply(self, action_kind: str) -> bool:
        result = self._fn(action_kind)
        return True if result is None else bool(result)
