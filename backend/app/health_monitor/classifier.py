"""
State Classifier — hysteretic PerformanceState machine over tick rate + memory.

Degradation is immediate: the worse per-signal candidate wins as soon as
one sample crosses a boundary. Recovery is confirmed: every one of the last
`confirmation_samples` values of each primary signal must satisfy the
better band before the state improves. This keeps a single good sample
from undoing a degraded classification near a boundary.

observe() returns the transition it caused to the calling thread, so
concurrent callers each get their own. The latest change is also kept
pending for consume_transition(), which only single-threaded callers use.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Optional

from backend.app.health_monitor.config import (
    DEFAULT_MEMORY_THRESHOLDS,
    DEFAULT_TICK_RATE_THRESHOLDS,
    ThresholdSet,
)
from backend.app.health_monitor.signals import (
    PRIMARY_SIGNALS,
    PerformanceState,
    Signal,
    StateTransition,
)

logger = logging.getLogger(__name__)


class StateClassifier:
    """
    Owns the current PerformanceState. Only observe() mutates it.
    Readers (dispatcher, statistics) go through the `state` property.
    """

    def __init__(
        self,
        tick_rate_thresholds: ThresholdSet = DEFAULT_TICK_RATE_THRESHOLDS,
        memory_thresholds: ThresholdSet = DEFAULT_MEMORY_THRESHOLDS,
        confirmation_samples: int = 3,
    ) -> None:
        self._lock = threading.Lock()
        self._thresholds: dict[Signal, ThresholdSet] = {
            Signal.TICK_RATE: tick_rate_thresholds,
            Signal.MEMORY_USAGE: memory_thresholds,
        }
        self._confirmation_samples = max(1, confirmation_samples)
        self._recent: dict[Signal, deque[float]] = {
            signal: deque(maxlen=self._confirmation_samples) for signal in PRIMARY_SIGNALS
        }
        self._state = PerformanceState.EXCELLENT
        self._pending: Optional[StateTransition] = None
        self._transition_count = 0

    @property
    def state(self) -> PerformanceState:
        with self._lock:
            return self._state

    @property
    def transition_count(self) -> int:
        with self._lock:
            return self._transition_count

    @property
    def confirmation_samples(self) -> int:
        return self._confirmation_samples

    def thresholds(self, signal: Signal) -> ThresholdSet:
        return self._thresholds[signal]

    def latest_values(self) -> dict[Signal, Optional[float]]:
        with self._lock:
            return {
                signal: (values[-1] if values else None)
                for signal, values in self._recent.items()
            }

    # ── Classification ────────────────────────────────────────────────────

    def candidate(self, tick_rate: Optional[float], memory_usage: Optional[float]) -> PerformanceState:
        """Worse of the per-signal bands. A missing value counts as EXCELLENT."""
        levels = [PerformanceState.EXCELLENT]
        if tick_rate is not None:
            levels.append(self._thresholds[Signal.TICK_RATE].level(tick_rate))
        if memory_usage is not None:
            levels.append(self._thresholds[Signal.MEMORY_USAGE].level(memory_usage))
        return max(levels)

    def observe(self, signal: Signal, value: float, now: float) -> Optional[StateTransition]:
        """Feed one primary-signal value. Returns the transition it caused, if any.

        The other primary signal contributes its most recent known value.
        Auxiliary signals are ignored.
        """
        if signal not in PRIMARY_SIGNALS:
            return None

        with self._lock:
            self._recent[signal].append(value)
            latest = {s: (vals[-1] if vals else None) for s, vals in self._recent.items()}
            candidate = self.candidate(latest[Signal.TICK_RATE], latest[Signal.MEMORY_USAGE])

            if candidate > self._state:
                new_state = candidate
            elif candidate < self._state:
                new_state = self._confirmed_level()
                if new_state >= self._state:
                    return None
            else:
                return None

            transition = StateTransition(
                previous=self._state,
                current=new_state,
                timestamp=now,
                signal=signal,
                value=value,
            )
            self._state = new_state
            self._pending = transition
            self._transition_count += 1

        logger.info(
            f"[HEALTH-MONITOR] State {transition.previous.name} → {transition.current.name} "
            f"({signal.value}={value:.3f})"
        )
        return transition

    def _confirmed_level(self) -> PerformanceState:
        """Worst band seen in each primary signal's confirmation window. Must hold lock."""
        worst = PerformanceState.EXCELLENT
        for signal, values in self._recent.items():
            thresholds = self._thresholds[signal]
            for value in values:
                level = thresholds.level(value)
                if level > worst:
                    worst = level
        return worst

    def consume_transition(self) -> Optional[StateTransition]:
        """Return the pending transition once, then None until the next change."""
        with self._lock:
            transition, self._pending = self._pending, None
            return transition

    def update_thresholds(
        self,
        tick_rate_thresholds: ThresholdSet,
        memory_thresholds: ThresholdSet,
        confirmation_samples: Optional[int] = None,
    ) -> None:
        """Swap thresholds. Takes effect on the next observe(); state is kept."""
        with self._lock:
            self._thresholds = {
                Signal.TICK_RATE: tick_rate_thresholds,
                Signal.MEMORY_USAGE: memory_thresholds,
            }
            if confirmation_samples is not None and confirmation_samples != self._confirmation_samples:
                self._confirmation_samples = max(1, confirmation_samples)
                self._recent = {
                    signal: deque(values, maxlen=self._confirmation_samples)
                    for signal, values in self._recent.items()
                }

    def reset(self) -> None:
        """Back to EXCELLENT with no history. Test only."""
        with self._lock:
            self._state = PerformanceState.EXCELLENT
            self._pending = None
            self._transition_count = 0
            for values in self._recent.values():
                values.clear()
