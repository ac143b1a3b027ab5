"""
History Buffer — fixed-capacity ring of timestamped samples for one signal.

Single writer (the owning Sampler), many readers. Readers always get an
immutable tuple copy taken under a narrow lock, so a writer that keeps
pushing never invalidates what a reader holds.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Optional

from backend.app.health_monitor.signals import Sample, Signal


class HistoryBuffer:
    """
    Bounded FIFO of Samples. Oldest entry is evicted when full.

    Timestamps are kept non-decreasing: a sample older than the newest one
    is stored with the newest timestamp instead.
    """

    def __init__(self, signal: Signal, capacity: int) -> None:
        if capacity < 1:
            capacity = 1
        self._signal = signal
        self._lock = threading.Lock()
        self._samples: deque[Sample] = deque(maxlen=capacity)

    @property
    def signal(self) -> Signal:
        return self._signal

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def push(self, sample: Sample) -> None:
        """Append a sample. Always accepted, O(1)."""
        with self._lock:
            if self._samples and sample.timestamp < self._samples[-1].timestamp:
                sample = Sample(timestamp=self._samples[-1].timestamp, value=sample.value)
            self._samples.append(sample)

    def snapshot(self) -> tuple[Sample, ...]:
        """Immutable copy of current contents, oldest first."""
        with self._lock:
            return tuple(self._samples)

    def window(self, n: int) -> tuple[Sample, ...]:
        """Most recent n samples (fewer if not yet filled), oldest first."""
        if n <= 0:
            return ()
        with self._lock:
            size = len(self._samples)
            if n >= size:
                return tuple(self._samples)
            return tuple(self._samples[i] for i in range(size - n, size))

    def latest(self) -> Optional[Sample]:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def values(self, n: Optional[int] = None) -> list[float]:
        samples = self.snapshot() if n is None else self.window(n)
        return [s.value for s in samples]

    def mean(self, n: Optional[int] = None) -> Optional[float]:
        """Mean of the newest n values (whole buffer if n is None)."""
        vals = self.values(n)
        if not vals:
            return None
        return sum(vals) / len(vals)

    def resize(self, capacity: int) -> None:
        """Change capacity, keeping the newest samples."""
        if capacity < 1:
            capacity = 1
        with self._lock:
            if capacity == self._samples.maxlen:
                return
            self._samples = deque(self._samples, maxlen=capacity)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
