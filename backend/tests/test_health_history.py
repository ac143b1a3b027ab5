"""
Tests for the per-signal HistoryBuffer.

Covers:
  - FIFO eviction at capacity
  - window(n) edge cases
  - non-decreasing timestamps
  - resize keeps the newest samples
"""

from __future__ import annotations

import threading

import pytest
from hypothesis import given, settings, HealthCheck
from hypothesis import strategies as st

from backend.app.health_monitor.history import HistoryBuffer
from backend.app.health_monitor.signals import Sample, Signal


@pytest.fixture
def buf():
    return HistoryBuffer(Signal.TICK_RATE, capacity=5)


def _fill(buffer: HistoryBuffer, values):
    for i, v in enumerate(values):
        buffer.push(Sample(timestamp=float(i), value=float(v)))


@pytest.mark.smoke
class TestPushAndEvict:
    def test_empty_buffer(self, buf):
        assert len(buf) == 0
        assert buf.snapshot() == ()
        assert buf.latest() is None
        assert buf.mean() is None

    def test_oldest_evicted_when_full(self, buf):
        _fill(buf, range(8))
        assert [s.value for s in buf.snapshot()] == [3.0, 4.0, 5.0, 6.0, 7.0]
        assert len(buf) == 5

    def test_latest_is_newest(self, buf):
        _fill(buf, [1, 2, 3])
        assert buf.latest() == Sample(timestamp=2.0, value=3.0)

    def test_capacity_below_one_clamped(self):
        b = HistoryBuffer(Signal.MEMORY_USAGE, capacity=0)
        assert b.capacity == 1
        _fill(b, [1, 2])
        assert b.values() == [2.0]

    def test_older_timestamp_clamped_to_newest(self, buf):
        buf.push(Sample(timestamp=10.0, value=1.0))
        buf.push(Sample(timestamp=4.0, value=2.0))
        stamps = [s.timestamp for s in buf.snapshot()]
        assert stamps == [10.0, 10.0]
        assert buf.latest().value == 2.0


@pytest.mark.smoke
class TestWindow:
    def test_window_returns_newest(self, buf):
        _fill(buf, [1, 2, 3, 4])
        assert [s.value for s in buf.window(2)] == [3.0, 4.0]

    def test_window_larger_than_fill(self, buf):
        _fill(buf, [1, 2])
        assert len(buf.window(10)) == 2

    @pytest.mark.parametrize("n", [0, -1, -100])
    def test_window_non_positive_is_empty(self, buf, n):
        _fill(buf, [1, 2, 3])
        assert buf.window(n) == ()

    def test_mean_over_window(self, buf):
        _fill(buf, [2, 4, 6, 8])
        assert buf.mean() == 5.0
        assert buf.mean(2) == 7.0

    def test_snapshot_is_immutable_copy(self, buf):
        _fill(buf, [1, 2])
        snap = buf.snapshot()
        buf.push(Sample(timestamp=5.0, value=9.0))
        assert len(snap) == 2


class TestResizeAndClear:
    def test_shrink_keeps_newest(self, buf):
        _fill(buf, [1, 2, 3, 4, 5])
        buf.resize(2)
        assert buf.capacity == 2
        assert buf.values() == [4.0, 5.0]

    def test_grow_keeps_all(self, buf):
        _fill(buf, [1, 2, 3])
        buf.resize(10)
        assert buf.values() == [1.0, 2.0, 3.0]
        _fill(buf, range(10))
        assert len(buf) == 10

    def test_clear(self, buf):
        _fill(buf, [1, 2, 3])
        buf.clear()
        assert len(buf) == 0


class TestHistoryProperties:
    @given(
        capacity=st.integers(min_value=1, max_value=50),
        timestamps=st.lists(
            st.floats(min_value=0, max_value=1e6, allow_nan=False), max_size=200,
        ),
    )
    @settings(max_examples=100, derandomize=True, suppress_health_check=[HealthCheck.too_slow])
    def test_bounded_and_chronological(self, capacity, timestamps):
        b = HistoryBuffer(Signal.ENTITY_COUNT, capacity=capacity)
        for ts in timestamps:
            b.push(Sample(timestamp=ts, value=1.0))
        snap = b.snapshot()
        assert len(snap) <= capacity
        assert len(snap) == min(capacity, len(timestamps))
        assert all(a.timestamp <= c.timestamp for a, c in zip(snap, snap[1:]))


@pytest.mark.concurrency
class TestConcurrentReaders:
    def test_readers_see_consistent_copies(self):
        b = HistoryBuffer(Signal.TICK_RATE, capacity=50)
        stop = threading.Event()
        errors = []

        def writer():
            i = 0
            while not stop.is_set():
                b.push(Sample(timestamp=float(i), value=float(i)))
                i += 1

        def reader():
            for _ in range(500):
                snap = b.snapshot()
                if len(snap) > 50:
                    errors.append(len(snap))
                if any(a.timestamp > c.timestamp for a, c in zip(snap, snap[1:])):
                    errors.append("order")

        w = threading.Thread(target=writer, daemon=True)
        w.start()
        readers = [threading.Thread(target=reader) for _ in range(4)]
        for r in readers:
            r.start()
        for r in readers:
            r.join(timeout=10)
        stop.set()
        w.join(timeout=5)
        assert errors == []
