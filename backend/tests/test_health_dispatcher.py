"""
Tests for MitigationDispatcher + candidate selection.

Covers:
  - state → tier mapping and dispatch order
  - preventive actions only below CRITICAL
  - auxiliary alarms regardless of state (counts, system load, GC time)
  - preventive memory cleanup escalation after repeated cleanups
  - cooldown suppression (standard + emergency tier)
  - executor failure isolation, cooldown applied on failure
  - counters, metrics and dispatch events
"""

from __future__ import annotations

import threading

import pytest

from backend.app.health_monitor.actions import ACTION_CATALOG, ActionTrigger
from backend.app.health_monitor.dispatcher import MitigationDispatcher, select_candidates
from backend.app.health_monitor.events import DispatchOutcome, EventRecorder
from backend.app.health_monitor.signals import PerformanceState, PredictionResult, Signal

S = PerformanceState

ALARMS = {
    Signal.THREAD_COUNT: 200,
    Signal.ENTITY_COUNT: 15000,
    Signal.REGION_COUNT: 1000,
    Signal.SYSTEM_LOAD: 0.8,
    Signal.GC_TIME: 100,
}
LIGHT = ["standard_optimization", "cache_cleanup"]
MODERATE = ["entity_optimization", "region_optimization", "memory_optimization"]
EMERGENCY = ["aggressive_optimization", "emergency_memory_cleanup", "emergency"]


class RecordingExecutor:
    def __init__(self, fail=(), raise_on=(), always_fail=False):
        self.calls: list[str] = []
        self._fail = set(fail)
        self._raise_on = set(raise_on)
        self._always_fail = always_fail
        self._lock = threading.Lock()

    def apply(self, action_kind: str) -> bool:
        with self._lock:
            self.calls.append(action_kind)
        if action_kind in self._raise_on:
            raise RuntimeError(f"boom: {action_kind}")
        if self._always_fail or action_kind in self._fail:
            return False
        return True


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def recorder():
    return EventRecorder(max_events=100)


@pytest.fixture
def dispatcher(executor, metrics, recorder):
    return MitigationDispatcher(executor, recorder=recorder, metrics=metrics)


def _predict(signal, growing=False, variance_high=False):
    return PredictionResult(signal=signal, growing=growing, variance_high=variance_high)


@pytest.mark.smoke
class TestSelectCandidates:
    @pytest.mark.parametrize("state", [S.EXCELLENT, S.GOOD])
    def test_healthy_states_request_nothing(self, state):
        assert select_candidates(state, {}, {}, ALARMS) == []

    def test_warning_requests_light(self):
        assert select_candidates(S.WARNING, {}, {}, ALARMS) == LIGHT

    def test_critical_requests_light_and_moderate(self):
        assert select_candidates(S.CRITICAL, {}, {}, ALARMS) == LIGHT + MODERATE

    def test_emergency_requests_all_state_tiers_in_order(self):
        assert select_candidates(S.EMERGENCY, {}, {}, ALARMS) == LIGHT + MODERATE + EMERGENCY

    def test_tick_drop_adds_preventive(self):
        preds = {Signal.TICK_RATE: _predict(Signal.TICK_RATE, growing=True)}
        assert select_candidates(S.GOOD, preds, {}, ALARMS) == ["preventive_optimization"]

    def test_tick_variance_adds_stability(self):
        preds = {Signal.TICK_RATE: _predict(Signal.TICK_RATE, variance_high=True)}
        assert select_candidates(S.EXCELLENT, preds, {}, ALARMS) == ["stability_optimization"]

    def test_memory_or_count_growth_adds_memory_cleanup(self):
        for signal in (Signal.MEMORY_USAGE, Signal.ENTITY_COUNT):
            preds = {signal: _predict(signal, growing=True)}
            assert select_candidates(S.GOOD, preds, {}, ALARMS) == ["preventive_memory_cleanup"]

    def test_compound_adds_preventive(self):
        assert select_candidates(S.GOOD, {}, {}, ALARMS, compound=True) == ["preventive_optimization"]

    def test_preventive_precedes_light(self):
        preds = {Signal.MEMORY_USAGE: _predict(Signal.MEMORY_USAGE, growing=True)}
        assert select_candidates(S.WARNING, preds, {}, ALARMS) == ["preventive_memory_cleanup"] + LIGHT

    @pytest.mark.parametrize("state", [S.CRITICAL, S.EMERGENCY])
    def test_no_preventive_during_crisis(self, state):
        preds = {
            Signal.TICK_RATE: _predict(Signal.TICK_RATE, growing=True, variance_high=True),
            Signal.MEMORY_USAGE: _predict(Signal.MEMORY_USAGE, growing=True),
        }
        kinds = select_candidates(state, preds, {}, ALARMS, compound=True)
        assert not {"preventive_optimization", "stability_optimization",
                    "preventive_memory_cleanup"} & set(kinds)

    def test_alarm_regardless_of_state(self):
        aux = {Signal.ENTITY_COUNT: 16000.0}
        assert select_candidates(S.EXCELLENT, {}, aux, ALARMS) == ["entity_monitoring"]
        assert select_candidates(S.CRITICAL, {}, aux, ALARMS) == LIGHT + MODERATE + ["entity_monitoring"]

    def test_alarm_is_strictly_above_threshold(self):
        assert select_candidates(S.GOOD, {}, {Signal.THREAD_COUNT: 200.0}, ALARMS) == []
        assert select_candidates(S.GOOD, {}, {Signal.THREAD_COUNT: 201.0}, ALARMS) == ["thread_optimization"]

    def test_all_alarms_in_declaration_order(self):
        aux = {Signal.REGION_COUNT: 5000.0, Signal.THREAD_COUNT: 500.0, Signal.ENTITY_COUNT: 20000.0}
        assert select_candidates(S.GOOD, {}, aux, ALARMS) == [
            "thread_optimization", "entity_monitoring", "region_unload",
        ]

    def test_system_load_alarm(self):
        assert select_candidates(S.GOOD, {}, {Signal.SYSTEM_LOAD: 0.8}, ALARMS) == []
        assert select_candidates(S.GOOD, {}, {Signal.SYSTEM_LOAD: 0.95}, ALARMS) == [
            "system_load_optimization",
        ]

    def test_gc_time_alarm_requests_memory_optimization(self):
        aux = {Signal.GC_TIME: 150.0}
        assert select_candidates(S.EXCELLENT, {}, aux, ALARMS) == ["memory_optimization"]
        kinds = select_candidates(S.CRITICAL, {}, aux, ALARMS)
        assert kinds == LIGHT + MODERATE
        assert select_candidates(S.GOOD, {}, {Signal.GC_TIME: 100.0}, ALARMS) == []

    def test_load_and_gc_growth_do_not_request_cleanup(self):
        preds = {
            Signal.SYSTEM_LOAD: _predict(Signal.SYSTEM_LOAD, growing=True),
            Signal.GC_TIME: _predict(Signal.GC_TIME, growing=True),
        }
        assert select_candidates(S.GOOD, preds, {}, ALARMS) == []

    def test_escalation_requests_memory_cleanup_below_crisis(self):
        assert select_candidates(S.GOOD, {}, {}, ALARMS, escalate_memory_cleanup=True) == [
            "preventive_memory_cleanup",
        ]
        kinds = select_candidates(S.CRITICAL, {}, {}, ALARMS, escalate_memory_cleanup=True)
        assert "preventive_memory_cleanup" not in kinds

    def test_no_duplicates(self):
        preds = {
            Signal.TICK_RATE: _predict(Signal.TICK_RATE, growing=True),
        }
        kinds = select_candidates(S.GOOD, preds, {}, ALARMS, compound=True)
        assert kinds.count("preventive_optimization") == 1

    def test_catalog_covers_every_state_action(self):
        state_kinds = [s.kind for s in ACTION_CATALOG if s.trigger == ActionTrigger.STATE]
        assert select_candidates(S.EMERGENCY, {}, {}, ALARMS) == state_kinds


@pytest.mark.core
class TestCooldown:
    def test_emergency_fires_once_then_suppressed(self, dispatcher, executor):
        first = dispatcher.run_cycle(S.EMERGENCY, {}, {}, now=100.0)
        assert "emergency" in first.fired
        assert executor.calls.count("emergency") == 1

        second = dispatcher.run_cycle(S.EMERGENCY, {}, {}, now=110.0)
        assert "emergency" in second.suppressed
        assert executor.calls.count("emergency") == 1
        # standard 10 s cooldown has elapsed for the lighter tiers
        assert "standard_optimization" in second.fired
        assert dispatcher.counters()["emergency"].suppressed == 1

    def test_emergency_fires_again_after_cooldown(self, dispatcher, executor):
        dispatcher.run_cycle(S.EMERGENCY, {}, {}, now=100.0)
        report = dispatcher.run_cycle(S.EMERGENCY, {}, {}, now=130.0)
        assert "emergency" in report.fired
        assert executor.calls.count("emergency") == 2

    def test_standard_cooldown_boundary(self, dispatcher):
        dispatcher.run_cycle(S.WARNING, {}, {}, now=0.0)
        assert dispatcher.run_cycle(S.WARNING, {}, {}, now=9.99).suppressed == LIGHT
        assert dispatcher.run_cycle(S.WARNING, {}, {}, now=10.0).fired == LIGHT

    def test_cooldown_override(self, executor):
        d = MitigationDispatcher(executor, cooldowns={"cache_cleanup": 60.0})
        d.run_cycle(S.WARNING, {}, {}, now=0.0)
        report = d.run_cycle(S.WARNING, {}, {}, now=30.0)
        assert report.fired == ["standard_optimization"]
        assert report.suppressed == ["cache_cleanup"]

    def test_update_cooldowns(self, dispatcher):
        dispatcher.update_cooldowns({"standard_optimization": 0.0, "unknown_kind": 5.0})
        assert dispatcher.action("standard_optimization").cooldown_seconds == 0.0
        dispatcher.run_cycle(S.WARNING, {}, {}, now=0.0)
        assert "standard_optimization" in dispatcher.run_cycle(S.WARNING, {}, {}, now=0.0).fired

    def test_default_cooldowns_by_tier(self, dispatcher):
        assert dispatcher.action("cache_cleanup").cooldown_seconds == 10.0
        assert dispatcher.action("emergency").cooldown_seconds == 30.0
        assert dispatcher.action("aggressive_optimization").cooldown_seconds == 30.0


@pytest.mark.core
class TestFailureIsolation:
    def test_always_failing_executor_still_sets_last_fired(self, metrics):
        executor = RecordingExecutor(always_fail=True)
        d = MitigationDispatcher(executor, metrics=metrics)
        report = d.run_cycle(S.EMERGENCY, {}, {}, now=42.0)
        assert report.failed == LIGHT + MODERATE + EMERGENCY
        assert executor.calls == LIGHT + MODERATE + EMERGENCY
        for kind in LIGHT + MODERATE + EMERGENCY:
            assert d.action(kind).last_fired_at == 42.0
            assert d.counters()[kind].failed == 1

        # cooldown applies to failures too
        again = d.run_cycle(S.EMERGENCY, {}, {}, now=43.0)
        assert again.attempted == []

    def test_exception_does_not_stop_other_actions(self, dispatcher, executor):
        executor._raise_on = {"cache_cleanup"}
        report = dispatcher.run_cycle(S.CRITICAL, {}, {}, now=0.0)
        assert report.failed == ["cache_cleanup"]
        assert report.fired == ["standard_optimization"] + MODERATE
        failed = [r for r in report.records if r.outcome == DispatchOutcome.FAILED][0]
        assert "boom" in failed.error

    def test_failure_logged_at_warning(self, dispatcher, executor, caplog):
        executor._fail = {"standard_optimization"}
        with caplog.at_level("WARNING", logger="backend.app.health_monitor.dispatcher"):
            dispatcher.run_cycle(S.WARNING, {}, {}, now=0.0)
        assert any("standard_optimization failed" in r.message for r in caplog.records)


class TestCountersAndTelemetry:
    def test_counters(self, dispatcher, executor):
        executor._fail = {"cache_cleanup"}
        dispatcher.run_cycle(S.WARNING, {}, {}, now=0.0)
        dispatcher.run_cycle(S.WARNING, {}, {}, now=1.0)
        std = dispatcher.counters()["standard_optimization"]
        cache = dispatcher.counters()["cache_cleanup"]
        assert (std.fired, std.succeeded, std.failed, std.suppressed) == (1, 1, 0, 1)
        assert (cache.fired, cache.succeeded, cache.failed, cache.suppressed) == (1, 0, 1, 1)

    def test_metrics_per_outcome(self, dispatcher, executor, metrics):
        executor._fail = {"cache_cleanup"}
        dispatcher.run_cycle(S.WARNING, {}, {}, now=0.0)
        dispatcher.run_cycle(S.WARNING, {}, {}, now=1.0)
        snap = metrics.snapshot()["dispatch_total"]
        assert snap[("standard_optimization", "fired")] == 1
        assert snap[("cache_cleanup", "failed")] == 1
        assert snap[("cache_cleanup", "suppressed")] == 1

    def test_dispatch_events(self, dispatcher, recorder):
        report = dispatcher.run_cycle(S.WARNING, {}, {}, now=5.0, reason="analysis")
        events = recorder.get_events("dispatch_decision")
        assert [e.action for e in events] == LIGHT
        assert all(e.cycle_id == report.cycle_id for e in events)
        assert all(e.reason == "analysis" and e.state == "WARNING" for e in events)

    def test_empty_cycle_report(self, dispatcher, executor):
        report = dispatcher.run_cycle(S.EXCELLENT, {}, {}, now=0.0)
        assert report.records == ()
        assert executor.calls == []

    def test_reset(self, dispatcher):
        dispatcher.run_cycle(S.WARNING, {}, {}, now=0.0)
        dispatcher.reset()
        assert dispatcher.action("cache_cleanup").last_fired_at is None
        assert dispatcher.counters()["cache_cleanup"].fired == 0


@pytest.mark.core
class TestMemoryCleanupEscalation:
    def test_escalates_after_count_exceeded(self, executor):
        d = MitigationDispatcher(executor, memory_cleanup_escalation=2)
        d.run_cycle(S.CRITICAL, {}, {}, now=0.0)
        d.run_cycle(S.CRITICAL, {}, {}, now=10.0)
        assert d.memory_cleanups() == 2
        assert d.run_cycle(S.GOOD, {}, {}, now=20.0).records == ()

        d.run_cycle(S.CRITICAL, {}, {}, now=30.0)
        assert d.memory_cleanups() == 3
        report = d.run_cycle(S.GOOD, {}, {}, now=40.0, reason="analysis")
        assert report.fired == ["preventive_memory_cleanup"]

    def test_emergency_cleanups_count(self, executor):
        d = MitigationDispatcher(executor, memory_cleanup_escalation=1)
        d.run_cycle(S.EMERGENCY, {}, {}, now=0.0)
        # memory_optimization + emergency_memory_cleanup
        assert d.memory_cleanups() == 2
        assert d.run_cycle(S.EXCELLENT, {}, {}, now=1.0).fired == ["preventive_memory_cleanup"]

    def test_failed_cleanups_do_not_count(self):
        executor = RecordingExecutor(fail={"memory_optimization"})
        d = MitigationDispatcher(executor, memory_cleanup_escalation=0)
        d.run_cycle(S.CRITICAL, {}, {}, now=0.0)
        assert d.memory_cleanups() == 0
        assert d.run_cycle(S.GOOD, {}, {}, now=10.0).records == ()

    def test_update_escalation_count(self, dispatcher):
        dispatcher.run_cycle(S.CRITICAL, {}, {}, now=0.0)
        assert dispatcher.run_cycle(S.GOOD, {}, {}, now=1.0).records == ()
        dispatcher.update_memory_cleanup_escalation(0)
        assert dispatcher.run_cycle(S.GOOD, {}, {}, now=2.0).fired == ["preventive_memory_cleanup"]

    def test_gc_alarm_cleanups_feed_escalation(self, executor):
        d = MitigationDispatcher(executor, memory_cleanup_escalation=1)
        for now in (0.0, 10.0):
            report = d.run_cycle(S.EXCELLENT, {}, {Signal.GC_TIME: 250.0}, now=now)
            assert report.fired == ["memory_optimization"]
        report = d.run_cycle(S.EXCELLENT, {}, {}, now=20.0)
        assert report.fired == ["preventive_memory_cleanup"]


@pytest.mark.concurrency
class TestConcurrentCycles:
    def test_parallel_cycles_fire_each_action_once(self, executor):
        d = MitigationDispatcher(executor)
        barrier = threading.Barrier(8)

        def run():
            barrier.wait()
            d.run_cycle(S.EMERGENCY, {}, {}, now=100.0)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(executor.calls) == sorted(LIGHT + MODERATE + EMERGENCY)
        assert d.counters()["emergency"].suppressed == 7
