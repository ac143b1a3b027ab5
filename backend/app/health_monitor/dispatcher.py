"""
Mitigation Dispatcher — graduated action selection + cooldown enforcement.

Two halves, kept apart:
  - select_candidates(): pure. State, predictions and auxiliary values in,
    ordered action kinds out. No side effects.
  - MitigationDispatcher.run_cycle(): the only place that calls the host's
    ActionExecutor. Enforces per-action cooldowns, isolates failures and
    keeps per-kind counters.

Ordering: tier ascending (PREVENTIVE < LIGHT < MODERATE < EMERGENCY), then
catalog declaration order. Each kind appears at most once per cycle.

Cooldown: an action whose last attempt is younger than its cooldown is
suppressed. last_fired_at is set on every attempt, success or failure, so a
failing action cannot be retried in a tight loop.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional

from backend.app.health_monitor.actions import (
    ACTION_CATALOG,
    ALARM_ACTIONS,
    EMERGENCY_MEMORY_CLEANUP,
    MEMORY_OPTIMIZATION,
    PREVENTIVE_MEMORY_CLEANUP,
    PREVENTIVE_OPTIMIZATION,
    STABILITY_OPTIMIZATION,
    ActionTrigger,
    declaration_index,
    get_action_spec,
)
from backend.app.health_monitor.events import DispatchOutcome, EventRecorder
from backend.app.health_monitor.metrics import HealthMetrics
from backend.app.health_monitor.signals import (
    ActionTier,
    PerformanceState,
    PredictionResult,
    Signal,
)
from backend.app.health_monitor.sources import ActionExecutor

logger = logging.getLogger(__name__)

DEFAULT_STANDARD_COOLDOWN = 10.0
DEFAULT_EMERGENCY_COOLDOWN = 30.0
DEFAULT_MEMORY_CLEANUP_ESCALATION = 10

# Memory cleanups whose successful runs count toward preventive escalation
MEMORY_CLEANUP_KINDS = (MEMORY_OPTIMIZATION, EMERGENCY_MEMORY_CLEANUP)

# Signals whose growth requests a preventive memory cleanup
_CLEANUP_TREND_SIGNALS = frozenset({
    Signal.MEMORY_USAGE,
    Signal.THREAD_COUNT,
    Signal.ENTITY_COUNT,
    Signal.REGION_COUNT,
})

# State → action tiers it requests
_STATE_TIERS: dict[PerformanceState, frozenset[ActionTier]] = {
    PerformanceState.EXCELLENT: frozenset(),
    PerformanceState.GOOD: frozenset(),
    PerformanceState.WARNING: frozenset({ActionTier.LIGHT}),
    PerformanceState.CRITICAL: frozenset({ActionTier.LIGHT, ActionTier.MODERATE}),
    PerformanceState.EMERGENCY: frozenset(
        {ActionTier.LIGHT, ActionTier.MODERATE, ActionTier.EMERGENCY}
    ),
}


@dataclass
class MitigationAction:
    """Registry entry. Mutated only by the dispatcher under its lock."""
    kind: str
    tier: ActionTier
    cooldown_seconds: float
    last_fired_at: Optional[float] = None
    fired: int = 0
    succeeded: int = 0
    failed: int = 0
    suppressed: int = 0

    def cooling_down(self, now: float) -> bool:
        return self.last_fired_at is not None and now - self.last_fired_at < self.cooldown_seconds


@dataclass(frozen=True)
class ActionCounters:
    fired: int = 0
    succeeded: int = 0
    failed: int = 0
    suppressed: int = 0


@dataclass(frozen=True)
class DispatchRecord:
    kind: str
    tier: ActionTier
    outcome: DispatchOutcome
    error: Optional[str] = None


@dataclass(frozen=True)
class DispatchReport:
    cycle_id: str
    reason: str
    state: PerformanceState
    timestamp: float
    records: tuple[DispatchRecord, ...] = ()

    def kinds(self, outcome: DispatchOutcome) -> list[str]:
        return [r.kind for r in self.records if r.outcome == outcome]

    @property
    def fired(self) -> list[str]:
        return self.kinds(DispatchOutcome.FIRED)

    @property
    def failed(self) -> list[str]:
        return self.kinds(DispatchOutcome.FAILED)

    @property
    def suppressed(self) -> list[str]:
        return self.kinds(DispatchOutcome.SUPPRESSED)

    @property
    def attempted(self) -> list[str]:
        """Kinds the executor was actually called for."""
        return [r.kind for r in self.records if r.outcome != DispatchOutcome.SUPPRESSED]


# ── Pure candidate selection ──────────────────────────────────────────────────

def select_candidates(
    state: PerformanceState,
    predictions: Mapping[Signal, PredictionResult],
    aux_values: Mapping[Signal, Optional[float]],
    alarm_thresholds: Mapping[Signal, float],
    compound: bool = False,
    escalate_memory_cleanup: bool = False,
) -> list[str]:
    """
    Action kinds requested for this cycle, in dispatch order.

    escalate_memory_cleanup: the caller saw enough past memory cleanups to
    ask for a preventive one regardless of trend.
    """
    kinds: set[str] = set()

    tiers = _STATE_TIERS[state]
    for spec in ACTION_CATALOG:
        if spec.trigger == ActionTrigger.STATE and spec.tier in tiers:
            kinds.add(spec.kind)

    # Preventive only while there is no current crisis
    if state < PerformanceState.CRITICAL:
        tick = predictions.get(Signal.TICK_RATE)
        if compound or (tick is not None and tick.growing):
            kinds.add(PREVENTIVE_OPTIMIZATION)
        if tick is not None and tick.variance_high:
            kinds.add(STABILITY_OPTIMIZATION)
        if escalate_memory_cleanup or any(
            p.growing for signal, p in predictions.items() if signal in _CLEANUP_TREND_SIGNALS
        ):
            kinds.add(PREVENTIVE_MEMORY_CLEANUP)

    for signal, kind in ALARM_ACTIONS.items():
        value = aux_values.get(signal)
        threshold = alarm_thresholds.get(signal)
        if value is not None and threshold is not None and value > threshold:
            kinds.add(kind)

    return sorted(kinds, key=lambda k: (get_action_spec(k).tier, declaration_index(k)))


# ── Dispatcher ────────────────────────────────────────────────────────────────

class MitigationDispatcher:
    """
    Owns the action registry. One cycle at a time.

    The cycle lock serializes whole cycles. The registry lock only guards
    last_fired_at and counters, and is never held across an executor call,
    so counters() stays readable while a slow action runs.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        cooldowns: Optional[Mapping[str, float]] = None,
        alarm_thresholds: Optional[Mapping[Signal, float]] = None,
        recorder: Optional[EventRecorder] = None,
        metrics: Optional[HealthMetrics] = None,
        memory_cleanup_escalation: int = DEFAULT_MEMORY_CLEANUP_ESCALATION,
    ) -> None:
        self._executor = executor
        self._recorder = recorder
        self._metrics = metrics
        self._cycle_lock = threading.Lock()
        self._lock = threading.Lock()
        cooldowns = cooldowns or {}
        self._actions: dict[str, MitigationAction] = {}
        for spec in ACTION_CATALOG:
            default = (
                DEFAULT_EMERGENCY_COOLDOWN
                if spec.tier == ActionTier.EMERGENCY
                else DEFAULT_STANDARD_COOLDOWN
            )
            self._actions[spec.kind] = MitigationAction(
                kind=spec.kind,
                tier=spec.tier,
                cooldown_seconds=cooldowns.get(spec.kind, default),
            )
        self._alarm_thresholds: dict[Signal, float] = dict(alarm_thresholds or {
            Signal.THREAD_COUNT: 200,
            Signal.ENTITY_COUNT: 15000,
            Signal.REGION_COUNT: 1000,
            Signal.SYSTEM_LOAD: 0.8,
            Signal.GC_TIME: 100,
        })
        self._memory_cleanup_escalation = memory_cleanup_escalation

    @property
    def alarm_thresholds(self) -> dict[Signal, float]:
        return dict(self._alarm_thresholds)

    def action(self, kind: str) -> MitigationAction:
        """Copy of one registry entry."""
        with self._lock:
            entry = self._actions[kind]
            return MitigationAction(**vars(entry))

    def counters(self) -> dict[str, ActionCounters]:
        with self._lock:
            return {
                kind: ActionCounters(
                    fired=a.fired,
                    succeeded=a.succeeded,
                    failed=a.failed,
                    suppressed=a.suppressed,
                )
                for kind, a in self._actions.items()
            }

    def update_cooldowns(self, cooldowns: Mapping[str, float]) -> None:
        with self._lock:
            for kind, seconds in cooldowns.items():
                if kind in self._actions:
                    self._actions[kind].cooldown_seconds = seconds

    def update_alarm_thresholds(self, alarm_thresholds: Mapping[Signal, float]) -> None:
        with self._lock:
            self._alarm_thresholds = dict(alarm_thresholds)

    def update_memory_cleanup_escalation(self, count: int) -> None:
        with self._lock:
            self._memory_cleanup_escalation = count

    def memory_cleanups(self) -> int:
        """Successful memory cleanups so far."""
        with self._lock:
            return sum(self._actions[kind].succeeded for kind in MEMORY_CLEANUP_KINDS)

    # ── Cycle ─────────────────────────────────────────────────────────────

    def run_cycle(
        self,
        state: PerformanceState,
        predictions: Mapping[Signal, PredictionResult],
        aux_values: Mapping[Signal, Optional[float]],
        now: float,
        compound: bool = False,
        reason: str = "manual",
    ) -> DispatchReport:
        """Select candidates and attempt each one not in cooldown."""
        with self._cycle_lock:
            with self._lock:
                alarms = dict(self._alarm_thresholds)
                escalate = (
                    sum(self._actions[kind].succeeded for kind in MEMORY_CLEANUP_KINDS)
                    > self._memory_cleanup_escalation
                )
            candidates = select_candidates(
                state, predictions, aux_values, alarms, compound, escalate
            )
            cycle_id = str(uuid.uuid4())
            records: list[DispatchRecord] = []

            if candidates:
                logger.debug(
                    f"[HEALTH-MONITOR] Dispatch cycle {cycle_id[:8]} ({reason}, "
                    f"state={state.name}): {candidates}"
                )

            for kind in candidates:
                record = self._dispatch_one(kind, now)
                records.append(record)
                self._emit(record, state, cycle_id, reason, now)

            return DispatchReport(
                cycle_id=cycle_id,
                reason=reason,
                state=state,
                timestamp=now,
                records=tuple(records),
            )

    def _dispatch_one(self, kind: str, now: float) -> DispatchRecord:
        with self._lock:
            action = self._actions[kind]
            tier = action.tier
            if action.cooling_down(now):
                action.suppressed += 1
                return DispatchRecord(kind=kind, tier=tier, outcome=DispatchOutcome.SUPPRESSED)
            action.last_fired_at = now
            action.fired += 1

        error: Optional[str] = None
        try:
            ok = bool(self._executor.apply(kind))
            if not ok:
                error = "executor returned False"
        except Exception as exc:
            ok = False
            error = f"{type(exc).__name__}: {exc}"

        with self._lock:
            if ok:
                self._actions[kind].succeeded += 1
            else:
                self._actions[kind].failed += 1

        if ok:
            logger.info(f"[HEALTH-MONITOR] Action {kind} applied ({tier.name})")
            return DispatchRecord(kind=kind, tier=tier, outcome=DispatchOutcome.FIRED)

        logger.warning(f"[HEALTH-MONITOR] Action {kind} failed: {error}")
        return DispatchRecord(kind=kind, tier=tier, outcome=DispatchOutcome.FAILED, error=error)

    def _emit(
        self,
        record: DispatchRecord,
        state: PerformanceState,
        cycle_id: str,
        reason: str,
        now: float,
    ) -> None:
        if self._metrics:
            self._metrics.inc_dispatch(record.kind, record.outcome.value)
        if self._recorder:
            self._recorder.record_dispatch(
                action=record.kind,
                tier=record.tier.name,
                outcome=record.outcome,
                state=state.name,
                cycle_id=cycle_id,
                reason=reason,
                now=now,
                error=record.error,
            )

    # ── Test utilities ────────────────────────────────────────────────────

    def reset(self) -> None:
        """Clear cooldowns and counters. Test only."""
        with self._lock:
            for action in self._actions.values():
                action.last_fired_at = None
                action.fired = action.succeeded = action.failed = action.suppressed = 0
