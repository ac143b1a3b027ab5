"""
Health Monitor Events — structured audit events + JSON logging.

Every state transition, adverse prediction and dispatch decision becomes a
frozen event, kept in a bounded in-memory log owned by one EventRecorder
and written as one JSON log line.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional, Union

from backend.app.health_monitor.signals import PredictionResult, StateTransition

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    FIRED = "fired"            # executor called and reported success
    FAILED = "failed"          # executor called, returned False or raised
    SUPPRESSED = "suppressed"  # still in cooldown, executor not called


@dataclass(frozen=True)
class StateChangeEvent:
    previous_state: str
    new_state: str
    trigger_signal: str
    trigger_value: float
    timestamp: float
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event: str = "state_change"


@dataclass(frozen=True)
class PredictionEvent:
    signal: str
    growing: bool
    variance_high: bool
    variance: float
    sample_count: int
    timestamp: float
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event: str = "predicted_degradation"


@dataclass(frozen=True)
class DispatchEvent:
    action: str
    tier: str
    outcome: str
    state: str
    cycle_id: str
    reason: str
    timestamp: float
    error: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event: str = "dispatch_decision"


HealthEvent = Union[StateChangeEvent, PredictionEvent, DispatchEvent]


class EventRecorder:
    """Bounded event log + structured JSON logging. Thread-safe."""

    def __init__(self, max_events: int = 1000) -> None:
        self._lock = threading.Lock()
        self._events: deque[HealthEvent] = deque(maxlen=max(1, max_events))

    def get_events(self, event_type: Optional[str] = None) -> list[HealthEvent]:
        with self._lock:
            events = list(self._events)
        if event_type is None:
            return events
        return [e for e in events if e.event == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def _record(self, event: HealthEvent, level: int = logging.INFO) -> HealthEvent:
        with self._lock:
            self._events.append(event)
        logger.log(level, f"[HEALTH-MONITOR] {json.dumps(asdict(event))}")
        return event

    def record_state_change(self, transition: StateTransition) -> StateChangeEvent:
        event = StateChangeEvent(
            previous_state=transition.previous.name,
            new_state=transition.current.name,
            trigger_signal=transition.signal.value,
            trigger_value=transition.value,
            timestamp=transition.timestamp,
        )
        level = logging.WARNING if transition.is_degradation else logging.INFO
        return self._record(event, level)

    def record_prediction(self, prediction: PredictionResult, now: float) -> PredictionEvent:
        event = PredictionEvent(
            signal=prediction.signal.value,
            growing=prediction.growing,
            variance_high=prediction.variance_high,
            variance=prediction.variance,
            sample_count=prediction.sample_count,
            timestamp=now,
        )
        return self._record(event)

    def record_dispatch(
        self,
        action: str,
        tier: str,
        outcome: DispatchOutcome,
        state: str,
        cycle_id: str,
        reason: str,
        now: float,
        error: Optional[str] = None,
    ) -> DispatchEvent:
        event = DispatchEvent(
            action=action,
            tier=tier,
            outcome=outcome.value,
            state=state,
            cycle_id=cycle_id,
            reason=reason,
            timestamp=now,
            error=error,
        )
        level = logging.WARNING if outcome == DispatchOutcome.FAILED else logging.INFO
        return self._record(event, level)
