"""
Health signal types — metric identities, samples, ordered health states.

Value types shared by every other module of the health monitor. All of them
are immutable once created.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class Signal(str, Enum):
    """Monitored metric identities."""
    TICK_RATE = "tick_rate"
    MEMORY_USAGE = "memory_usage_percent"
    THREAD_COUNT = "thread_count"
    ENTITY_COUNT = "entity_count"
    REGION_COUNT = "region_count"
    SYSTEM_LOAD = "system_load"
    GC_TIME = "gc_time_ms"

    @property
    def is_primary(self) -> bool:
        """Primary signals drive classification; the rest only feed history."""
        return self in PRIMARY_SIGNALS


PRIMARY_SIGNALS = frozenset({Signal.TICK_RATE, Signal.MEMORY_USAGE})


class PerformanceState(IntEnum):
    """Overall health, best to worst. Higher value = worse."""
    EXCELLENT = 0
    GOOD = 1
    WARNING = 2
    CRITICAL = 3
    EMERGENCY = 4


class ActionTier(IntEnum):
    """Escalation severity of a mitigation action. Dispatch order is ascending."""
    PREVENTIVE = 0
    LIGHT = 1
    MODERATE = 2
    EMERGENCY = 3


@dataclass(frozen=True)
class Sample:
    """One observation. timestamp is monotonic seconds."""
    timestamp: float
    value: float


@dataclass(frozen=True)
class PredictionResult:
    """Trend verdict for one signal.

    growing means an adverse trend: a falling tick rate, or a rising
    memory/count signal. The neutral result (nothing detected) is also what
    insufficient history produces.
    """
    signal: Signal
    growing: bool = False
    variance_high: bool = False
    variance: float = 0.0
    sample_count: int = 0

    @classmethod
    def neutral(cls, signal: Signal, sample_count: int = 0) -> "PredictionResult":
        return cls(signal=signal, sample_count=sample_count)

    @property
    def is_adverse(self) -> bool:
        return self.growing or self.variance_high


@dataclass(frozen=True)
class StateTransition:
    """A classifier state change, with the sample that caused it."""
    previous: PerformanceState
    current: PerformanceState
    timestamp: float
    signal: Signal
    value: float

    @property
    def is_degradation(self) -> bool:
        return self.current > self.previous
