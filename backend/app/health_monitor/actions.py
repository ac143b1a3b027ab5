"""
Mitigation action catalog — bounded set of action kinds the monitor may request.

The monitor only decides which kind to request and when; what an action
does is up to the host's ActionExecutor. Declaration order here is the
tie-breaker for dispatch order within one tier.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from backend.app.health_monitor.signals import ActionTier, Signal


class ActionTrigger(str, Enum):
    """What makes an action a candidate in a dispatch cycle."""
    STATE = "state"            # current PerformanceState reached the tier
    PREDICTION = "prediction"  # adverse trend without a current crisis
    ALARM = "alarm"            # auxiliary signal above its alarm threshold


@dataclass(frozen=True)
class ActionSpec:
    kind: str
    tier: ActionTier
    trigger: ActionTrigger


# ── Action kinds ──

STANDARD_OPTIMIZATION = "standard_optimization"
CACHE_CLEANUP = "cache_cleanup"
ENTITY_OPTIMIZATION = "entity_optimization"
REGION_OPTIMIZATION = "region_optimization"
MEMORY_OPTIMIZATION = "memory_optimization"
AGGRESSIVE_OPTIMIZATION = "aggressive_optimization"
EMERGENCY_MEMORY_CLEANUP = "emergency_memory_cleanup"
EMERGENCY = "emergency"
PREVENTIVE_OPTIMIZATION = "preventive_optimization"
STABILITY_OPTIMIZATION = "stability_optimization"
PREVENTIVE_MEMORY_CLEANUP = "preventive_memory_cleanup"
THREAD_OPTIMIZATION = "thread_optimization"
ENTITY_MONITORING = "entity_monitoring"
REGION_UNLOAD = "region_unload"
SYSTEM_LOAD_OPTIMIZATION = "system_load_optimization"


ACTION_CATALOG: tuple[ActionSpec, ...] = (
    ActionSpec(STANDARD_OPTIMIZATION, ActionTier.LIGHT, ActionTrigger.STATE),
    ActionSpec(CACHE_CLEANUP, ActionTier.LIGHT, ActionTrigger.STATE),
    ActionSpec(ENTITY_OPTIMIZATION, ActionTier.MODERATE, ActionTrigger.STATE),
    ActionSpec(REGION_OPTIMIZATION, ActionTier.MODERATE, ActionTrigger.STATE),
    ActionSpec(MEMORY_OPTIMIZATION, ActionTier.MODERATE, ActionTrigger.STATE),
    ActionSpec(AGGRESSIVE_OPTIMIZATION, ActionTier.EMERGENCY, ActionTrigger.STATE),
    ActionSpec(EMERGENCY_MEMORY_CLEANUP, ActionTier.EMERGENCY, ActionTrigger.STATE),
    ActionSpec(EMERGENCY, ActionTier.EMERGENCY, ActionTrigger.STATE),
    ActionSpec(PREVENTIVE_OPTIMIZATION, ActionTier.PREVENTIVE, ActionTrigger.PREDICTION),
    ActionSpec(STABILITY_OPTIMIZATION, ActionTier.PREVENTIVE, ActionTrigger.PREDICTION),
    ActionSpec(PREVENTIVE_MEMORY_CLEANUP, ActionTier.PREVENTIVE, ActionTrigger.PREDICTION),
    ActionSpec(THREAD_OPTIMIZATION, ActionTier.MODERATE, ActionTrigger.ALARM),
    ActionSpec(ENTITY_MONITORING, ActionTier.MODERATE, ActionTrigger.ALARM),
    ActionSpec(REGION_UNLOAD, ActionTier.MODERATE, ActionTrigger.ALARM),
    ActionSpec(SYSTEM_LOAD_OPTIMIZATION, ActionTier.MODERATE, ActionTrigger.ALARM),
)

ACTION_KINDS = frozenset(spec.kind for spec in ACTION_CATALOG)

# Auxiliary signal → action requested when the signal exceeds its alarm threshold
ALARM_ACTIONS: dict[Signal, str] = {
    Signal.THREAD_COUNT: THREAD_OPTIMIZATION,
    Signal.ENTITY_COUNT: ENTITY_MONITORING,
    Signal.REGION_COUNT: REGION_UNLOAD,
    Signal.SYSTEM_LOAD: SYSTEM_LOAD_OPTIMIZATION,
    Signal.GC_TIME: MEMORY_OPTIMIZATION,   # GC time spent since the previous read
}


def get_action_spec(kind: str) -> ActionSpec:
    for spec in ACTION_CATALOG:
        if spec.kind == kind:
            return spec
    raise KeyError(f"Unknown action kind: {kind!r}")


def declaration_index(kind: str) -> int:
    for index, spec in enumerate(ACTION_CATALOG):
        if spec.kind == kind:
            return index
    raise KeyError(f"Unknown action kind: {kind!r}")
