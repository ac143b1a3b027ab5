"""
Health Monitor Configuration — thresholds, sampler periods, trend + cooldown settings.

Loads from environment variables with HEALTH_MONITOR_ prefix.
The model is frozen: a reload builds a new MonitorConfig and the controller
swaps the reference, so a cycle always sees one consistent snapshot.
Invalid config → fallback to defaults + WARNING log (NEVER reject).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backend.app.health_monitor.actions import ACTION_KINDS, get_action_spec
from backend.app.health_monitor.signals import ActionTier, PerformanceState, Signal
from backend.app.health_monitor.trend import DEFAULT_PROFILES, TrendDirection, TrendProfile

logger = logging.getLogger(__name__)

_BOUND_NAMES = ("good", "warning", "critical", "emergency")


# ── ThresholdSet ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ThresholdSet:
    """
    Band boundaries for one signal: the value at which GOOD, WARNING,
    CRITICAL and EMERGENCY are entered.

    higher_is_better=True (tick rate): boundaries are inclusive lower bounds
    of the better band, so a value equal to a boundary stays in the better band.
    higher_is_better=False (memory fraction): a value equal to a boundary
    enters the worse band.

    Boundaries given out of order are sorted into severity order.
    """
    good: float
    warning: float
    critical: float
    emergency: float
    higher_is_better: bool = True

    def __post_init__(self) -> None:
        given = [self.good, self.warning, self.critical, self.emergency]
        ordered = sorted(given, reverse=self.higher_is_better)
        if ordered != given:
            logger.warning(
                f"[HEALTH-MONITOR] Threshold boundaries out of order {given}, "
                f"using {ordered}"
            )
            for name, value in zip(_BOUND_NAMES, ordered):
                object.__setattr__(self, name, value)

    @property
    def boundaries(self) -> tuple[float, float, float, float]:
        return (self.good, self.warning, self.critical, self.emergency)

    def level(self, value: float) -> PerformanceState:
        """Band the value falls into."""
        if self.higher_is_better:
            crossed = sum(1 for bound in self.boundaries if value < bound)
        else:
            crossed = sum(1 for bound in self.boundaries if value >= bound)
        return PerformanceState(crossed)

    def satisfies(self, value: float, state: PerformanceState) -> bool:
        """True if value is at least as good as `state`."""
        return self.level(value) <= state


DEFAULT_TICK_RATE_THRESHOLDS = ThresholdSet(
    good=19.8, warning=18.5, critical=16.0, emergency=12.0, higher_is_better=True,
)
DEFAULT_MEMORY_THRESHOLDS = ThresholdSet(
    good=0.50, warning=0.65, critical=0.75, emergency=0.85, higher_is_better=False,
)


# ── MonitorConfig ─────────────────────────────────────────────────────────────

class MonitorConfig(BaseSettings):
    """
    Health monitor configuration.

    All fields have safe defaults so the monitor works without any
    HEALTH_MONITOR_* env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="HEALTH_MONITOR_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    config_version: str = "default"

    # Tick-rate bands (ticks per second, higher is better)
    tick_rate_good: float = 19.8
    tick_rate_warning: float = 18.5
    tick_rate_critical: float = 16.0
    tick_rate_emergency: float = 12.0

    # Memory bands (used fraction of max heap, lower is better)
    memory_good: float = 0.50
    memory_warning: float = 0.65
    memory_critical: float = 0.75
    memory_emergency: float = 0.85

    # Hysteresis: samples that must all agree before moving to a better state
    confirmation_samples: int = 3

    # Sampler periods (seconds)
    tick_rate_period_seconds: float = 0.5
    memory_period_seconds: float = 2.0
    thread_count_period_seconds: float = 5.0
    entity_count_period_seconds: float = 0.5
    region_count_period_seconds: float = 0.5
    system_load_period_seconds: float = 5.0
    gc_time_period_seconds: float = 2.0

    # History capacity (samples)
    tick_rate_capacity: int = 120   # 1 minute at 0.5s
    memory_capacity: int = 60       # 2 minutes at 2s
    thread_count_capacity: int = 60
    entity_count_capacity: int = 60
    region_count_capacity: int = 60
    system_load_capacity: int = 60
    gc_time_capacity: int = 60

    # Trend analysis
    tick_rate_min_samples: int = 10
    tick_rate_trend_window: int = 20
    tick_rate_variance_bound: float = 2.0
    tick_rate_drop_margin: float = 0.5
    memory_min_samples: int = 6
    memory_trend_window: int = 10
    aux_min_samples: int = 6
    aux_trend_window: int = 10
    growth_lookback: int = 5
    growth_min_rises: int = 4
    compound_tick_rate: float = 19.0
    compound_memory: float = 0.70

    # Analysis + dispatch cycle
    analysis_period_seconds: float = 30.0
    analysis_initial_delay_seconds: float = 10.0

    # Cooldowns
    standard_cooldown_seconds: float = 10.0
    emergency_cooldown_seconds: float = 30.0
    # Per-action override as a JSON string: {"cache_cleanup": 60, "emergency": 45}
    # Only known action kinds accepted; others ignored with a warning.
    action_cooldowns_json: str = ""

    # Auxiliary alarms
    thread_count_alarm: float = 200
    entity_count_alarm: float = 15000
    region_count_alarm: float = 1000
    system_load_alarm: float = 0.8        # 1-minute load average
    gc_time_alarm_ms: float = 100         # GC milliseconds per read

    # Preventive memory cleanup once this many memory cleanups have fired
    memory_cleanup_escalation_count: int = 10

    # Error handling + lifecycle
    read_failure_log_after: int = 5
    shutdown_timeout_seconds: float = 5.0
    prediction_announce_ttl_seconds: float = 60.0
    event_log_size: int = 1000

    # ── Validators ────────────────────────────────────────────────────────

    @field_validator(
        "tick_rate_period_seconds",
        "memory_period_seconds",
        "thread_count_period_seconds",
        "entity_count_period_seconds",
        "region_count_period_seconds",
        "system_load_period_seconds",
        "gc_time_period_seconds",
        "analysis_period_seconds",
        "shutdown_timeout_seconds",
    )
    @classmethod
    def _validate_positive_period(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"period must be > 0, got {v}")
        return v

    @field_validator(
        "tick_rate_capacity",
        "memory_capacity",
        "thread_count_capacity",
        "entity_count_capacity",
        "region_count_capacity",
        "system_load_capacity",
        "gc_time_capacity",
        "confirmation_samples",
        "tick_rate_min_samples",
        "memory_min_samples",
        "aux_min_samples",
        "tick_rate_trend_window",
        "memory_trend_window",
        "aux_trend_window",
        "growth_lookback",
        "read_failure_log_after",
        "event_log_size",
        "memory_cleanup_escalation_count",
    )
    @classmethod
    def _validate_positive_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"count must be >= 1, got {v}")
        return v

    @field_validator(
        "standard_cooldown_seconds",
        "emergency_cooldown_seconds",
        "analysis_initial_delay_seconds",
        "prediction_announce_ttl_seconds",
        "tick_rate_variance_bound",
        "tick_rate_drop_margin",
    )
    @classmethod
    def _validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"value must be >= 0, got {v}")
        return v

    # ── Computed helpers ──────────────────────────────────────────────────

    def thresholds_for(self, signal: Signal) -> Optional[ThresholdSet]:
        """ThresholdSet for a primary signal; None for auxiliary signals."""
        if signal == Signal.TICK_RATE:
            return ThresholdSet(
                good=self.tick_rate_good,
                warning=self.tick_rate_warning,
                critical=self.tick_rate_critical,
                emergency=self.tick_rate_emergency,
                higher_is_better=True,
            )
        if signal == Signal.MEMORY_USAGE:
            return ThresholdSet(
                good=self.memory_good,
                warning=self.memory_warning,
                critical=self.memory_critical,
                emergency=self.memory_emergency,
                higher_is_better=False,
            )
        return None

    def period_for(self, signal: Signal) -> float:
        return {
            Signal.TICK_RATE: self.tick_rate_period_seconds,
            Signal.MEMORY_USAGE: self.memory_period_seconds,
            Signal.THREAD_COUNT: self.thread_count_period_seconds,
            Signal.ENTITY_COUNT: self.entity_count_period_seconds,
            Signal.REGION_COUNT: self.region_count_period_seconds,
            Signal.SYSTEM_LOAD: self.system_load_period_seconds,
            Signal.GC_TIME: self.gc_time_period_seconds,
        }[signal]

    def capacity_for(self, signal: Signal) -> int:
        return {
            Signal.TICK_RATE: self.tick_rate_capacity,
            Signal.MEMORY_USAGE: self.memory_capacity,
            Signal.THREAD_COUNT: self.thread_count_capacity,
            Signal.ENTITY_COUNT: self.entity_count_capacity,
            Signal.REGION_COUNT: self.region_count_capacity,
            Signal.SYSTEM_LOAD: self.system_load_capacity,
            Signal.GC_TIME: self.gc_time_capacity,
        }[signal]

    def alarm_for(self, signal: Signal) -> Optional[float]:
        return {
            Signal.THREAD_COUNT: self.thread_count_alarm,
            Signal.ENTITY_COUNT: self.entity_count_alarm,
            Signal.REGION_COUNT: self.region_count_alarm,
            Signal.SYSTEM_LOAD: self.system_load_alarm,
            Signal.GC_TIME: self.gc_time_alarm_ms,
        }.get(signal)

    def trend_profile_for(self, signal: Signal) -> TrendProfile:
        if signal == Signal.TICK_RATE:
            return TrendProfile(
                direction=TrendDirection.FALLING,
                min_samples=self.tick_rate_min_samples,
                window=self.tick_rate_trend_window,
                variance_bound=self.tick_rate_variance_bound,
                drop_margin=self.tick_rate_drop_margin,
            )
        if signal == Signal.MEMORY_USAGE:
            min_samples, window = self.memory_min_samples, self.memory_trend_window
        else:
            min_samples, window = self.aux_min_samples, self.aux_trend_window
        return TrendProfile(
            direction=DEFAULT_PROFILES[signal].direction,
            min_samples=min_samples,
            window=window,
            growth_lookback=self.growth_lookback,
            growth_min_rises=self.growth_min_rises,
        )

    def trend_profiles(self) -> dict[Signal, TrendProfile]:
        return {signal: self.trend_profile_for(signal) for signal in Signal}

    def cooldown_for(self, kind: str) -> float:
        """Cooldown seconds for an action kind. Per-action override > tier default."""
        overrides = self._parse_cooldown_overrides(self.action_cooldowns_json)
        value = overrides.get(kind)
        if value is not None:
            return value
        if get_action_spec(kind).tier == ActionTier.EMERGENCY:
            return self.emergency_cooldown_seconds
        return self.standard_cooldown_seconds

    def cooldowns(self) -> dict[str, float]:
        return {kind: self.cooldown_for(kind) for kind in sorted(ACTION_KINDS)}

    @staticmethod
    def _parse_cooldown_overrides(raw: str) -> dict[str, float]:
        """Parse JSON override map, keeping known kinds with non-negative numbers."""
        if not raw or not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning(f"[HEALTH-MONITOR] Failed to parse action cooldown JSON: {raw!r} ({exc})")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"[HEALTH-MONITOR] Action cooldown override is not a dict: {raw!r}")
            return {}
        filtered: dict[str, float] = {}
        for kind, value in data.items():
            if kind not in ACTION_KINDS:
                logger.warning(f"[HEALTH-MONITOR] Unknown action kind in cooldown override: {kind!r}")
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                logger.warning(f"[HEALTH-MONITOR] Invalid cooldown for {kind!r}: {value!r}")
                continue
            filtered[kind] = float(value)
        return filtered


# ── Loading with fallback ─────────────────────────────────────────────────────

def load_monitor_config(**overrides) -> MonitorConfig:
    """
    Load MonitorConfig from env (+ explicit overrides).
    On validation failure → defaults + WARNING log. NEVER raises.
    """
    try:
        config = MonitorConfig(**overrides)
        logger.info(
            f"[HEALTH-MONITOR] Config loaded: version={config.config_version} "
            f"analysis_period={config.analysis_period_seconds}s "
            f"tick_period={config.tick_rate_period_seconds}s"
        )
    except (ValidationError, ValueError) as exc:
        logger.warning(f"[HEALTH-MONITOR] Config load failed, using defaults: {exc}")
        config = MonitorConfig.model_construct()
    return config
