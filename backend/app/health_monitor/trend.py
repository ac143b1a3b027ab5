"""
Trend Analyzer — variance and directional-growth predictions over history windows.

Pure and stateless: analyze() only reads the samples it is given, so any
number of threads may call it concurrently. Below min_samples the result is
always neutral; a decision is never forced from too little data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from backend.app.health_monitor.signals import PredictionResult, Sample, Signal

logger = logging.getLogger(__name__)


class TrendDirection(str, Enum):
    """Which way is bad for a signal."""
    FALLING = "falling"  # tick rate: a drop is degradation
    RISING = "rising"    # memory, thread/entity/region counts: growth is degradation


@dataclass(frozen=True)
class TrendProfile:
    """Per-signal trend parameters."""
    direction: TrendDirection
    min_samples: int = 6
    window: int = 10
    variance_bound: Optional[float] = None  # None → variance never "high"
    drop_margin: float = 0.5
    growth_lookback: int = 5
    growth_min_rises: int = 4


DEFAULT_PROFILES: dict[Signal, TrendProfile] = {
    Signal.TICK_RATE: TrendProfile(
        direction=TrendDirection.FALLING,
        min_samples=10,
        window=20,
        variance_bound=2.0,
        drop_margin=0.5,
    ),
    Signal.MEMORY_USAGE: TrendProfile(direction=TrendDirection.RISING, min_samples=6, window=10),
    Signal.THREAD_COUNT: TrendProfile(direction=TrendDirection.RISING, min_samples=6, window=10),
    Signal.ENTITY_COUNT: TrendProfile(direction=TrendDirection.RISING, min_samples=6, window=10),
    Signal.REGION_COUNT: TrendProfile(direction=TrendDirection.RISING, min_samples=6, window=10),
    Signal.SYSTEM_LOAD: TrendProfile(direction=TrendDirection.RISING, min_samples=6, window=10),
    Signal.GC_TIME: TrendProfile(direction=TrendDirection.RISING, min_samples=6, window=10),
}


# ── Pure helpers ──

def population_variance(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def predict_drop(values: Sequence[float], margin: float) -> bool:
    """Recent half mean below prior half mean by more than margin.

    With an odd count the oldest value is dropped so both halves are equal.
    """
    half = len(values) // 2
    if half == 0:
        return False
    recent = values[-half:]
    prior = values[-2 * half:-half]
    recent_mean = sum(recent) / half
    prior_mean = sum(prior) / half
    return recent_mean < prior_mean - margin


def predict_growth(values: Sequence[float], lookback: int = 5, min_rises: int = 4) -> bool:
    """At least min_rises of the last lookback pairwise deltas are positive."""
    if len(values) < 2:
        return False
    tail = values[-(lookback + 1):]
    rises = sum(1 for prev, cur in zip(tail, tail[1:]) if cur > prev)
    return rises >= min_rises


class TrendAnalyzer:
    """Computes PredictionResults from history windows."""

    def __init__(
        self,
        profiles: Optional[dict[Signal, TrendProfile]] = None,
        compound_tick_rate: float = 19.0,
        compound_memory: float = 0.70,
    ) -> None:
        self._profiles = dict(DEFAULT_PROFILES)
        if profiles:
            self._profiles.update(profiles)
        self._compound_tick_rate = compound_tick_rate
        self._compound_memory = compound_memory

    def profile(self, signal: Signal) -> TrendProfile:
        return self._profiles[signal]

    def analyze(self, signal: Signal, samples: Sequence[Sample]) -> PredictionResult:
        """Prediction for one signal. Uses the newest `window` samples."""
        profile = self._profiles[signal]
        window = list(samples)[-profile.window:] if profile.window > 0 else list(samples)
        if len(window) < profile.min_samples:
            return PredictionResult.neutral(signal, sample_count=len(window))

        values = [s.value for s in window]
        variance = population_variance(values)
        variance_high = (
            profile.variance_bound is not None and variance > profile.variance_bound
        )

        if profile.direction == TrendDirection.FALLING:
            growing = predict_drop(values, profile.drop_margin)
        else:
            growing = predict_growth(
                values, profile.growth_lookback, profile.growth_min_rises,
            )

        return PredictionResult(
            signal=signal,
            growing=growing,
            variance_high=variance_high,
            variance=variance,
            sample_count=len(values),
        )

    def predict_compound(
        self,
        tick_rate: Optional[float],
        memory_usage: Optional[float],
    ) -> bool:
        """Mild tick-rate sag combined with elevated memory → degradation likely."""
        if tick_rate is None or memory_usage is None:
            return False
        return tick_rate < self._compound_tick_rate and memory_usage > self._compound_memory
