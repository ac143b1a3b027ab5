"""
Statistics Aggregator — read-only health Snapshot built on demand.

Everything read here is already copy-on-read (buffer tuples, classifier
state under its lock, dispatcher counter copies), so build() never blocks a
sampler or a dispatch cycle for longer than one copy.

as_of is the newest sample timestamp across all buffers, not the wall clock:
two builds with no activity in between produce equal snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from backend.app.health_monitor.classifier import StateClassifier
from backend.app.health_monitor.dispatcher import ActionCounters, MitigationDispatcher
from backend.app.health_monitor.history import HistoryBuffer
from backend.app.health_monitor.signals import PerformanceState, PredictionResult, Signal

SHORT_WINDOW = 10


@dataclass(frozen=True)
class SignalStats:
    signal: Signal
    latest: Optional[float]
    short_mean: Optional[float]
    long_mean: Optional[float]
    sample_count: int


@dataclass(frozen=True)
class Snapshot:
    as_of: Optional[float]
    state: PerformanceState
    transition_count: int
    signals: tuple[SignalStats, ...] = ()
    predictions: tuple[PredictionResult, ...] = ()
    counters: tuple[tuple[str, ActionCounters], ...] = field(default_factory=tuple)

    def signal(self, signal: Signal) -> Optional[SignalStats]:
        for stats in self.signals:
            if stats.signal == signal:
                return stats
        return None

    def prediction(self, signal: Signal) -> Optional[PredictionResult]:
        for prediction in self.predictions:
            if prediction.signal == signal:
                return prediction
        return None

    def counters_for(self, kind: str) -> ActionCounters:
        for name, counters in self.counters:
            if name == kind:
                return counters
        return ActionCounters()

    def to_dict(self) -> dict:
        """JSON-serializable view."""
        return {
            "as_of": self.as_of,
            "state": self.state.name,
            "transition_count": self.transition_count,
            "signals": {
                s.signal.value: {
                    "latest": s.latest,
                    "short_mean": s.short_mean,
                    "long_mean": s.long_mean,
                    "sample_count": s.sample_count,
                }
                for s in self.signals
            },
            "predictions": {
                p.signal.value: {
                    "growing": p.growing,
                    "variance_high": p.variance_high,
                    "variance": round(p.variance, 4),
                }
                for p in self.predictions
            },
            "actions": {
                kind: {
                    "fired": c.fired,
                    "succeeded": c.succeeded,
                    "failed": c.failed,
                    "suppressed": c.suppressed,
                }
                for kind, c in self.counters
            },
        }


class StatisticsAggregator:
    def __init__(
        self,
        buffers: Mapping[Signal, HistoryBuffer],
        classifier: StateClassifier,
        dispatcher: MitigationDispatcher,
        predictions: Callable[[], Mapping[Signal, PredictionResult]],
        short_window: int = SHORT_WINDOW,
    ) -> None:
        self._buffers = buffers
        self._classifier = classifier
        self._dispatcher = dispatcher
        self._predictions = predictions
        self._short_window = short_window

    def build(self) -> Snapshot:
        signals: list[SignalStats] = []
        as_of: Optional[float] = None

        for signal in Signal:
            buffer = self._buffers.get(signal)
            if buffer is None:
                continue
            samples = buffer.snapshot()
            values = [s.value for s in samples]
            short = values[-self._short_window:]
            if samples and (as_of is None or samples[-1].timestamp > as_of):
                as_of = samples[-1].timestamp
            signals.append(SignalStats(
                signal=signal,
                latest=values[-1] if values else None,
                short_mean=sum(short) / len(short) if short else None,
                long_mean=sum(values) / len(values) if values else None,
                sample_count=len(values),
            ))

        predictions = self._predictions()
        counters = self._dispatcher.counters()

        return Snapshot(
            as_of=as_of,
            state=self._classifier.state,
            transition_count=self._classifier.transition_count,
            signals=tuple(signals),
            predictions=tuple(predictions[s] for s in Signal if s in predictions),
            counters=tuple(sorted(counters.items())),
        )
