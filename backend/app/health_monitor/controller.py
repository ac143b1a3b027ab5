"""
Health Controller — lifecycle owner and wiring of the monitor.

Threads:
  - one daemon sampler thread per configured MetricSource
  - one analysis thread: initial delay, then every analysis_period_seconds
  - one single-worker ThreadPoolExecutor running dispatch cycles, so the
    host's ActionExecutor is never called from a sampler thread and two
    cycles never overlap

A degrading or recovering state transition seen by a primary sampler
submits a dispatch cycle at once (reason "state_change"). Every analysis
cycle submits one too (reason "analysis").

Only start() raises. Everything else logs and keeps going.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Mapping, Optional

from backend.app.health_monitor.classifier import StateClassifier
from backend.app.health_monitor.config import MonitorConfig
from backend.app.health_monitor.dispatcher import DispatchReport, MitigationDispatcher
from backend.app.health_monitor.events import EventRecorder
from backend.app.health_monitor.expiry import ExpiringSet
from backend.app.health_monitor.history import HistoryBuffer
from backend.app.health_monitor.metrics import HealthMetrics
from backend.app.health_monitor.sampler import Sampler
from backend.app.health_monitor.signals import (
    PRIMARY_SIGNALS,
    PerformanceState,
    PredictionResult,
    Signal,
)
from backend.app.health_monitor.sources import ActionExecutor, MetricSource
from backend.app.health_monitor.statistics import Snapshot, StatisticsAggregator
from backend.app.health_monitor.trend import TrendAnalyzer

logger = logging.getLogger(__name__)


class MonitorStartError(RuntimeError):
    """A monitor thread or the dispatch pool could not be started."""


class ControllerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


def _alarm_thresholds(config: MonitorConfig) -> dict[Signal, float]:
    return {
        signal: config.alarm_for(signal)
        for signal in Signal
        if config.alarm_for(signal) is not None
    }


class HealthController:
    """
    Owns every monitor component for one host server.

    Tests drive it synchronously through run_analysis(now) and
    run_dispatch_cycle(reason, now) without starting any thread.
    """

    def __init__(
        self,
        config: MonitorConfig,
        sources: Mapping[Signal, MetricSource],
        executor: ActionExecutor,
        recorder: Optional[EventRecorder] = None,
        metrics: Optional[HealthMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._clock = clock
        self._recorder = recorder or EventRecorder(max_events=config.event_log_size)
        self._metrics = metrics or HealthMetrics()
        self._lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._state = ControllerState.CREATED

        self._buffers: dict[Signal, HistoryBuffer] = {
            signal: HistoryBuffer(signal, config.capacity_for(signal)) for signal in Signal
        }
        self._classifier = StateClassifier(
            tick_rate_thresholds=config.thresholds_for(Signal.TICK_RATE),
            memory_thresholds=config.thresholds_for(Signal.MEMORY_USAGE),
            confirmation_samples=config.confirmation_samples,
        )
        self._analyzer = self._build_analyzer(config)
        self._dispatcher = MitigationDispatcher(
            executor=executor,
            cooldowns=config.cooldowns(),
            alarm_thresholds=_alarm_thresholds(config),
            recorder=self._recorder,
            metrics=self._metrics,
            memory_cleanup_escalation=config.memory_cleanup_escalation_count,
        )
        self._announced = ExpiringSet(ttl_seconds=config.prediction_announce_ttl_seconds)
        self._predictions: dict[Signal, PredictionResult] = {
            signal: PredictionResult.neutral(signal) for signal in Signal
        }
        self._compound = False

        self._sources: dict[Signal, MetricSource] = dict(sources)
        self._samplers: dict[Signal, Sampler] = {
            signal: Sampler(
                signal=signal,
                source=source,
                period_seconds=config.period_for(signal),
                buffer=self._buffers[signal],
                on_sample=self._on_primary_sample if signal in PRIMARY_SIGNALS else None,
                metrics=self._metrics,
                read_failure_log_after=config.read_failure_log_after,
                clock=clock,
            )
            for signal, source in sources.items()
        }
        self._statistics = StatisticsAggregator(
            buffers=self._buffers,
            classifier=self._classifier,
            dispatcher=self._dispatcher,
            predictions=self.predictions,
        )

        self._stop_event = threading.Event()
        self._analysis_thread: Optional[threading.Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pending: set[Future] = set()
        self._final_snapshot: Optional[Snapshot] = None

        self._metrics.set_state(int(self._classifier.state))

    # ── Accessors ─────────────────────────────────────────────────────────

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def performance_state(self) -> PerformanceState:
        return self._classifier.state

    @property
    def classifier(self) -> StateClassifier:
        return self._classifier

    @property
    def dispatcher(self) -> MitigationDispatcher:
        return self._dispatcher

    @property
    def recorder(self) -> EventRecorder:
        return self._recorder

    @property
    def metrics(self) -> HealthMetrics:
        return self._metrics

    @property
    def samplers(self) -> dict[Signal, Sampler]:
        return dict(self._samplers)

    def buffer(self, signal: Signal) -> HistoryBuffer:
        return self._buffers[signal]

    def predictions(self) -> dict[Signal, PredictionResult]:
        with self._lock:
            return dict(self._predictions)

    @property
    def compound_predicted(self) -> bool:
        with self._lock:
            return self._compound

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start samplers, analysis thread and dispatch pool. Raises MonitorStartError."""
        with self._lifecycle_lock:
            if self._state == ControllerState.RUNNING:
                return
            if self._state == ControllerState.STOPPED:
                raise MonitorStartError("health controller was stopped and cannot restart")

            self._stop_event.clear()
            started: list[Sampler] = []
            try:
                self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="health-dispatch")
                for source in self._sources.values():
                    if hasattr(source, "start"):
                        source.start()
                for sampler in self._samplers.values():
                    sampler.start()
                    started.append(sampler)
                self._analysis_thread = threading.Thread(
                    target=self._analysis_loop,
                    name="health-analysis",
                    daemon=True,
                )
                self._analysis_thread.start()
            except Exception as exc:
                logger.error(f"[HEALTH-MONITOR] Start failed, rolling back: {exc}")
                self._stop_event.set()
                for sampler in started:
                    sampler.stop(timeout=1.0)
                self._stop_sources()
                if self._pool is not None:
                    self._pool.shutdown(wait=False, cancel_futures=True)
                    self._pool = None
                self._analysis_thread = None
                raise MonitorStartError(f"failed to start health monitor: {exc}") from exc

            self._state = ControllerState.RUNNING

        logger.info(
            f"[HEALTH-MONITOR] Started: samplers={[s.value for s in self._samplers]} "
            f"analysis_period={self._config.analysis_period_seconds}s"
        )

    def stop(self, timeout: Optional[float] = None) -> Snapshot:
        """
        Stop all loops, wait for the in-flight dispatch up to `timeout`
        (shutdown_timeout_seconds by default), cancel queued cycles, capture
        the final snapshot and clear history. Idempotent.
        """
        with self._lifecycle_lock:
            if self._state == ControllerState.STOPPED and self._final_snapshot is not None:
                return self._final_snapshot

            timeout = self._config.shutdown_timeout_seconds if timeout is None else timeout
            self._stop_event.set()

            for sampler in self._samplers.values():
                sampler.stop(timeout=timeout)
            self._stop_sources()
            if self._analysis_thread is not None:
                self._analysis_thread.join(timeout=timeout)
                self._analysis_thread = None

            if self._pool is not None:
                self._pool.shutdown(wait=False, cancel_futures=True)
                with self._lock:
                    pending = set(self._pending)
                _, not_done = concurrent.futures.wait(pending, timeout=timeout)
                if not_done:
                    logger.warning(
                        f"[HEALTH-MONITOR] {len(not_done)} dispatch cycle(s) still running "
                        f"after {timeout}s, abandoning"
                    )
                self._pool = None

            self._final_snapshot = self._statistics.build()
            for buffer in self._buffers.values():
                buffer.clear()
            self._announced.clear()
            self._state = ControllerState.STOPPED

        logger.info(f"[HEALTH-MONITOR] Stopped: final state={self._final_snapshot.state.name}")
        return self._final_snapshot

    def _stop_sources(self) -> None:
        """Release source hooks (e.g. the GC callback). Never raises."""
        for signal, source in self._sources.items():
            if not hasattr(source, "stop"):
                continue
            try:
                source.stop()
            except Exception as exc:
                logger.warning(f"[HEALTH-MONITOR] Source {signal.value} stop failed: {exc}")

    # ── Sampling callback ─────────────────────────────────────────────────

    def _on_primary_sample(self, signal: Signal, value: float, now: float) -> None:
        """Runs on a primary sampler thread. Never calls the executor."""
        transition = self._classifier.observe(signal, value, now)
        if transition is None:
            return
        self._recorder.record_state_change(transition)
        self._metrics.inc_state_transition(transition.previous.name, transition.current.name)
        self._metrics.set_state(int(self._classifier.state))
        self._submit_dispatch("state_change")

    # ── Analysis ──────────────────────────────────────────────────────────

    def run_analysis(self, now: Optional[float] = None) -> dict[Signal, PredictionResult]:
        """Recompute predictions for every signal. Announces each adverse trend once per TTL."""
        now = self._clock() if now is None else now
        analyzer = self._analyzer

        results = {
            signal: analyzer.analyze(signal, buffer.snapshot())
            for signal, buffer in self._buffers.items()
        }
        tick = self._buffers[Signal.TICK_RATE].latest()
        memory = self._buffers[Signal.MEMORY_USAGE].latest()
        compound = analyzer.predict_compound(
            tick.value if tick else None,
            memory.value if memory else None,
        )

        with self._lock:
            self._predictions = results
            self._compound = compound

        for signal, prediction in results.items():
            if not prediction.is_adverse:
                self._announced.discard((signal, "growing"))
                self._announced.discard((signal, "variance_high"))
                continue
            self._announce(prediction, now)

        if compound:
            if self._announced.add(("compound",), now):
                logger.info(
                    f"[HEALTH-MONITOR] Compound degradation predicted: "
                    f"tick_rate={tick.value:.2f} memory={memory.value:.2f}"
                )
                self._metrics.inc_prediction(Signal.TICK_RATE.value, "compound")
        else:
            self._announced.discard(("compound",))

        return results

    def _announce(self, prediction: PredictionResult, now: float) -> None:
        new_kinds = []
        if prediction.growing and self._announced.add((prediction.signal, "growing"), now):
            new_kinds.append("growing")
        if prediction.variance_high and self._announced.add((prediction.signal, "variance_high"), now):
            new_kinds.append("variance_high")
        if not new_kinds:
            return
        self._recorder.record_prediction(prediction, now)
        for kind in new_kinds:
            self._metrics.inc_prediction(prediction.signal.value, kind)

    def _analysis_loop(self) -> None:
        if self._stop_event.wait(timeout=self._config.analysis_initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            try:
                self.run_analysis()
                self._submit_dispatch("analysis")
            except Exception as exc:
                logger.exception(f"[HEALTH-MONITOR] Analysis cycle error: {exc}")
            self._stop_event.wait(timeout=self._config.analysis_period_seconds)

    # ── Dispatch ──────────────────────────────────────────────────────────

    def run_dispatch_cycle(self, reason: str = "manual", now: Optional[float] = None) -> DispatchReport:
        """One synchronous dispatch cycle over the current state and predictions."""
        now = self._clock() if now is None else now
        with self._lock:
            predictions = dict(self._predictions)
            compound = self._compound
        aux_values = {}
        for signal in Signal:
            if signal in PRIMARY_SIGNALS:
                continue
            latest = self._buffers[signal].latest()
            aux_values[signal] = latest.value if latest else None

        with self._metrics.time_dispatch_cycle():
            return self._dispatcher.run_cycle(
                state=self._classifier.state,
                predictions=predictions,
                aux_values=aux_values,
                now=now,
                compound=compound,
                reason=reason,
            )

    def _safe_dispatch(self, reason: str) -> Optional[DispatchReport]:
        try:
            return self.run_dispatch_cycle(reason)
        except Exception as exc:
            logger.exception(f"[HEALTH-MONITOR] Dispatch cycle error ({reason}): {exc}")
            return None

    def _submit_dispatch(self, reason: str) -> Optional[Future]:
        pool = self._pool
        if pool is None or self._stop_event.is_set():
            return None
        try:
            future = pool.submit(self._safe_dispatch, reason)
        except RuntimeError:
            # pool already shut down
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def force_check(self) -> Optional[DispatchReport]:
        """
        Synchronous analysis + dispatch. Goes through the pool while running.

        Waits at most shutdown_timeout_seconds for the pooled cycle; returns
        None if it has not finished by then. The cycle still runs later.
        """
        now = self._clock()
        self.run_analysis(now)
        pool = self._pool
        if pool is not None and self._state == ControllerState.RUNNING:
            try:
                future = pool.submit(self.run_dispatch_cycle, "force_check", now)
            except RuntimeError:
                return self.run_dispatch_cycle("force_check", now)
            try:
                return future.result(timeout=self._config.shutdown_timeout_seconds)
            except concurrent.futures.TimeoutError:
                logger.warning(
                    f"[HEALTH-MONITOR] Forced check still queued after "
                    f"{self._config.shutdown_timeout_seconds}s, not waiting"
                )
                return None
        return self.run_dispatch_cycle("force_check", now)

    # ── Snapshot + reconfigure ────────────────────────────────────────────

    def snapshot(self) -> Snapshot:
        """Live snapshot while running; the final snapshot once stopped."""
        if self._final_snapshot is not None:
            return self._final_snapshot
        return self._statistics.build()

    def reconfigure(self, config: MonitorConfig) -> None:
        """Swap configuration. History is resized keeping the newest samples."""
        with self._lifecycle_lock:
            self._config = config
            for signal, buffer in self._buffers.items():
                buffer.resize(config.capacity_for(signal))
            for signal, sampler in self._samplers.items():
                sampler.period = config.period_for(signal)
            self._classifier.update_thresholds(
                config.thresholds_for(Signal.TICK_RATE),
                config.thresholds_for(Signal.MEMORY_USAGE),
                confirmation_samples=config.confirmation_samples,
            )
            self._analyzer = self._build_analyzer(config)
            self._dispatcher.update_cooldowns(config.cooldowns())
            self._dispatcher.update_alarm_thresholds(_alarm_thresholds(config))
            self._dispatcher.update_memory_cleanup_escalation(config.memory_cleanup_escalation_count)
            self._announced.set_ttl(config.prediction_announce_ttl_seconds)

        logger.info(f"[HEALTH-MONITOR] Reconfigured: version={config.config_version}")

    @staticmethod
    def _build_analyzer(config: MonitorConfig) -> TrendAnalyzer:
        return TrendAnalyzer(
            profiles=config.trend_profiles(),
            compound_tick_rate=config.compound_tick_rate,
            compound_memory=config.compound_memory,
        )
