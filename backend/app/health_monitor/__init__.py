"""
Tick-Server Health Monitor — package init + factory function.

Samples tick rate, memory and load counters from a host server, classifies
overall health with hysteresis, predicts degradation from trends and asks
the host for graduated mitigations under per-action cooldowns.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Union

from prometheus_client import CollectorRegistry

from backend.app.health_monitor.config import MonitorConfig, load_monitor_config
from backend.app.health_monitor.controller import (
    ControllerState,
    HealthController,
    MonitorStartError,
)
from backend.app.health_monitor.events import EventRecorder
from backend.app.health_monitor.metrics import HealthMetrics
from backend.app.health_monitor.signals import PerformanceState, Signal
from backend.app.health_monitor.sources import (
    ActionExecutor,
    CallableExecutor,
    CallableSource,
    GcTimeSource,
    MetricSource,
    SystemLoadSource,
    ThreadCountSource,
    TickRateMeter,
)

logger = logging.getLogger(__name__)

SourceLike = Union[MetricSource, Callable[[], float]]
ExecutorLike = Union[ActionExecutor, Callable[[str], Optional[bool]]]

__all__ = [
    "ControllerState",
    "HealthController",
    "MonitorStartError",
    "PerformanceState",
    "Signal",
    "TickRateMeter",
    "create_health_controller",
]


def _as_source(source: SourceLike, name: str) -> MetricSource:
    if isinstance(source, MetricSource):
        return source
    return CallableSource(source, name=name)


def create_health_controller(
    executor: ExecutorLike,
    tick_rate: Optional[SourceLike] = None,
    memory_usage: Optional[SourceLike] = None,
    entity_count: Optional[SourceLike] = None,
    region_count: Optional[SourceLike] = None,
    thread_count: Optional[SourceLike] = None,
    system_load: Optional[SourceLike] = None,
    gc_time: Optional[SourceLike] = None,
    config: Optional[MonitorConfig] = None,
    registry: Optional[CollectorRegistry] = None,
) -> HealthController:
    """Factory: create a fully-wired HealthController.

    Sources may be MetricSource objects or zero-arg callables returning a
    number. A signal without a source is not sampled. Thread count, system
    load and GC time default to this process's own readings.

    Args:
        executor: ActionExecutor, or callable(action_kind) -> bool | None
        tick_rate: ticks per second source (e.g. a TickRateMeter)
        memory_usage: used fraction of maximum memory, 0..1
        entity_count / region_count / thread_count: auxiliary load counters
        system_load: 1-minute load average source
        gc_time: GC milliseconds since the previous read
        config: MonitorConfig (loads from env if None)
        registry: Prometheus registry (a private one if None)

    Returns:
        HealthController ready for start().
    """
    if config is None:
        config = load_monitor_config()

    if not isinstance(executor, ActionExecutor):
        executor = CallableExecutor(executor)

    given = {
        Signal.TICK_RATE: tick_rate,
        Signal.MEMORY_USAGE: memory_usage,
        Signal.ENTITY_COUNT: entity_count,
        Signal.REGION_COUNT: region_count,
        Signal.THREAD_COUNT: thread_count if thread_count is not None else ThreadCountSource(),
        Signal.SYSTEM_LOAD: system_load if system_load is not None else SystemLoadSource(),
        Signal.GC_TIME: gc_time if gc_time is not None else GcTimeSource(),
    }
    sources = {
        signal: _as_source(source, signal.value)
        for signal, source in given.items()
        if source is not None
    }

    controller = HealthController(
        config=config,
        sources=sources,
        executor=executor,
        recorder=EventRecorder(max_events=config.event_log_size),
        metrics=HealthMetrics(registry),
    )

    logger.info(
        "[HEALTH-MONITOR] Controller created: "
        f"signals={[s.value for s in sources]}, "
        f"analysis_period={config.analysis_period_seconds}s"
    )

    return controller
