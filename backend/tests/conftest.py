"""
Shared fixtures + test configuration for the health monitor tests.

Fixtures:
- config: MonitorConfig with every default, built without reading env vars
- fast_config: millisecond sampler/analysis periods for real-thread tests
- metrics: HealthMetrics on a private registry, so tests never collide

Hypothesis settings:
- CI profile disables example database to prevent "Flaky" errors from stale examples
- Default profile keeps database for local development
"""

import pytest
from hypothesis import settings, HealthCheck
from prometheus_client import CollectorRegistry

from backend.app.health_monitor.config import MonitorConfig
from backend.app.health_monitor.metrics import HealthMetrics

# CI profile: no example database → no stale example → no Flaky errors
settings.register_profile(
    "ci",
    database=None,
    suppress_health_check=[HealthCheck.too_slow],
)

# Default profile: keep database, suppress slow health check
settings.register_profile(
    "default",
    suppress_health_check=[HealthCheck.too_slow],
)

settings.load_profile("default")


# ── Shared fixtures ───────────────────────────────────────────────────────────

@pytest.fixture
def config():
    return MonitorConfig.model_construct()


@pytest.fixture
def fast_config():
    return MonitorConfig.model_construct(
        tick_rate_period_seconds=0.01,
        memory_period_seconds=0.01,
        analysis_initial_delay_seconds=0.0,
        analysis_period_seconds=0.05,
        shutdown_timeout_seconds=2.0,
    )


@pytest.fixture
def metrics():
    return HealthMetrics(registry=CollectorRegistry())


# ── Test tier markers ─────────────────────────────────────────────────────────
# Usage: pytest -m smoke, pytest -m core, pytest -m concurrency

def pytest_configure(config):
    config.addinivalue_line("markers", "smoke: pure helpers, catalog + config (<10s)")
    config.addinivalue_line("markers", "core: classifier, dispatcher + controller logic (<15s)")
    config.addinivalue_line("markers", "concurrency: real sampler/dispatch threads (<30s)")
    config.addinivalue_line("markers", "soak: large property runs / nightly (<120s)")
