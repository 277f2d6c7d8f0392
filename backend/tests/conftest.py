"""
Shared test configuration for preemption tests.

Hypothesis settings:
- CI profile disables example database to prevent "Flaky" errors from stale examples
- Default profile keeps database for local development
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from hypothesis import settings, HealthCheck
from prometheus_client import CollectorRegistry

from preemption.metrics import PreemptionMetrics
from preemption.models import CloudEvent
from preemption.services.cloudevents import DeliveryResult
from preemption.testing.resource_simulator import InMemoryResourceClient

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


# ── Test tier markers ─────────────────────────────────────────────────────────
# Usage: pytest -m smoke, pytest -m core, pytest -m concurrency

def pytest_configure(config):
    config.addinivalue_line("markers", "smoke: Tier-0 pure functions + config tests (<10s)")
    config.addinivalue_line("markers", "core: Tier-1 stages, runtime and control loop (<15s)")
    config.addinivalue_line("markers", "concurrency: Tier-2 fan-out / in-flight ceiling (<30s)")


# ═══════════════════════════════════════════════════════════════════════════════
# Test doubles
# ═══════════════════════════════════════════════════════════════════════════════


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records backoff delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class RecordingNotifier:
    """NotificationClient that records events; `ack` controls the outcome."""

    def __init__(self, ack: bool = True, status_code: int = 202) -> None:
        self.ack = ack
        self.status_code = status_code
        self.sent: List[tuple] = []

    async def send(self, event: CloudEvent, target: str) -> DeliveryResult:
        self.sent.append((event, target))
        if self.ack:
            return DeliveryResult(ack=True, status_code=self.status_code)
        return DeliveryResult(ack=False, status_code=500, detail="receiver unavailable")


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll `predicate` until true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)


def make_event(event_id: str = "evt-1") -> CloudEvent:
    return CloudEvent(id=event_id, source="tests", type="PreemptionRunEvent")


# ═══════════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def metrics():
    return PreemptionMetrics(registry=CollectorRegistry())


@pytest.fixture
def sim():
    return InMemoryResourceClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()
