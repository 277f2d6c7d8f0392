"""
Activity runner tests.

Property: a stage failing retryably is invoked exactly maximum_attempts times
Property: a non-retryable failure is never re-invoked
Property: backoff delays follow the retry policy
Property: start-to-close timeout and missed heartbeats fail the attempt
"""

import asyncio

import pytest
from prometheus_client import CollectorRegistry

from conftest import RecordingSleep
from preemption.heartbeat import liveness
from preemption.metrics import PreemptionMetrics
from preemption.runtime.activity import (
    ActivityOptions,
    ActivityRunner,
    StartToCloseTimeoutError,
    current_activity,
)
from preemption.runtime.retry_policy import (
    ActivityError,
    HeartbeatTimeoutError,
    NonRetryableError,
    RetryableError,
    RetryPolicy,
)


class FlakyStage:
    """Fails the first `failures` calls, then returns `result`."""

    def __init__(self, failures: int, error: Exception = None, result="ok"):
        self.failures = failures
        self.error = error or RetryableError("transient")
        self.result = result
        self.calls = 0

    async def __call__(self, *args):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


def _runner(sleep=None, metrics=None):
    return ActivityRunner(metrics=metrics, sleep=sleep or RecordingSleep())


@pytest.mark.core
class TestRetries:

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        stage = FlakyStage(0)
        result = await _runner().execute(stage, options=ActivityOptions())
        assert result == "ok"
        assert stage.calls == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        sleep = RecordingSleep()
        stage = FlakyStage(2)
        result = await _runner(sleep).execute(stage, options=ActivityOptions())
        assert result == "ok"
        assert stage.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_after_max_attempts(self):
        sleep = RecordingSleep()
        stage = FlakyStage(10)
        with pytest.raises(ActivityError) as exc_info:
            await _runner(sleep).execute(stage, options=ActivityOptions(), name="power_off_vms")
        assert stage.calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.activity == "power_off_vms"
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_retryable_not_reinvoked(self):
        sleep = RecordingSleep()
        stage = FlakyStage(10, error=NonRetryableError("create custom field"))
        with pytest.raises(ActivityError) as exc_info:
            await _runner(sleep).execute(stage, options=ActivityOptions())
        assert stage.calls == 1
        assert exc_info.value.non_retryable
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unlimited_attempts(self):
        stage = FlakyStage(7)
        options = ActivityOptions(retry_policy=RetryPolicy(maximum_attempts=0))
        assert await _runner().execute(stage, options=options) == "ok"
        assert stage.calls == 8

    @pytest.mark.asyncio
    async def test_arguments_forwarded(self):
        async def stage(a, b):
            return a + b

        assert await _runner().execute(stage, 2, 3, options=ActivityOptions()) == 5

    @pytest.mark.asyncio
    async def test_attempt_metrics(self):
        m = PreemptionMetrics(registry=CollectorRegistry())
        stage = FlakyStage(10)
        with pytest.raises(ActivityError):
            await _runner(metrics=m).execute(stage, options=ActivityOptions(), name="get_preemptible_vms")
        assert m.activity_attempts("get_preemptible_vms", "retry") == 2
        assert m.activity_attempts("get_preemptible_vms", "exhausted") == 1
        assert m.activity_attempts("get_preemptible_vms", "success") == 0


@pytest.mark.core
class TestTimeouts:

    @pytest.mark.asyncio
    async def test_start_to_close_timeout(self):
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(5)

        options = ActivityOptions(
            start_to_close_timeout=0.05,
            heartbeat_timeout=None,
            retry_policy=RetryPolicy(maximum_attempts=2),
        )
        with pytest.raises(ActivityError) as exc_info:
            await _runner().execute(slow, options=options)
        assert isinstance(exc_info.value.cause, StartToCloseTimeoutError)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_missed_heartbeat_fails_attempt(self):
        async def silent():
            await asyncio.sleep(5)

        options = ActivityOptions(
            start_to_close_timeout=10,
            heartbeat_timeout=0.05,
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        with pytest.raises(ActivityError) as exc_info:
            await _runner().execute(silent, options=options)
        assert isinstance(exc_info.value.cause, HeartbeatTimeoutError)

    @pytest.mark.asyncio
    async def test_heartbeating_stage_survives_heartbeat_timeout(self):
        m = PreemptionMetrics(registry=CollectorRegistry())

        async def busy():
            async with liveness(interval=0.01):
                await asyncio.sleep(0.2)
            return "done"

        options = ActivityOptions(
            start_to_close_timeout=10,
            heartbeat_timeout=0.1,
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        result = await _runner(metrics=m).execute(busy, options=options)
        assert result == "done"
        assert m.heartbeats("busy") > 0


@pytest.mark.core
class TestActivityContext:

    @pytest.mark.asyncio
    async def test_context_visible_inside_attempt(self):
        seen = []

        async def stage():
            ctx = current_activity()
            seen.append((ctx.activity, ctx.attempt))
            if ctx.attempt < 2:
                raise RetryableError("again")
            return True

        await _runner().execute(stage, options=ActivityOptions())
        assert seen == [("stage", 1), ("stage", 2)]

    @pytest.mark.asyncio
    async def test_no_context_outside_attempt(self):
        assert current_activity() is None
