"""
Bounded executor tests.

Property: in-flight calls never exceed the limit
Property: result = items whose call returned truthy; failures excluded
Property: every call finished before run() returns
"""

import asyncio

import pytest
from hypothesis import given, settings as h_settings
from hypothesis import strategies as st
from prometheus_client import CollectorRegistry

from preemption.executor import DEFAULT_CONCURRENCY, BoundedExecutor
from preemption.metrics import PreemptionMetrics


def _run(coro):
    """Run async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class Probe:
    """Async call tracking concurrency; fails for items in `fail`, skips items in `skip`."""

    def __init__(self, fail=(), skip=(), delay=0.001):
        self.fail = set(fail)
        self.skip = set(skip)
        self.delay = delay
        self.inflight = 0
        self.max_inflight = 0
        self.finished = []

    async def __call__(self, item):
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            await asyncio.sleep(self.delay)
            if item in self.fail:
                raise RuntimeError(f"boom {item}")
            return item not in self.skip
        finally:
            self.inflight -= 1
            self.finished.append(item)


@pytest.mark.concurrency
class TestBoundedExecutor:

    def test_default_limit(self):
        assert BoundedExecutor().limit == DEFAULT_CONCURRENCY == 5

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            BoundedExecutor(0)

    def test_empty_input_no_calls(self):
        probe = Probe()
        assert _run(BoundedExecutor().run([], probe)) == []
        assert probe.finished == []

    @h_settings(max_examples=30, deadline=None)
    @given(
        n=st.integers(min_value=0, max_value=25),
        limit=st.integers(min_value=1, max_value=8),
        fail=st.sets(st.integers(min_value=0, max_value=24), max_size=10),
    )
    def test_ceiling_and_partial_success(self, n, limit, fail):
        items = list(range(n))
        probe = Probe(fail=fail)
        result = _run(BoundedExecutor(limit).run(items, probe))

        assert probe.max_inflight <= limit
        assert sorted(result) == [i for i in items if i not in fail]
        assert sorted(probe.finished) == items

    def test_falsy_result_excluded(self):
        probe = Probe(skip={1, 3})
        result = _run(BoundedExecutor(2).run([0, 1, 2, 3], probe))
        assert sorted(result) == [0, 2]

    def test_all_failures_is_empty_not_error(self):
        probe = Probe(fail={0, 1, 2})
        assert _run(BoundedExecutor().run([0, 1, 2], probe)) == []

    def test_inflight_gauge_returns_to_zero(self):
        m = PreemptionMetrics(registry=CollectorRegistry())
        probe = Probe(fail={2})
        _run(BoundedExecutor(3, metrics=m).run(range(6), probe))
        assert m.snapshot()["inflight_calls"] == 0

    def test_cancellation_joins_dispatched_calls(self):
        started = []

        async def hang(item):
            started.append(item)
            await asyncio.sleep(10)

        async def scenario():
            task = asyncio.ensure_future(BoundedExecutor(2).run(range(4), hang))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        _run(scenario())
        assert started == [0, 1]
