"""
Retry policy + failure taxonomy tests.

Property: delay_after is non-decreasing and capped at maximum_interval
Property: maximum_attempts bounds invocations (0 = unlimited)
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from preemption.runtime.retry_policy import (
    DEFAULT_RETRY_POLICY,
    ERR_INTERNAL,
    ERR_VSPHERE,
    ActivityError,
    ApplicationError,
    HeartbeatTimeoutError,
    NonRetryableError,
    RetryableError,
    RetryPolicy,
    is_non_retryable,
    is_retryable,
)


@pytest.mark.smoke
class TestRetryPolicy:

    def test_default_schedule(self):
        """2s initial, x2 backoff, 10s cap, 3 attempts."""
        p = DEFAULT_RETRY_POLICY
        assert (p.initial_interval, p.backoff_coefficient, p.maximum_interval, p.maximum_attempts) == (
            2.0, 2.0, 10.0, 3,
        )
        assert [p.delay_after(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]

    def test_attempt_budget(self):
        p = RetryPolicy(maximum_attempts=3)
        assert p.has_attempts_left(1)
        assert p.has_attempts_left(2)
        assert not p.has_attempts_left(3)

    def test_zero_attempts_is_unlimited(self):
        p = RetryPolicy(maximum_attempts=0)
        assert p.has_attempts_left(1_000)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"initial_interval": 0},
            {"backoff_coefficient": 0.5},
            {"initial_interval": 5, "maximum_interval": 1},
            {"maximum_attempts": -1},
        ],
    )
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    @given(
        initial=st.floats(min_value=0.01, max_value=5),
        coefficient=st.floats(min_value=1.0, max_value=4),
        cap_extra=st.floats(min_value=0, max_value=30),
        attempt=st.integers(min_value=1, max_value=30),
    )
    def test_delay_monotonic_and_capped(self, initial, coefficient, cap_extra, attempt):
        p = RetryPolicy(
            initial_interval=initial,
            backoff_coefficient=coefficient,
            maximum_interval=initial + cap_extra,
        )
        assert p.delay_after(attempt) <= p.maximum_interval
        assert p.delay_after(attempt + 1) >= p.delay_after(attempt)


@pytest.mark.smoke
class TestFailureTaxonomy:

    def test_non_retryable_flag(self):
        assert is_non_retryable(NonRetryableError("bad"))
        assert not is_retryable(NonRetryableError("bad"))

    def test_unclassified_is_retryable(self):
        assert is_retryable(ConnectionError("refused"))
        assert is_retryable(RetryableError("get tag", type=ERR_VSPHERE))
        assert is_retryable(HeartbeatTimeoutError("power_off_vms", 5.0))

    def test_application_error_str_has_details_and_cause(self):
        cause = ConnectionError("refused")
        err = ApplicationError("get tag", type=ERR_VSPHERE, cause=cause, tag="preemptible")
        text = str(err)
        assert "get tag" in text
        assert "tag=preemptible" in text
        assert "refused" in text
        assert err.type == ERR_VSPHERE

    def test_default_type_is_internal(self):
        assert ApplicationError("x").type == ERR_INTERNAL

    def test_activity_error_wraps_cause(self):
        cause = NonRetryableError("create custom field", type=ERR_VSPHERE)
        err = ActivityError("annotate_vms", 1, cause)
        assert err.non_retryable is True
        assert err.__cause__ is cause
        assert "annotate_vms" in str(err)
        assert err.attempts == 1
