"""
In-process workflow runtime - signal channels, cancellation, activity
execution (timeout / heartbeat / retry) and query handlers.
"""

from __future__ import annotations

from .activity import (
    ActivityContext,
    ActivityOptions,
    ActivityRunner,
    StartToCloseTimeoutError,
    current_activity,
)
from .channels import CancellationScope, SignalChannel, select
from .host import (
    QueryNotFoundError,
    WorkflowContext,
    WorkflowHandle,
    WorkflowHost,
    WorkflowInfo,
    WorkflowNotRunningError,
    WorkflowNotStartedError,
)
from .retry_policy import (
    DEFAULT_RETRY_POLICY,
    ActivityError,
    ApplicationError,
    HeartbeatTimeoutError,
    NonRetryableError,
    RetryableError,
    RetryPolicy,
    is_retryable,
)

__all__ = [
    "ActivityContext",
    "ActivityError",
    "ActivityOptions",
    "ActivityRunner",
    "ApplicationError",
    "CancellationScope",
    "DEFAULT_RETRY_POLICY",
    "HeartbeatTimeoutError",
    "NonRetryableError",
    "QueryNotFoundError",
    "RetryableError",
    "RetryPolicy",
    "SignalChannel",
    "StartToCloseTimeoutError",
    "WorkflowContext",
    "WorkflowHandle",
    "WorkflowHost",
    "WorkflowInfo",
    "WorkflowNotRunningError",
    "WorkflowNotStartedError",
    "current_activity",
    "is_retryable",
    "select",
]
