"""
Worker Configuration - preemption worker settings.

Loads from environment variables with PREEMPTION_ prefix (.env supported).
All operational knobs of the control loop have safe defaults so the worker
runs without any PREEMPTION_* env vars; invalid values are rejected at load.

Supports:
- Substrate address / namespace / task queue (used as the reply event source)
- Debounce window, concurrency ceiling, candidate cap
- Activity retry policy + heartbeat settings
- Resource backend selection (simulator only for now)
"""
from __future__ import annotations

import json
from datetime import timedelta

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..runtime.activity import ActivityOptions
from ..runtime.retry_policy import RetryPolicy


class PreemptionSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PREEMPTION_",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "vsphere-preemption-worker"

    # ═══════════════════════════════════════════════════════════════════════════
    # Substrate
    # ═══════════════════════════════════════════════════════════════════════════
    substrate_address: str = "localhost:7233"
    namespace: str = "default"
    task_queue: str = "preemption"
    workflow_id: str = "preemption-worker"

    # ═══════════════════════════════════════════════════════════════════════════
    # Control loop
    # ═══════════════════════════════════════════════════════════════════════════
    debounce_interval_seconds: float = 60.0
    max_concurrent_calls: int = 5
    max_candidates: int = 10

    # ═══════════════════════════════════════════════════════════════════════════
    # Activities
    # ═══════════════════════════════════════════════════════════════════════════
    activity_timeout_seconds: float = 300.0  # start-to-close
    heartbeat_interval_seconds: float = 2.0
    heartbeat_timeout_seconds: float = 5.0

    retry_initial_interval_seconds: float = 2.0
    retry_backoff_coefficient: float = 2.0
    retry_max_interval_seconds: float = 10.0
    retry_max_attempts: int = 3  # 0 = unlimited

    # ═══════════════════════════════════════════════════════════════════════════
    # Annotation + reply event
    # ═══════════════════════════════════════════════════════════════════════════
    annotation_field: str = "com.vmware.workflows.vsphere.preemption"
    event_type: str = "com.vmware.workflows.vsphere.VmPreemptedEvent.v0"
    notification_timeout_seconds: float = 10.0

    # ═══════════════════════════════════════════════════════════════════════════
    # Resource backend
    # ═══════════════════════════════════════════════════════════════════════════
    resource_backend: str = "simulator"  # simulator
    # simulator inventory as JSON: {"<tag>": ["<vm name>", ...]}
    simulator_inventory: str = "{}"

    # ═══════════════════════════════════════════════════════════════════════════
    # HTTP surface
    # ═══════════════════════════════════════════════════════════════════════════
    api_key: str = ""  # empty = auth disabled
    debug: bool = False

    # ── Validators ────────────────────────────────────────────────────────

    @field_validator(
        "debounce_interval_seconds",
        "activity_timeout_seconds",
        "heartbeat_interval_seconds",
        "heartbeat_timeout_seconds",
        "retry_initial_interval_seconds",
        "retry_max_interval_seconds",
        "notification_timeout_seconds",
    )
    @classmethod
    def _validate_positive_seconds(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0, got {v}")
        return v

    @field_validator("max_concurrent_calls", "max_candidates")
    @classmethod
    def _validate_positive_int(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1, got {v}")
        return v

    @field_validator("retry_backoff_coefficient")
    @classmethod
    def _validate_backoff_coefficient(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError(f"retry_backoff_coefficient must be >= 1.0, got {v}")
        return v

    @field_validator("retry_max_attempts")
    @classmethod
    def _validate_max_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"retry_max_attempts must be >= 0, got {v}")
        return v

    @field_validator("resource_backend")
    @classmethod
    def _validate_resource_backend(cls, v: str) -> str:
        if v not in {"simulator"}:
            raise ValueError(f"resource_backend must be one of ['simulator'], got {v!r}")
        return v

    @field_validator("simulator_inventory")
    @classmethod
    def _validate_simulator_inventory(cls, v: str) -> str:
        try:
            parsed = json.loads(v)
        except ValueError as exc:
            raise ValueError(f"simulator_inventory must be valid JSON: {exc}") from exc
        if not isinstance(parsed, dict) or not all(
            isinstance(names, list) and all(isinstance(n, str) for n in names)
            for names in parsed.values()
        ):
            raise ValueError('simulator_inventory must look like {"tag": ["vm-1", ...]}')
        return v

    @model_validator(mode="after")
    def _validate_heartbeat_window(self) -> "PreemptionSettings":
        # a heartbeat must fit at least once inside the timeout window
        if self.heartbeat_interval_seconds >= self.heartbeat_timeout_seconds:
            raise ValueError(
                "heartbeat_interval_seconds must be < heartbeat_timeout_seconds "
                f"({self.heartbeat_interval_seconds} >= {self.heartbeat_timeout_seconds})"
            )
        return self

    @model_validator(mode="after")
    def _validate_retry_window(self) -> "PreemptionSettings":
        if self.retry_max_interval_seconds < self.retry_initial_interval_seconds:
            raise ValueError(
                "retry_max_interval_seconds must be >= retry_initial_interval_seconds "
                f"({self.retry_max_interval_seconds} < {self.retry_initial_interval_seconds})"
            )
        return self

    # ═══════════════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════════════
    @property
    def debounce_interval(self) -> timedelta:
        return timedelta(seconds=self.debounce_interval_seconds)

    @property
    def event_source(self) -> str:
        return f"{self.substrate_address}/{self.namespace}"

    @property
    def inventory(self) -> dict[str, list[str]]:
        return json.loads(self.simulator_inventory)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            initial_interval=self.retry_initial_interval_seconds,
            backoff_coefficient=self.retry_backoff_coefficient,
            maximum_interval=self.retry_max_interval_seconds,
            maximum_attempts=self.retry_max_attempts,
        )

    def activity_options(self) -> ActivityOptions:
        return ActivityOptions(
            start_to_close_timeout=self.activity_timeout_seconds,
            heartbeat_timeout=self.heartbeat_timeout_seconds,
            retry_policy=self.retry_policy(),
            wait_for_cancellation=False,
        )


# Singleton
settings = PreemptionSettings()
