from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer


class Urgency(str, Enum):
    """Trigger urgency - sole driver of graceful vs forced deactivation"""
    LOW = "LOW"        # graceful guest shutdown
    MEDIUM = "MEDIUM"  # forced power off
    HIGH = "HIGH"      # forced power off

    @property
    def forced(self) -> bool:
        return self is not Urgency.LOW

    @classmethod
    def parse(cls, value: str) -> "Urgency":
        """Case-insensitive parse; ValueError lists the valid values."""
        try:
            return cls(value.strip().upper())
        except (AttributeError, ValueError):
            raise ValueError(f"criticality {value!r} invalid (valid: LOW, MEDIUM, HIGH)") from None


class PowerState(str, Enum):
    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    SUSPENDED = "suspended"


class ResourceRef(BaseModel):
    """Opaque managed object reference, compared by value"""
    model_config = ConfigDict(frozen=True)

    type: str = "VirtualMachine"
    value: str

    def __str__(self) -> str:
        return f"{self.type}:{self.value}"


# ═══════════════════════════════════════════════════════════════════════════════
# CLOUDEVENTS
# ═══════════════════════════════════════════════════════════════════════════════

DEFAULT_EVENT_SOURCE = "preemption-api"
DEFAULT_EVENT_TYPE = "PreemptionRunEvent"


class CloudEvent(BaseModel):
    """CloudEvents v1.0 envelope (structured mode); extension attributes kept"""
    model_config = ConfigDict(extra="allow", frozen=True)

    specversion: str = "1.0"
    id: str
    source: str
    type: str
    time: Optional[datetime] = None
    datacontenttype: Optional[str] = None
    subject: Optional[str] = None
    data: Optional[Any] = None

    @field_validator("id", "source", "type")
    @classmethod
    def _required_non_empty(cls, v: str, info) -> str:
        if not v:
            raise ValueError(f"cloudevent attribute {info.field_name!r} must not be empty")
        return v

    @field_validator("specversion")
    @classmethod
    def _supported_version(cls, v: str) -> str:
        if v != "1.0":
            raise ValueError(f"unsupported cloudevent specversion {v!r}")
        return v

    @model_serializer(mode="wrap")
    def _omit_absent(self, handler):
        # absent optional attributes are left out of the JSON form, not null
        return {k: v for k, v in handler(self).items() if v is not None}

    @classmethod
    def new(cls, source: str = DEFAULT_EVENT_SOURCE, type: str = DEFAULT_EVENT_TYPE, **attrs) -> "CloudEvent":
        attrs.setdefault("id", str(uuid.uuid4()))
        attrs.setdefault("time", datetime.now(timezone.utc))
        return cls(source=source, type=type, **attrs)


# ═══════════════════════════════════════════════════════════════════════════════
# WORKFLOW MODELS
# ═══════════════════════════════════════════════════════════════════════════════


class TriggerRequest(BaseModel):
    """Preemption request delivered on the workflow signal channel"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    selector_tag: str = Field(alias="tag", min_length=1)
    urgency: Urgency = Field(alias="criticality")
    cause_event: CloudEvent = Field(alias="event")
    reply_target: str = Field(default="", alias="replyTo")


class AnnotationRecord(BaseModel):
    """Written to every deactivated resource; never read back"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    deactivated: bool = Field(default=True, alias="preempted")
    selector_tag: str = Field(alias="tag")
    forced_shutdown: bool = Field(alias="forcedShutdown")
    urgency: Urgency = Field(alias="criticality")
    run_id: str = Field(alias="workflowID")
    run_started_at: datetime = Field(alias="workflowStarted")
    cause_event: CloudEvent = Field(alias="event")

    @classmethod
    def for_run(cls, request: TriggerRequest, run_id: str, run_started_at: datetime) -> "AnnotationRecord":
        return cls(
            selector_tag=request.selector_tag,
            forced_shutdown=request.urgency.forced,
            urgency=request.urgency,
            run_id=run_id,
            run_started_at=run_started_at.astimezone(timezone.utc),
            cause_event=request.cause_event,
        )


class NotificationPayload(AnnotationRecord):
    """Reply event data: annotation + final deactivated set"""
    resources: List[ResourceRef] = Field(default_factory=list, alias="virtualMachines")


class RunState(BaseModel):
    """Queryable snapshot of the last attempted run"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    workflow_id: str = Field(alias="workflowID")
    run_id: str = Field(alias="workflowRunID")
    workflow_name: str = Field(alias="workflowName")
    last_run_at: Optional[datetime] = Field(default=None, alias="lastPreemptionTime")
    deactivated: List[ResourceRef] = Field(default_factory=list, alias="virtualMachines")
    selector_tag: str = Field(default="", alias="tag")
    urgency: Optional[Urgency] = Field(default=None, alias="criticality")
    cause_event: Optional[CloudEvent] = Field(default=None, alias="event")
    reply_target: str = Field(default="", alias="replyTo")
