"""
CloudEvents Reply Service - preemption completion event delivery.

Event:
- com.vmware.workflows.vsphere.VmPreemptedEvent.v0 (default, configurable)

Delivered over HTTP in structured content mode
(Content-Type: application/cloudevents+json). Any 2xx response is an ACK;
every other outcome (non-2xx, timeout, connection error) is a NACK.
Retries are not done here: the activity runner's retry policy owns them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

import httpx

from ..models import CloudEvent, NotificationPayload
from ..runtime.retry_policy import ERR_NOTIFICATION, RetryableError

logger = logging.getLogger(__name__)

CLOUDEVENTS_CONTENT_TYPE = "application/cloudevents+json"
USER_AGENT = "vsphere-preemption/1.0"
DEFAULT_TIMEOUT = 10.0  # seconds


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one send attempt"""
    ack: bool
    status_code: int = 0
    detail: str = ""


class NotificationNackError(RetryableError):
    """Transport did not acknowledge the event."""

    def __init__(self, event_id: str, target: str, result: DeliveryResult):
        self.result = result
        super().__init__(
            "send cloudevent response",
            type=ERR_NOTIFICATION,
            id=event_id,
            target=target,
            status=result.status_code,
            detail=result.detail[:200],
        )


@runtime_checkable
class NotificationClient(Protocol):
    async def send(self, event: CloudEvent, target: str) -> DeliveryResult: ...


def event_id_for(run_id: str, cause_event: CloudEvent) -> str:
    """Deterministic reply id: {run_id}-{cause event id}"""
    return f"{run_id}-{cause_event.id}"


def build_preempted_event(
    payload: NotificationPayload,
    *,
    source: str,
    event_type: str,
    now: datetime,
) -> CloudEvent:
    """Wrap the notification payload into the reply CloudEvent."""
    return CloudEvent(
        id=event_id_for(payload.run_id, payload.cause_event),
        source=source,
        type=event_type,
        time=now,
        datacontenttype="application/json",
        data=payload.model_dump(mode="json", by_alias=True),
    )


class HTTPCloudEventsClient:
    """
    NotificationClient over HTTP (httpx).

    `transport` is injectable (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._headers = headers or {}

    async def send(self, event: CloudEvent, target: str) -> DeliveryResult:
        request_headers = {
            "Content-Type": CLOUDEVENTS_CONTENT_TYPE,
            "User-Agent": USER_AGENT,
        }
        request_headers.update(self._headers)
        body = event.model_dump_json(exclude_none=True)

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(target, content=body, headers=request_headers)
        except httpx.TimeoutException:
            logger.error(f"[NOTIFY] CloudEvent timeout: id={event.id}, target={target[:50]}")
            return DeliveryResult(ack=False, detail="Timeout")
        except httpx.RequestError as e:
            logger.error(f"[NOTIFY] CloudEvent request error: id={event.id}, target={target[:50]}, error={e}")
            return DeliveryResult(ack=False, detail=str(e))

        ack = 200 <= response.status_code < 300
        if ack:
            logger.info(f"[NOTIFY] CloudEvent delivered: id={event.id}, target={target[:50]}, status={response.status_code}")
        else:
            logger.warning(f"[NOTIFY] CloudEvent rejected: id={event.id}, target={target[:50]}, status={response.status_code}")
        return DeliveryResult(ack=ack, status_code=response.status_code, detail=response.text[:1000])
