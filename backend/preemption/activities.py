"""
Preemption Activities - the four remote-call stages of a preemption run.

    discover   → get_preemptible_vms(tag)
    deactivate → power_off_vms(refs, force)
    annotate   → annotate_vms(refs, record)
    notify     → send_preempted_event(target, payload)

Clients are injected through the constructor; nothing here reads globals.
Each stage runs a liveness reporter for its whole duration and fans out
through the BoundedExecutor, so per-resource failures are logged and
excluded instead of failing the stage.

Failure tagging:
- discovery / enumeration errors  → RetryableError(vsphere)
- custom field resolve/create     → NonRetryableError(vsphere)
- annotation serialization        → NonRetryableError(internal)
- reply event NACK                → NotificationNackError (retryable)
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from .executor import BoundedExecutor
from .heartbeat import DEFAULT_HEARTBEAT_INTERVAL, liveness
from .models import AnnotationRecord, NotificationPayload, PowerState, ResourceRef
from .runtime.host import utcnow
from .runtime.retry_policy import (
    ERR_INTERNAL,
    ERR_VSPHERE,
    NonRetryableError,
    RetryableError,
)
from .services.cloudevents import NotificationClient, NotificationNackError, build_preempted_event
from .services.resource_client import ResourceClient, ResourceClientError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDIDATES = 10
DEFAULT_ANNOTATION_FIELD = "com.vmware.workflows.vsphere.preemption"
DEFAULT_EVENT_TYPE = "com.vmware.workflows.vsphere.VmPreemptedEvent.v0"


class PreemptionStages(Protocol):
    """Typed stage interface the workflow schedules through the runner."""

    async def get_preemptible_vms(self, tag: str) -> List[ResourceRef]: ...

    async def power_off_vms(self, refs: List[ResourceRef], force: bool) -> List[ResourceRef]: ...

    async def annotate_vms(self, refs: List[ResourceRef], record: AnnotationRecord) -> int: ...

    async def send_preempted_event(self, target: str, payload: NotificationPayload) -> str: ...


class PreemptionActivities:
    """PreemptionStages backed by a ResourceClient and a NotificationClient."""

    def __init__(
        self,
        resources: ResourceClient,
        notifier: NotificationClient,
        *,
        executor: Optional[BoundedExecutor] = None,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        annotation_field: str = DEFAULT_ANNOTATION_FIELD,
        event_source: str = "localhost:7233/default",
        event_type: str = DEFAULT_EVENT_TYPE,
        metrics=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_candidates < 1:
            raise ValueError(f"max_candidates must be >= 1, got {max_candidates}")
        self._resources = resources
        self._notifier = notifier
        self._executor = executor or BoundedExecutor(metrics=metrics)
        self.max_candidates = max_candidates
        self._heartbeat_interval = heartbeat_interval
        self._annotation_field = annotation_field
        self._event_source = event_source
        self._event_type = event_type
        self._metrics = metrics
        self._clock = clock

    # ═══════════════════════════════════════════════════════════════════════
    # DISCOVER
    # ═══════════════════════════════════════════════════════════════════════

    async def get_preemptible_vms(self, tag: str) -> List[ResourceRef]:
        """First `max_candidates` objects attached to `tag`, in enumeration order."""
        async with liveness(self._heartbeat_interval):
            logger.debug(f"[PREEMPT] searching for preemptible vms (tag={tag}, max={self.max_candidates})")
            try:
                refs = await self._resources.enumerate_tagged(tag)
            except Exception as exc:
                raise RetryableError("get tag", type=ERR_VSPHERE, cause=exc, tag=tag) from exc

        if len(refs) > self.max_candidates:
            logger.debug(
                f"[PREEMPT] maximum search count for preemptible vms reached "
                f"({len(refs)} found, keeping {self.max_candidates})"
            )
        candidates = list(refs[: self.max_candidates])
        logger.debug(f"[PREEMPT] tag to vm mapping: tag={tag}, vms={[str(r) for r in candidates]}")
        return candidates

    # ═══════════════════════════════════════════════════════════════════════
    # DEACTIVATE
    # ═══════════════════════════════════════════════════════════════════════

    async def power_off_vms(self, refs: List[ResourceRef], force: bool) -> List[ResourceRef]:
        """Deactivated subset of `refs`. Not-powered-on VMs are skipped."""
        if not refs:
            logger.debug("[PREEMPT] empty list of preemptible virtual machines")
            return []

        async with liveness(self._heartbeat_interval):
            mode = "forced power off" if force else "graceful shutdown"
            logger.debug(f"[PREEMPT] powering off vms ({mode}): {[str(r) for r in refs]}")
            powered_off = await self._executor.run(
                refs, lambda ref: self._power_off_vm(ref, force), label="power off vm"
            )

        if self._metrics is not None:
            self._metrics.inc_deactivated(force, len(powered_off))
        return powered_off

    async def _power_off_vm(self, ref: ResourceRef, force: bool) -> bool:
        try:
            state = await self._resources.power_state(ref)
        except Exception as exc:
            raise ResourceClientError(f"get vm power state: {exc}") from exc

        if state is not PowerState.POWERED_ON:
            logger.debug(f"[PREEMPT] vm {ref} is not powered on ({state.value}), skipping")
            return False

        if not force:
            # shutdown returns once accepted; the guest stops on its own schedule
            logger.debug(f"[PREEMPT] attempting graceful vm shutdown: {ref}")
            await self._resources.graceful_shutdown(ref)
            return True

        await self._resources.force_power_off(ref)
        return True

    # ═══════════════════════════════════════════════════════════════════════
    # ANNOTATE
    # ═══════════════════════════════════════════════════════════════════════

    async def annotate_vms(self, refs: List[ResourceRef], record: AnnotationRecord) -> int:
        """Write `record` to every ref's custom field; returns how many succeeded."""
        if not refs:
            return 0

        async with liveness(self._heartbeat_interval):
            try:
                key = await self._resources.ensure_annotation_field(self._annotation_field)
            except Exception as exc:
                raise NonRetryableError(
                    "create custom field", type=ERR_VSPHERE, cause=exc, key=self._annotation_field
                ) from exc

            try:
                value = record.model_dump_json(by_alias=True)
            except Exception as exc:
                raise NonRetryableError("marshal annotation data", type=ERR_INTERNAL, cause=exc) from exc

            async def _set(ref: ResourceRef) -> bool:
                await self._resources.set_annotation(ref, key, value)
                return True

            logger.debug(f"[PREEMPT] annotating preempted vms: {[str(r) for r in refs]}")
            annotated = await self._executor.run(refs, _set, label="set custom field")

        if self._metrics is not None:
            self._metrics.inc_annotation(True, len(annotated))
            self._metrics.inc_annotation(False, len(refs) - len(annotated))
        return len(annotated)

    # ═══════════════════════════════════════════════════════════════════════
    # NOTIFY
    # ═══════════════════════════════════════════════════════════════════════

    async def send_preempted_event(self, target: str, payload: NotificationPayload) -> str:
        """Send the reply CloudEvent to `target`; returns the event id."""
        async with liveness(self._heartbeat_interval):
            try:
                event = build_preempted_event(
                    payload,
                    source=self._event_source,
                    event_type=self._event_type,
                    now=self._clock(),
                )
            except Exception as exc:
                raise NonRetryableError("set event data", type=ERR_INTERNAL, cause=exc) from exc

            logger.debug(f"[NOTIFY] sending cloudevent response: id={event.id}, target={target}")
            result = await self._notifier.send(event, target)

        if self._metrics is not None:
            self._metrics.inc_notification(result.ack)
        if not result.ack:
            raise NotificationNackError(event.id, target, result)
        logger.debug(f"[NOTIFY] successfully sent cloudevent response: id={event.id}, target={target}")
        return event.id
