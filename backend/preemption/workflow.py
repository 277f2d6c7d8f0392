"""
Preemption Workflow - the control loop.

    IDLE ──signal──▶ DEBOUNCING ──inside window──▶ SKIPPED ──▶ IDLE
                         │
                         └─▶ DISCOVERING ─▶ DEACTIVATING ─▶ ANNOTATING ─▶ NOTIFYING ─▶ IDLE
    IDLE ──cancel──▶ TERMINATING

One run at a time; stages strictly sequential. The loop owns RunState and
replaces it exactly once per attempted run, after the last stage returned
or a fatal stage failure aborted the run. Queries read the last committed
snapshot and never wait for a run.

Failure policy per stage:
- discover / deactivate fail → rest of the run aborted, state committed
- annotate fails             → logged, notify still runs
- notify fails               → logged, run ends
No failure escapes the loop; cancellation is only observed while idle.
"""
from __future__ import annotations

import json
import logging
import time
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import ValidationError

from .activities import PreemptionStages
from .debounce import DEFAULT_MIN_INTERVAL, remaining, should_run
from .models import AnnotationRecord, NotificationPayload, ResourceRef, RunState, TriggerRequest
from .runtime.activity import ActivityOptions
from .runtime.channels import select
from .runtime.host import WorkflowContext
from .runtime.retry_policy import ActivityError

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "PreemptVMsWorkflow"
SIGNAL_CHANNEL = "PreemptVMsChan"
QUERY_TYPE = "current_state"


class LoopState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    SKIPPED = "skipped"
    DISCOVERING = "discovering"
    DEACTIVATING = "deactivating"
    ANNOTATING = "annotating"
    NOTIFYING = "notifying"
    TERMINATING = "terminating"


class StateSerializationError(Exception):
    """RunState could not be serialized for a query."""


class PreemptionWorkflow:
    """
    Long-running preemption control loop.

    Stages are called through ctx.execute_activity() with `options`
    (timeout, heartbeat timeout, retry policy); the stage implementation is
    injected as a PreemptionStages instance.
    """

    def __init__(
        self,
        stages: PreemptionStages,
        *,
        options: Optional[ActivityOptions] = None,
        min_interval: timedelta = DEFAULT_MIN_INTERVAL,
        metrics=None,
    ) -> None:
        self._stages = stages
        self._options = options or ActivityOptions()
        self._min_interval = min_interval
        self._metrics = metrics
        self._state: Optional[RunState] = None
        self._last_run_at = None
        self._phase = LoopState.IDLE
        self.runs = 0  # attempted runs
        self.handled = 0  # signals taken off the channel, runs and skips

    @property
    def phase(self) -> LoopState:
        return self._phase

    @property
    def state(self) -> Optional[RunState]:
        return self._state

    def _transition(self, phase: LoopState) -> None:
        if phase is not self._phase:
            logger.debug(f"[PREEMPT] {self._phase.value} → {phase.value}")
        self._phase = phase

    # ═══════════════════════════════════════════════════════════════════════
    # QUERY
    # ═══════════════════════════════════════════════════════════════════════

    def current_state(self) -> str:
        """Last committed RunState as JSON."""
        logger.debug(f"[PREEMPT] received query (queryType={QUERY_TYPE})")
        state = self._state
        try:
            return state.model_dump_json(by_alias=True)
        except Exception as exc:
            raise StateSerializationError(f"marshal JSON workflow response: {exc}") from exc

    # ═══════════════════════════════════════════════════════════════════════
    # LOOP
    # ═══════════════════════════════════════════════════════════════════════

    async def run(self, ctx: WorkflowContext) -> RunState:
        info = ctx.info
        self._state = RunState(
            workflow_id=info.workflow_id,
            run_id=info.run_id,
            workflow_name=info.workflow_name,
        )
        ctx.set_query_handler(QUERY_TYPE, self.current_state)
        channel = ctx.get_signal_channel(SIGNAL_CHANNEL)

        while not ctx.cancellation.cancelled:
            self._transition(LoopState.IDLE)
            logger.info(f"[PREEMPT] waiting for incoming signal (channel={SIGNAL_CHANNEL})")

            received = await select(ctx.cancellation, channel)
            if received is None:
                logger.info("[PREEMPT] received cancellation signal")
                break

            payload, coalesced = received
            if coalesced:
                logger.info(f"[PREEMPT] {coalesced} queued signal(s) superseded by the most recent request")

            try:
                request = self._parse(payload)
            except ValidationError as exc:
                logger.error(f"[PREEMPT] dropping malformed signal payload: {exc}")
                self.handled += 1
                continue

            try:
                await self._handle(ctx, request)
            except Exception:
                logger.exception("[PREEMPT] unexpected error in preemption run")
            finally:
                self.handled += 1

        self._transition(LoopState.TERMINATING)
        logger.info("[PREEMPT] stopping workflow")
        return self._state

    @staticmethod
    def _parse(payload) -> TriggerRequest:
        if isinstance(payload, TriggerRequest):
            return payload
        return TriggerRequest.model_validate(payload)

    async def _handle(self, ctx: WorkflowContext, request: TriggerRequest) -> None:
        logger.debug(f"[PREEMPT] received signal: {request!r}")
        self._transition(LoopState.DEBOUNCING)

        now = ctx.now()
        if not should_run(now, self._last_run_at, self._min_interval):
            self._transition(LoopState.SKIPPED)
            logger.info(
                "[PREEMPT] skipping workflow run because last run is not older than configured "
                f"re-run threshold (threshold={self._min_interval}, currentRun={now.isoformat()}, "
                f"lastRun={self._last_run_at.isoformat()}, "
                f"remaining={remaining(now, self._last_run_at, self._min_interval)})"
            )
            self._inc_run("skipped")
            return

        # recorded before the stages run: a failing run still consumes the window
        self._last_run_at = now
        self.runs += 1
        started = time.monotonic()
        deactivated: List[ResourceRef] = []
        ok = False
        try:
            deactivated, ok = await self._pipeline(ctx, request)
        finally:
            self._commit(ctx, request, now, deactivated)
            self._inc_run("completed" if ok else "failed")
            if self._metrics is not None:
                self._metrics.observe_run_duration(time.monotonic() - started)
            self._log_run(ctx, request, deactivated, ok, time.monotonic() - started)

    async def _pipeline(self, ctx: WorkflowContext, request: TriggerRequest) -> Tuple[List[ResourceRef], bool]:
        """Run the stages in order; returns (deactivated, run succeeded)."""
        force = request.urgency.forced

        self._transition(LoopState.DISCOVERING)
        logger.debug("[PREEMPT] searching for preemptible virtual machines")
        try:
            candidates = await ctx.execute_activity(
                self._stages.get_preemptible_vms, request.selector_tag, options=self._options
            )
        except ActivityError as exc:
            logger.error(f"[PREEMPT] get preemptible vms: {exc}")
            self._stage_failed("discover")
            return [], False
        logger.debug(f"[PREEMPT] preemptible virtual machines result: count={len(candidates)}")

        self._transition(LoopState.DEACTIVATING)
        logger.debug(f"[PREEMPT] preempting virtual machines (forced={force})")
        try:
            deactivated = await ctx.execute_activity(
                self._stages.power_off_vms, candidates, force, options=self._options
            )
        except ActivityError as exc:
            logger.error(f"[PREEMPT] power off preemptible vms: {exc}")
            self._stage_failed("deactivate")
            return [], False
        logger.debug(f"[PREEMPT] preempted virtual machines result: count={len(deactivated)}")

        self._transition(LoopState.ANNOTATING)
        record = AnnotationRecord.for_run(request, ctx.info.run_id, ctx.info.started_at)
        try:
            await ctx.execute_activity(
                self._stages.annotate_vms, deactivated, record, options=self._options
            )
        except ActivityError as exc:
            # best-effort: continue with notification
            logger.warning(f"[PREEMPT] annotate virtual machines: {exc}")
            self._stage_failed("annotate")

        if not request.reply_target:
            logger.debug("[PREEMPT] not creating cloud event response: replyTo address not set")
            return deactivated, True

        self._transition(LoopState.NOTIFYING)
        payload = NotificationPayload(**record.model_dump(), resources=deactivated)
        logger.debug("[PREEMPT] sending cloudevents response")
        try:
            await ctx.execute_activity(
                self._stages.send_preempted_event, request.reply_target, payload, options=self._options
            )
        except ActivityError as exc:
            logger.error(f"[PREEMPT] send cloudevent: {exc}")
            self._stage_failed("notify")
            return deactivated, False

        return deactivated, True

    def _commit(self, ctx: WorkflowContext, request: TriggerRequest, ran_at, deactivated: List[ResourceRef]) -> None:
        """Single write point of RunState."""
        self._state = RunState(
            workflow_id=ctx.info.workflow_id,
            run_id=ctx.info.run_id,
            workflow_name=ctx.info.workflow_name,
            last_run_at=ran_at,
            deactivated=list(deactivated),
            selector_tag=request.selector_tag,
            urgency=request.urgency,
            cause_event=request.cause_event,
            reply_target=request.reply_target,
        )

    def _stage_failed(self, stage: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_stage_failure(stage)

    def _inc_run(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_run(outcome)

    def _log_run(self, ctx, request: TriggerRequest, deactivated, ok: bool, duration: float) -> None:
        log_entry = {
            "event": "preemption_run",
            "workflow_id": ctx.info.workflow_id,
            "run_id": ctx.info.run_id,
            "tag": request.selector_tag,
            "criticality": request.urgency.value,
            "forced": request.urgency.forced,
            "cause_event_id": request.cause_event.id,
            "reply_to": request.reply_target or None,
            "deactivated": [str(r) for r in deactivated],
            "outcome": "completed" if ok else "failed",
            "duration_seconds": round(duration, 3),
        }
        logger.info(f"[PREEMPT] {json.dumps(log_entry)}")
