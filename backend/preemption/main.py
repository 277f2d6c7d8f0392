"""
Preemption Worker API.

    POST /workflow/run     signal-with-start a preemption request
    GET  /workflow/status  last committed RunState (current_state query)
    POST /workflow/cancel  request cancellation of the running loop
    GET  /health
    GET  /metrics          Prometheus text exposition
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .activities import PreemptionActivities
from .core.config import PreemptionSettings, settings as default_settings
from .executor import BoundedExecutor
from .metrics import PreemptionMetrics, get_preemption_metrics
from .models import CloudEvent, TriggerRequest, Urgency
from .runtime import ActivityRunner, QueryNotFoundError, WorkflowHost, WorkflowNotRunningError, WorkflowNotStartedError
from .services.cloudevents import HTTPCloudEventsClient, NotificationClient
from .services.resource_client import ResourceClient, get_resource_client
from .workflow import QUERY_TYPE, SIGNAL_CHANNEL, WORKFLOW_NAME, PreemptionWorkflow, StateSerializationError

logging.basicConfig(
    level=logging.DEBUG if default_settings.debug else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_TAG = "preemptible"


# ═══════════════════════════════════════════════════════════════════════════════
# Request / response models
# ═══════════════════════════════════════════════════════════════════════════════


class RunWorkflowRequest(BaseModel):
    """Body of POST /workflow/run; every field has a default."""
    model_config = ConfigDict(populate_by_name=True)

    tag: str = Field(default=DEFAULT_TAG, min_length=1)
    criticality: Urgency = Urgency.LOW
    event: Optional[CloudEvent] = None
    reply_to: str = Field(default="", alias="replyTo")

    @field_validator("criticality", mode="before")
    @classmethod
    def _parse_criticality(cls, v):
        if isinstance(v, Urgency):
            return v
        return Urgency.parse(v)

    def to_trigger(self) -> TriggerRequest:
        event = self.event
        if event is None:
            event = CloudEvent.new()
            logger.debug(f"no cloud event provided, using default event: id={event.id}")
        return TriggerRequest(
            selector_tag=self.tag,
            urgency=self.criticality,
            cause_event=event,
            reply_target=self.reply_to,
        )


class WorkflowStartedResponse(BaseModel):
    workflowID: str
    workflowRunID: str


# ═══════════════════════════════════════════════════════════════════════════════
# Wiring
# ═══════════════════════════════════════════════════════════════════════════════


def build_host(
    settings: PreemptionSettings,
    *,
    resources: Optional[ResourceClient] = None,
    notifier: Optional[NotificationClient] = None,
    metrics: Optional[PreemptionMetrics] = None,
) -> WorkflowHost:
    """Worker assembly: clients → activities → workflow → host."""
    metrics = metrics or get_preemption_metrics()
    if resources is None:
        resources = get_resource_client(settings.resource_backend, inventory=settings.inventory)
    if notifier is None:
        notifier = HTTPCloudEventsClient(timeout=settings.notification_timeout_seconds)

    activities = PreemptionActivities(
        resources,
        notifier,
        executor=BoundedExecutor(settings.max_concurrent_calls, metrics=metrics),
        max_candidates=settings.max_candidates,
        heartbeat_interval=settings.heartbeat_interval_seconds,
        annotation_field=settings.annotation_field,
        event_source=settings.event_source,
        event_type=settings.event_type,
        metrics=metrics,
    )
    options = settings.activity_options()

    def _workflow() -> PreemptionWorkflow:
        return PreemptionWorkflow(
            activities,
            options=options,
            min_interval=settings.debounce_interval,
            metrics=metrics,
        )

    return WorkflowHost(
        _workflow,
        workflow_id=settings.workflow_id,
        workflow_name=WORKFLOW_NAME,
        runner=ActivityRunner(metrics=metrics),
    )


def create_app(
    host: Optional[WorkflowHost] = None,
    settings: PreemptionSettings = default_settings,
    metrics: Optional[PreemptionMetrics] = None,
) -> FastAPI:
    metrics = metrics or get_preemption_metrics()
    host = host or build_host(settings, metrics=metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Worker ready: workflow={WORKFLOW_NAME}, id={host.workflow_id}, "
            f"task_queue={settings.task_queue}, backend={settings.resource_backend}"
        )
        yield
        await host.shutdown()
        logger.info("Worker stopped")

    app = FastAPI(
        title="vSphere Preemption Worker",
        description="Tag-driven VM preemption control loop",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.host = host
    app.state.metrics = metrics

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """API key check; disabled when settings.api_key is empty."""
        if not settings.api_key:
            return
        if not x_api_key:
            raise HTTPException(status_code=401, detail={"error": "missing_api_key"})
        if x_api_key != settings.api_key:
            raise HTTPException(status_code=403, detail={"error": "invalid_api_key"})

    @app.post(
        "/workflow/run",
        status_code=202,
        response_model=WorkflowStartedResponse,
        dependencies=[Depends(require_api_key)],
    )
    async def run_workflow(body: Optional[RunWorkflowRequest] = None):
        trigger = (body or RunWorkflowRequest()).to_trigger()
        handle = host.signal_with_start(SIGNAL_CHANNEL, trigger)
        # let a freshly started loop register its query handler
        await asyncio.sleep(0)
        logger.info(
            f"Preemption requested: tag={trigger.selector_tag}, criticality={trigger.urgency.value}, "
            f"event={trigger.cause_event.id}, run_id={handle.run_id}"
        )
        return WorkflowStartedResponse(workflowID=handle.workflow_id, workflowRunID=handle.run_id)

    @app.get("/workflow/status", dependencies=[Depends(require_api_key)])
    async def workflow_status():
        try:
            state = host.query(QUERY_TYPE)
        except WorkflowNotStartedError as e:
            raise HTTPException(status_code=404, detail={"error": "workflow_not_started", "message": str(e)})
        except QueryNotFoundError:
            raise HTTPException(status_code=503, detail={"error": "workflow_starting"})
        except StateSerializationError as e:
            logger.error(f"Status query failed: {e}")
            raise HTTPException(status_code=500, detail={"error": "state_serialization_failed"})
        return Response(content=state, media_type="application/json")

    @app.post("/workflow/cancel", dependencies=[Depends(require_api_key)])
    async def cancel_workflow():
        try:
            host.cancel("cancel requested via API")
        except WorkflowNotRunningError as e:
            raise HTTPException(status_code=404, detail={"error": "workflow_not_running", "message": str(e)})
        return {"status": "cancellation_requested", "workflowID": host.workflow_id}

    @app.get("/health")
    async def health():
        return {"status": "ok", "workflow_running": host.running}

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        """Prometheus text exposition format; no auth (standard for scraping)."""
        return Response(
            content=metrics.generate_metrics(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app


app = create_app()
