"""
GoHighLevel CRM Sync Application

Keeps customers, opportunities and appointments consistent between the
application's local store and GoHighLevel.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ghl_sync.config import settings
from ghl_sync.database import create_db_engine, create_session_factory, init_db
from ghl_sync.error_handler import (
    CRMSyncError,
    IdentityConflict,
    MappingError,
    NotConfigured,
    PrerequisiteMissing,
    RecordNotFound,
    RemoteError,
    SchedulingConflict,
    SyncAlreadyRunning,
    setup_logging,
    slack_notifier,
)
from ghl_sync.models.api import (
    ConnectionProbeRequest,
    PushAppointmentRequest,
    PushAppointmentResponse,
    PushOpportunityRequest,
    PushOpportunityResponse,
    SyncCalendarRequest,
    SyncContactsRequest,
    SyncCountsResponse,
    TriggerWorkflowRequest,
    TriggerWorkflowResponse,
)
from ghl_sync.models.gohighlevel import GHLWebhookEvent
from ghl_sync.models.sync import EntityType, SyncRun
from ghl_sync.services.ghl_client import GoHighLevelClient
from ghl_sync.services.orchestrator import SyncOrchestrator, scheduled_sync_job
from ghl_sync.services.store import SyncStore


logger = logging.getLogger(__name__)

# Checked in order; subclasses first
ERROR_STATUS_CODES = (
    (SyncAlreadyRunning, 409),
    (SchedulingConflict, 409),
    (IdentityConflict, 409),
    (RecordNotFound, 404),
    (NotConfigured, 422),
    (PrerequisiteMissing, 422),
    (MappingError, 422),
    (RemoteError, 502),
)


def status_code_for(error: CRMSyncError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


# ============================================================================
# Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    setup_logging()

    engine = create_db_engine()
    init_db(engine)
    client = GoHighLevelClient()
    orchestrator = SyncOrchestrator(SyncStore(create_session_factory(engine)), client)
    app.state.orchestrator = orchestrator

    scheduler: Optional[AsyncIOScheduler] = None
    if settings.sync_interval_minutes > 0:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            scheduled_sync_job(orchestrator),
            "interval",
            minutes=settings.sync_interval_minutes,
            id="run_all_syncs",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info(f"Scheduler started (every {settings.sync_interval_minutes} min)")

    yield

    if scheduler is not None:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
    await client.aclose()
    await slack_notifier.close()
    engine.dispose()


app = FastAPI(
    title="GoHighLevel CRM Sync",
    description="Syncs customers, opportunities and appointments with GoHighLevel",
    version="1.0.0",
    lifespan=lifespan,
)


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


# ============================================================================
# Error translation
# ============================================================================


@app.exception_handler(CRMSyncError)
async def crm_sync_error_handler(request: Request, exc: CRMSyncError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": exc.message},
    )


@app.exception_handler(asyncio.TimeoutError)
async def sync_timeout_handler(request: Request, exc: asyncio.TimeoutError):
    return JSONResponse(
        status_code=504,
        content={
            "error": "sync_timeout",
            "message": f"Sync did not finish within {settings.sync_timeout_seconds}s",
        },
    )


def counts_response(run: SyncRun) -> SyncCountsResponse:
    return SyncCountsResponse(
        run_id=run.id,
        status=run.status.value,
        processed=run.processed,
        created=run.created,
        updated=run.updated,
        skipped=run.skipped,
        failed=run.failed,
        errors=[e.model_dump(mode="json") for e in run.errors],
    )


# ============================================================================
# API Endpoints
# ============================================================================


@app.get("/")
async def root():
    """Root endpoint with status"""
    return {
        "status": "running",
        "interval_minutes": settings.sync_interval_minutes,
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok"}


@app.post("/sync_contacts", response_model=SyncCountsResponse)
async def sync_contacts(
    body: SyncContactsRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Pull the location's contacts into local customers"""
    run = await orchestrator.sync_contacts(body.tenant_id, location_id=body.location_id)
    return counts_response(run)


@app.post("/push_opportunity", response_model=PushOpportunityResponse)
async def push_opportunity(
    body: PushOpportunityRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    run, external_id, created = await orchestrator.push_opportunity(
        body.tenant_id,
        body.job_id,
        pipeline_id=body.pipeline_id,
        stage_id=body.stage_id,
    )
    return PushOpportunityResponse(
        external_opportunity_id=external_id, run_id=run.id, created=created
    )


@app.post("/push_appointment", response_model=PushAppointmentResponse)
async def push_appointment(
    body: PushAppointmentRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    run, external_id, created = await orchestrator.push_appointment(
        body.tenant_id, body.appointment_id, calendar_id=body.calendar_id
    )
    return PushAppointmentResponse(
        external_appointment_id=external_id, run_id=run.id, created=created
    )


@app.post("/sync_calendar", response_model=SyncCountsResponse)
async def sync_calendar(
    body: SyncCalendarRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Pull CRM calendar events in a time window into local appointments"""
    run = await orchestrator.sync_calendar(
        body.tenant_id, body.start_time, body.end_time, calendar_id=body.calendar_id
    )
    return counts_response(run)


@app.post("/trigger_workflow", response_model=TriggerWorkflowResponse)
async def trigger_workflow(
    body: TriggerWorkflowRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    triggered, error = await orchestrator.trigger_workflow(
        body.tenant_id,
        body.contact_external_id,
        workflow_id=body.workflow_id,
        event=body.event,
        custom_data=body.custom_data,
    )
    return TriggerWorkflowResponse(triggered=triggered, error=error)


@app.get("/sync_runs/latest")
async def latest_sync_run(
    tenant_id: str = Query(alias="tenantId"),
    entity_type: EntityType = Query(alias="entityType"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Most recent run for a (tenant, entity type); poll this before retrying"""
    run = orchestrator.latest_run(tenant_id, entity_type)
    if run is None:
        raise RecordNotFound(f"No {entity_type.value} sync has run for tenant {tenant_id}")
    return run.model_dump(mode="json")


@app.get("/sync_runs/{run_id}")
async def get_sync_run(
    run_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    return orchestrator.get_run(run_id).model_dump(mode="json")


@app.get("/calendars")
async def list_calendars(
    tenant_id: str = Query(alias="tenantId"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_calendars(tenant_id)


@app.post("/test_connection")
async def test_connection(
    body: ConnectionProbeRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.test_connection(body.tenant_id)


@app.post("/webhook")
async def ghl_webhook(
    request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Inbound GoHighLevel events (contact / appointment changes).

    Authenticated with the shared bearer token in GHL_WEBHOOK_TOKEN.
    """
    expected = settings.ghl_webhook_token
    if not expected or request.headers.get("authorization") != f"Bearer {expected}":
        return JSONResponse(
            status_code=401,
            content={"error": "unauthorized", "message": "Invalid webhook token"},
        )

    data = await request.json()
    try:
        event = GHLWebhookEvent.model_validate(data)
    except ValidationError as e:
        return JSONResponse(
            status_code=422,
            content={"error": "invalid_webhook", "message": str(e)[:500]},
        )

    logger.info(f"Received GHL webhook {event.type} for location {event.locationId}")
    run = await orchestrator.handle_webhook(event)
    if run is None:
        return {"status": "ignored", "type": event.type}
    return {"status": "processed", "runId": run.id, "runStatus": run.status.value}


if __name__ == "__main__":
    uvicorn.run("ghl_sync.main:app", host="0.0.0.0", port=settings.port, reload=True)
