"""
Sync Orchestrator
One entry point per sync operation. Each run holds the (tenant, entity
type) lock, is recorded as a SyncRun from start to finish and respects
the run timeout. Callers get the finalized run back.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ghl_sync.config import settings
from ghl_sync.error_handler import (
    CRMSyncError,
    ErrorSeverity,
    IdentityConflict,
    MappingError,
    NotConfigured,
    PrerequisiteMissing,
    RemoteError,
    SlackNotifier,
    SyncAlreadyRunning,
    safe_scheduled_job,
    slack_notifier,
)
from ghl_sync.models.gohighlevel import GHLAppointment, GHLContact, GHLWebhookEvent
from ghl_sync.models.sync import (
    EntityType,
    ErrorKind,
    RunTracker,
    SyncRun,
    TenantCRMConfig,
)
from ghl_sync.services.ghl_client import GoHighLevelClient
from ghl_sync.services.operations import SyncOperations
from ghl_sync.services.store import SyncStore
from ghl_sync.utils.locks import SyncLockRegistry


logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTACT_EVENTS = ("contact.created", "contact.updated")
APPOINTMENT_EVENTS = ("appointment.created", "appointment.updated")
APPOINTMENT_DELETED = "appointment.deleted"


def error_kind(error: CRMSyncError) -> ErrorKind:
    if isinstance(error, (NotConfigured, PrerequisiteMissing)):
        return ErrorKind.PREREQUISITE
    if isinstance(error, MappingError):
        return ErrorKind.MAPPING
    if isinstance(error, IdentityConflict):
        return ErrorKind.CONFLICT
    return ErrorKind.REMOTE


class SyncOrchestrator:
    """Runs sync operations under locks and records their outcome"""

    def __init__(
        self,
        store: SyncStore,
        client: GoHighLevelClient,
        locks: Optional[SyncLockRegistry] = None,
        timeout_seconds: Optional[float] = None,
        notifier: Optional[SlackNotifier] = None,
    ):
        self.store = store
        self.client = client
        self.operations = SyncOperations(client, store)
        self.locks = locks or SyncLockRegistry()
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.sync_timeout_seconds
        )
        self.notifier = notifier or slack_notifier

    # ========================================================================
    # Run lifecycle
    # ========================================================================

    async def _run(
        self,
        tenant: TenantCRMConfig,
        entity_type: EntityType,
        body: Callable[[RunTracker], Awaitable[T]],
    ) -> tuple[SyncRun, T]:
        """
        Execute one operation as a SyncRun.

        pending -> running -> succeeded | partial_failure | failed. The run
        is finalized and the lock released on every exit path, including
        cancellation and timeout.
        """
        run: Optional[SyncRun] = None
        try:
            async with self.locks.hold(tenant.tenant_id, entity_type):
                run = self.store.create_run(tenant.tenant_id, entity_type)
                self.store.mark_running(run.id)
                tracker = RunTracker()

                try:
                    value = await asyncio.wait_for(body(tracker), timeout=self.timeout_seconds)

                except (asyncio.CancelledError, asyncio.TimeoutError):
                    tracker.cancel()
                    run = self.store.finalize_run(run.id, tracker)
                    logger.warning(
                        f"{entity_type.value} sync {run.id} for tenant {tenant.tenant_id} "
                        f"cancelled after {tracker.processed} item(s)"
                    )
                    raise

                except CRMSyncError as e:
                    tracker.abort(error_kind(e), e.message)
                    run = self.store.finalize_run(run.id, tracker)
                    logger.error(
                        f"{entity_type.value} sync {run.id} for tenant {tenant.tenant_id} "
                        f"{run.status.value}: {e.message}"
                    )
                    raise

                except Exception as e:
                    tracker.abort(ErrorKind.REMOTE, f"{type(e).__name__}: {e}")
                    self.store.finalize_run(run.id, tracker)
                    raise

                run = self.store.finalize_run(run.id, tracker)

        except RemoteError as e:
            # Alert only once the lock is released
            if run is not None:
                await self.notifier.send_error(
                    error=e,
                    function_name=f"sync_{entity_type.value}",
                    severity=e.severity,
                    context={
                        "tenant_id": tenant.tenant_id,
                        "run_id": run.id,
                        "status_code": e.status_code,
                        "response": e.response_text,
                    },
                )
            raise

        if tracker.failed:
            await self.notifier.send_error(
                error=Exception(f"{tracker.failed} item(s) failed to sync"),
                function_name=f"sync_{entity_type.value}",
                severity=ErrorSeverity.MEDIUM,
                context={
                    "tenant_id": tenant.tenant_id,
                    "run_id": run.id,
                    "processed": tracker.processed,
                    "failed_items": [e.model_dump(mode="json") for e in tracker.errors[:5]],
                },
            )
        return run, value

    # ========================================================================
    # Entry points
    # ========================================================================

    async def sync_contacts(
        self,
        tenant_id: str,
        location_id: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> SyncRun:
        tenant = self.store.tenant_config(tenant_id)
        if location_id:
            tenant = dataclasses.replace(tenant, location_id=location_id)

        run, _ = await self._run(
            tenant,
            EntityType.CONTACTS,
            lambda tracker: self.operations.pull_contacts(tenant, tracker, max_items=max_items),
        )
        return run

    async def push_opportunity(
        self,
        tenant_id: str,
        job_id: str,
        pipeline_id: Optional[str] = None,
        stage_id: Optional[str] = None,
    ) -> tuple[SyncRun, str, bool]:
        tenant = self.store.tenant_config(tenant_id)
        run, (external_id, created) = await self._run(
            tenant,
            EntityType.OPPORTUNITIES,
            lambda tracker: self.operations.push_opportunity(
                tenant, job_id, tracker, pipeline_id=pipeline_id, stage_id=stage_id
            ),
        )
        return run, external_id, created

    async def push_appointment(
        self,
        tenant_id: str,
        appointment_id: str,
        calendar_id: Optional[str] = None,
    ) -> tuple[SyncRun, str, bool]:
        tenant = self.store.tenant_config(tenant_id)
        run, (external_id, created) = await self._run(
            tenant,
            EntityType.APPOINTMENTS,
            lambda tracker: self.operations.push_appointment(
                tenant, appointment_id, tracker, calendar_id=calendar_id
            ),
        )
        return run, external_id, created

    async def sync_calendar(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        calendar_id: Optional[str] = None,
    ) -> SyncRun:
        tenant = self.store.tenant_config(tenant_id)
        run, _ = await self._run(
            tenant,
            EntityType.APPOINTMENTS,
            lambda tracker: self.operations.pull_appointments(
                tenant, start, end, tracker, calendar_id=calendar_id
            ),
        )
        return run

    async def trigger_workflow(
        self,
        tenant_id: str,
        contact_external_id: str,
        workflow_id: Optional[str] = None,
        event: Optional[str] = None,
        custom_data: Optional[dict[str, Any]] = None,
    ) -> tuple[bool, Optional[str]]:
        """
        Fire-and-forget workflow trigger.

        Configuration errors raise; remote failures are logged, alerted and
        reported as (False, message) so the calling business action goes on.
        No lock is taken and no local record changes.
        """
        tenant = self.store.tenant_config(tenant_id)
        if not workflow_id:
            if not event:
                raise NotConfigured("A workflowId or a business event name is required")
            workflow_id = tenant.workflow_for(event)

        try:
            await self.operations.trigger_workflow(
                tenant, workflow_id, contact_external_id, custom_data
            )
        except RemoteError as e:
            logger.error(
                f"Workflow {workflow_id} trigger failed for contact {contact_external_id}: {e.message}"
            )
            await self.notifier.send_error(
                error=e,
                function_name="trigger_workflow",
                severity=ErrorSeverity.MEDIUM,
                context={
                    "tenant_id": tenant_id,
                    "workflow_id": workflow_id,
                    "contact_id": contact_external_id,
                },
            )
            return False, e.message
        return True, None

    async def notify_business_event(
        self,
        tenant_id: str,
        event: str,
        customer_id: str,
        data: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Tell the CRM that a business event (e.g. estimate_sent) happened.

        Safe to call from any business action: every failure is logged and
        turned into False.
        """
        try:
            tenant = self.store.tenant_config(tenant_id)
            workflow_id = tenant.workflow_for(event)
            customer = self.store.get_customer(tenant_id, customer_id)
            if not customer.ghl_contact_id:
                logger.info(
                    f"Skipping '{event}' workflow: customer {customer_id} is not synced"
                )
                return False
            triggered, _ = await self.trigger_workflow(
                tenant_id,
                customer.ghl_contact_id,
                workflow_id=workflow_id,
                custom_data=data,
            )
            return triggered
        except CRMSyncError as e:
            logger.warning(f"Business event '{event}' not sent to GoHighLevel: {e.message}")
            return False

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def handle_webhook(self, event: GHLWebhookEvent) -> Optional[SyncRun]:
        """
        Apply one inbound CRM event through the same mapper/resolver path
        as the batch syncs.

        Returns:
            The run, or None when the event type is not handled
        """
        tenant = self.store.tenant_by_location(event.locationId)

        if event.type in CONTACT_EVENTS and event.contact:
            contact = GHLContact(**event.contact)
            run, _ = await self._run(
                tenant,
                EntityType.CONTACTS,
                lambda tracker: self.operations.pull_contact(tenant, contact, tracker),
            )
            return run

        if event.type in APPOINTMENT_EVENTS and event.appointment:
            appointment = GHLAppointment(**event.appointment)
            run, _ = await self._run(
                tenant,
                EntityType.APPOINTMENTS,
                lambda tracker: self.operations.pull_appointment(tenant, appointment, tracker),
            )
            return run

        if event.type == APPOINTMENT_DELETED and event.appointment is not None:
            event_id = str(event.appointment.get("id") or "")
            if not event_id:
                raise MappingError("appointment.deleted webhook has no appointment id")

            async def remove(tracker: RunTracker) -> None:
                self.operations.remove_appointment(tenant, event_id, tracker)

            run, _ = await self._run(tenant, EntityType.APPOINTMENTS, remove)
            return run

        logger.info(f"Ignoring GHL webhook '{event.type}' for location {event.locationId}")
        return None

    # ========================================================================
    # Lookups
    # ========================================================================

    async def list_calendars(self, tenant_id: str) -> dict[str, Any]:
        tenant = self.store.tenant_config(tenant_id)
        calendars = await self.client.list_calendars(tenant)
        return {
            "calendars": [c.model_dump() for c in calendars],
            "configuredCalendarId": tenant.calendar_id,
        }

    async def test_connection(self, tenant_id: str) -> dict[str, Any]:
        """Probe the CRM with a one-contact read; never raises for CRM errors"""
        tenant = self.store.tenant_config(tenant_id)
        try:
            await self.client.list_contacts(tenant, limit=1)
        except CRMSyncError as e:
            logger.warning(f"GoHighLevel connection test failed for {tenant_id}: {e.message}")
            return {"success": False, "status": "failed", "error": e.message}
        return {"success": True, "status": "connected"}

    def latest_run(self, tenant_id: str, entity_type: EntityType) -> Optional[SyncRun]:
        return self.store.latest_run(tenant_id, entity_type)

    def get_run(self, run_id: str) -> SyncRun:
        return self.store.get_run(run_id)

    # ========================================================================
    # Scheduled syncs
    # ========================================================================

    async def run_scheduled_syncs(self) -> None:
        """Contact Sync plus today's Calendar Sync for every configured tenant"""
        now = datetime.now(timezone.utc)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1)

        for tenant in self.store.configured_tenants():
            await self._scheduled(
                f"contacts:{tenant.tenant_id}",
                lambda: self.sync_contacts(tenant.tenant_id),
            )
            if tenant.calendar_id:
                await self._scheduled(
                    f"calendar:{tenant.tenant_id}",
                    lambda: self.sync_calendar(tenant.tenant_id, day_start, day_end),
                )

    async def _scheduled(self, name: str, start: Callable[[], Awaitable[SyncRun]]) -> None:
        try:
            run = await start()
            logger.info(
                f"Scheduled {name}: {run.status.value} "
                f"({run.processed} processed, {run.failed} failed)"
            )
        except SyncAlreadyRunning:
            logger.info(f"Scheduled {name} skipped: a run is already in progress")
        except CRMSyncError as e:
            logger.error(f"Scheduled {name} failed: {e.message}")


def scheduled_sync_job(orchestrator: SyncOrchestrator) -> Callable[[], Awaitable[None]]:
    """APScheduler job wrapping run_scheduled_syncs"""

    @safe_scheduled_job
    async def run_all_syncs():
        await orchestrator.run_scheduled_syncs()

    return run_all_syncs
