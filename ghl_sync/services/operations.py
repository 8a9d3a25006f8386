"""
Sync Operations
One bounded unit of reconciliation work per call: Contact Sync (pull),
Opportunity Push, Appointment Push, Calendar Sync (pull) and Workflow
Trigger. Each operation reads/writes the local store, calls the CRM
client and accumulates counts on a RunTracker.

Per-item failures inside a batch are recorded and the batch continues.
Precondition failures raise before any remote call is made.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

from ghl_sync.config import settings
from ghl_sync.error_handler import (
    CustomerNotSynced,
    IdentityConflict,
    MappingError,
    RemoteError,
)
from ghl_sync.models.gohighlevel import GHLAppointment, GHLContact
from ghl_sync.models.sync import EntityType, ErrorKind, RunTracker, TenantCRMConfig
from ghl_sync.services import field_mapper
from ghl_sync.services.ghl_client import GoHighLevelClient, idempotency_key
from ghl_sync.services.identity import IdentityResolver
from ghl_sync.services.store import SyncStore


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def compute_opportunity_value_cents(budgets: Iterable[Any]) -> int:
    """
    Total of quantity x unit price over the job's budget lines, in cents.

    Unit prices are money and are taken at cent precision (half-up);
    quantities stay exact. The summed total is converted to cents once,
    rounding half-up, so no per-line rounding error accumulates.
    (3 x 19.995) + (1 x 0.001) -> 6000.

    A price below half a cent counts as zero however large the quantity
    (1000 x 0.004 -> 0, 1000 x 0.005 -> 1000). Budget lines priced in
    fractions of a cent should carry the extended price with quantity 1.
    """
    total = Decimal("0")
    for line in budgets:
        qty = Decimal(str(line.qty_budget or 0))
        price = Decimal(str(line.unit_price_budget or 0)).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
        total += qty * price
    return int((total * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class SyncOperations:
    """The sync operations, bound to one client and one local store"""

    def __init__(
        self,
        client: GoHighLevelClient,
        store: SyncStore,
        resolver: Optional[IdentityResolver] = None,
    ):
        self.client = client
        self.store = store
        self.resolver = resolver or IdentityResolver(client, store)

    # ========================================================================
    # Contact Sync (pull)
    # ========================================================================

    async def pull_contacts(
        self,
        tenant: TenantCRMConfig,
        tracker: RunTracker,
        max_items: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> None:
        """
        Page through the location's contacts and reconcile each one.

        Items are processed in the order the CRM pages return them. The
        batch stops after max_items contacts.
        """
        tenant.require("location_id")
        remaining = max_items or settings.contact_sync_max_items
        page_size = page_size or settings.contact_sync_page_size

        start_after_id: Optional[str] = None
        start_after: Optional[int] = None
        pages = 0

        logger.info(
            f"Contact sync started for tenant {tenant.tenant_id} "
            f"(location {tenant.location_id}, max {remaining})"
        )

        while remaining > 0:
            page = await self.client.list_contacts(
                tenant,
                limit=min(page_size, remaining),
                start_after_id=start_after_id,
                start_after=start_after,
            )
            pages += 1

            for contact in page.contacts[:remaining]:
                await self.pull_contact(tenant, contact, tracker)
                remaining -= 1

            if not page.has_next_page:
                break
            start_after_id = page.meta.startAfterId
            start_after = page.meta.startAfter

        tracker.result["pages"] = pages
        logger.info(
            f"Contact sync finished for tenant {tenant.tenant_id}: "
            f"{tracker.processed} processed, {tracker.created} created, "
            f"{tracker.updated} updated, {tracker.skipped} unchanged, "
            f"{tracker.failed} failed"
        )

    async def pull_contact(
        self, tenant: TenantCRMConfig, contact: GHLContact, tracker: RunTracker
    ) -> None:
        """Reconcile one remote contact; failures are recorded, not raised"""
        tracker.processed += 1
        try:
            fields = field_mapper.from_remote_contact(contact)
            customer, newly_bound = await self.resolver.resolve_remote_contact(
                tenant, contact, fields
            )

            if customer is None:
                self.store.create_customer(tenant.tenant_id, fields, ghl_contact_id=contact.id)
                tracker.created += 1
                return

            changed = self.store.update_customer(tenant.tenant_id, customer.id, fields)
            if changed or newly_bound:
                tracker.updated += 1
            else:
                tracker.skipped += 1

        except MappingError as e:
            logger.warning(f"  Contact {contact.id} skipped: {e.message}")
            tracker.record_failure(contact.id, ErrorKind.MAPPING, e.message)
        except IdentityConflict as e:
            logger.warning(f"  Contact {contact.id} conflict: {e.message}")
            tracker.record_failure(contact.id, ErrorKind.CONFLICT, e.message)
        except RemoteError as e:
            logger.warning(f"  Contact {contact.id} lookup failed: {e.message}")
            tracker.record_failure(contact.id, ErrorKind.REMOTE, e.message)

    # ========================================================================
    # Opportunity Push
    # ========================================================================

    async def push_opportunity(
        self,
        tenant: TenantCRMConfig,
        job_id: str,
        tracker: RunTracker,
        pipeline_id: Optional[str] = None,
        stage_id: Optional[str] = None,
    ) -> tuple[str, bool]:
        """
        Create the CRM opportunity for a job, once.

        Returns:
            (external opportunity id, created). A job that already has an
            opportunity returns the stored id without calling the CRM.

        Raises:
            NotConfigured: no location / pipeline for the tenant
            CustomerNotSynced: the job's customer has no CRM contact yet
        """
        job = self.store.get_job(tenant.tenant_id, job_id)
        tracker.processed += 1

        resolution = self.resolver.resolve_job(job)
        if resolution.is_bound:
            logger.info(f"Job {job.id} already pushed as opportunity {resolution.external_id}")
            tracker.skipped += 1
            tracker.result["externalOpportunityId"] = resolution.external_id
            return resolution.external_id, False

        tenant.require("location_id")
        pipeline_id = pipeline_id or tenant.require("pipeline_id")
        stage_id = stage_id or tenant.default_stage_id

        customer = job.customer
        if customer is None or not customer.ghl_contact_id:
            raise CustomerNotSynced(
                f"Customer of job {job.id} is not synced to GoHighLevel; run Contact Sync first",
                context={"job_id": job.id, "customer_id": job.customer_id},
            )

        value_cents = compute_opportunity_value_cents(job.budgets)
        payload = field_mapper.to_remote_opportunity(
            job, value_cents, customer.ghl_contact_id, pipeline_id, stage_id
        )

        external_id = await self.client.create_opportunity(
            tenant,
            payload,
            idempotency_key=idempotency_key(
                tenant.tenant_id, EntityType.OPPORTUNITIES.value, job.id
            ),
        )
        self.store.bind_job_opportunity(tenant.tenant_id, job.id, external_id)

        logger.info(
            f"Created opportunity {external_id} for job {job.id} ({value_cents} cents)"
        )
        tracker.created += 1
        tracker.result["externalOpportunityId"] = external_id
        tracker.result["monetaryValue"] = value_cents
        return external_id, True

    # ========================================================================
    # Appointment Push
    # ========================================================================

    async def push_appointment(
        self,
        tenant: TenantCRMConfig,
        appointment_id: str,
        tracker: RunTracker,
        calendar_id: Optional[str] = None,
    ) -> tuple[str, bool]:
        """
        Book a local appointment on the tenant's CRM calendar.

        The CRM decides whether the slot is free; a rejection surfaces as
        SchedulingConflict.
        """
        appointment = self.store.get_appointment(tenant.tenant_id, appointment_id)
        tracker.processed += 1

        resolution = self.resolver.resolve_appointment(appointment)
        if resolution.is_bound:
            tracker.skipped += 1
            tracker.result["externalAppointmentId"] = resolution.external_id
            return resolution.external_id, False

        tenant.require("location_id")
        calendar_id = calendar_id or tenant.require("calendar_id")

        customer = appointment.customer
        if customer is not None and not customer.ghl_contact_id:
            raise CustomerNotSynced(
                f"Customer {customer.id} is not synced to GoHighLevel; run Contact Sync first",
                context={"appointment_id": appointment.id, "customer_id": customer.id},
            )

        technician = appointment.assigned_user
        payload = field_mapper.to_remote_appointment(
            appointment,
            calendar_id,
            customer.ghl_contact_id if customer is not None else None,
            assigned_user_external_id=technician.ghl_user_id if technician else None,
        )

        external_id = await self.client.create_appointment(
            tenant,
            payload,
            idempotency_key=idempotency_key(
                tenant.tenant_id, EntityType.APPOINTMENTS.value, appointment.id
            ),
        )
        self.store.bind_appointment_event(
            tenant.tenant_id, appointment.id, external_id, calendar_id
        )

        logger.info(f"Created GHL appointment {external_id} for appointment {appointment.id}")
        tracker.created += 1
        tracker.result["externalAppointmentId"] = external_id
        return external_id, True

    # ========================================================================
    # Calendar Sync (pull)
    # ========================================================================

    async def pull_appointments(
        self,
        tenant: TenantCRMConfig,
        start: datetime,
        end: datetime,
        tracker: RunTracker,
        calendar_id: Optional[str] = None,
    ) -> None:
        """Reconcile every CRM calendar event in [start, end)"""
        field_mapper.to_utc_iso(start)
        field_mapper.to_utc_iso(end)
        if end <= start:
            raise MappingError("Calendar sync window ends before it starts")

        tenant.require("location_id")
        calendar_id = calendar_id or tenant.require("calendar_id")

        events = await self.client.list_appointments(tenant, start, end, calendar_id)
        logger.info(
            f"Calendar sync for tenant {tenant.tenant_id}: {len(events)} event(s) "
            f"between {start.isoformat()} and {end.isoformat()}"
        )

        for event in events:
            await self.pull_appointment(tenant, event, tracker)

    async def pull_appointment(
        self, tenant: TenantCRMConfig, event: GHLAppointment, tracker: RunTracker
    ) -> None:
        """
        Reconcile one remote calendar event.

        The local customer comes from the event's contact; a contact that
        was never synced leaves the appointment without a customer (manual
        link) rather than creating one from calendar data.
        """
        tracker.processed += 1
        tenant_id = tenant.tenant_id
        try:
            fields = field_mapper.from_remote_appointment(event)

            customer = self.resolver.customer_for_contact(tenant_id, event.contactId)
            customer_id = customer.id if customer else None
            if customer is None and event.contactId:
                logger.info(
                    f"  Event {event.id}: contact {event.contactId} is not linked to a customer"
                )
            technician_id = self.resolver.technician_for(tenant_id, event.assignedUserId)

            existing = self.resolver.appointment_for_event(tenant_id, event.id)
            if existing is None:
                self.store.create_appointment(
                    tenant_id,
                    fields,
                    event.id,
                    customer_id=customer_id,
                    assigned_user_id=technician_id,
                )
                tracker.created += 1
            elif self.store.update_appointment(
                tenant_id,
                existing.id,
                fields,
                customer_id=customer_id,
                assigned_user_id=technician_id,
            ):
                tracker.updated += 1
            else:
                tracker.skipped += 1

        except MappingError as e:
            logger.warning(f"  Event {event.id} skipped: {e.message}")
            tracker.record_failure(event.id, ErrorKind.MAPPING, e.message)
        except IdentityConflict as e:
            logger.warning(f"  Event {event.id} conflict: {e.message}")
            tracker.record_failure(event.id, ErrorKind.CONFLICT, e.message)

    def remove_appointment(
        self, tenant: TenantCRMConfig, event_id: str, tracker: RunTracker
    ) -> None:
        """Delete the local appointment bound to a cancelled CRM event"""
        tracker.processed += 1
        if self.store.delete_appointment_by_event(tenant.tenant_id, event_id):
            logger.info(f"Deleted appointment bound to GHL event {event_id}")
            tracker.updated += 1
            tracker.result["deleted"] = True
        else:
            tracker.skipped += 1
            tracker.result["deleted"] = False

    # ========================================================================
    # Workflow Trigger
    # ========================================================================

    async def trigger_workflow(
        self,
        tenant: TenantCRMConfig,
        workflow_id: str,
        contact_external_id: str,
        custom_data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Signal a business event to the CRM; no local state changes"""
        tenant.require("location_id")
        await self.client.trigger_workflow(
            tenant, workflow_id, contact_external_id, custom_data or {}
        )
        logger.info(f"Triggered workflow {workflow_id} for contact {contact_external_id}")
