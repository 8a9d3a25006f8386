"""Tests for the sync orchestrator: locks, run lifecycle, workflows, webhooks"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from ghl_sync.error_handler import (
    CustomerNotSynced,
    MappingError,
    NotConfigured,
    RecordNotFound,
    RemoteRejected,
    SlackNotifier,
    SyncAlreadyRunning,
)
from ghl_sync.models.gohighlevel import GHLWebhookEvent
from ghl_sync.models.local import Appointment, Customer, Job
from ghl_sync.models.sync import EntityType, ErrorKind, SyncStatus
from ghl_sync.services.ghl_client import GoHighLevelClient
from ghl_sync.services.orchestrator import SyncOrchestrator
from ghl_sync.services.rate_limiter import TokenBucket

from conftest import OTHER_TENANT_ID, TENANT_ID


@pytest.fixture
def gate() -> asyncio.Event:
    return asyncio.Event()


@pytest.fixture
def gated(store, fake_ghl, gate) -> SyncOrchestrator:
    """Orchestrator whose contact listing blocks until the gate opens"""

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/contacts/":
            await gate.wait()
        return fake_ghl.handler(request)

    client = GoHighLevelClient(
        api_token="test-token",
        base_url="https://ghl.test",
        rate_limiter=TokenBucket(1000, 1000),
        transport=httpx.MockTransport(handler),
    )
    return SyncOrchestrator(
        store, client, timeout_seconds=30, notifier=SlackNotifier(webhook_url="")
    )


async def started(coro) -> asyncio.Task:
    """Start a run and let it reach its first remote call"""
    task = asyncio.create_task(coro)
    for _ in range(5):
        await asyncio.sleep(0)
    return task


class TestLocking:
    @pytest.mark.asyncio
    async def test_same_tenant_same_entity_is_rejected(self, gated, gate, tenants, store):
        first = await started(gated.sync_contacts(TENANT_ID))

        with pytest.raises(SyncAlreadyRunning):
            await gated.sync_contacts(TENANT_ID)

        gate.set()
        run = await first

        assert run.status == SyncStatus.SUCCEEDED
        # the rejected call never created a run
        assert store.latest_run(TENANT_ID, EntityType.CONTACTS).id == run.id

    @pytest.mark.asyncio
    async def test_different_tenants_run_concurrently(self, gated, gate, tenants):
        first = await started(gated.sync_contacts(TENANT_ID))
        second = await started(gated.sync_contacts(OTHER_TENANT_ID))

        gate.set()
        runs = await asyncio.gather(first, second)

        assert [r.status for r in runs] == [SyncStatus.SUCCEEDED, SyncStatus.SUCCEEDED]
        assert {r.tenant_id for r in runs} == {TENANT_ID, OTHER_TENANT_ID}

    @pytest.mark.asyncio
    async def test_different_entity_types_run_concurrently(self, gated, gate, add, customer):
        add(Job(id="job-1", organization_id=TENANT_ID, customer_id=customer.id))
        contacts = await started(gated.sync_contacts(TENANT_ID))

        run, external_id, created = await gated.push_opportunity(TENANT_ID, "job-1")

        assert created is True
        assert run.status == SyncStatus.SUCCEEDED
        gate.set()
        assert (await contacts).status == SyncStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, orchestrator, tenants):
        await orchestrator.sync_contacts(TENANT_ID)
        run = await orchestrator.sync_contacts(TENANT_ID)

        assert run.status == SyncStatus.SUCCEEDED
        assert not orchestrator.locks.is_held(TENANT_ID, EntityType.CONTACTS)

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, orchestrator, tenants, fake_ghl):
        fake_ghl.failures = [401]

        with pytest.raises(RemoteRejected):
            await orchestrator.sync_contacts(TENANT_ID)

        assert not orchestrator.locks.is_held(TENANT_ID, EntityType.CONTACTS)

    @pytest.mark.asyncio
    async def test_cancellation_finalizes_and_releases(self, gated, gate, tenants, store):
        first = await started(gated.sync_contacts(TENANT_ID))

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        run = store.latest_run(TENANT_ID, EntityType.CONTACTS)
        assert run.status == SyncStatus.PARTIAL_FAILURE
        assert run.finished_at is not None
        assert run.errors[-1].kind == ErrorKind.CANCELLED
        assert not gated.locks.is_held(TENANT_ID, EntityType.CONTACTS)

        gate.set()
        assert (await gated.sync_contacts(TENANT_ID)).status == SyncStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_timeout_finalizes_and_releases(self, gated, tenants, store):
        gated.timeout_seconds = 0.05

        with pytest.raises(asyncio.TimeoutError):
            await gated.sync_contacts(TENANT_ID)

        run = store.latest_run(TENANT_ID, EntityType.CONTACTS)
        assert run.status == SyncStatus.PARTIAL_FAILURE
        assert run.finished_at is not None
        assert not gated.locks.is_held(TENANT_ID, EntityType.CONTACTS)


class TestRunOutcome:
    @pytest.mark.asyncio
    async def test_partial_failure_batch(self, orchestrator, tenants, fake_ghl, store):
        for i in range(1, 11):
            email = "broken@@example" if i == 4 else f"p{i}@example.com"
            fake_ghl.add_contact(f"c{i}", firstName=f"P{i}", email=email)

        run = await orchestrator.sync_contacts(TENANT_ID)

        assert run.status == SyncStatus.PARTIAL_FAILURE
        assert run.processed == 10
        assert run.created + run.updated == 9
        assert run.failed == 1
        assert run.errors[0].item_id == "c4"
        assert store.get_run(run.id).status == SyncStatus.PARTIAL_FAILURE

    @pytest.mark.asyncio
    async def test_precondition_failure_is_failed(self, orchestrator, add, tenants, fake_ghl, store):
        add(
            Customer(id="cust-x", organization_id=TENANT_ID, name="X", email="x@example.com"),
            Job(id="job-x", organization_id=TENANT_ID, customer_id="cust-x"),
        )

        with pytest.raises(CustomerNotSynced):
            await orchestrator.push_opportunity(TENANT_ID, "job-x")

        run = store.latest_run(TENANT_ID, EntityType.OPPORTUNITIES)
        assert run.status == SyncStatus.FAILED
        assert run.errors[0].kind == ErrorKind.PREREQUISITE
        assert fake_ghl.requests == []

    @pytest.mark.asyncio
    async def test_missing_calendar_is_failed(self, orchestrator, tenants, store, fake_ghl):
        start = datetime(2024, 5, 1, tzinfo=timezone.utc)

        with pytest.raises(NotConfigured):
            await orchestrator.sync_calendar(OTHER_TENANT_ID, start, start + timedelta(days=1))

        run = store.latest_run(OTHER_TENANT_ID, EntityType.APPOINTMENTS)
        assert run.status == SyncStatus.FAILED
        assert fake_ghl.requests == []

    @pytest.mark.asyncio
    async def test_remote_rejection_is_failed(self, orchestrator, add, customer, fake_ghl, store):
        add(Job(id="job-1", organization_id=TENANT_ID, customer_id=customer.id))
        fake_ghl.failures = [400]

        with pytest.raises(RemoteRejected):
            await orchestrator.push_opportunity(TENANT_ID, "job-1")

        run = store.latest_run(TENANT_ID, EntityType.OPPORTUNITIES)
        assert run.status == SyncStatus.FAILED
        assert run.errors[0].kind == ErrorKind.REMOTE
        assert store.get_job(TENANT_ID, "job-1").ghl_opportunity_id is None

    @pytest.mark.asyncio
    async def test_remote_rejection_alert_is_sent_after_lock_release(
        self, ghl, store, add, customer, fake_ghl
    ):
        lock_held_at_alert = []

        class RecordingNotifier(SlackNotifier):
            async def send_error(self, error, function_name, severity=None, context=None):
                lock_held_at_alert.append(
                    orchestrator.locks.is_held(TENANT_ID, EntityType.OPPORTUNITIES)
                )

        orchestrator = SyncOrchestrator(
            store, ghl, timeout_seconds=30, notifier=RecordingNotifier(webhook_url="")
        )
        add(Job(id="job-1", organization_id=TENANT_ID, customer_id=customer.id))
        fake_ghl.failures = [400]

        with pytest.raises(RemoteRejected):
            await orchestrator.push_opportunity(TENANT_ID, "job-1")

        assert lock_held_at_alert == [False]

    @pytest.mark.asyncio
    async def test_unknown_tenant_creates_no_run(self, orchestrator, store):
        with pytest.raises(RecordNotFound):
            await orchestrator.sync_contacts("nope")
        assert store.latest_run("nope", EntityType.CONTACTS) is None

    @pytest.mark.asyncio
    async def test_repeated_push_is_skipped(self, orchestrator, add, customer, fake_ghl):
        add(Job(id="job-1", organization_id=TENANT_ID, customer_id=customer.id))

        first, first_id, created = await orchestrator.push_opportunity(TENANT_ID, "job-1")
        second, second_id, created_again = await orchestrator.push_opportunity(TENANT_ID, "job-1")

        assert (created, created_again) == (True, False)
        assert first_id == second_id
        assert (second.status, second.skipped) == (SyncStatus.SUCCEEDED, 1)
        assert first.result["externalOpportunityId"] == first_id
        assert len(fake_ghl.requests_to("POST", "/opportunities/")) == 1


class TestWorkflows:
    @pytest.mark.asyncio
    async def test_explicit_workflow(self, orchestrator, tenants, fake_ghl):
        triggered, error = await orchestrator.trigger_workflow(
            TENANT_ID, "c_jane", workflow_id="wf_1", custom_data={"jobId": "job-1"}
        )

        assert (triggered, error) == (True, None)
        call = fake_ghl.workflow_calls[0]
        assert call["path"] == "/workflows/wf_1/subscribe"
        assert call["contactId"] == "c_jane"
        assert call["customData"] == {"jobId": "job-1"}

    @pytest.mark.asyncio
    async def test_workflow_from_event_name(self, orchestrator, tenants, fake_ghl):
        await orchestrator.trigger_workflow(TENANT_ID, "c_jane", event="estimate_sent")
        assert fake_ghl.workflow_calls[0]["path"] == "/workflows/wf_estimate/subscribe"

    @pytest.mark.asyncio
    async def test_unmapped_event_is_not_configured(self, orchestrator, tenants, fake_ghl):
        with pytest.raises(NotConfigured):
            await orchestrator.trigger_workflow(TENANT_ID, "c_jane", event="invoice_paid")
        with pytest.raises(NotConfigured):
            await orchestrator.trigger_workflow(TENANT_ID, "c_jane")
        assert fake_ghl.requests == []

    @pytest.mark.asyncio
    async def test_remote_failure_is_reported_not_raised(self, orchestrator, tenants, fake_ghl, store):
        fake_ghl.workflow_status = 500

        triggered, error = await orchestrator.trigger_workflow(TENANT_ID, "c_jane", workflow_id="wf_1")

        assert triggered is False
        assert error
        assert len(fake_ghl.workflow_calls) == 5
        # no lock, no run
        assert store.latest_run(TENANT_ID, EntityType.CONTACTS) is None

    @pytest.mark.asyncio
    async def test_business_event_for_synced_customer(self, orchestrator, customer, fake_ghl):
        sent = await orchestrator.notify_business_event(
            TENANT_ID, "estimate_sent", customer.id, {"estimateId": "est-1"}
        )

        assert sent is True
        assert fake_ghl.workflow_calls[0]["contactId"] == "c_jane"

    @pytest.mark.asyncio
    async def test_business_event_is_best_effort(self, orchestrator, add, customer, fake_ghl):
        add(Customer(id="cust-x", organization_id=TENANT_ID, name="X"))

        assert await orchestrator.notify_business_event(TENANT_ID, "estimate_sent", "cust-x") is False
        assert await orchestrator.notify_business_event(TENANT_ID, "invoice_paid", customer.id) is False
        assert await orchestrator.notify_business_event(TENANT_ID, "estimate_sent", "missing") is False
        assert fake_ghl.workflow_calls == []

        fake_ghl.workflow_status = 400
        assert await orchestrator.notify_business_event(TENANT_ID, "estimate_sent", customer.id) is False


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_contact_event_creates_customer(self, orchestrator, tenants, store):
        event = GHLWebhookEvent(
            type="contact.created",
            locationId="loc_1",
            contact={"id": "c_new", "firstName": "Ned", "lastName": "Ray", "email": "ned@x.com"},
        )

        run = await orchestrator.handle_webhook(event)

        assert (run.entity_type, run.created) == (EntityType.CONTACTS, 1)
        assert store.customer_by_contact_id(TENANT_ID, "c_new").name == "Ned Ray"

    @pytest.mark.asyncio
    async def test_appointment_event_is_reconciled(self, orchestrator, customer, store):
        event = GHLWebhookEvent(
            type="appointment.created",
            locationId="loc_1",
            appointment={
                "id": "evt_9",
                "contactId": "c_jane",
                "title": "Inspection",
                "startTime": "2024-05-01T15:00:00Z",
            },
        )

        run = await orchestrator.handle_webhook(event)

        assert run.created == 1
        appointment = store.appointment_by_event_id(TENANT_ID, "evt_9")
        assert appointment.customer_id == customer.id

    @pytest.mark.asyncio
    async def test_appointment_deleted(self, orchestrator, add, tenants, store):
        add(
            Appointment(
                id="appt-1",
                organization_id=TENANT_ID,
                start_time=datetime(2024, 5, 1, 15, tzinfo=timezone.utc),
                ghl_event_id="evt_9",
            )
        )
        event = GHLWebhookEvent(
            type="appointment.deleted", locationId="loc_1", appointment={"id": "evt_9"}
        )

        run = await orchestrator.handle_webhook(event)
        again = await orchestrator.handle_webhook(event)

        assert (run.updated, run.result["deleted"]) == (1, True)
        assert (again.skipped, again.result["deleted"]) == (1, False)
        assert store.appointment_by_event_id(TENANT_ID, "evt_9") is None

    @pytest.mark.asyncio
    async def test_deleted_event_without_id(self, orchestrator, tenants):
        event = GHLWebhookEvent(type="appointment.deleted", locationId="loc_1", appointment={})
        with pytest.raises(MappingError):
            await orchestrator.handle_webhook(event)

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_ignored(self, orchestrator, tenants, store):
        event = GHLWebhookEvent(type="note.created", locationId="loc_1")
        assert await orchestrator.handle_webhook(event) is None
        assert store.latest_run(TENANT_ID, EntityType.CONTACTS) is None

    @pytest.mark.asyncio
    async def test_unknown_location(self, orchestrator, tenants):
        event = GHLWebhookEvent(type="contact.created", locationId="loc_x", contact={"id": "c1"})
        with pytest.raises(RecordNotFound):
            await orchestrator.handle_webhook(event)


class TestLookups:
    @pytest.mark.asyncio
    async def test_list_calendars(self, orchestrator, tenants):
        result = await orchestrator.list_calendars(TENANT_ID)

        assert [c["id"] for c in result["calendars"]] == ["cal_1"]
        assert result["configuredCalendarId"] == "cal_1"

    @pytest.mark.asyncio
    async def test_connection_ok(self, orchestrator, tenants, fake_ghl):
        assert await orchestrator.test_connection(TENANT_ID) == {
            "success": True,
            "status": "connected",
        }
        assert fake_ghl.requests[0].url.params["limit"] == "1"

    @pytest.mark.asyncio
    async def test_connection_rejected(self, orchestrator, tenants, fake_ghl):
        fake_ghl.failures = [401]

        result = await orchestrator.test_connection(TENANT_ID)

        assert result["success"] is False
        assert result["status"] == "failed"
        assert result["error"]


class TestScheduledSyncs:
    @pytest.mark.asyncio
    async def test_every_configured_tenant_is_synced(self, orchestrator, tenants, store, fake_ghl):
        await orchestrator.run_scheduled_syncs()

        assert store.latest_run(TENANT_ID, EntityType.CONTACTS).status == SyncStatus.SUCCEEDED
        assert store.latest_run(TENANT_ID, EntityType.APPOINTMENTS).status == SyncStatus.SUCCEEDED
        assert store.latest_run(OTHER_TENANT_ID, EntityType.CONTACTS) is not None
        # no calendar configured
        assert store.latest_run(OTHER_TENANT_ID, EntityType.APPOINTMENTS) is None

    @pytest.mark.asyncio
    async def test_running_sync_is_skipped(self, orchestrator, tenants, store):
        async with orchestrator.locks.hold(TENANT_ID, EntityType.CONTACTS):
            await orchestrator.run_scheduled_syncs()

        assert store.latest_run(TENANT_ID, EntityType.CONTACTS) is None
        assert store.latest_run(OTHER_TENANT_ID, EntityType.CONTACTS) is not None

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_other_tenants(self, orchestrator, tenants, store, fake_ghl):
        fake_ghl.failures = [401]

        await orchestrator.run_scheduled_syncs()

        assert store.latest_run(TENANT_ID, EntityType.CONTACTS).status == SyncStatus.FAILED
        assert store.latest_run(OTHER_TENANT_ID, EntityType.CONTACTS).status == SyncStatus.SUCCEEDED
