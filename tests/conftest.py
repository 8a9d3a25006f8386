"""Shared fixtures: in-memory store, fake GoHighLevel API and wired services.

Provides:
- SQLite in-memory engine with all tables, one per test
- A FakeGHL API served through httpx.MockTransport
- GoHighLevelClient with recorded (not real) backoff sleeps
- Two tenants: org-1 (fully configured) and org-2 (location only)
"""

import json
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest

from ghl_sync.database import create_db_engine, create_session_factory, init_db
from ghl_sync.error_handler import SlackNotifier
from ghl_sync.models.local import Customer, Organization
from ghl_sync.services.ghl_client import GoHighLevelClient
from ghl_sync.services.operations import SyncOperations
from ghl_sync.services.orchestrator import SyncOrchestrator
from ghl_sync.services.rate_limiter import TokenBucket
from ghl_sync.services.store import SyncStore


TENANT_ID = "org-1"
OTHER_TENANT_ID = "org-2"


class FakeGHL:
    """Minimal in-memory stand-in for the GoHighLevel REST API"""

    def __init__(self):
        self.contacts: list[dict] = []
        self.events: list[dict] = []
        self.calendars: list[dict] = [{"id": "cal_1", "name": "Service Calls"}]
        self.requests: list[httpx.Request] = []
        self.opportunities: dict[str, dict] = {}
        self.appointments: dict[str, dict] = {}
        self.workflow_calls: list[dict] = []

        # Status codes returned (in order) before normal handling resumes
        self.failures: list[int] = []
        self.appointment_rejection: Optional[tuple[int, dict]] = None
        self.workflow_status: int = 200

    def add_contact(self, contact_id: str, **fields) -> dict:
        contact = {"id": contact_id, "locationId": "loc_1", **fields}
        self.contacts.append(contact)
        return contact

    def requests_to(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.failures:
            status = self.failures.pop(0)
            return httpx.Response(status, json={"message": f"simulated {status}"})

        path = request.url.path
        params = request.url.params
        body = json.loads(request.content) if request.content else {}

        if request.method == "GET" and path == "/contacts/":
            return self._contacts(params)

        if request.method == "POST" and path == "/contacts/upsert":
            return httpx.Response(200, json={"contact": {"id": "c_upserted", **body}})

        if request.method == "POST" and path == "/opportunities/":
            key = request.headers.get("Idempotency-Key") or f"anon-{len(self.opportunities)}"
            if key not in self.opportunities:
                self.opportunities[key] = {"id": f"opp_{len(self.opportunities) + 1}", **body}
            return httpx.Response(201, json={"opportunity": self.opportunities[key]})

        if request.method == "POST" and path == "/calendars/events/appointments":
            if self.appointment_rejection:
                status, payload = self.appointment_rejection
                return httpx.Response(status, json=payload)
            key = request.headers.get("Idempotency-Key") or f"anon-{len(self.appointments)}"
            if key not in self.appointments:
                self.appointments[key] = {"id": f"evt_{len(self.appointments) + 1}", **body}
            return httpx.Response(201, json=self.appointments[key])

        if request.method == "GET" and path == "/calendars/events":
            return httpx.Response(200, json={"events": self.events})

        if request.method == "GET" and path == "/calendars/":
            return httpx.Response(200, json={"calendars": self.calendars})

        if request.method == "POST" and path.startswith("/workflows/"):
            self.workflow_calls.append({"path": path, **body})
            if self.workflow_status >= 400:
                return httpx.Response(self.workflow_status, json={"message": "workflow failed"})
            return httpx.Response(200, json={"succeded": True})

        return httpx.Response(404, json={"message": f"no route {request.method} {path}"})

    def _contacts(self, params) -> httpx.Response:
        query = params.get("query")
        if query:
            q = query.lower()
            found = [
                c
                for c in self.contacts
                if (c.get("email") or "").lower() == q or (c.get("phone") or "") == q
            ]
            return httpx.Response(200, json={"contacts": found, "meta": {"total": len(found)}})

        limit = int(params.get("limit", 100))
        start = 0
        after_id = params.get("startAfterId")
        if after_id:
            ids = [c["id"] for c in self.contacts]
            start = ids.index(after_id) + 1

        page = self.contacts[start : start + limit]
        more = start + limit < len(self.contacts)
        meta = {"total": len(self.contacts)}
        if more and page:
            meta["startAfterId"] = page[-1]["id"]
            meta["startAfter"] = 1700000000000 + start + len(page)
        return httpx.Response(200, json={"contacts": page, "meta": meta})


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> SyncStore:
    return SyncStore(session_factory)


@pytest.fixture
def add(session_factory):
    """Insert ORM rows directly and return them"""

    def _add(*rows):
        with session_factory() as session:
            session.add_all(rows)
            session.commit()
        return rows[0] if len(rows) == 1 else rows

    return _add


@pytest.fixture
def tenants(add):
    add(
        Organization(
            id=TENANT_ID,
            name="Acme Plumbing",
            ghl_location_id="loc_1",
            ghl_pipeline_id="pipe_1",
            ghl_default_stage_id="stage_new",
            ghl_calendar_id="cal_1",
            ghl_workflow_ids={"estimate_sent": "wf_estimate"},
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        ),
        Organization(
            id=OTHER_TENANT_ID,
            name="Beta Electric",
            ghl_location_id="loc_2",
            created_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
        ),
    )
    return TENANT_ID, OTHER_TENANT_ID


@pytest.fixture
def fake_ghl() -> FakeGHL:
    return FakeGHL()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def ghl(fake_ghl, sleeps) -> GoHighLevelClient:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return GoHighLevelClient(
        api_token="test-token",
        base_url="https://ghl.test",
        rate_limiter=TokenBucket(1000, 1000),
        transport=httpx.MockTransport(fake_ghl.handler),
        sleep=record_sleep,
    )


@pytest.fixture
def operations(ghl, store) -> SyncOperations:
    return SyncOperations(ghl, store)


@pytest.fixture
def orchestrator(ghl, store) -> SyncOrchestrator:
    return SyncOrchestrator(
        store, ghl, timeout_seconds=30, notifier=SlackNotifier(webhook_url="")
    )


@pytest.fixture
def customer(add, tenants) -> Customer:
    return add(
        Customer(
            id="cust-1",
            organization_id=TENANT_ID,
            name="Jane Doe",
            email="Jane@Example.com",
            phone="(303) 555-1234",
            address="1 Main St",
            ghl_contact_id="c_jane",
        )
    )
