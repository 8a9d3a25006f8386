"""
GoHighLevel API Client
Handles API requests to GoHighLevel for contacts, opportunities,
calendar appointments and workflow triggers.

Every call passes through a shared token bucket and is retried with
exponential backoff + jitter on transient failures (429, 5xx, network).
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from ghl_sync.config import settings
from ghl_sync.error_handler import (
    NotConfigured,
    RemoteRejected,
    SchedulingConflict,
    TransientRemoteError,
)
from ghl_sync.models.gohighlevel import (
    ContactSearchCriteria,
    GHLAppointment,
    GHLCalendar,
    GHLContact,
    GHLContactsResponse,
    GHLEventsResponse,
    RemoteAppointmentPayload,
    RemoteContactPayload,
    RemoteOpportunityPayload,
    WorkflowTriggerPayload,
)
from ghl_sync.models.sync import TenantCRMConfig
from ghl_sync.services.field_mapper import contact_matches
from ghl_sync.services.rate_limiter import TokenBucket


logger = logging.getLogger(__name__)

SLOT_UNAVAILABLE_HINTS = ("slot", "not available", "no longer available", "conflict")


def idempotency_key(tenant_id: str, entity_type: str, local_id: str) -> str:
    """Deterministic key for a create call: same local record, same key"""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"ghl-sync:{tenant_id}:{entity_type}:{local_id}"))


class GoHighLevelClient:
    """Client for GoHighLevel API"""

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        rate_limiter: Optional[TokenBucket] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self.api_token = api_token if api_token is not None else settings.ghl_api_token
        self.base_url = base_url or settings.ghl_api_base_url
        self.rate_limiter = rate_limiter or TokenBucket(
            settings.ghl_rate_limit_capacity,
            settings.ghl_rate_limit_refill_per_second,
        )
        self.max_attempts = max_attempts or settings.ghl_retry_attempts
        self.base_delay = base_delay if base_delay is not None else settings.ghl_retry_base_delay
        self.max_delay = max_delay if max_delay is not None else settings.ghl_retry_max_delay

        self._transport = transport
        self._sleep = sleep
        self._http: Optional[httpx.AsyncClient] = None

    def _headers(self, version: Optional[str] = None) -> dict:
        """Get headers for API requests"""
        if not self.api_token:
            raise NotConfigured("GoHighLevel API token is not configured")
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Version": version or settings.ghl_api_version,
        }

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.ghl_request_timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        """Close the HTTP client"""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _wait_strategy(self):
        # 0.5s, 1s, 2s, 4s ... capped; jitter stays below half the base delay
        return wait_exponential(
            multiplier=self.base_delay, max=self.max_delay
        ) + wait_random(0, self.base_delay / 2)

    # ========================================================================
    # Request plumbing
    # ========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        version: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        headers = self._headers(version)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception_type(TransientRemoteError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        data: dict = {}
        async for attempt in retrying:
            with attempt:
                data = await self._send_once(
                    method, path, operation, headers, params=params, json=json
                )
        return data

    async def _send_once(
        self,
        method: str,
        path: str,
        operation: str,
        headers: dict,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> dict:
        await self.rate_limiter.acquire()

        try:
            response = await self._client().request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.TransportError as e:
            raise TransientRemoteError(
                f"GHL {operation} failed: {type(e).__name__}: {e}",
                context={"path": path},
            )

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientRemoteError(
                f"GHL {operation} returned {status}",
                status_code=status,
                response_text=response.text,
                context={"path": path},
            )
        if status >= 400:
            logger.error(f"GHL {operation} rejected: {status} {response.text[:500]}")
            raise RemoteRejected(
                f"GHL {operation} rejected: {status}",
                status_code=status,
                response_text=response.text,
                context={"path": path},
            )

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            raise RemoteRejected(
                f"GHL {operation} returned a malformed body",
                status_code=status,
                response_text=response.text,
            )
        if not isinstance(body, dict):
            raise RemoteRejected(f"GHL {operation} returned a non-object body")
        return body

    @staticmethod
    def _extract_id(body: dict, *envelopes: str) -> str:
        for key in envelopes:
            nested = body.get(key)
            if isinstance(nested, dict) and nested.get("id"):
                return str(nested["id"])
        if body.get("id"):
            return str(body["id"])
        raise RemoteRejected("GHL response did not include an id", response_text=str(body))

    # ========================================================================
    # Contact Methods
    # ========================================================================

    async def find_contact(
        self, tenant: TenantCRMConfig, criteria: ContactSearchCriteria
    ) -> list[GHLContact]:
        """
        Search contacts and keep only exact matches on the normalized key.

        Args:
            tenant: Tenant CRM configuration (locationId)
            criteria: Email or phone lookup key

        Returns:
            All exactly-matching contacts (may be more than one)
        """
        body = await self._request(
            "GET",
            "/contacts/",
            "find_contact",
            params={
                "locationId": tenant.require("location_id"),
                "query": criteria.query,
                "limit": 20,
            },
        )
        contacts = GHLContactsResponse(**body).contacts
        return [c for c in contacts if contact_matches(c, criteria)]

    async def list_contacts(
        self,
        tenant: TenantCRMConfig,
        limit: Optional[int] = None,
        start_after_id: Optional[str] = None,
        start_after: Optional[int] = None,
    ) -> GHLContactsResponse:
        """Get one page of contacts using the startAfter/startAfterId cursor"""
        params: dict[str, Any] = {
            "locationId": tenant.require("location_id"),
            "limit": limit or settings.contact_sync_page_size,
        }
        if start_after_id:
            params["startAfterId"] = start_after_id
        if start_after is not None:
            params["startAfter"] = start_after

        body = await self._request("GET", "/contacts/", "list_contacts", params=params)
        return GHLContactsResponse(**body)

    async def upsert_contact(
        self,
        tenant: TenantCRMConfig,
        payload: RemoteContactPayload,
        idempotency_key: Optional[str] = None,
    ) -> GHLContact:
        """
        Create or update contact using upsert endpoint.
        GHL will match by email/phone based on duplicate settings.
        """
        body = await self._request(
            "POST",
            "/contacts/upsert",
            "upsert_contact",
            json={
                **payload.model_dump(exclude_none=True),
                "locationId": tenant.require("location_id"),
            },
            idempotency_key=idempotency_key,
        )
        return GHLContact(**body.get("contact", body))

    # ========================================================================
    # Opportunity Methods
    # ========================================================================

    async def create_opportunity(
        self,
        tenant: TenantCRMConfig,
        payload: RemoteOpportunityPayload,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Create a new opportunity using POST (not upsert).

        Returns:
            The new opportunity id
        """
        body = await self._request(
            "POST",
            "/opportunities/",
            "create_opportunity",
            json={
                **payload.model_dump(exclude_none=True),
                "locationId": tenant.require("location_id"),
            },
            idempotency_key=idempotency_key,
        )
        return self._extract_id(body, "opportunity")

    # ========================================================================
    # Calendar Methods
    # ========================================================================

    async def create_appointment(
        self,
        tenant: TenantCRMConfig,
        payload: RemoteAppointmentPayload,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Book an appointment on a GHL calendar.

        The CRM is the scheduling authority: a rejected slot surfaces as
        SchedulingConflict and is never retried.
        """
        try:
            body = await self._request(
                "POST",
                "/calendars/events/appointments",
                "create_appointment",
                json={
                    **payload.model_dump(exclude_none=True),
                    "locationId": tenant.require("location_id"),
                },
                version=settings.ghl_calendar_api_version,
                idempotency_key=idempotency_key,
            )
        except RemoteRejected as e:
            text = e.response_text.lower()
            if e.status_code == 409 or (
                e.status_code in (400, 422)
                and any(hint in text for hint in SLOT_UNAVAILABLE_HINTS)
            ):
                raise SchedulingConflict(
                    "GoHighLevel rejected the appointment slot",
                    status_code=e.status_code,
                    response_text=e.response_text,
                    context={"calendar_id": payload.calendarId, "start": payload.startTime},
                )
            raise
        return self._extract_id(body, "event", "appointment")

    async def list_appointments(
        self,
        tenant: TenantCRMConfig,
        start: datetime,
        end: datetime,
        calendar_id: Optional[str] = None,
    ) -> list[GHLAppointment]:
        """Get calendar events between start and end (aware datetimes)"""
        params: dict[str, Any] = {
            "locationId": tenant.require("location_id"),
            "startTime": int(start.astimezone(timezone.utc).timestamp() * 1000),
            "endTime": int(end.astimezone(timezone.utc).timestamp() * 1000),
        }
        if calendar_id:
            params["calendarId"] = calendar_id

        body = await self._request(
            "GET",
            "/calendars/events",
            "list_appointments",
            params=params,
            version=settings.ghl_calendar_api_version,
        )
        return GHLEventsResponse(**body).events

    async def list_calendars(self, tenant: TenantCRMConfig) -> list[GHLCalendar]:
        """Get the calendars of the tenant's location"""
        body = await self._request(
            "GET",
            "/calendars/",
            "list_calendars",
            params={"locationId": tenant.require("location_id")},
            version=settings.ghl_calendar_api_version,
        )
        return [GHLCalendar(**c) for c in body.get("calendars", [])]

    # ========================================================================
    # Workflow Methods
    # ========================================================================

    async def trigger_workflow(
        self,
        tenant: TenantCRMConfig,
        workflow_id: str,
        contact_external_id: str,
        custom_data: Optional[dict[str, Any]] = None,
    ) -> dict:
        """Enroll a contact in a workflow to signal a business event"""
        payload = WorkflowTriggerPayload(
            contactId=contact_external_id,
            eventStartTime=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            customData=custom_data or {},
        )
        return await self._request(
            "POST",
            f"/workflows/{workflow_id}/subscribe",
            "trigger_workflow",
            json={
                **payload.model_dump(exclude_none=True),
                "locationId": tenant.require("location_id"),
            },
        )
