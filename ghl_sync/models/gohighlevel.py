"""
GoHighLevel API Models

Pydantic models for GoHighLevel request payloads and API responses.
Only the Field Mapper builds payloads; the client only serializes them.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, Any


# ============================================================================
# Contacts
# ============================================================================


class GHLContact(BaseModel):
    """GoHighLevel Contact"""

    id: str
    locationId: Optional[str] = None

    # Basic info
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    name: Optional[str] = None  # Full name
    contactName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    # Address
    address1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postalCode: Optional[str] = None
    country: Optional[str] = None

    # Metadata
    source: Optional[str] = None
    dateAdded: Optional[str] = None
    dateUpdated: Optional[str] = None

    class Config:
        extra = "ignore"


class GHLPageMeta(BaseModel):
    """Cursor metadata returned by GET /contacts/"""

    total: Optional[int] = None
    startAfterId: Optional[str] = None
    startAfter: Optional[int] = None
    nextPageUrl: Optional[str] = None

    class Config:
        extra = "ignore"


class GHLContactsResponse(BaseModel):
    """Response from GET /contacts"""

    contacts: list[GHLContact] = Field(default_factory=list)
    meta: GHLPageMeta = Field(default_factory=GHLPageMeta)

    class Config:
        extra = "ignore"

    @property
    def has_next_page(self) -> bool:
        return bool(self.contacts) and bool(self.meta.startAfterId)


class ContactSearchCriteria(BaseModel):
    """Exact-match lookup key: email, or phone when email is absent"""

    email: Optional[str] = None
    phone: Optional[str] = None

    @model_validator(mode="after")
    def _one_key(self):
        if bool(self.email) == bool(self.phone):
            raise ValueError("exactly one of email or phone is required")
        return self

    @property
    def query(self) -> str:
        return self.email or self.phone or ""


class RemoteContactPayload(BaseModel):
    """Body for POST /contacts/upsert"""

    firstName: Optional[str] = None
    lastName: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address1: Optional[str] = None
    source: Optional[str] = None


# ============================================================================
# Opportunities
# ============================================================================


class GHLCustomFieldValue(BaseModel):
    """Custom field entry on an opportunity"""

    key: str
    field_value: str


class RemoteOpportunityPayload(BaseModel):
    """Body for POST /opportunities/"""

    name: str
    pipelineId: str
    pipelineStageId: Optional[str] = None
    status: str = "open"
    contactId: str
    monetaryValue: int  # integer minor units (cents)
    source: Optional[str] = None
    customFields: list[GHLCustomFieldValue] = Field(default_factory=list)


# ============================================================================
# Calendars / Appointments
# ============================================================================


class RemoteAppointmentPayload(BaseModel):
    """Body for POST /calendars/events/appointments"""

    calendarId: str
    contactId: str
    title: str
    startTime: str  # UTC ISO-8601
    endTime: str  # UTC ISO-8601
    appointmentStatus: str = "confirmed"
    assignedUserId: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    toNotify: bool = True


class GHLAppointment(BaseModel):
    """Calendar event as returned by GET /calendars/events and webhooks"""

    id: str
    calendarId: Optional[str] = None
    contactId: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    appointmentStatus: Optional[str] = None
    assignedUserId: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None

    # Epoch milliseconds or ISO-8601, depending on endpoint
    startTime: Any = None
    endTime: Any = None

    class Config:
        extra = "ignore"


class GHLEventsResponse(BaseModel):
    """Response from GET /calendars/events"""

    events: list[GHLAppointment] = Field(default_factory=list)

    class Config:
        extra = "ignore"


class GHLCalendar(BaseModel):
    """Calendar summary from GET /calendars/"""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    isActive: Optional[bool] = None

    class Config:
        extra = "ignore"


# ============================================================================
# Workflows
# ============================================================================


class WorkflowTriggerPayload(BaseModel):
    """Body for POST /workflows/{workflowId}/subscribe"""

    contactId: str
    eventStartTime: str
    customData: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Webhooks
# ============================================================================


class GHLWebhookEvent(BaseModel):
    """Inbound webhook envelope"""

    type: str
    locationId: str
    contact: Optional[dict[str, Any]] = None
    appointment: Optional[dict[str, Any]] = None

    class Config:
        extra = "ignore"
