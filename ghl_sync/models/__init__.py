"""
Data models for the sync engine
"""

from .gohighlevel import (
    GHLAppointment,
    GHLCalendar,
    GHLContact,
    GHLContactsResponse,
    GHLWebhookEvent,
    RemoteAppointmentPayload,
    RemoteContactPayload,
    RemoteOpportunityPayload,
)
from .sync import (
    EntityType,
    ErrorKind,
    RunTracker,
    SyncRun,
    SyncStatus,
    TenantCRMConfig,
)

__all__ = [
    "GHLAppointment",
    "GHLCalendar",
    "GHLContact",
    "GHLContactsResponse",
    "GHLWebhookEvent",
    "RemoteAppointmentPayload",
    "RemoteContactPayload",
    "RemoteOpportunityPayload",
    "EntityType",
    "ErrorKind",
    "RunTracker",
    "SyncRun",
    "SyncStatus",
    "TenantCRMConfig",
]
