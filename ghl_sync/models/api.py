"""
HTTP request / response schemas for the sync endpoints.
"""

from datetime import datetime
from typing import Optional, Any

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SyncContactsRequest(CamelModel):
    tenant_id: str = Field(alias="tenantId")
    location_id: Optional[str] = Field(default=None, alias="locationId")


class SyncCountsResponse(CamelModel):
    run_id: str = Field(serialization_alias="runId")
    status: str
    processed: int
    created: int
    updated: int
    skipped: int
    failed: int
    errors: list[dict[str, Any]] = Field(default_factory=list)


class PushOpportunityRequest(CamelModel):
    tenant_id: str = Field(alias="tenantId")
    job_id: str = Field(alias="jobId")
    pipeline_id: Optional[str] = Field(default=None, alias="pipelineId")
    stage_id: Optional[str] = Field(default=None, alias="stageId")


class PushOpportunityResponse(CamelModel):
    external_opportunity_id: str = Field(serialization_alias="externalOpportunityId")
    run_id: str = Field(serialization_alias="runId")
    created: bool


class PushAppointmentRequest(CamelModel):
    tenant_id: str = Field(alias="tenantId")
    appointment_id: str = Field(alias="appointmentId")
    calendar_id: Optional[str] = Field(default=None, alias="calendarId")


class PushAppointmentResponse(CamelModel):
    external_appointment_id: str = Field(serialization_alias="externalAppointmentId")
    run_id: str = Field(serialization_alias="runId")
    created: bool


class SyncCalendarRequest(CamelModel):
    tenant_id: str = Field(alias="tenantId")
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")
    calendar_id: Optional[str] = Field(default=None, alias="calendarId")


class TriggerWorkflowRequest(CamelModel):
    tenant_id: str = Field(alias="tenantId")
    contact_external_id: str = Field(alias="contactExternalId")
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    event: Optional[str] = None
    custom_data: dict[str, Any] = Field(default_factory=dict, alias="customData")


class TriggerWorkflowResponse(CamelModel):
    triggered: bool
    error: Optional[str] = None


class ConnectionProbeRequest(CamelModel):
    tenant_id: str = Field(alias="tenantId")
