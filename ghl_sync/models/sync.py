"""
Sync Models

Tenant CRM configuration, mapped local field sets and the SyncRun summary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any

from pydantic import BaseModel, Field

from ghl_sync.error_handler import NotConfigured


class EntityType(str, Enum):
    """Lock / audit scope of a sync operation"""

    CONTACTS = "contacts"
    OPPORTUNITIES = "opportunities"
    APPOINTMENTS = "appointments"
    WORKFLOWS = "workflows"


class SyncStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (
            SyncStatus.SUCCEEDED,
            SyncStatus.PARTIAL_FAILURE,
            SyncStatus.FAILED,
        )


class ErrorKind(str, Enum):
    MAPPING = "mapping"
    CONFLICT = "conflict"
    REMOTE = "remote"
    PREREQUISITE = "prerequisite"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TenantCRMConfig:
    """CRM identifiers configured for one tenant"""

    tenant_id: str
    location_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    default_stage_id: Optional[str] = None
    calendar_id: Optional[str] = None
    workflow_ids: dict[str, str] = field(default_factory=dict)

    def require(self, attr: str) -> str:
        """Return a configured identifier or fail fast with NotConfigured"""
        value = getattr(self, attr)
        if not value:
            raise NotConfigured(
                f"Tenant {self.tenant_id} has no GoHighLevel {attr.replace('_', ' ')} configured",
                context={"tenant_id": self.tenant_id, "missing": attr},
            )
        return value

    def workflow_for(self, event: str) -> str:
        workflow_id = self.workflow_ids.get(event)
        if not workflow_id:
            raise NotConfigured(
                f"Tenant {self.tenant_id} has no workflow configured for '{event}'",
                context={"tenant_id": self.tenant_id, "event": event},
            )
        return workflow_id


class LocalContactFields(BaseModel):
    """Customer columns produced from a remote contact"""

    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class LocalAppointmentFields(BaseModel):
    """Appointment columns produced from a remote calendar event"""

    title: str
    description: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    status: str = "confirmed"
    start_time: datetime
    end_time: Optional[datetime] = None
    ghl_calendar_id: Optional[str] = None
    ghl_contact_id: Optional[str] = None


class SyncItemError(BaseModel):
    """Per-item error descriptor kept on the run"""

    item_id: Optional[str] = None
    kind: ErrorKind
    message: str


class SyncRun(BaseModel):
    """Read model of a sync_runs row"""

    id: str
    tenant_id: str
    entity_type: EntityType
    status: SyncStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[SyncItemError] = Field(default_factory=list)
    result: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record) -> "SyncRun":
        return cls(
            id=record.id,
            tenant_id=record.organization_id,
            entity_type=EntityType(record.entity_type),
            status=SyncStatus(record.status),
            started_at=record.started_at,
            finished_at=record.finished_at,
            processed=record.processed,
            created=record.created,
            updated=record.updated,
            skipped=record.skipped,
            failed=record.failed,
            errors=[SyncItemError(**e) for e in record.errors or []],
            result=dict(record.result or {}),
        )


@dataclass
class RunTracker:
    """Mutable counters an operation accumulates while it runs"""

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[SyncItemError] = field(default_factory=list)
    result: dict[str, Any] = field(default_factory=dict)
    aborted: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.skipped

    def record_failure(
        self, item_id: Optional[str], kind: ErrorKind, message: str
    ) -> None:
        self.failed += 1
        self.errors.append(SyncItemError(item_id=item_id, kind=kind, message=message))

    def abort(self, kind: ErrorKind, message: str, item_id: Optional[str] = None) -> None:
        """
        Record an error that stopped the whole operation.

        An item that was taken for processing but never finished counts as
        failed; a precondition error raised before any item leaves counts alone.
        """
        self.aborted = True
        if self.processed > self.succeeded + self.failed:
            self.failed += 1
        self.errors.append(SyncItemError(item_id=item_id, kind=kind, message=message))

    def cancel(self) -> None:
        self.cancelled = True
        self.errors.append(
            SyncItemError(
                kind=ErrorKind.CANCELLED,
                message="Run was cancelled before it completed",
            )
        )

    def final_status(self) -> SyncStatus:
        if self.cancelled:
            return SyncStatus.PARTIAL_FAILURE
        if self.aborted:
            return SyncStatus.PARTIAL_FAILURE if self.succeeded else SyncStatus.FAILED
        if self.failed:
            return SyncStatus.PARTIAL_FAILURE
        return SyncStatus.SUCCEEDED
