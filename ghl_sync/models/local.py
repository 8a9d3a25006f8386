"""
Local Store Models

SQLAlchemy tables for the application records the sync engine reads and
writes. Only the columns the sync depends on are modelled.
"""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from ghl_sync.database import Base, UTCDateTime, utcnow
from ghl_sync.utils.normalize import normalize_email, normalize_phone


def new_id() -> str:
    return str(uuid.uuid4())


class Organization(Base):
    """Tenant. Every sync operation is scoped to one organization."""

    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    ghl_location_id = Column(String(64), nullable=True, unique=True, index=True)
    ghl_pipeline_id = Column(String(64), nullable=True)
    ghl_default_stage_id = Column(String(64), nullable=True)
    ghl_calendar_id = Column(String(64), nullable=True)
    # business event name -> workflow id, e.g. {"estimate_sent": "wf_123"}
    ghl_workflow_ids = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class User(Base):
    """Team member / technician"""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("organization_id", "ghl_user_id", name="uq_user_org_ghl_user"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    ghl_user_id = Column(String(64), nullable=True)


class Customer(Base):
    """LocalContact"""

    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "ghl_contact_id", name="uq_customer_org_ghl_contact"
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False, default="")
    email = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    address = Column(Text, nullable=True)
    ghl_contact_id = Column(String(64), nullable=True)

    # Normalized copies used only for identity matching
    email_match_key = Column(String(255), nullable=True, index=True)
    phone_match_key = Column(String(32), nullable=True, index=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Job(Base):
    """Job; its budget rows produce the opportunity value pushed to the CRM"""

    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "ghl_opportunity_id", name="uq_job_org_ghl_opportunity"
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True)
    code = Column(String(64), nullable=True)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String(64), nullable=True)
    start_date = Column(String(32), nullable=True)
    ghl_opportunity_id = Column(String(64), nullable=True)

    customer = relationship("Customer", lazy="joined")
    budgets = relationship("JobBudget", lazy="selectin", order_by="JobBudget.id")


class JobBudget(Base):
    """Budget line of a job"""

    __tablename__ = "job_budgets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=False, index=True)
    description = Column(String(255), nullable=True)
    qty_budget = Column(Numeric(14, 4), nullable=False, default=0)
    unit_price_budget = Column(Numeric(14, 4), nullable=False, default=0)


class Appointment(Base):
    """LocalAppointment"""

    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "ghl_event_id", name="uq_appointment_org_ghl_event"
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True)
    assigned_user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    title = Column(String(255), nullable=False, default="Untitled Appointment")
    description = Column(Text, nullable=True)
    address = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default="confirmed")
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=True)

    ghl_event_id = Column(String(64), nullable=True)
    ghl_calendar_id = Column(String(64), nullable=True)
    # Remote contact of a pulled event whose customer was never synced
    ghl_contact_id = Column(String(64), nullable=True)

    customer = relationship("Customer", lazy="joined")
    assigned_user = relationship("User", lazy="joined")


class SyncRunRecord(Base):
    """Audit row for one sync operation invocation"""

    __tablename__ = "sync_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(String(36), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    finished_at = Column(UTCDateTime, nullable=True)

    processed = Column(Integer, nullable=False, default=0)
    created = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)

    errors = Column(JSON, nullable=False, default=list)
    result = Column(JSON, nullable=False, default=dict)


@event.listens_for(Customer, "before_insert")
@event.listens_for(Customer, "before_update")
def _refresh_match_keys(mapper, connection, target: Customer) -> None:
    target.email_match_key = normalize_email(target.email)
    target.phone_match_key = normalize_phone(target.phone)
