"""
Local Store
Reads and writes the application tables the sync engine depends on.

Every public method runs in its own session and commits on its own, so a
batch interrupted halfway leaves the items it already processed durably
written. Returned ORM objects are detached (expire_on_commit=False) with
their relationships eagerly loaded.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ghl_sync.database import utcnow
from ghl_sync.error_handler import IdentityConflict, RecordNotFound
from ghl_sync.models.gohighlevel import ContactSearchCriteria
from ghl_sync.models.local import (
    Appointment,
    Customer,
    Job,
    Organization,
    SyncRunRecord,
    User,
)
from ghl_sync.models.sync import (
    EntityType,
    LocalAppointmentFields,
    LocalContactFields,
    RunTracker,
    SyncRun,
    SyncStatus,
    TenantCRMConfig,
)


logger = logging.getLogger(__name__)


class SyncStore:
    """Local store gateway used by the sync operations"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise IdentityConflict(
                "External id is already bound to another local record",
                context={"detail": str(e.orig)[:200]},
            )
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ========================================================================
    # Tenants
    # ========================================================================

    @staticmethod
    def _to_config(org: Organization) -> TenantCRMConfig:
        return TenantCRMConfig(
            tenant_id=org.id,
            location_id=org.ghl_location_id,
            pipeline_id=org.ghl_pipeline_id,
            default_stage_id=org.ghl_default_stage_id,
            calendar_id=org.ghl_calendar_id,
            workflow_ids=dict(org.ghl_workflow_ids or {}),
        )

    def tenant_config(self, tenant_id: str) -> TenantCRMConfig:
        with self.session() as session:
            org = session.get(Organization, tenant_id)
            if org is None:
                raise RecordNotFound(f"Unknown tenant {tenant_id}")
            return self._to_config(org)

    def tenant_by_location(self, location_id: str) -> TenantCRMConfig:
        with self.session() as session:
            org = (
                session.query(Organization)
                .filter(Organization.ghl_location_id == location_id)
                .one_or_none()
            )
            if org is None:
                raise RecordNotFound(
                    f"No organization is configured for location {location_id}"
                )
            return self._to_config(org)

    def configured_tenants(self) -> list[TenantCRMConfig]:
        """Tenants that have a CRM location id"""
        with self.session() as session:
            orgs = (
                session.query(Organization)
                .filter(Organization.ghl_location_id.isnot(None))
                .order_by(Organization.created_at)
                .all()
            )
            return [self._to_config(org) for org in orgs]

    # ========================================================================
    # Customers
    # ========================================================================

    @staticmethod
    def _customer(session: Session, tenant_id: str, customer_id: str) -> Customer:
        customer = session.get(Customer, customer_id)
        if customer is None or customer.organization_id != tenant_id:
            raise RecordNotFound(f"Customer {customer_id} not found")
        return customer

    @staticmethod
    def _customer_with_contact(
        session: Session, tenant_id: str, contact_id: str
    ) -> Optional[Customer]:
        return (
            session.query(Customer)
            .filter(
                Customer.organization_id == tenant_id,
                Customer.ghl_contact_id == contact_id,
            )
            .one_or_none()
        )

    def get_customer(self, tenant_id: str, customer_id: str) -> Customer:
        with self.session() as session:
            return self._customer(session, tenant_id, customer_id)

    def customer_by_contact_id(
        self, tenant_id: str, contact_id: Optional[str]
    ) -> Optional[Customer]:
        if not contact_id:
            return None
        with self.session() as session:
            return self._customer_with_contact(session, tenant_id, contact_id)

    def customers_by_match_key(
        self, tenant_id: str, criteria: ContactSearchCriteria
    ) -> list[Customer]:
        """Local customers whose normalized email (or phone) equals the key"""
        with self.session() as session:
            query = session.query(Customer).filter(Customer.organization_id == tenant_id)
            if criteria.email:
                query = query.filter(Customer.email_match_key == criteria.email)
            else:
                query = query.filter(Customer.phone_match_key == criteria.phone)
            return query.order_by(Customer.created_at).all()

    def create_customer(
        self,
        tenant_id: str,
        fields: LocalContactFields,
        ghl_contact_id: Optional[str] = None,
    ) -> Customer:
        with self.session() as session:
            if ghl_contact_id and self._customer_with_contact(
                session, tenant_id, ghl_contact_id
            ):
                raise IdentityConflict(
                    f"Contact {ghl_contact_id} is already bound to another customer",
                    context={"tenant_id": tenant_id, "contact_id": ghl_contact_id},
                )
            customer = Customer(
                organization_id=tenant_id,
                ghl_contact_id=ghl_contact_id,
                **fields.model_dump(),
            )
            session.add(customer)
            session.flush()
            return customer

    def update_customer(
        self, tenant_id: str, customer_id: str, fields: LocalContactFields
    ) -> bool:
        """
        Overwrite customer columns with the remote values.

        Remote fields that are empty leave the local value alone.

        Returns:
            True if any column changed
        """
        with self.session() as session:
            customer = self._customer(session, tenant_id, customer_id)
            changed = False
            for name, value in fields.model_dump(exclude_none=True).items():
                if getattr(customer, name) != value:
                    setattr(customer, name, value)
                    changed = True
            return changed

    def bind_customer(self, tenant_id: str, customer_id: str, contact_id: str) -> Customer:
        """
        Record the CRM contact id on a customer.

        Identity is sticky: a customer bound to a different contact, or a
        contact already bound to a different customer, is an IdentityConflict.
        """
        with self.session() as session:
            customer = self._customer(session, tenant_id, customer_id)
            if customer.ghl_contact_id == contact_id:
                return customer
            if customer.ghl_contact_id:
                raise IdentityConflict(
                    f"Customer {customer_id} is already bound to contact {customer.ghl_contact_id}",
                    context={"customer_id": customer_id, "contact_id": contact_id},
                )
            owner = self._customer_with_contact(session, tenant_id, contact_id)
            if owner is not None:
                raise IdentityConflict(
                    f"Contact {contact_id} is already bound to customer {owner.id}",
                    context={"customer_id": customer_id, "contact_id": contact_id},
                )
            customer.ghl_contact_id = contact_id
            logger.info(f"Bound customer {customer_id} to GHL contact {contact_id}")
            return customer

    # ========================================================================
    # Jobs
    # ========================================================================

    def get_job(self, tenant_id: str, job_id: str) -> Job:
        with self.session() as session:
            job = session.get(Job, job_id)
            if job is None or job.organization_id != tenant_id:
                raise RecordNotFound(f"Job {job_id} not found")
            return job

    def bind_job_opportunity(self, tenant_id: str, job_id: str, opportunity_id: str) -> Job:
        with self.session() as session:
            job = session.get(Job, job_id)
            if job is None or job.organization_id != tenant_id:
                raise RecordNotFound(f"Job {job_id} not found")
            if job.ghl_opportunity_id == opportunity_id:
                return job
            if job.ghl_opportunity_id:
                raise IdentityConflict(
                    f"Job {job_id} is already bound to opportunity {job.ghl_opportunity_id}"
                )
            owner = (
                session.query(Job)
                .filter(
                    Job.organization_id == tenant_id,
                    Job.ghl_opportunity_id == opportunity_id,
                )
                .one_or_none()
            )
            if owner is not None:
                raise IdentityConflict(
                    f"Opportunity {opportunity_id} is already bound to job {owner.id}"
                )
            job.ghl_opportunity_id = opportunity_id
            return job

    # ========================================================================
    # Appointments
    # ========================================================================

    @staticmethod
    def _appointment_with_event(
        session: Session, tenant_id: str, event_id: str
    ) -> Optional[Appointment]:
        return (
            session.query(Appointment)
            .filter(
                Appointment.organization_id == tenant_id,
                Appointment.ghl_event_id == event_id,
            )
            .one_or_none()
        )

    def get_appointment(self, tenant_id: str, appointment_id: str) -> Appointment:
        with self.session() as session:
            appointment = session.get(Appointment, appointment_id)
            if appointment is None or appointment.organization_id != tenant_id:
                raise RecordNotFound(f"Appointment {appointment_id} not found")
            return appointment

    def appointment_by_event_id(
        self, tenant_id: str, event_id: str
    ) -> Optional[Appointment]:
        with self.session() as session:
            return self._appointment_with_event(session, tenant_id, event_id)

    def create_appointment(
        self,
        tenant_id: str,
        fields: LocalAppointmentFields,
        ghl_event_id: str,
        customer_id: Optional[str] = None,
        assigned_user_id: Optional[str] = None,
    ) -> Appointment:
        """Insert a local appointment for a remote calendar event"""
        with self.session() as session:
            if self._appointment_with_event(session, tenant_id, ghl_event_id):
                raise IdentityConflict(
                    f"Event {ghl_event_id} is already bound to another appointment"
                )
            appointment = Appointment(
                organization_id=tenant_id,
                ghl_event_id=ghl_event_id,
                customer_id=customer_id,
                assigned_user_id=assigned_user_id,
                **fields.model_dump(),
            )
            session.add(appointment)
            session.flush()
            return appointment

    def update_appointment(
        self,
        tenant_id: str,
        appointment_id: str,
        fields: LocalAppointmentFields,
        customer_id: Optional[str] = None,
        assigned_user_id: Optional[str] = None,
    ) -> bool:
        """
        Apply remote event values to a bound appointment.

        An unresolved customer or technician never clears an existing link.
        """
        values = fields.model_dump(exclude_none=True)
        if customer_id:
            values["customer_id"] = customer_id
        if assigned_user_id:
            values["assigned_user_id"] = assigned_user_id

        with self.session() as session:
            appointment = session.get(Appointment, appointment_id)
            if appointment is None or appointment.organization_id != tenant_id:
                raise RecordNotFound(f"Appointment {appointment_id} not found")
            changed = False
            for name, value in values.items():
                if getattr(appointment, name) != value:
                    setattr(appointment, name, value)
                    changed = True
            return changed

    def bind_appointment_event(
        self,
        tenant_id: str,
        appointment_id: str,
        event_id: str,
        calendar_id: Optional[str] = None,
    ) -> Appointment:
        with self.session() as session:
            appointment = session.get(Appointment, appointment_id)
            if appointment is None or appointment.organization_id != tenant_id:
                raise RecordNotFound(f"Appointment {appointment_id} not found")
            if appointment.ghl_event_id == event_id:
                return appointment
            if appointment.ghl_event_id:
                raise IdentityConflict(
                    f"Appointment {appointment_id} is already bound to event {appointment.ghl_event_id}"
                )
            if self._appointment_with_event(session, tenant_id, event_id):
                raise IdentityConflict(
                    f"Event {event_id} is already bound to another appointment"
                )
            appointment.ghl_event_id = event_id
            if calendar_id:
                appointment.ghl_calendar_id = calendar_id
            return appointment

    def delete_appointment_by_event(self, tenant_id: str, event_id: str) -> bool:
        with self.session() as session:
            appointment = self._appointment_with_event(session, tenant_id, event_id)
            if appointment is None:
                return False
            session.delete(appointment)
            return True

    # ========================================================================
    # Users
    # ========================================================================

    def user_by_ghl_id(self, tenant_id: str, ghl_user_id: Optional[str]) -> Optional[User]:
        if not ghl_user_id:
            return None
        with self.session() as session:
            return (
                session.query(User)
                .filter(User.organization_id == tenant_id, User.ghl_user_id == ghl_user_id)
                .one_or_none()
            )

    # ========================================================================
    # Sync runs
    # ========================================================================

    def create_run(self, tenant_id: str, entity_type: EntityType) -> SyncRun:
        with self.session() as session:
            record = SyncRunRecord(
                organization_id=tenant_id,
                entity_type=EntityType(entity_type).value,
                status=SyncStatus.PENDING.value,
                errors=[],
                result={},
            )
            session.add(record)
            session.flush()
            return SyncRun.from_record(record)

    def mark_running(self, run_id: str) -> SyncRun:
        with self.session() as session:
            record = self._run(session, run_id)
            if record.status != SyncStatus.PENDING.value:
                raise ValueError(f"Sync run {run_id} is {record.status}, not pending")
            record.status = SyncStatus.RUNNING.value
            return SyncRun.from_record(record)

    def finalize_run(self, run_id: str, tracker: RunTracker) -> SyncRun:
        """Write the final status and counts; a finalized run never changes again"""
        with self.session() as session:
            record = self._run(session, run_id)
            if SyncStatus(record.status).is_final:
                raise ValueError(f"Sync run {run_id} is already {record.status}")

            status = tracker.final_status()
            record.status = status.value
            record.finished_at = utcnow()
            record.processed = tracker.processed
            record.created = tracker.created
            record.updated = tracker.updated
            record.skipped = tracker.skipped
            record.failed = tracker.failed
            record.errors = [e.model_dump(mode="json") for e in tracker.errors]
            record.result = dict(tracker.result)
            return SyncRun.from_record(record)

    def get_run(self, run_id: str) -> SyncRun:
        with self.session() as session:
            return SyncRun.from_record(self._run(session, run_id))

    def latest_run(self, tenant_id: str, entity_type: EntityType) -> Optional[SyncRun]:
        with self.session() as session:
            record = (
                session.query(SyncRunRecord)
                .filter(
                    SyncRunRecord.organization_id == tenant_id,
                    SyncRunRecord.entity_type == EntityType(entity_type).value,
                )
                .order_by(SyncRunRecord.started_at.desc())
                .first()
            )
            return SyncRun.from_record(record) if record else None

    @staticmethod
    def _run(session: Session, run_id: str) -> SyncRunRecord:
        record = session.get(SyncRunRecord, run_id)
        if record is None:
            raise RecordNotFound(f"Sync run {run_id} not found")
        return record
