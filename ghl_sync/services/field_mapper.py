"""
Field Mapper

Pure translation between local records and GoHighLevel wire payloads.
No I/O. A failure to map one record raises MappingError for that record only.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import EmailStr, TypeAdapter, ValidationError

from ghl_sync.config import settings
from ghl_sync.error_handler import MappingError
from ghl_sync.models.gohighlevel import (
    ContactSearchCriteria,
    GHLAppointment,
    GHLContact,
    GHLCustomFieldValue,
    RemoteAppointmentPayload,
    RemoteContactPayload,
    RemoteOpportunityPayload,
)
from ghl_sync.models.sync import LocalAppointmentFields, LocalContactFields
from ghl_sync.utils.normalize import normalize_email, normalize_phone


EMAIL_ADAPTER = TypeAdapter(EmailStr)


def is_valid_email(email: str) -> bool:
    """Syntax check through email-validator; deliverability is not checked"""
    value = email.strip()
    try:
        validated = EMAIL_ADAPTER.validate_python(value)
    except ValidationError:
        return False
    # "Name <addr>" validates as addr; only bare addresses are accepted
    return validated.lower() == value.lower()


# ============================================================================
# Matching keys
# ============================================================================


def contact_search_criteria(
    email: Optional[str], phone: Optional[str]
) -> Optional[ContactSearchCriteria]:
    """
    Strongest available lookup key.

    Email takes precedence; phone is used only when there is no email.
    Name-only matching is never attempted.
    """
    email_key = normalize_email(email)
    if email_key:
        return ContactSearchCriteria(email=email_key)
    phone_key = normalize_phone(phone)
    if phone_key:
        return ContactSearchCriteria(phone=phone_key)
    return None


def contact_matches(contact: GHLContact, criteria: ContactSearchCriteria) -> bool:
    """Exact match of a remote contact against normalized criteria"""
    if criteria.email:
        return normalize_email(contact.email) == criteria.email
    return normalize_phone(contact.phone) == criteria.phone


def split_name(name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not name or not name.strip():
        return None, None
    parts = name.strip().split(None, 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


# ============================================================================
# Contacts
# ============================================================================


def to_remote_contact(customer: Any) -> RemoteContactPayload:
    """Local customer -> upsert payload"""
    email = (customer.email or "").strip() or None
    if email and not is_valid_email(email):
        raise MappingError(
            f"Customer {customer.id} has an invalid email", context={"email": email}
        )

    phone = None
    if customer.phone:
        phone = normalize_phone(customer.phone)
        if phone is None:
            raise MappingError(
                f"Customer {customer.id} has a phone number that can't be normalized",
                context={"phone": customer.phone},
            )

    name = (customer.name or "").strip() or None
    if not (name or email or phone):
        raise MappingError(f"Customer {customer.id} has no name, email or phone")

    first_name, last_name = split_name(name)
    return RemoteContactPayload(
        firstName=first_name,
        lastName=last_name,
        name=name,
        email=email,
        phone=phone,
        address1=(customer.address or "").strip() or None,
        source=settings.opportunity_source,
    )


def from_remote_contact(contact: GHLContact) -> LocalContactFields:
    """Remote contact -> customer columns; unknown remote fields are ignored"""
    email = (contact.email or "").strip() or None
    if email and not is_valid_email(email):
        raise MappingError(
            f"Contact {contact.id} has an invalid email",
            context={"contact_id": contact.id, "email": email},
        )

    phone = (contact.phone or "").strip() or None

    full_name = (contact.name or contact.contactName or "").strip()
    if not full_name:
        full_name = f"{contact.firstName or ''} {contact.lastName or ''}".strip()
    if not full_name:
        full_name = email or phone or ""
    if not full_name:
        raise MappingError(
            f"Contact {contact.id} has no name, email or phone",
            context={"contact_id": contact.id},
        )

    address_parts = [
        contact.address1,
        contact.city,
        contact.state,
        contact.postalCode,
        contact.country,
    ]
    address = ", ".join(p.strip() for p in address_parts if p and p.strip()) or None

    return LocalContactFields(name=full_name, email=email, phone=phone, address=address)


# ============================================================================
# Opportunities
# ============================================================================


def to_remote_opportunity(
    job: Any,
    total_value_cents: int,
    contact_external_id: str,
    pipeline_id: str,
    stage_id: Optional[str] = None,
) -> RemoteOpportunityPayload:
    """
    Job -> opportunity payload.

    The monetary value is already computed; it is only formatted here.
    """
    if isinstance(total_value_cents, bool) or not isinstance(total_value_cents, int):
        raise MappingError(
            f"Opportunity value for job {job.id} must be integer cents",
            context={"value": repr(total_value_cents)},
        )
    if total_value_cents < 0:
        raise MappingError(f"Opportunity value for job {job.id} is negative")
    if not contact_external_id:
        raise MappingError(f"Job {job.id} has no contact to attach the opportunity to")

    customer_name = job.customer.name if job.customer is not None else None
    name = (job.name or "").strip()
    if not name:
        name = " - ".join(p for p in (job.code, customer_name) if p)
    if not name:
        name = f"Job {job.id}"

    custom_fields = [
        GHLCustomFieldValue(key=key, field_value=str(value))
        for key, value in (
            ("job_code", job.code),
            ("job_status", job.status),
            ("start_date", job.start_date),
        )
        if value
    ]

    return RemoteOpportunityPayload(
        name=name,
        pipelineId=pipeline_id,
        pipelineStageId=stage_id,
        contactId=contact_external_id,
        monetaryValue=total_value_cents,
        source=settings.opportunity_source,
        customFields=custom_fields,
    )


# ============================================================================
# Appointments
# ============================================================================


def to_utc_iso(value: datetime) -> str:
    """Aware datetime -> UTC ISO-8601; naive datetimes are rejected"""
    if value.tzinfo is None or value.utcoffset() is None:
        raise MappingError(
            "Appointment times must be timezone-aware",
            context={"value": value.isoformat()},
        )
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_remote_time(value: Any) -> Optional[datetime]:
    """
    Parse a remote timestamp.

    Calendar events carry epoch milliseconds; appointment APIs carry
    ISO-8601 with an offset. ISO strings without an offset are rejected.
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        raise MappingError(f"Unsupported timestamp: {value!r}")

    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise MappingError(f"Unparseable timestamp: {value!r}")
        if parsed.tzinfo is None:
            raise MappingError(f"Timestamp has no timezone: {value!r}")
        return parsed.astimezone(timezone.utc)

    raise MappingError(f"Unsupported timestamp: {value!r}")


def to_remote_appointment(
    appointment: Any,
    calendar_id: str,
    contact_external_id: Optional[str],
    assigned_user_external_id: Optional[str] = None,
    default_minutes: Optional[int] = None,
) -> RemoteAppointmentPayload:
    """Local appointment -> booking payload"""
    if appointment.customer_id is None:
        raise MappingError(f"Appointment {appointment.id} has no customer")
    if not contact_external_id:
        raise MappingError(f"Appointment {appointment.id} has no CRM contact")
    if appointment.start_time is None:
        raise MappingError(f"Appointment {appointment.id} has no start time")

    start = appointment.start_time
    end = appointment.end_time
    start_iso = to_utc_iso(start)
    if end is None:
        minutes = default_minutes or settings.default_appointment_minutes
        end = start + timedelta(minutes=minutes)
    end_iso = to_utc_iso(end)
    if end <= start:
        raise MappingError(f"Appointment {appointment.id} ends before it starts")

    address = appointment.address
    if not address and appointment.customer is not None:
        address = appointment.customer.address

    return RemoteAppointmentPayload(
        calendarId=calendar_id,
        contactId=contact_external_id,
        title=appointment.title or "Appointment",
        startTime=start_iso,
        endTime=end_iso,
        appointmentStatus=appointment.status or "confirmed",
        assignedUserId=assigned_user_external_id,
        address=address or None,
        notes=appointment.notes or None,
    )


def from_remote_appointment(event: GHLAppointment) -> LocalAppointmentFields:
    """Remote calendar event -> appointment columns"""
    start = parse_remote_time(event.startTime)
    if start is None:
        raise MappingError(f"Event {event.id} has no start time")
    end = parse_remote_time(event.endTime)

    try:
        return LocalAppointmentFields(
            title=(event.title or "").strip() or "Untitled Appointment",
            description=event.description or None,
            address=event.address or None,
            notes=event.notes or None,
            status=event.appointmentStatus or "confirmed",
            start_time=start,
            end_time=end,
            ghl_calendar_id=event.calendarId,
            ghl_contact_id=event.contactId,
        )
    except ValidationError as e:
        raise MappingError(f"Event {event.id} could not be mapped: {e}")
