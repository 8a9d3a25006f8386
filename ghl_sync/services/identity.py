"""
Identity Resolver
Decides whether a local record already corresponds to a remote one so the
sync never creates duplicates or binds two local rows to one remote id.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from ghl_sync.error_handler import IdentityConflict
from ghl_sync.models.gohighlevel import ContactSearchCriteria, GHLContact
from ghl_sync.models.local import Appointment, Customer, Job
from ghl_sync.models.sync import LocalContactFields, TenantCRMConfig
from ghl_sync.services.field_mapper import contact_matches, contact_search_criteria
from ghl_sync.services.ghl_client import GoHighLevelClient
from ghl_sync.services.store import SyncStore


logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    BOUND = "bound"
    UNBOUND = "unbound"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class Resolution:
    status: ResolutionStatus
    external_id: Optional[str] = None
    candidates: tuple[str, ...] = ()

    @classmethod
    def bound(cls, external_id: str) -> "Resolution":
        return cls(ResolutionStatus.BOUND, external_id=external_id)

    @classmethod
    def unbound(cls) -> "Resolution":
        return cls(ResolutionStatus.UNBOUND)

    @classmethod
    def ambiguous(cls, candidates: Iterable[str]) -> "Resolution":
        return cls(ResolutionStatus.AMBIGUOUS, candidates=tuple(candidates))

    @property
    def is_bound(self) -> bool:
        return self.status == ResolutionStatus.BOUND

    @property
    def is_ambiguous(self) -> bool:
        return self.status == ResolutionStatus.AMBIGUOUS


class IdentityResolver:
    """
    Resolves local records to CRM ids.

    Stateless apart from reading the stored external id of the local row.
    """

    def __init__(self, client: GoHighLevelClient, store: SyncStore):
        self.client = client
        self.store = store

    # ========================================================================
    # Contacts
    # ========================================================================

    async def resolve_customer(
        self,
        tenant: TenantCRMConfig,
        customer: Customer,
        extra_candidates: Iterable[GHLContact] = (),
    ) -> Resolution:
        """
        Resolve a local customer to a CRM contact.

        1. A stored ghl_contact_id wins with no remote lookup.
        2. Otherwise search the CRM by exact email, or by phone when the
           customer has no email.
        3. No candidate -> Unbound; one -> Bound (and persisted);
           several -> Ambiguous, never guessed.

        Args:
            extra_candidates: Remote contacts already in hand (e.g. the page
                being pulled) that count as candidates if they match the key
        """
        if customer.ghl_contact_id:
            return Resolution.bound(customer.ghl_contact_id)

        criteria = contact_search_criteria(customer.email, customer.phone)
        if criteria is None:
            return Resolution.unbound()

        candidate_ids = await self._remote_candidates(tenant, criteria, extra_candidates)

        if not candidate_ids:
            return Resolution.unbound()

        if len(candidate_ids) > 1:
            logger.warning(
                f"Customer {customer.id} matches {len(candidate_ids)} GHL contacts "
                f"on {criteria.query}: {candidate_ids}"
            )
            return Resolution.ambiguous(candidate_ids)

        external_id = candidate_ids[0]
        self.store.bind_customer(tenant.tenant_id, customer.id, external_id)
        return Resolution.bound(external_id)

    async def resolve_remote_contact(
        self,
        tenant: TenantCRMConfig,
        contact: GHLContact,
        fields: LocalContactFields,
    ) -> tuple[Optional[Customer], bool]:
        """
        Find the local customer a pulled remote contact corresponds to.

        Returns:
            (customer, newly_bound). customer is None when nothing local
            matches and a new row should be created.

        Raises:
            IdentityConflict: several local rows match, the matching row is
                bound to another contact, or the CRM holds several contacts
                with the same key
        """
        tenant_id = tenant.tenant_id

        existing = self.store.customer_by_contact_id(tenant_id, contact.id)
        if existing is not None:
            return existing, False

        criteria = contact_search_criteria(fields.email, fields.phone)
        if criteria is None:
            return None, False

        matches = self.store.customers_by_match_key(tenant_id, criteria)
        if not matches:
            return None, False

        if len(matches) > 1:
            raise IdentityConflict(
                f"{len(matches)} local customers match {criteria.query}",
                context={"contact_id": contact.id, "customers": [c.id for c in matches]},
            )

        customer = matches[0]
        if customer.ghl_contact_id and customer.ghl_contact_id != contact.id:
            raise IdentityConflict(
                f"Customer {customer.id} matching {criteria.query} is bound to "
                f"contact {customer.ghl_contact_id}",
                context={"contact_id": contact.id, "customer_id": customer.id},
            )

        # Same key as the local lookup: the pulled contact must be the only
        # CRM contact holding it
        candidate_ids = await self._remote_candidates(tenant, criteria, [contact])
        if len(candidate_ids) > 1:
            raise IdentityConflict(
                f"Ambiguous match: {criteria.query} belongs to GHL contacts "
                f"{', '.join(candidate_ids)}",
                context={"contact_id": contact.id, "customer_id": customer.id},
            )

        self.store.bind_customer(tenant_id, customer.id, contact.id)
        return self.store.get_customer(tenant_id, customer.id), True

    async def _remote_candidates(
        self,
        tenant: TenantCRMConfig,
        criteria: ContactSearchCriteria,
        extra_candidates: Iterable[GHLContact] = (),
    ) -> list[str]:
        """Ids of CRM contacts exactly matching the key, searched plus in hand"""
        found = await self.client.find_contact(tenant, criteria)
        candidate_ids: list[str] = []
        for contact in [*found, *extra_candidates]:
            if contact_matches(contact, criteria) and contact.id not in candidate_ids:
                candidate_ids.append(contact.id)
        return candidate_ids

    def customer_for_contact(
        self, tenant_id: str, contact_id: Optional[str]
    ) -> Optional[Customer]:
        """Local customer bound to a remote contact; None means manual link"""
        return self.store.customer_by_contact_id(tenant_id, contact_id)

    # ========================================================================
    # Opportunities / Appointments
    # ========================================================================

    @staticmethod
    def resolve_job(job: Job) -> Resolution:
        # The CRM has no lookup for opportunities; the stored id and the
        # create idempotency key prevent duplicates.
        if job.ghl_opportunity_id:
            return Resolution.bound(job.ghl_opportunity_id)
        return Resolution.unbound()

    @staticmethod
    def resolve_appointment(appointment: Appointment) -> Resolution:
        if appointment.ghl_event_id:
            return Resolution.bound(appointment.ghl_event_id)
        return Resolution.unbound()

    def appointment_for_event(
        self, tenant_id: str, event_id: str
    ) -> Optional[Appointment]:
        return self.store.appointment_by_event_id(tenant_id, event_id)

    def technician_for(self, tenant_id: str, ghl_user_id: Optional[str]) -> Optional[str]:
        user = self.store.user_by_ghl_id(tenant_id, ghl_user_id)
        return user.id if user else None
