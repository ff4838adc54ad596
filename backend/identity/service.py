"""
Identity - Service Layer

Registration and update workflows for users and patients:
- Registration (creates user + demographics, optionally promotes to patient)
- Update (merges an incoming representation into the persisted record)
- Activation toggles (enable/disable, external account kept in step)
- Paged listing and search

Every public write runs as one transaction. External collaborators
(FHIR publisher, account activation) are called only after the commit and
their failures are logged, never raised.
"""

import uuid
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from config import Settings
from sentry_integration import capture_exception
from services.account_activation import AccountActivationClient
from services.fhir_publisher import FhirPublisherClient
from services.errors import ExternalServiceError

from .models import UserDB, DemographicsDB, PatientDB, PATIENT_ROLE
from .schemas import UserCreate, UserUpdate, PageResult
from .repository import IdentityRepository
from .merge import DemographicsMergeEngine
from .mrn import MrnIssuer
from .fhir import to_fhir_patient
from .exceptions import (
    UserNotFound,
    MissingEmail,
    UserActivationNotFound,
    UniquenessConflict,
)

logger = logging.getLogger(__name__)


# ==================== AUDIT EVENTS ====================

class IdentityAuditEvent:
    """Audit event types for identity operations."""
    USER_REGISTERED = "user.registered"
    USER_UPDATED = "user.updated"
    USER_ACTIVATED = "user.activated"
    USER_ENABLED = "user.enabled"
    USER_DISABLED = "user.disabled"
    PATIENT_CREATED = "patient.created"
    PATIENT_PUBLISHED = "patient.published"
    RELATIONSHIP_CREATED = "relationship.created"


PII_FIELDS = ('ssn', 'identifiers', 'email', 'telecoms', 'addresses', 'birth_date', 'name', 'mrn')


def log_identity_event(
    event_type: str,
    user_id: Optional[str],
    details: Dict[str, Any],
    success: bool = True
):
    """
    Log an identity operation for the audit trail.

    Only ids and counts are logged; identifier values, contact points and
    names are dropped.
    """
    safe_details = {k: v for k, v in details.items() if k not in PII_FIELDS}

    log_entry = {
        "event": event_type,
        "user_id": user_id,
        "details": safe_details,
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

    if success:
        logger.info(f"Identity event: {event_type} for user {user_id}", extra=log_entry)
    else:
        logger.warning(f"Identity event FAILED: {event_type} for user {user_id}", extra=log_entry)


class UserService:
    """
    User Service - registration, update and activation of identities.

    Ensures:
    - No duplicate (value, system) identifiers
    - At most one SSN per user, at most one patient per user
    - Nothing is persisted when any step of a workflow fails
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        activation_client: Optional[AccountActivationClient] = None,
        publisher: Optional[FhirPublisherClient] = None,
        mrn_issuer: Optional[MrnIssuer] = None,
    ):
        self.db = db
        self.settings = settings
        self.repository = IdentityRepository(db)
        self.merge_engine = DemographicsMergeEngine(self.repository, settings.SSN_IDENTIFIER_SYSTEM)
        self.mrn_issuer = mrn_issuer or MrnIssuer(settings.MRN_PREFIX)
        self.activation_client = activation_client or AccountActivationClient(
            settings.ACTIVATION_SERVICE_URL, timeout=settings.EXTERNAL_CALL_TIMEOUT
        )
        self.publisher = publisher or FhirPublisherClient(
            settings.FHIR_SERVER_URL, timeout=settings.EXTERNAL_CALL_TIMEOUT
        )

    @asynccontextmanager
    async def _transaction(self):
        """Commit on success; roll back and re-raise on any error."""
        try:
            yield
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            # Driver messages echo the conflicting values; only the constraint is logged
            constraint = getattr(e.orig, "constraint_name", None)
            logger.warning(f"Uniqueness violation ({type(e.orig).__name__}, constraint={constraint})")
            raise UniquenessConflict() from e
        except Exception:
            await self.db.rollback()
            raise

    # ==================== REGISTRATION ====================

    async def register_user(self, incoming: UserCreate) -> UserDB:
        """
        Register a new user, promoting it to patient when the patient role is requested.

        Raises:
            IdentifierSystemNotFound: an identifier names an unknown system
            SsnSystemNotFound: an SSN is supplied but its system is not configured
            MissingEmail: patient requested without any usable email
            UniquenessConflict: a concurrent registration created the same row
        """
        patient = None

        async with self._transaction():
            # Every attribute is set up front so nothing lazy-loads after the flush
            user = UserDB(
                user_auth_id=None,
                locale=incoming.locale,
                disabled=False,
                roles=await self.repository.resolve_roles(incoming.roles),
            )
            demographics = DemographicsDB(
                first_name=incoming.first_name,
                middle_name=incoming.middle_name,
                last_name=incoming.last_name,
                birth_day=incoming.birth_date,
                gender_code=incoming.gender_code,
                identifiers=[],
                telecoms=[],
                addresses=[],
                patient=None,
            )
            user.demographics = demographics
            self.repository.add(user)

            merge_result = await self.merge_engine.merge(
                demographics,
                incoming.identifiers,
                incoming.ssn,
                incoming.telecoms,
                incoming.addresses,
            )
            await self.repository.flush()

            if PATIENT_ROLE in incoming.roles:
                patient = await self._promote_to_patient(user, incoming.registration_purpose_email)

        log_identity_event(
            IdentityAuditEvent.USER_REGISTERED,
            str(user.id),
            {"roles": user.role_codes, "patient_created": patient is not None, **merge_result.summary()},
        )

        if patient is not None:
            await self._publish(user, patient, new=True)

        return user

    async def _promote_to_patient(self, user: UserDB, registration_purpose_email: Optional[str]) -> PatientDB:
        demographics = user.demographics
        if not demographics.emails and not registration_purpose_email:
            raise MissingEmail()

        systems = await self.repository.list_system_generated_systems()
        if not systems:
            logger.warning(f"No system-generated identifier systems configured; patient for user {user.id} gets no MRN")
        self.merge_engine.issue_system_identifiers(demographics, systems, self.mrn_issuer)

        patient = PatientDB(
            demographics=demographics,
            registration_purpose_email=registration_purpose_email,
        )
        self.repository.add(patient)
        await self.repository.flush()

        await self.repository.add_relationship(user.id, patient.id, PATIENT_ROLE)
        await self.repository.flush()

        log_identity_event(
            IdentityAuditEvent.PATIENT_CREATED,
            str(user.id),
            {"patient_id": str(patient.id), "issued_identifiers": len(systems)},
        )
        return patient

    # ==================== UPDATE ====================

    async def update_user(self, user_id: uuid.UUID, incoming: UserUpdate) -> UserDB:
        """
        Merge the incoming representation into the persisted user.

        Raises:
            UserNotFound: no user with this id
            IdentifierSystemNotFound: an identifier names an unknown system
            SsnSystemNotFound: a new SSN is supplied but its system is not configured
            UniquenessConflict: the store rejected a duplicate
        """
        async with self._transaction():
            user = await self._require_user(user_id)
            demographics = user.demographics

            user.locale = incoming.locale
            user.roles = await self.repository.resolve_roles(incoming.roles)

            demographics.first_name = incoming.first_name
            demographics.middle_name = incoming.middle_name
            demographics.last_name = incoming.last_name
            demographics.birth_day = incoming.birth_date
            demographics.gender_code = incoming.gender_code

            patient = demographics.patient
            if patient is not None:
                patient.registration_purpose_email = incoming.registration_purpose_email
            elif incoming.registration_purpose_email:
                logger.debug(f"Ignoring registration purpose email for non-patient user {user.id}")

            merge_result = await self.merge_engine.merge(
                demographics,
                incoming.identifiers,
                incoming.ssn,
                incoming.telecoms,
                incoming.addresses,
            )

        log_identity_event(
            IdentityAuditEvent.USER_UPDATED,
            str(user.id),
            {"roles": user.role_codes, **merge_result.summary()},
        )

        if patient is not None:
            await self._publish(user, patient, new=False)

        return user

    # ==================== ACTIVATION ====================

    async def set_user_auth_id(self, user_id: uuid.UUID, user_auth_id: str) -> UserDB:
        """
        Record the external-auth id of an activated account.

        Raises:
            UserNotFound: no user with this id
            UniquenessConflict: the external-auth id belongs to another user
        """
        async with self._transaction():
            user = await self._require_user(user_id)
            user.user_auth_id = user_auth_id

        log_identity_event(IdentityAuditEvent.USER_ACTIVATED, str(user.id), {})
        await self._notify_activation(user, active=True)
        return user

    async def disable_user(self, user_id: uuid.UUID) -> UserDB:
        return await self._set_disabled(user_id, True)

    async def enable_user(self, user_id: uuid.UUID) -> UserDB:
        return await self._set_disabled(user_id, False)

    async def _set_disabled(self, user_id: uuid.UUID, disabled: bool) -> UserDB:
        """
        Flip the disabled flag, commit, then mirror it on the external account.

        Raises:
            UserNotFound: no user with this id
            UserActivationNotFound: the user was never activated
        """
        async with self._transaction():
            user = await self._require_user(user_id)
            if not user.user_auth_id:
                raise UserActivationNotFound()
            user.disabled = disabled

        log_identity_event(
            IdentityAuditEvent.USER_DISABLED if disabled else IdentityAuditEvent.USER_ENABLED,
            str(user.id),
            {},
        )
        await self._notify_activation(user, active=not disabled)
        return user

    # ==================== READS ====================

    async def get_user(self, user_id: uuid.UUID) -> UserDB:
        return await self._require_user(user_id)

    def page_request(self, page: Optional[int], size: Optional[int]) -> Tuple[int, int]:
        """Clamp paging input: negative page -> 0, size outside (0, max] -> default."""
        page = page if page is not None and page >= 0 else 0
        if size is None or size <= 0 or size > self.settings.PAGINATION_MAX_SIZE:
            size = self.settings.PAGINATION_DEFAULT_SIZE
        return page, size

    async def list_users(self, page: Optional[int] = None, size: Optional[int] = None) -> PageResult:
        page, size = self.page_request(page, size)
        users, total = await self.repository.list_users(page * size, size)
        return self._page(users, total, page, size)

    async def search_users_by_name(
        self,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        page: Optional[int] = None,
        size: Optional[int] = None
    ) -> PageResult:
        page, size = self.page_request(page, size)
        users, total = await self.repository.search_users_by_name(first_name, last_name, page * size, size)
        return self._page(users, total, page, size)

    async def search_users_by_demographic(
        self,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        birth_date: Optional[date] = None,
        gender_code: Optional[str] = None,
        page: Optional[int] = None,
        size: Optional[int] = None
    ) -> PageResult:
        page, size = self.page_request(page, size)
        users, total = await self.repository.search_users_by_demographic(
            first_name, last_name, birth_date, gender_code, page * size, size
        )
        return self._page(users, total, page, size)

    # ==================== HELPER METHODS ====================

    async def _require_user(self, user_id: uuid.UUID) -> UserDB:
        user = await self.repository.get_user(user_id)
        if user is None:
            raise UserNotFound()
        return user

    @staticmethod
    def _page(users: List[UserDB], total: int, page: int, size: int) -> PageResult:
        return PageResult(
            items=[u.to_dict() for u in users],
            page=page,
            size=size,
            total_elements=total,
        )

    async def _publish(self, user: UserDB, patient: PatientDB, new: bool) -> None:
        """Send the patient to the FHIR server; failures are logged only."""
        if not self.settings.FHIR_PUBLISH_ENABLED:
            return

        try:
            resource = to_fhir_patient(patient, self.settings.MRN_IDENTIFIER_SYSTEM, active=not user.disabled)
        except Exception as e:
            logger.error(f"FHIR conversion failed for patient {patient.id}: {type(e).__name__}")
            capture_exception(e, patient_id=str(patient.id))
            return

        try:
            if new:
                await self.publisher.publish_new(resource)
            else:
                await self.publisher.publish_update(resource)
        except ExternalServiceError as e:
            logger.error(f"FHIR publish failed for patient {patient.id}: {e}")
            capture_exception(e, patient_id=str(patient.id))
            return

        log_identity_event(
            IdentityAuditEvent.PATIENT_PUBLISHED,
            str(user.id),
            {"patient_id": str(patient.id), "new": new},
        )

    async def _notify_activation(self, user: UserDB, active: bool) -> None:
        """Mirror the local state on the external account; failures are logged only."""
        try:
            if active:
                await self.activation_client.activate(user.user_auth_id)
            else:
                await self.activation_client.deactivate(user.user_auth_id)
        except ExternalServiceError as e:
            logger.error(f"Account activation call failed for user {user.id} (active={active}): {e}")
            capture_exception(e, user_id=str(user.id))
