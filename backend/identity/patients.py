"""
Identity - Patient Access

Access decisions and patient lookups driven by the relationship ledger.
Patients are addressed by MRN; users by their external-auth id.
"""

import uuid
import logging
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from config import Settings

from .models import UserDB, PatientDB
from .repository import IdentityRepository
from .exceptions import UserNotFound, PatientNotFound, UniquenessConflict
from .service import log_identity_event, IdentityAuditEvent

logger = logging.getLogger(__name__)


class PatientService:
    """
    Patient Service - relationship linkage and access evaluation.
    """

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.settings = settings
        self.repository = IdentityRepository(db)

    @property
    def mrn_system_code(self) -> str:
        return self.settings.MRN_IDENTIFIER_SYSTEM

    # ==================== ACCESS DECISION ====================

    async def access_decision(self, user_auth_id: str, patient_mrn: str) -> bool:
        """
        Whether the user may act on the patient.

        True iff any relationship row exists for the pair, whatever its role.

        Raises:
            UserNotFound: no enabled user with this external-auth id
            PatientNotFound: no patient carries this MRN
        """
        user = await self._require_active_user(user_auth_id)
        patient = await self._require_patient_by_mrn(patient_mrn)
        return await self.repository.relationship_exists(user.id, patient.id)

    # ==================== LOOKUPS ====================

    async def get_patient_by_mrn(self, mrn: str, user_auth_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Get a patient by MRN, optionally on behalf of a user.

        When user_auth_id is given and the user has no relationship to the
        patient, the patient is reported as not found.
        """
        patient = await self._require_patient_by_mrn(mrn)

        if user_auth_id is not None:
            user = await self._require_active_user(user_auth_id)
            if not await self.repository.relationship_exists(user.id, patient.id):
                raise PatientNotFound()

        return patient.to_dict(self.mrn_system_code)

    async def get_patients_by_user_auth_id(self, user_auth_id: str) -> List[Dict[str, Any]]:
        """Every patient linked to the user, each with the role of the link."""
        user = await self._require_active_user(user_auth_id)
        rows = await self.repository.list_relationships_for_user(user.id)
        return [
            {**row.patient.to_dict(self.mrn_system_code), "relationship": row.role_code}
            for row in rows
        ]

    # ==================== RELATIONSHIP LINKAGE ====================

    async def create_relationship(self, user_id: uuid.UUID, patient_id: uuid.UUID, role_code: str) -> Dict[str, Any]:
        """
        Link a user to a patient in a role; idempotent per (user, patient, role).

        Raises:
            UserNotFound, PatientNotFound: either side is missing
            UniquenessConflict: a concurrent call inserted the same row
        """
        try:
            user = await self.repository.get_user(user_id)
            if user is None:
                raise UserNotFound()
            patient = await self.repository.get_patient(patient_id)
            if patient is None:
                raise PatientNotFound()

            _, created = await self.repository.add_relationship(user.id, patient.id, role_code)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise UniquenessConflict() from e
        except Exception:
            await self.db.rollback()
            raise

        if created:
            log_identity_event(
                IdentityAuditEvent.RELATIONSHIP_CREATED,
                str(user.id),
                {"patient_id": str(patient.id), "role": role_code},
            )

        return {
            "user_id": str(user.id),
            "patient_id": str(patient.id),
            "role": role_code,
            "created": created,
        }

    # ==================== HELPER METHODS ====================

    async def _require_active_user(self, user_auth_id: str) -> UserDB:
        user = await self.repository.get_active_user_by_auth_id(user_auth_id)
        if user is None:
            raise UserNotFound()
        return user

    async def _require_patient_by_mrn(self, mrn: str) -> PatientDB:
        patient = await self.repository.find_patient_by_mrn(mrn, self.mrn_system_code)
        if patient is None:
            raise PatientNotFound()
        return patient
