"""
Identity - Persistence Layer

Natural-key lookups and idempotent creation for the identity tables.
The repository never commits; the calling service owns the transaction.
"""

import uuid
import logging
from datetime import date
from typing import Optional, List, Tuple, Iterable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, or_, func

from .models import (
    UserDB,
    RoleDB,
    DemographicsDB,
    IdentifierDB,
    IdentifierSystemDB,
    PatientDB,
    UserPatientRelationshipDB,
    demographics_identifiers,
)
from .exceptions import IdentifierSystemNotFound

logger = logging.getLogger(__name__)


def _contains(term: str) -> str:
    """LIKE pattern matching term literally anywhere in the value."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class IdentityRepository:
    """
    Store access for users, identifiers, patients and the relationship ledger.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== USERS ====================

    async def get_user(self, user_id: uuid.UUID) -> Optional[UserDB]:
        result = await self.db.execute(select(UserDB).where(UserDB.id == user_id))
        return result.scalar_one_or_none()

    async def get_active_user_by_auth_id(self, user_auth_id: str) -> Optional[UserDB]:
        """Find a non-disabled user by external-auth id."""
        result = await self.db.execute(
            select(UserDB).where(
                and_(UserDB.user_auth_id == user_auth_id, UserDB.disabled.is_(False))
            )
        )
        return result.scalar_one_or_none()

    async def resolve_roles(self, codes: Iterable[str]) -> List[RoleDB]:
        """Roles for the given codes; unknown codes are dropped."""
        codes = sorted(set(codes))
        if not codes:
            return []
        result = await self.db.execute(select(RoleDB).where(RoleDB.code.in_(codes)))
        roles = list(result.scalars().all())
        if len(roles) < len(codes):
            unknown = set(codes) - {r.code for r in roles}
            logger.debug(f"Dropping unknown role codes: {sorted(unknown)}")
        return roles

    async def _page_users(self, query, count_query, offset: int, limit: int) -> Tuple[List[UserDB], int]:
        total = (await self.db.execute(count_query)).scalar_one()
        result = await self.db.execute(
            query.order_by(UserDB.created_at, UserDB.id).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_users(self, offset: int, limit: int) -> Tuple[List[UserDB], int]:
        return await self._page_users(
            select(UserDB),
            select(func.count()).select_from(UserDB),
            offset,
            limit,
        )

    async def search_users_by_name(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        offset: int,
        limit: int
    ) -> Tuple[List[UserDB], int]:
        """Case-insensitive substring match on either name field."""
        conditions = []
        if first_name:
            conditions.append(DemographicsDB.first_name.ilike(_contains(first_name), escape="\\"))
        if last_name:
            conditions.append(DemographicsDB.last_name.ilike(_contains(last_name), escape="\\"))
        if not conditions:
            return [], 0

        where = or_(*conditions)
        return await self._page_users(
            select(UserDB).join(DemographicsDB, DemographicsDB.user_id == UserDB.id).where(where),
            select(func.count()).select_from(UserDB)
            .join(DemographicsDB, DemographicsDB.user_id == UserDB.id).where(where),
            offset,
            limit,
        )

    async def search_users_by_demographic(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        birth_date: Optional[date],
        gender_code: Optional[str],
        offset: int,
        limit: int
    ) -> Tuple[List[UserDB], int]:
        """Equality match on every supplied field."""
        conditions = []
        if first_name:
            conditions.append(func.lower(DemographicsDB.first_name) == first_name.lower())
        if last_name:
            conditions.append(func.lower(DemographicsDB.last_name) == last_name.lower())
        if birth_date:
            conditions.append(DemographicsDB.birth_day == birth_date)
        if gender_code:
            conditions.append(DemographicsDB.gender_code == gender_code)
        if not conditions:
            return [], 0

        where = and_(*conditions)
        return await self._page_users(
            select(UserDB).join(DemographicsDB, DemographicsDB.user_id == UserDB.id).where(where),
            select(func.count()).select_from(UserDB)
            .join(DemographicsDB, DemographicsDB.user_id == UserDB.id).where(where),
            offset,
            limit,
        )

    # ==================== IDENTIFIERS ====================

    async def find_identifier_system(self, code: str) -> Optional[IdentifierSystemDB]:
        result = await self.db.execute(
            select(IdentifierSystemDB).where(IdentifierSystemDB.code == code)
        )
        return result.scalar_one_or_none()

    async def get_identifier_system(self, code: str) -> IdentifierSystemDB:
        system = await self.find_identifier_system(code)
        if system is None:
            raise IdentifierSystemNotFound(code)
        return system

    async def list_system_generated_systems(self) -> List[IdentifierSystemDB]:
        result = await self.db.execute(
            select(IdentifierSystemDB)
            .where(IdentifierSystemDB.system_generated.is_(True))
            .order_by(IdentifierSystemDB.code)
        )
        return list(result.scalars().all())

    async def find_identifier(self, value: str, system_code: str) -> Optional[IdentifierDB]:
        result = await self.db.execute(
            select(IdentifierDB)
            .join(IdentifierSystemDB, IdentifierDB.identifier_system_id == IdentifierSystemDB.id)
            .where(and_(IdentifierDB.value == value, IdentifierSystemDB.code == system_code))
        )
        return result.scalar_one_or_none()

    async def resolve_identifier(self, value: str, system: IdentifierSystemDB) -> IdentifierDB:
        """Existing identifier for (value, system), or a new pending one."""
        identifier = await self.find_identifier(value, system.code)
        if identifier is not None:
            return identifier

        identifier = IdentifierDB(value=value, identifier_system=system)
        self.db.add(identifier)
        return identifier

    async def delete_identifier_if_orphaned(self, identifier: IdentifierDB) -> bool:
        """
        Delete an identifier no demographics record references any more.

        Must run after the identifier was detached; flushes so the
        association rows reflect the detach.
        """
        await self.db.flush()
        result = await self.db.execute(
            select(func.count())
            .select_from(demographics_identifiers)
            .where(demographics_identifiers.c.identifier_id == identifier.id)
        )
        if result.scalar_one() > 0:
            return False
        await self.db.delete(identifier)
        return True

    # ==================== PATIENTS ====================

    async def get_patient(self, patient_id: uuid.UUID) -> Optional[PatientDB]:
        result = await self.db.execute(select(PatientDB).where(PatientDB.id == patient_id))
        return result.scalar_one_or_none()

    async def find_patient_by_mrn(self, mrn: str, mrn_system_code: str) -> Optional[PatientDB]:
        """Patient whose demographics carry the MRN under the configured system."""
        result = await self.db.execute(
            select(PatientDB)
            .join(DemographicsDB, PatientDB.demographics_id == DemographicsDB.id)
            .join(demographics_identifiers, demographics_identifiers.c.demographics_id == DemographicsDB.id)
            .join(IdentifierDB, demographics_identifiers.c.identifier_id == IdentifierDB.id)
            .join(IdentifierSystemDB, IdentifierDB.identifier_system_id == IdentifierSystemDB.id)
            .where(and_(IdentifierDB.value == mrn, IdentifierSystemDB.code == mrn_system_code))
        )
        return result.scalars().first()

    # ==================== RELATIONSHIP LEDGER ====================

    async def relationship_exists(
        self,
        user_id: uuid.UUID,
        patient_id: uuid.UUID,
        role_code: Optional[str] = None
    ) -> bool:
        """Any row for the pair (or for the pair in one role when role_code is given)."""
        conditions = [
            UserPatientRelationshipDB.user_id == user_id,
            UserPatientRelationshipDB.patient_id == patient_id,
        ]
        if role_code is not None:
            conditions.append(UserPatientRelationshipDB.role_code == role_code)
        result = await self.db.execute(
            select(func.count()).select_from(UserPatientRelationshipDB).where(and_(*conditions))
        )
        return result.scalar_one() > 0

    async def add_relationship(
        self,
        user_id: uuid.UUID,
        patient_id: uuid.UUID,
        role_code: str
    ) -> Tuple[UserPatientRelationshipDB, bool]:
        """
        Insert a relationship row unless the same (user, patient, role) exists.

        Returns:
            Tuple of (row, created: bool)
        """
        existing = await self.db.get(UserPatientRelationshipDB, (user_id, patient_id, role_code))
        if existing is not None:
            return existing, False

        row = UserPatientRelationshipDB(user_id=user_id, patient_id=patient_id, role_code=role_code)
        self.db.add(row)
        return row, True

    async def list_relationships_for_user(self, user_id: uuid.UUID) -> List[UserPatientRelationshipDB]:
        result = await self.db.execute(
            select(UserPatientRelationshipDB)
            .where(UserPatientRelationshipDB.user_id == user_id)
            .order_by(UserPatientRelationshipDB.created_at)
        )
        return list(result.scalars().all())

    # ==================== UNIT OF WORK ====================

    def add(self, instance) -> None:
        self.db.add(instance)

    async def flush(self) -> None:
        await self.db.flush()
