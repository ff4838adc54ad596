"""
Identity - Database Models

SQLAlchemy models for users, their demographics, the patient subtype,
external identifiers and user-to-patient relationships.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from enum import Enum

from sqlalchemy import (
    Column, String, Boolean, Date, DateTime, Uuid,
    ForeignKey, Table, UniqueConstraint
)
from sqlalchemy.orm import relationship

from database.connection import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TelecomSystem(str, Enum):
    """Contact point kind"""
    EMAIL = "EMAIL"
    PHONE = "PHONE"


class TelecomUse(str, Enum):
    """Contact point use"""
    HOME = "HOME"
    WORK = "WORK"


class AddressUse(str, Enum):
    """Postal address use"""
    HOME = "HOME"
    WORK = "WORK"


PATIENT_ROLE = "patient"


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Uuid, ForeignKey("role.id", ondelete="CASCADE"), primary_key=True),
)

# Identifier rows can be shared when a second registration reuses an existing (value, system) pair
demographics_identifiers = Table(
    "demographics_identifiers",
    Base.metadata,
    Column("demographics_id", Uuid, ForeignKey("demographics.id", ondelete="CASCADE"), primary_key=True),
    Column("identifier_id", Uuid, ForeignKey("identifier.id", ondelete="CASCADE"), primary_key=True),
)


class RoleDB(Base):
    """Account role (reference data, e.g. patient, provider, staff)"""
    __tablename__ = "role"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100))


class IdentifierSystemDB(Base):
    """
    Identifier System - namespace that issues identifier values.

    System-generated systems (e.g. MRN) are only ever issued by the MRN
    issuer; the rest (SSN, external ids) are supplied by callers.
    """
    __tablename__ = "identifier_system"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(100), unique=True, nullable=False, index=True)
    display = Column(String(255))
    uri = Column(String(255))
    system_generated = Column(Boolean, nullable=False, default=False)


class IdentifierDB(Base):
    """
    Identifier - (value, system) pair, unique across the store.
    """
    __tablename__ = "identifier"
    __table_args__ = (
        UniqueConstraint("value", "identifier_system_id", name="uq_identifier_value_system"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    value = Column(String(255), nullable=False)
    identifier_system_id = Column(Uuid, ForeignKey("identifier_system.id"), nullable=False)

    identifier_system = relationship("IdentifierSystemDB", lazy="joined")

    @property
    def system_code(self) -> str:
        return self.identifier_system.code

    @property
    def key(self):
        """Natural key used by reconciliation."""
        return (self.value, self.identifier_system.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "system": self.identifier_system.code,
            "system_generated": self.identifier_system.system_generated,
        }


class TelecomDB(Base):
    """Contact point owned by a demographics record"""
    __tablename__ = "telecom"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    demographics_id = Column(Uuid, ForeignKey("demographics.id", ondelete="CASCADE"), nullable=False)
    system = Column(String(10), nullable=False)
    use = Column(String(10), nullable=False)
    value = Column(String(255), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"system": self.system, "use": self.use, "value": self.value}


class AddressDB(Base):
    """Postal address owned by a demographics record"""
    __tablename__ = "address"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    demographics_id = Column(Uuid, ForeignKey("demographics.id", ondelete="CASCADE"), nullable=False)
    use = Column(String(10), nullable=False)
    line1 = Column(String(255))
    line2 = Column(String(255))
    city = Column(String(100))
    state_code = Column(String(10))
    country_code = Column(String(10))
    postal_code = Column(String(20))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "use": self.use,
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "state_code": self.state_code,
            "country_code": self.country_code,
            "postal_code": self.postal_code,
        }


class DemographicsDB(Base):
    """
    Demographics - personal data aggregate owned by exactly one user.
    """
    __tablename__ = "demographics"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    first_name = Column(String(100))
    middle_name = Column(String(100))
    last_name = Column(String(100))
    birth_day = Column(Date)
    gender_code = Column(String(20))

    user = relationship("UserDB", back_populates="demographics")
    identifiers = relationship(
        "IdentifierDB",
        secondary=demographics_identifiers,
        lazy="selectin",
        order_by="IdentifierDB.value",
    )
    telecoms = relationship(
        "TelecomDB", lazy="selectin", cascade="all, delete-orphan", order_by="TelecomDB.system"
    )
    addresses = relationship(
        "AddressDB", lazy="selectin", cascade="all, delete-orphan", order_by="AddressDB.use"
    )
    patient = relationship(
        "PatientDB", back_populates="demographics", uselist=False, lazy="selectin"
    )

    def identifier_for(self, system_code: str) -> Optional[IdentifierDB]:
        """First identifier issued under the given system, if any."""
        for identifier in self.identifiers:
            if identifier.identifier_system.code == system_code:
                return identifier
        return None

    @property
    def emails(self):
        return [t.value for t in self.telecoms if t.system == TelecomSystem.EMAIL.value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "first_name": self.first_name,
            "middle_name": self.middle_name,
            "last_name": self.last_name,
            "birth_date": self.birth_day.isoformat() if self.birth_day else None,
            "gender_code": self.gender_code,
            "identifiers": [i.to_dict() for i in self.identifiers],
            "telecoms": [t.to_dict() for t in self.telecoms],
            "addresses": [a.to_dict() for a in self.addresses],
        }


class PatientDB(Base):
    """
    Patient - subtype marker attached to a demographics record.

    Created at most once per user, only when the patient role is requested.
    """
    __tablename__ = "patient"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    demographics_id = Column(Uuid, ForeignKey("demographics.id", ondelete="CASCADE"), nullable=False, unique=True)
    registration_purpose_email = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    demographics = relationship("DemographicsDB", back_populates="patient", lazy="joined")

    @property
    def email(self) -> Optional[str]:
        """Personal email when one exists, otherwise the registration email."""
        emails = self.demographics.emails
        return emails[0] if emails else self.registration_purpose_email

    def mrn(self, mrn_system_code: str) -> Optional[str]:
        identifier = self.demographics.identifier_for(mrn_system_code)
        return identifier.value if identifier else None

    def to_dict(self, mrn_system_code: str) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "mrn": self.mrn(mrn_system_code),
            "email": self.email,
            "registration_purpose_email": self.registration_purpose_email,
            **self.demographics.to_dict(),
        }


class UserDB(Base):
    """
    User - identity anchor.

    Disabled/enabled toggles a flag; users are never hard-deleted here.
    """
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_auth_id = Column(String(255), unique=True, index=True)
    disabled = Column(Boolean, nullable=False, default=False)
    locale = Column(String(20))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    roles = relationship("RoleDB", secondary=user_roles, lazy="selectin")
    demographics = relationship(
        "DemographicsDB",
        back_populates="user",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def role_codes(self):
        return sorted(role.code for role in self.roles)

    @property
    def patient(self) -> Optional[PatientDB]:
        return self.demographics.patient if self.demographics else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "user_auth_id": self.user_auth_id,
            "disabled": self.disabled,
            "locale": self.locale,
            "roles": self.role_codes,
            "patient_id": str(self.patient.id) if self.patient else None,
            **(self.demographics.to_dict() if self.demographics else {}),
        }


class UserPatientRelationshipDB(Base):
    """
    Relationship ledger row: user relates to patient in a named role.

    Any row for a (user, patient) pair grants access.
    """
    __tablename__ = "user_patient_relationship"

    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    patient_id = Column(Uuid, ForeignKey("patient.id", ondelete="CASCADE"), primary_key=True)
    role_code = Column(String(50), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    patient = relationship("PatientDB", lazy="joined")
