"""
Identity Module

Identity and relationship reconciliation for users and patients.

Features:
- Registration with optional promotion to patient (MRN issuance)
- Diff-based update of identifiers, telecoms and addresses
- User-to-patient relationship ledger
- Access decisions by external-auth id and MRN
"""

from .models import (
    UserDB,
    RoleDB,
    DemographicsDB,
    IdentifierDB,
    IdentifierSystemDB,
    PatientDB,
    TelecomDB,
    AddressDB,
    UserPatientRelationshipDB,
    TelecomSystem,
    TelecomUse,
    AddressUse,
    PATIENT_ROLE,
)
from .service import UserService
from .patients import PatientService

__all__ = [
    'UserDB',
    'RoleDB',
    'DemographicsDB',
    'IdentifierDB',
    'IdentifierSystemDB',
    'PatientDB',
    'TelecomDB',
    'AddressDB',
    'UserPatientRelationshipDB',
    'TelecomSystem',
    'TelecomUse',
    'AddressUse',
    'PATIENT_ROLE',
    'UserService',
    'PatientService',
]
