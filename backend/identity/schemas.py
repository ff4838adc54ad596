"""
Identity - Request/Response Schemas

Pydantic models for incoming user representations. Telecom and address
kinds are closed enums, so an unrecognised string is rejected here rather
than silently matching nothing during a merge.
"""

import math
import uuid
from datetime import date
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, EmailStr, field_validator

from .models import TelecomSystem, TelecomUse, AddressUse


class IdentifierIn(BaseModel):
    """Caller-supplied identifier"""
    value: str = Field(..., min_length=1, max_length=255)
    system: str = Field(..., min_length=1, max_length=100, description="Identifier system code")

    @property
    def key(self):
        return (self.value, self.system)


class TelecomIn(BaseModel):
    """Contact point"""
    system: TelecomSystem
    use: TelecomUse
    value: str = Field(..., min_length=1, max_length=255)


class AddressIn(BaseModel):
    """Postal address"""
    use: AddressUse
    line1: Optional[str] = Field(None, max_length=255)
    line2: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    state_code: Optional[str] = Field(None, max_length=10)
    country_code: Optional[str] = Field(None, max_length=10)
    postal_code: Optional[str] = Field(None, max_length=20)


class UserPayload(BaseModel):
    """Full incoming representation of a user and their demographics"""
    first_name: Optional[str] = Field(None, max_length=100)
    middle_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    birth_date: Optional[date] = None
    gender_code: Optional[str] = Field(None, max_length=20)
    locale: Optional[str] = Field(None, max_length=20)
    roles: List[str] = Field(default_factory=list, description="Role codes; unknown codes are dropped")
    identifiers: List[IdentifierIn] = Field(default_factory=list)
    ssn: Optional[str] = Field(None, max_length=20, description="Single-valued SSN identifier")
    telecoms: List[TelecomIn] = Field(default_factory=list)
    addresses: List[AddressIn] = Field(default_factory=list)
    registration_purpose_email: Optional[EmailStr] = None

    @field_validator("ssn")
    @classmethod
    def blank_ssn_is_absent(cls, v):
        if v is not None and not v.strip():
            return None
        return v


class UserCreate(UserPayload):
    """Registration payload"""


class UserUpdate(UserPayload):
    """Update payload; carries the complete new state of the user"""


class UserActivationRequest(BaseModel):
    """Records the external-auth id once the account is activated"""
    user_auth_id: str = Field(..., min_length=1, max_length=255)


class RelationshipCreate(BaseModel):
    """Link a user to a patient in a named role (e.g. caregiver)"""
    user_id: uuid.UUID
    role: str = Field(..., min_length=1, max_length=50)


class PageResult(BaseModel):
    """One page of a listing"""
    items: List[Dict[str, Any]]
    page: int
    size: int
    total_elements: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_elements / self.size) if self.size else 0

    def to_dict(self) -> Dict[str, Any]:
        return {**self.model_dump(), "total_pages": self.total_pages}
