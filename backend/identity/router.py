"""
Identity - API Router

Provides REST API endpoints for user and patient identity:
- POST /api/users - Register a user (optionally as patient)
- GET /api/users - Paged user listing
- GET /api/users/search - Substring search on names
- GET /api/users/search/demographics - Exact demographic search
- GET /api/users/{user_id} - Get user
- PUT /api/users/{user_id} - Update user (merge)
- PUT /api/users/{user_id}/activation - Record external-auth id
- POST /api/users/{user_id}/disable - Disable user
- POST /api/users/{user_id}/enable - Enable user
- GET /api/patients - Patients linked to a user
- GET /api/patients/{mrn} - Get patient by MRN
- GET /api/patients/{mrn}/access - Access decision
- POST /api/patients/{patient_id}/relationships - Link a user to a patient
"""

import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db

from .service import UserService
from .patients import PatientService
from .schemas import UserCreate, UserUpdate, UserActivationRequest, RelationshipCreate
from .exceptions import (
    IdentityError,
    UserNotFound,
    PatientNotFound,
    IdentifierSystemNotFound,
    SsnSystemNotFound,
    MissingEmail,
    UserActivationNotFound,
    UniquenessConflict,
)

logger = logging.getLogger(__name__)

users_router = APIRouter(prefix="/users", tags=["Users"])
patients_router = APIRouter(prefix="/patients", tags=["Patients"])

ERROR_STATUS = {
    UserNotFound: status.HTTP_404_NOT_FOUND,
    PatientNotFound: status.HTTP_404_NOT_FOUND,
    IdentifierSystemNotFound: status.HTTP_400_BAD_REQUEST,
    SsnSystemNotFound: status.HTTP_400_BAD_REQUEST,
    MissingEmail: status.HTTP_400_BAD_REQUEST,
    UserActivationNotFound: status.HTTP_409_CONFLICT,
    UniquenessConflict: status.HTTP_409_CONFLICT,
}


def to_http_exception(error: IdentityError) -> HTTPException:
    """Map a domain error onto its HTTP status."""
    return HTTPException(
        status_code=ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST),
        detail={"error": type(error).__name__, "message": str(error)},
    )


# ==================== DEPENDENCIES ====================

def get_user_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> UserService:
    return UserService(db, settings)


def get_patient_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> PatientService:
    return PatientService(db, settings)


# ==================== USER ENDPOINTS ====================

@users_router.post("", status_code=status.HTTP_201_CREATED)
async def register_user(
    request: UserCreate,
    service: UserService = Depends(get_user_service)
):
    """
    Register a user.

    **Rules:**
    - Identifiers are reused when the (value, system) pair already exists
    - The "patient" role creates a patient, issues MRNs and links the user to it
    - A patient needs an EMAIL telecom or a registration purpose email
    """
    try:
        user = await service.register_user(request)
    except IdentityError as e:
        raise to_http_exception(e)
    return user.to_dict()


@users_router.get("")
async def list_users(
    page: Optional[int] = Query(None),
    size: Optional[int] = Query(None),
    service: UserService = Depends(get_user_service)
):
    """Paged listing; invalid paging input falls back to the defaults."""
    result = await service.list_users(page, size)
    return result.to_dict()


@users_router.get("/search")
async def search_users_by_name(
    first_name: Optional[str] = Query(None),
    last_name: Optional[str] = Query(None),
    page: Optional[int] = Query(None),
    size: Optional[int] = Query(None),
    service: UserService = Depends(get_user_service)
):
    result = await service.search_users_by_name(first_name, last_name, page, size)
    return result.to_dict()


@users_router.get("/search/demographics")
async def search_users_by_demographic(
    first_name: Optional[str] = Query(None),
    last_name: Optional[str] = Query(None),
    birth_date: Optional[date] = Query(None),
    gender_code: Optional[str] = Query(None),
    page: Optional[int] = Query(None),
    size: Optional[int] = Query(None),
    service: UserService = Depends(get_user_service)
):
    result = await service.search_users_by_demographic(
        first_name, last_name, birth_date, gender_code, page, size
    )
    return result.to_dict()


@users_router.get("/{user_id}")
async def get_user(
    user_id: uuid.UUID,
    service: UserService = Depends(get_user_service)
):
    try:
        user = await service.get_user(user_id)
    except IdentityError as e:
        raise to_http_exception(e)
    return user.to_dict()


@users_router.put("/{user_id}")
async def update_user(
    user_id: uuid.UUID,
    request: UserUpdate,
    service: UserService = Depends(get_user_service)
):
    """
    Update a user by merging the incoming representation.

    Identifiers not listed are removed; telecoms and addresses not listed are kept.
    """
    try:
        user = await service.update_user(user_id, request)
    except IdentityError as e:
        raise to_http_exception(e)
    return user.to_dict()


@users_router.put("/{user_id}/activation")
async def set_user_activation(
    user_id: uuid.UUID,
    request: UserActivationRequest,
    service: UserService = Depends(get_user_service)
):
    try:
        user = await service.set_user_auth_id(user_id, request.user_auth_id)
    except IdentityError as e:
        raise to_http_exception(e)
    return user.to_dict()


@users_router.post("/{user_id}/disable")
async def disable_user(
    user_id: uuid.UUID,
    service: UserService = Depends(get_user_service)
):
    try:
        user = await service.disable_user(user_id)
    except IdentityError as e:
        raise to_http_exception(e)
    return {"id": str(user.id), "disabled": user.disabled}


@users_router.post("/{user_id}/enable")
async def enable_user(
    user_id: uuid.UUID,
    service: UserService = Depends(get_user_service)
):
    try:
        user = await service.enable_user(user_id)
    except IdentityError as e:
        raise to_http_exception(e)
    return {"id": str(user.id), "disabled": user.disabled}


# ==================== PATIENT ENDPOINTS ====================

@patients_router.get("")
async def get_patients_for_user(
    user_auth_id: str = Query(..., min_length=1),
    service: PatientService = Depends(get_patient_service)
):
    try:
        return await service.get_patients_by_user_auth_id(user_auth_id)
    except IdentityError as e:
        raise to_http_exception(e)


@patients_router.get("/{mrn}")
async def get_patient(
    mrn: str,
    user_auth_id: Optional[str] = Query(None),
    service: PatientService = Depends(get_patient_service)
):
    try:
        return await service.get_patient_by_mrn(mrn, user_auth_id)
    except IdentityError as e:
        raise to_http_exception(e)


@patients_router.get("/{mrn}/access")
async def get_access_decision(
    mrn: str,
    user_auth_id: str = Query(..., min_length=1),
    service: PatientService = Depends(get_patient_service)
):
    try:
        allowed = await service.access_decision(user_auth_id, mrn)
    except IdentityError as e:
        raise to_http_exception(e)
    return {"access": allowed}


@patients_router.post("/{patient_id}/relationships", status_code=status.HTTP_201_CREATED)
async def create_relationship(
    patient_id: uuid.UUID,
    request: RelationshipCreate,
    service: PatientService = Depends(get_patient_service)
):
    try:
        return await service.create_relationship(request.user_id, patient_id, request.role)
    except IdentityError as e:
        raise to_http_exception(e)
