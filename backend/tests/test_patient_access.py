"""
Unit Tests for Patient Access

Tests the relationship ledger and the access decision:
- access_decision true/false and its failure kinds
- Relationship creation (idempotent per user, patient and role)
- Patient lookups by MRN and by external-auth id

Run with: pytest backend/tests/test_patient_access.py -v
"""

import uuid

import pytest

from identity.schemas import UserCreate
from identity.exceptions import UserNotFound, PatientNotFound


def registration(first_name="Ada", patient=False):
    data = {
        "first_name": first_name,
        "last_name": "Lovelace",
        "roles": ["patient"] if patient else ["caregiver"],
        "telecoms": [{"system": "EMAIL", "use": "HOME", "value": f"{first_name.lower()}@example.com"}],
    }
    return UserCreate(**data)


async def activated(user_service, payload, auth_id):
    user = await user_service.register_user(payload)
    return await user_service.set_user_auth_id(user.id, auth_id)


class TestAccessDecision:
    """access_decision(user_auth_id, mrn)"""

    @pytest.mark.asyncio
    async def test_patient_has_access_to_self(self, user_service, patient_service):
        user = await activated(user_service, registration(patient=True), "auth0|ada")
        mrn = user.patient.mrn("MRN")

        assert await patient_service.access_decision("auth0|ada", mrn) is True

    @pytest.mark.asyncio
    async def test_unrelated_user_has_no_access(self, user_service, patient_service):
        patient_user = await activated(user_service, registration(patient=True), "auth0|ada")
        await activated(user_service, registration("Grace"), "auth0|grace")

        assert await patient_service.access_decision("auth0|grace", patient_user.patient.mrn("MRN")) is False

    @pytest.mark.asyncio
    async def test_caregiver_gains_access_through_relationship(self, user_service, patient_service):
        patient_user = await activated(user_service, registration(patient=True), "auth0|ada")
        caregiver = await activated(user_service, registration("Grace"), "auth0|grace")

        result = await patient_service.create_relationship(caregiver.id, patient_user.patient.id, "caregiver")

        assert result["created"] is True
        assert result["role"] == "caregiver"
        assert await patient_service.access_decision("auth0|grace", patient_user.patient.mrn("MRN")) is True

    @pytest.mark.asyncio
    async def test_unknown_auth_id(self, user_service, patient_service):
        patient_user = await activated(user_service, registration(patient=True), "auth0|ada")

        with pytest.raises(UserNotFound):
            await patient_service.access_decision("auth0|nobody", patient_user.patient.mrn("MRN"))

    @pytest.mark.asyncio
    async def test_disabled_user_is_not_found(self, user_service, patient_service):
        """Disabled users are invisible to access evaluation."""
        patient_user = await activated(user_service, registration(patient=True), "auth0|ada")
        await user_service.disable_user(patient_user.id)

        with pytest.raises(UserNotFound):
            await patient_service.access_decision("auth0|ada", patient_user.patient.mrn("MRN"))

    @pytest.mark.asyncio
    async def test_unknown_mrn(self, user_service, patient_service):
        await activated(user_service, registration(patient=True), "auth0|ada")

        with pytest.raises(PatientNotFound):
            await patient_service.access_decision("auth0|ada", "no-such-mrn")


class TestRelationships:
    """create_relationship(user_id, patient_id, role)"""

    @pytest.mark.asyncio
    async def test_create_relationship_is_idempotent(self, user_service, patient_service):
        patient_user = await user_service.register_user(registration(patient=True))
        caregiver = await user_service.register_user(registration("Grace"))

        first = await patient_service.create_relationship(caregiver.id, patient_user.patient.id, "caregiver")
        second = await patient_service.create_relationship(caregiver.id, patient_user.patient.id, "caregiver")

        assert first["created"] is True
        assert second["created"] is False

    @pytest.mark.asyncio
    async def test_self_relationship_already_exists(self, user_service, patient_service):
        patient_user = await user_service.register_user(registration(patient=True))

        result = await patient_service.create_relationship(patient_user.id, patient_user.patient.id, "patient")

        assert result["created"] is False

    @pytest.mark.asyncio
    async def test_create_relationship_unknown_user(self, user_service, patient_service):
        patient_user = await user_service.register_user(registration(patient=True))

        with pytest.raises(UserNotFound):
            await patient_service.create_relationship(uuid.uuid4(), patient_user.patient.id, "caregiver")

    @pytest.mark.asyncio
    async def test_create_relationship_unknown_patient(self, user_service, patient_service):
        caregiver = await user_service.register_user(registration("Grace"))

        with pytest.raises(PatientNotFound):
            await patient_service.create_relationship(caregiver.id, uuid.uuid4(), "caregiver")


class TestPatientLookups:
    """get_patient_by_mrn and get_patients_by_user_auth_id"""

    @pytest.mark.asyncio
    async def test_get_patient_by_mrn(self, user_service, patient_service):
        patient_user = await user_service.register_user(registration(patient=True))
        mrn = patient_user.patient.mrn("MRN")

        patient = await patient_service.get_patient_by_mrn(mrn)

        assert patient["id"] == str(patient_user.patient.id)
        assert patient["mrn"] == mrn
        assert patient["email"] == "ada@example.com"

    @pytest.mark.asyncio
    async def test_get_patient_by_mrn_hidden_from_unrelated_user(self, user_service, patient_service):
        patient_user = await user_service.register_user(registration(patient=True))
        await activated(user_service, registration("Grace"), "auth0|grace")

        with pytest.raises(PatientNotFound):
            await patient_service.get_patient_by_mrn(patient_user.patient.mrn("MRN"), "auth0|grace")

    @pytest.mark.asyncio
    async def test_get_patients_by_user_auth_id(self, user_service, patient_service):
        ada = await activated(user_service, registration(patient=True), "auth0|ada")
        caregiver = await activated(user_service, registration("Grace"), "auth0|grace")
        await patient_service.create_relationship(caregiver.id, ada.patient.id, "caregiver")

        own = await patient_service.get_patients_by_user_auth_id("auth0|ada")
        cared_for = await patient_service.get_patients_by_user_auth_id("auth0|grace")

        assert [(p["id"], p["relationship"]) for p in own] == [(str(ada.patient.id), "patient")]
        assert [(p["id"], p["relationship"]) for p in cared_for] == [(str(ada.patient.id), "caregiver")]

    @pytest.mark.asyncio
    async def test_get_patients_for_unknown_user(self, patient_service):
        with pytest.raises(UserNotFound):
            await patient_service.get_patients_by_user_auth_id("auth0|nobody")
