"""
API Tests for the identity routers

Services are replaced with mocks through dependency overrides; these tests
check request validation, response shapes and the mapping of domain
errors onto HTTP status codes.

Run with: pytest backend/tests/test_identity_router.py -v
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from identity.router import users_router, patients_router, get_user_service, get_patient_service
from identity.schemas import PageResult
from identity.exceptions import (
    UserNotFound,
    PatientNotFound,
    MissingEmail,
    IdentifierSystemNotFound,
    UserActivationNotFound,
    UniquenessConflict,
)


@pytest.fixture
def user_service():
    return MagicMock(
        register_user=AsyncMock(),
        update_user=AsyncMock(),
        get_user=AsyncMock(),
        list_users=AsyncMock(),
        search_users_by_name=AsyncMock(),
        search_users_by_demographic=AsyncMock(),
        set_user_auth_id=AsyncMock(),
        disable_user=AsyncMock(),
        enable_user=AsyncMock(),
    )


@pytest.fixture
def patient_service():
    return MagicMock(
        access_decision=AsyncMock(),
        get_patient_by_mrn=AsyncMock(),
        get_patients_by_user_auth_id=AsyncMock(),
        create_relationship=AsyncMock(),
    )


@pytest.fixture
def client(user_service, patient_service):
    app = FastAPI()
    app.include_router(users_router, prefix="/api")
    app.include_router(patients_router, prefix="/api")
    app.dependency_overrides[get_user_service] = lambda: user_service
    app.dependency_overrides[get_patient_service] = lambda: patient_service
    return TestClient(app)


def fake_user(**fields):
    user = MagicMock()
    user.id = fields.get("id", uuid.uuid4())
    user.disabled = fields.get("disabled", False)
    user.to_dict.return_value = {"id": str(user.id), "disabled": user.disabled, "roles": []}
    return user


class TestUserEndpoints:

    def test_register_returns_201(self, client, user_service):
        user_service.register_user.return_value = fake_user()

        response = client.post("/api/users", json={
            "first_name": "Ada",
            "roles": ["patient"],
            "telecoms": [{"system": "EMAIL", "use": "HOME", "value": "ada@example.com"}],
        })

        assert response.status_code == 201
        incoming = user_service.register_user.await_args.args[0]
        assert incoming.roles == ["patient"]
        assert [t.value for t in incoming.telecoms] == ["ada@example.com"]

    def test_register_rejects_unknown_telecom_kind(self, client, user_service):
        response = client.post("/api/users", json={
            "telecoms": [{"system": "FAX", "use": "HOME", "value": "555-0100"}],
        })

        assert response.status_code == 422
        user_service.register_user.assert_not_awaited()

    def test_register_missing_email_is_400(self, client, user_service):
        user_service.register_user.side_effect = MissingEmail()

        response = client.post("/api/users", json={"roles": ["patient"]})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "MissingEmail"

    def test_register_unknown_system_is_400(self, client, user_service):
        user_service.register_user.side_effect = IdentifierSystemNotFound("NOPE")

        response = client.post("/api/users", json={"identifiers": [{"value": "1", "system": "NOPE"}]})

        assert response.status_code == 400
        assert "NOPE" in response.json()["detail"]["message"]

    def test_register_conflict_is_409(self, client, user_service):
        user_service.register_user.side_effect = UniquenessConflict()

        response = client.post("/api/users", json={})

        assert response.status_code == 409

    def test_get_unknown_user_is_404(self, client, user_service):
        user_service.get_user.side_effect = UserNotFound()

        response = client.get(f"/api/users/{uuid.uuid4()}")

        assert response.status_code == 404

    def test_get_user_rejects_malformed_id(self, client):
        response = client.get("/api/users/not-a-uuid")
        assert response.status_code == 422

    def test_update_passes_id_and_payload(self, client, user_service):
        user_id = uuid.uuid4()
        user_service.update_user.return_value = fake_user(id=user_id)

        response = client.put(f"/api/users/{user_id}", json={"first_name": "Augusta", "ssn": "  "})

        assert response.status_code == 200
        called_id, incoming = user_service.update_user.await_args.args
        assert called_id == user_id
        assert incoming.first_name == "Augusta"
        assert incoming.ssn is None

    def test_disable_never_activated_is_409(self, client, user_service):
        user_service.disable_user.side_effect = UserActivationNotFound()

        response = client.post(f"/api/users/{uuid.uuid4()}/disable")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "UserActivationNotFound"

    def test_enable_returns_flag(self, client, user_service):
        user_id = uuid.uuid4()
        user_service.enable_user.return_value = fake_user(id=user_id, disabled=False)

        response = client.post(f"/api/users/{user_id}/enable")

        assert response.status_code == 200
        assert response.json() == {"id": str(user_id), "disabled": False}

    def test_set_activation(self, client, user_service):
        user_id = uuid.uuid4()
        user_service.set_user_auth_id.return_value = fake_user(id=user_id)

        response = client.put(f"/api/users/{user_id}/activation", json={"user_auth_id": "auth0|ada"})

        assert response.status_code == 200
        user_service.set_user_auth_id.assert_awaited_once_with(user_id, "auth0|ada")

    def test_list_users_returns_page(self, client, user_service):
        user_service.list_users.return_value = PageResult(
            items=[{"id": "u1"}], page=0, size=20, total_elements=21
        )

        response = client.get("/api/users", params={"page": 0, "size": 20})

        assert response.status_code == 200
        body = response.json()
        assert body["total_elements"] == 21
        assert body["total_pages"] == 2
        user_service.list_users.assert_awaited_once_with(0, 20)


class TestPatientEndpoints:

    def test_access_decision(self, client, patient_service):
        patient_service.access_decision.return_value = True

        response = client.get("/api/patients/MRN123/access", params={"user_auth_id": "auth0|ada"})

        assert response.status_code == 200
        assert response.json() == {"access": True}
        patient_service.access_decision.assert_awaited_once_with("auth0|ada", "MRN123")

    def test_access_decision_requires_auth_id(self, client, patient_service):
        response = client.get("/api/patients/MRN123/access")

        assert response.status_code == 422
        patient_service.access_decision.assert_not_awaited()

    @pytest.mark.parametrize("error,status_code", [
        (UserNotFound(), 404),
        (PatientNotFound(), 404),
    ])
    def test_access_decision_not_found(self, client, patient_service, error, status_code):
        patient_service.access_decision.side_effect = error

        response = client.get("/api/patients/MRN123/access", params={"user_auth_id": "auth0|ada"})

        assert response.status_code == status_code

    def test_create_relationship(self, client, patient_service):
        user_id, patient_id = uuid.uuid4(), uuid.uuid4()
        patient_service.create_relationship.return_value = {
            "user_id": str(user_id), "patient_id": str(patient_id), "role": "caregiver", "created": True,
        }

        response = client.post(
            f"/api/patients/{patient_id}/relationships",
            json={"user_id": str(user_id), "role": "caregiver"},
        )

        assert response.status_code == 201
        patient_service.create_relationship.assert_awaited_once_with(user_id, patient_id, "caregiver")

    def test_patients_for_user(self, client, patient_service):
        patient_service.get_patients_by_user_auth_id.return_value = [{"id": "p1", "relationship": "patient"}]

        response = client.get("/api/patients", params={"user_auth_id": "auth0|ada"})

        assert response.status_code == 200
        assert response.json() == [{"id": "p1", "relationship": "patient"}]
