"""
Shared fixtures for the identity test suite.

Store-level tests run against an in-memory SQLite database (aiosqlite)
seeded with the reference data the service expects: roles and the
MRN / SSN / external identifier systems.
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine

from config import Settings
from database.connection import Base, create_session_factory
from identity.models import RoleDB, IdentifierSystemDB
from identity.service import UserService
from identity.patients import PatientService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SEED_ROLES = [
    ("patient", "Patient"),
    ("caregiver", "Caregiver"),
    ("provider", "Provider"),
]

SEED_SYSTEMS = [
    ("MRN", "Medical Record Number", "urn:ums:mrn", True),
    ("SSN", "Social Security Number", "http://hl7.org/fhir/sid/us-ssn", False),
    ("EXT", "External Partner Id", None, False),
]


async def seed_reference_data(factory):
    async with factory() as session:
        session.add_all([RoleDB(code=code, name=name) for code, name in SEED_ROLES])
        session.add_all([
            IdentifierSystemDB(code=code, display=display, uri=uri, system_generated=generated)
            for code, display, uri, generated in SEED_SYSTEMS
        ])
        await session.commit()


async def create_schema(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def settings():
    """Settings with both collaborators configured (they are mocked anyway)."""
    return Settings(
        ENVIRONMENT="testing",
        DATABASE_URL=TEST_DATABASE_URL,
        MRN_IDENTIFIER_SYSTEM="MRN",
        SSN_IDENTIFIER_SYSTEM="SSN",
        PAGINATION_DEFAULT_SIZE=20,
        PAGINATION_MAX_SIZE=100,
        FHIR_PUBLISH_ENABLED=True,
        FHIR_SERVER_URL="http://fhir.test/fhir",
        ACTIVATION_SERVICE_URL="http://accounts.test/scim",
    )


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = create_session_factory(engine)
    await seed_reference_data(factory)
    return factory


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def activation_client():
    """Mocked account-activation collaborator."""
    client = AsyncMock()
    client.activate = AsyncMock(return_value=None)
    client.deactivate = AsyncMock(return_value=None)
    return client


@pytest.fixture
def publisher():
    """Mocked FHIR publisher collaborator."""
    client = AsyncMock()
    client.publish_new = AsyncMock(return_value=None)
    client.publish_update = AsyncMock(return_value=None)
    return client


@pytest.fixture
def user_service(db, settings, activation_client, publisher):
    return UserService(db, settings, activation_client=activation_client, publisher=publisher)


@pytest.fixture
def patient_service(db, settings):
    return PatientService(db, settings)
