# tests/conftest.py
import os
import tempfile

# Settings are read when careportal.database is imported
_DB_DIR = tempfile.mkdtemp(prefix="careportal-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'careportal.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123456789"
os.environ["ENVIRONMENT"] = "testing"
os.environ["CLINIC_TIMEZONE"] = "Asia/Kolkata"

import pytest
from fastapi.testclient import TestClient

from careportal import crud, models
from careportal.config import get_settings
from careportal.database import SessionLocal, create_tables, drop_tables
from careportal.security import create_access_token


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def db():
    drop_tables()
    create_tables()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_profile(db):
    def _make(role=models.ProfileRole.patient, full_name="Jane Doe", **fields):
        return crud.create_profile(db, full_name=full_name, role=role, **fields)
    return _make


@pytest.fixture
def doctor(make_profile):
    return make_profile(models.ProfileRole.doctor, "Dr. Alan Grant", email="grant@clinic.test")


@pytest.fixture
def other_doctor(make_profile):
    return make_profile(models.ProfileRole.doctor, "Dr. Ellie Sattler", email="sattler@clinic.test")


@pytest.fixture
def patient(make_profile):
    return make_profile(models.ProfileRole.patient, "Jane Doe", email="jane@example.com", mrn="MRN-48213")


@pytest.fixture
def other_patient(make_profile):
    return make_profile(models.ProfileRole.patient, "Robert Muldoon", mrn="MRN-77120")


@pytest.fixture
def admin(make_profile):
    return make_profile(models.ProfileRole.admin, "Site Admin")


@pytest.fixture
def client(db):
    from careportal.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(profile):
        token = create_access_token({"sub": profile.id})
        return {"Authorization": f"Bearer {token}"}
    return _headers
