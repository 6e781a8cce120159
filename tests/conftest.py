"""
Shared fixtures. The environment is configured before any ``careflow``
import so the engine binds to a throwaway SQLite file.
"""
import asyncio
import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="careflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/careflow_test.db"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["TYPING_IDLE_SECONDS"] = "10"

from fastapi.testclient import TestClient  # noqa: E402

from careflow import models  # noqa: E402
from careflow.database import AsyncSessionLocal, Base, engine  # noqa: E402
from careflow.main import app  # noqa: E402
from careflow.utils import get_password_hash  # noqa: E402

ADMIN_EMAIL = "root@careflow.example.com"
ADMIN_PASSWORD = "root-password"


async def _create_all():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _drop_all():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _add_admin():
    async with AsyncSessionLocal() as db:
        db.add(models.User(
            email=ADMIN_EMAIL,
            hashed_password=get_password_hash(ADMIN_PASSWORD),
            full_name="Root Admin",
            role="saas_admin",
            is_active=True,
        ))
        await db.commit()


@pytest.fixture(autouse=True)
def setup_db():
    asyncio.run(_create_all())
    yield
    asyncio.run(_drop_all())


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def login(client, email, password):
    resp = client.post("/auth/login", json={"username": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def admin_headers(client):
    asyncio.run(_add_admin())
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def make_tenant(client, admin_headers):
    """Create a tenant and return its id plus practice-admin headers."""

    def _make(name="Lakeside Orthopedics", admin_email=None):
        admin_email = admin_email or f"admin@{name.lower().replace(' ', '-')}.example.com"
        resp = client.post("/api/tenants/", headers=admin_headers, json={
            "name": name,
            "timezone": "America/Chicago",
            "admin_email": admin_email,
            "admin_password": "practice-pass",
        })
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return {
            "id": body["tenant"]["id"],
            "admin_email": admin_email,
            "headers": login(client, admin_email, "practice-pass"),
        }

    return _make


@pytest.fixture
def make_patient(client):
    def _make(headers, surgery_date="2025-01-17", **extra):
        payload = {"first_name": "Dana", "last_name": "Reyes", "surgery_date": surgery_date}
        payload.update(extra)
        resp = client.post("/api/patients/", headers=headers, json=payload)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make


PATIENT_EMAIL = "dana@patients.example.com"
PATIENT_PASSWORD = "recover-well"


@pytest.fixture
def care_team(client, make_tenant, make_patient):
    """A tenant, a patient with a login and one open conversation between them."""
    tenant = make_tenant()
    patient = make_patient(tenant["headers"], email=PATIENT_EMAIL, password=PATIENT_PASSWORD)
    patient_headers = login(client, PATIENT_EMAIL, PATIENT_PASSWORD)

    resp = client.post(
        "/api/conversations/",
        headers=tenant["headers"],
        json={"patient_id": patient["id"], "title": "Post-op questions"},
    )
    assert resp.status_code == 201, resp.text
    return {
        "tenant": tenant,
        "patient": patient,
        "patient_headers": patient_headers,
        "conversation": resp.json(),
    }


def bearer_token(headers):
    return headers["Authorization"].split(" ", 1)[1]
