"""
Integration tests for tenant administration and tenant isolation.
"""
import asyncio

from sqlalchemy import select

from careflow import models
from careflow.database import AsyncSessionLocal

from conftest import login


async def _audit_actions(tenant_id):
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(models.AuditLog.action).where(models.AuditLog.tenant_id == tenant_id)
        )
        return result.scalars().all()


class TestTenants:
    def test_create_and_list_tenants(self, client, admin_headers, make_tenant):
        lakeside = make_tenant("Lakeside Orthopedics")
        make_tenant("Hillcrest Clinic")

        resp = client.get("/api/tenants/", headers=admin_headers)
        assert resp.status_code == 200
        names = {t["name"] for t in resp.json()}
        assert names == {"Lakeside Orthopedics", "Hillcrest Clinic"}

        resp = client.get(f"/api/tenants/{lakeside['id']}", headers=lakeside["headers"])
        assert resp.status_code == 200
        assert resp.json()["timezone"] == "America/Chicago"

    def test_generated_admin_password_is_returned_once(self, client, admin_headers):
        resp = client.post("/api/tenants/", headers=admin_headers, json={
            "name": "Riverbend",
            "admin_email": "owner@riverbend.example.com",
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["admin"]["role"] == "practice_admin"
        assert body["temporary_password"]
        login(client, "owner@riverbend.example.com", body["temporary_password"])

    def test_unknown_timezone_rejected(self, client, admin_headers):
        resp = client.post("/api/tenants/", headers=admin_headers, json={
            "name": "Nowhere",
            "timezone": "Mars/Olympus_Mons",
            "admin_email": "owner@nowhere.example.com",
        })
        assert resp.status_code == 422
        assert resp.json()["detail"] == "Request validation error"

    def test_duplicate_admin_email_conflicts(self, client, admin_headers, make_tenant):
        make_tenant("Lakeside Orthopedics", admin_email="shared@example.com")
        resp = client.post("/api/tenants/", headers=admin_headers, json={
            "name": "Copycat",
            "admin_email": "shared@example.com",
        })
        assert resp.status_code == 409

    def test_practice_admin_cannot_manage_tenants(self, client, make_tenant):
        tenant = make_tenant()
        assert client.get("/api/tenants/", headers=tenant["headers"]).status_code == 403

    def test_suspended_tenant_cannot_log_in(self, client, admin_headers, make_tenant):
        tenant = make_tenant()

        resp = client.put(
            f"/api/tenants/{tenant['id']}/status",
            headers=admin_headers,
            json={"status": "suspended", "reason": "billing"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "suspended"

        # existing tokens stop working
        assert client.get("/api/patients/", headers=tenant["headers"]).status_code == 401

        resp = client.post("/auth/login", json={"username": tenant["admin_email"], "password": "practice-pass"})
        assert resp.status_code == 403

        assert "tenant_status_changed" in asyncio.run(_audit_actions(tenant["id"]))

    def test_stats(self, client, admin_headers, make_tenant, make_patient):
        tenant = make_tenant()
        make_patient(tenant["headers"])
        make_patient(tenant["headers"], first_name="Sam")

        resp = client.get(f"/api/tenants/{tenant['id']}/stats", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {
            "tenant_id": tenant["id"],
            "patients": 2,
            "providers": 0,
            "protocols": 0,
            "active_assignments": 0,
        }


class TestIsolation:
    def test_patients_are_tenant_scoped(self, client, make_tenant, make_patient):
        lakeside = make_tenant("Lakeside Orthopedics")
        hillcrest = make_tenant("Hillcrest Clinic")
        patient = make_patient(lakeside["headers"], first_name="Lee")
        make_patient(hillcrest["headers"], first_name="Kim")

        resp = client.get("/api/patients/", headers=hillcrest["headers"])
        assert [p["first_name"] for p in resp.json()] == ["Kim"]

        resp = client.get(f"/api/patients/{patient['id']}", headers=hillcrest["headers"])
        assert resp.status_code == 404

        resp = client.get(f"/api/tenants/{lakeside['id']}", headers=hillcrest["headers"])
        assert resp.status_code == 404

    def test_patient_search(self, client, make_tenant, make_patient):
        tenant = make_tenant()
        make_patient(tenant["headers"], first_name="Lee", last_name="Park")
        make_patient(tenant["headers"], first_name="Kim", last_name="Stone")

        resp = client.get("/api/patients/", params={"search": "par"}, headers=tenant["headers"])
        assert [p["last_name"] for p in resp.json()] == ["Park"]

    def test_admin_can_act_on_a_tenant(self, client, admin_headers, make_tenant):
        tenant = make_tenant()

        resp = client.post("/api/patients/", headers=admin_headers, json={"first_name": "A", "last_name": "B"})
        assert resp.status_code == 400

        resp = client.post(
            "/api/patients/",
            headers={**admin_headers, "X-Tenant-ID": str(tenant["id"])},
            json={"first_name": "A", "last_name": "B"},
        )
        assert resp.status_code == 201
        assert resp.json()["tenant_id"] == tenant["id"]

    def test_provider_assignment(self, client, make_tenant, make_patient):
        lakeside = make_tenant("Lakeside Orthopedics")
        hillcrest = make_tenant("Hillcrest Clinic")
        patient = make_patient(lakeside["headers"])

        provider = client.post("/api/providers/", headers=lakeside["headers"], json={
            "email": "surgeon@lakeside.example.com",
            "password": "surgeon-pass",
            "first_name": "Maya",
            "last_name": "Ortiz",
            "specialty": "Orthopedics",
        }).json()
        outsider = client.post("/api/providers/", headers=hillcrest["headers"], json={
            "email": "nurse@hillcrest.example.com",
            "password": "nurse-pass1",
            "first_name": "Jo",
            "last_name": "Hale",
            "role": "nurse",
        }).json()

        url = f"/api/patients/{patient['id']}/providers"
        resp = client.post(url, headers=lakeside["headers"], json={"provider_id": provider["id"]})
        assert resp.status_code == 201
        assert resp.json()["provider"]["last_name"] == "Ortiz"

        assert client.post(url, headers=lakeside["headers"], json={"provider_id": provider["id"]}).status_code == 409
        assert client.post(url, headers=lakeside["headers"], json={"provider_id": outsider["id"]}).status_code == 404

        resp = client.get(url, headers=lakeside["headers"])
        assert [a["provider_id"] for a in resp.json()] == [provider["id"]]

    def test_validate_token(self, client, make_tenant):
        tenant = make_tenant()
        resp = client.get("/api/auth/validate-token", headers=tenant["headers"])
        assert resp.status_code == 200
        assert resp.json()["role"] == "practice_admin"

        resp = client.get("/api/auth/validate-token", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401
