"""
Integration tests for protocol authoring, timeline preview and assignment.
"""
import asyncio

from fastapi import HTTPException
from sqlalchemy import func, select

from careflow import models, schemas
from careflow.database import AsyncSessionLocal
from careflow.routers.assignments import assign_protocol
from careflow.scheduling import TaskMaterializer

KNEE_PROTOCOL = {
    "name": "Knee Replacement",
    "surgery_type": "TKA",
    "tasks": [
        {"title": "Pre-op call", "task_type": "message", "day_offset": -7},
        {"title": "Daily check", "task_type": "form", "day_offset": 0, "recurrence": {"kind": "daily"}},
        {
            "title": "Ankle pumps",
            "task_type": "exercise",
            "day_offset": 1,
            "recurrence": {"kind": "every_n_hours", "interval": 4, "end_day": 3},
        },
    ],
}


async def _count_tasks(patient_id):
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(func.count(models.PatientTaskInstance.id)).where(
                models.PatientTaskInstance.patient_id == patient_id
            )
        )
        return result.scalar()


async def _active_assignments(patient_id):
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(func.count(models.ProtocolAssignment.id)).where(
                models.ProtocolAssignment.patient_id == patient_id,
                models.ProtocolAssignment.status == "active",
            )
        )
        return result.scalar()


async def _assign_twice_at_once(email, patient_id, protocol_id):
    """Two assignment requests racing on separate sessions."""
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(models.User).where(models.User.email == email))
        user = result.scalars().first()

    async def assign():
        async with AsyncSessionLocal() as db:
            return await assign_protocol(
                patient_id,
                schemas.AssignmentCreate(protocol_id=protocol_id),
                current_user=user,
                materializer=TaskMaterializer(),
                db=db,
            )

    return await asyncio.gather(assign(), assign(), return_exceptions=True)


def _create_protocol(client, headers, payload=KNEE_PROTOCOL):
    resp = client.post("/api/protocols/", headers=headers, json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestProtocols:
    def test_create_protocol_with_tasks(self, client, make_tenant):
        tenant = make_tenant()
        protocol = _create_protocol(client, tenant["headers"])

        assert protocol["tenant_id"] == tenant["id"]
        assert protocol["is_global"] is False
        assert [t["day_offset"] for t in protocol["tasks"]] == [-7, 0, 1]
        pumps = protocol["tasks"][2]
        assert pumps["recurrence_kind"] == "every_n_hours"
        assert pumps["recurrence_interval"] == 4
        assert pumps["recurrence_end_day"] == 3

    def test_unknown_recurrence_kind_is_rejected(self, client, make_tenant):
        tenant = make_tenant()
        payload = {
            "name": "Bad",
            "tasks": [{"title": "x", "task_type": "form", "recurrence": {"kind": "fortnightly"}}],
        }
        resp = client.post("/api/protocols/", headers=tenant["headers"], json=payload)
        assert resp.status_code == 422

    def test_interval_required(self, client, make_tenant):
        tenant = make_tenant()
        payload = {
            "name": "Bad",
            "tasks": [{"title": "x", "task_type": "form", "recurrence": {"kind": "every_n_days"}}],
        }
        assert client.post("/api/protocols/", headers=tenant["headers"], json=payload).status_code == 422

    def test_preview_resolves_dates(self, client, make_tenant):
        tenant = make_tenant()
        protocol = _create_protocol(client, tenant["headers"])

        resp = client.get(
            f"/api/protocols/{protocol['id']}/preview",
            params={"anchor_date": "2025-01-17"},
            headers=tenant["headers"],
        )
        assert resp.status_code == 200
        entries = {e["title"]: e for e in resp.json()["entries"]}
        assert entries["Pre-op call"]["dates"] == ["2025-01-10"]
        assert len(entries["Daily check"]["dates"]) == 10
        assert entries["Daily check"]["dates"][-1] == "2025-01-26"
        assert entries["Ankle pumps"]["dates"] == ["2025-01-18", "2025-01-19", "2025-01-20"]

    def test_add_task_definition(self, client, make_tenant):
        tenant = make_tenant()
        protocol = _create_protocol(client, tenant["headers"])

        resp = client.post(
            f"/api/protocols/{protocol['id']}/tasks",
            headers=tenant["headers"],
            json={"title": "Week 2 video", "task_type": "video", "day_offset": 14, "time_of_day": "09:30"},
        )
        assert resp.status_code == 201
        assert resp.json()["recurrence_kind"] == "none"

        resp = client.get(f"/api/protocols/{protocol['id']}", headers=tenant["headers"])
        assert len(resp.json()["tasks"]) == 4

    def test_other_tenant_cannot_see_protocol(self, client, make_tenant):
        lakeside = make_tenant("Lakeside Orthopedics")
        hillcrest = make_tenant("Hillcrest Clinic")
        protocol = _create_protocol(client, lakeside["headers"])

        assert client.get(f"/api/protocols/{protocol['id']}", headers=hillcrest["headers"]).status_code == 404
        assert client.get("/api/protocols/", headers=hillcrest["headers"]).json() == []

    def test_promoted_protocol_is_visible_everywhere(self, client, admin_headers, make_tenant):
        lakeside = make_tenant("Lakeside Orthopedics")
        hillcrest = make_tenant("Hillcrest Clinic")
        protocol = _create_protocol(client, lakeside["headers"])

        assert client.post(
            f"/api/protocols/{protocol['id']}/promote", headers=lakeside["headers"]
        ).status_code == 403

        resp = client.post(f"/api/protocols/{protocol['id']}/promote", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["is_global"] is True
        assert resp.json()["tenant_id"] is None

        listed = client.get("/api/protocols/", headers=hillcrest["headers"]).json()
        assert [p["id"] for p in listed] == [protocol["id"]]

        # tenants may use a global template but not edit it
        resp = client.post(
            f"/api/protocols/{protocol['id']}/tasks",
            headers=hillcrest["headers"],
            json={"title": "x", "task_type": "form"},
        )
        assert resp.status_code == 403


class TestAssignments:
    def test_assign_materializes_tasks(self, client, make_tenant, make_patient):
        tenant = make_tenant()
        patient = make_patient(tenant["headers"])
        protocol = _create_protocol(client, tenant["headers"])

        resp = client.post(
            f"/api/patients/{patient['id']}/assignments",
            headers=tenant["headers"],
            json={"protocol_id": protocol["id"]},
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["assignment"]["anchor_date"] == "2025-01-17"
        assert body["assignment"]["status"] == "active"
        # 1 pre-op + 10 daily + 3 ankle pump days
        assert body["tasks_created"] == 14
        assert body["failures"] == []
        assert asyncio.run(_count_tasks(patient["id"])) == 14

        resp = client.get(
            "/api/patient-tasks/",
            params={"patient_id": patient["id"], "start_date": "2025-01-17", "end_date": "2025-01-18"},
            headers=tenant["headers"],
        )
        titles = sorted(t["definition"]["title"] for t in resp.json())
        assert titles == ["Ankle pumps", "Daily check", "Daily check"]

    def test_duplicate_active_assignment_conflicts(self, client, make_tenant, make_patient):
        tenant = make_tenant()
        patient = make_patient(tenant["headers"])
        protocol = _create_protocol(client, tenant["headers"])
        url = f"/api/patients/{patient['id']}/assignments"

        assert client.post(url, headers=tenant["headers"], json={"protocol_id": protocol["id"]}).status_code == 201
        resp = client.post(url, headers=tenant["headers"], json={"protocol_id": protocol["id"]})
        assert resp.status_code == 409
        assert asyncio.run(_count_tasks(patient["id"])) == 14

    def test_simultaneous_assignments_leave_one_active(self, client, make_tenant, make_patient):
        tenant = make_tenant()
        patient = make_patient(tenant["headers"])
        protocol = _create_protocol(client, tenant["headers"])

        results = asyncio.run(_assign_twice_at_once(tenant["admin_email"], patient["id"], protocol["id"]))

        created = [r for r in results if isinstance(r, dict)]
        conflicts = [r for r in results if isinstance(r, HTTPException)]
        assert len(created) == 1
        assert created[0]["tasks_created"] == 14
        assert [e.status_code for e in conflicts] == [409]
        assert asyncio.run(_active_assignments(patient["id"])) == 1
        assert asyncio.run(_count_tasks(patient["id"])) == 14

    def test_reassign_after_cancel_skips_existing_dates(self, client, make_tenant, make_patient):
        tenant = make_tenant()
        patient = make_patient(tenant["headers"])
        protocol = _create_protocol(client, tenant["headers"])
        url = f"/api/patients/{patient['id']}/assignments"

        first = client.post(url, headers=tenant["headers"], json={"protocol_id": protocol["id"]}).json()
        resp = client.post(f"/api/assignments/{first['assignment']['id']}/cancel", headers=tenant["headers"])
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        second = client.post(url, headers=tenant["headers"], json={"protocol_id": protocol["id"]})
        assert second.status_code == 201
        assert second.json()["tasks_created"] == 0
        assert second.json()["tasks_skipped"] == 14
        assert asyncio.run(_count_tasks(patient["id"])) == 14

        history = client.get(url, headers=tenant["headers"]).json()
        assert sorted(a["status"] for a in history) == ["active", "cancelled"]

    def test_missing_anchor_is_rejected(self, client, make_tenant, make_patient):
        tenant = make_tenant()
        patient = make_patient(tenant["headers"], surgery_date=None)
        protocol = _create_protocol(client, tenant["headers"])
        url = f"/api/patients/{patient['id']}/assignments"

        assert client.post(url, headers=tenant["headers"], json={"protocol_id": protocol["id"]}).status_code == 400

        resp = client.post(
            url, headers=tenant["headers"], json={"protocol_id": protocol["id"], "anchor_date": "2025-03-01"}
        )
        assert resp.status_code == 201
        assert resp.json()["assignment"]["anchor_date"] == "2025-03-01"

    def test_cannot_assign_other_tenants_protocol(self, client, make_tenant, make_patient):
        lakeside = make_tenant("Lakeside Orthopedics")
        hillcrest = make_tenant("Hillcrest Clinic")
        patient = make_patient(hillcrest["headers"])
        protocol = _create_protocol(client, lakeside["headers"])

        resp = client.post(
            f"/api/patients/{patient['id']}/assignments",
            headers=hillcrest["headers"],
            json={"protocol_id": protocol["id"]},
        )
        assert resp.status_code == 404
        assert asyncio.run(_count_tasks(patient["id"])) == 0
