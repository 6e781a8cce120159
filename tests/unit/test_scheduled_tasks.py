import asyncio
from datetime import date, datetime

from sqlalchemy import select

from careflow import models
from careflow.database import AsyncSessionLocal
from careflow.scheduled_tasks import create_scheduler, local_today, update_recovery_days


async def _seed():
    async with AsyncSessionLocal() as db:
        chicago = models.Tenant(name="Lakeside", timezone="America/Chicago")
        tokyo = models.Tenant(name="Harbor", timezone="Asia/Tokyo")
        paused = models.Tenant(name="Paused", timezone="UTC", status="suspended")
        db.add_all([chicago, tokyo, paused])
        await db.flush()

        db.add_all([
            models.Patient(tenant_id=chicago.id, first_name="A", last_name="A", surgery_date=date(2025, 1, 17)),
            models.Patient(tenant_id=tokyo.id, first_name="B", last_name="B", surgery_date=date(2025, 1, 17)),
            models.Patient(tenant_id=chicago.id, first_name="C", last_name="C"),
            models.Patient(tenant_id=paused.id, first_name="D", last_name="D", surgery_date=date(2025, 1, 17)),
        ])
        await db.commit()


async def _recovery_days():
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(models.Patient.first_name, models.Patient.current_recovery_day).order_by(models.Patient.first_name)
        )
        return dict(result.all())


async def _update(now_utc):
    async with AsyncSessionLocal() as db:
        return await update_recovery_days(db, now_utc)


def test_local_today_uses_tenant_timezone():
    now = datetime(2025, 1, 20, 3, 0)
    assert local_today("America/Chicago", now) == date(2025, 1, 19)
    assert local_today("Asia/Tokyo", now) == date(2025, 1, 20)


def test_unknown_timezone_falls_back_to_utc():
    assert local_today("Nowhere/Special", datetime(2025, 1, 20, 23, 0)) == date(2025, 1, 20)


def test_recovery_day_follows_local_date():
    asyncio.run(_seed())

    # 03:00 UTC is still the previous evening in Chicago
    assert asyncio.run(_update(datetime(2025, 1, 20, 3, 0))) == 2
    days = asyncio.run(_recovery_days())
    assert days["A"] == 2
    assert days["B"] == 3
    assert days["C"] is None
    assert days["D"] is None

    # re-running within the same local day changes nothing
    assert asyncio.run(_update(datetime(2025, 1, 20, 4, 0))) == 0


def test_scheduler_registers_hourly_job():
    scheduler = create_scheduler()
    job = scheduler.get_job("recovery_day_update")
    assert job is not None
    assert str(job.trigger.fields[job.trigger.FIELD_NAMES.index("minute")]) == "5"
