import logging
from datetime import date, datetime
from typing import Optional

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from careflow import models
from careflow.database import AsyncSessionLocal

logger = logging.getLogger(__name__)


def local_today(timezone_name: Optional[str], now_utc: Optional[datetime] = None) -> date:
    """Calendar date in the tenant's timezone."""
    now_utc = now_utc or datetime.utcnow()
    try:
        tz = pytz.timezone(timezone_name or "UTC")
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{timezone_name}', using UTC")
        tz = pytz.utc
    return pytz.utc.localize(now_utc).astimezone(tz).date()


async def update_recovery_days(db: AsyncSession, now_utc: Optional[datetime] = None) -> int:
    """
    Recompute current_recovery_day for every active patient with a surgery date.

    Returns:
        Number of patients whose value changed.
    """
    tenants_result = await db.execute(
        select(models.Tenant).where(models.Tenant.status == "active")
    )
    updated = 0

    for tenant in tenants_result.scalars().all():
        today = local_today(tenant.timezone, now_utc)

        patients_result = await db.execute(
            select(models.Patient).where(
                models.Patient.tenant_id == tenant.id,
                models.Patient.status == "active",
                models.Patient.surgery_date.is_not(None),
            )
        )
        for patient in patients_result.scalars().all():
            recovery_day = (today - patient.surgery_date).days
            if patient.current_recovery_day != recovery_day:
                patient.current_recovery_day = recovery_day
                updated += 1

    await db.commit()
    return updated


async def run_daily_tasks():
    """
    Run tasks that should be executed daily
    """
    logger.info("Starting daily scheduled tasks")

    async with AsyncSessionLocal() as db:
        try:
            updated_count = await update_recovery_days(db)
            logger.info(f"Recovery day update completed. Updated {updated_count} patients.")
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Error updating recovery days: {str(e)}")

    logger.info("Daily scheduled tasks completed")


def create_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=pytz.utc)
    # hourly, so every tenant is updated soon after its own local midnight
    scheduler.add_job(
        run_daily_tasks,
        "cron",
        minute=5,
        id="recovery_day_update",
        replace_existing=True,
    )
    return scheduler
