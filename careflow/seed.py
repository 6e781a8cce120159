import asyncio
import logging
import os

from sqlalchemy import select

from careflow import models
from careflow.config import configure_logging
from careflow.database import AsyncSessionLocal, create_tables
from careflow.scheduling import parse_recurrence
from careflow.utils import get_password_hash

logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@careflow.local")
ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "Admin@123")
ADMIN_NAME = "SaaS Admin"

TEMPLATE_NAME = "Total Joint Replacement Recovery"

# Template rows use the free-form frequency shape of the clinical content team
TEMPLATE_TASKS = [
    {"day": -45, "type": "message", "title": "Welcome to Recovery",
     "content": "Welcome to your personalized recovery journey."},
    {"day": -45, "type": "form", "title": "Initial Health Assessment",
     "content": "Complete your baseline health questionnaire",
     "questions": ["Current pain level (1-10)?", "Current medications?", "Allergies?"]},
    {"day": -5, "type": "message", "title": "Pre-Op Skin Wash Instructions",
     "content": "Use the CHG cloths as instructed the night before surgery.",
     "frequency": {"repeat": True, "until_day": -1}},
    {"day": -1, "type": "message", "title": "Surgery Tomorrow - Final Reminders",
     "content": "Nothing to eat or drink after midnight."},
    {"day": 0, "type": "form", "title": "Post-Surgery Check-in",
     "content": "How are you feeling after surgery?",
     "frequency": {"type": "every_4_hours"}},
    {"day": 1, "type": "exercise", "title": "Ankle Pumps",
     "content": "Pump ankles up and down, 10 times every hour while awake",
     "frequency": {"type": "hourly"}},
    {"day": 1, "type": "form", "title": "Daily Recovery Check",
     "content": "Daily assessment of your recovery progress",
     "frequency": {"type": "daily", "repeat": True}},
    {"day": 7, "type": "video", "title": "Home Exercise Program",
     "content": "Week one home exercises", "url": "https://example.com/videos/home-exercises"},
    {"day": 14, "type": "form", "title": "Two Week Progress Check",
     "content": "How is your recovery going?",
     "frequency": {"type": "weekly", "repeat": True}},
]


async def seed_admin(session) -> models.User:
    result = await session.execute(
        select(models.User).where(models.User.email == ADMIN_EMAIL)
    )
    existing_admin = result.scalar_one_or_none()

    if existing_admin:
        logger.info("Admin already exists")
        return existing_admin

    admin = models.User(
        email=ADMIN_EMAIL,
        hashed_password=get_password_hash(ADMIN_PASSWORD),
        full_name=ADMIN_NAME,
        role="saas_admin",
        tenant_id=None,
        is_active=True
    )

    session.add(admin)
    await session.commit()
    logger.info("Admin created successfully")
    return admin


def template_definition(task: dict) -> models.ProtocolTaskDefinition:
    rule, warnings = parse_recurrence(task.get("frequency"))
    for warning in warnings:
        logger.warning(f"Template task '{task['title']}': {warning}")

    content = {k: v for k, v in task.items() if k not in ("day", "type", "title", "frequency")}
    return models.ProtocolTaskDefinition(
        title=task["title"],
        description=task.get("content"),
        task_type=task["type"],
        day_offset=task["day"],
        is_required=task.get("required", True),
        content=content,
        **rule.to_columns(),
    )


async def seed_template_protocol(session, admin: models.User) -> models.Protocol:
    result = await session.execute(
        select(models.Protocol).where(
            models.Protocol.name == TEMPLATE_NAME,
            models.Protocol.is_global.is_(True),
        )
    )
    existing = result.scalars().first()
    if existing:
        logger.info("Template protocol already exists")
        return existing

    protocol = models.Protocol(
        tenant_id=None,
        name=TEMPLATE_NAME,
        description="Pre- and post-operative timeline for hip and knee replacement",
        surgery_type="TJR",
        is_active=True,
        is_global=True,
        created_by=admin.id,
    )
    protocol.tasks = [template_definition(task) for task in TEMPLATE_TASKS]
    session.add(protocol)
    await session.commit()
    logger.info(f"Template protocol created with {len(TEMPLATE_TASKS)} tasks")
    return protocol


async def seed():
    await create_tables()
    async with AsyncSessionLocal() as session:
        admin = await seed_admin(session)
        await seed_template_protocol(session, admin)


if __name__ == "__main__":
    configure_logging()
    asyncio.run(seed())
