from datetime import datetime
from typing import Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from careflow import models, schemas, utils
from careflow.models import User


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Fetch a user by email."""
    result = await db.execute(select(User).where(User.email == email))
    return result.scalars().first()


async def authenticate_user(db: AsyncSession, email: str, password: str) -> User | None:
    """Authenticate user credentials."""
    user = await get_user_by_email(db, email)
    if not user or not utils.verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


async def add_user(
    db: AsyncSession,
    email: str,
    password: str,
    full_name: Optional[str],
    role: str,
    tenant_id: Optional[int] = None,
) -> User:
    """Stage a new user in the session without committing."""
    existing = await get_user_by_email(db, email)
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = User(
        email=email,
        hashed_password=utils.get_password_hash(password),
        full_name=full_name,
        role=role,
        tenant_id=tenant_id,
    )
    db.add(user)
    await db.flush()
    return user


async def commit_or_conflict(db: AsyncSession, detail: str):
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def add_audit_log(
    db: AsyncSession,
    *,
    tenant_id: Optional[int],
    actor_id: Optional[int],
    action: str,
    resource_type: str,
    resource_id,
    details: Optional[dict] = None,
) -> models.AuditLog:
    """Stage an audit row; it is committed with the change it describes."""
    entry = models.AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
        timestamp=datetime.utcnow(),
    )
    db.add(entry)
    return entry


async def create_tenant(
    db: AsyncSession, data: schemas.TenantCreate, created_by: Optional[int] = None
) -> Tuple[models.Tenant, User, Optional[str]]:
    """Create a tenant together with its first practice admin."""
    tenant = models.Tenant(
        name=data.name,
        tenant_type=data.tenant_type,
        timezone=data.timezone,
        contact_email=data.contact_email,
        settings=data.settings,
        status="active",
    )
    db.add(tenant)
    await db.flush()

    temporary_password = None
    password = data.admin_password
    if not password:
        temporary_password = password = utils.generate_default_password()

    admin = await add_user(
        db,
        email=data.admin_email,
        password=password,
        full_name=data.admin_full_name,
        role="practice_admin",
        tenant_id=tenant.id,
    )

    add_audit_log(
        db,
        tenant_id=tenant.id,
        actor_id=created_by,
        action="tenant_created",
        resource_type="tenant",
        resource_id=tenant.id,
        details={"name": tenant.name, "admin_email": admin.email},
    )

    await commit_or_conflict(db, "Tenant could not be created")
    await db.refresh(tenant)
    await db.refresh(admin)
    return tenant, admin, temporary_password


async def create_provider(db: AsyncSession, data: schemas.ProviderCreate, tenant_id: int) -> models.Provider:
    """Create a provider (or nurse) and the login behind it."""
    user = await add_user(
        db,
        email=data.email,
        password=data.password,
        full_name=f"{data.first_name} {data.last_name}",
        role=data.role,
        tenant_id=tenant_id,
    )

    provider = models.Provider(
        user_id=user.id,
        tenant_id=tenant_id,
        first_name=data.first_name,
        last_name=data.last_name,
        specialty=data.specialty,
        department=data.department,
    )
    db.add(provider)

    await commit_or_conflict(db, "Provider could not be created")
    await db.refresh(provider)
    return provider


async def create_patient(db: AsyncSession, data: schemas.PatientCreate, tenant_id: int) -> models.Patient:
    user_id = None
    if data.email and data.password:
        user = await add_user(
            db,
            email=data.email,
            password=data.password,
            full_name=f"{data.first_name} {data.last_name}",
            role="patient",
            tenant_id=tenant_id,
        )
        user_id = user.id

    patient = models.Patient(
        tenant_id=tenant_id,
        user_id=user_id,
        first_name=data.first_name,
        last_name=data.last_name,
        medical_record_number=data.medical_record_number,
        surgery_date=data.surgery_date,
        surgery_type=data.surgery_type,
        status="active",
    )
    db.add(patient)

    await commit_or_conflict(db, "Patient could not be created")
    await db.refresh(patient)
    return patient


async def get_patient_for_user(db: AsyncSession, user: User) -> models.Patient | None:
    result = await db.execute(
        select(models.Patient).where(models.Patient.user_id == user.id)
    )
    return result.scalars().first()


async def get_provider_for_user(db: AsyncSession, user: User) -> models.Provider | None:
    result = await db.execute(
        select(models.Provider).where(models.Provider.user_id == user.id)
    )
    return result.scalars().first()
