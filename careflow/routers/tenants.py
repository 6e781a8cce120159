import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from careflow import crud, models, schemas
from careflow.auth import SAAS_ADMIN, get_current_user, require_roles
from careflow.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants", tags=["tenants"])


async def _get_tenant(db: AsyncSession, tenant_id: int) -> models.Tenant:
    tenant = await db.get(models.Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant


@router.post("/", response_model=schemas.TenantCreated, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    payload: schemas.TenantCreate,
    current_user=Depends(require_roles(SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a tenant together with its first practice admin account
    """
    tenant, admin, temporary_password = await crud.create_tenant(db, payload, created_by=current_user.id)
    logger.info(f"Tenant {tenant.id} ({tenant.name}) created by user {current_user.id}")
    return {"tenant": tenant, "admin": admin, "temporary_password": temporary_password}


@router.get("/", response_model=List[schemas.TenantOut])
async def list_tenants(
    status_filter: Optional[schemas.TenantStatus] = Query(None, alias="status"),
    current_user=Depends(require_roles(SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    query = select(models.Tenant).order_by(models.Tenant.created_at.desc())
    if status_filter:
        query = query.where(models.Tenant.status == status_filter)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{tenant_id}", response_model=schemas.TenantOut)
async def get_tenant(
    tenant_id: int,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    # tenant users may read their own tenant
    if current_user.role != SAAS_ADMIN and current_user.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return await _get_tenant(db, tenant_id)


@router.patch("/{tenant_id}", response_model=schemas.TenantOut)
async def update_tenant(
    tenant_id: int,
    payload: schemas.TenantUpdate,
    current_user=Depends(require_roles(SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    tenant = await _get_tenant(db, tenant_id)

    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(tenant, field, value)

    crud.add_audit_log(
        db,
        tenant_id=tenant.id,
        actor_id=current_user.id,
        action="tenant_updated",
        resource_type="tenant",
        resource_id=tenant.id,
        details={"fields": sorted(changes)},
    )
    await db.commit()
    await db.refresh(tenant)
    return tenant


@router.put("/{tenant_id}/status", response_model=schemas.TenantOut)
async def set_tenant_status(
    tenant_id: int,
    payload: schemas.TenantStatusUpdate,
    current_user=Depends(require_roles(SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    """
    Suspend or reactivate a tenant. Users of a suspended tenant cannot log in.
    """
    tenant = await _get_tenant(db, tenant_id)
    previous = tenant.status
    tenant.status = payload.status

    crud.add_audit_log(
        db,
        tenant_id=tenant.id,
        actor_id=current_user.id,
        action="tenant_status_changed",
        resource_type="tenant",
        resource_id=tenant.id,
        details={"from": previous, "to": payload.status, "reason": payload.reason},
    )
    await db.commit()
    await db.refresh(tenant)

    logger.info(f"Tenant {tenant.id} status {previous} -> {tenant.status}")
    return tenant


@router.get("/{tenant_id}/stats", response_model=schemas.TenantStats)
async def get_tenant_stats(
    tenant_id: int,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    if current_user.role != SAAS_ADMIN and current_user.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Tenant not found")
    await _get_tenant(db, tenant_id)

    async def count(query):
        result = await db.execute(query)
        return result.scalar() or 0

    return schemas.TenantStats(
        tenant_id=tenant_id,
        patients=await count(
            select(func.count(models.Patient.id)).where(models.Patient.tenant_id == tenant_id)
        ),
        providers=await count(
            select(func.count(models.Provider.id)).where(models.Provider.tenant_id == tenant_id)
        ),
        protocols=await count(
            select(func.count(models.Protocol.id)).where(models.Protocol.tenant_id == tenant_id)
        ),
        active_assignments=await count(
            select(func.count(models.ProtocolAssignment.id)).where(
                models.ProtocolAssignment.tenant_id == tenant_id,
                models.ProtocolAssignment.status == "active",
            )
        ),
    )
