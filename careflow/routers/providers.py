import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from careflow import crud, models, schemas
from careflow.auth import (
    PRACTICE_ADMIN, SAAS_ADMIN, STAFF_ROLES,
    acting_tenant_id, require_roles, require_tenant_id,
)
from careflow.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/providers", tags=["providers"])


@router.post("/", response_model=schemas.ProviderOut, status_code=status.HTTP_201_CREATED)
async def create_provider(
    payload: schemas.ProviderCreate,
    request: Request,
    current_user=Depends(require_roles(PRACTICE_ADMIN, SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    tenant_id = require_tenant_id(request, current_user)
    provider = await crud.create_provider(db, payload, tenant_id)
    logger.info(f"Provider {provider.id} ({payload.role}) created in tenant {tenant_id}")
    return provider


@router.get("/", response_model=List[schemas.ProviderOut])
async def list_providers(
    request: Request,
    current_user=Depends(require_roles(*STAFF_ROLES, SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    query = select(models.Provider).order_by(models.Provider.last_name, models.Provider.first_name)
    tenant_id = acting_tenant_id(request, current_user)
    if tenant_id is not None:
        query = query.where(models.Provider.tenant_id == tenant_id)
    result = await db.execute(query)
    return result.scalars().all()
