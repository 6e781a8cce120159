import logging
from datetime import date
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from careflow import crud, models, schemas
from careflow.auth import (
    PRACTICE_ADMIN, SAAS_ADMIN, STAFF_ROLES,
    acting_tenant_id, require_roles,
)
from careflow.database import get_db
from careflow.dependencies import get_materializer
from careflow.scheduling import TaskMaterializer, preview_timeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/protocols", tags=["protocols"])

staff_only = require_roles(*STAFF_ROLES, SAAS_ADMIN)
authors_only = require_roles(PRACTICE_ADMIN, "provider", SAAS_ADMIN)


def _task_definition(payload: schemas.TaskDefinitionCreate, protocol_id: int = None) -> models.ProtocolTaskDefinition:
    return models.ProtocolTaskDefinition(
        protocol_id=protocol_id,
        title=payload.title,
        description=payload.description,
        task_type=payload.task_type,
        day_offset=payload.day_offset,
        time_of_day=payload.time_of_day,
        is_required=payload.is_required,
        content=payload.content,
        **payload.recurrence.to_columns(),
    )


async def _load_protocol(db: AsyncSession, protocol_id: int) -> models.Protocol:
    result = await db.execute(
        select(models.Protocol)
        .options(selectinload(models.Protocol.tasks))
        .where(models.Protocol.id == protocol_id)
    )
    return result.scalars().first()


def can_view(protocol: models.Protocol, current_user) -> bool:
    if current_user.role == SAAS_ADMIN or protocol.is_global:
        return True
    return protocol.tenant_id == current_user.tenant_id


def can_edit(protocol: models.Protocol, current_user) -> bool:
    if current_user.role == SAAS_ADMIN:
        return True
    return protocol.tenant_id is not None and protocol.tenant_id == current_user.tenant_id


async def get_visible_protocol(db: AsyncSession, protocol_id: int, current_user) -> models.Protocol:
    protocol = await _load_protocol(db, protocol_id)
    if not protocol or not can_view(protocol, current_user):
        raise HTTPException(status_code=404, detail="Protocol not found")
    return protocol


@router.post("/", response_model=schemas.ProtocolOut, status_code=status.HTTP_201_CREATED)
async def create_protocol(
    payload: schemas.ProtocolCreate,
    request: Request,
    current_user=Depends(authors_only),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a protocol with its task definitions.

    A SaaS admin without a tenant selected authors a global template.
    """
    tenant_id = acting_tenant_id(request, current_user)

    protocol = models.Protocol(
        tenant_id=tenant_id,
        name=payload.name,
        description=payload.description,
        surgery_type=payload.surgery_type,
        is_active=True,
        is_global=tenant_id is None,
        created_by=current_user.id,
    )
    protocol.tasks = [_task_definition(task) for task in payload.tasks]
    db.add(protocol)
    await db.commit()

    logger.info(f"Protocol {protocol.id} created with {len(payload.tasks)} tasks (tenant {tenant_id})")
    return await _load_protocol(db, protocol.id)


@router.get("/", response_model=List[schemas.ProtocolOut])
async def list_protocols(
    request: Request,
    surgery_type: str = Query(None),
    include_inactive: bool = Query(False),
    current_user=Depends(staff_only),
    db: AsyncSession = Depends(get_db)
):
    """
    Protocols of the caller's tenant plus global templates
    """
    query = select(models.Protocol).options(selectinload(models.Protocol.tasks))

    tenant_id = acting_tenant_id(request, current_user)
    if tenant_id is not None:
        query = query.where(
            or_(models.Protocol.tenant_id == tenant_id, models.Protocol.is_global.is_(True))
        )
    if surgery_type:
        query = query.where(models.Protocol.surgery_type == surgery_type)
    if not include_inactive:
        query = query.where(models.Protocol.is_active.is_(True))

    result = await db.execute(query.order_by(models.Protocol.name))
    return result.scalars().all()


@router.get("/{protocol_id}", response_model=schemas.ProtocolOut)
async def get_protocol(
    protocol_id: int,
    current_user=Depends(staff_only),
    db: AsyncSession = Depends(get_db)
):
    return await get_visible_protocol(db, protocol_id, current_user)


@router.post(
    "/{protocol_id}/tasks",
    response_model=schemas.TaskDefinitionOut,
    status_code=status.HTTP_201_CREATED,
)
async def add_task_definition(
    protocol_id: int,
    payload: schemas.TaskDefinitionCreate,
    current_user=Depends(authors_only),
    db: AsyncSession = Depends(get_db)
):
    protocol = await get_visible_protocol(db, protocol_id, current_user)
    if not can_edit(protocol, current_user):
        raise HTTPException(status_code=403, detail="Global protocols can only be changed by a SaaS admin")

    definition = _task_definition(payload, protocol_id=protocol.id)
    db.add(definition)
    await db.commit()
    await db.refresh(definition)
    return definition


@router.post("/{protocol_id}/promote", response_model=schemas.ProtocolOut)
async def promote_protocol(
    protocol_id: int,
    current_user=Depends(require_roles(SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    """
    Promote a tenant protocol to a global template
    """
    protocol = await _load_protocol(db, protocol_id)
    if not protocol:
        raise HTTPException(status_code=404, detail="Protocol not found")

    source_tenant = protocol.tenant_id
    protocol.tenant_id = None
    protocol.is_global = True

    crud.add_audit_log(
        db,
        tenant_id=source_tenant,
        actor_id=current_user.id,
        action="protocol_promoted",
        resource_type="protocol",
        resource_id=protocol.id,
        details={"source_tenant_id": source_tenant},
    )
    await db.commit()
    return await _load_protocol(db, protocol.id)


@router.get("/{protocol_id}/preview", response_model=schemas.TimelinePreview)
async def preview_protocol(
    protocol_id: int,
    anchor_date: date = Query(..., description="Surgery or start date the offsets are relative to"),
    current_user=Depends(staff_only),
    materializer: TaskMaterializer = Depends(get_materializer),
    db: AsyncSession = Depends(get_db)
):
    """
    Resolved dates per task definition for an anchor date, without writing anything
    """
    protocol = await get_visible_protocol(db, protocol_id, current_user)
    entries = preview_timeline(anchor_date, protocol.tasks, materializer=materializer)
    return {"protocol_id": protocol.id, "anchor_date": anchor_date, "entries": entries}
