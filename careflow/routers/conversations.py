import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from careflow import chat_service, crud, models, schemas
from careflow.auth import PATIENT, SAAS_ADMIN, STAFF_ROLES, acting_tenant_id, get_current_user, require_roles
from careflow.database import get_db
from careflow.dependencies import get_hub
from careflow.realtime import RealtimeHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.post("/", response_model=schemas.ConversationOut, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    payload: schemas.ConversationCreate,
    request: Request,
    current_user=Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
    db: AsyncSession = Depends(get_db)
):
    if current_user.role == PATIENT:
        patient = await crud.get_patient_for_user(db, current_user)
        if not patient or patient.id != payload.patient_id:
            raise HTTPException(status_code=404, detail="Patient not found")
        tenant_id = patient.tenant_id
    else:
        tenant_id = acting_tenant_id(request, current_user)
        if tenant_id is None:
            patient = await db.get(models.Patient, payload.patient_id)
            if not patient:
                raise HTTPException(status_code=404, detail="Patient not found")
            tenant_id = patient.tenant_id

    return await chat_service.create_conversation(db, hub, payload, tenant_id, current_user)


@router.get("/", response_model=List[schemas.ConversationOut])
async def list_conversations(
    request: Request,
    status_filter: Optional[schemas.ConversationStatus] = Query(None, alias="status"),
    patient_id: Optional[int] = Query(None),
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    query = select(models.Conversation).options(selectinload(models.Conversation.participants))

    if current_user.role == PATIENT:
        patient = await crud.get_patient_for_user(db, current_user)
        if not patient:
            return []
        query = query.where(models.Conversation.patient_id == patient.id)
    else:
        tenant_id = acting_tenant_id(request, current_user)
        if tenant_id is not None:
            query = query.where(models.Conversation.tenant_id == tenant_id)
        if patient_id is not None:
            query = query.where(models.Conversation.patient_id == patient_id)

    if status_filter:
        query = query.where(models.Conversation.status == status_filter)

    result = await db.execute(query.order_by(models.Conversation.updated_at.desc()))
    return result.scalars().all()


@router.get("/{conversation_id}", response_model=schemas.ConversationOut)
async def get_conversation(
    conversation_id: int,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await chat_service.get_conversation_for_user(db, conversation_id, current_user)


@router.put("/{conversation_id}/status", response_model=schemas.ConversationOut)
async def update_conversation_status(
    conversation_id: int,
    payload: schemas.ConversationStatusUpdate,
    current_user=Depends(require_roles(*STAFF_ROLES, SAAS_ADMIN)),
    hub: RealtimeHub = Depends(get_hub),
    db: AsyncSession = Depends(get_db)
):
    conversation = await chat_service.get_conversation_for_user(db, conversation_id, current_user)
    return await chat_service.update_status(db, hub, conversation, payload.status)


@router.get("/{conversation_id}/messages", response_model=List[schemas.MessageOut])
async def get_messages(
    conversation_id: int,
    limit: int = Query(100, ge=1, le=500),
    before_id: Optional[int] = Query(None),
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    conversation = await chat_service.get_conversation_for_user(db, conversation_id, current_user)
    return await chat_service.list_messages(db, conversation.id, limit=limit, before_id=before_id)


@router.post(
    "/{conversation_id}/messages",
    response_model=schemas.MessageOut,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: int,
    payload: schemas.MessageCreate,
    current_user=Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
    db: AsyncSession = Depends(get_db)
):
    conversation = await chat_service.get_conversation_for_user(db, conversation_id, current_user)
    return await chat_service.send_message(db, hub, conversation, current_user, payload)


@router.patch("/{conversation_id}/messages/{message_id}", response_model=schemas.MessageOut)
async def edit_message(
    conversation_id: int,
    message_id: int,
    payload: schemas.MessageUpdate,
    current_user=Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
    db: AsyncSession = Depends(get_db)
):
    conversation = await chat_service.get_conversation_for_user(db, conversation_id, current_user)
    return await chat_service.edit_message(db, hub, conversation, message_id, current_user, payload.content)


@router.post("/{conversation_id}/read", response_model=schemas.ReadResult)
async def mark_conversation_read(
    conversation_id: int,
    current_user=Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
    db: AsyncSession = Depends(get_db)
):
    conversation = await chat_service.get_conversation_for_user(db, conversation_id, current_user)
    marked, read_at = await chat_service.mark_read(db, hub, conversation, current_user)
    return {"conversation_id": conversation.id, "marked": marked, "read_at": read_at}


@router.post("/{conversation_id}/typing", status_code=status.HTTP_204_NO_CONTENT)
async def set_typing(
    conversation_id: int,
    payload: schemas.TypingUpdate,
    current_user=Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
    db: AsyncSession = Depends(get_db)
):
    """
    Start or stop the typing indicator; it clears itself after the idle timeout
    """
    conversation = await chat_service.get_conversation_for_user(db, conversation_id, current_user)
    await hub.set_typing(conversation.id, current_user.id, payload.is_typing)
