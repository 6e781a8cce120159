"""
Conversation and message operations shared by the REST routes and the
socket transports. Every mutation commits first and then publishes the
matching change event to the realtime hub.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from careflow import crud, models, schemas
from careflow.auth import PATIENT, SAAS_ADMIN
from careflow.realtime import ChangeKind, RealtimeHub
from careflow.realtime.events import conversation_event, message_event, read_receipt_event

logger = logging.getLogger(__name__)

SENDER_TYPES = {
    "patient": "patient",
    "provider": "provider",
    "nurse": "nurse",
    "practice_admin": "provider",
    "saas_admin": "system",
}


async def _publish(hub: Optional[RealtimeHub], event):
    if hub is None:
        return
    await hub.publish(event)


async def get_conversation_for_user(
    db: AsyncSession, conversation_id: int, user: models.User
) -> models.Conversation:
    """Load a conversation the user may see, or raise 404.

    Staff see every conversation of their tenant; a patient only sees
    conversations about themselves.
    """
    result = await db.execute(
        select(models.Conversation)
        .options(selectinload(models.Conversation.participants))
        .where(models.Conversation.id == conversation_id)
    )
    conversation = result.scalars().first()
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")

    if user.role == SAAS_ADMIN:
        return conversation
    if conversation.tenant_id != user.tenant_id:
        raise HTTPException(status_code=404, detail="Conversation not found")

    if user.role == PATIENT:
        patient = await crud.get_patient_for_user(db, user)
        if not patient or patient.id != conversation.patient_id:
            raise HTTPException(status_code=404, detail="Conversation not found")

    return conversation


async def create_conversation(
    db: AsyncSession,
    hub: Optional[RealtimeHub],
    data: schemas.ConversationCreate,
    tenant_id: int,
    creator: models.User,
) -> models.Conversation:
    patient = await db.get(models.Patient, data.patient_id)
    if not patient or patient.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Patient not found")

    provider = None
    if data.provider_id is not None:
        provider = await db.get(models.Provider, data.provider_id)
        if not provider or provider.tenant_id != tenant_id:
            raise HTTPException(status_code=404, detail="Provider not found")

    conversation = models.Conversation(
        tenant_id=tenant_id,
        patient_id=patient.id,
        provider_id=provider.id if provider else None,
        conversation_type=data.conversation_type,
        status="active",
        title=data.title,
    )
    db.add(conversation)
    await db.flush()

    participants = {}
    if patient.user_id:
        participants[patient.user_id] = "patient"
    if provider:
        provider_user = await db.get(models.User, provider.user_id)
        participants[provider.user_id] = "nurse" if provider_user and provider_user.role == "nurse" else "provider"
    if creator.id not in participants and creator.role != SAAS_ADMIN:
        participants[creator.id] = creator.role if creator.role in ("provider", "nurse", "patient") else "provider"

    for user_id, role in participants.items():
        db.add(models.ConversationParticipant(
            conversation_id=conversation.id,
            user_id=user_id,
            role=role,
        ))

    await crud.commit_or_conflict(db, "Conversation could not be created")

    result = await db.execute(
        select(models.Conversation)
        .options(selectinload(models.Conversation.participants))
        .where(models.Conversation.id == conversation.id)
    )
    conversation = result.scalars().first()
    logger.info(f"Conversation {conversation.id} created for patient {patient.id} (tenant {tenant_id})")

    await _publish(hub, conversation_event(conversation, ChangeKind.INSERT))
    return conversation


async def send_message(
    db: AsyncSession,
    hub: Optional[RealtimeHub],
    conversation: models.Conversation,
    sender: models.User,
    data: schemas.MessageCreate,
) -> models.ChatMessage:
    if conversation.status != "active":
        raise HTTPException(status_code=409, detail=f"Conversation is {conversation.status}")

    now = datetime.utcnow()
    message = models.ChatMessage(
        conversation_id=conversation.id,
        sender_id=sender.id,
        sender_type=SENDER_TYPES.get(sender.role, "system"),
        message_type=data.message_type,
        content=data.content,
        priority=data.priority,
        message_metadata=data.metadata,
        created_at=now,
        delivered_at=now,
    )
    db.add(message)
    conversation.updated_at = now
    await db.commit()
    await db.refresh(message)

    if message.priority != "normal":
        logger.warning(
            f"{message.priority.upper()} message {message.id} in conversation {conversation.id}"
        )

    await _publish(hub, message_event(message, ChangeKind.INSERT))
    return message


async def edit_message(
    db: AsyncSession,
    hub: Optional[RealtimeHub],
    conversation: models.Conversation,
    message_id: int,
    editor: models.User,
    content: str,
) -> models.ChatMessage:
    message = await db.get(models.ChatMessage, message_id)
    if not message or message.conversation_id != conversation.id:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.sender_id != editor.id:
        raise HTTPException(status_code=403, detail="Only the sender can edit a message")

    message.content = content
    message.is_edited = True
    message.edited_at = datetime.utcnow()
    await db.commit()
    await db.refresh(message)

    await _publish(hub, message_event(message, ChangeKind.UPDATE))
    return message


async def list_messages(
    db: AsyncSession, conversation_id: int, limit: int = 100, before_id: Optional[int] = None
) -> List[models.ChatMessage]:
    query = select(models.ChatMessage).where(models.ChatMessage.conversation_id == conversation_id)
    if before_id is not None:
        query = query.where(models.ChatMessage.id < before_id)
    result = await db.execute(query.order_by(models.ChatMessage.id.desc()).limit(limit))
    return list(reversed(result.scalars().all()))


async def mark_read(
    db: AsyncSession,
    hub: Optional[RealtimeHub],
    conversation: models.Conversation,
    reader: models.User,
) -> Tuple[int, datetime]:
    """Write read receipts for every message the reader did not send.

    Returns:
        The number of newly read messages and the read timestamp.
    """
    read_at = datetime.utcnow()

    already_read = select(models.MessageReadReceipt.message_id).where(
        models.MessageReadReceipt.user_id == reader.id
    )
    result = await db.execute(
        select(models.ChatMessage).where(
            models.ChatMessage.conversation_id == conversation.id,
            models.ChatMessage.sender_id != reader.id,
            models.ChatMessage.id.not_in(already_read),
        )
    )
    unread = result.scalars().all()

    for message in unread:
        db.add(models.MessageReadReceipt(message_id=message.id, user_id=reader.id, read_at=read_at))
        if message.read_at is None:
            message.read_at = read_at

    if not unread:
        return 0, read_at

    await crud.commit_or_conflict(db, "Messages were already marked read")

    for message in unread:
        await _publish(hub, read_receipt_event(conversation.id, message.id, reader.id, read_at))
    return len(unread), read_at


async def update_status(
    db: AsyncSession,
    hub: Optional[RealtimeHub],
    conversation: models.Conversation,
    status: str,
) -> models.Conversation:
    conversation.status = status
    conversation.updated_at = datetime.utcnow()
    # participants were eager-loaded and nothing is expired on commit
    await db.commit()

    await _publish(hub, conversation_event(conversation, ChangeKind.UPDATE))
    return conversation
