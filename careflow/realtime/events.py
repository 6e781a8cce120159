from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ChangeSource(str, Enum):
    MESSAGES = "chat_messages"
    TYPING = "typing_indicators"
    CONVERSATIONS = "conversations"
    READ_RECEIPTS = "message_read_receipts"


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row-level change notification relayed to realtime subscribers."""

    source: ChangeSource
    kind: ChangeKind
    conversation_id: int
    record: Dict[str, Any] = Field(default_factory=dict)
    actor_user_id: Optional[int] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def message_id(self) -> Optional[int]:
        if self.source == ChangeSource.MESSAGES:
            return self.record.get("id")
        if self.source == ChangeSource.READ_RECEIPTS:
            return self.record.get("message_id")
        return None

    @property
    def dedup_key(self) -> Optional[tuple]:
        """Key consumers use to drop duplicate deliveries."""
        if self.source == ChangeSource.MESSAGES:
            # an edit is a distinct delivery from the original insert
            return (self.source.value, self.kind.value, self.message_id, self.record.get("edited_at"))
        if self.source == ChangeSource.READ_RECEIPTS:
            return (self.source.value, self.message_id, self.record.get("user_id"))
        return None

    def frame(self) -> dict:
        """JSON-safe ``{"type", "data"}`` frame for socket transports."""
        return {
            "type": FRAME_TYPES[(self.source, self.kind)],
            "data": self.model_dump(mode="json", exclude={"source", "kind"}),
        }


FRAME_TYPES = {
    (ChangeSource.MESSAGES, ChangeKind.INSERT): "new_message",
    (ChangeSource.MESSAGES, ChangeKind.UPDATE): "message_updated",
    (ChangeSource.MESSAGES, ChangeKind.DELETE): "message_deleted",
    (ChangeSource.TYPING, ChangeKind.INSERT): "typing_indicator",
    (ChangeSource.TYPING, ChangeKind.UPDATE): "typing_indicator",
    (ChangeSource.TYPING, ChangeKind.DELETE): "typing_indicator",
    (ChangeSource.CONVERSATIONS, ChangeKind.INSERT): "conversation_created",
    (ChangeSource.CONVERSATIONS, ChangeKind.UPDATE): "conversation_updated",
    (ChangeSource.CONVERSATIONS, ChangeKind.DELETE): "conversation_deleted",
    (ChangeSource.READ_RECEIPTS, ChangeKind.INSERT): "message_read",
    (ChangeSource.READ_RECEIPTS, ChangeKind.UPDATE): "message_read",
    (ChangeSource.READ_RECEIPTS, ChangeKind.DELETE): "message_read",
}


def message_event(message, kind: ChangeKind = ChangeKind.INSERT) -> ChangeEvent:
    return ChangeEvent(
        source=ChangeSource.MESSAGES,
        kind=kind,
        conversation_id=message.conversation_id,
        actor_user_id=message.sender_id,
        record={
            "id": message.id,
            "conversation_id": message.conversation_id,
            "sender_id": message.sender_id,
            "sender_type": message.sender_type,
            "message_type": message.message_type,
            "content": message.content,
            "priority": message.priority,
            "metadata": message.message_metadata or {},
            "created_at": message.created_at.isoformat() if message.created_at else None,
            "read_at": message.read_at.isoformat() if message.read_at else None,
            "is_edited": bool(message.is_edited),
            "edited_at": message.edited_at.isoformat() if message.edited_at else None,
        },
    )


def typing_event(conversation_id: int, user_id: int, is_typing: bool) -> ChangeEvent:
    return ChangeEvent(
        source=ChangeSource.TYPING,
        kind=ChangeKind.UPDATE,
        conversation_id=conversation_id,
        actor_user_id=user_id,
        record={
            "conversation_id": conversation_id,
            "user_id": user_id,
            "is_typing": is_typing,
        },
    )


def conversation_event(conversation, kind: ChangeKind = ChangeKind.UPDATE) -> ChangeEvent:
    return ChangeEvent(
        source=ChangeSource.CONVERSATIONS,
        kind=kind,
        conversation_id=conversation.id,
        record={
            "id": conversation.id,
            "tenant_id": conversation.tenant_id,
            "patient_id": conversation.patient_id,
            "provider_id": conversation.provider_id,
            "conversation_type": conversation.conversation_type,
            "status": conversation.status,
        },
    )


def read_receipt_event(conversation_id: int, message_id: int, user_id: int, read_at: datetime) -> ChangeEvent:
    return ChangeEvent(
        source=ChangeSource.READ_RECEIPTS,
        kind=ChangeKind.INSERT,
        conversation_id=conversation_id,
        actor_user_id=user_id,
        record={
            "message_id": message_id,
            "user_id": user_id,
            "read_at": read_at.isoformat(),
        },
    )
