import logging
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from careflow import models
from careflow.realtime.events import ChangeEvent

logger = logging.getLogger(__name__)

TenantLookup = Callable[[int], Awaitable[Optional[int]]]


class ConversationTenantLookup:
    """Resolve a conversation's tenant id through the database.

    A conversation never changes tenant, so results are cached per
    conversation id. Unknown conversations are not cached.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._cache: Dict[int, int] = {}

    async def __call__(self, conversation_id: int) -> Optional[int]:
        if conversation_id in self._cache:
            return self._cache[conversation_id]

        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(models.Conversation.tenant_id).where(
                        models.Conversation.id == conversation_id
                    )
                )
                tenant_id = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Tenant lookup failed for conversation {conversation_id}: {e}")
            return None

        if tenant_id is not None:
            self._cache[conversation_id] = tenant_id
        return tenant_id

    def remember(self, conversation_id: int, tenant_id: int):
        self._cache[conversation_id] = tenant_id

    def clear(self):
        self._cache.clear()


class TenantEventFilter:
    """Decide whether a change event may reach a subscriber of a tenant."""

    def __init__(self, lookup: TenantLookup):
        self.lookup = lookup

    async def owning_tenant(self, event: ChangeEvent) -> Optional[int]:
        return await self.lookup(event.conversation_id)

    async def is_relevant(self, event: ChangeEvent, tenant_id: int) -> bool:
        owner = await self.owning_tenant(event)
        if owner is None:
            logger.debug(f"Dropping event for unknown conversation {event.conversation_id}")
            return False
        return owner == tenant_id
