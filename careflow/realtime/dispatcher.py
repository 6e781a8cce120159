"""
Subscription registry and event fan-out for realtime chat.

The hub is constructed explicitly at application startup and closed at
shutdown. Every subscription is tracked by id and moves through
``unsubscribed -> subscribing -> active -> unsubscribed``. Events are passed
through the tenant filter before any callback sees them.
"""

import inspect
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from careflow import models
from careflow.realtime.events import ChangeEvent, ChangeKind, ChangeSource, typing_event
from careflow.realtime.filters import ConversationTenantLookup, TenantEventFilter
from careflow.realtime.presence import TypingTracker

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], Union[Awaitable[None], None]]


class RealtimeError(Exception):
    pass


class SubscriptionError(RealtimeError):
    pass


class HubClosedError(RealtimeError):
    pass


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"


class SubscriptionScope(str, Enum):
    PROVIDER = "provider"
    CONVERSATION = "conversation"


@dataclass
class EventCallbacks:
    on_new_message: Optional[EventCallback] = None
    on_message_updated: Optional[EventCallback] = None
    on_typing: Optional[EventCallback] = None
    on_read_receipt: Optional[EventCallback] = None
    on_conversation_update: Optional[EventCallback] = None
    # receives every event without a more specific handler
    on_event: Optional[EventCallback] = None

    def for_event(self, event: ChangeEvent) -> Optional[EventCallback]:
        handler = None
        if event.source == ChangeSource.MESSAGES:
            handler = self.on_new_message if event.kind == ChangeKind.INSERT else self.on_message_updated
        elif event.source == ChangeSource.TYPING:
            handler = self.on_typing
        elif event.source == ChangeSource.READ_RECEIPTS:
            handler = self.on_read_receipt
        elif event.source == ChangeSource.CONVERSATIONS:
            handler = self.on_conversation_update
        return handler or self.on_event


class Subscription:
    def __init__(
        self,
        scope: SubscriptionScope,
        tenant_id: int,
        user_id: int,
        callbacks: EventCallbacks,
        conversation_id: Optional[int] = None,
    ):
        self.id = uuid.uuid4().hex
        self.scope = scope
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.callbacks = callbacks
        self.conversation_id = conversation_id
        self.state = SubscriptionState.UNSUBSCRIBED
        self.created_at = datetime.utcnow()

    @property
    def is_active(self) -> bool:
        return self.state == SubscriptionState.ACTIVE

    def matches(self, event: ChangeEvent) -> bool:
        """Scope check only; tenant relevance is decided by the filter."""
        if self.scope == SubscriptionScope.CONVERSATION:
            if event.conversation_id != self.conversation_id:
                return False
            # don't echo a user's own typing back to them
            if event.source == ChangeSource.TYPING and event.actor_user_id == self.user_id:
                return False
        return True

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self.id}, scope={self.scope.value}, "
            f"tenant_id={self.tenant_id}, conversation_id={self.conversation_id}, "
            f"state={self.state.value})"
        )


class MessageDeduplicator:
    """Drop duplicate deliveries of the same message event.

    Keeps the most recent ``max_size`` keys. Events without a dedup key
    (typing, conversation updates) are always accepted.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._seen: "OrderedDict[tuple, None]" = OrderedDict()

    def accept(self, event: ChangeEvent) -> bool:
        key = event.dedup_key
        if key is None:
            return True
        if key in self._seen:
            self._seen.move_to_end(key)
            return False
        self._seen[key] = None
        if len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return True


class RealtimeHub:
    def __init__(
        self,
        event_filter: TenantEventFilter,
        session_factory=None,
        typing_idle_seconds: float = 10.0,
    ):
        self.filter = event_filter
        self.session_factory = session_factory
        self.typing = TypingTracker(self._typing_changed, idle_seconds=typing_idle_seconds)
        self._subscriptions: Dict[str, Subscription] = {}
        self._open = False

    # ---------------- lifecycle ----------------

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self):
        self._open = True
        logger.info("Realtime hub opened")

    async def close(self):
        self._open = False
        for subscription_id in list(self._subscriptions):
            await self.unsubscribe(subscription_id)
        await self.typing.close()
        logger.info("Realtime hub closed")

    # ---------------- registry ----------------

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def subscriptions(self, tenant_id: Optional[int] = None) -> List[Subscription]:
        subs = list(self._subscriptions.values())
        if tenant_id is not None:
            subs = [s for s in subs if s.tenant_id == tenant_id]
        return subs

    def _register(self, subscription: Subscription):
        if not self._open:
            raise HubClosedError("Realtime hub is not open")
        subscription.state = SubscriptionState.SUBSCRIBING
        self._subscriptions[subscription.id] = subscription

    def _activate(self, subscription: Subscription) -> Subscription:
        # an unsubscribe may have landed while we were verifying access
        if subscription.state != SubscriptionState.SUBSCRIBING:
            raise SubscriptionError(f"Subscription {subscription.id} was cancelled while subscribing")
        subscription.state = SubscriptionState.ACTIVE
        logger.info(f"Subscription active: {subscription!r}")
        return subscription

    async def subscribe_provider(
        self,
        tenant_id: int,
        user_id: int,
        callbacks: EventCallbacks,
    ) -> Subscription:
        """Receive every conversation event of ``tenant_id``."""
        subscription = Subscription(SubscriptionScope.PROVIDER, tenant_id, user_id, callbacks)
        self._register(subscription)
        return self._activate(subscription)

    async def subscribe_conversation(
        self,
        conversation_id: int,
        tenant_id: int,
        user_id: int,
        callbacks: EventCallbacks,
    ) -> Subscription:
        """Receive events of one conversation, which must belong to ``tenant_id``."""
        subscription = Subscription(
            SubscriptionScope.CONVERSATION, tenant_id, user_id, callbacks,
            conversation_id=conversation_id,
        )
        self._register(subscription)

        owner = await self.filter.lookup(conversation_id)
        if owner is None or owner != tenant_id:
            subscription.state = SubscriptionState.UNSUBSCRIBED
            self._subscriptions.pop(subscription.id, None)
            raise SubscriptionError(
                f"Conversation {conversation_id} is not available to tenant {tenant_id}"
            )

        return self._activate(subscription)

    async def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if not subscription:
            return False

        subscription.state = SubscriptionState.UNSUBSCRIBED

        if subscription.scope == SubscriptionScope.CONVERSATION:
            still_watched = any(
                s.conversation_id == subscription.conversation_id
                for s in self._subscriptions.values()
            )
            if not still_watched:
                self.typing.cancel_conversation(subscription.conversation_id)

        logger.info(f"Subscription removed: {subscription!r}")
        return True

    # ---------------- fan-out ----------------

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching, tenant-relevant subscription.

        Returns:
            The number of callbacks invoked.
        """
        if not self._open:
            logger.warning(f"Dropping {event.source.value} event, realtime hub is closed")
            return 0

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.is_active or not subscription.matches(event):
                continue
            if not await self.filter.is_relevant(event, subscription.tenant_id):
                continue

            callback = subscription.callbacks.for_event(event)
            if callback is None:
                continue

            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Callback failed for subscription {subscription.id}: {e}")

        return delivered

    # ---------------- typing ----------------

    async def set_typing(self, conversation_id: int, user_id: int, is_typing: bool):
        if is_typing:
            await self.typing.touch(conversation_id, user_id)
        else:
            await self.typing.stop(conversation_id, user_id)

    async def _typing_changed(self, conversation_id: int, user_id: int, is_typing: bool):
        if self.session_factory is not None:
            await self._store_typing_status(conversation_id, user_id, is_typing)
        await self.publish(typing_event(conversation_id, user_id, is_typing))

    async def _store_typing_status(self, conversation_id: int, user_id: int, is_typing: bool):
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(models.ConversationUserStatus).where(
                        (models.ConversationUserStatus.conversation_id == conversation_id) &
                        (models.ConversationUserStatus.user_id == user_id)
                    )
                )
                status = result.scalars().first()

                if not status:
                    status = models.ConversationUserStatus(
                        conversation_id=conversation_id,
                        user_id=user_id,
                        online=True,
                    )
                status.is_typing = is_typing
                status.last_seen = datetime.utcnow()
                status.updated_at = datetime.utcnow()
                db.add(status)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to store typing status for user {user_id}: {e}")


def build_hub(session_factory, typing_idle_seconds: float = 10.0) -> RealtimeHub:
    """Wire a hub with a database-backed tenant filter."""
    lookup = ConversationTenantLookup(session_factory)
    return RealtimeHub(
        TenantEventFilter(lookup),
        session_factory=session_factory,
        typing_idle_seconds=typing_idle_seconds,
    )


__all__ = [
    "EventCallbacks",
    "HubClosedError",
    "MessageDeduplicator",
    "RealtimeError",
    "RealtimeHub",
    "Subscription",
    "SubscriptionError",
    "SubscriptionScope",
    "SubscriptionState",
    "build_hub",
]
