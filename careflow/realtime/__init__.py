from careflow.realtime.dispatcher import (
    EventCallbacks,
    HubClosedError,
    MessageDeduplicator,
    RealtimeHub,
    Subscription,
    SubscriptionError,
    SubscriptionScope,
    SubscriptionState,
    build_hub,
)
from careflow.realtime.events import ChangeEvent, ChangeKind, ChangeSource
from careflow.realtime.filters import ConversationTenantLookup, TenantEventFilter
from careflow.realtime.presence import TypingTracker

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "ChangeSource",
    "ConversationTenantLookup",
    "EventCallbacks",
    "HubClosedError",
    "MessageDeduplicator",
    "RealtimeHub",
    "Subscription",
    "SubscriptionError",
    "SubscriptionScope",
    "SubscriptionState",
    "TenantEventFilter",
    "TypingTracker",
    "build_hub",
]
