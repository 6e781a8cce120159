"""
Socket transports for the realtime hub.

Two ways in: a Socket.IO server mounted at ``/socket.io`` that lets a client
manage hub subscriptions by event, and a plain WebSocket endpoint streaming
one conversation as ``{"type", "data"}`` JSON frames. Neither keeps its own
fan-out; both register callbacks on the hub found on ``app.state``.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Set
from urllib.parse import parse_qs

import socketio
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from careflow import chat_service
from careflow.auth import PATIENT, SAAS_ADMIN, user_from_token
from careflow.config import settings
from careflow.database import AsyncSessionLocal
from careflow.realtime import (
    EventCallbacks,
    HubClosedError,
    MessageDeduplicator,
    RealtimeHub,
    SubscriptionError,
    SubscriptionScope,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def authenticate(token: Optional[str]):
    if not token:
        return None
    async with AsyncSessionLocal() as db:
        return await user_from_token(db, token)


async def load_conversation(conversation_id: int, user):
    """Conversation the user may access, or None."""
    async with AsyncSessionLocal() as db:
        try:
            return await chat_service.get_conversation_for_user(db, conversation_id, user)
        except HTTPException:
            return None


def conversation_id_from(data) -> Optional[int]:
    """Integer conversation id from a client payload, or None."""
    if not isinstance(data, dict):
        return None
    try:
        return int(data.get("conversation_id"))
    except (TypeError, ValueError):
        return None


class SocketGateway:
    """Socket.IO event handlers bound to a hub provider.

    Each connected sid keeps its own subscription ids and deduplicator;
    forwarded events are emitted to that sid only.
    """

    def __init__(self, sio: socketio.AsyncServer, get_hub: Callable[[], Optional[RealtimeHub]]):
        self.sio = sio
        self.get_hub = get_hub
        self._subscriptions: Dict[str, Set[str]] = {}
        self._dedup: Dict[str, MessageDeduplicator] = {}

        sio.on("connect", self.connect)
        sio.on("disconnect", self.disconnect)
        sio.on("subscribe_conversation", self.subscribe_conversation)
        sio.on("subscribe_provider", self.subscribe_provider)
        sio.on("unsubscribe", self.unsubscribe)
        sio.on("typing", self.typing)

    def _hub(self) -> RealtimeHub:
        hub = self.get_hub()
        if hub is None:
            raise HubClosedError("Realtime hub is not available")
        return hub

    def _callbacks(self, sid: str) -> EventCallbacks:
        dedup = self._dedup.setdefault(sid, MessageDeduplicator(settings.DEDUP_WINDOW))

        async def forward(event):
            if not dedup.accept(event):
                return
            frame = event.frame()
            await self.sio.emit(frame["type"], frame["data"], to=sid)

        return EventCallbacks(on_event=forward)

    async def connect(self, sid, environ, auth=None):
        token = None
        if isinstance(auth, dict):
            token = auth.get("token")
        if not token:
            query = parse_qs(environ.get("QUERY_STRING", ""))
            token = (query.get("token") or [None])[0]

        user = await authenticate(token)
        if not user:
            logger.warning(f"Rejected socket connection {sid}: invalid or missing token")
            return False

        await self.sio.save_session(sid, {
            "user_id": user.id,
            "role": user.role,
            "tenant_id": user.tenant_id,
            "token": token,
        })
        self._subscriptions[sid] = set()
        logger.info(f"User {user.id} connected with sid {sid}")
        return True

    async def disconnect(self, sid, *args):
        hub = self.get_hub()
        for subscription_id in self._subscriptions.pop(sid, set()):
            if hub is not None:
                await hub.unsubscribe(subscription_id)
        self._dedup.pop(sid, None)
        logger.info(f"Socket {sid} disconnected")

    async def subscribe_conversation(self, sid, data):
        session = await self.sio.get_session(sid)
        conversation_id = conversation_id_from(data)
        if conversation_id is None:
            return {"success": False, "error": "conversation_id is required"}

        user = await authenticate(session.get("token"))
        if not user:
            return {"success": False, "error": "Session expired"}

        conversation = await load_conversation(conversation_id, user)
        if not conversation:
            return {"success": False, "error": "Access denied"}

        tenant_id = user.tenant_id if user.role != SAAS_ADMIN else conversation.tenant_id
        try:
            subscription = await self._hub().subscribe_conversation(
                conversation.id, tenant_id, user.id, self._callbacks(sid)
            )
        except (SubscriptionError, HubClosedError) as e:
            logger.warning(f"Subscription refused for sid {sid}: {e}")
            return {"success": False, "error": str(e)}

        self._subscriptions.setdefault(sid, set()).add(subscription.id)
        return {"success": True, "subscription_id": subscription.id}

    async def subscribe_provider(self, sid, data=None):
        session = await self.sio.get_session(sid)
        if session.get("role") in (PATIENT, SAAS_ADMIN) or session.get("tenant_id") is None:
            return {"success": False, "error": "Only tenant staff can subscribe to a tenant"}

        try:
            subscription = await self._hub().subscribe_provider(
                session["tenant_id"], session["user_id"], self._callbacks(sid)
            )
        except HubClosedError as e:
            return {"success": False, "error": str(e)}

        self._subscriptions.setdefault(sid, set()).add(subscription.id)
        return {"success": True, "subscription_id": subscription.id}

    async def unsubscribe(self, sid, data):
        subscription_id = (data or {}).get("subscription_id")
        owned = self._subscriptions.get(sid, set())
        if subscription_id not in owned:
            return {"success": False, "error": "Unknown subscription"}

        owned.discard(subscription_id)
        await self._hub().unsubscribe(subscription_id)
        return {"success": True}

    async def typing(self, sid, data):
        session = await self.sio.get_session(sid)
        conversation_id = conversation_id_from(data)
        if conversation_id is None:
            return {"success": False, "error": "conversation_id is required"}

        hub = self._hub()
        subscriptions = [hub.get(sub_id) for sub_id in self._subscriptions.get(sid, set())]
        watching = any(
            s is not None
            and s.scope == SubscriptionScope.CONVERSATION
            and s.conversation_id == conversation_id
            for s in subscriptions
        )
        if not watching:
            return {"success": False, "error": "Subscribe to the conversation first"}

        await hub.set_typing(conversation_id, session["user_id"], bool(data.get("is_typing", False)))
        return {"success": True}


def create_socket_app(get_hub: Callable[[], Optional[RealtimeHub]]):
    """Build the Socket.IO server and the ASGI app to mount at ``/socket.io``."""
    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=settings.frontend_origins(),
        ping_timeout=60,
        ping_interval=25,
        max_http_buffer_size=1000000,
    )
    gateway = SocketGateway(sio, get_hub)
    # empty path: serve at the mount point
    socket_app = socketio.ASGIApp(sio, socketio_path="")
    return sio, socket_app, gateway


# =========================================================
# Plain WebSocket: one conversation per connection
# =========================================================

async def _pump(websocket: WebSocket, queue: "asyncio.Queue[dict]"):
    while True:
        frame = await queue.get()
        await websocket.send_json(frame)


async def process_websocket_message(data: dict, hub: RealtimeHub, conversation_id: int, user):
    message_type = data.get("type") if isinstance(data, dict) else None

    if message_type == "typing":
        await hub.set_typing(conversation_id, user.id, bool(data.get("is_typing", False)))

    elif message_type == "read_messages":
        async with AsyncSessionLocal() as db:
            conversation = await chat_service.get_conversation_for_user(db, conversation_id, user)
            await chat_service.mark_read(db, hub, conversation, user)

    else:
        logger.debug(f"Ignoring websocket frame of type {message_type!r}")


@router.websocket("/api/ws/conversations/{conversation_id}")
async def conversation_socket(websocket: WebSocket, conversation_id: int, token: Optional[str] = None):
    user = await authenticate(token)
    if not user:
        await websocket.close(code=1008)
        return

    conversation = await load_conversation(conversation_id, user)
    if not conversation:
        await websocket.close(code=1008)
        return

    hub: Optional[RealtimeHub] = getattr(websocket.app.state, "hub", None)
    if hub is None or not hub.is_open:
        await websocket.close(code=1011)
        return

    queue: "asyncio.Queue[dict]" = asyncio.Queue()
    dedup = MessageDeduplicator(settings.DEDUP_WINDOW)

    def enqueue(event):
        if dedup.accept(event):
            queue.put_nowait(event.frame())

    tenant_id = user.tenant_id if user.role != SAAS_ADMIN else conversation.tenant_id
    try:
        subscription = await hub.subscribe_conversation(
            conversation.id, tenant_id, user.id, EventCallbacks(on_event=enqueue)
        )
    except (SubscriptionError, HubClosedError) as e:
        logger.warning(f"WebSocket subscription refused for user {user.id}: {e}")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    await websocket.send_json({
        "type": "subscribed",
        "data": {"conversation_id": conversation.id, "subscription_id": subscription.id},
    })
    sender = asyncio.create_task(_pump(websocket, queue))

    try:
        while True:
            data = await websocket.receive_json()
            try:
                await process_websocket_message(data, hub, conversation.id, user)
            except HTTPException as e:
                await websocket.send_json({"type": "error", "data": {"detail": e.detail}})
    except WebSocketDisconnect:
        logger.info(f"WebSocket closed for user {user.id} in conversation {conversation.id}")
    except ValueError as e:
        logger.warning(f"Malformed websocket frame from user {user.id}: {e}")
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=1003)
    finally:
        sender.cancel()
        await hub.unsubscribe(subscription.id)
        if hub.typing.is_typing(conversation.id, user.id):
            await hub.set_typing(conversation.id, user.id, False)
