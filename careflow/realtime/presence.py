import asyncio
import logging
from typing import Awaitable, Callable, Dict, Set, Tuple

logger = logging.getLogger(__name__)

TypingChange = Callable[[int, int, bool], Awaitable[None]]


class TypingTracker:
    """Per (conversation, user) typing state with an idle auto-expiry timer.

    ``touch`` starts or resets the timer; when it fires the user is reported
    as no longer typing. ``on_change`` is awaited on every transition.
    """

    def __init__(self, on_change: TypingChange, idle_seconds: float = 10.0):
        self.on_change = on_change
        self.idle_seconds = idle_seconds
        self._timers: Dict[Tuple[int, int], asyncio.TimerHandle] = {}
        self._pending: Set[asyncio.Task] = set()

    def is_typing(self, conversation_id: int, user_id: int) -> bool:
        return (conversation_id, user_id) in self._timers

    async def touch(self, conversation_id: int, user_id: int):
        key = (conversation_id, user_id)
        was_typing = key in self._timers

        handle = self._timers.pop(key, None)
        if handle:
            handle.cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.idle_seconds, self._expire, key)

        if not was_typing:
            await self.on_change(conversation_id, user_id, True)

    async def stop(self, conversation_id: int, user_id: int):
        handle = self._timers.pop((conversation_id, user_id), None)
        if handle is None:
            return
        handle.cancel()
        await self.on_change(conversation_id, user_id, False)

    def _expire(self, key: Tuple[int, int]):
        self._timers.pop(key, None)
        conversation_id, user_id = key
        logger.debug(f"Typing expired for user {user_id} in conversation {conversation_id}")

        task = asyncio.ensure_future(self.on_change(conversation_id, user_id, False))
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception():
            logger.error(f"Typing expiry notification failed: {task.exception()}")

    def cancel_conversation(self, conversation_id: int):
        for key in [k for k in self._timers if k[0] == conversation_id]:
            self._timers.pop(key).cancel()

    async def close(self):
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
