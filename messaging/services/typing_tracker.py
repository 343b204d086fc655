# messaging/services/typing_tracker.py
import asyncio
import logging
from typing import Dict, List, Tuple

from django.conf import settings

from .message_delivery import message_delivery_service

logger = logging.getLogger(__name__)


class TypingTracker:
    """
    Server-side expiry for typing indicators.

    Every relayed ``typing`` arms a timer for (sender, conversation). If no
    ``stopped_typing`` arrives before it fires, the recipients are sent one
    on the sender's behalf, so a lost stop event cannot leave an indicator
    stuck on.
    """

    def __init__(self, delivery=None):
        self.delivery = delivery or message_delivery_service
        self._timers: Dict[Tuple[int, int], Tuple[asyncio.Task, List[int]]] = {}

    @property
    def timeout(self):
        return getattr(settings, "MESSAGING_TYPING_TIMEOUT", 5)  # seconds

    def is_typing(self, user_id, conversation_id) -> bool:
        entry = self._timers.get((user_id, conversation_id))
        return entry is not None and not entry[0].done()

    def started(self, user_id, conversation_id, recipient_ids):
        """(Re)arm the expiry timer; must be called from the event loop."""
        key = (user_id, conversation_id)
        self._cancel(key)
        recipients = list(recipient_ids)
        task = asyncio.get_running_loop().create_task(self._expire(key, recipients))
        self._timers[key] = (task, recipients)

    def stopped(self, user_id, conversation_id) -> bool:
        """Disarm the timer; True if the user was marked as typing."""
        return self._cancel((user_id, conversation_id))

    async def flush_user(self, user_id) -> List[int]:
        """
        Stop every indicator ``user_id`` still has running and notify the
        recipients. Used when the user's connection closes.
        """
        flushed = []
        for key in [k for k in self._timers if k[0] == user_id]:
            # an indicator may expire while an earlier stop is being sent
            entry = self._timers.pop(key, None)
            if entry is None or entry[0].done():
                continue
            task, recipients = entry
            if not task.get_loop().is_closed():
                task.cancel()
            flushed.append(key[1])
            await self.delivery.send_typing(recipients, key[1], user_id, is_typing=False)
        return flushed

    async def _expire(self, key, recipients):
        await asyncio.sleep(self.timeout)
        entry = self._timers.get(key)
        if entry is None or entry[0] is not asyncio.current_task():
            return
        del self._timers[key]
        user_id, conversation_id = key
        logger.debug(
            f"Typing indicator for user {user_id} in conversation {conversation_id} expired"
        )
        await self.delivery.send_typing(recipients, conversation_id, user_id, is_typing=False)

    def _cancel(self, key) -> bool:
        entry = self._timers.pop(key, None)
        if entry is None:
            return False
        task = entry[0]
        if task.done():
            return False
        if not task.get_loop().is_closed():
            task.cancel()
        return True


# Create a singleton instance
typing_tracker = TypingTracker()
