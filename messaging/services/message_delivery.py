# messaging/services/message_delivery.py
import logging
from typing import Any, Dict, Iterable, List, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from messaging.exceptions import MessageDeliveryError
from messaging.protocol import EventType, build_envelope
from .connection_manager import connection_manager

logger = logging.getLogger(__name__)


class MessageDeliveryService:
    """
    Pushes realtime events to whichever connection a user currently has.

    Delivery is best effort. A user without a registration is simply
    skipped; they pick up persisted state on their next fetch.
    """

    def __init__(self, registry=None):
        self.registry = registry or connection_manager

    @property
    def channel_layer(self):
        return get_channel_layer()

    async def send_to_user(self, user_id: int, envelope: Dict[str, Any]) -> bool:
        """
        Send an envelope to a user's registered connection.

        Args:
            user_id: The recipient
            envelope: A ``{"type", "payload"}`` dict

        Returns:
            bool: True if the user was connected and the event was handed to
            the channel layer, False if the user is offline

        Raises:
            MessageDeliveryError: If the channel layer rejected the event
        """
        channel_name = self.registry.get_channel_name(user_id)
        if channel_name is None:
            return False
        try:
            await self.channel_layer.send(
                channel_name, {"type": "realtime.event", "envelope": envelope}
            )
        except Exception as e:
            raise MessageDeliveryError(
                f"Error sending {envelope.get('type')} to user {user_id}: {str(e)}"
            )
        return True

    async def send_to_users(self, user_ids: Iterable[int], envelope: Dict[str, Any]) -> List[int]:
        """Send to several users; returns the ids that were reached."""
        delivered = []
        for user_id in user_ids:
            try:
                if await self.send_to_user(user_id, envelope):
                    delivered.append(user_id)
            except MessageDeliveryError as e:
                logger.error(str(e))
        return delivered

    async def broadcast_presence(self, user_id: int, online: bool) -> List[int]:
        """Tell every other connected user that ``user_id`` came online or went offline."""
        event_type = EventType.USER_ONLINE if online else EventType.USER_OFFLINE
        others = [uid for uid in self.registry.online_user_ids() if uid != user_id]
        return await self.send_to_users(
            others, build_envelope(event_type, {"userId": user_id})
        )

    async def send_typing(
        self, recipient_ids: Iterable[int], conversation_id: int, user_id: int, is_typing: bool
    ) -> List[int]:
        event_type = EventType.TYPING if is_typing else EventType.STOPPED_TYPING
        return await self.send_to_users(
            recipient_ids,
            build_envelope(event_type, {"conversationId": conversation_id, "userId": user_id}),
        )

    # Synchronous entry points for request handlers and database threads

    def notify_new_message(self, recipient_ids: Iterable[int], message_data: Dict[str, Any]) -> List[int]:
        envelope = build_envelope(EventType.NEW_MESSAGE, {"message": message_data})
        return self._send_sync(recipient_ids, envelope)

    def notify_read_receipt(
        self,
        recipient_ids: Iterable[int],
        conversation_id: int,
        reader_id: int,
        message_ids: List[int],
        read_at: Optional[str] = None,
    ) -> List[int]:
        envelope = build_envelope(
            EventType.READ_RECEIPT,
            {
                "conversationId": conversation_id,
                "userId": reader_id,
                "messageIds": message_ids,
                "readAt": read_at,
            },
        )
        return self._send_sync(recipient_ids, envelope)

    def notify_messages_cleared(
        self, recipient_ids: Iterable[int], conversation_id: int, cleared_by: int
    ) -> List[int]:
        envelope = build_envelope(
            EventType.MESSAGES_CLEARED,
            {"conversationId": conversation_id, "clearedBy": cleared_by},
        )
        return self._send_sync(recipient_ids, envelope)

    def _send_sync(self, recipient_ids, envelope):
        recipients = [uid for uid in recipient_ids if self.registry.is_user_online(uid)]
        if not recipients:
            return []
        try:
            delivered = async_to_sync(self.send_to_users)(recipients, envelope)
        except Exception as e:
            logger.error(
                f"Failed to deliver {envelope['type']} event: {str(e)}", exc_info=True
            )
            return []
        logger.debug(f"Sent {envelope['type']} to users {delivered}")
        return delivered


# Create a singleton instance
message_delivery_service = MessageDeliveryService()
