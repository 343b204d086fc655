# messaging/consumers.py
import logging
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError
from rest_framework.exceptions import APIException

from .exceptions import WebSocketMessageError
from .protocol import (
    CLOSE_FORBIDDEN,
    CLOSE_STALE,
    CLOSE_UNAUTHENTICATED,
    EventType,
    build_envelope,
    error_envelope,
    parse_envelope,
    require_int,
)
from .serializers import MessageSerializer
from .services.connection_manager import connection_manager
from .services.conversation_service import get_conversation_service
from .services.message_delivery import message_delivery_service
from .services.typing_tracker import typing_tracker

logger = logging.getLogger(__name__)


def _detail_text(detail):
    if isinstance(detail, dict):
        if "detail" in detail:
            return _detail_text(detail["detail"])
        return "; ".join(f"{key}: {_detail_text(value)}" for key, value in detail.items())
    if isinstance(detail, (list, tuple)):
        return " ".join(_detail_text(item) for item in detail)
    return str(detail)


class ChatConsumer(AsyncJsonWebsocketConsumer):
    """
    One realtime connection per user: presence, typing relay, message send
    and read receipts.

    Every inbound frame is handled in arrival order. A frame that cannot be
    handled is answered with an ``error`` event and the socket stays open.
    """

    registered = False

    async def connect(self):
        """Handle WebSocket connection"""
        self.user = self.scope.get("user")
        if self.user is None or self.user.is_anonymous:
            logger.warning("Rejected unauthenticated WebSocket connection")
            await self.close(code=CLOSE_UNAUTHENTICATED)
            return

        query = parse_qs(self.scope.get("query_string", b"").decode())
        requested = query.get("userId", [None])[0]
        if requested is not None and requested != str(self.user.pk):
            logger.warning(
                f"User {self.user.pk} tried to connect as user {requested}"
            )
            await self.close(code=CLOSE_FORBIDDEN)
            return

        await self.accept()

        previous = connection_manager.register_connection(self.user.pk, self.channel_name)
        self.registered = True
        if previous is not None:
            logger.info(f"Replacing earlier connection of user {self.user.pk}")
            await self.channel_layer.send(
                previous.channel_name, {"type": "realtime.close", "code": CLOSE_STALE}
            )
        connection_manager.ensure_cleanup_task()

        conversation_ids = await self.get_conversation_ids()
        online = [uid for uid in connection_manager.online_user_ids() if uid != self.user.pk]
        await self.send_json(
            build_envelope(
                EventType.CONNECT,
                {
                    "userId": self.user.pk,
                    "conversations": conversation_ids,
                    "onlineUsers": online,
                },
            )
        )

        if previous is None:
            await message_delivery_service.broadcast_presence(self.user.pk, online=True)
        logger.info(f"User {self.user.pk} connected")

    async def disconnect(self, close_code):
        """Handle WebSocket disconnection"""
        if not self.registered:
            return
        self.registered = False
        user_id = self.user.pk

        if not connection_manager.unregister_connection(user_id, self.channel_name):
            # superseded by a newer connection or already reaped
            return

        try:
            await typing_tracker.flush_user(user_id)
        except Exception as e:
            logger.error(f"Error clearing typing state for user {user_id}: {str(e)}", exc_info=True)
        finally:
            await message_delivery_service.broadcast_presence(user_id, online=False)
            if not connection_manager.get_active_connections_count():
                connection_manager.stop_cleanup_task()
        logger.info(f"User {user_id} disconnected (code {close_code})")

    async def receive(self, text_data=None, bytes_data=None, **kwargs):
        if text_data is None:
            await self.send_json(error_envelope("Binary frames are not supported", "invalid_message"))
            return
        try:
            content = await self.decode_json(text_data)
        except ValueError:
            await self.send_json(error_envelope("Malformed JSON", "invalid_message"))
            return
        await self.receive_json(content)

    async def receive_json(self, content, **kwargs):
        connection_manager.update_connection_activity(self.user.pk, self.channel_name)

        client_message_id = None
        if isinstance(content, dict) and isinstance(content.get("payload"), dict):
            client_message_id = content["payload"].get("clientMessageId")

        try:
            event_type, payload = parse_envelope(content)
            handlers = {
                EventType.MESSAGE: self.handle_message,
                EventType.READ_RECEIPT: self.handle_read_receipt,
                EventType.TYPING: self.handle_typing,
                EventType.STOPPED_TYPING: self.handle_stopped_typing,
                EventType.PING: self.handle_ping,
            }
            await handlers[event_type](payload)
        except WebSocketMessageError as e:
            logger.warning(f"Invalid frame from user {self.user.pk}: {str(e)}")
            await self.send_json(error_envelope(str(e), "invalid_message", client_message_id))
        except APIException as e:
            await self.send_json(
                error_envelope(_detail_text(e.detail), e.default_code, client_message_id)
            )
        except DjangoValidationError as e:
            await self.send_json(
                error_envelope(" ".join(e.messages), "validation_error", client_message_id)
            )
        except DatabaseError as e:
            logger.error(f"Database error handling frame: {str(e)}", exc_info=True)
            await self.send_json(
                error_envelope(
                    "Message storage is temporarily unavailable.",
                    "dependency_unavailable",
                    client_message_id,
                )
            )
        except Exception as e:
            logger.error(f"Error processing WebSocket frame: {str(e)}", exc_info=True)
            await self.send_json(
                error_envelope("Internal server error.", "server_error", client_message_id)
            )

    # Inbound events

    async def handle_message(self, payload):
        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise WebSocketMessageError("content must be a non-empty string")

        conversation_id = require_int(payload, "conversationId", required=False)
        if conversation_id is None:
            receiver_id = require_int(payload, "receiverId")
            listing_id = require_int(payload, "listingId", required=False)
            conversation_id = await self.resolve_conversation(receiver_id, listing_id)

        attachment_url = payload.get("attachmentUrl") or payload.get("attachment") or None
        if attachment_url is not None and not isinstance(attachment_url, str):
            raise WebSocketMessageError("attachmentUrl must be a string")

        message_data = await self.persist_message(conversation_id, content, attachment_url)
        await self.send_json(
            build_envelope(
                EventType.MESSAGE,
                {"message": message_data, "clientMessageId": payload.get("clientMessageId")},
            )
        )

        if typing_tracker.stopped(self.user.pk, conversation_id):
            recipients = await self.get_other_participants(conversation_id)
            await message_delivery_service.send_typing(
                recipients, conversation_id, self.user.pk, is_typing=False
            )

    async def handle_read_receipt(self, payload):
        message_id = require_int(payload, "messageId", required=False)
        if message_id is not None:
            await self.mark_message_read(message_id)
            return
        conversation_id = require_int(payload, "conversationId")
        await self.mark_conversation_read(conversation_id)

    async def handle_typing(self, payload):
        conversation_id = self._typing_conversation_id(payload)
        recipients = await self.get_other_participants(conversation_id)
        typing_tracker.started(self.user.pk, conversation_id, recipients)
        await message_delivery_service.send_typing(
            recipients, conversation_id, self.user.pk, is_typing=True
        )

    async def handle_stopped_typing(self, payload):
        conversation_id = self._typing_conversation_id(payload)
        typing_tracker.stopped(self.user.pk, conversation_id)
        recipients = await self.get_other_participants(conversation_id)
        await message_delivery_service.send_typing(
            recipients, conversation_id, self.user.pk, is_typing=False
        )

    async def handle_ping(self, payload):
        await self.send_json(build_envelope(EventType.PONG))

    @staticmethod
    def _typing_conversation_id(payload):
        conversation_id = require_int(payload, "conversationId", required=False)
        if conversation_id is None:
            conversation_id = require_int(payload, "targetId", required=False)
        if conversation_id is None:
            raise WebSocketMessageError("conversationId is required")
        return conversation_id

    # Channel layer events

    async def realtime_event(self, event):
        await self.send_json(event["envelope"])

    async def realtime_close(self, event):
        await self.close(code=event.get("code", CLOSE_STALE))

    # Database helpers

    @database_sync_to_async
    def get_conversation_ids(self):
        return get_conversation_service().conversation_ids_for_user(self.user.pk)

    @database_sync_to_async
    def get_other_participants(self, conversation_id):
        _, participants = get_conversation_service().get_conversation_for_participant(
            self.user, conversation_id
        )
        return [p.user_id for p in participants if p.user_id != self.user.pk]

    @database_sync_to_async
    def resolve_conversation(self, receiver_id, listing_id):
        conversation = get_conversation_service().resolve_legacy_conversation(
            self.user, receiver_id, listing_id
        )
        return conversation.pk

    @database_sync_to_async
    def persist_message(self, conversation_id, content, attachment_url):
        message = get_conversation_service().send_message(
            self.user, conversation_id, content, attachment_url=attachment_url
        )
        return dict(MessageSerializer(message).data)

    @database_sync_to_async
    def mark_message_read(self, message_id):
        return get_conversation_service().mark_message_read(self.user, message_id).pk

    @database_sync_to_async
    def mark_conversation_read(self, conversation_id):
        return get_conversation_service().mark_conversation_read(self.user, conversation_id)
