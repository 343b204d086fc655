# messaging/services/conversation_service.py
import logging
from typing import Any, Dict, List, Tuple

from django.conf import settings
from rest_framework.exceptions import ValidationError

from users.serializers import UserPublicSerializer
from messaging.exceptions import (
    ConversationAccessDenied,
    ConversationNotFound,
    DependencyUnavailable,
    ListingNotFound,
    MessageNotFound,
    UserNotFound,
)
from messaging.models import Conversation, ConversationParticipant, Message
from messaging.repository import get_repository
from messaging.serializers import (
    ConversationSerializer,
    MessageSerializer,
    ParticipantSerializer,
    listing_summary,
)
from .message_delivery import message_delivery_service

logger = logging.getLogger(__name__)


class ConversationService:
    """
    Participant-checked messaging operations shared by the REST views and
    the realtime consumer. All storage goes through the repository; pushes
    go through the delivery service after the write has succeeded.
    """

    def __init__(self, repository=None, delivery=None):
        self.repository = repository or get_repository()
        self.delivery = delivery or message_delivery_service

    # Access checks

    def get_conversation_for_participant(
        self, user, conversation_id
    ) -> Tuple[Conversation, List[ConversationParticipant]]:
        """
        Raises:
            ConversationNotFound: If the conversation does not exist
            ConversationAccessDenied: If ``user`` is not a participant
        """
        conversation = self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        participants = self.repository.get_participants(conversation.pk)
        if not any(p.user_id == user.pk for p in participants):
            logger.warning(
                f"User {user.pk} denied access to conversation {conversation_id}"
            )
            raise ConversationAccessDenied()
        return conversation, participants

    @staticmethod
    def _other_ids(participants, user_id) -> List[int]:
        return [p.user_id for p in participants if p.user_id != user_id]

    # Queries

    def conversation_ids_for_user(self, user_id) -> List[int]:
        return [c.pk for c in self.repository.get_conversations_for_user(user_id)]

    def list_conversations(self, user) -> List[Dict[str, Any]]:
        """
        Conversations for ``user``, most recently active first, each with the
        other participant, listing summary, last message and unread count.

        The unread count only looks at the preview page of recent messages.
        """
        preview_size = getattr(settings, "MESSAGING_CONVERSATION_PREVIEW_SIZE", 20)
        results = []
        for conversation in self.repository.get_conversations_for_user(user.pk):
            participants = self.repository.get_participants(conversation.pk)
            others = [p for p in participants if p.user_id != user.pk]
            if not others:
                logger.warning(
                    f"Conversation {conversation.pk} has no other participant, skipping"
                )
                continue

            preview = self.repository.get_messages(conversation.pk, limit=preview_size)
            unread = sum(
                1 for m in preview if m.sender_id != user.pk and m.read_at is None
            )
            entry = self._describe(conversation, others[0])
            entry["lastMessage"] = MessageSerializer(preview[-1]).data if preview else None
            entry["unreadCount"] = unread
            results.append(entry)
        return results

    def get_conversation(self, user, conversation_id) -> Dict[str, Any]:
        """Conversation detail; marks the conversation read for ``user``."""
        conversation, participants = self.get_conversation_for_participant(
            user, conversation_id
        )
        self._mark_page_read(user, conversation, participants)
        return self.conversation_detail(user, conversation)

    def conversation_detail(self, user, conversation) -> Dict[str, Any]:
        participants = self.repository.get_participants(conversation.pk)
        others = [p for p in participants if p.user_id != user.pk]
        detail = self._describe(conversation, others[0] if others else None)
        detail["participants"] = ParticipantSerializer(participants, many=True).data
        return detail

    def get_messages(
        self, user, conversation_id, limit=None, before=None
    ) -> List[Dict[str, Any]]:
        """
        A page of history, oldest first. Messages from other participants
        in the page are marked read and ``user``'s last-read time is updated.
        """
        conversation, participants = self.get_conversation_for_participant(
            user, conversation_id
        )
        page = self.repository.get_messages(
            conversation.pk, limit=limit, before_message_id=before
        )
        page, marked = self._mark_read(user, page)
        self.repository.update_participant_last_read(conversation.pk, user.pk)
        if marked:
            self._relay_read_receipt(user, conversation.pk, participants, marked)
        return MessageSerializer(page, many=True).data

    # Commands

    def find_or_create_conversation(
        self, user, other_user_id, listing_id=None
    ) -> Tuple[Conversation, bool]:
        """
        The conversation between ``user`` and ``other_user_id`` about
        ``listing_id`` (None for a general conversation), created with both
        participants when it does not exist yet.

        Returns:
            (conversation, created)
        """
        if other_user_id == user.pk:
            raise ValidationError({"detail": "You cannot start a conversation with yourself."})
        if self.repository.get_user(other_user_id) is None:
            raise UserNotFound()
        if listing_id is not None and self.repository.get_listing(listing_id) is None:
            raise ListingNotFound()

        conversation = self.repository.find_conversation(listing_id, user.pk, other_user_id)
        if conversation is not None:
            return conversation, False

        conversation = self.repository.start_conversation(
            listing_id, [user.pk, other_user_id]
        )
        logger.info(
            f"User {user.pk} started conversation {conversation.pk} with user "
            f"{other_user_id} (listing {listing_id})"
        )
        return conversation, True

    def send_message(
        self, user, conversation_id, content, has_attachment=False, attachment_url=None
    ) -> Message:
        """
        Persist a message from ``user`` and push it to the other participants.
        Leading and trailing whitespace is stripped on every entry point.

        Raises:
            ConversationNotFound, ConversationAccessDenied: On access failure
            django.core.exceptions.ValidationError: If ``content`` is empty
        """
        conversation, participants = self.get_conversation_for_participant(
            user, conversation_id
        )
        if isinstance(content, str):
            content = content.strip()
        message = self.repository.create_message(
            conversation.pk,
            user.pk,
            content,
            has_attachment=has_attachment,
            attachment_url=attachment_url,
        )
        recipients = self._other_ids(participants, user.pk)
        delivered = self.delivery.notify_new_message(
            recipients, MessageSerializer(message).data
        )
        logger.debug(
            f"Message {message.pk} in conversation {conversation.pk} pushed to {delivered}, "
            f"{len(recipients) - len(delivered)} recipient(s) offline"
        )
        return message

    def mark_message_read(self, user, message_id) -> Message:
        message = self.repository.get_message(message_id)
        if message is None:
            raise MessageNotFound()
        conversation, participants = self.get_conversation_for_participant(
            user, message.conversation_id
        )
        page, marked = self._mark_read(user, [message])
        self.repository.update_participant_last_read(conversation.pk, user.pk)
        if marked:
            self._relay_read_receipt(user, conversation.pk, participants, marked)
        return page[0]

    def mark_conversation_read(self, user, conversation_id) -> List[int]:
        conversation, participants = self.get_conversation_for_participant(
            user, conversation_id
        )
        return self._mark_page_read(user, conversation, participants, relay_empty=True)

    def clear_conversation(self, user, conversation_id) -> None:
        conversation, participants = self.get_conversation_for_participant(
            user, conversation_id
        )
        if not self.repository.clear_conversation(conversation.pk):
            raise DependencyUnavailable("Could not clear conversation messages.")
        logger.info(f"User {user.pk} cleared conversation {conversation.pk}")
        self.delivery.notify_messages_cleared(
            self._other_ids(participants, user.pk), conversation.pk, user.pk
        )

    def resolve_legacy_conversation(self, user, receiver_id, listing_id=None) -> Conversation:
        """Map old (receiver, listing) addressing onto a conversation."""
        conversation, _ = self.find_or_create_conversation(user, receiver_id, listing_id)
        return conversation

    # Helpers

    def _describe(self, conversation, other_participant) -> Dict[str, Any]:
        listing = self.repository.get_listing(conversation.listing_id)
        data = dict(ConversationSerializer(conversation).data)
        data["listing"] = listing_summary(conversation.origin_listing_id, listing)
        data["otherUser"] = (
            UserPublicSerializer(other_participant.user).data
            if other_participant is not None
            else None
        )
        return data

    def _mark_read(self, user, messages) -> Tuple[List[Message], List[int]]:
        """Mark messages from others read; returns the refreshed list and marked ids."""
        refreshed, marked = [], []
        for message in messages:
            if message.sender_id != user.pk and message.read_at is None:
                updated = self.repository.mark_as_read(message.pk)
                if updated is not None:
                    message = updated
                    marked.append(message.pk)
            refreshed.append(message)
        return refreshed, marked

    def _mark_page_read(self, user, conversation, participants, relay_empty=False) -> List[int]:
        page = self.repository.get_messages(conversation.pk)
        _, marked = self._mark_read(user, page)
        self.repository.update_participant_last_read(conversation.pk, user.pk)
        if marked or relay_empty:
            self._relay_read_receipt(user, conversation.pk, participants, marked)
        return marked

    def _relay_read_receipt(self, user, conversation_id, participants, message_ids):
        read_at = None
        last = self.repository.get_message(message_ids[-1]) if message_ids else None
        if last is not None and last.read_at is not None:
            read_at = last.read_at.isoformat()
        self.delivery.notify_read_receipt(
            self._other_ids(participants, user.pk),
            conversation_id,
            user.pk,
            message_ids,
            read_at,
        )


def get_conversation_service() -> ConversationService:
    return ConversationService()
