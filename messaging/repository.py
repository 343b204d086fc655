# messaging/repository.py
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.module_loading import import_string

from listings.models import Listing
from .models import Conversation, ConversationParticipant, Message

logger = logging.getLogger(__name__)


class _AnyListing:
    def __repr__(self):
        return "ANY_LISTING"


# Passed as listing_id to find_conversation to ignore the listing context.
# None means "general inquiry", i.e. a conversation without a listing.
ANY_LISTING = _AnyListing()


class ConversationRepository(ABC):
    """
    Storage contract for conversations, participants and messages, plus the
    read-only user and listing lookups the messaging core needs.

    Lookups return None for rows that do not exist.
    """

    @abstractmethod
    def get_conversation(self, conversation_id: int) -> Optional[Conversation]: ...

    @abstractmethod
    def get_conversations_for_user(self, user_id: int) -> List[Conversation]: ...

    @abstractmethod
    def find_conversation(self, listing_id, user_a: int, user_b: int) -> Optional[Conversation]: ...

    @abstractmethod
    def create_conversation(self, listing_id: Optional[int] = None) -> Conversation: ...

    @abstractmethod
    def add_participant(self, conversation_id: int, user_id: int) -> ConversationParticipant: ...

    @abstractmethod
    def start_conversation(
        self, listing_id: Optional[int], user_ids: Iterable[int]
    ) -> Conversation: ...

    @abstractmethod
    def get_participants(self, conversation_id: int) -> List[ConversationParticipant]: ...

    @abstractmethod
    def get_participant(
        self, conversation_id: int, user_id: int
    ) -> Optional[ConversationParticipant]: ...

    @abstractmethod
    def get_messages(
        self,
        conversation_id: int,
        limit: Optional[int] = None,
        before_message_id: Optional[int] = None,
    ) -> List[Message]: ...

    @abstractmethod
    def get_message(self, message_id: int) -> Optional[Message]: ...

    @abstractmethod
    def create_message(
        self,
        conversation_id: int,
        sender_id: int,
        content: str,
        has_attachment: bool = False,
        attachment_url: Optional[str] = None,
    ) -> Message: ...

    @abstractmethod
    def mark_as_read(self, message_id: int) -> Optional[Message]: ...

    @abstractmethod
    def update_participant_last_read(self, conversation_id: int, user_id: int) -> bool: ...

    @abstractmethod
    def clear_conversation(self, conversation_id: int) -> bool: ...

    @abstractmethod
    def get_user(self, user_id: int): ...

    @abstractmethod
    def get_listing(self, listing_id: int) -> Optional[Listing]: ...


class DjangoConversationRepository(ConversationRepository):
    """ORM-backed repository; the only code that reads or writes messaging tables."""

    def get_conversation(self, conversation_id):
        return Conversation.objects.filter(pk=conversation_id).first()

    def get_conversations_for_user(self, user_id):
        return list(
            Conversation.objects.filter(participant_rows__user_id=user_id).order_by(
                "-updated_at", "-id"
            )
        )

    def find_conversation(self, listing_id, user_a, user_b):
        """
        Most recently active conversation shared by both users, in either
        order. ``listing_id=None`` only matches conversations without a
        listing; ``ANY_LISTING`` matches any.
        """
        queryset = Conversation.objects.filter(participant_rows__user_id=user_a).filter(
            participant_rows__user_id=user_b
        )
        if listing_id is not ANY_LISTING:
            if listing_id is None:
                queryset = queryset.filter(origin_listing_id__isnull=True)
            else:
                queryset = queryset.filter(origin_listing_id=listing_id)
        return queryset.order_by("-updated_at", "-id").first()

    def create_conversation(self, listing_id=None):
        now = timezone.now()
        return Conversation.objects.create(
            listing_id=listing_id,
            origin_listing_id=listing_id,
            created_at=now,
            updated_at=now,
        )

    def add_participant(self, conversation_id, user_id):
        participant, created = ConversationParticipant.objects.get_or_create(
            conversation_id=conversation_id,
            user_id=user_id,
            defaults={"last_read_at": None},
        )
        if created:
            logger.debug(f"Added user {user_id} to conversation {conversation_id}")
        return participant

    @transaction.atomic
    def start_conversation(self, listing_id, user_ids):
        """Create a conversation and its participants as one unit."""
        conversation = self.create_conversation(listing_id)
        for user_id in user_ids:
            self.add_participant(conversation.pk, user_id)
        return conversation

    def get_participants(self, conversation_id):
        return list(
            ConversationParticipant.objects.filter(conversation_id=conversation_id)
            .select_related("user")
            .order_by("id")
        )

    def get_participant(self, conversation_id, user_id):
        return ConversationParticipant.objects.filter(
            conversation_id=conversation_id, user_id=user_id
        ).first()

    def get_messages(self, conversation_id, limit=None, before_message_id=None):
        """
        A page of messages, oldest first.

        The page is the ``limit`` newest messages strictly older than
        ``before_message_id`` in (created_at, id) order.

        Raises:
            ValidationError: If ``limit`` is not positive or the cursor does
                not name a message in this conversation.
        """
        if limit is None:
            limit = getattr(settings, "MESSAGING_DEFAULT_PAGE_SIZE", 50)
        if limit < 1:
            raise ValidationError("limit must be a positive integer.")

        queryset = Message.objects.filter(conversation_id=conversation_id)
        if before_message_id is not None:
            anchor = (
                Message.objects.filter(pk=before_message_id, conversation_id=conversation_id)
                .values("created_at", "id")
                .first()
            )
            if anchor is None:
                raise ValidationError(
                    f"Message {before_message_id} is not part of this conversation."
                )
            queryset = queryset.filter(
                Q(created_at__lt=anchor["created_at"])
                | Q(created_at=anchor["created_at"], id__lt=anchor["id"])
            )

        page = list(queryset.order_by("-created_at", "-id")[:limit])
        page.reverse()
        return page

    def get_message(self, message_id):
        return Message.objects.filter(pk=message_id).first()

    def create_message(
        self,
        conversation_id,
        sender_id,
        content,
        has_attachment=False,
        attachment_url=None,
    ):
        if content is None or not str(content).strip():
            raise ValidationError("Message content cannot be empty.")

        with transaction.atomic():
            now = timezone.now()
            message = Message.objects.create(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                has_attachment=bool(has_attachment or attachment_url),
                attachment_url=attachment_url or None,
                created_at=now,
                read_at=None,
            )
            self._touch(conversation_id, now)
        return message

    def mark_as_read(self, message_id):
        """Stamp ``read_at`` unless already set; returns the stored message."""
        Message.objects.filter(pk=message_id, read_at__isnull=True).update(
            read_at=timezone.now()
        )
        return self.get_message(message_id)

    def update_participant_last_read(self, conversation_id, user_id):
        updated = ConversationParticipant.objects.filter(
            conversation_id=conversation_id, user_id=user_id
        ).update(last_read_at=timezone.now())
        return updated > 0

    def clear_conversation(self, conversation_id):
        try:
            with transaction.atomic():
                deleted, _ = Message.objects.filter(
                    conversation_id=conversation_id
                ).delete()
                self._touch(conversation_id, timezone.now())
        except DatabaseError as e:
            logger.error(
                f"Failed to clear conversation {conversation_id}: {str(e)}", exc_info=True
            )
            return False
        logger.info(f"Cleared {deleted} messages from conversation {conversation_id}")
        return True

    def get_user(self, user_id):
        return get_user_model().objects.filter(pk=user_id).first()

    def get_listing(self, listing_id):
        if listing_id is None:
            return None
        return Listing.objects.filter(pk=listing_id).first()

    @staticmethod
    def _touch(conversation_id, now):
        # updated_at never moves backwards
        Conversation.objects.filter(pk=conversation_id, updated_at__lt=now).update(
            updated_at=now
        )


def get_repository() -> ConversationRepository:
    """Instantiate the configured repository backend."""
    backend = getattr(
        settings,
        "MESSAGING_REPOSITORY_BACKEND",
        "messaging.repository.DjangoConversationRepository",
    )
    return import_string(backend)()
