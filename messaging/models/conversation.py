# messaging/models/conversation.py
from django.db import models
from django.conf import settings
from django.utils import timezone


class Conversation(models.Model):
    listing = models.ForeignKey(
        "listings.Listing",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="conversations",
    )
    # Listing the conversation was started about. Kept when the listing is
    # deleted (and `listing` is nulled) so readers can show a placeholder.
    origin_listing_id = models.BigIntegerField(null=True, blank=True, db_index=True)
    participants = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        through="ConversationParticipant",
        related_name="conversations",
    )
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = "conversations"
        ordering = ["-updated_at", "-id"]

    def __str__(self):
        if self.origin_listing_id:
            return f"Conversation #{self.pk} (listing {self.origin_listing_id})"
        return f"Conversation #{self.pk}"


class ConversationParticipant(models.Model):
    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name="participant_rows"
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="conversation_participations",
    )
    last_read_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "conversation_participants"
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "user"], name="unique_conversation_participant"
            ),
        ]

    def __str__(self):
        return f"User {self.user_id} in conversation {self.conversation_id}"
