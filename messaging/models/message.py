# messaging/models/message.py
from django.db import models
from django.conf import settings
from django.utils import timezone

from .conversation import Conversation


class Message(models.Model):
    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name="messages"
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="sent_messages",
    )
    content = models.TextField()
    has_attachment = models.BooleanField(default=False)
    attachment_url = models.URLField(max_length=1024, null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    read_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "messages"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(
                fields=["conversation", "created_at", "id"],
                name="messages_conv_created_idx",
            ),
        ]

    def __str__(self):
        return f"Message #{self.pk} from {self.sender_id}"

    @property
    def is_read(self):
        return self.read_at is not None
