# messaging/serializers/conversation.py
from rest_framework import serializers

from listings.models import Listing
from ..models import Conversation, ConversationParticipant, Message

DELETED_LISTING_TITLE = "Unknown Listing (Deleted)"
GENERAL_CONVERSATION_TITLE = "General Conversation"


class MessageSerializer(serializers.ModelSerializer):
    conversationId = serializers.IntegerField(source="conversation_id", read_only=True)
    senderId = serializers.IntegerField(source="sender_id", read_only=True)
    hasAttachment = serializers.BooleanField(source="has_attachment", read_only=True)
    attachmentUrl = serializers.CharField(
        source="attachment_url", read_only=True, allow_null=True
    )
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)
    readAt = serializers.DateTimeField(source="read_at", read_only=True, allow_null=True)

    class Meta:
        model = Message
        fields = [
            "id",
            "conversationId",
            "senderId",
            "content",
            "hasAttachment",
            "attachmentUrl",
            "createdAt",
            "readAt",
        ]
        read_only_fields = fields


class ParticipantSerializer(serializers.ModelSerializer):
    conversationId = serializers.IntegerField(source="conversation_id", read_only=True)
    userId = serializers.IntegerField(source="user_id", read_only=True)
    lastReadAt = serializers.DateTimeField(
        source="last_read_at", read_only=True, allow_null=True
    )

    class Meta:
        model = ConversationParticipant
        fields = ["conversationId", "userId", "lastReadAt"]
        read_only_fields = fields


class ListingSummarySerializer(serializers.ModelSerializer):
    price = serializers.DecimalField(
        max_digits=10, decimal_places=2, coerce_to_string=False, read_only=True
    )
    userId = serializers.IntegerField(source="user_id", read_only=True)

    class Meta:
        model = Listing
        fields = [
            "id",
            "title",
            "description",
            "price",
            "condition",
            "category",
            "images",
            "location",
            "userId",
            "status",
        ]
        read_only_fields = fields


def listing_summary(listing_id, listing):
    """
    Display data for a conversation's listing. A listing that no longer
    exists keeps its id under a placeholder title; a conversation without a
    listing is a general conversation.
    """
    if listing is not None:
        return ListingSummarySerializer(listing).data
    if listing_id is None:
        return _placeholder_listing(0, GENERAL_CONVERSATION_TITLE, "general")
    return _placeholder_listing(listing_id, DELETED_LISTING_TITLE, "deleted")


def _placeholder_listing(listing_id, title, status):
    return {
        "id": listing_id,
        "title": title,
        "description": "",
        "price": 0,
        "condition": "",
        "category": "",
        "images": [],
        "location": "",
        "userId": None,
        "status": status,
    }


class ConversationSerializer(serializers.ModelSerializer):
    listingId = serializers.IntegerField(
        source="origin_listing_id", read_only=True, allow_null=True
    )
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)
    updatedAt = serializers.DateTimeField(source="updated_at", read_only=True)

    class Meta:
        model = Conversation
        fields = ["id", "listingId", "createdAt", "updatedAt"]
        read_only_fields = fields
