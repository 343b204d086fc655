# messaging/serializers/requests.py
from django.conf import settings
from rest_framework import serializers


class CreateConversationSerializer(serializers.Serializer):
    otherUserId = serializers.IntegerField(min_value=1)
    listingId = serializers.IntegerField(min_value=1, required=False, allow_null=True)


class SendMessageSerializer(serializers.Serializer):
    content = serializers.CharField(trim_whitespace=True, allow_blank=False)
    hasAttachment = serializers.BooleanField(required=False, default=False)
    attachmentUrl = serializers.URLField(
        required=False, allow_null=True, allow_blank=True, max_length=1024
    )


class LegacySendMessageSerializer(serializers.Serializer):
    receiverId = serializers.IntegerField(min_value=1)
    listingId = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    content = serializers.CharField(trim_whitespace=True, allow_blank=False)


class MessagePageSerializer(serializers.Serializer):
    limit = serializers.IntegerField(min_value=1, required=False)
    before = serializers.IntegerField(min_value=1, required=False)

    def validate_limit(self, value):
        return min(value, getattr(settings, "MESSAGING_MAX_PAGE_SIZE", 100))
