# messaging/views/legacy.py
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from ..serializers import LegacySendMessageSerializer, MessagePageSerializer, MessageSerializer
from ..services.conversation_service import get_conversation_service
from ..throttling import MessageRateThrottle


class LegacyMessageViewSet(viewsets.ViewSet):
    """
    Receiver/listing addressed endpoints kept for older clients. Every call
    is resolved to a conversation and served by the conversation code path.
    A listing id of 0 addresses the general conversation.
    """

    permission_classes = [permissions.IsAuthenticated]

    def get_throttles(self):
        throttles = super().get_throttles()
        if self.action == "send":
            throttles.append(MessageRateThrottle())
        return throttles

    @extend_schema(
        description="Messages exchanged with another user about a listing, oldest first. Marks fetched messages read.",
        summary="Legacy: List Messages With User",
        tags=["Legacy Messages"],
        parameters=[
            OpenApiParameter("limit", int, description="Page size (max 100)"),
            OpenApiParameter("before", int, description="Only messages older than this message id"),
        ],
        responses=MessageSerializer(many=True),
    )
    @action(detail=False, methods=["get"])
    def thread(self, request, other_user_id=None, listing_id=None):
        query = MessagePageSerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        service = get_conversation_service()
        conversation = service.resolve_legacy_conversation(
            request.user, int(other_user_id), int(listing_id) or None
        )
        return Response(
            service.get_messages(
                request.user,
                conversation.pk,
                limit=query.validated_data.get("limit"),
                before=query.validated_data.get("before"),
            )
        )

    @extend_schema(
        description="Send a message addressed by receiver and listing.",
        summary="Legacy: Send Message",
        tags=["Legacy Messages"],
        request=LegacySendMessageSerializer,
        responses={201: MessageSerializer},
    )
    @action(detail=False, methods=["post"])
    def send(self, request):
        serializer = LegacySendMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        service = get_conversation_service()
        conversation = service.resolve_legacy_conversation(
            request.user,
            serializer.validated_data["receiverId"],
            serializer.validated_data.get("listingId"),
        )
        message = service.send_message(
            request.user, conversation.pk, serializer.validated_data["content"]
        )
        return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        description="Mark one message read. Only messages from the other participant change state; repeating the call is harmless.",
        summary="Mark Message Read",
        tags=["Legacy Messages"],
        request=None,
        responses=MessageSerializer,
    )
    @action(detail=True, methods=["patch"])
    def read(self, request, pk=None):
        service = get_conversation_service()
        message = service.mark_message_read(request.user, int(pk))
        return Response(MessageSerializer(message).data)
