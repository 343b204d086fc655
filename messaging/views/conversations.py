# messaging/views/conversations.py
import logging

from drf_spectacular.utils import OpenApiParameter, extend_schema, extend_schema_view
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from ..serializers import (
    CreateConversationSerializer,
    MessagePageSerializer,
    MessageSerializer,
    SendMessageSerializer,
)
from ..services.conversation_service import get_conversation_service
from ..throttling import MessageRateThrottle

logger = logging.getLogger(__name__)


@extend_schema_view(
    list=extend_schema(
        description="List the caller's conversations, most recently active first. Each entry carries the other participant, a listing summary (or a placeholder for deleted listings), the last message and an unread count computed over the most recent page of messages.",
        summary="List Conversations",
        tags=["Conversations"],
    ),
    retrieve=extend_schema(
        description="Retrieve a conversation the caller participates in, with its listing and participants. Marks the conversation read for the caller.",
        summary="Retrieve Conversation",
        tags=["Conversations"],
    ),
    create=extend_schema(
        description="Return the conversation between the caller and another user about a listing (or a general conversation when no listing is given), creating it with both participants if needed.",
        summary="Find or Create Conversation",
        tags=["Conversations"],
        request=CreateConversationSerializer,
    ),
)
class ConversationViewSet(viewsets.ViewSet):
    permission_classes = [permissions.IsAuthenticated]

    def get_throttles(self):
        throttles = super().get_throttles()
        if self.action == "messages" and self.request.method == "POST":
            throttles.append(MessageRateThrottle())
        return throttles

    def list(self, request):
        service = get_conversation_service()
        return Response(service.list_conversations(request.user))

    def retrieve(self, request, pk=None):
        service = get_conversation_service()
        return Response(service.get_conversation(request.user, int(pk)))

    def create(self, request):
        serializer = CreateConversationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        service = get_conversation_service()
        conversation, created = service.find_or_create_conversation(
            request.user,
            serializer.validated_data["otherUserId"],
            serializer.validated_data.get("listingId"),
        )
        return Response(
            service.conversation_detail(request.user, conversation),
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )

    @extend_schema(
        methods=["GET"],
        description="Page through a conversation's history, oldest first. `before` is the id of the oldest message already shown; `limit` defaults to 50. Fetched messages from the other participant are marked read.",
        summary="List Conversation Messages",
        tags=["Conversations"],
        parameters=[
            OpenApiParameter("limit", int, description="Page size (max 100)"),
            OpenApiParameter("before", int, description="Only messages older than this message id"),
        ],
        responses=MessageSerializer(many=True),
    )
    @extend_schema(
        methods=["POST"],
        description="Send a message. The message is stored before it is pushed to the other participant; an offline recipient sees it on their next fetch.",
        summary="Send Message",
        tags=["Conversations"],
        request=SendMessageSerializer,
        responses={201: MessageSerializer},
    )
    @extend_schema(
        methods=["DELETE"],
        description="Delete every message in the conversation. The conversation and its participants are kept.",
        summary="Clear Conversation Messages",
        tags=["Conversations"],
        responses={204: None},
    )
    @action(detail=True, methods=["get", "post", "delete"])
    def messages(self, request, pk=None):
        service = get_conversation_service()
        conversation_id = int(pk)

        if request.method == "POST":
            serializer = SendMessageSerializer(data=request.data)
            serializer.is_valid(raise_exception=True)
            message = service.send_message(
                request.user,
                conversation_id,
                serializer.validated_data["content"],
                has_attachment=serializer.validated_data.get("hasAttachment", False),
                attachment_url=serializer.validated_data.get("attachmentUrl") or None,
            )
            return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)

        if request.method == "DELETE":
            service.clear_conversation(request.user, conversation_id)
            return Response(status=status.HTTP_204_NO_CONTENT)

        query = MessagePageSerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return Response(
            service.get_messages(
                request.user,
                conversation_id,
                limit=query.validated_data.get("limit"),
                before=query.validated_data.get("before"),
            )
        )
