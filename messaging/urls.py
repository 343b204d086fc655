# messaging/urls.py
from django.urls import path

from .views.conversations import ConversationViewSet
from .views.legacy import LegacyMessageViewSet
from .views.presence import PresenceView

urlpatterns = [
    path(
        "conversations/",
        ConversationViewSet.as_view({"get": "list", "post": "create"}),
        name="conversation-list",
    ),
    path(
        "conversations/<int:pk>/",
        ConversationViewSet.as_view({"get": "retrieve"}),
        name="conversation-detail",
    ),
    path(
        "conversations/<int:pk>/messages/",
        ConversationViewSet.as_view(
            {"get": "messages", "post": "messages", "delete": "messages"}
        ),
        name="conversation-messages",
    ),
    # Receiver/listing addressing for older clients
    path(
        "messages/",
        LegacyMessageViewSet.as_view({"post": "send"}),
        name="legacy-message-send",
    ),
    path(
        "messages/<int:pk>/read/",
        LegacyMessageViewSet.as_view({"patch": "read"}),
        name="message-read",
    ),
    path(
        "messages/<int:other_user_id>/<int:listing_id>/",
        LegacyMessageViewSet.as_view({"get": "thread"}),
        name="legacy-message-thread",
    ),
    path("presence/<int:user_id>/", PresenceView.as_view(), name="presence"),
]
