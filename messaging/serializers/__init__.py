from .conversation import (
    ConversationSerializer,
    ListingSummarySerializer,
    MessageSerializer,
    ParticipantSerializer,
    listing_summary,
)
from .requests import (
    CreateConversationSerializer,
    LegacySendMessageSerializer,
    MessagePageSerializer,
    SendMessageSerializer,
)

__all__ = [
    "ConversationSerializer",
    "ListingSummarySerializer",
    "MessageSerializer",
    "ParticipantSerializer",
    "listing_summary",
    "CreateConversationSerializer",
    "LegacySendMessageSerializer",
    "MessagePageSerializer",
    "SendMessageSerializer",
]
