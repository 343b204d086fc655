# messaging/throttling.py
from rest_framework.throttling import UserRateThrottle


class MessageRateThrottle(UserRateThrottle):
    """Limits how fast a user can send messages over HTTP."""

    scope = "messages"
    rate = "60/minute"
