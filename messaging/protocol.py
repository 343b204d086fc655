# messaging/protocol.py
"""
Envelopes exchanged over the realtime socket: ``{"type": ..., "payload": {...}}``.
"""
import enum

from .exceptions import WebSocketMessageError


class EventType(str, enum.Enum):
    CONNECT = "connect"
    MESSAGE = "message"
    READ_RECEIPT = "read_receipt"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    TYPING = "typing"
    STOPPED_TYPING = "stopped_typing"
    ERROR = "error"
    NEW_MESSAGE = "new_message"
    MESSAGES_CLEARED = "messages_cleared"
    PING = "ping"
    PONG = "pong"


# Events a client may send; everything else is server to client only
CLIENT_EVENTS = frozenset(
    {
        EventType.MESSAGE,
        EventType.READ_RECEIPT,
        EventType.TYPING,
        EventType.STOPPED_TYPING,
        EventType.PING,
    }
)

# Close codes
CLOSE_UNAUTHENTICATED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_STALE = 4000


def build_envelope(event_type, payload=None):
    return {"type": EventType(event_type).value, "payload": payload or {}}


def error_envelope(message, code="error", client_message_id=None):
    payload = {"message": message, "code": code}
    if client_message_id is not None:
        payload["clientMessageId"] = client_message_id
    return build_envelope(EventType.ERROR, payload)


def parse_envelope(content):
    """
    Validate an incoming frame and return ``(EventType, payload)``.

    Raises:
        WebSocketMessageError: If the frame is not an envelope a client may send
    """
    if not isinstance(content, dict):
        raise WebSocketMessageError("Frame must be a JSON object")

    raw_type = content.get("type")
    if not isinstance(raw_type, str):
        raise WebSocketMessageError("Missing event type")
    try:
        event_type = EventType(raw_type)
    except ValueError:
        raise WebSocketMessageError(f"Unknown event type: {raw_type}")
    if event_type not in CLIENT_EVENTS:
        raise WebSocketMessageError(f"Event type {raw_type} cannot be sent by clients")

    payload = content.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise WebSocketMessageError("Payload must be a JSON object")
    return event_type, payload


def require_int(payload, key, required=True):
    """Read an integer id from a payload, accepting numeric strings."""
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise WebSocketMessageError(f"{key} is required")
        return None
    if isinstance(value, bool):
        raise WebSocketMessageError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise WebSocketMessageError(f"{key} must be an integer")
