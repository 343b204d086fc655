import pytest

from messaging.exceptions import WebSocketMessageError
from messaging.protocol import EventType, build_envelope, error_envelope, parse_envelope, require_int


def test_parse_envelope_accepts_client_events():
    event_type, payload = parse_envelope({"type": "typing", "payload": {"conversationId": 4}})
    assert event_type is EventType.TYPING
    assert payload == {"conversationId": 4}

    assert parse_envelope({"type": "ping"}) == (EventType.PING, {})


@pytest.mark.parametrize(
    "frame",
    [
        "typing",
        {"payload": {}},
        {"type": "teleport"},
        {"type": "user_online", "payload": {"userId": 1}},
        {"type": "message", "payload": ["not", "a", "dict"]},
    ],
)
def test_parse_envelope_rejects_bad_frames(frame):
    with pytest.raises(WebSocketMessageError):
        parse_envelope(frame)


def test_require_int():
    assert require_int({"id": "12"}, "id") == 12
    assert require_int({}, "id", required=False) is None
    with pytest.raises(WebSocketMessageError):
        require_int({}, "id")
    with pytest.raises(WebSocketMessageError):
        require_int({"id": True}, "id")
    with pytest.raises(WebSocketMessageError):
        require_int({"id": "abc"}, "id")


def test_error_envelope_echoes_client_message_id():
    assert error_envelope("nope", "invalid_message", "c-1") == {
        "type": "error",
        "payload": {"message": "nope", "code": "invalid_message", "clientMessageId": "c-1"},
    }
    assert build_envelope("pong") == {"type": "pong", "payload": {}}
