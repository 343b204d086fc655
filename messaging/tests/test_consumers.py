from unittest import mock

import pytest
from channels.db import database_sync_to_async
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.urls import reverse

from messaging.models import Conversation, Message
from messaging.repository import DjangoConversationRepository
from messaging.routing import websocket_urlpatterns
from messaging.services.connection_manager import connection_manager
from messaging.services.typing_tracker import typing_tracker

pytestmark = pytest.mark.django_db(transaction=True)


@pytest.fixture
def conversation(alice, bob, listing):
    return DjangoConversationRepository().start_conversation(listing.pk, [alice.pk, bob.pk])


async def open_socket(user, path="/ws/"):
    communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), path)
    communicator.scope["user"] = user
    connected, _ = await communicator.connect()
    assert connected
    ack = await communicator.receive_json_from()
    assert ack["type"] == "connect"
    return communicator, ack


async def receive_until(communicator, event_type, timeout=1):
    while True:
        envelope = await communicator.receive_json_from(timeout=timeout)
        if envelope["type"] == event_type:
            return envelope


async def test_rejects_anonymous_connection():
    from django.contrib.auth.models import AnonymousUser

    communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), "/ws/")
    communicator.scope["user"] = AnonymousUser()

    connected, code = await communicator.connect()

    assert not connected
    assert code == 4401


async def test_rejects_mismatched_user_id(alice):
    communicator = WebsocketCommunicator(
        URLRouter(websocket_urlpatterns), f"/ws/?userId={alice.pk + 100}"
    )
    communicator.scope["user"] = alice

    connected, code = await communicator.connect()

    assert not connected
    assert code == 4403
    assert not connection_manager.is_user_online(alice.pk)


async def test_connect_ack_lists_conversations_and_online_users(alice, bob, conversation):
    bob_socket, _ = await open_socket(bob)
    alice_socket, ack = await open_socket(alice, f"/ws/?userId={alice.pk}")

    assert ack["payload"] == {
        "userId": alice.pk,
        "conversations": [conversation.pk],
        "onlineUsers": [bob.pk],
    }
    assert connection_manager.is_user_online(alice.pk)

    await alice_socket.disconnect()
    await bob_socket.disconnect()


async def test_presence_is_broadcast(alice, bob):
    alice_socket, _ = await open_socket(alice)
    bob_socket, _ = await open_socket(bob)

    online = await receive_until(alice_socket, "user_online")
    assert online["payload"] == {"userId": bob.pk}

    await bob_socket.disconnect()
    offline = await receive_until(alice_socket, "user_offline")
    assert offline["payload"] == {"userId": bob.pk}
    assert not connection_manager.is_user_online(bob.pk)

    await alice_socket.disconnect()


async def test_send_message_acks_sender_and_pushes_to_recipient(alice, bob, conversation):
    alice_socket, _ = await open_socket(alice)
    bob_socket, _ = await open_socket(bob)

    await alice_socket.send_json_to(
        {
            "type": "message",
            "payload": {
                "conversationId": conversation.pk,
                "content": "Still for sale?",
                "clientMessageId": "c-1",
            },
        }
    )

    ack = await receive_until(alice_socket, "message")
    assert ack["payload"]["clientMessageId"] == "c-1"
    assert ack["payload"]["message"]["content"] == "Still for sale?"
    assert ack["payload"]["message"]["readAt"] is None

    pushed = await receive_until(bob_socket, "new_message")
    assert pushed["payload"]["message"]["id"] == ack["payload"]["message"]["id"]
    assert await database_sync_to_async(Message.objects.count)() == 1

    await alice_socket.disconnect()
    await bob_socket.disconnect()


async def test_send_by_receiver_creates_conversation(alice, bob, listing):
    alice_socket, _ = await open_socket(alice)

    await alice_socket.send_json_to(
        {
            "type": "message",
            "payload": {"receiverId": bob.pk, "listingId": listing.pk, "content": "Hello"},
        }
    )

    ack = await receive_until(alice_socket, "message")
    conversation = await database_sync_to_async(Conversation.objects.get)()
    assert ack["payload"]["message"]["conversationId"] == conversation.pk
    assert conversation.listing_id == listing.pk

    await alice_socket.disconnect()


async def test_malformed_frame_keeps_connection_open(alice):
    alice_socket, _ = await open_socket(alice)

    await alice_socket.send_to(text_data="{not json")
    error = await alice_socket.receive_json_from()
    assert error["type"] == "error"
    assert error["payload"]["code"] == "invalid_message"

    await alice_socket.send_json_to({"type": "ping"})
    assert (await alice_socket.receive_json_from())["type"] == "pong"

    await alice_socket.disconnect()


@pytest.mark.parametrize("frame", [{"type": "teleport"}, {"type": "new_message"}, ["message"]])
async def test_unacceptable_frames_are_reported(alice, frame):
    alice_socket, _ = await open_socket(alice)

    await alice_socket.send_json_to(frame)
    error = await alice_socket.receive_json_from()

    assert error["type"] == "error"
    assert error["payload"]["code"] == "invalid_message"
    await alice_socket.disconnect()


async def test_empty_content_is_rejected_with_client_id(alice, conversation):
    alice_socket, _ = await open_socket(alice)

    await alice_socket.send_json_to(
        {
            "type": "message",
            "payload": {"conversationId": conversation.pk, "content": " ", "clientMessageId": "c-9"},
        }
    )
    error = await alice_socket.receive_json_from()

    assert error["type"] == "error"
    assert error["payload"]["clientMessageId"] == "c-9"
    assert await database_sync_to_async(Message.objects.count)() == 0
    await alice_socket.disconnect()


async def test_non_participant_cannot_send(carol, conversation):
    carol_socket, _ = await open_socket(carol)

    await carol_socket.send_json_to(
        {"type": "message", "payload": {"conversationId": conversation.pk, "content": "hi"}}
    )
    error = await carol_socket.receive_json_from()

    assert error["type"] == "error"
    assert error["payload"]["code"] == "not_a_participant"
    assert await database_sync_to_async(Message.objects.count)() == 0
    await carol_socket.disconnect()


async def test_typing_is_relayed_and_expires(settings, alice, bob, conversation):
    settings.MESSAGING_TYPING_TIMEOUT = 0.2
    alice_socket, _ = await open_socket(alice)
    bob_socket, _ = await open_socket(bob)

    await alice_socket.send_json_to({"type": "typing", "payload": {"targetId": conversation.pk}})

    typing = await receive_until(bob_socket, "typing")
    assert typing["payload"] == {"conversationId": conversation.pk, "userId": alice.pk}
    stopped = await receive_until(bob_socket, "stopped_typing", timeout=2)
    assert stopped["payload"] == {"conversationId": conversation.pk, "userId": alice.pk}

    await alice_socket.disconnect()
    await bob_socket.disconnect()


async def test_stopped_typing_is_relayed(alice, bob, conversation):
    alice_socket, _ = await open_socket(alice)
    bob_socket, _ = await open_socket(bob)

    await alice_socket.send_json_to({"type": "typing", "payload": {"conversationId": conversation.pk}})
    await receive_until(bob_socket, "typing")
    await alice_socket.send_json_to(
        {"type": "stopped_typing", "payload": {"conversationId": conversation.pk}}
    )

    stopped = await receive_until(bob_socket, "stopped_typing")
    assert stopped["payload"]["userId"] == alice.pk

    await alice_socket.disconnect()
    await bob_socket.disconnect()


async def test_read_receipt_is_relayed_to_sender(alice, bob, conversation):
    message = await database_sync_to_async(DjangoConversationRepository().create_message)(
        conversation.pk, alice.pk, "Is it still available?"
    )
    alice_socket, _ = await open_socket(alice)
    bob_socket, _ = await open_socket(bob)

    await bob_socket.send_json_to(
        {"type": "read_receipt", "payload": {"conversationId": conversation.pk}}
    )

    receipt = await receive_until(alice_socket, "read_receipt")
    assert receipt["payload"]["conversationId"] == conversation.pk
    assert receipt["payload"]["userId"] == bob.pk
    assert receipt["payload"]["messageIds"] == [message.pk]
    await database_sync_to_async(message.refresh_from_db)()
    assert message.read_at is not None

    await alice_socket.disconnect()
    await bob_socket.disconnect()


async def test_newer_connection_replaces_older(alice):
    first, _ = await open_socket(alice)
    second, _ = await open_socket(alice)

    closed = await first.receive_output(timeout=1)
    assert closed == {"type": "websocket.close", "code": 4000}

    await first.disconnect()
    assert connection_manager.is_user_online(alice.pk)

    await second.send_json_to({"type": "ping"})
    assert (await second.receive_json_from())["type"] == "pong"

    await second.disconnect()
    assert not connection_manager.is_user_online(alice.pk)


async def test_offline_is_broadcast_even_if_typing_cleanup_fails(alice, bob):
    alice_socket, _ = await open_socket(alice)
    bob_socket, _ = await open_socket(bob)

    with mock.patch.object(typing_tracker, "flush_user", side_effect=RuntimeError("boom")):
        await bob_socket.disconnect()

    offline = await receive_until(alice_socket, "user_offline")
    assert offline["payload"] == {"userId": bob.pk}
    await alice_socket.disconnect()


async def test_clearing_messages_notifies_connected_participant(client_for, alice, bob, conversation):
    bob_socket, _ = await open_socket(bob)
    url = reverse("conversation-messages", kwargs={"pk": conversation.pk})

    response = await database_sync_to_async(client_for(alice).delete)(url)

    assert response.status_code == 204
    cleared = await receive_until(bob_socket, "messages_cleared")
    assert cleared["payload"] == {"conversationId": conversation.pk, "clearedBy": alice.pk}
    await bob_socket.disconnect()


async def test_socket_content_is_trimmed_like_http(alice, conversation):
    alice_socket, _ = await open_socket(alice)

    await alice_socket.send_json_to(
        {"type": "message", "payload": {"conversationId": conversation.pk, "content": "  padded  "}}
    )

    ack = await receive_until(alice_socket, "message")
    assert ack["payload"]["message"]["content"] == "padded"
    stored = await database_sync_to_async(Message.objects.get)()
    assert stored.content == "padded"
    await alice_socket.disconnect()
