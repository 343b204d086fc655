import asyncio
import json

import pytest

from messaging.client import ChatSessionController, ConnectionState, SendStatus


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeConnection:
    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True

    def push(self, event_type, payload=None):
        self.incoming.put_nowait(json.dumps({"type": event_type, "payload": payload or {}}))

    def sent_types(self):
        return [envelope["type"] for envelope in self.sent]


async def wait_until(condition, timeout=1.0):
    async def _poll():
        while not condition():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(clock):
    return ChatSessionController(user_id=1, clock=clock)


def test_connect_event_sets_presence_and_invalidates(session):
    session.handle_event(
        {"type": "connect", "payload": {"userId": 1, "conversations": [5, 6], "onlineUsers": [2]}}
    )

    assert session.state is ConnectionState.OPEN
    assert session.is_online(2)
    assert session.conversation_ids == {5, 6}
    assert session.consume_invalidations() == {5, 6}
    assert session.consume_invalidations() == set()


def test_presence_events(session):
    session.handle_event({"type": "user_online", "payload": {"userId": 3}})
    assert session.is_online(3)

    session.handle_event({"type": "user_offline", "payload": {"userId": 3}})
    assert not session.is_online(3)


def test_remote_typing_expires_without_stop(session, clock):
    session.handle_event({"type": "typing", "payload": {"userId": 2, "conversationId": 5}})
    assert session.is_typing(2, 5)
    assert session.typing_users(5) == {2}

    clock.advance(session.typing_timeout)

    assert not session.is_typing(2, 5)
    assert session.typing_users(5) == set()


def test_remote_typing_cleared_by_stop_message_or_offline(session):
    session.handle_event({"type": "typing", "payload": {"userId": 2, "conversationId": 5}})
    session.handle_event({"type": "stopped_typing", "payload": {"userId": 2, "conversationId": 5}})
    assert not session.is_typing(2, 5)

    session.handle_event({"type": "typing", "payload": {"userId": 2, "conversationId": 5}})
    session.handle_event(
        {"type": "new_message", "payload": {"message": {"id": 9, "conversationId": 5, "senderId": 2}}}
    )
    assert not session.is_typing(2, 5)
    assert session.consume_invalidations() == {5}

    session.handle_event({"type": "typing", "payload": {"userId": 2, "conversationId": 5}})
    session.handle_event({"type": "user_offline", "payload": {"userId": 2}})
    assert not session.is_typing(2, 5)


def test_local_typing_is_debounced(session, clock):
    session.user_typed(5)
    clock.advance(1)
    session.user_typed(5)

    assert [e["type"] for e in session.drain_outbox()] == ["typing"]

    clock.advance(session.typing_timeout - 0.5)
    session.tick()
    assert session.drain_outbox() == []

    clock.advance(0.5)
    session.tick()
    assert session.drain_outbox() == [{"type": "stopped_typing", "payload": {"conversationId": 5}}]


def test_sending_stops_local_typing(session):
    session.user_typed(5)
    session.send_message(5, "hello", client_message_id="c-1")

    assert [e["type"] for e in session.drain_outbox()] == ["typing", "stopped_typing", "message"]


def test_optimistic_message_is_confirmed(session):
    pending = session.send_message(5, "hello", client_message_id="c-1")
    assert pending.status is SendStatus.QUEUED

    (envelope,) = session.drain_outbox()
    assert envelope == {
        "type": "message",
        "payload": {"content": "hello", "clientMessageId": "c-1", "conversationId": 5},
    }
    assert pending.status is SendStatus.SENT

    session.handle_event(
        {
            "type": "message",
            "payload": {"clientMessageId": "c-1", "message": {"id": 77, "conversationId": 5}},
        }
    )
    assert pending.status is SendStatus.CONFIRMED
    assert pending.message["id"] == 77


def test_send_by_receiver_learns_conversation(session):
    pending = session.send_message(None, "hi", receiver_id=2, listing_id=3, client_message_id="c-2")
    (envelope,) = session.drain_outbox()
    assert envelope["payload"]["receiverId"] == 2
    assert envelope["payload"]["listingId"] == 3

    session.handle_event(
        {
            "type": "message",
            "payload": {"clientMessageId": "c-2", "message": {"id": 1, "conversationId": 8}},
        }
    )

    assert pending.conversation_id == 8
    assert 8 in session.conversation_ids


def test_send_requires_an_address(session):
    with pytest.raises(ValueError):
        session.send_message(None, "hi")


def test_failed_message_can_be_retried(session):
    pending = session.send_message(5, "hello", client_message_id="c-3")
    session.drain_outbox()

    session.handle_event(
        {
            "type": "error",
            "payload": {"message": "not allowed", "code": "not_a_participant", "clientMessageId": "c-3"},
        }
    )
    assert pending.status is SendStatus.FAILED
    assert pending.error == "not allowed"
    assert session.errors[-1]["code"] == "not_a_participant"

    session.retry("c-3")
    assert pending.status is SendStatus.QUEUED
    assert session.drain_outbox()[0]["payload"]["clientMessageId"] == "c-3"

    with pytest.raises(ValueError):
        session.retry("c-3")


def test_read_receipt_and_cleared_events_invalidate(session):
    session.handle_event(
        {"type": "read_receipt", "payload": {"conversationId": 5, "userId": 2, "messageIds": [1]}}
    )
    session.handle_event({"type": "messages_cleared", "payload": {"conversationId": 6}})

    assert session.read_receipts[5]["messageIds"] == [1]
    assert session.consume_invalidations() == {5, 6}


def test_mark_read_queues_receipt(session):
    session.mark_read(5)
    session.mark_read(5, message_id=12)

    assert session.drain_outbox() == [
        {"type": "read_receipt", "payload": {"conversationId": 5}},
        {"type": "read_receipt", "payload": {"conversationId": 5, "messageId": 12}},
    ]


def test_unknown_and_malformed_frames_are_ignored(session):
    session.handle_raw("{oops")
    session.handle_raw(json.dumps({"type": "teleport"}))

    assert session.errors == []
    assert session.state is ConnectionState.IDLE


async def test_run_sends_queued_messages_and_handles_events():
    connection = FakeConnection()

    async def connect():
        return connection

    session = ChatSessionController(user_id=1, connect=connect, tick_interval=0.01)
    pending = session.send_message(5, "queued before connect", client_message_id="c-1")
    runner = asyncio.ensure_future(session.run())

    connection.push("connect", {"userId": 1, "conversations": [5], "onlineUsers": []})
    await wait_until(lambda: "message" in connection.sent_types())
    connection.push("message", {"clientMessageId": "c-1", "message": {"id": 3, "conversationId": 5}})
    await wait_until(lambda: pending.status is SendStatus.CONFIRMED)

    session.stop()
    await asyncio.wait_for(runner, 1)
    assert connection.closed
    assert session.state is ConnectionState.CLOSED


async def test_run_reconnects_after_failures():
    connections = []

    async def connect():
        if not connections:
            connections.append(None)
            raise ConnectionError("refused")
        connection = FakeConnection()
        connections.append(connection)
        return connection

    session = ChatSessionController(
        user_id=1, connect=connect, reconnect_delay=0.01, tick_interval=0.01
    )
    runner = asyncio.ensure_future(session.run())

    await wait_until(lambda: len(connections) == 2)
    connections[1].incoming.put_nowait(ConnectionError("reset"))
    await wait_until(lambda: len(connections) == 3)
    assert connections[1].closed

    session.stop()
    await asyncio.wait_for(runner, 1)


async def test_run_pings_idle_connection():
    connection = FakeConnection()

    async def connect():
        return connection

    session = ChatSessionController(
        user_id=1, connect=connect, ping_interval=0.05, tick_interval=0.01
    )
    runner = asyncio.ensure_future(session.run())

    await wait_until(lambda: "ping" in connection.sent_types())

    session.stop()
    await asyncio.wait_for(runner, 1)


async def test_run_requires_connect():
    with pytest.raises(RuntimeError):
        await ChatSessionController(user_id=1).run()


class BrokenConnection(FakeConnection):
    async def send(self, text):
        raise ConnectionError("broken pipe")


def sent_contents(connection):
    return [e["payload"]["content"] for e in connection.sent if e["type"] == "message"]


async def test_failed_write_keeps_messages_queued_for_next_connection():
    healthy = FakeConnection()
    connections = [BrokenConnection(), healthy]

    async def connect():
        return connections.pop(0)

    session = ChatSessionController(
        user_id=1, connect=connect, reconnect_delay=0.01, tick_interval=0.01
    )
    first = session.send_message(5, "first", client_message_id="c-1")
    second = session.send_message(5, "second", client_message_id="c-2")
    runner = asyncio.ensure_future(session.run())

    await wait_until(lambda: len(sent_contents(healthy)) == 2)
    assert sent_contents(healthy) == ["first", "second"]
    assert first.status is SendStatus.SENT
    assert second.status is SendStatus.SENT

    session.stop()
    await asyncio.wait_for(runner, 1)


async def test_unconfirmed_messages_are_resent_after_reconnect():
    first_connection, second_connection = FakeConnection(), FakeConnection()
    connections = [first_connection, second_connection]

    async def connect():
        return connections.pop(0)

    session = ChatSessionController(
        user_id=1, connect=connect, reconnect_delay=0.01, tick_interval=0.01
    )
    confirmed = session.send_message(5, "confirmed", client_message_id="c-1")
    lost = session.send_message(5, "lost", client_message_id="c-2")
    runner = asyncio.ensure_future(session.run())

    await wait_until(lambda: len(sent_contents(first_connection)) == 2)
    first_connection.push(
        "message", {"clientMessageId": "c-1", "message": {"id": 1, "conversationId": 5}}
    )
    await wait_until(lambda: confirmed.status is SendStatus.CONFIRMED)
    first_connection.incoming.put_nowait(ConnectionError("reset"))

    await wait_until(lambda: sent_contents(second_connection) == ["lost"])
    resent = [e for e in second_connection.sent if e["type"] == "message"]
    assert resent[0]["payload"]["clientMessageId"] == "c-2"
    assert lost.status is SendStatus.SENT

    second_connection.push(
        "message", {"clientMessageId": "c-2", "message": {"id": 2, "conversationId": 5}}
    )
    await wait_until(lambda: lost.status is SendStatus.CONFIRMED)

    session.stop()
    await asyncio.wait_for(runner, 1)


def test_requeue_unconfirmed_puts_sent_messages_first(session):
    sent = session.send_message(5, "sent", client_message_id="c-1")
    session.drain_outbox()
    session.mark_read(5)

    assert session.requeue_unconfirmed() == [sent]

    assert sent.status is SendStatus.QUEUED
    assert [e["type"] for e in session.drain_outbox()] == ["message", "read_receipt"]


def test_non_object_frames_are_ignored(session):
    session.handle_raw("[]")
    session.handle_raw(json.dumps({"type": "user_online", "payload": [3]}))

    assert session.online_users == set()
    assert session.errors == []
