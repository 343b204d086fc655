# messaging/client.py
"""
Client-side session for the realtime protocol.

``ChatSessionController`` keeps one connection per user, tracks presence and
typing state, holds optimistic messages until the server confirms them, and
records which conversations need their history re-fetched. It does not
own a socket implementation: ``connect`` is any coroutine function that
returns an object with async ``send(text)``, ``recv() -> text`` and
``close()``.
"""
import asyncio
import enum
import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .protocol import EventType, build_envelope

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TIMEOUT = 5.0  # seconds


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class SendStatus(str, enum.Enum):
    QUEUED = "queued"  # not yet written to a connection
    SENT = "sent"  # written, waiting for the server's confirmation
    CONFIRMED = "confirmed"  # persisted by the server
    FAILED = "failed"  # the server reported an error


@dataclass
class PendingMessage:
    client_message_id: str
    conversation_id: Optional[int]
    content: str
    receiver_id: Optional[int] = None
    listing_id: Optional[int] = None
    status: SendStatus = SendStatus.QUEUED
    error: Optional[str] = None
    message: Optional[Dict[str, Any]] = None

    def envelope(self):
        payload = {"content": self.content, "clientMessageId": self.client_message_id}
        if self.conversation_id is not None:
            payload["conversationId"] = self.conversation_id
        else:
            payload["receiverId"] = self.receiver_id
            payload["listingId"] = self.listing_id
        return build_envelope(EventType.MESSAGE, payload)


@dataclass
class _Outgoing:
    envelope: Dict[str, Any]
    pending: Optional[PendingMessage] = None


class ChatSessionController:
    def __init__(
        self,
        user_id: int,
        connect: Optional[Callable[[], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        typing_timeout: float = DEFAULT_TYPING_TIMEOUT,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        ping_interval: float = 25.0,
        tick_interval: float = 0.5,
    ):
        self.user_id = user_id
        self.connect = connect
        self.clock = clock
        self.typing_timeout = typing_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.ping_interval = ping_interval
        self.tick_interval = tick_interval

        self.state = ConnectionState.IDLE
        self.online_users: Set[int] = set()
        self.conversation_ids: Set[int] = set()
        self.pending: "OrderedDict[str, PendingMessage]" = OrderedDict()
        self.invalidated: Set[int] = set()
        self.read_receipts: Dict[int, Dict[str, Any]] = {}
        self.errors: List[Dict[str, Any]] = []

        # (user id, conversation id) -> clock time the indicator expires
        self._remote_typing: Dict[Tuple[int, int], float] = {}
        # conversation id -> clock time of the last local keystroke
        self._local_typing: Dict[int, float] = {}
        self._outbox: List[_Outgoing] = []
        self._wakeup: Optional[asyncio.Event] = None
        self._stopping = False
        self._last_sent_at = 0.0

    # Presence and typing state

    def is_online(self, user_id) -> bool:
        return user_id in self.online_users

    def is_typing(self, user_id, conversation_id) -> bool:
        expires_at = self._remote_typing.get((user_id, conversation_id))
        if expires_at is None:
            return False
        if self.clock() >= expires_at:
            del self._remote_typing[(user_id, conversation_id)]
            return False
        return True

    def typing_users(self, conversation_id) -> Set[int]:
        return {
            user_id
            for (user_id, conv_id) in list(self._remote_typing)
            if conv_id == conversation_id and self.is_typing(user_id, conv_id)
        }

    # Local actions

    def send_message(
        self,
        conversation_id: Optional[int],
        content: str,
        receiver_id: Optional[int] = None,
        listing_id: Optional[int] = None,
        client_message_id: Optional[str] = None,
    ) -> PendingMessage:
        """
        Queue a message and return its optimistic record. The record moves to
        CONFIRMED when the server echoes it back, or FAILED on an error event.
        """
        if conversation_id is None and receiver_id is None:
            raise ValueError("conversation_id or receiver_id is required")
        pending = PendingMessage(
            client_message_id=client_message_id or uuid.uuid4().hex,
            conversation_id=conversation_id,
            content=content,
            receiver_id=receiver_id,
            listing_id=listing_id,
        )
        self.pending[pending.client_message_id] = pending
        if conversation_id is not None:
            self._stop_local_typing(conversation_id)
        self._queue(pending.envelope(), pending)
        return pending

    def retry(self, client_message_id) -> PendingMessage:
        pending = self.pending[client_message_id]
        if pending.status is not SendStatus.FAILED:
            raise ValueError(f"Message {client_message_id} has not failed")
        pending.status = SendStatus.QUEUED
        pending.error = None
        self._queue(pending.envelope(), pending)
        return pending

    def user_typed(self, conversation_id: int) -> None:
        """
        Record a keystroke. Sends ``typing`` on the first keystroke only;
        ``stopped_typing`` follows after ``typing_timeout`` seconds without one.
        """
        if conversation_id not in self._local_typing:
            self._queue(build_envelope(EventType.TYPING, {"conversationId": conversation_id}))
        self._local_typing[conversation_id] = self.clock()

    def mark_read(self, conversation_id: int, message_id: Optional[int] = None) -> None:
        payload = {"conversationId": conversation_id}
        if message_id is not None:
            payload["messageId"] = message_id
        self._queue(build_envelope(EventType.READ_RECEIPT, payload))

    def consume_invalidations(self) -> Set[int]:
        """Conversation ids whose history should be re-fetched; clears the set."""
        invalidated, self.invalidated = self.invalidated, set()
        return invalidated

    def tick(self) -> None:
        """Expire typing state; call periodically."""
        now = self.clock()
        for conversation_id, last in list(self._local_typing.items()):
            if now - last >= self.typing_timeout:
                self._stop_local_typing(conversation_id)
        for key, expires_at in list(self._remote_typing.items()):
            if now >= expires_at:
                del self._remote_typing[key]

    # Inbound events

    def handle_raw(self, text: str) -> None:
        try:
            envelope = json.loads(text)
        except ValueError:
            logger.warning("Ignoring malformed frame from server")
            return
        self.handle_event(envelope)

    def handle_event(self, envelope: Dict[str, Any]) -> None:
        if not isinstance(envelope, dict):
            logger.warning("Ignoring frame that is not a JSON object")
            return
        try:
            event_type = EventType(envelope.get("type"))
        except ValueError:
            logger.warning(f"Ignoring unknown event type {envelope.get('type')!r}")
            return
        payload = envelope.get("payload") or {}
        if not isinstance(payload, dict):
            logger.warning(f"Ignoring {event_type.value} event with a malformed payload")
            return

        if event_type is EventType.CONNECT:
            self.state = ConnectionState.OPEN
            self.online_users = set(payload.get("onlineUsers", []))
            self.conversation_ids = set(payload.get("conversations", []))
            # anything may have happened while we were away
            self.invalidated |= self.conversation_ids
        elif event_type is EventType.USER_ONLINE:
            self.online_users.add(payload.get("userId"))
        elif event_type is EventType.USER_OFFLINE:
            user_id = payload.get("userId")
            self.online_users.discard(user_id)
            for key in [k for k in self._remote_typing if k[0] == user_id]:
                del self._remote_typing[key]
        elif event_type is EventType.TYPING:
            key = (payload.get("userId"), payload.get("conversationId"))
            self._remote_typing[key] = self.clock() + self.typing_timeout
        elif event_type is EventType.STOPPED_TYPING:
            self._remote_typing.pop((payload.get("userId"), payload.get("conversationId")), None)
        elif event_type is EventType.MESSAGE:
            self._confirm(payload)
        elif event_type is EventType.NEW_MESSAGE:
            message = payload.get("message") or {}
            conversation_id = message.get("conversationId")
            self.conversation_ids.add(conversation_id)
            self.invalidated.add(conversation_id)
            self._remote_typing.pop((message.get("senderId"), conversation_id), None)
        elif event_type is EventType.READ_RECEIPT:
            conversation_id = payload.get("conversationId")
            self.read_receipts[conversation_id] = payload
            self.invalidated.add(conversation_id)
        elif event_type is EventType.MESSAGES_CLEARED:
            self.invalidated.add(payload.get("conversationId"))
        elif event_type is EventType.ERROR:
            self._fail(payload)

    def _confirm(self, payload):
        message = payload.get("message") or {}
        pending = self.pending.get(payload.get("clientMessageId"))
        if pending is None:
            return
        pending.status = SendStatus.CONFIRMED
        pending.message = message
        conversation_id = message.get("conversationId")
        if pending.conversation_id is None:
            pending.conversation_id = conversation_id
        self.conversation_ids.add(conversation_id)

    def _fail(self, payload):
        self.errors.append(payload)
        pending = self.pending.get(payload.get("clientMessageId"))
        if pending is None:
            logger.warning(f"Server error: {payload.get('message')}")
            return
        pending.status = SendStatus.FAILED
        pending.error = payload.get("message")

    # Outgoing queue

    def _stop_local_typing(self, conversation_id):
        if self._local_typing.pop(conversation_id, None) is not None:
            self._queue(
                build_envelope(EventType.STOPPED_TYPING, {"conversationId": conversation_id})
            )

    def _queue(self, envelope, pending=None):
        self._outbox.append(_Outgoing(envelope, pending))
        if self._wakeup is not None:
            self._wakeup.set()

    def drain_outbox(self) -> List[Dict[str, Any]]:
        """
        Take every queued envelope, marking queued messages as sent. For
        callers that write the envelopes themselves; ``run`` writes them one
        at a time instead.
        """
        outgoing, self._outbox = self._outbox, []
        for item in outgoing:
            if item.pending is not None:
                item.pending.status = SendStatus.SENT
        return [item.envelope for item in outgoing]

    def requeue_unconfirmed(self) -> List[PendingMessage]:
        """
        Move messages that were written but never confirmed back to the
        front of the outbox with their original client message ids, so the
        next connection sends them again.
        """
        requeued = [p for p in self.pending.values() if p.status is SendStatus.SENT]
        for pending in requeued:
            pending.status = SendStatus.QUEUED
        self._outbox[:0] = [_Outgoing(pending.envelope(), pending) for pending in requeued]
        if requeued:
            logger.info(f"Requeued {len(requeued)} unconfirmed message(s)")
        return requeued

    # Connection loop

    def stop(self):
        self._stopping = True
        if self._wakeup is not None:
            self._wakeup.set()

    async def run(self):
        """
        Keep a connection open until ``stop`` is called, reconnecting with
        exponential backoff after failures.
        """
        if self.connect is None:
            raise RuntimeError("No connect function configured")
        self._wakeup = asyncio.Event()
        if self._outbox:
            self._wakeup.set()
        attempts = 0
        while not self._stopping:
            self.state = ConnectionState.CONNECTING
            try:
                connection = await self.connect()
            except Exception as e:
                logger.warning(f"Connection attempt failed: {str(e)}")
                self.state = ConnectionState.CLOSED
                await self._backoff(attempts)
                attempts += 1
                continue

            attempts = 0
            try:
                await self._session(connection)
            except Exception as e:
                logger.warning(f"Connection lost: {str(e)}")
            finally:
                self.state = ConnectionState.CLOSED
                self.requeue_unconfirmed()
                try:
                    await connection.close()
                except Exception as e:
                    logger.debug(f"Error closing connection: {str(e)}")
            if not self._stopping:
                await self._backoff(attempts)
                attempts += 1

    async def _backoff(self, attempts):
        delay = min(self.reconnect_delay * (2 ** attempts), self.max_reconnect_delay)
        await asyncio.sleep(delay)

    async def _flush(self, connection):
        # An item leaves the outbox only once its send has returned
        while self._outbox:
            item = self._outbox[0]
            await connection.send(json.dumps(item.envelope))
            self._outbox.pop(0)
            if item.pending is not None:
                item.pending.status = SendStatus.SENT
            self._last_sent_at = self.clock()

    async def _session(self, connection):
        receive_task = None
        self._last_sent_at = self.clock()
        try:
            while not self._stopping:
                self._wakeup.clear()
                await self._flush(connection)

                if receive_task is None:
                    receive_task = asyncio.ensure_future(connection.recv())
                wakeup_task = asyncio.ensure_future(self._wakeup.wait())
                done, _ = await asyncio.wait(
                    {receive_task, wakeup_task},
                    timeout=self.tick_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                wakeup_task.cancel()

                if receive_task in done:
                    text = receive_task.result()
                    receive_task = None
                    self.handle_raw(text)

                self.tick()
                if self.clock() - self._last_sent_at >= self.ping_interval:
                    self._queue(build_envelope(EventType.PING))
        finally:
            if receive_task is not None:
                receive_task.cancel()
