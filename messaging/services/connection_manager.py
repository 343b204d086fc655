# messaging/services/connection_manager.py
import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from channels.layers import get_channel_layer
from django.conf import settings
from django.utils import timezone

from messaging.protocol import CLOSE_STALE

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    channel_name: str
    connected_at: datetime
    last_activity: datetime


class WebSocketConnectionManager:
    """
    In-process registry of realtime connections, one per user.

    A newer connection for the same user replaces the older one, and
    removal only happens for the channel that is currently registered, so
    a late close of a superseded socket never drops the fresh one. A
    background sweep reaps registrations that have gone quiet.
    """

    def __init__(self):
        self.active_connections: Dict[int, ConnectionInfo] = {}
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def heartbeat_interval(self):
        return getattr(settings, "WEBSOCKET_HEARTBEAT_INTERVAL", 30)  # seconds

    @property
    def stale_threshold(self):
        return getattr(settings, "WEBSOCKET_STALE_THRESHOLD", 60)  # seconds

    @property
    def channel_layer(self):
        return get_channel_layer()

    def register_connection(self, user_id, channel_name) -> Optional[ConnectionInfo]:
        """
        Register ``channel_name`` as the user's connection.

        Returns:
            The registration it replaced, if it was for another channel.
        """
        now = timezone.now()
        with self._lock:
            previous = self.active_connections.get(user_id)
            self.active_connections[user_id] = ConnectionInfo(
                channel_name=channel_name, connected_at=now, last_activity=now
            )

        logger.info(f"Registered WebSocket connection for user {user_id}: {channel_name}")
        if previous is not None and previous.channel_name != channel_name:
            return previous
        return None

    def update_connection_activity(self, user_id, channel_name) -> bool:
        """Update the last activity timestamp for a connection"""
        with self._lock:
            info = self.active_connections.get(user_id)
            if info is None or info.channel_name != channel_name:
                return False
            info.last_activity = timezone.now()
            return True

    def unregister_connection(self, user_id, channel_name) -> bool:
        """Remove the user's registration if it still belongs to ``channel_name``"""
        with self._lock:
            info = self.active_connections.get(user_id)
            if info is None or info.channel_name != channel_name:
                return False
            del self.active_connections[user_id]

        logger.info(f"Unregistered WebSocket connection for user {user_id}: {channel_name}")
        return True

    def get_channel_name(self, user_id) -> Optional[str]:
        info = self.active_connections.get(user_id)
        return info.channel_name if info else None

    def is_user_online(self, user_id) -> bool:
        return user_id in self.active_connections

    def online_user_ids(self) -> List[int]:
        with self._lock:
            return list(self.active_connections)

    def get_active_connections_count(self):
        return len(self.active_connections)

    def find_stale_connections(self, now=None) -> List[Tuple[int, str]]:
        now = now or timezone.now()
        cutoff = now - timedelta(seconds=self.stale_threshold)
        with self._lock:
            return [
                (user_id, info.channel_name)
                for user_id, info in self.active_connections.items()
                if info.last_activity < cutoff
            ]

    async def cleanup_stale_connections(self, now=None) -> List[int]:
        """
        Close and unregister stale connections, announcing each user offline.

        Returns:
            The ids of the users that were reaped.
        """
        from .message_delivery import message_delivery_service

        reaped = []
        for user_id, channel_name in self.find_stale_connections(now):
            logger.warning(f"Closing stale connection for user {user_id}: {channel_name}")
            if not self.unregister_connection(user_id, channel_name):
                continue
            reaped.append(user_id)
            try:
                await self.channel_layer.send(
                    channel_name, {"type": "realtime.close", "code": CLOSE_STALE}
                )
            except Exception as e:
                logger.error(f"Error closing stale connection: {str(e)}")
            await message_delivery_service.broadcast_presence(user_id, online=False)
        return reaped

    async def start_cleanup_task(self):
        """Sweep periodically until no connections remain"""
        while self.active_connections:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.cleanup_stale_connections()
            except Exception as e:
                logger.error(f"Error in connection cleanup: {str(e)}", exc_info=True)
        logger.debug("No active connections, liveness sweep stopped")

    def ensure_cleanup_task(self):
        """Start the sweep on the running loop unless it is already running there."""
        loop = asyncio.get_running_loop()
        task = self._cleanup_task
        if task is not None and not task.done() and task.get_loop() is loop:
            return task
        self._cleanup_task = loop.create_task(self.start_cleanup_task())
        return self._cleanup_task

    def stop_cleanup_task(self):
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None and not task.done() and not task.get_loop().is_closed():
            task.cancel()


# Create a singleton instance
connection_manager = WebSocketConnectionManager()
