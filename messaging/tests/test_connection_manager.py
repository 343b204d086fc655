from datetime import timedelta

import pytest
from channels.layers import get_channel_layer
from django.utils import timezone

from messaging.services.connection_manager import WebSocketConnectionManager, connection_manager


@pytest.fixture
def manager():
    return WebSocketConnectionManager()


def test_register_and_lookup(manager):
    assert manager.register_connection(1, "chan-a") is None

    assert manager.is_user_online(1)
    assert manager.get_channel_name(1) == "chan-a"
    assert manager.online_user_ids() == [1]
    assert manager.get_active_connections_count() == 1


def test_newer_connection_replaces_older(manager):
    manager.register_connection(1, "chan-a")

    previous = manager.register_connection(1, "chan-b")

    assert previous.channel_name == "chan-a"
    assert manager.get_channel_name(1) == "chan-b"
    assert manager.get_active_connections_count() == 1


def test_unregister_ignores_superseded_channel(manager):
    manager.register_connection(1, "chan-a")
    manager.register_connection(1, "chan-b")

    assert manager.unregister_connection(1, "chan-a") is False
    assert manager.is_user_online(1)
    assert manager.unregister_connection(1, "chan-b") is True
    assert not manager.is_user_online(1)
    assert manager.unregister_connection(1, "chan-b") is False


def test_activity_only_tracked_for_current_channel(manager):
    manager.register_connection(1, "chan-a")
    manager.active_connections[1].last_activity -= timedelta(minutes=5)

    assert manager.update_connection_activity(1, "chan-old") is False
    assert manager.find_stale_connections() == [(1, "chan-a")]

    assert manager.update_connection_activity(1, "chan-a") is True
    assert manager.find_stale_connections() == []


def test_find_stale_connections_uses_threshold(settings, manager):
    settings.WEBSOCKET_STALE_THRESHOLD = 60
    manager.register_connection(1, "chan-a")
    manager.register_connection(2, "chan-b")
    now = timezone.now()
    manager.active_connections[1].last_activity = now - timedelta(seconds=61)
    manager.active_connections[2].last_activity = now - timedelta(seconds=59)

    assert manager.find_stale_connections(now) == [(1, "chan-a")]


async def test_cleanup_closes_stale_connections_and_announces_offline():
    layer = get_channel_layer()
    stale_channel = await layer.new_channel()
    live_channel = await layer.new_channel()
    connection_manager.register_connection(1, stale_channel)
    connection_manager.register_connection(2, live_channel)
    connection_manager.active_connections[1].last_activity -= timedelta(minutes=5)

    reaped = await connection_manager.cleanup_stale_connections()

    assert reaped == [1]
    assert not connection_manager.is_user_online(1)
    assert connection_manager.is_user_online(2)
    assert await layer.receive(stale_channel) == {"type": "realtime.close", "code": 4000}
    offline = await layer.receive(live_channel)
    assert offline["type"] == "realtime.event"
    assert offline["envelope"] == {"type": "user_offline", "payload": {"userId": 1}}


async def test_cleanup_task_runs_on_the_current_loop(manager):
    manager.register_connection(1, "chan-a")

    task = manager.ensure_cleanup_task()

    assert manager.ensure_cleanup_task() is task
    manager.stop_cleanup_task()
    assert manager._cleanup_task is None
