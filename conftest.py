import pytest
from django.core.cache import cache


@pytest.fixture(autouse=True)
def messaging_settings(settings):
    settings.MESSAGING_MIGRATE_ON_STARTUP = False
    settings.CHANNEL_LAYERS = {
        "default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}
    }
    return settings


@pytest.fixture(autouse=True)
def clean_realtime_state():
    from messaging.services.connection_manager import connection_manager
    from messaging.services.typing_tracker import typing_tracker

    cache.clear()
    connection_manager.active_connections.clear()
    typing_tracker._timers.clear()
    yield
    connection_manager.stop_cleanup_task()
    connection_manager.active_connections.clear()
    typing_tracker._timers.clear()


@pytest.fixture
def make_user(db):
    from django.contrib.auth import get_user_model

    counter = {"n": 0}

    def _make_user(username=None, **extra):
        counter["n"] += 1
        username = username or f"student{counter['n']}"
        return get_user_model().objects.create_user(
            username=username,
            email=f"{username}@campus.edu",
            password="s3cret-pass",
            university="State University",
            **extra,
        )

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


@pytest.fixture
def carol(make_user):
    return make_user("carol")


@pytest.fixture
def listing(alice):
    from listings.models import Listing

    return Listing.objects.create(
        title="Calculus textbook",
        description="Barely used",
        price="25.00",
        category="Books",
        condition="Like new",
        user=alice,
    )


@pytest.fixture
def client_for():
    from rest_framework.test import APIClient

    def _client_for(user):
        client = APIClient()
        client.force_authenticate(user=user)
        return client

    return _client_for
