# messaging/routing.py
from django.urls import path

from .consumers import ChatConsumer

websocket_urlpatterns = [
    # One connection per authenticated user
    path("ws/", ChatConsumer.as_asgi()),
]
