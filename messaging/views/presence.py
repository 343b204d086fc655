# messaging/views/presence.py
from drf_spectacular.utils import extend_schema
from rest_framework import permissions
from rest_framework.response import Response
from rest_framework.views import APIView

from ..services.connection_manager import connection_manager


class PresenceView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(
        description="Whether a user currently has a live realtime connection.",
        summary="User Presence",
        tags=["Presence"],
        responses={200: dict},
    )
    def get(self, request, user_id):
        return Response({"userId": user_id, "online": connection_manager.is_user_online(user_id)})
