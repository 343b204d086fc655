# messaging/middleware.py
import logging
from urllib.parse import parse_qs

from channels.auth import AuthMiddlewareStack
from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import InvalidToken, TokenError
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.tokens import AccessToken

logger = logging.getLogger(__name__)


@database_sync_to_async
def get_user_for_token(raw_token):
    try:
        token = AccessToken(raw_token)
        user_id = token[api_settings.USER_ID_CLAIM]
    except (InvalidToken, TokenError, KeyError) as e:
        logger.warning(f"Rejected WebSocket token: {str(e)}")
        return AnonymousUser()

    user = get_user_model().objects.filter(
        **{api_settings.USER_ID_FIELD: user_id}, is_active=True
    ).first()
    return user or AnonymousUser()


class QueryTokenAuthMiddleware(BaseMiddleware):
    """
    Authenticates a WebSocket with ``?token=<access token>`` when present.

    Browsers cannot set headers on a WebSocket handshake, so the JWT travels
    in the query string. Without a token the session user set by
    ``AuthMiddlewareStack`` is kept.
    """

    async def __call__(self, scope, receive, send):
        query = parse_qs(scope.get("query_string", b"").decode())
        tokens = query.get("token")
        if tokens:
            scope = dict(scope)
            scope["user"] = await get_user_for_token(tokens[0])
        return await super().__call__(scope, receive, send)


def QueryTokenAuthMiddlewareStack(inner):
    return AuthMiddlewareStack(QueryTokenAuthMiddleware(inner))
