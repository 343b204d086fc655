# messaging/exceptions.py
import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError
from rest_framework import status
from rest_framework.exceptions import APIException, NotFound, PermissionDenied
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class ConversationNotFound(NotFound):
    default_detail = "Conversation not found."
    default_code = "conversation_not_found"


class MessageNotFound(NotFound):
    default_detail = "Message not found."
    default_code = "message_not_found"


class UserNotFound(NotFound):
    default_detail = "User not found."
    default_code = "user_not_found"


class ListingNotFound(NotFound):
    default_detail = "Listing not found."
    default_code = "listing_not_found"


class ConversationAccessDenied(PermissionDenied):
    default_detail = "You are not a participant in this conversation."
    default_code = "not_a_participant"


class DependencyUnavailable(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Message storage is temporarily unavailable."
    default_code = "dependency_unavailable"


class WebSocketMessageError(Exception):
    """Exception raised when an incoming WebSocket frame cannot be processed."""
    pass


class MessageDeliveryError(Exception):
    """Exception raised when a message cannot be pushed to a connection."""
    pass


class LegacyMigrationError(Exception):
    """Exception raised when a group of legacy messages cannot be migrated."""
    pass


def messaging_exception_handler(exc, context):
    """
    DRF exception handler for the messaging API.

    DRF already renders its own exceptions; on top of that, model validation
    errors become 400, database errors 503, and anything else a logged 500
    with a generic body.
    """
    if isinstance(exc, DjangoValidationError):
        exc = ValidationError(detail={"detail": " ".join(exc.messages)})
    elif isinstance(exc, DatabaseError):
        logger.error(f"Database error in {_view_name(context)}: {str(exc)}", exc_info=exc)
        exc = DependencyUnavailable()

    response = exception_handler(exc, context)
    if response is not None:
        return response

    logger.error(f"Unhandled error in {_view_name(context)}: {str(exc)}", exc_info=exc)
    return Response(
        {"detail": "Internal server error."},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _view_name(context):
    view = context.get("view") if context else None
    return view.__class__.__name__ if view is not None else "unknown view"
