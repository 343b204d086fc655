# messaging/signals.py
import logging

from .services.connection_startup import MessagingStartupHandler

logger = logging.getLogger(__name__)


def run_legacy_migration(sender, using="default", **kwargs):
    """Convert legacy messages once the messaging tables are in place."""
    MessagingStartupHandler.initialize(using=using)
