# messaging/services/connection_startup.py
import logging

from django.conf import settings

logger = logging.getLogger(__name__)


class MessagingStartupHandler:
    """
    Startup work for the messaging core, run after migrations are applied.
    Converts any legacy sender/receiver messages into conversations.
    """

    @staticmethod
    def initialize(using="default"):
        """Run the legacy migration; failures are logged, never raised."""
        if not getattr(settings, "MESSAGING_MIGRATE_ON_STARTUP", True):
            logger.debug("Legacy message migration disabled at startup")
            return None

        try:
            from .legacy_migration import LegacyMessageMigrator

            migrator = LegacyMessageMigrator(using=using)
            succeeded = migrator.run()
        except Exception as e:
            logger.error(f"Failed to run legacy message migration: {str(e)}", exc_info=True)
            return False

        if not succeeded:
            logger.error("Legacy message migration did not complete; continuing with existing data")
        return succeeded
