# messaging/apps.py
from django.apps import AppConfig
from django.db.models.signals import post_migrate


class MessagingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "messaging"

    def ready(self):
        from .signals import run_legacy_migration

        post_migrate.connect(
            run_legacy_migration, sender=self, dispatch_uid="messaging_legacy_migration"
        )
