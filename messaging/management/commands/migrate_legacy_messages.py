# messaging/management/commands/migrate_legacy_messages.py
from django.core.management.base import BaseCommand, CommandError
from django.db import DEFAULT_DB_ALIAS

from messaging.services.legacy_migration import LegacyMessageMigrator


class Command(BaseCommand):
    help = "Convert legacy sender/receiver messages into conversations"

    def add_arguments(self, parser):
        parser.add_argument(
            "--database",
            default=DEFAULT_DB_ALIAS,
            help="Database alias to migrate (default: %(default)s)",
        )

    def handle(self, *args, **options):
        migrator = LegacyMessageMigrator(using=options["database"])
        succeeded = migrator.run()
        report = migrator.report

        if not succeeded:
            raise CommandError("Legacy message migration failed, see the log for details")

        if report.source_table is None:
            self.stdout.write(self.style.SUCCESS("No legacy messages to migrate"))
            return

        self.stdout.write(
            self.style.SUCCESS(
                f"Migrated {report.messages_migrated} messages into "
                f"{report.groups_migrated} conversations; "
                f"legacy table archived as {report.archive_table}"
            )
        )
        if report.groups_failed or report.rows_skipped:
            self.stdout.write(
                self.style.WARNING(
                    f"{report.groups_failed} conversation(s) failed, "
                    f"{report.rows_skipped} row(s) skipped"
                )
            )
            for failure in report.failures:
                self.stdout.write(f"  {failure}")
