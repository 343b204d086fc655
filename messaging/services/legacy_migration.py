# messaging/services/legacy_migration.py
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Dict, List, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DEFAULT_DB_ALIAS, connections, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from messaging.exceptions import LegacyMigrationError
from messaging.legacy import (
    LegacyMessageRecord,
    MessageShape,
    PairKey,
    record_from_row,
    to_conversation_message,
)
from listings.models import Listing
from messaging.models import Conversation, ConversationParticipant, Message

logger = logging.getLogger(__name__)

FLAT_MESSAGES_TABLE = "messages"
LEGACY_MARKER_COLUMN = "receiver_id"
TARGET_TABLES = {
    "conversations": {"id", "listing_id", "origin_listing_id", "created_at", "updated_at"},
    "conversation_participants": {"id", "conversation_id", "user_id", "last_read_at"},
    "messages": {"id", "conversation_id", "sender_id", "content", "created_at", "read_at"},
}


def _legacy_table_name():
    return getattr(settings, "MESSAGING_LEGACY_TABLE", "legacy_messages")


def _archive_table_name():
    return getattr(settings, "MESSAGING_LEGACY_ARCHIVE_TABLE", "legacy_messages_archive")


def _table_columns(connection, table_name):
    with connection.cursor() as cursor:
        if table_name not in connection.introspection.table_names(cursor):
            return None
        return {
            column.name
            for column in connection.introspection.get_table_description(
                cursor, table_name
            )
        }


def _rename_table(connection, old_name, new_name):
    quote = connection.ops.quote_name
    with connection.cursor() as cursor:
        cursor.execute(f"ALTER TABLE {quote(old_name)} RENAME TO {quote(new_name)}")


def _free_table_name(connection, base_name):
    """``base_name`` if unused, otherwise ``base_name`` with a timestamp suffix."""
    with connection.cursor() as cursor:
        existing = set(connection.introspection.table_names(cursor))
    if base_name not in existing:
        return base_name
    return f"{base_name}_{timezone.now().strftime('%Y%m%d%H%M%S')}"


def stash_legacy_messages_table(connection) -> Optional[str]:
    """
    Rename a flat sender/receiver ``messages`` table to the legacy table name so
    the conversation-shaped ``messages`` table can be created.

    Returns the new name, or None when there was nothing to move.
    """
    columns = _table_columns(connection, FLAT_MESSAGES_TABLE)
    if columns is None:
        return None
    if LEGACY_MARKER_COLUMN not in columns or "conversation_id" in columns:
        return None

    target = _free_table_name(connection, _legacy_table_name())
    _rename_table(connection, FLAT_MESSAGES_TABLE, target)
    logger.info(f"Moved flat messages table to {target} ahead of conversation migration")
    return target


@dataclass
class MigrationReport:
    source_table: Optional[str] = None
    archive_table: Optional[str] = None
    groups_total: int = 0
    groups_migrated: int = 0
    groups_failed: int = 0
    messages_migrated: int = 0
    rows_skipped: int = 0
    failures: List[str] = field(default_factory=list)


class LegacyMessageMigrator:
    """
    One-time transformation of flat sender/receiver messages into
    conversations, participants and conversation messages.

    Re-running is safe: once the legacy table has been archived (or when it
    is missing or empty) ``run`` does nothing and reports success.
    """

    def __init__(self, using=DEFAULT_DB_ALIAS):
        self.using = using
        self.connection = connections[using]
        self.report = MigrationReport()

    def run(self) -> bool:
        """
        Migrate any legacy messages.

        Returns:
            bool: False only when the target schema could not be prepared or
            the run aborted unexpectedly. Individual groups that fail are
            logged and counted in ``self.report`` without failing the run.
        """
        self.report = MigrationReport()
        try:
            stash_legacy_messages_table(self.connection)

            if not self._ensure_target_tables():
                return False

            source = self._find_source_table()
            if source is None:
                logger.info("No legacy messages to migrate")
                return True

            self.report.source_table = source
            groups = self._group_records(self._load_records(source))
            self.report.groups_total = len(groups)
            logger.info(
                f"Migrating {sum(len(g) for g in groups.values())} legacy messages "
                f"in {len(groups)} conversations from {source}"
            )

            migrated_at = timezone.now()
            for key, records in groups.items():
                try:
                    count = self._migrate_group(key, records, migrated_at)
                except Exception as e:
                    self.report.groups_failed += 1
                    self.report.failures.append(f"{key}: {e}")
                    logger.error(
                        f"Failed to migrate legacy conversation {key}: {str(e)}",
                        exc_info=True,
                    )
                    continue
                self.report.groups_migrated += 1
                self.report.messages_migrated += count

            self.report.archive_table = _free_table_name(
                self.connection, _archive_table_name()
            )
            _rename_table(self.connection, source, self.report.archive_table)
            logger.info(
                f"Legacy migration finished: {self.report.groups_migrated} conversations, "
                f"{self.report.messages_migrated} messages, "
                f"{self.report.groups_failed} failed groups; "
                f"legacy table archived as {self.report.archive_table}"
            )
            return True
        except Exception as e:
            logger.error(f"Legacy message migration aborted: {str(e)}", exc_info=True)
            return False

    def _ensure_target_tables(self):
        if self._target_tables_ready():
            return True
        logger.info("Conversation tables missing, applying messaging migrations")
        try:
            call_command("migrate", "messaging", database=self.using, verbosity=0)
        except Exception as e:
            logger.error(f"Could not create conversation tables: {str(e)}", exc_info=True)
            return False
        return self._target_tables_ready()

    def _target_tables_ready(self):
        for table_name, expected in TARGET_TABLES.items():
            columns = _table_columns(self.connection, table_name)
            if columns is None or not expected.issubset(columns):
                return False
        return True

    def _find_source_table(self):
        table_name = _legacy_table_name()
        columns = _table_columns(self.connection, table_name)
        if columns is None or LEGACY_MARKER_COLUMN not in columns:
            return None
        quote = self.connection.ops.quote_name
        with self.connection.cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM {quote(table_name)}")
            (row_count,) = cursor.fetchone()
        if not row_count:
            return None
        return table_name

    def _load_records(self, table_name) -> List[LegacyMessageRecord]:
        quote = self.connection.ops.quote_name
        columns = ["id", "sender_id", "receiver_id", "listing_id", "content", "created_at", "read"]
        with self.connection.cursor() as cursor:
            cursor.execute(
                f"SELECT {', '.join(quote(c) for c in columns)} FROM {quote(table_name)}"
            )
            names = [col[0] for col in cursor.description]
            rows = [dict(zip(names, values)) for values in cursor.fetchall()]

        records = []
        for row in rows:
            row["created_at"] = self._coerce_timestamp(row.get("created_at"))
            row["read"] = self._coerce_flag(row.get("read"))
            try:
                record = record_from_row(row)
            except (KeyError, TypeError, ValueError) as e:
                self.report.rows_skipped += 1
                logger.warning(f"Skipping malformed legacy message {row.get('id')}: {str(e)}")
                continue
            if record.shape is not MessageShape.LEGACY:
                self.report.rows_skipped += 1
                continue
            records.append(record)
        return records

    @staticmethod
    def _coerce_timestamp(value):
        if isinstance(value, str):
            value = parse_datetime(value)
        if isinstance(value, datetime) and timezone.is_naive(value):
            value = timezone.make_aware(value, dt_timezone.utc)
        return value

    @staticmethod
    def _coerce_flag(value):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "t", "true", "yes")
        return bool(value)

    @staticmethod
    def _group_records(records) -> Dict[PairKey, List[LegacyMessageRecord]]:
        """Group by unordered user pair and listing, oldest message first."""
        epoch = datetime.min.replace(tzinfo=dt_timezone.utc)
        ordered = sorted(records, key=lambda r: (r.created_at or epoch, r.id))
        groups = OrderedDict()
        for record in ordered:
            groups.setdefault(record.pair_key, []).append(record)
        return groups

    def _migrate_group(self, key, records, migrated_at):
        user_a, user_b, listing_id = key
        if user_a == user_b:
            raise LegacyMigrationError(f"user {user_a} messaged themselves")

        User = get_user_model()
        found = set(
            User.objects.using(self.using)
            .filter(pk__in=[user_a, user_b])
            .values_list("pk", flat=True)
        )
        missing = {user_a, user_b} - found
        if missing:
            raise LegacyMigrationError(f"unknown users {sorted(missing)}")

        # Rows may name listings deleted before the migration ran
        existing_listing_id = None
        if (
            listing_id is not None
            and Listing.objects.using(self.using).filter(pk=listing_id).exists()
        ):
            existing_listing_id = listing_id

        with transaction.atomic(using=self.using):
            first_at = records[0].created_at or migrated_at
            last_at = records[-1].created_at or migrated_at
            conversation = Conversation.objects.using(self.using).create(
                listing_id=existing_listing_id,
                origin_listing_id=listing_id,
                created_at=first_at,
                updated_at=max(first_at, last_at),
            )
            ConversationParticipant.objects.using(self.using).bulk_create(
                [
                    ConversationParticipant(
                        conversation=conversation, user_id=user_id, last_read_at=None
                    )
                    for user_id in (user_a, user_b)
                ]
            )

            messages = []
            for record in records:
                if not record.content.strip():
                    self.report.rows_skipped += 1
                    logger.warning(f"Skipping empty legacy message {record.id}")
                    continue
                converted = to_conversation_message(record, conversation.pk, migrated_at)
                messages.append(
                    Message(
                        conversation=conversation,
                        sender_id=converted.sender_id,
                        content=converted.content,
                        created_at=converted.created_at or migrated_at,
                        read_at=converted.read_at,
                    )
                )
            Message.objects.using(self.using).bulk_create(messages)

        logger.debug(
            f"Migrated {len(messages)} legacy messages into conversation {conversation.pk}"
        )
        return len(messages)


def migrate_legacy_messages(using=DEFAULT_DB_ALIAS) -> bool:
    """Run the legacy migration; never raises."""
    return LegacyMessageMigrator(using=using).run()
