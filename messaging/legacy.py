# messaging/legacy.py
"""
The two shapes a stored message has had.

Before conversations existed a message row addressed its receiver directly
(sender, receiver, listing). Rows of that shape only ever exist in the
legacy table; they are read by the legacy migration and converted with
``to_conversation_message``. Nothing else in the app handles them.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple, Union


class MessageShape(enum.Enum):
    LEGACY = "legacy"
    CONVERSATION = "conversation"


@dataclass(frozen=True)
class LegacyMessageRecord:
    id: int
    sender_id: int
    receiver_id: int
    listing_id: Optional[int]
    content: str
    created_at: Optional[datetime]
    read: bool
    shape: MessageShape = MessageShape.LEGACY

    @property
    def pair_key(self) -> "PairKey":
        return pair_key(self.sender_id, self.receiver_id, self.listing_id)


@dataclass(frozen=True)
class ConversationMessageRecord:
    conversation_id: int
    sender_id: int
    content: str
    created_at: Optional[datetime]
    read_at: Optional[datetime]
    has_attachment: bool = False
    attachment_url: Optional[str] = None
    shape: MessageShape = MessageShape.CONVERSATION


MessageRecord = Union[LegacyMessageRecord, ConversationMessageRecord]

# (lower user id, higher user id, listing id or None)
PairKey = Tuple[int, int, Optional[int]]


def pair_key(user_a: int, user_b: int, listing_id: Optional[int]) -> PairKey:
    """Canonical key for an unordered pair of users within a listing context."""
    low, high = sorted((int(user_a), int(user_b)))
    return (low, high, listing_id)


def classify_row(row: Mapping[str, Any]) -> MessageShape:
    """
    Tell which shape a raw message row has. ``receiver_id`` marks the legacy
    shape, ``conversation_id`` the current one.
    """
    if "receiver_id" in row:
        return MessageShape.LEGACY
    if "conversation_id" in row:
        return MessageShape.CONVERSATION
    raise ValueError(f"Unrecognised message row with columns {sorted(row)}")


def record_from_row(row: Mapping[str, Any]) -> MessageRecord:
    shape = classify_row(row)
    if shape is MessageShape.LEGACY:
        listing_id = row.get("listing_id")
        return LegacyMessageRecord(
            id=int(row["id"]),
            sender_id=int(row["sender_id"]),
            receiver_id=int(row["receiver_id"]),
            listing_id=int(listing_id) if listing_id is not None else None,
            content=row.get("content") or "",
            created_at=row.get("created_at"),
            read=bool(row.get("read")),
        )
    return ConversationMessageRecord(
        conversation_id=int(row["conversation_id"]),
        sender_id=int(row["sender_id"]),
        content=row.get("content") or "",
        created_at=row.get("created_at"),
        read_at=row.get("read_at"),
        has_attachment=bool(row.get("has_attachment", False)),
        attachment_url=row.get("attachment_url"),
    )


def to_conversation_message(
    record: LegacyMessageRecord, conversation_id: int, read_at: datetime
) -> ConversationMessageRecord:
    """
    Convert a legacy record into the conversation shape.

    The legacy table only kept a boolean ``read`` flag, so a read message gets
    ``read_at`` (usually the migration time) rather than the real read time.
    """
    if record.shape is not MessageShape.LEGACY:
        raise TypeError("Only legacy records can be converted")
    return ConversationMessageRecord(
        conversation_id=conversation_id,
        sender_id=record.sender_id,
        content=record.content,
        created_at=record.created_at,
        read_at=read_at if record.read else None,
    )
