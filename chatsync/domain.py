"""
Domain types shared by the store, the merge engine and the producers.

These are plain dataclasses, independent of the ORM (see models.py) and of
the HTTP schemas (see schemas.py).
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Direction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    WAITING_QR = "waiting_qr"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# Allowed forward moves; anything else is ignored
_STATUS_TRANSITIONS = {
    MessageStatus.PENDING: {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.FAILED},
    MessageStatus.SENT: {MessageStatus.DELIVERED},
    MessageStatus.DELIVERED: set(),
    MessageStatus.FAILED: set(),
}


def can_transition(current: MessageStatus, new: MessageStatus) -> bool:
    """Return True if a message may move from ``current`` to ``new``."""
    return new in _STATUS_TRANSITIONS.get(MessageStatus(current), set())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class MessageRecord:
    """
    A message as seen by the merge engine.

    ``id`` is the store's primary key (None until persisted).
    ``message_id`` is the gateway identifier, when one is known.
    ``temp_id`` is only populated for optimistic placeholders that are still
    awaiting reconciliation; it never reaches a table column.
    """
    connection_id: int
    counterparty_number: str
    direction: Direction
    body: str
    timestamp: datetime
    status: MessageStatus = MessageStatus.PENDING
    id: Optional[int] = None
    message_id: Optional[str] = None
    temp_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.direction = Direction(self.direction)
        self.status = MessageStatus(self.status)
        self.timestamp = as_utc(self.timestamp)

    @property
    def conversation_key(self) -> tuple:
        return (self.connection_id, self.counterparty_number)

    def copy(self, **changes: Any) -> "MessageRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Camel-cased payload used for realtime envelopes."""
        return {
            "id": self.id,
            "messageId": self.message_id,
            "tempId": self.temp_id,
            "connectionId": self.connection_id,
            "counterpartyNumber": self.counterparty_number,
            "direction": self.direction.value,
            "body": self.body,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Conversation:
    """Derived projection of one (connection, counterparty) pair."""
    connection_id: int
    counterparty_number: str
    last_message: str
    last_message_time: datetime
    message_count: int = 0
    unread_count: int = 0


@dataclass
class ConnectionInfo:
    id: int
    name: str
    instance_name: str
    status: ConnectionStatus
    description: Optional[str] = None
    phone_number: Optional[str] = None
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED
