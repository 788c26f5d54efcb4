"""
Deduplication and merge engine.

One decision function, ``reconcile``, is shared by every producer (poll
synchronizer, webhook ingest) and by ``merge_views``, the list merge that
UI clients mirror. Decision order:

1. same store id or gateway message_id -> IGNORE (duplicate-id)
2. same temp_id as a placeholder       -> REPLACE (placeholder's id)
3. same content fingerprint            -> IGNORE (duplicate-content)
4. otherwise                           -> INSERT

The fingerprint is (body, counterparty, direction, floor(timestamp)) and two
fingerprints match when their second buckets differ by at most ``window``
seconds. Identical short texts inside the window are therefore collapsed
into one message; this is an accepted limitation.
"""

import asyncio
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from chatsync.domain import MessageRecord, can_transition

DEFAULT_WINDOW_SECONDS = 1

REASON_DUPLICATE_ID = "duplicate-id"
REASON_DUPLICATE_CONTENT = "duplicate-content"


class Outcome(str, Enum):
    INSERT = "insert"
    REPLACE = "replace"
    IGNORE = "ignore"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    existing_id: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def insert(cls) -> "Decision":
        return cls(Outcome.INSERT)

    @classmethod
    def replace(cls, existing_id: Optional[int]) -> "Decision":
        return cls(Outcome.REPLACE, existing_id=existing_id)

    @classmethod
    def ignore(cls, reason: str, existing_id: Optional[int] = None) -> "Decision":
        return cls(Outcome.IGNORE, existing_id=existing_id, reason=reason)

    @property
    def is_write(self) -> bool:
        return self.outcome in (Outcome.INSERT, Outcome.REPLACE)


def time_bucket(message: MessageRecord) -> int:
    return math.floor(message.timestamp.timestamp())


def fingerprint(message: MessageRecord) -> Tuple[str, str, str, int]:
    return (
        message.body.strip(),
        message.counterparty_number,
        message.direction.value,
        time_bucket(message),
    )


def fingerprints_match(
    left: MessageRecord,
    right: MessageRecord,
    window: int = DEFAULT_WINDOW_SECONDS,
) -> bool:
    body_a, number_a, direction_a, bucket_a = fingerprint(left)
    body_b, number_b, direction_b, bucket_b = fingerprint(right)
    return (
        body_a == body_b
        and number_a == number_b
        and direction_a == direction_b
        and abs(bucket_a - bucket_b) <= window
    )


def same_message(left: MessageRecord, right: MessageRecord) -> bool:
    """True when both records carry the same store id or the same gateway id."""
    if left.id is not None and left.id == right.id:
        return True
    return bool(left.message_id) and left.message_id == right.message_id


def reconcile(
    candidate: MessageRecord,
    known_messages: Iterable[MessageRecord],
    window: int = DEFAULT_WINDOW_SECONDS,
) -> Decision:
    """
    Decide whether ``candidate`` is new, a duplicate, or the authoritative
    replacement of an optimistic placeholder.

    Only messages of the candidate's own conversation are consulted; the
    result does not depend on the order of ``known_messages``.
    """
    known = [m for m in known_messages if m.conversation_key == candidate.conversation_key]

    if candidate.id is not None:
        for message in known:
            if message.id == candidate.id:
                return Decision.ignore(REASON_DUPLICATE_ID, existing_id=message.id)

    if candidate.message_id:
        for message in known:
            if message.message_id and message.message_id == candidate.message_id:
                return Decision.ignore(REASON_DUPLICATE_ID, existing_id=message.id)

    if candidate.temp_id:
        for message in known:
            if message.temp_id and message.temp_id == candidate.temp_id:
                return Decision.replace(message.id)

    for message in known:
        if fingerprints_match(candidate, message, window):
            return Decision.ignore(REASON_DUPLICATE_CONTENT, existing_id=message.id)

    return Decision.insert()


def _sort_key(message: MessageRecord):
    # Unsaved placeholders (id None) sort after saved messages with the same timestamp
    return (message.timestamp, message.id is None, message.id or 0)


def _upgrade(current: MessageRecord, event: MessageRecord) -> MessageRecord:
    changes = {}
    if can_transition(current.status, event.status):
        changes["status"] = event.status
    if event.message_id and not current.message_id:
        changes["message_id"] = event.message_id
    if event.id is not None and current.id is None:
        changes["id"] = event.id
    return current.copy(**changes) if changes else current


def merge_views(
    history: Iterable[MessageRecord],
    incoming: Iterable[MessageRecord],
    window: int = DEFAULT_WINDOW_SECONDS,
) -> List[MessageRecord]:
    """
    Merge broadcast events into a fetched conversation history.

    Same three-tier rule as ``reconcile``. A placeholder is swapped in place
    for its authoritative counterpart. A duplicate-id event, matched by store
    id or gateway id, upgrades the existing entry's status and fills in the
    gateway id it did not know yet. The result is sorted by timestamp, never
    by arrival order.
    """
    merged: List[MessageRecord] = list(history)
    for item in incoming:
        decision = reconcile(item, merged, window)
        if decision.outcome == Outcome.INSERT:
            merged.append(item)
        elif decision.outcome == Outcome.REPLACE:
            for index, message in enumerate(merged):
                if message.conversation_key == item.conversation_key and message.temp_id == item.temp_id:
                    merged[index] = item.copy(id=item.id if item.id is not None else message.id)
                    break
        elif decision.reason == REASON_DUPLICATE_ID:
            for index, message in enumerate(merged):
                if message.conversation_key == item.conversation_key and same_message(message, item):
                    merged[index] = _upgrade(message, item)
                    break
    merged.sort(key=_sort_key)
    return merged


class ConversationLocks:
    """
    One asyncio.Lock per (connection_id, counterparty_number).

    Held around "load conversation, reconcile, write" so two producers
    cannot both decide INSERT for the same event. Different conversations
    never wait on each other. A lock is dropped once its last holder or
    waiter leaves, so the map only contains conversations in use.
    """

    def __init__(self):
        self._locks: Dict[Tuple[int, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[int, str], int] = {}

    @asynccontextmanager
    async def hold(self, connection_id: int, counterparty_number: str) -> AsyncIterator[None]:
        key = (connection_id, counterparty_number)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
