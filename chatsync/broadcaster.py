"""
In-memory fan-out of realtime events to connected UI clients.

Delivery is best-effort and at-most-once: every subscriber owns a bounded
queue, a full queue drops the event for that subscriber, and nothing is
replayed to clients that connect later. The message store stays the source
of truth; clients catch up by fetching history on load.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from chatsync.metrics import set_realtime_subscribers

logger = logging.getLogger(__name__)

MESSAGE_INSERTED = "messageInserted"
MESSAGE_REPLACED = "messageReplaced"
STATUS_CHANGED = "statusChanged"
CONVERSATION_TOUCHED = "conversationTouched"

EVENT_TYPES = {MESSAGE_INSERTED, MESSAGE_REPLACED, STATUS_CHANGED, CONVERSATION_TOUCHED}

DEFAULT_QUEUE_SIZE = 100


@dataclass(eq=False)
class Subscription:
    """A subscriber's queue plus its optional conversation filter."""
    queue: asyncio.Queue
    connection_id: Optional[int] = None
    counterparty_number: Optional[str] = None
    dropped: int = field(default=0)

    def set_filter(self, connection_id: Optional[int], counterparty_number: Optional[str] = None) -> None:
        self.connection_id = connection_id
        self.counterparty_number = counterparty_number if connection_id is not None else None

    def wants(self, event_type: str, connection_id: int, counterparty_number: Optional[str]) -> bool:
        if self.connection_id is None:
            return True
        if self.connection_id != connection_id:
            return False
        if self.counterparty_number is None or event_type == CONVERSATION_TOUCHED:
            return True
        return self.counterparty_number == counterparty_number


class RealtimeBroadcaster:
    """Simple in-memory pub/sub for broadcasting events within a single process."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscribers: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        connection_id: Optional[int] = None,
        counterparty_number: Optional[str] = None,
    ) -> Subscription:
        """Register a subscriber and return its subscription."""
        subscription = Subscription(queue=asyncio.Queue(maxsize=self._queue_size))
        subscription.set_filter(connection_id, counterparty_number)
        self._subscribers.add(subscription)
        set_realtime_subscribers(len(self._subscribers))
        logger.debug(f"Subscriber added. Total: {len(self._subscribers)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)
        set_realtime_subscribers(len(self._subscribers))
        logger.debug(f"Subscriber removed. Remaining: {len(self._subscribers)}")

    def publish(
        self,
        event_type: str,
        connection_id: int,
        counterparty_number: Optional[str],
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Push a ``{type, data}`` envelope to every interested subscriber.

        Returns the number of subscribers the event was queued for.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown realtime event type: {event_type}")

        payload = dict(data or {})
        payload["connectionId"] = connection_id
        payload["counterpartyNumber"] = counterparty_number
        envelope = {"type": event_type, "data": payload}

        delivered = 0
        for subscription in list(self._subscribers):
            if not subscription.wants(event_type, connection_id, counterparty_number):
                continue
            try:
                subscription.queue.put_nowait(envelope)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(f"Queue full for subscriber, dropping {event_type} event")

        logger.debug(f"Published {event_type} for connection {connection_id} to {delivered} subscribers")
        return delivered
