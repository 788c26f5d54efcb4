"""
The write path shared by every producer.

Poll sweeps and webhook events call ``ingest``: under the conversation lock
the conversation is loaded, the merge engine decides, the store is written
and the outcome is broadcast. The send path calls ``record_outbound`` and
``apply_status`` instead, since its own message is authoritative when sent.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from chatsync.broadcaster import (
    MESSAGE_INSERTED,
    MESSAGE_REPLACED,
    STATUS_CHANGED,
    RealtimeBroadcaster,
)
from chatsync.domain import MessageRecord, MessageStatus
from chatsync.merge import (
    DEFAULT_WINDOW_SECONDS,
    REASON_DUPLICATE_ID,
    ConversationLocks,
    Decision,
    Outcome,
    reconcile,
)
from chatsync.metrics import record_merge_decision
from chatsync.storage import MessageStore

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    decision: Decision
    message: Optional[MessageRecord] = None

    @property
    def written(self) -> bool:
        return self.message is not None and self.decision.is_write


class MessagePipeline:

    def __init__(
        self,
        store: MessageStore,
        broadcaster: RealtimeBroadcaster,
        locks: Optional[ConversationLocks] = None,
        window: int = DEFAULT_WINDOW_SECONDS,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.locks = locks or ConversationLocks()
        self._window = window

    async def ingest(self, candidate: MessageRecord, source: str) -> IngestResult:
        """
        Reconcile ``candidate`` against its conversation and persist the outcome.

        Store errors other than a duplicate gateway id propagate to the caller.
        """
        async with self.locks.hold(candidate.connection_id, candidate.counterparty_number):
            known = self.store.list_by_conversation(candidate.connection_id, candidate.counterparty_number)
            decision = reconcile(candidate, known, self._window)

            if decision.outcome == Outcome.INSERT:
                try:
                    stored = self.store.append(candidate.copy(temp_id=None))
                except IntegrityError:
                    # Unique (connection_id, message_id) caught a race the lock could not see
                    logger.debug(f"Duplicate gateway id on write: {candidate.message_id}")
                    decision = Decision.ignore(REASON_DUPLICATE_ID)
                    record_merge_decision(source, decision.outcome.value)
                    return IngestResult(decision)
                self.broadcaster.publish(
                    MESSAGE_INSERTED, stored.connection_id, stored.counterparty_number, stored.to_dict()
                )
                result = IngestResult(decision, stored)

            elif decision.outcome == Outcome.REPLACE:
                replaced = self.store.replace(candidate.connection_id, candidate.temp_id, candidate)
                if replaced is None:
                    decision = Decision.ignore("placeholder-missing")
                    result = IngestResult(decision)
                else:
                    self.broadcaster.publish(
                        MESSAGE_REPLACED, replaced.connection_id, replaced.counterparty_number, replaced.to_dict()
                    )
                    result = IngestResult(decision, replaced)

            else:
                logger.debug(
                    f"Ignored {source} message for {candidate.counterparty_number}: {decision.reason}"
                )
                result = IngestResult(decision)

        record_merge_decision(source, decision.outcome.value)
        return result

    async def record_outbound(self, record: MessageRecord, temp_id: Optional[str] = None) -> MessageRecord:
        """Persist a locally issued message as-is and announce it."""
        async with self.locks.hold(record.connection_id, record.counterparty_number):
            stored = self.store.append(record, temp_id=temp_id)
        self.broadcaster.publish(MESSAGE_INSERTED, stored.connection_id, stored.counterparty_number, stored.to_dict())
        return stored

    async def apply_status(
        self,
        message: MessageRecord,
        status: MessageStatus,
        message_id: Optional[str] = None,
    ) -> Optional[MessageRecord]:
        """
        Move ``message`` forward to ``status``; announce it if anything changed.
        """
        async with self.locks.hold(message.connection_id, message.counterparty_number):
            updated = self.store.update_status(message.id, status, message_id=message_id)
        if updated is not None:
            self.broadcaster.publish(
                STATUS_CHANGED, updated.connection_id, updated.counterparty_number, updated.to_dict()
            )
        return updated
