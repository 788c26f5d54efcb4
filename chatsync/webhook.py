"""
Webhook ingest: turns gateway events into pipeline calls.

Events are never rejected for their content. Unknown connections, unknown
event types and unusable messages are acknowledged and counted as ignored;
only store errors surface, and those are logged per message so one bad row
does not drop the rest of the batch.
"""

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from chatsync.domain import ConnectionInfo, utcnow
from chatsync.merge import Outcome
from chatsync.normalize import (
    candidate_from_gateway_message,
    get_nested,
    iter_event_messages,
    map_gateway_status,
    normalize_event_name,
)
from chatsync.pipeline import MessagePipeline

logger = logging.getLogger(__name__)

EVENT_MESSAGES_UPSERT = "messages.upsert"
EVENT_SEND_MESSAGE = "send.message"
EVENT_MESSAGES_UPDATE = "messages.update"

MESSAGE_EVENTS = {EVENT_MESSAGES_UPSERT, EVENT_SEND_MESSAGE}

_INSTANCE_PATTERN = re.compile(r"^whatsapp_(\d+)_")

RESULT_PROCESSED = "processed"
RESULT_IGNORED_EVENT = "ignored_event"
RESULT_UNKNOWN_CONNECTION = "unknown_connection"


@dataclass
class WebhookSummary:
    processed: int = 0
    inserted: int = 0
    replaced: int = 0
    updated: int = 0
    ignored: int = 0
    result: str = RESULT_PROCESSED

    def to_response(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("result")
        payload["status"] = "ok"
        return payload


class WebhookIngest:

    def __init__(self, store, pipeline: MessagePipeline):
        self._store = store
        self._pipeline = pipeline

    def resolve_connection(
        self,
        instance: Optional[str],
        connection_id: Optional[int] = None,
    ) -> Optional[ConnectionInfo]:
        """
        Find the connection an event belongs to: by instance name, then by
        the whatsapp_<id>_<name> naming convention, then by explicit id.
        """
        if instance:
            connection = self._store.get_connection_by_instance(instance)
            if connection is not None:
                return connection
            match = _INSTANCE_PATTERN.match(instance)
            if match:
                connection = self._store.get_connection(int(match.group(1)))
                if connection is not None:
                    return connection
        if connection_id is not None:
            return self._store.get_connection(connection_id)
        return None

    async def handle(self, envelope: Any, connection_id: Optional[int] = None) -> WebhookSummary:
        summary = WebhookSummary()
        if not isinstance(envelope, dict):
            logger.warning(f"Ignoring webhook payload of type {type(envelope).__name__}")
            summary.result = RESULT_IGNORED_EVENT
            return summary

        event = normalize_event_name(envelope.get("event"))
        instance = envelope.get("instance")
        if isinstance(instance, dict):
            instance = instance.get("instanceName") or instance.get("name")
        instance = str(instance) if instance else None

        if event not in MESSAGE_EVENTS and event != EVENT_MESSAGES_UPDATE:
            logger.info(f"Ignoring webhook event '{event or 'unknown'}'")
            summary.result = RESULT_IGNORED_EVENT
            return summary

        connection = self.resolve_connection(instance, connection_id)
        if connection is None:
            logger.warning(f"Webhook for unknown connection (instance={instance}, connection_id={connection_id})")
            summary.result = RESULT_UNKNOWN_CONNECTION
            return summary

        messages = iter_event_messages(envelope.get("data"))
        logger.info(f"Webhook {event} for connection {connection.id}: {len(messages)} items")

        if event == EVENT_MESSAGES_UPDATE:
            for item in messages:
                await self._apply_update(connection, item, summary)
        else:
            for item in messages:
                await self._ingest_message(connection, item, summary)

        if summary.inserted or summary.replaced:
            try:
                self._store.touch_connection(connection.id)
            except SQLAlchemyError as exc:
                logger.error(f"Could not update activity of connection {connection.id}: {exc}")
        return summary

    async def _ingest_message(self, connection: ConnectionInfo, item: Dict[str, Any], summary: WebhookSummary) -> None:
        summary.processed += 1
        candidate = candidate_from_gateway_message(connection.id, item, now=utcnow())
        if candidate is None:
            summary.ignored += 1
            return
        try:
            result = await self._pipeline.ingest(candidate, source="webhook")
        except SQLAlchemyError as exc:
            logger.error(f"Store error while ingesting webhook message {candidate.message_id}: {exc}")
            summary.ignored += 1
            return

        if result.decision.outcome == Outcome.INSERT and result.written:
            summary.inserted += 1
        elif result.decision.outcome == Outcome.REPLACE and result.written:
            summary.replaced += 1
        else:
            summary.ignored += 1

    async def _apply_update(self, connection: ConnectionInfo, item: Dict[str, Any], summary: WebhookSummary) -> None:
        summary.processed += 1
        message_id = None
        for path in (("keyId",), ("key", "id"), ("messageId",), ("id",)):
            value = get_nested(item, path)
            if isinstance(value, (str, int)) and str(value).strip():
                message_id = str(value).strip()
                break

        raw_status = item.get("status")
        if raw_status is None:
            raw_status = get_nested(item, ("update", "status"))
        if raw_status is None:
            raw_status = item.get("ack")
        status = map_gateway_status(raw_status)

        if not message_id or status is None:
            logger.debug(f"Ignoring status update without id or known status: {raw_status!r}")
            summary.ignored += 1
            return

        try:
            message = self._store.find_by_message_id(connection.id, message_id)
            if message is None:
                logger.debug(f"Status update for unknown message {message_id}")
                summary.ignored += 1
                return
            updated = await self._pipeline.apply_status(message, status)
        except SQLAlchemyError as exc:
            logger.error(f"Store error while applying status to {message_id}: {exc}")
            summary.ignored += 1
            return

        if updated is None:
            summary.ignored += 1
        else:
            summary.updated += 1
