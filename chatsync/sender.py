"""
Outbound send path.

A send is persisted and broadcast as ``pending`` before the gateway is
called, so the UI shows it immediately. The gateway call is bounded by a
timeout and never retried; the outcome moves the message to ``sent`` (adopting
the gateway id) or ``failed``.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chatsync.domain import Direction, MessageRecord, MessageStatus, utcnow
from chatsync.gateway import EvolutionClient, GatewayError
from chatsync.metrics import record_outbound
from chatsync.normalize import get_nested
from chatsync.pipeline import MessagePipeline
from chatsync.utils import jid_to_number

logger = logging.getLogger(__name__)


class SendError(Exception):
    """Base class for send requests that cannot be attempted."""


class UnknownConnectionError(SendError):
    pass


class ConnectionNotReadyError(SendError):
    pass


class InvalidRecipientError(SendError):
    pass


def gateway_message_id(response: Dict[str, Any]) -> Optional[str]:
    for path in (("key", "id"), ("messageId",), ("id",), ("data", "key", "id")):
        value = get_nested(response, path)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


class OutboundSender:

    def __init__(
        self,
        store,
        pipeline: MessagePipeline,
        gateway: EvolutionClient,
        timeout: float = 15.0,
    ):
        self._store = store
        self._pipeline = pipeline
        self._gateway = gateway
        self._timeout = timeout

    async def send(
        self,
        connection_id: int,
        counterparty_number: str,
        body: str,
        temp_id: Optional[str] = None,
    ) -> MessageRecord:
        """
        Send ``body`` to ``counterparty_number`` through the connection's gateway instance.

        Returns the stored message with its final status (``sent`` or ``failed``).

        Raises:
            UnknownConnectionError: no such connection.
            ConnectionNotReadyError: the connection is not connected.
            InvalidRecipientError: the recipient has no digits.
            SQLAlchemyError: the pending message or its outcome could not be stored.
        """
        connection = self._store.get_connection(connection_id)
        if connection is None:
            raise UnknownConnectionError(f"Connection {connection_id} not found")
        if not connection.is_connected:
            raise ConnectionNotReadyError(f"Connection {connection_id} is {connection.status.value}")
        number = jid_to_number(counterparty_number)
        if number is None:
            raise InvalidRecipientError(f"Invalid recipient: {counterparty_number!r}")

        pending = await self._pipeline.record_outbound(
            MessageRecord(
                connection_id=connection.id,
                counterparty_number=number,
                direction=Direction.SENT,
                body=body,
                timestamp=utcnow(),
                status=MessageStatus.PENDING,
            ),
            temp_id=temp_id,
        )
        logger.info(f"Outbound message {pending.id} pending for {number} (temp_id={temp_id})")

        message_id = None
        try:
            response = await asyncio.wait_for(
                self._gateway.send_message(connection.instance_name, number, body),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Gateway send timed out after {self._timeout}s for message {pending.id}")
            status, result = MessageStatus.FAILED, "timeout"
        except GatewayError as exc:
            logger.error(f"Gateway send failed for message {pending.id}: {exc}")
            status, result = MessageStatus.FAILED, "failed"
        except Exception as exc:  # noqa: BLE001 - the pending message must still reach a final status
            logger.exception(f"Unexpected error sending message {pending.id}: {exc}")
            status, result = MessageStatus.FAILED, "failed"
        else:
            status, result = MessageStatus.SENT, "sent"
            message_id = gateway_message_id(response)

        record_outbound(result)
        final = await self._finish(pending, status, message_id)

        try:
            self._store.touch_connection(connection.id)
        except SQLAlchemyError as exc:
            logger.error(f"Could not update activity of connection {connection.id}: {exc}")
        return final

    async def _finish(
        self,
        pending: MessageRecord,
        status: MessageStatus,
        message_id: Optional[str],
    ) -> MessageRecord:
        """
        Store the send outcome.

        If that write fails, one more attempt stores ``failed`` so the message
        does not stay pending, and the original store error is re-raised.
        """
        try:
            updated = await self._apply(pending, status, message_id)
        except SQLAlchemyError as exc:
            logger.error(f"Could not record status {status.value} of message {pending.id}: {exc}")
            try:
                await self._pipeline.apply_status(pending, MessageStatus.FAILED)
            except SQLAlchemyError as retry_exc:
                logger.error(f"Could not mark message {pending.id} failed: {retry_exc}")
            raise

        if updated is not None:
            return updated
        # A delivery ack may already have moved it further
        current = self._store.get(pending.id)
        return current or pending

    async def _apply(
        self,
        pending: MessageRecord,
        status: MessageStatus,
        message_id: Optional[str],
    ) -> Optional[MessageRecord]:
        try:
            return await self._pipeline.apply_status(pending, status, message_id=message_id)
        except IntegrityError:
            if not message_id:
                raise
            # An echo with this gateway id was stored first; keep the status only
            logger.warning(f"Gateway id {message_id} already stored, updating status of {pending.id} only")
            return await self._pipeline.apply_status(pending, status)
