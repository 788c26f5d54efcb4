"""
Recurring gateway sweeps that backfill what the webhook missed.

Every tick starts one sweep per connected connection. A sweep lists the
most recently updated direct chats, fetches their latest messages and runs
each one through the pipeline, so re-fetching the same messages is harmless.
Sweeps are debounced per connection and bounded by a timeout; a failing chat
or connection never stops the others.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from chatsync.broadcaster import CONVERSATION_TOUCHED
from chatsync.config import Settings
from chatsync.domain import ConnectionInfo, ConnectionStatus, utcnow
from chatsync.gateway import EvolutionClient, GatewayError
from chatsync.metrics import record_poll_sweep
from chatsync.normalize import candidate_from_gateway_message, get_nested, parse_timestamp
from chatsync.pipeline import MessagePipeline
from chatsync.utils import is_broadcast_jid, is_group_jid

logger = logging.getLogger(__name__)

SWEEP_OK = "ok"
SWEEP_PARTIAL = "partial"
SWEEP_FAILED = "failed"
SWEEP_TIMEOUT = "timeout"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def chat_jid(chat: Dict[str, Any]) -> Optional[str]:
    value = chat.get("remoteJid") or chat.get("id")
    return str(value) if value else None


def chat_updated_at(chat: Dict[str, Any]) -> datetime:
    for value in (
        chat.get("updatedAt"),
        get_nested(chat, ("lastMessage", "messageTimestamp")),
        chat.get("lastMsgTimestamp"),
        chat.get("conversationTimestamp"),
    ):
        if value is not None:
            return parse_timestamp(value, now=_EPOCH)
    return _EPOCH


def select_chats(chats: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    """Direct chats only, most recently updated first, at most ``limit``."""
    direct = []
    for chat in chats:
        if not isinstance(chat, dict):
            continue
        jid = chat_jid(chat)
        if not jid or is_group_jid(jid) or is_broadcast_jid(jid):
            continue
        direct.append(chat)
    direct.sort(key=chat_updated_at, reverse=True)
    return direct[:limit]


class PollSynchronizer:
    """Coordinates periodic sweeps of every connected connection."""

    def __init__(
        self,
        store,
        gateway: EvolutionClient,
        pipeline: MessagePipeline,
        interval: float = 10.0,
        quiet_period: float = 8.0,
        sweep_timeout: float = 30.0,
        max_chats: int = 3,
        max_messages: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_chats < 1 or max_messages < 1:
            raise ValueError("max_chats and max_messages must be at least 1")
        self._store = store
        self._gateway = gateway
        self._pipeline = pipeline
        self._interval = interval
        self._quiet_period = quiet_period
        self._sweep_timeout = sweep_timeout
        self._max_chats = max_chats
        self._max_messages = max_messages
        self._clock = clock
        self._sleep = sleep
        self._in_flight: Dict[int, asyncio.Task] = {}
        self._last_completed: Dict[int, float] = {}
        self._last_success: Dict[int, datetime] = {}
        self._last_tick_started: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: Settings, store, gateway, pipeline) -> "PollSynchronizer":
        return cls(
            store,
            gateway,
            pipeline,
            interval=settings.POLL_INTERVAL_SECONDS,
            quiet_period=settings.POLL_QUIET_SECONDS,
            sweep_timeout=settings.POLL_SWEEP_TIMEOUT_SECONDS,
            max_chats=settings.POLL_MAX_CHATS,
            max_messages=settings.POLL_MAX_MESSAGES,
        )

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until ``stop_event`` is set."""
        logger.info(f"Poll synchronizer started (interval={self._interval}s)")
        while not stop_event.is_set():
            await self.tick()
            await self._sleep(self._interval)
        logger.info("Poll synchronizer stopped")

    async def tick(self) -> List[asyncio.Task]:
        """Start sweeps for connected connections that are due; return the started tasks."""
        self._last_tick_started = utcnow()
        try:
            connections = self._store.list_connections(ConnectionStatus.CONNECTED)
        except SQLAlchemyError as exc:
            logger.error(f"Could not list connections for polling: {exc}")
            return []

        started = []
        now = self._clock()
        for connection in connections:
            running = self._in_flight.get(connection.id)
            if running is not None and not running.done():
                logger.debug(f"Sweep already running for connection {connection.id}, skipping")
                continue
            completed_at = self._last_completed.get(connection.id)
            if completed_at is not None and now - completed_at < self._quiet_period:
                logger.debug(f"Connection {connection.id} swept recently, skipping")
                continue
            task = asyncio.create_task(self._run_sweep(connection))
            self._in_flight[connection.id] = task
            started.append(task)

        if started:
            logger.debug(f"Tick started {len(started)} sweeps")
        return started

    async def _run_sweep(self, connection: ConnectionInfo) -> str:
        result = SWEEP_FAILED
        try:
            result = await asyncio.wait_for(self.sweep_connection(connection), timeout=self._sweep_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Sweep of connection {connection.id} timed out after {self._sweep_timeout}s")
            result = SWEEP_TIMEOUT
        except GatewayError as exc:
            logger.error(f"Sweep of connection {connection.id} failed: {exc}")
        except Exception as exc:  # noqa: BLE001 - a broken sweep must not kill the poll loop
            logger.exception(f"Unexpected error sweeping connection {connection.id}: {exc}")
        finally:
            self._in_flight.pop(connection.id, None)
            self._last_completed[connection.id] = self._clock()

        if result in (SWEEP_OK, SWEEP_PARTIAL):
            self._last_success[connection.id] = utcnow()
        record_poll_sweep(result)
        return result

    async def sweep_connection(self, connection: ConnectionInfo) -> str:
        """
        One bounded pass over a connection's most recent chats.

        Raises:
            GatewayError: the chat list itself could not be fetched.
        """
        chats = await self._gateway.list_recent_chats(connection.instance_name)
        selected = select_chats(chats, self._max_chats)
        logger.debug(f"Sweeping {len(selected)} of {len(chats)} chats for connection {connection.id}")

        failures = 0
        for chat in selected:
            jid = chat_jid(chat)
            try:
                messages = await self._gateway.list_chat_messages(
                    connection.instance_name, jid, self._max_messages
                )
            except GatewayError as exc:
                logger.error(f"Could not fetch messages of chat {jid}: {exc}")
                failures += 1
                continue
            failures += await self._ingest_chat(connection, jid, messages)

        return SWEEP_PARTIAL if failures else SWEEP_OK

    async def _ingest_chat(self, connection: ConnectionInfo, jid: str, messages: List[Dict[str, Any]]) -> int:
        now = utcnow()
        candidates = []
        for payload in messages:
            candidate = candidate_from_gateway_message(connection.id, payload, fallback_jid=jid, now=now)
            if candidate is not None:
                candidates.append(candidate)
        candidates.sort(key=lambda c: c.timestamp)
        candidates = candidates[-self._max_messages:]

        failures = 0
        touched: Set[str] = set()
        for candidate in candidates:
            try:
                result = await self._pipeline.ingest(candidate, source="poll")
            except SQLAlchemyError as exc:
                logger.error(f"Store error while ingesting polled message {candidate.message_id}: {exc}")
                failures += 1
                continue
            if result.written:
                touched.add(candidate.counterparty_number)

        for number in touched:
            self._pipeline.broadcaster.publish(CONVERSATION_TOUCHED, connection.id, number, {"source": "poll"})
        if touched:
            logger.info(f"Poll wrote new messages for connection {connection.id}, chat {jid}")
        return failures

    async def shutdown(self) -> None:
        """Cancel sweeps still in flight."""
        tasks = [task for task in self._in_flight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    def health_status(self) -> Dict[str, object]:
        return {
            "status": "ok",
            "last_tick_started": self._format_dt(self._last_tick_started),
            "last_success": {
                str(connection_id): self._format_dt(value)
                for connection_id, value in sorted(self._last_success.items())
            },
            "in_flight": sorted(cid for cid, task in self._in_flight.items() if not task.done()),
        }

    @staticmethod
    def _format_dt(value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        return value.isoformat()
