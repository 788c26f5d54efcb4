"""
Pytest configuration and shared fixtures.

Environment defaults are applied before any chatsync import so settings,
the engine and the app are built against an in-memory database with the
poll loop disabled.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("POLL_ENABLED", "false")
os.environ.setdefault("WEBHOOK_SECRET", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from chatsync.config import get_settings  # noqa: E402
get_settings.cache_clear()

from chatsync.broadcaster import RealtimeBroadcaster  # noqa: E402
from chatsync.domain import ConnectionStatus  # noqa: E402
from chatsync.gateway import GatewayError  # noqa: E402
from chatsync.pipeline import MessagePipeline  # noqa: E402
from chatsync.storage import Base, MessageStore, engine, init_db  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeGateway:
    """In-memory stand-in for EvolutionClient."""

    def __init__(self):
        self.chats: Dict[str, List[Dict[str, Any]]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.failing_chats = set()
        self.list_chats_error: Optional[Exception] = None
        self.list_delay = 0.0
        self.send_response: Dict[str, Any] = {"key": {"id": "GW-1"}, "status": "PENDING"}
        self.send_error: Optional[Exception] = None
        self.send_delay = 0.0
        self.sent: List[tuple] = []
        self.fetched_chats: List[str] = []

    async def send_message(self, instance: str, to: str, body: str) -> Dict[str, Any]:
        self.sent.append((instance, to, body))
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        return self.send_response

    async def list_recent_chats(self, instance: str) -> List[Dict[str, Any]]:
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.list_chats_error is not None:
            raise self.list_chats_error
        return list(self.chats.get(instance, []))

    async def list_chat_messages(self, instance: str, chat_id: str, limit: int) -> List[Dict[str, Any]]:
        self.fetched_chats.append(chat_id)
        if chat_id in self.failing_chats:
            raise GatewayError(f"chat {chat_id} unavailable")
        return list(self.messages.get(chat_id, []))[-limit:]

    async def close(self) -> None:
        pass


def evolution_message(
    number: str,
    text: Optional[str],
    message_id: Optional[str] = None,
    from_me: bool = False,
    timestamp: Optional[int] = 1700000000,
    temp_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a message object shaped like the Evolution API's."""
    payload: Dict[str, Any] = {
        "key": {"remoteJid": f"{number}@s.whatsapp.net", "fromMe": from_me},
    }
    if message_id is not None:
        payload["key"]["id"] = message_id
    if text is not None:
        payload["message"] = {"conversation": text}
    if timestamp is not None:
        payload["messageTimestamp"] = timestamp
    if temp_id is not None:
        payload["tempId"] = temp_id
    return payload


def at(hour: int, minute: int, second: int, microsecond: int = 0) -> datetime:
    return datetime(2024, 1, 15, hour, minute, second, microsecond, tzinfo=timezone.utc)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def message_factory():
    return evolution_message


@pytest.fixture
def store():
    """Fresh schema and store for each test."""
    init_db()
    yield MessageStore()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def broadcaster() -> RealtimeBroadcaster:
    return RealtimeBroadcaster(queue_size=100)


@pytest.fixture
def pipeline(store, broadcaster) -> MessagePipeline:
    return MessagePipeline(store, broadcaster)


@pytest.fixture
def connection(store):
    """A connected connection named 'main'."""
    return store.create_connection(name="main", status=ConnectionStatus.CONNECTED)


def drain(queue: asyncio.Queue) -> List[Dict[str, Any]]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def drain_events():
    return drain


@pytest.fixture
def at_time():
    return at
