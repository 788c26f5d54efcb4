"""
Tests for the poll synchronizer.

Tests cover:
- Chat selection (groups, broadcasts, recency, limits) and limit validation
- Idempotent re-sweeps and conversationTouched events
- Graceful degradation when a chat or connection fails
- Per-connection debounce and sweep timeout
- The run loop and health status
"""

import asyncio

import pytest
from pydantic import ValidationError

from chatsync.config import Settings
from chatsync.domain import ConnectionStatus
from chatsync.gateway import GatewayError
from chatsync.poller import (
    SWEEP_FAILED,
    SWEEP_OK,
    SWEEP_PARTIAL,
    SWEEP_TIMEOUT,
    PollSynchronizer,
    select_chats,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def chat(number, updated_at):
    return {"remoteJid": f"{number}@s.whatsapp.net", "updatedAt": updated_at}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(store, fake_gateway, pipeline, clock):
    return PollSynchronizer(
        store,
        fake_gateway,
        pipeline,
        interval=10,
        quiet_period=8,
        sweep_timeout=5,
        max_chats=3,
        max_messages=5,
        clock=clock,
    )


def test_select_chats_skips_groups_and_sorts_by_recency():
    chats = [
        chat("5511000000001", "2024-01-15T10:00:00Z"),
        {"remoteJid": "status@broadcast", "updatedAt": "2024-01-15T12:00:00Z"},
        {"remoteJid": "120363000000@g.us", "updatedAt": "2024-01-15T12:00:00Z"},
        chat("5511000000002", "2024-01-15T11:00:00Z"),
        chat("5511000000003", "2024-01-15T09:00:00Z"),
        chat("5511000000004", "2024-01-15T11:30:00Z"),
        {"name": "no jid"},
    ]
    selected = select_chats(chats, 3)
    assert [c["remoteJid"] for c in selected] == [
        "5511000000004@s.whatsapp.net",
        "5511000000002@s.whatsapp.net",
        "5511000000001@s.whatsapp.net",
    ]


@pytest.mark.parametrize("limits", [{"max_messages": 0}, {"max_chats": 0}])
def test_zero_limits_rejected(store, fake_gateway, pipeline, limits):
    with pytest.raises(ValueError):
        PollSynchronizer(store, fake_gateway, pipeline, **limits)


def test_settings_reject_zero_message_limit(monkeypatch):
    monkeypatch.setenv("POLL_MAX_MESSAGES", "0")
    with pytest.raises(ValidationError):
        Settings()


@pytest.mark.anyio
async def test_sweep_ingests_and_is_idempotent(poller, store, fake_gateway, connection, message_factory):
    jid = "5511000000001@s.whatsapp.net"
    fake_gateway.chats[connection.instance_name] = [chat("5511000000001", "2024-01-15T10:00:00Z")]
    fake_gateway.messages[jid] = [
        message_factory("5511000000001", f"message {i}", message_id=f"M{i}", timestamp=1705320000 + i * 10)
        for i in range(7)
    ]

    assert await poller.sweep_connection(connection) == SWEEP_OK
    stored = store.list_by_conversation(connection.id, "5511000000001")
    # only the five most recent are fetched
    assert [m.message_id for m in stored] == ["M2", "M3", "M4", "M5", "M6"]

    assert await poller.sweep_connection(connection) == SWEEP_OK
    assert len(store.list_by_connection(connection.id)) == 5


@pytest.mark.anyio
async def test_conversation_touched_only_after_writes(
    poller, broadcaster, fake_gateway, connection, message_factory, drain_events
):
    jid = "5511000000001@s.whatsapp.net"
    fake_gateway.chats[connection.instance_name] = [chat("5511000000001", "2024-01-15T10:00:00Z")]
    fake_gateway.messages[jid] = [message_factory("5511000000001", "hi", message_id="M1")]
    subscription = broadcaster.subscribe(connection_id=connection.id)

    await poller.sweep_connection(connection)
    assert [e["type"] for e in drain_events(subscription.queue)] == ["messageInserted", "conversationTouched"]

    await poller.sweep_connection(connection)
    assert drain_events(subscription.queue) == []


@pytest.mark.anyio
async def test_failing_chat_does_not_stop_the_sweep(poller, store, fake_gateway, connection, message_factory):
    fake_gateway.chats[connection.instance_name] = [
        chat("5511000000001", "2024-01-15T12:00:00Z"),
        chat("5511000000002", "2024-01-15T11:00:00Z"),
    ]
    fake_gateway.failing_chats.add("5511000000001@s.whatsapp.net")
    fake_gateway.messages["5511000000002@s.whatsapp.net"] = [
        message_factory("5511000000002", "still here", message_id="OK1")
    ]

    assert await poller.sweep_connection(connection) == SWEEP_PARTIAL
    assert [m.message_id for m in store.list_by_connection(connection.id)] == ["OK1"]


@pytest.mark.anyio
async def test_failing_connection_does_not_affect_others(
    poller, store, fake_gateway, connection, message_factory
):
    other = store.create_connection(name="backup", status=ConnectionStatus.CONNECTED)
    fake_gateway.chats[other.instance_name] = [chat("5511000000009", "2024-01-15T12:00:00Z")]
    fake_gateway.messages["5511000000009@s.whatsapp.net"] = [
        message_factory("5511000000009", "from backup", message_id="B1")
    ]
    fake_gateway.chats[connection.instance_name] = []

    original = fake_gateway.list_recent_chats

    async def flaky_list(instance):
        if instance == connection.instance_name:
            raise GatewayError("instance offline")
        return await original(instance)

    fake_gateway.list_recent_chats = flaky_list

    tasks = await poller.tick()
    results = await asyncio.gather(*tasks)

    assert sorted(results) == sorted([SWEEP_FAILED, SWEEP_OK])
    assert [m.message_id for m in store.list_by_connection(other.id)] == ["B1"]


@pytest.mark.anyio
async def test_only_connected_connections_are_polled(poller, store, connection):
    store.create_connection(name="idle", status=ConnectionStatus.DISCONNECTED)
    store.create_connection(name="pairing", status=ConnectionStatus.WAITING_QR)

    tasks = await poller.tick()
    await asyncio.gather(*tasks)

    assert len(tasks) == 1


@pytest.mark.anyio
async def test_tick_debounces_per_connection(poller, clock, connection):
    first = await poller.tick()
    assert len(first) == 1

    # still running
    assert await poller.tick() == []
    await asyncio.gather(*first)

    # finished less than the quiet period ago
    clock.now += 5
    assert await poller.tick() == []

    clock.now += 4
    again = await poller.tick()
    assert len(again) == 1
    await asyncio.gather(*again)


@pytest.mark.anyio
async def test_sweep_timeout_is_superseded_by_next_tick(store, fake_gateway, pipeline, clock, connection):
    fake_gateway.list_delay = 1.0
    poller = PollSynchronizer(
        store, fake_gateway, pipeline, quiet_period=8, sweep_timeout=0.05, clock=clock
    )

    tasks = await poller.tick()
    assert await asyncio.gather(*tasks) == [SWEEP_TIMEOUT]
    assert poller.health_status()["in_flight"] == []

    fake_gateway.list_delay = 0
    clock.now += 8
    tasks = await poller.tick()
    assert await asyncio.gather(*tasks) == [SWEEP_OK]


@pytest.mark.anyio
async def test_run_ticks_until_stopped(store, fake_gateway, pipeline, clock, connection):
    stop_event = asyncio.Event()
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        stop_event.set()

    poller = PollSynchronizer(store, fake_gateway, pipeline, interval=10, clock=clock, sleep=fake_sleep)
    await poller.run(stop_event)
    await poller.shutdown()

    assert sleeps == [10]
    assert poller.health_status()["last_tick_started"] is not None


@pytest.mark.anyio
async def test_health_status_reports_success(poller, connection):
    tasks = await poller.tick()
    await asyncio.gather(*tasks)

    health = poller.health_status()
    assert health["status"] == "ok"
    assert str(connection.id) in health["last_success"]
    assert health["in_flight"] == []
