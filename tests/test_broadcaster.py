"""
Tests for the realtime broadcaster.

Tests cover:
- Envelope shape
- Connection / counterparty filters
- conversationTouched delivery to conversation-filtered subscribers
- Bounded queues dropping events
- Unknown event types
"""

import pytest

from chatsync.broadcaster import (
    CONVERSATION_TOUCHED,
    MESSAGE_INSERTED,
    STATUS_CHANGED,
    RealtimeBroadcaster,
)


@pytest.mark.anyio
async def test_envelope_carries_conversation_key(drain_events):
    broadcaster = RealtimeBroadcaster()
    subscription = broadcaster.subscribe()

    delivered = broadcaster.publish(MESSAGE_INSERTED, 1, "5511", {"id": 3, "body": "hi"})

    assert delivered == 1
    assert drain_events(subscription.queue) == [
        {
            "type": "messageInserted",
            "data": {"id": 3, "body": "hi", "connectionId": 1, "counterpartyNumber": "5511"},
        }
    ]


@pytest.mark.anyio
async def test_filters_by_connection_and_counterparty(drain_events):
    broadcaster = RealtimeBroadcaster()
    everything = broadcaster.subscribe()
    one_connection = broadcaster.subscribe(connection_id=1)
    one_conversation = broadcaster.subscribe(connection_id=1, counterparty_number="5511")

    broadcaster.publish(MESSAGE_INSERTED, 1, "5511")
    broadcaster.publish(MESSAGE_INSERTED, 1, "5522")
    broadcaster.publish(STATUS_CHANGED, 2, "5511")

    assert len(drain_events(everything.queue)) == 3
    assert len(drain_events(one_connection.queue)) == 2
    assert len(drain_events(one_conversation.queue)) == 1


@pytest.mark.anyio
async def test_conversation_touched_reaches_connection_subscribers(drain_events):
    broadcaster = RealtimeBroadcaster()
    other_conversation = broadcaster.subscribe(connection_id=1, counterparty_number="5599")
    other_connection = broadcaster.subscribe(connection_id=2)

    broadcaster.publish(CONVERSATION_TOUCHED, 1, "5511")

    assert [e["type"] for e in drain_events(other_conversation.queue)] == ["conversationTouched"]
    assert drain_events(other_connection.queue) == []


@pytest.mark.anyio
async def test_full_queue_drops_for_that_subscriber_only(drain_events):
    broadcaster = RealtimeBroadcaster(queue_size=2)
    slow = broadcaster.subscribe()

    for _ in range(3):
        broadcaster.publish(MESSAGE_INSERTED, 1, "5511")
    fast = broadcaster.subscribe()
    assert broadcaster.publish(MESSAGE_INSERTED, 1, "5511") == 1

    assert slow.dropped == 2
    assert len(drain_events(slow.queue)) == 2
    assert len(drain_events(fast.queue)) == 1


@pytest.mark.anyio
async def test_unsubscribe_stops_delivery():
    broadcaster = RealtimeBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.unsubscribe(subscription)

    assert broadcaster.subscriber_count == 0
    assert broadcaster.publish(MESSAGE_INSERTED, 1, "5511") == 0


def test_unknown_event_type_rejected():
    broadcaster = RealtimeBroadcaster()
    with pytest.raises(ValueError):
        broadcaster.publish("somethingElse", 1, "5511")


@pytest.mark.anyio
async def test_set_filter_without_connection_clears_counterparty():
    broadcaster = RealtimeBroadcaster()
    subscription = broadcaster.subscribe(connection_id=1, counterparty_number="5511")
    subscription.set_filter(None, "5511")

    assert subscription.connection_id is None
    assert subscription.counterparty_number is None
    assert subscription.wants(MESSAGE_INSERTED, 7, "5599")
