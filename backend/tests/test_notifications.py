"""
Tests for the notification hub and SSE formatting.
"""
import asyncio
import json
from decimal import Decimal

import pytest

from ticketmatch.services.notification_service import NotificationHub, format_sse_event


async def _attach(hub, user_id):
    """Start consuming a user's stream and let the consumer reach its queue."""
    async def collect():
        return [event async for event in hub.stream(user_id)]

    task = asyncio.ensure_future(collect())
    await asyncio.sleep(0)
    return task


async def test_notify_then_stream():
    hub = NotificationHub()
    consumer = await _attach(hub, "user_a")
    hub.notify("user_a", "offer_accepted", {"offer_id": "off_1"})
    hub.notify("user_a", "payment_captured", {"transaction_id": "txn_1"})
    hub.close("user_a")

    received = await asyncio.wait_for(consumer, timeout=1)

    assert [e["type"] for e in received] == ["offer_accepted", "payment_captured"]
    assert received[0]["data"] == {"offer_id": "off_1"}


async def test_stream_waits_for_events():
    hub = NotificationHub()
    stream = hub.stream("user_a")

    pending = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)
    assert not pending.done()

    hub.notify("user_a", "tickets_delivered", {"transaction_id": "txn_1"})
    event = await asyncio.wait_for(pending, timeout=1)

    assert event["type"] == "tickets_delivered"
    await stream.aclose()


async def test_full_queue_drops_oldest():
    hub = NotificationHub(queue_size=2)
    consumer = await _attach(hub, "user_a")
    for n in range(3):
        hub.notify("user_a", "offer_expired", {"n": n})
    hub.close("user_a")

    received = await asyncio.wait_for(consumer, timeout=1)

    # close() makes room for its sentinel by dropping one more
    assert [e["data"]["n"] for e in received] == [2]


def test_recent_filters_by_type_and_user():
    hub = NotificationHub(history_size=3)
    hub.notify("user_a", "offer_accepted", {})
    hub.notify("user_a", "payout_released", {})
    hub.notify("user_b", "payout_released", {})

    assert [e["type"] for e in hub.recent("user_a")] == ["offer_accepted", "payout_released"]
    assert len(hub.recent("user_a", "payout_released")) == 1
    assert hub.recent("user_c") == []


def test_history_is_bounded():
    hub = NotificationHub(history_size=2)
    for n in range(5):
        hub.notify("user_a", "offer_expired", {"n": n})

    assert [e["data"]["n"] for e in hub.recent("user_a")] == [3, 4]


async def test_active_stream_count():
    hub = NotificationHub()
    consumer_a = await _attach(hub, "user_a")
    consumer_b = await _attach(hub, "user_b")
    assert hub.get_active_stream_count() == 2

    hub.close("user_a")
    await asyncio.wait_for(consumer_a, timeout=1)
    assert hub.get_active_stream_count() == 1

    hub.close("user_b")
    await asyncio.wait_for(consumer_b, timeout=1)
    assert hub.get_active_stream_count() == 0


def test_notify_without_stream_keeps_no_queue():
    hub = NotificationHub()
    hub.notify("user_a", "offer_expired", {"offer_id": "off_1"})

    assert hub.get_active_stream_count() == 0
    assert hub._subscribers == {}
    assert [e["type"] for e in hub.recent("user_a")] == ["offer_expired"]


async def test_every_open_stream_gets_each_event():
    hub = NotificationHub()
    first = await _attach(hub, "user_a")
    second = await _attach(hub, "user_a")
    hub.notify("user_a", "payout_released", {"transaction_id": "txn_1"})
    hub.close("user_a")

    for consumer in (first, second):
        received = await asyncio.wait_for(consumer, timeout=1)
        assert [e["type"] for e in received] == ["payout_released"]


async def test_cancelled_stream_drops_its_queue():
    hub = NotificationHub()
    consumer = await _attach(hub, "user_a")
    assert hub.get_active_stream_count() == 1

    consumer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await consumer

    assert hub.get_active_stream_count() == 0
    hub.notify("user_a", "offer_expired", {})
    assert hub._subscribers == {}


async def test_closed_generator_drops_its_queue():
    hub = NotificationHub()
    stream = hub.stream("user_a")
    pending = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)
    hub.notify("user_a", "tickets_delivered", {})
    await asyncio.wait_for(pending, timeout=1)

    await stream.aclose()

    assert hub.get_active_stream_count() == 0


def test_history_forgets_least_recent_users():
    hub = NotificationHub(max_history_users=2)
    hub.notify("user_a", "offer_expired", {})
    hub.notify("user_b", "offer_expired", {})
    hub.notify("user_a", "offer_cancelled", {})
    hub.notify("user_c", "offer_expired", {})

    assert hub.recent("user_b") == []
    assert len(hub.recent("user_a")) == 2
    assert len(hub.recent("user_c")) == 1


def test_format_sse_event():
    message = format_sse_event("payout_released", {"amount": "171.00"}, event_id="7")

    assert message == 'event: payout_released\nid: 7\ndata: {"amount": "171.00"}\n\n'


def test_format_sse_event_serializes_unknown_types():
    message = format_sse_event("payment_captured", {"amount": Decimal("180.00")})
    data_line = message.splitlines()[1]

    assert json.loads(data_line[len("data: "):]) == {"amount": "180.00"}
