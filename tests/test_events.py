import asyncio
import json

import pytest

from omnisync.core import events
from omnisync.core.events import EventBroker, connection_frame, make_frame, stream_events, to_ndjson


def test_frame_shape():
    frame = make_frame("gmail_progress", {"sessionId": "s1"})

    assert frame["type"] == "gmail_progress"
    assert frame["data"] == {"sessionId": "s1"}
    assert frame["timestamp"]


def test_connection_frame_carries_retry_policy():
    frame = connection_frame("user-1")

    assert frame["type"] == "connection"
    assert frame["data"]["userId"] == "user-1"
    assert frame["data"]["retry_ms"] > 0
    assert frame["data"]["retry"]["multiplier"] == 2
    assert frame["data"]["retry"]["maxMs"] >= frame["data"]["retry"]["initialMs"]


def test_ndjson_is_one_line():
    line = to_ndjson(make_frame("heartbeat"))

    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert json.loads(line)["type"] == "heartbeat"


@pytest.mark.asyncio
async def test_event_without_subscribers_is_dropped():
    broker = EventBroker(queue_size=4)

    await broker.publish("nobody", "gmail_progress", {})

    assert broker.dropped == 1
    assert broker.channel_count() == 0


@pytest.mark.asyncio
async def test_events_only_reach_their_user():
    broker = EventBroker(queue_size=4)
    mine = broker.subscribe("user-1")
    theirs = broker.subscribe("user-2")

    await broker.publish("user-1", "sync_complete", {"sessionId": "s1"})

    assert mine.qsize() == 1
    assert theirs.qsize() == 0
    assert mine.get_nowait()["data"] == {"sessionId": "s1"}


@pytest.mark.asyncio
async def test_full_queue_drops_only_for_slow_subscriber():
    broker = EventBroker(queue_size=1)
    slow = broker.subscribe("user-1")
    fast = broker.subscribe("user-1")

    await broker.publish("user-1", "job_progress", {"n": 1})
    fast.get_nowait()
    await broker.publish("user-1", "job_progress", {"n": 2})

    assert slow.get_nowait()["data"] == {"n": 1}
    assert fast.get_nowait()["data"] == {"n": 2}
    assert broker.dropped == 1


def test_channel_removed_with_last_subscriber():
    broker = EventBroker()
    first = broker.subscribe("user-1")
    second = broker.subscribe("user-1")

    broker.unsubscribe("user-1", first)
    assert broker.subscriber_count("user-1") == 1
    broker.unsubscribe("user-1", second)
    assert broker.channel_count() == 0


@pytest.mark.asyncio
async def test_stream_starts_with_connection_then_events():
    broker = EventBroker()
    stream = stream_events("user-1", heartbeat_seconds=5, event_broker=broker)

    first = await stream.__anext__()
    assert first["type"] == "connection"
    assert broker.subscriber_count("user-1") == 1

    await broker.publish("user-1", "gmail_progress", {"status": "importing"})
    second = await stream.__anext__()
    assert second["type"] == "gmail_progress"

    await stream.aclose()
    assert broker.subscriber_count("user-1") == 0


@pytest.mark.asyncio
async def test_stream_sends_heartbeat_when_idle():
    broker = EventBroker()
    stream = stream_events("user-1", heartbeat_seconds=0.01, event_broker=broker)

    await stream.__anext__()
    frame = await asyncio.wait_for(stream.__anext__(), timeout=1)

    assert frame["type"] == "heartbeat"
    await stream.aclose()


@pytest.mark.asyncio
async def test_module_publish_uses_singleton():
    queue = events.broker.subscribe("user-9")
    try:
        await events.publish("user-9", "error", {"code": "reconnect_required"})
        assert queue.get_nowait()["type"] == "error"
    finally:
        events.broker.unsubscribe("user-9", queue)
