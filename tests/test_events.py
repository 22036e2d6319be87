"""
Tests for observer event fan-out.
"""

import json

import pytest

from src.sales_agent.events import CALL_STATUS, EventBroadcaster, encode_event


def test_publish_fans_out_to_every_subscriber() -> None:
    broadcaster = EventBroadcaster()
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    broadcaster.publish(CALL_STATUS, "call_1", {"status": "initiated"})

    assert first.get_nowait().data == {"status": "initiated"}
    assert second.get_nowait().call_id == "call_1"
    assert broadcaster.published == 1


def test_full_queue_drops_oldest() -> None:
    broadcaster = EventBroadcaster(queue_size=2)
    queue = broadcaster.subscribe()

    for n in range(3):
        broadcaster.publish(CALL_STATUS, f"call_{n}")

    assert [queue.get_nowait().call_id for _ in range(2)] == ["call_1", "call_2"]


def test_unsubscribe_and_unknown_type() -> None:
    broadcaster = EventBroadcaster()
    queue = broadcaster.subscribe()
    broadcaster.unsubscribe(queue)

    broadcaster.publish(CALL_STATUS, "call_1")
    assert queue.empty()
    assert broadcaster.subscriber_count == 0

    with pytest.raises(ValueError):
        broadcaster.publish("somethingElse", "call_1")


def test_encoded_event_uses_camel_case() -> None:
    event = EventBroadcaster().publish(CALL_STATUS, "call_1", {"status": "connected"})

    payload = json.loads(encode_event(event))

    assert payload["type"] == "callStatus"
    assert payload["callId"] == "call_1"
    assert payload["data"] == {"status": "connected"}
    assert isinstance(payload["timestamp"], float)
