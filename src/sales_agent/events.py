"""
Observer event fan-out for dashboards.

Every subscriber (one per `/ws/events` connection) gets its own bounded
asyncio.Queue; when a slow subscriber's queue is full the oldest event is
dropped. Events are msgspec structs and are encoded to JSON for the socket.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

CALL_STATUS = "callStatus"
CONVERSATION_UPDATE = "conversationUpdate"
PARTIAL_SPEECH_UPDATE = "partialSpeechUpdate"
ORDER_UPDATE = "orderUpdate"
CALL_COMPLETED = "callCompleted"

EVENT_TYPES = frozenset(
    {CALL_STATUS, CONVERSATION_UPDATE, PARTIAL_SPEECH_UPDATE, ORDER_UPDATE, CALL_COMPLETED}
)

SUBSCRIBER_QUEUE_SIZE = 200


class ObserverEvent(msgspec.Struct, rename="camel"):
    type: str
    call_id: str
    data: Dict[str, Any]
    timestamp: float = msgspec.field(default_factory=time.time)


encoder = msgspec.json.Encoder()


def encode_event(event: ObserverEvent) -> bytes:
    return encoder.encode(event)


class EventBroadcaster:
    """Process-wide broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: List[asyncio.Queue] = []
        self.published = 0

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(q)
        logger.info("Event subscriber added", subscribers=len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)
        logger.info("Event subscriber removed", subscribers=len(self._subscribers))

    def publish(self, event_type: str, call_id: str, data: Optional[Dict[str, Any]] = None) -> ObserverEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        event = ObserverEvent(type=event_type, call_id=call_id, data=dict(data or {}))
        self.published += 1

        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event to make room
                try:
                    q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
        return event

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
