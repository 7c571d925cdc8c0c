"""
Event channel: in-process pub/sub for things the car UI reacts to.

Event types:
    voice_activated       {source}
    emergency_activated   {text, actions, location}
    navigation_started    {destination}
    music_state_changed   {action, query}
    reply_ready           {session_id, intent, provider, fallback}

Each subscriber gets its own bounded asyncio.Queue. A slow consumer never
blocks publishers: when its queue is full the oldest event is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field

logger = logging.getLogger(__name__)

VOICE_ACTIVATED = "voice_activated"
EMERGENCY_ACTIVATED = "emergency_activated"
NAVIGATION_STARTED = "navigation_started"
MUSIC_STATE_CHANGED = "music_state_changed"
REPLY_READY = "reply_ready"

EVENT_TYPES = (
    VOICE_ACTIVATED,
    EMERGENCY_ACTIVATED,
    NAVIGATION_STARTED,
    MUSIC_STATE_CHANGED,
    REPLY_READY,
)


@dataclass
class Event:
    type: str
    payload: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


class EventBus:
    """Fan-out of events to any number of subscriber queues."""

    def __init__(self, queue_size: int = 100, history_size: int = 50):
        self.queue_size = max(1, queue_size)
        self._subscribers: list[asyncio.Queue] = []
        self._history: deque[Event] = deque(maxlen=history_size)
        self.dropped = 0

    def publish(self, event_type: str, **payload) -> Event:
        if event_type not in EVENT_TYPES:
            logger.debug("Publishing non-standard event type '%s'", event_type)
        event = Event(type=event_type, payload=payload)
        self._history.append(event)
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)
        logger.debug("Event %s → %d subscriber(s)", event_type, len(self._subscribers))
        return event

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    def recent(self, n: int = 10) -> list[Event]:
        return list(self._history)[-n:]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
