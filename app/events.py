"""Message channel carrying scraper events to any number of consumers."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.models.scraping import utc_now


class EventType(str, Enum):
    PROGRESS = "progress"
    LOG = "log"
    BUSINESS = "business"
    TOWN_COMPLETE = "town_complete"
    ERROR = "error"
    COMPLETE = "complete"
    STOPPED = "stopped"
    LOOKUP_PROGRESS = "lookup_progress"
    PROVIDERS_UPDATED = "providers_updated"
    CAPTCHA_DETECTED = "captcha_detected"


class ScrapeEvent(BaseModel):
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


_CLOSED = object()


class EventSubscription:
    """Async iterator over the events published after subscribing."""

    def __init__(self, channel: "EventChannel"):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()

    def _put(self, item: object) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> AsyncIterator[ScrapeEvent]:
        return self

    async def __anext__(self) -> ScrapeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._channel.unsubscribe(self)
        self._put(_CLOSED)


class EventChannel:
    """Fan-out channel: every subscriber sees every event published after it joined.

    Publishing never blocks. A bounded history is kept so a consumer that
    attaches late (for example after a reconnect) can replay recent events.
    """

    def __init__(self, history_size: int = 500):
        self._subscribers: list[EventSubscription] = []
        self._history: deque[ScrapeEvent] = deque(maxlen=history_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[ScrapeEvent]:
        return list(self._history)

    def subscribe(self) -> EventSubscription:
        subscription = EventSubscription(self)
        if self._closed:
            subscription._put(_CLOSED)
        else:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event_type: EventType, **data: Any) -> ScrapeEvent | None:
        if self._closed:
            return None
        event = ScrapeEvent(type=event_type, data=data)
        self._history.append(event)
        for subscription in list(self._subscribers):
            subscription._put(event)
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription._put(_CLOSED)
        self._subscribers.clear()
