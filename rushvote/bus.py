"""Notification bus: best-effort state-change hints to connected observers.

Events say *that* something changed (a round id, an entity id), never *what*
it changed to. Every subscriber re-reads the store on receipt, so a missed or
duplicated event only delays a refresh and can never corrupt state.

Usage::

    bus = create_bus()
    unsubscribe = bus.subscribe(ROUNDS_TOPIC, refresh_round_banner)
    await bus.publish(ROUNDS_TOPIC, Event.round_status_change(round_id))
"""

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from . import config

logger = logging.getLogger(__name__)

# Topics
ROUNDS_TOPIC = "rounds"
VOTES_TOPIC = "votes"
INTERACTIONS_TOPIC = "interactions"
DECISIONS_TOPIC = "deliberation_decisions"
SETTINGS_TOPIC = "settings"
ALL_TOPICS = "*"

# Event names
ROUND_STATUS_CHANGE = "ROUND_STATUS_CHANGE"
TABLE_CHANGE = "TABLE_CHANGE"
STATS_PUBLISH_TOGGLE = "STATS_PUBLISH_TOGGLE"


@dataclass(frozen=True)
class Event:
    """A named hint with a small JSON payload."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def round_status_change(cls, round_id: str) -> "Event":
        return cls(ROUND_STATUS_CHANGE, {"roundId": round_id})

    @classmethod
    def table_change(cls, entity: str, entity_id: str, **extra: Any) -> "Event":
        return cls(TABLE_CHANGE, {"entity": entity, "id": entity_id, **extra})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "event": self.name,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


Handler = Callable[[str, Event], Awaitable[None] | None]


class NotificationBus:
    """Publish/subscribe relay delivering events to handlers in this process.

    Handlers subscribed to ``ALL_TOPICS`` receive every event. A handler
    that raises is logged and skipped; the publisher never sees the error.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic``.

        Returns:
            Callable that removes the subscription (safe to call twice)
        """
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[topic].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, ()))

    async def publish(self, topic: str, event: Event) -> None:
        """Deliver ``event`` to every current subscriber of ``topic``."""
        await self._deliver_local(topic, event)

    async def _deliver_local(self, topic: str, event: Event) -> None:
        handlers = list(self._handlers.get(topic, ())) + list(self._handlers.get(ALL_TOPICS, ()))
        for handler in handlers:
            try:
                result = handler(topic, event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber failed handling %s on %s", event.name, topic)

    async def aclose(self) -> None:
        self._handlers.clear()


class RelayBus(NotificationBus):
    """Bus that also forwards events to a managed realtime relay over HTTP.

    Observers in other processes (browsers, other API workers) subscribe at
    the relay. Forwarding failures are transport errors: logged, not raised.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.url = url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def publish(self, topic: str, event: Event) -> None:
        """Deliver locally, then forward to the relay's broadcast endpoint."""
        await self._deliver_local(topic, event)

        body = {
            "messages": [
                {"topic": topic, "event": event.name, "payload": event.to_dict()["payload"]}
            ]
        }
        try:
            response = await self._client.post(f"{self.url}/api/broadcast", json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Relay publish of %s on %s failed: %s", event.name, topic, e)

    async def aclose(self) -> None:
        await super().aclose()
        await self._client.aclose()


def create_bus() -> NotificationBus:
    """Build the bus for this process from configuration."""
    if config.RELAY_URL:
        logger.info("Notification bus forwarding to relay %s", config.RELAY_URL)
        return RelayBus(config.RELAY_URL, config.RELAY_KEY, config.RELAY_TIMEOUT)
    logger.info("Notification bus running in-process only")
    return NotificationBus()


class EventStream:
    """Server-Sent Events view of a bus subscription.

    Events are buffered in a bounded queue; when a slow client lets it fill
    up, the oldest event is dropped. Dropping is safe because every event is
    only a prompt to re-read.
    """

    def __init__(self, bus: NotificationBus, topics: Iterable[str], max_pending: int = 100):
        # None in the queue wakes a waiting reader after interrupt()
        self._queue: asyncio.Queue[tuple[str, Event] | None] = asyncio.Queue(maxsize=max_pending)
        self._unsubscribers = [bus.subscribe(topic, self._enqueue) for topic in topics]
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: tuple[str, Event] | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            logger.debug("Event stream full, dropped oldest event")
        self._queue.put_nowait(item)

    def _enqueue(self, topic: str, event: Event) -> None:
        if not self._closed:
            self._put((topic, event))

    async def next_frame(self, timeout: float | None = None) -> str | None:
        """Wait for the next event and format it as an SSE frame.

        Returns:
            The frame, or None if ``timeout`` elapsed or the stream was
            interrupted
        """
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is None:
            return None
        return format_sse(*item)

    async def frames(self, heartbeat: float = 15.0) -> AsyncIterator[str]:
        """Yield frames until closed, with comment heartbeats while idle."""
        while not self._closed:
            frame = await self.next_frame(timeout=heartbeat)
            if frame is None:
                if self._closed:
                    return
                frame = ": keep-alive\n\n"
            yield frame

    def interrupt(self) -> None:
        """Close the stream and wake a reader blocked in next_frame()."""
        self.close()
        self._put(None)

    def close(self) -> None:
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []


def format_sse(topic: str, event: Event) -> str:
    """Format an event as an SSE data frame."""
    data = {"type": event.name, "topic": topic, **event.to_dict()}
    return f"data: {json.dumps(data)}\n\n"
