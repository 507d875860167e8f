"""Tests for the notification bus and SSE stream."""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from rushvote.bus import (
    ALL_TOPICS,
    ROUND_STATUS_CHANGE,
    ROUNDS_TOPIC,
    VOTES_TOPIC,
    Event,
    EventStream,
    NotificationBus,
    RelayBus,
    format_sse,
)


# ---------------------------------------------------------------------------
# NotificationBus
# ---------------------------------------------------------------------------

class TestNotificationBus:
    """Tests for in-process delivery."""

    @pytest.mark.asyncio
    async def test_fan_out_to_topic_and_wildcard(self):
        bus = NotificationBus()
        rounds_handler = AsyncMock()
        votes_handler = AsyncMock()
        everything = AsyncMock()
        bus.subscribe(ROUNDS_TOPIC, rounds_handler)
        bus.subscribe(VOTES_TOPIC, votes_handler)
        bus.subscribe(ALL_TOPICS, everything)

        event = Event.round_status_change("r1")
        await bus.publish(ROUNDS_TOPIC, event)

        rounds_handler.assert_awaited_once_with(ROUNDS_TOPIC, event)
        everything.assert_awaited_once_with(ROUNDS_TOPIC, event)
        votes_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        """A handler that raises is logged and skipped."""
        bus = NotificationBus()
        received = []

        def broken(topic, event):
            raise RuntimeError("boom")

        bus.subscribe(ROUNDS_TOPIC, broken)
        bus.subscribe(ROUNDS_TOPIC, lambda topic, event: received.append(event))

        await bus.publish(ROUNDS_TOPIC, Event.round_status_change("r1"))

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = NotificationBus()
        handler = AsyncMock()
        unsubscribe = bus.subscribe(ROUNDS_TOPIC, handler)

        unsubscribe()
        unsubscribe()
        await bus.publish(ROUNDS_TOPIC, Event.round_status_change("r1"))

        handler.assert_not_awaited()
        assert bus.subscriber_count(ROUNDS_TOPIC) == 0

    def test_event_payloads(self):
        assert Event.round_status_change("r1").payload == {"roundId": "r1"}
        change = Event.table_change("votes", "p1", roundId="r1")
        assert change.payload == {"entity": "votes", "id": "p1", "roundId": "r1"}


# ---------------------------------------------------------------------------
# RelayBus
# ---------------------------------------------------------------------------

class TestRelayBus:
    """Tests for forwarding to the HTTP relay."""

    @pytest.mark.asyncio
    async def test_forwards_to_broadcast_endpoint(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        bus = RelayBus("https://relay.example/", client=client)

        await bus.publish(ROUNDS_TOPIC, Event.round_status_change("r1"))
        await bus.aclose()

        assert len(requests) == 1
        assert str(requests[0].url) == "https://relay.example/api/broadcast"
        body = json.loads(requests[0].content)
        assert body["messages"] == [
            {"topic": ROUNDS_TOPIC, "event": ROUND_STATUS_CHANGE, "payload": {"roundId": "r1"}}
        ]

    @pytest.mark.asyncio
    async def test_relay_failure_is_not_raised(self):
        """Transport errors are logged; local subscribers still get the event."""

        def handler(request):
            raise httpx.ConnectError("relay down", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        bus = RelayBus("https://relay.example", client=client)
        local = AsyncMock()
        bus.subscribe(ROUNDS_TOPIC, local)

        await bus.publish(ROUNDS_TOPIC, Event.round_status_change("r1"))
        await bus.aclose()

        local.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_relay_error_status_is_not_raised(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        bus = RelayBus("https://relay.example", client=client)

        await bus.publish(ROUNDS_TOPIC, Event.round_status_change("r1"))
        await bus.aclose()


# ---------------------------------------------------------------------------
# EventStream
# ---------------------------------------------------------------------------

class TestEventStream:
    """Tests for the SSE view of a subscription."""

    @pytest.mark.asyncio
    async def test_frames_published_events(self):
        bus = NotificationBus()
        stream = EventStream(bus, [ROUNDS_TOPIC])

        await bus.publish(ROUNDS_TOPIC, Event.round_status_change("r1"))
        frame = await stream.next_frame(timeout=1)

        assert frame.startswith("data: ")
        data = json.loads(frame[6:].strip())
        assert data["type"] == ROUND_STATUS_CHANGE
        assert data["topic"] == ROUNDS_TOPIC
        assert data["payload"] == {"roundId": "r1"}

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        stream = EventStream(NotificationBus(), [ROUNDS_TOPIC])
        assert await stream.next_frame(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        bus = NotificationBus()
        stream = EventStream(bus, [ROUNDS_TOPIC], max_pending=2)

        for round_id in ("r1", "r2", "r3"):
            await bus.publish(ROUNDS_TOPIC, Event.round_status_change(round_id))

        first = json.loads((await stream.next_frame(timeout=1))[6:])
        assert first["payload"]["roundId"] == "r2"

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        bus = NotificationBus()
        stream = EventStream(bus, [ROUNDS_TOPIC, VOTES_TOPIC])
        stream.close()
        assert bus.subscriber_count(ROUNDS_TOPIC) == 0
        assert bus.subscriber_count(VOTES_TOPIC) == 0

    def test_format_sse(self):
        frame = format_sse(VOTES_TOPIC, Event.table_change("votes", "p1"))
        assert frame.endswith("\n\n")
        assert json.loads(frame[6:])["event"] == "TABLE_CHANGE"

    @pytest.mark.asyncio
    async def test_interrupt_wakes_blocked_reader(self):
        """A reader waiting on an idle stream returns as soon as it is interrupted."""
        stream = EventStream(NotificationBus(), [ROUNDS_TOPIC])
        reader = asyncio.create_task(stream.next_frame(timeout=5))
        await asyncio.sleep(0)

        stream.interrupt()

        assert await asyncio.wait_for(reader, 1) is None
        assert [frame async for frame in stream.frames(heartbeat=5)] == []
