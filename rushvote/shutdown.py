"""Graceful shutdown for open event streams.

On SIGTERM every open ``/api/events`` stream is interrupted and ends with a
``server_shutdown`` frame, so clients reconnect and re-read the round state
instead of showing a dropped connection or waiting out a heartbeat.
"""

import json
import logging

from .bus import EventStream

logger = logging.getLogger(__name__)

SHUTDOWN_EVENT = "server_shutdown"


class ShutdownCoordinator:
    """Knows which event streams are open and ends them on shutdown."""

    def __init__(self) -> None:
        self._shutting_down = False
        self._streams: set[EventStream] = set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def active_stream_count(self) -> int:
        return len(self._streams)

    def register(self, stream: EventStream) -> None:
        """Track a stream; one registered after shutdown began ends at once."""
        self._streams.add(stream)
        if self._shutting_down:
            stream.interrupt()

    def unregister(self, stream: EventStream) -> None:
        self._streams.discard(stream)

    def initiate_shutdown(self) -> None:
        """Interrupt every open stream."""
        logger.info("Shutdown initiated. Open event streams: %d", len(self._streams))
        self._shutting_down = True
        for stream in list(self._streams):
            stream.interrupt()

    def reset(self) -> None:
        """Forget shutdown state (app restarted in the same process)."""
        self._shutting_down = False
        self._streams.clear()

    @staticmethod
    def shutdown_sse_event() -> str:
        """The final frame sent on an interrupted stream."""
        event = {
            "type": SHUTDOWN_EVENT,
            "message": "Server is restarting; reconnect and refresh round state",
        }
        return f"data: {json.dumps(event)}\n\n"


# Module-level singleton
shutdown_coordinator = ShutdownCoordinator()
