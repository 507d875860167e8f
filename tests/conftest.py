"""Shared test fixtures and configuration.

Sets environment variables before any rushvote modules are imported, so the
app never touches the on-disk database or starts its round scheduler.
"""

import os

# Set env vars BEFORE any rushvote imports happen.
# pytest loads conftest.py before test modules, so this runs first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RUSHVOTE_AUTH_ENABLED", "false")
os.environ.setdefault("RUSHVOTE_ADVANCE_INTERVAL", "0")
os.environ.setdefault("RUSHVOTE_STATS_CACHE_TTL", "0")
os.environ.pop("RUSHVOTE_RELAY_URL", None)

import pytest  # noqa: E402

from rushvote.bus import ALL_TOPICS, NotificationBus  # noqa: E402
from rushvote.models import Archetype  # noqa: E402
from rushvote.services import build_services  # noqa: E402
from rushvote.storage import create_database  # noqa: E402


class EventRecorder:
    """Bus subscriber that remembers every (topic, event) it sees."""

    def __init__(self, bus: NotificationBus):
        self.events = []
        bus.subscribe(ALL_TOPICS, self)

    def __call__(self, topic, event):
        self.events.append((topic, event))

    def named(self, name):
        return [event for _, event in self.events if event.name == name]

    def clear(self):
        self.events.clear()


@pytest.fixture
def db():
    """Fresh in-memory SQLite store with the schema created."""
    database = create_database("sqlite://")
    yield database
    database.dispose()


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def services(db, bus):
    """Every component wired to the test store, prior weight 5, no cache."""
    return build_services(db=db, bus=bus, prior_weight=5.0, cache_ttl=0)


@pytest.fixture
def make_round(services):
    """Factory creating a round of the given archetype, open by default."""

    async def _make(name="Round", archetype=Archetype.SCORED, open_now=True):
        return await services.rounds.create(name, archetype, open_now=open_now, confirm=True)

    return _make
