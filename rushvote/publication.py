"""Publication flags: whether voters may read aggregated statistics."""

import asyncio
import logging

from . import config, storage
from .bus import SETTINGS_TOPIC, STATS_PUBLISH_TOGGLE, Event, NotificationBus
from .errors import ValidationError
from .storage import Database

logger = logging.getLogger(__name__)

PUBLICATION_KEYS = (config.STATS_PUBLISHED_KEY, config.INTERACTION_STATS_PUBLISHED_KEY)


def _coerce(value: object) -> bool:
    # Older rows stored the flag as a string
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true"
    return False


def is_published(db: Database, key: str) -> bool:
    """Read a publication flag; a missing row means unpublished."""
    with db.read() as conn:
        return _coerce(storage.get_setting(conn, key, False))


def _store(db: Database, key: str, published: bool) -> None:
    with db.transaction() as conn:
        storage.set_setting(conn, key, published)


async def set_published(db: Database, bus: NotificationBus, key: str, published: bool) -> bool:
    """Write a publication flag and announce the change.

    Returns:
        The stored value
    """
    if key not in PUBLICATION_KEYS:
        raise ValidationError(f"Unknown setting {key!r}")
    if not isinstance(published, bool):
        raise ValidationError("published must be a boolean")

    await asyncio.to_thread(_store, db, key, published)

    logger.info("Setting %s -> %s", key, published)
    await bus.publish(SETTINGS_TOPIC, Event(STATS_PUBLISH_TOGGLE, {"key": key, "published": published}))
    return published
