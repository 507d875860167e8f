"""Configuration for rushvote."""

import logging
import os
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

# Base data directory - configurable via environment
DATA_BASE_DIR = os.getenv("RUSHVOTE_DATA_DIR", "data")

# SQLAlchemy database URL (PostgreSQL in production, SQLite locally)
DATABASE_URL = os.getenv(
    "DATABASE_URL", f"sqlite:///{os.path.join(DATA_BASE_DIR, 'rushvote.db')}"
)

# Bayesian prior weight, in "votes' worth" of belief in the population mean
DEFAULT_PRIOR_WEIGHT = 5.0
PRIOR_WEIGHT = float(os.getenv("RUSHVOTE_PRIOR_WEIGHT", DEFAULT_PRIOR_WEIGHT))

# Score range for scored rounds
MIN_SCORE = 1
MAX_SCORE = 5

# Aggregate stats cache lifetime in seconds (0 disables the cache)
STATS_CACHE_TTL = float(os.getenv("RUSHVOTE_STATS_CACHE_TTL", "30"))

# Managed realtime relay (optional) - events stay in-process when unset
RELAY_URL = os.getenv("RUSHVOTE_RELAY_URL")
RELAY_KEY = os.getenv("RUSHVOTE_RELAY_KEY")
RELAY_TIMEOUT = float(os.getenv("RUSHVOTE_RELAY_TIMEOUT", "5.0"))

# Seconds between checks for scheduled rounds that are due to open (0 disables)
ADVANCE_INTERVAL = float(os.getenv("RUSHVOTE_ADVANCE_INTERVAL", "60"))

# Group name (from Remote-Groups) that grants administrative privilege
ADMIN_GROUP = os.getenv("RUSHVOTE_ADMIN_GROUP", "admins")

# Setting keys gating what non-admins may read
STATS_PUBLISHED_KEY = "stats_published"
INTERACTION_STATS_PUBLISHED_KEY = "interaction_stats_published"


def reload_config() -> dict[str, Any]:
    """
    Reload configuration from .env.

    This allows changing the prior weight, cache TTL or admin group
    without restarting the server. The database URL, relay and scheduler
    interval are read once at startup and are not affected.

    Returns:
        Dict with reload status and current config
    """
    global PRIOR_WEIGHT, STATS_CACHE_TTL, RELAY_URL, RELAY_KEY, RELAY_TIMEOUT, ADMIN_GROUP

    # Reload .env file
    load_dotenv(override=True)

    # Update module-level variables
    PRIOR_WEIGHT = float(os.getenv("RUSHVOTE_PRIOR_WEIGHT", DEFAULT_PRIOR_WEIGHT))
    STATS_CACHE_TTL = float(os.getenv("RUSHVOTE_STATS_CACHE_TTL", "30"))
    RELAY_URL = os.getenv("RUSHVOTE_RELAY_URL")
    RELAY_KEY = os.getenv("RUSHVOTE_RELAY_KEY")
    RELAY_TIMEOUT = float(os.getenv("RUSHVOTE_RELAY_TIMEOUT", "5.0"))
    ADMIN_GROUP = os.getenv("RUSHVOTE_ADMIN_GROUP", "admins")

    logger.info("Configuration reloaded")

    return {
        "status": "reloaded",
        "prior_weight": PRIOR_WEIGHT,
        "stats_cache_ttl": STATS_CACHE_TTL,
        "relay_configured": bool(RELAY_URL),
        "admin_group": ADMIN_GROUP,
    }
