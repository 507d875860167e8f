"""Wiring of the core components for one process."""

from dataclasses import dataclass
from typing import Optional

from . import config
from .aggregator import DecisionAggregator, StatsCache
from .ballots import BallotBox
from .bus import NotificationBus, create_bus
from .rounds import RoundStateMachine
from .sealing import DeliberationService
from .storage import Database, create_database


@dataclass
class Services:
    """Every core component, sharing one database and one bus."""

    db: Database
    bus: NotificationBus
    aggregator: DecisionAggregator
    rounds: RoundStateMachine
    delibs: DeliberationService
    ballots: BallotBox

    async def aclose(self) -> None:
        await self.bus.aclose()
        self.db.dispose()

    def apply_config(self) -> None:
        """Pick up a reloaded prior weight and cache TTL; drops cached stats."""
        self.aggregator.prior_weight = config.PRIOR_WEIGHT
        self.aggregator.cache.ttl = config.STATS_CACHE_TTL
        self.aggregator.invalidate()


def build_services(
    db: Optional[Database] = None,
    bus: Optional[NotificationBus] = None,
    prior_weight: Optional[float] = None,
    cache_ttl: Optional[float] = None,
) -> Services:
    """Assemble the components, defaulting to the configured store and bus.

    Writes made through any component drop the aggregator's cache, so this
    process never serves statistics older than its own last write.
    """
    db = db or create_database(config.DATABASE_URL)
    bus = bus or create_bus()
    ttl = config.STATS_CACHE_TTL if cache_ttl is None else cache_ttl
    aggregator = DecisionAggregator(db, prior_weight=prior_weight, cache=StatsCache(ttl))

    return Services(
        db=db,
        bus=bus,
        aggregator=aggregator,
        rounds=RoundStateMachine(db, bus, on_write=aggregator.invalidate),
        delibs=DeliberationService(db, bus, on_write=aggregator.invalidate),
        ballots=BallotBox(db, bus, on_write=aggregator.invalidate),
    )
