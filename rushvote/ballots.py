"""Ballot intake: scores, interactions and deliberation decisions.

Every ballot is an upsert keyed by (voter, candidate, round), so a voter who
changes their mind overwrites their earlier ballot instead of adding one.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Optional

from sqlalchemy.engine import Connection

from . import config, storage
from .bus import DECISIONS_TOPIC, INTERACTIONS_TOPIC, VOTES_TOPIC, Event, NotificationBus
from .errors import NotFound, ValidationError
from .models import Archetype, Round
from .storage import Database

logger = logging.getLogger(__name__)

# Topic each archetype's ballot changes are announced on
BALLOT_TOPICS = {
    Archetype.SCORED: VOTES_TOPIC,
    Archetype.INTERACTION: INTERACTIONS_TOPIC,
    Archetype.DELIBERATION: DECISIONS_TOPIC,
}


def validate_score(score: Any) -> int:
    """Accept integers in the configured score range only."""
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("Score must be an integer")
    if not config.MIN_SCORE <= score <= config.MAX_SCORE:
        raise ValidationError(
            f"Score must be between {config.MIN_SCORE} and {config.MAX_SCORE}",
            details={"score": score},
        )
    return score


def _require_id(value: Optional[str], field: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value)


class BallotBox:
    """Validates and stores ballots against the round they are cast in."""

    def __init__(
        self,
        db: Database,
        bus: NotificationBus,
        on_write: Optional[Callable[[], None]] = None,
    ):
        self.db = db
        self.bus = bus
        self._on_write = on_write

    async def submit_vote(self, voter_id: str, pnm_id: str, round_id: str, score: Any) -> dict[str, Any]:
        """Record a 1-5 score for a candidate in an open scored round."""
        score = validate_score(score)
        return await self._submit(Archetype.SCORED, voter_id, pnm_id, round_id, score)

    async def submit_interaction(
        self, voter_id: str, pnm_id: str, round_id: str, interacted: Any
    ) -> dict[str, Any]:
        """Record whether the voter interacted with a candidate."""
        if not isinstance(interacted, bool):
            raise ValidationError("interacted must be a boolean")
        return await self._submit(Archetype.INTERACTION, voter_id, pnm_id, round_id, interacted)

    async def submit_decision(
        self, voter_id: str, pnm_id: str, round_id: str, decision: Any
    ) -> dict[str, Any]:
        """Record a yes/no decision for the active deliberation candidate."""
        if not isinstance(decision, bool):
            raise ValidationError("decision must be a boolean")
        return await self._submit(Archetype.DELIBERATION, voter_id, pnm_id, round_id, decision)

    async def _submit(
        self,
        archetype: Archetype,
        voter_id: str,
        pnm_id: str,
        round_id: str,
        value: Any,
    ) -> dict[str, Any]:
        voter_id = _require_id(voter_id, "voter id")
        pnm_id = _require_id(pnm_id, "pnmId")
        round_id = _require_id(round_id, "roundId")

        round_, ballot = await asyncio.to_thread(
            self._store, archetype, voter_id, pnm_id, round_id, value
        )

        logger.debug("Stored %s ballot for %s in round %s", archetype.value, pnm_id, round_.name)
        if self._on_write:
            self._on_write()
        await self.bus.publish(
            BALLOT_TOPICS[archetype],
            Event.table_change(storage.BALLOT_TABLES[archetype][0].name, pnm_id, roundId=round_id),
        )
        return ballot

    def _store(
        self, archetype: Archetype, voter_id: str, pnm_id: str, round_id: str, value: Any
    ) -> tuple[Round, dict[str, Any]]:
        with self.db.transaction() as conn:
            round_ = self._check_round(conn, archetype, round_id, pnm_id)
            return round_, storage.upsert_ballot(conn, archetype, voter_id, pnm_id, round_id, value)

    @staticmethod
    def _check_round(conn: Connection, archetype: Archetype, round_id: str, pnm_id: str) -> Round:
        round_ = storage.get_round(conn, round_id)
        if round_ is None:
            raise NotFound("Round", round_id)
        if round_.archetype is not archetype:
            raise ValidationError(
                f"Round {round_.name} does not accept {archetype.value} ballots",
                details={"archetype": round_.archetype.value},
            )
        if not round_.is_open:
            raise ValidationError(f"Round {round_.name} is not open for voting")
        if archetype is Archetype.DELIBERATION:
            if not round_.voting_open or round_.current_candidate_id != pnm_id:
                raise ValidationError("Voting is not open for this candidate")
        return round_
