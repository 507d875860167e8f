"""Deliberation sealing: live yes/no tallies and frozen snapshots.

A deliberation round carries an active-candidate pointer, two independent
toggles (voting open, results revealed) and a map of sealed snapshots. All of
that state lives on the round row; tallies are always counted fresh from the
decision rows.

Individual decisions never leave this module except through ``decisions()``,
which refuses non-administrators.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.engine import Connection

from . import storage
from .bus import DECISIONS_TOPIC, ROUNDS_TOPIC, Event, NotificationBus
from .errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from .models import (
    Archetype,
    PublicResult,
    ResultVisibility,
    Round,
    SealedResult,
    Tally,
)
from .storage import Database, utcnow
from .telemetry import trace_span

logger = logging.getLogger(__name__)

# Round-control fields and the round columns they write
CONTROL_COLUMNS = {
    "current_candidate_id": "current_pnm_id",
    "voting_open": "voting_open",
    "results_revealed": "results_revealed",
    "sealed_candidate_ids": "sealed_pnm_ids",
    "sealed_results": "sealed_results",
}


def _load_deliberation(conn: Connection, round_id: str, for_update: bool = False) -> Round:
    round_ = storage.get_round(conn, round_id, for_update=for_update)
    if round_ is None:
        raise NotFound("Round", round_id)
    if round_.archetype is not Archetype.DELIBERATION:
        raise InvalidTransition(
            f"Round {round_.name} is a {round_.archetype.value} round, not deliberation",
            current_status=round_.status.value,
        )
    return round_


def _count(conn: Connection, round_id: str, candidate_id: str) -> Tally:
    yes, no = storage.decision_counts(conn, round_id, candidate_id)
    return Tally(yes=yes, no=no)


def _seal_columns(sealed_ids: set[str], sealed_results: dict[str, SealedResult]) -> dict[str, Any]:
    return {
        "sealed_pnm_ids": sorted(sealed_ids),
        "sealed_results": {pnm_id: snap.to_dict() for pnm_id, snap in sealed_results.items()},
    }


class DeliberationService:
    """Administrative control of a live deliberation round."""

    def __init__(
        self,
        db: Database,
        bus: NotificationBus,
        on_write: Optional[Callable[[], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.bus = bus
        self._on_write = on_write
        self._clock = clock

    async def _update(self, round_id: str, **columns: Any) -> Round:
        round_ = await asyncio.to_thread(self._update_tx, round_id, columns)
        await self._notify(round_id)
        return round_

    def _update_tx(self, round_id: str, columns: dict[str, Any]) -> Round:
        with self.db.transaction() as conn:
            _load_deliberation(conn, round_id, for_update=True)
            storage.update_deliberation_state(conn, round_id, **columns)
            return storage.get_round(conn, round_id)

    async def _notify(self, round_id: str) -> None:
        if self._on_write:
            self._on_write()
        await self.bus.publish(ROUNDS_TOPIC, Event.table_change("rounds", round_id))

    # -------------------------------------------------------------------------
    # Pointer and toggles
    # -------------------------------------------------------------------------

    async def set_active_candidate(self, round_id: str, candidate_id: Optional[str]) -> Round:
        """Point the round at a candidate. Voting and seal state are kept."""
        logger.info("Round %s active candidate -> %s", round_id, candidate_id)
        return await self._update(round_id, current_pnm_id=candidate_id)

    async def set_voting_open(self, round_id: str, voting_open: bool) -> Round:
        logger.info("Round %s voting %s", round_id, "opened" if voting_open else "closed")
        return await self._update(round_id, voting_open=bool(voting_open))

    async def set_results_revealed(self, round_id: str, revealed: bool) -> Round:
        logger.info("Round %s results %s", round_id, "revealed" if revealed else "hidden")
        return await self._update(round_id, results_revealed=bool(revealed))

    async def apply_control(self, round_id: str, **changes: Any) -> Round:
        """Apply a partial round-control update in one write.

        Accepted keys: current_candidate_id, voting_open, results_revealed,
        sealed_candidate_ids, sealed_results. Keys that are absent are left
        untouched; None for current_candidate_id clears the pointer.

        Raises:
            ValidationError: no recognised field was supplied
        """
        unknown = set(changes) - set(CONTROL_COLUMNS)
        if unknown:
            raise ValidationError(f"Unknown round-control fields: {sorted(unknown)}")
        if not changes:
            raise ValidationError("No fields to update")

        columns: dict[str, Any] = {}
        for key, value in changes.items():
            if key == "sealed_candidate_ids":
                value = sorted({str(pnm_id) for pnm_id in value or ()})
            elif key == "sealed_results":
                try:
                    value = {
                        str(pnm_id): SealedResult.from_dict(snap).to_dict()
                        for pnm_id, snap in (value or {}).items()
                    }
                except (TypeError, ValueError, AttributeError) as e:
                    raise ValidationError(f"Malformed sealed results: {e}") from e
            elif key in ("voting_open", "results_revealed"):
                if not isinstance(value, bool):
                    raise ValidationError(f"{key} must be a boolean")
            columns[CONTROL_COLUMNS[key]] = value

        with trace_span("delibs.control", {"round_id": round_id, "fields": ",".join(sorted(changes))}):
            return await self._update(round_id, **columns)

    # -------------------------------------------------------------------------
    # Tally and seals
    # -------------------------------------------------------------------------

    def tally(self, round_id: str, candidate_id: str) -> Tally:
        """Live yes/no counts, read fresh from the decision rows."""
        with self.db.read() as conn:
            _load_deliberation(conn, round_id)
            return _count(conn, round_id, candidate_id)

    async def seal(self, round_id: str, candidate_id: str) -> SealedResult:
        """Freeze the current tally for a candidate.

        Re-sealing replaces the previous snapshot with a fresh count.

        Raises:
            ValidationError: no decisions have been recorded yet
        """
        with trace_span("delibs.seal", {"round_id": round_id, "pnm_id": candidate_id}):
            snapshot = await asyncio.to_thread(self._seal_tx, round_id, candidate_id)

        logger.info(
            "Sealed %s in round %s at %dY/%dN",
            candidate_id,
            round_id,
            snapshot.yes,
            snapshot.no,
        )
        await self._notify(round_id)
        return snapshot

    async def unseal(self, round_id: str, candidate_id: str) -> Round:
        """Drop a candidate's snapshot so it shows the live tally again."""
        with trace_span("delibs.unseal", {"round_id": round_id, "pnm_id": candidate_id}):
            round_ = await asyncio.to_thread(self._unseal_tx, round_id, candidate_id)

        logger.info("Unsealed %s in round %s", candidate_id, round_id)
        await self._notify(round_id)
        return round_

    async def clear_decisions(self, round_id: str, candidate_id: str) -> int:
        """Delete every decision for a candidate in this round.

        A sealed snapshot is left as it is; unseal separately if needed.

        Returns:
            Number of decisions removed
        """
        removed = await asyncio.to_thread(self._clear_tx, round_id, candidate_id)

        logger.warning("Cleared %d decisions for %s in round %s", removed, candidate_id, round_id)
        if self._on_write:
            self._on_write()
        await self.bus.publish(
            DECISIONS_TOPIC,
            Event.table_change("deliberation_decisions", candidate_id, roundId=round_id),
        )
        return removed

    def _seal_tx(self, round_id: str, candidate_id: str) -> SealedResult:
        with self.db.transaction() as conn:
            round_ = _load_deliberation(conn, round_id, for_update=True)
            tally = _count(conn, round_id, candidate_id)
            if tally.total == 0:
                raise ValidationError(
                    "No decisions recorded for this candidate; load results before sealing",
                    details={"pnm_id": candidate_id},
                )
            snapshot = SealedResult.capture(tally, self._clock())
            sealed_results = {**round_.sealed_results, candidate_id: snapshot}
            storage.update_deliberation_state(
                conn,
                round_id,
                **_seal_columns(round_.sealed_candidate_ids | {candidate_id}, sealed_results),
            )
        return snapshot

    def _unseal_tx(self, round_id: str, candidate_id: str) -> Round:
        with self.db.transaction() as conn:
            round_ = _load_deliberation(conn, round_id, for_update=True)
            sealed_results = dict(round_.sealed_results)
            sealed_results.pop(candidate_id, None)
            storage.update_deliberation_state(
                conn,
                round_id,
                **_seal_columns(round_.sealed_candidate_ids - {candidate_id}, sealed_results),
            )
            return storage.get_round(conn, round_id)

    def _clear_tx(self, round_id: str, candidate_id: str) -> int:
        with self.db.transaction() as conn:
            _load_deliberation(conn, round_id, for_update=True)
            return storage.delete_decisions(conn, round_id, candidate_id)

    # -------------------------------------------------------------------------
    # Read paths
    # -------------------------------------------------------------------------

    def public_result(self, round_id: str, candidate_id: str) -> PublicResult:
        """What a voter may see for a candidate: aggregates only.

        Sealed candidates always show their snapshot. Otherwise the live
        tally is shown only for the active candidate while results are
        revealed.
        """
        with self.db.read() as conn:
            round_ = _load_deliberation(conn, round_id)
            if round_.is_sealed(candidate_id) and candidate_id in round_.sealed_results:
                return PublicResult(
                    candidate_id,
                    ResultVisibility.SEALED,
                    sealed=round_.sealed_results[candidate_id],
                )
            if round_.results_revealed and round_.current_candidate_id == candidate_id:
                return PublicResult(
                    candidate_id,
                    ResultVisibility.LIVE,
                    tally=_count(conn, round_id, candidate_id),
                )
        return PublicResult(candidate_id, ResultVisibility.HIDDEN)

    def non_majority(self, round_id: str) -> list[str]:
        """Sealed candidates whose snapshot has no majority yes (yes <= no)."""
        with self.db.read() as conn:
            round_ = _load_deliberation(conn, round_id)
        return sorted(
            pnm_id
            for pnm_id in round_.sealed_candidate_ids
            if pnm_id in round_.sealed_results and not round_.sealed_results[pnm_id].has_majority
        )

    def decisions(self, round_id: str, candidate_id: str, is_admin: bool) -> list[dict[str, Any]]:
        """Individual decision rows. Administrators only.

        Raises:
            PermissionDenied: caller is not an administrator
        """
        if not is_admin:
            logger.warning("Refused individual decisions for %s in round %s", candidate_id, round_id)
            raise PermissionDenied("Individual decisions are visible to administrators only")
        with self.db.read() as conn:
            _load_deliberation(conn, round_id)
            return storage.decision_rows(conn, round_id, candidate_id)
