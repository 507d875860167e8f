"""Round lifecycle state machine.

The single-open-round rule is what lets the rest of the platform talk about
"the open round". This module is the only writer of ``rounds.status``; every
transition that can open a round runs as one transaction that locks the
target and the currently open round, and the store's partial unique index
rejects any opener that slips past a concurrent one.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from . import storage
from .bus import ROUNDS_TOPIC, Event, NotificationBus
from .errors import (
    ConcurrentTransition,
    ConfirmationRequired,
    DuplicateName,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .models import Archetype, Round, RoundStatus
from .storage import Database, utcnow
from .telemetry import trace_span

logger = logging.getLogger(__name__)

MAX_ROUND_NAME_LENGTH = 200


def parse_archetype(value: Archetype | str) -> Archetype:
    """Coerce a client-supplied archetype, rejecting unknown kinds."""
    try:
        return Archetype(value)
    except ValueError:
        allowed = ", ".join(a.value for a in Archetype)
        raise ValidationError(
            f"Unknown archetype {value!r}; expected one of: {allowed}"
        ) from None


class RoundStateMachine:
    """Owns round creation, opening, closing and deletion."""

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

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, round_id: str) -> Round:
        """Load a round or raise NotFound."""
        with self.db.read() as conn:
            round_ = storage.get_round(conn, round_id)
        if round_ is None:
            raise NotFound("Round", round_id)
        return round_

    def list_rounds(self) -> list[Round]:
        with self.db.read() as conn:
            return storage.list_rounds(conn)

    def current(self) -> Optional[Round]:
        """The open round, or None."""
        with self.db.read() as conn:
            open_rounds = storage.find_open_rounds(conn)
        if len(open_rounds) > 1:
            # The unique index makes this unreachable on a migrated schema
            logger.error("Found %d open rounds", len(open_rounds))
        return open_rounds[0] if open_rounds else None

    # -------------------------------------------------------------------------
    # Transitions
    #
    # Transactions run in worker threads; lock waits must not stall the loop.
    # -------------------------------------------------------------------------

    async def create(
        self,
        name: str,
        archetype: Archetype | str,
        open_now: bool = False,
        scheduled_at: Optional[datetime] = None,
        confirm: bool = True,
    ) -> Round:
        """Create a round, pending by default.

        Round names are unique (ignoring case); per-round statistics are
        reported by name.

        Args:
            name: Display name, required
            archetype: scored, interaction or deliberation
            open_now: Open the round immediately (closing any open round)
            scheduled_at: Start time of the event this round belongs to
            confirm: Consent to close another open round when open_now is set

        Returns:
            The stored round

        Raises:
            DuplicateName: another round already has this name
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Round name is required")
        if len(name) > MAX_ROUND_NAME_LENGTH:
            raise ValidationError(f"Round name must be at most {MAX_ROUND_NAME_LENGTH} characters")
        kind = parse_archetype(archetype)

        round_ = Round(
            id=str(uuid.uuid4()),
            name=name,
            archetype=kind,
            created_at=self._clock(),
            scheduled_at=scheduled_at,
        )

        with trace_span("rounds.create", {"round_id": round_.id, "archetype": kind.value}):
            round_ = await asyncio.to_thread(self._create_tx, round_, open_now, confirm)

        logger.info("Created %s round %s (%s)", kind.value, round_.name, round_.id)
        self._written()
        await self.bus.publish(ROUNDS_TOPIC, Event.table_change("rounds", round_.id, action="insert"))
        if open_now:
            await self.bus.publish(ROUNDS_TOPIC, Event.round_status_change(round_.id))
        return round_

    def _create_tx(self, round_: Round, open_now: bool, confirm: bool) -> Round:
        try:
            with self.db.transaction() as conn:
                existing = storage.find_round_by_name(conn, round_.name)
                if existing is not None:
                    raise DuplicateName(
                        f"A round named {existing.name} already exists",
                        details={"round_id": existing.id},
                    )
                storage.insert_round(conn, round_)
                if open_now:
                    round_, _ = self._open_locked(conn, round_.id, confirm)
        except IntegrityError as e:
            raise self._concurrent(round_.id, e) from e
        return round_

    async def open(self, round_id: str, confirm: bool = True) -> Round:
        """Open a round, closing whichever round is currently open.

        Both writes commit together or not at all.

        Args:
            round_id: Round to open
            confirm: Consent to close another open round. When False and
                another round is open, ConfirmationRequired is raised and
                nothing is written.

        Returns:
            The round, now open
        """
        return await self._open(round_id, confirm, action="open")

    async def reopen(self, round_id: str, confirm: bool = True) -> Round:
        """Re-enter ``open`` from ``closed``. Same invariant enforcement as open()."""
        return await self._open(round_id, confirm, action="reopen")

    async def _open(self, round_id: str, confirm: bool, action: str) -> Round:
        with trace_span(f"rounds.{action}", {"round_id": round_id, "confirm": confirm}):
            round_, changed = await asyncio.to_thread(self._open_tx, round_id, confirm, action)

        if changed:
            logger.info(
                "Round %s %sed",
                round_.name,
                action,
                extra={"extra_fields": {"round_id": round_id, "action": action}},
            )
            self._written()
            await self.bus.publish(ROUNDS_TOPIC, Event.round_status_change(round_id))
        return round_

    def _open_tx(self, round_id: str, confirm: bool, action: str) -> tuple[Round, bool]:
        try:
            with self.db.transaction() as conn:
                if action == "reopen":
                    target = storage.get_round(conn, round_id, for_update=True)
                    if target is None:
                        raise NotFound("Round", round_id)
                    if target.status is RoundStatus.PENDING:
                        raise InvalidTransition(
                            f"Round {target.name} has never been opened",
                            current_status=target.status.value,
                        )
                return self._open_locked(conn, round_id, confirm)
        except IntegrityError as e:
            raise self._concurrent(round_id, e) from e

    def _open_locked(self, conn: Connection, round_id: str, confirm: bool) -> tuple[Round, bool]:
        """Open ``round_id`` inside an already-started write transaction.

        Returns:
            (round, changed) where changed is False if it was already open
        """
        target = storage.get_round(conn, round_id, for_update=True)
        if target is None:
            raise NotFound("Round", round_id)
        if target.is_open:
            return target, False

        others = [r for r in storage.find_open_rounds(conn, for_update=True) if r.id != round_id]
        if others and not confirm:
            raise ConfirmationRequired(others[0].id, others[0].name)

        now = self._clock()
        for other in others:
            storage.set_round_status(conn, other.id, RoundStatus.CLOSED, closed_at=now)
            logger.info("Closing round %s to open %s", other.name, target.name)
        storage.set_round_status(conn, round_id, RoundStatus.OPEN, opened_at=now, closed_at=None)

        return storage.get_round(conn, round_id), True

    async def close(self, round_id: str) -> Round:
        """Close an open round.

        Raises:
            NotFound: the round does not exist
            InvalidTransition: the round is not open
        """
        with trace_span("rounds.close", {"round_id": round_id}):
            round_ = await asyncio.to_thread(self._close_tx, round_id)

        logger.info("Round %s closed", round_.name)
        self._written()
        await self.bus.publish(ROUNDS_TOPIC, Event.round_status_change(round_id))
        return round_

    def _close_tx(self, round_id: str) -> Round:
        with self.db.transaction() as conn:
            target = storage.get_round(conn, round_id, for_update=True)
            if target is None:
                raise NotFound("Round", round_id)
            if not target.is_open:
                raise InvalidTransition(
                    f"Round {target.name} is {target.status.value}, not open",
                    current_status=target.status.value,
                )
            storage.set_round_status(conn, round_id, RoundStatus.CLOSED, closed_at=self._clock())
            return storage.get_round(conn, round_id)

    async def delete(self, round_id: str) -> Round:
        """Delete a round and every ballot cast in it. Irreversible.

        Returns:
            The round as it was before deletion
        """
        with trace_span("rounds.delete", {"round_id": round_id}):
            target = await asyncio.to_thread(self._delete_tx, round_id)

        logger.warning("Deleted round %s (%s) and its ballots", target.name, round_id)
        self._written()
        await self.bus.publish(ROUNDS_TOPIC, Event.table_change("rounds", round_id, action="delete"))
        if target.is_open:
            await self.bus.publish(ROUNDS_TOPIC, Event.round_status_change(round_id))
        return target

    def _delete_tx(self, round_id: str) -> Round:
        with self.db.transaction() as conn:
            target = storage.get_round(conn, round_id, for_update=True)
            if target is None:
                raise NotFound("Round", round_id)
            storage.delete_round(conn, round_id)
        return target

    async def advance_due(self, now: Optional[datetime] = None) -> Optional[Round]:
        """Open the latest pending round whose scheduled start has passed.

        Run periodically by the scheduler. Opening closes the previous round,
        as when an administrator opens it with confirmation.

        Returns:
            The round opened, or None if nothing was due
        """
        now = now or self._clock()
        with trace_span("rounds.advance_due"):
            result = await asyncio.to_thread(self._advance_tx, now)
        if result is None:
            return None

        round_, changed, skipped = result
        if skipped:
            logger.info("Skipped %d older due rounds", skipped)
        if changed:
            logger.info("Scheduled round %s opened", round_.name)
            self._written()
            await self.bus.publish(ROUNDS_TOPIC, Event.round_status_change(round_.id))
        return round_

    def _advance_tx(self, now: datetime) -> Optional[tuple[Round, bool, int]]:
        """Returns (round, changed, skipped older due rounds), or None."""
        due: list[Round] = []
        try:
            with self.db.transaction() as conn:
                due = storage.due_pending_rounds(conn, now)
                if not due:
                    return None
                round_, changed = self._open_locked(conn, due[0].id, confirm=True)
        except IntegrityError as e:
            raise self._concurrent(due[0].id if due else "", e) from e
        return round_, changed, len(due) - 1

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _written(self) -> None:
        if self._on_write:
            self._on_write()

    @staticmethod
    def _concurrent(round_id: str, error: IntegrityError) -> ConcurrentTransition:
        logger.warning("Concurrent open rejected for round %s: %s", round_id, error.orig)
        return ConcurrentTransition(
            "Another round was opened at the same time; refresh and retry",
            details={"round_id": round_id},
        )
