"""SQLAlchemy-backed storage for rounds, ballots and settings.

This module holds no business rules: it knows how rows are laid out, how to
upsert a ballot on each dialect and how to open a write transaction that the
store serializes. Decisions about *whether* a write is allowed live in
``rounds``, ``sealing`` and ``ballots``.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    event,
    func,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .models import Archetype, Round, RoundStatus, SealedResult

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC on every dialect."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


metadata = MetaData()

rounds = Table(
    "rounds",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("archetype", String(20), nullable=False),
    Column("status", String(10), nullable=False, default=RoundStatus.PENDING.value),
    Column("created_at", UTCDateTime, nullable=False),
    Column("opened_at", UTCDateTime),
    Column("closed_at", UTCDateTime),
    Column("scheduled_at", UTCDateTime),
    Column("current_pnm_id", String(64)),
    Column("voting_open", Boolean, nullable=False, default=False),
    Column("results_revealed", Boolean, nullable=False, default=False),
    Column("sealed_pnm_ids", JSON, nullable=False),
    Column("sealed_results", JSON, nullable=False),
    # At most one open round, enforced by the store itself
    Index(
        "uq_rounds_single_open",
        "status",
        unique=True,
        sqlite_where=text("status = 'open'"),
        postgresql_where=text("status = 'open'"),
    ),
)


def _ballot_table(name: str, value_column: Column) -> Table:
    return Table(
        name,
        metadata,
        Column("voter_id", String(64), primary_key=True),
        Column("pnm_id", String(64), primary_key=True, index=True),
        Column(
            "round_id",
            String(36),
            ForeignKey("rounds.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
        value_column,
        Column("created_at", UTCDateTime, nullable=False),
        Column("updated_at", UTCDateTime, nullable=False),
    )


votes = _ballot_table("votes", Column("score", Integer, nullable=False))
interactions = _ballot_table("interactions", Column("interacted", Boolean, nullable=False))
deliberation_decisions = _ballot_table(
    "deliberation_decisions", Column("decision", Boolean, nullable=False)
)

settings = Table(
    "settings",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", JSON),
    Column("updated_at", UTCDateTime, nullable=False),
)

# Which table (and payload column) each archetype's ballots live in
BALLOT_TABLES: dict[Archetype, tuple[Table, str]] = {
    Archetype.SCORED: (votes, "score"),
    Archetype.INTERACTION: (interactions, "interacted"),
    Archetype.DELIBERATION: (deliberation_decisions, "decision"),
}

# Deliberation columns the sealing subsystem may write
DELIBERATION_COLUMNS = frozenset(
    {"current_pnm_id", "voting_open", "results_revealed", "sealed_pnm_ids", "sealed_results"}
)


# =============================================================================
# Engine / transactions
# =============================================================================


class Database:
    """Engine wrapper handing out read and serialized write connections.

    Callers run these from worker threads. An in-memory SQLite engine has a
    single shared connection, so with ``single_connection`` every
    transaction holds a lock for its whole length.
    """

    def __init__(self, engine: Engine, single_connection: bool = False):
        self.engine = engine
        self._lock = threading.RLock() if single_connection else nullcontext()

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        """Create tables and indexes that do not exist yet."""
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Write transaction. Commits on success, rolls back on any error.

        On SQLite the transaction starts with BEGIN IMMEDIATE so concurrent
        writers queue on the database lock; PostgreSQL callers lock rows
        explicitly with ``for_update``.
        """
        with self._lock, self.engine.connect() as conn:
            conn.execution_options(rushvote_write=True)
            with conn.begin():
                yield conn

    @contextmanager
    def read(self) -> Iterator[Connection]:
        """Read-only connection inside a deferred transaction."""
        with self._lock, self.engine.connect() as conn:
            with conn.begin():
                yield conn

    def dispose(self) -> None:
        self.engine.dispose()


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Let SQLAlchemy's "begin" event own transaction boundaries
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Connection) -> None:
        mode = "IMMEDIATE" if conn.get_execution_options().get("rushvote_write") else "DEFERRED"
        conn.exec_driver_sql(f"BEGIN {mode}")


def normalize_database_url(url: str) -> str:
    """Point bare PostgreSQL URLs at the psycopg 3 driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def create_database(url: str, echo: bool = False) -> Database:
    """Create the engine for ``url`` and make sure the schema exists.

    Args:
        url: SQLAlchemy database URL
        echo: Log every SQL statement

    Returns:
        Ready-to-use Database
    """
    url = normalize_database_url(url)
    kwargs: dict[str, Any] = {"echo": echo}
    single_connection = False
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
            single_connection = True
        else:
            db_path = url.split("///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine)

    database = Database(engine, single_connection=single_connection)
    database.create_all()
    logger.info("Database ready (dialect=%s)", engine.dialect.name)
    return database


# =============================================================================
# Rounds
# =============================================================================


def _row_to_round(row: Any) -> Round:
    data = row._mapping
    return Round(
        id=data["id"],
        name=data["name"],
        archetype=Archetype(data["archetype"]),
        status=RoundStatus(data["status"]),
        created_at=data["created_at"],
        opened_at=data["opened_at"],
        closed_at=data["closed_at"],
        scheduled_at=data["scheduled_at"],
        current_candidate_id=data["current_pnm_id"],
        voting_open=bool(data["voting_open"]),
        results_revealed=bool(data["results_revealed"]),
        sealed_candidate_ids=set(data["sealed_pnm_ids"] or []),
        sealed_results={
            pnm_id: SealedResult.from_dict(snapshot)
            for pnm_id, snapshot in (data["sealed_results"] or {}).items()
        },
    )


def insert_round(conn: Connection, round_: Round) -> None:
    """Insert a new round row."""
    conn.execute(
        rounds.insert().values(
            id=round_.id,
            name=round_.name,
            archetype=round_.archetype.value,
            status=round_.status.value,
            created_at=round_.created_at or utcnow(),
            opened_at=round_.opened_at,
            closed_at=round_.closed_at,
            scheduled_at=round_.scheduled_at,
            current_pnm_id=round_.current_candidate_id,
            voting_open=round_.voting_open,
            results_revealed=round_.results_revealed,
            sealed_pnm_ids=sorted(round_.sealed_candidate_ids),
            sealed_results={k: v.to_dict() for k, v in round_.sealed_results.items()},
        )
    )


def get_round(conn: Connection, round_id: str, for_update: bool = False) -> Optional[Round]:
    """Load a round, optionally locking its row until the transaction ends."""
    stmt = select(rounds).where(rounds.c.id == round_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).first()
    return _row_to_round(row) if row else None


def list_rounds(
    conn: Connection,
    archetype: Optional[Archetype] = None,
    status: Optional[RoundStatus] = None,
) -> list[Round]:
    """List rounds in creation order, optionally filtered."""
    stmt = select(rounds).order_by(rounds.c.created_at, rounds.c.name)
    if archetype is not None:
        stmt = stmt.where(rounds.c.archetype == archetype.value)
    if status is not None:
        stmt = stmt.where(rounds.c.status == status.value)
    return [_row_to_round(row) for row in conn.execute(stmt)]


def find_round_by_name(conn: Connection, name: str) -> Optional[Round]:
    """Round with this name, ignoring case."""
    stmt = select(rounds).where(func.lower(rounds.c.name) == name.lower())
    row = conn.execute(stmt).first()
    return _row_to_round(row) if row else None


def find_open_rounds(conn: Connection, for_update: bool = False) -> list[Round]:
    """Rounds currently open. More than one would mean a corrupted store."""
    stmt = select(rounds).where(rounds.c.status == RoundStatus.OPEN.value)
    if for_update:
        stmt = stmt.with_for_update()
    return [_row_to_round(row) for row in conn.execute(stmt)]


def due_pending_rounds(conn: Connection, now: datetime) -> list[Round]:
    """Pending rounds whose scheduled start has passed, latest first.

    Rounds scheduled before the latest scheduled round that has already been
    opened are left out; the schedule only moves forward.
    """
    started = (
        select(func.max(rounds.c.scheduled_at))
        .where(rounds.c.opened_at.is_not(None))
        .scalar_subquery()
    )
    stmt = (
        select(rounds)
        .where(rounds.c.status == RoundStatus.PENDING.value)
        .where(rounds.c.scheduled_at.is_not(None))
        .where(rounds.c.scheduled_at <= now)
        .where(or_(started.is_(None), rounds.c.scheduled_at > started))
        .order_by(rounds.c.scheduled_at.desc())
    )
    return [_row_to_round(row) for row in conn.execute(stmt)]


def set_round_status(
    conn: Connection,
    round_id: str,
    status: RoundStatus,
    **stamps: Optional[datetime],
) -> int:
    """Write a round's status plus its opened_at/closed_at stamps.

    Returns:
        Number of rows updated
    """
    unknown = set(stamps) - {"opened_at", "closed_at"}
    if unknown:
        raise ValueError(f"Unexpected status columns: {sorted(unknown)}")
    result = conn.execute(
        update(rounds).where(rounds.c.id == round_id).values(status=status.value, **stamps)
    )
    return result.rowcount


def update_deliberation_state(conn: Connection, round_id: str, **values: Any) -> int:
    """Write deliberation columns of a round. Status is never touched here.

    Returns:
        Number of rows updated
    """
    unknown = set(values) - DELIBERATION_COLUMNS
    if unknown:
        raise ValueError(f"Not deliberation columns: {sorted(unknown)}")
    if not values:
        return 0
    result = conn.execute(update(rounds).where(rounds.c.id == round_id).values(**values))
    return result.rowcount


def delete_round(conn: Connection, round_id: str) -> int:
    """Delete a round and every ballot cast in it.

    Ballot rows also cascade through the foreign key; deleting them here
    keeps stores without enforced foreign keys consistent.

    Returns:
        Number of round rows deleted
    """
    for table, _ in BALLOT_TABLES.values():
        conn.execute(delete(table).where(table.c.round_id == round_id))
    return conn.execute(delete(rounds).where(rounds.c.id == round_id)).rowcount


# =============================================================================
# Ballots
# =============================================================================


def upsert_ballot(
    conn: Connection,
    archetype: Archetype,
    voter_id: str,
    pnm_id: str,
    round_id: str,
    value: Any,
) -> dict[str, Any]:
    """Insert or overwrite the ballot keyed by (voter, candidate, round).

    Returns:
        The stored ballot as a dict
    """
    table, value_column = BALLOT_TABLES[archetype]
    now = utcnow()
    values = {
        "voter_id": voter_id,
        "pnm_id": pnm_id,
        "round_id": round_id,
        value_column: value,
        "created_at": now,
        "updated_at": now,
    }

    dialect = conn.dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values)
    else:
        raise NotImplementedError(f"Ballot upsert not supported on {dialect}")

    stmt = stmt.on_conflict_do_update(
        index_elements=["voter_id", "pnm_id", "round_id"],
        set_={value_column: stmt.excluded[value_column], "updated_at": now},
    )
    conn.execute(stmt)

    row = conn.execute(
        select(table).where(
            table.c.voter_id == voter_id,
            table.c.pnm_id == pnm_id,
            table.c.round_id == round_id,
        )
    ).one()
    return dict(row._mapping)


def count_ballots(conn: Connection, archetype: Archetype, round_id: Optional[str] = None) -> int:
    """Count ballot rows of one archetype, optionally in one round."""
    table, _ = BALLOT_TABLES[archetype]
    stmt = select(func.count()).select_from(table)
    if round_id is not None:
        stmt = stmt.where(table.c.round_id == round_id)
    return conn.execute(stmt).scalar_one()


def scored_votes(conn: Connection, pnm_id: Optional[str] = None) -> list[dict[str, Any]]:
    """Scores cast in scored rounds, joined with the round name.

    Args:
        pnm_id: Restrict to one candidate (None for every candidate)

    Returns:
        List of {pnm_id, round_id, round_name, score} dicts
    """
    stmt = (
        select(votes.c.pnm_id, votes.c.round_id, rounds.c.name.label("round_name"), votes.c.score)
        .join(rounds, rounds.c.id == votes.c.round_id)
        .where(rounds.c.archetype == Archetype.SCORED.value)
    )
    if pnm_id is not None:
        stmt = stmt.where(votes.c.pnm_id == pnm_id)
    return [dict(row._mapping) for row in conn.execute(stmt)]


def interaction_rows(conn: Connection, pnm_id: str) -> list[dict[str, Any]]:
    """Interaction records for one candidate, joined with the round name."""
    stmt = (
        select(
            interactions.c.round_id,
            rounds.c.name.label("round_name"),
            interactions.c.interacted,
        )
        .join(rounds, rounds.c.id == interactions.c.round_id)
        .where(rounds.c.archetype == Archetype.INTERACTION.value)
        .where(interactions.c.pnm_id == pnm_id)
    )
    return [dict(row._mapping) for row in conn.execute(stmt)]


def decision_counts(conn: Connection, round_id: str, pnm_id: str) -> tuple[int, int]:
    """Count yes and no decisions for one candidate in one round."""
    stmt = (
        select(deliberation_decisions.c.decision, func.count())
        .where(deliberation_decisions.c.round_id == round_id)
        .where(deliberation_decisions.c.pnm_id == pnm_id)
        .group_by(deliberation_decisions.c.decision)
    )
    counts = {bool(decision): n for decision, n in conn.execute(stmt)}
    return counts.get(True, 0), counts.get(False, 0)


def decision_rows(conn: Connection, round_id: str, pnm_id: str) -> list[dict[str, Any]]:
    """Individual decisions for one candidate. Administrative use only."""
    stmt = (
        select(
            deliberation_decisions.c.voter_id,
            deliberation_decisions.c.decision,
            deliberation_decisions.c.updated_at,
        )
        .where(deliberation_decisions.c.round_id == round_id)
        .where(deliberation_decisions.c.pnm_id == pnm_id)
        .order_by(deliberation_decisions.c.updated_at)
    )
    return [dict(row._mapping) for row in conn.execute(stmt)]


def delete_decisions(conn: Connection, round_id: str, pnm_id: str) -> int:
    """Remove every decision for one candidate in one round."""
    result = conn.execute(
        delete(deliberation_decisions)
        .where(deliberation_decisions.c.round_id == round_id)
        .where(deliberation_decisions.c.pnm_id == pnm_id)
    )
    return result.rowcount


# =============================================================================
# Settings
# =============================================================================


def get_setting(conn: Connection, key: str, default: Any = None) -> Any:
    """Read a setting value, or ``default`` when the row is missing."""
    row = conn.execute(select(settings.c.value).where(settings.c.key == key)).first()
    return default if row is None else row[0]


def set_setting(conn: Connection, key: str, value: Any) -> None:
    """Insert or overwrite a setting."""
    existing = conn.execute(select(settings.c.key).where(settings.c.key == key)).first()
    if existing is None:
        conn.execute(settings.insert().values(key=key, value=value, updated_at=utcnow()))
    else:
        conn.execute(
            update(settings).where(settings.c.key == key).values(value=value, updated_at=utcnow())
        )
