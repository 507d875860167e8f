"""Round lifecycle and deliberation data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Archetype(str, Enum):
    """Kinds of decision a round collects."""

    SCORED = "scored"  # 1-5 score per candidate
    INTERACTION = "interaction"  # Did the voter interact with the candidate
    DELIBERATION = "deliberation"  # Live yes/no tally with sealing


class RoundStatus(str, Enum):
    """Lifecycle states of a round."""

    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime | None:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Tally:
    """Aggregate yes/no counts for one candidate in a deliberation round."""

    yes: int = 0
    no: int = 0

    @property
    def total(self) -> int:
        return self.yes + self.no

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {"yes": self.yes, "no": self.no, "total": self.total}


@dataclass(frozen=True)
class SealedResult:
    """Snapshot of a tally frozen by an administrator."""

    yes: int
    no: int
    total: int
    timestamp: datetime

    @classmethod
    def capture(cls, tally: Tally, timestamp: datetime) -> "SealedResult":
        """Freeze a live tally at the given instant."""
        return cls(yes=tally.yes, no=tally.no, total=tally.total, timestamp=timestamp)

    @property
    def has_majority(self) -> bool:
        return self.yes > self.no

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "yes": self.yes,
            "no": self.no,
            "total": self.total,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SealedResult":
        """Create from dictionary.

        Raises:
            ValueError: a negative count, or a total other than yes + no
        """
        yes = int(data.get("yes", 0) or 0)
        no = int(data.get("no", 0) or 0)
        total = int(data.get("total", yes + no) or 0)
        if yes < 0 or no < 0:
            raise ValueError("counts must not be negative")
        if total != yes + no:
            raise ValueError(f"total {total} does not equal yes + no ({yes + no})")
        return cls(
            yes=yes,
            no=no,
            total=total,
            timestamp=_parse_dt(data.get("timestamp")) or datetime.fromtimestamp(0, timezone.utc),
        )


@dataclass
class Round:
    """A named voting period with exactly one archetype.

    The deliberation fields are meaningful only for deliberation rounds and
    stay at their defaults for the other archetypes.
    """

    id: str
    name: str
    archetype: Archetype
    status: RoundStatus = RoundStatus.PENDING
    created_at: datetime | None = None
    opened_at: datetime | None = None
    closed_at: datetime | None = None
    scheduled_at: datetime | None = None

    # Deliberation state
    current_candidate_id: str | None = None
    voting_open: bool = False
    results_revealed: bool = False
    sealed_candidate_ids: set[str] = field(default_factory=set)
    sealed_results: dict[str, SealedResult] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status is RoundStatus.OPEN

    def is_sealed(self, candidate_id: str) -> bool:
        return candidate_id in self.sealed_candidate_ids

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage/API."""
        result = {
            "id": self.id,
            "name": self.name,
            "archetype": self.archetype.value,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "opened_at": _iso(self.opened_at),
            "closed_at": _iso(self.closed_at),
            "scheduled_at": _iso(self.scheduled_at),
        }
        if self.archetype is Archetype.DELIBERATION:
            result.update(
                {
                    "current_pnm_id": self.current_candidate_id,
                    "voting_open": self.voting_open,
                    "results_revealed": self.results_revealed,
                    "sealed_pnm_ids": sorted(self.sealed_candidate_ids),
                    "sealed_results": {
                        pnm_id: snapshot.to_dict()
                        for pnm_id, snapshot in self.sealed_results.items()
                    },
                }
            )
        return result
