"""Published aggregate statistics."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .round import SealedResult, Tally


@dataclass(frozen=True)
class ScoreSummary:
    """Average, shrunk score and vote count over some set of votes."""

    average: float = 0.0
    bayesian: float = 0.0
    count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"average": self.average, "bayesian": self.bayesian, "count": self.count}


@dataclass(frozen=True)
class VoteStats:
    """Score statistics for one candidate across all scored rounds."""

    candidate_id: str
    average: float = 0.0
    bayesian: float = 0.0
    count: int = 0
    round_stats: dict[str, ScoreSummary] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pnm_id": self.candidate_id,
            "average": self.average,
            "bayesian": self.bayesian,
            "count": self.count,
            "round_stats": {name: s.to_dict() for name, s in self.round_stats.items()},
        }


@dataclass(frozen=True)
class InteractionSummary:
    """Yes/no interaction counts for one round."""

    yes: int = 0
    no: int = 0

    @property
    def percent(self) -> float:
        total = self.yes + self.no
        return 0.0 if total == 0 else self.yes / total * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"yes": self.yes, "no": self.no, "percent": self.percent}


@dataclass(frozen=True)
class InteractionStats:
    """Interaction statistics for one candidate."""

    candidate_id: str
    interacted: int = 0
    not_interacted: int = 0
    round_stats: dict[str, InteractionSummary] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.interacted + self.not_interacted

    @property
    def percent(self) -> float:
        return 0.0 if self.total == 0 else self.interacted / self.total * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pnm_id": self.candidate_id,
            "interacted": self.interacted,
            "not_interacted": self.not_interacted,
            "total": self.total,
            "percent": self.percent,
            "round_stats": {name: s.to_dict() for name, s in self.round_stats.items()},
        }


class ResultVisibility(str, Enum):
    """Which deliberation result a non-administrator is allowed to see."""

    SEALED = "sealed"
    LIVE = "live"
    HIDDEN = "hidden"


@dataclass(frozen=True)
class PublicResult:
    """Deliberation outcome as shown to voters. Never carries voter rows."""

    candidate_id: str
    visibility: ResultVisibility
    tally: Tally | None = None
    sealed: SealedResult | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "pnm_id": self.candidate_id,
            "visibility": self.visibility.value,
        }
        if self.sealed is not None:
            result["result"] = self.sealed.to_dict()
        elif self.tally is not None:
            result["result"] = self.tally.to_dict()
        return result
