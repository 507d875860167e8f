"""Decision aggregator: published statistics computed from raw ballots.

Everything here is a pure read. Missing candidates and empty vote sets give
zeroed statistics rather than errors.
"""

import logging
import time
from collections import defaultdict
from collections.abc import Iterable
from typing import Any, Optional

from . import config, storage
from .models import (
    Archetype,
    InteractionStats,
    InteractionSummary,
    ScoreSummary,
    VoteStats,
)
from .storage import Database
from .telemetry import trace_span

logger = logging.getLogger(__name__)


def mean(values: list[float]) -> float:
    """Arithmetic mean, 0 for an empty list."""
    return sum(values) / len(values) if values else 0.0


def bayesian_score(
    average: float,
    count: int,
    global_mean: float,
    prior_weight: float,
) -> float:
    """Shrink ``average`` toward ``global_mean``.

    ``prior_weight`` is how many votes' worth of belief the population mean
    carries. With no votes the result is the population mean; as ``count``
    grows it converges on ``average``.
    """
    denominator = prior_weight + count
    if denominator == 0:
        return 0.0
    return (prior_weight * global_mean + count * average) / denominator


def summarize_scores(scores: list[int], global_mean: float, prior_weight: float) -> ScoreSummary:
    """Build the average/bayesian/count triple for one set of scores."""
    average = mean(scores)
    return ScoreSummary(
        average=average,
        bayesian=bayesian_score(average, len(scores), global_mean, prior_weight),
        count=len(scores),
    )


class StatsCache:
    """Short-lived read-through cache of computed statistics.

    Holds computed results only, never ballot rows. Entries expire after
    ``ttl`` seconds and the whole cache is dropped on any local write.
    """

    def __init__(self, ttl: float):
        self.ttl = ttl
        self._entries: dict[Any, tuple[float, Any]] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: Any) -> Any:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if time.monotonic() - stored_at >= self.ttl:
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: Any, value: Any) -> None:
        if self.enabled:
            self._entries[key] = (time.monotonic(), value)

    def invalidate(self) -> None:
        """Drop every entry."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class DecisionAggregator:
    """Computes per-candidate score and interaction statistics on demand."""

    def __init__(
        self,
        db: Database,
        prior_weight: Optional[float] = None,
        cache: Optional[StatsCache] = None,
    ):
        self.db = db
        self.prior_weight = config.PRIOR_WEIGHT if prior_weight is None else prior_weight
        self.cache = cache or StatsCache(0)

    def invalidate(self) -> None:
        self.cache.invalidate()

    def compute_vote_stats(self, candidate_id: str) -> VoteStats:
        """Score statistics for one candidate across every scored round.

        Args:
            candidate_id: Candidate identifier

        Returns:
            VoteStats with overall and per-round (by round name) summaries
        """
        key = ("votes", candidate_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        with trace_span("aggregator.vote_stats", {"pnm_id": candidate_id}):
            with self.db.read() as conn:
                all_votes = storage.scored_votes(conn)
                scored_rounds = storage.list_rounds(conn, archetype=Archetype.SCORED)

        stats = self._vote_stats_from_rows(candidate_id, all_votes, scored_rounds)
        self.cache.put(key, stats)
        return stats

    def rank_candidates(self, candidate_ids: Optional[Iterable[str]] = None) -> list[VoteStats]:
        """Vote statistics for many candidates, best shrunk score first.

        Args:
            candidate_ids: Candidates to include (default: everyone with a vote)

        Returns:
            VoteStats sorted by bayesian descending, then candidate id
        """
        with trace_span("aggregator.rank_candidates"):
            with self.db.read() as conn:
                all_votes = storage.scored_votes(conn)
                scored_rounds = storage.list_rounds(conn, archetype=Archetype.SCORED)

        if candidate_ids is None:
            ids = sorted({v["pnm_id"] for v in all_votes})
        else:
            ids = list(dict.fromkeys(candidate_ids))

        ranked = [self._vote_stats_from_rows(pnm_id, all_votes, scored_rounds) for pnm_id in ids]
        ranked.sort(key=lambda s: (-s.bayesian, s.candidate_id))
        return ranked

    def _vote_stats_from_rows(
        self,
        candidate_id: str,
        all_votes: list[dict[str, Any]],
        scored_rounds: list,
    ) -> VoteStats:
        global_mean = mean([v["score"] for v in all_votes])

        scores_by_round: dict[str, list[int]] = defaultdict(list)
        candidate_scores_by_round: dict[str, list[int]] = defaultdict(list)
        candidate_scores: list[int] = []
        for vote in all_votes:
            scores_by_round[vote["round_id"]].append(vote["score"])
            if vote["pnm_id"] == candidate_id:
                candidate_scores.append(vote["score"])
                candidate_scores_by_round[vote["round_id"]].append(vote["score"])

        overall = summarize_scores(candidate_scores, global_mean, self.prior_weight)

        # Every scored round appears, including those without votes for this candidate
        round_stats = {}
        for round_ in scored_rounds:
            round_stats[round_.name] = summarize_scores(
                candidate_scores_by_round.get(round_.id, []),
                mean(scores_by_round.get(round_.id, [])),
                self.prior_weight,
            )

        return VoteStats(
            candidate_id=candidate_id,
            average=overall.average,
            bayesian=overall.bayesian,
            count=overall.count,
            round_stats=round_stats,
        )

    def compute_interaction_stats(self, candidate_id: str) -> InteractionStats:
        """Interaction counts and percentages for one candidate.

        Args:
            candidate_id: Candidate identifier

        Returns:
            InteractionStats with per-round (by round name) yes/no/percent
        """
        key = ("interactions", candidate_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        with self.db.read() as conn:
            rows = storage.interaction_rows(conn, candidate_id)
            interaction_rounds = storage.list_rounds(conn, archetype=Archetype.INTERACTION)

        counts: dict[str, list[int]] = {r.id: [0, 0] for r in interaction_rounds}
        for row in rows:
            yes_no = counts.setdefault(row["round_id"], [0, 0])
            yes_no[0 if row["interacted"] else 1] += 1

        round_stats = {
            round_.name: InteractionSummary(*counts[round_.id]) for round_ in interaction_rounds
        }
        stats = InteractionStats(
            candidate_id=candidate_id,
            interacted=sum(yes for yes, _ in counts.values()),
            not_interacted=sum(no for _, no in counts.values()),
            round_stats=round_stats,
        )
        self.cache.put(key, stats)
        return stats
