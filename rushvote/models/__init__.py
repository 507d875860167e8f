"""Domain data models."""

from .round import Archetype, Round, RoundStatus, SealedResult, Tally
from .stats import (
    InteractionStats,
    InteractionSummary,
    PublicResult,
    ResultVisibility,
    ScoreSummary,
    VoteStats,
)

__all__ = [
    "Archetype",
    "InteractionStats",
    "InteractionSummary",
    "PublicResult",
    "ResultVisibility",
    "Round",
    "RoundStatus",
    "ScoreSummary",
    "SealedResult",
    "Tally",
    "VoteStats",
]
