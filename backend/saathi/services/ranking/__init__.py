"""Deterministic ranking of eligibility-matched schemes."""

from .score import ScoredScheme, rank, score_and_rank

__all__ = ["ScoredScheme", "rank", "score_and_rank"]
