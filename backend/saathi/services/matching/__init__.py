"""Eligibility matching of user profiles against scheme criteria."""

from .eligibility import CriterionOutcome, MatchResult, match

__all__ = ["CriterionOutcome", "MatchResult", "match"]
