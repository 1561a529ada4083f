"""
Opportunity ranking.

Sort key, in order:
1. matched_count, descending
2. match density = matched_count / max(total_evaluable, 1), descending
   (a scheme fully satisfied by a sparse profile beats a partial match)
3. deadline ascending, schemes without a deadline last
4. scheme ID ascending, so equal candidates always come out in one order

Ineligible schemes are dropped unless include_ineligible is set; that mode
is for internal diagnostics only and is not exposed over HTTP.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from saathi.core.logging import get_logger
from saathi.models.profile import UserProfile
from saathi.models.scheme import Scheme
from saathi.services.matching import MatchResult, match

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScoredScheme:
    scheme: Scheme
    result: MatchResult

    @property
    def matched_count(self) -> int:
        return self.result.matched_count

    @property
    def total_evaluable(self) -> int:
        return self.result.total_evaluable

    @property
    def is_eligible(self) -> bool:
        return self.result.is_eligible

    @property
    def match_density(self) -> float:
        return self.result.matched_count / max(self.result.total_evaluable, 1)

    @property
    def relevance_score(self) -> float:
        return round(self.match_density, 4)


def _sort_key(candidate: ScoredScheme) -> Tuple[int, float, bool, Optional[datetime], str]:
    deadline = candidate.scheme.deadline
    return (
        -candidate.matched_count,
        -candidate.match_density,
        deadline is None,
        deadline if deadline is not None else datetime.max,
        candidate.scheme.id,
    )


def rank(candidates: Iterable[ScoredScheme], include_ineligible: bool = False) -> List[ScoredScheme]:
    """Order scored candidates; see module docstring for the key."""
    pool = [c for c in candidates if include_ineligible or c.is_eligible]
    return sorted(pool, key=_sort_key)


def score_and_rank(
    profile: Optional[UserProfile],
    schemes: Iterable[Scheme],
    include_ineligible: bool = False,
) -> List[ScoredScheme]:
    """Match every scheme against the profile and rank the results."""
    scored = [ScoredScheme(scheme=s, result=match(profile, s)) for s in schemes]
    ranked = rank(scored, include_ineligible=include_ineligible)
    logger.debug(
        "schemes_ranked",
        candidate_count=len(scored),
        ranked_count=len(ranked),
        include_ineligible=include_ineligible,
    )
    return ranked
