"""
Eligibility matcher.

Each criterion evaluates to one of three outcomes:
- NOT_EVALUABLE: the profile does not carry the field; the criterion is
  skipped and neither counts toward nor against the scheme
- SATISFIED
- FAILED: includes numeric operators applied to a stored value that is not
  numeric (TypeMismatchError, logged and counted)

A scheme is eligible when no evaluable criterion failed. With nothing
evaluable it is provisionally eligible and flagged low-confidence.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from saathi.core.errors import TypeMismatchError
from saathi.core.logging import get_logger
from saathi.core.metrics import record_type_mismatch
from saathi.models.profile import UserProfile
from saathi.models.scheme import CriterionOperator, CriterionType, EligibilityCriterion, Scheme

logger = get_logger(__name__)

# Ordinal ladder for education; gte/lte compare ranks
EDUCATION_LEVELS: Dict[str, int] = {
    "below_10th": 0,
    "10th": 1,
    "12th": 2,
    "diploma": 3,
    "undergraduate": 4,
    "postgraduate": 5,
    "doctorate": 6,
}

EDUCATION_ALIASES: Dict[str, str] = {
    "secondary": "10th",
    "matric": "10th",
    "ssc": "10th",
    "higher_secondary": "12th",
    "intermediate": "12th",
    "hsc": "12th",
    "polytechnic": "diploma",
    "iti": "diploma",
    "graduate": "undergraduate",
    "ug": "undergraduate",
    "bachelors": "undergraduate",
    "post_graduate": "postgraduate",
    "pg": "postgraduate",
    "masters": "postgraduate",
    "phd": "doctorate",
}

ALL_INDIA = "all-india"


class CriterionOutcome(str, Enum):
    NOT_EVALUABLE = "not_evaluable"
    SATISFIED = "satisfied"
    FAILED = "failed"


@dataclass(frozen=True)
class MatchResult:
    is_eligible: bool
    matched_count: int
    total_evaluable: int
    failed_types: Tuple[CriterionType, ...] = field(default_factory=tuple)

    @property
    def low_confidence(self) -> bool:
        return self.total_evaluable == 0


def _canonical(value: Any) -> str:
    return str(value).strip().lower().replace(" ", "_")


def _to_number(value: Any, criterion: EligibilityCriterion) -> float:
    if isinstance(value, bool):
        raise TypeMismatchError(criterion.type.value, criterion.operator.value, value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        raise TypeMismatchError(criterion.type.value, criterion.operator.value, value) from None


def education_rank(level: Any) -> Optional[int]:
    key = _canonical(level)
    key = EDUCATION_ALIASES.get(key, key)
    return EDUCATION_LEVELS.get(key)


def _education_number(value: Any, criterion: EligibilityCriterion) -> float:
    rank = education_rank(value)
    if rank is None:
        raise TypeMismatchError(criterion.type.value, criterion.operator.value, value)
    return float(rank)


def _compare(actual: float, criterion: EligibilityCriterion, expected: float) -> bool:
    if criterion.operator is CriterionOperator.GTE:
        return actual >= expected
    return actual <= expected


def _check_numeric(actual: Any, criterion: EligibilityCriterion) -> bool:
    """age and income: eq/in by value, gte/lte after numeric coercion."""
    actual_number = _to_number(actual, criterion)
    if criterion.operator is CriterionOperator.IN:
        return any(actual_number == _to_number(v, criterion) for v in criterion.value)
    expected = _to_number(criterion.value, criterion)
    if criterion.operator is CriterionOperator.EQ:
        return actual_number == expected
    return _compare(actual_number, criterion, expected)


def _check_education(actual: Any, criterion: EligibilityCriterion) -> bool:
    if criterion.operator is CriterionOperator.IN:
        return education_rank(actual) in {education_rank(v) for v in criterion.value} - {None}
    if criterion.operator is CriterionOperator.EQ:
        expected_rank = education_rank(criterion.value)
        return expected_rank is not None and education_rank(actual) == expected_rank
    return _compare(
        _education_number(actual, criterion),
        criterion,
        _education_number(criterion.value, criterion),
    )


def _location_tags(profile: UserProfile) -> set:
    location = profile.location
    tags = {_canonical(location.state)}
    if location.district:
        tags.add(_canonical(location.district))
    if location.rural is not None:
        tags.add("rural" if location.rural else "urban")
    return tags


def _check_location(profile: UserProfile, criterion: EligibilityCriterion) -> bool:
    expected = criterion.value if criterion.operator is CriterionOperator.IN else [criterion.value]
    expected_tags = {_canonical(v) for v in expected}
    if _canonical(ALL_INDIA) in expected_tags:
        return True
    return bool(expected_tags & _location_tags(profile))


def _check_category(actual: Any, criterion: EligibilityCriterion) -> bool:
    expected = criterion.value if criterion.operator is CriterionOperator.IN else [criterion.value]
    return _canonical(actual) in {_canonical(v) for v in expected}


_PROFILE_FIELDS: Dict[CriterionType, Callable[[UserProfile], Any]] = {
    CriterionType.AGE: lambda p: p.age,
    CriterionType.INCOME: lambda p: p.annual_income,
    CriterionType.EDUCATION: lambda p: p.education_level,
    CriterionType.LOCATION: lambda p: p.location,
    CriterionType.CATEGORY: lambda p: p.category,
}


def evaluate_criterion(profile: UserProfile, criterion: EligibilityCriterion, scheme_id: str = "") -> CriterionOutcome:
    """Evaluate one criterion; type mismatches are logged and treated as failure."""
    actual = _PROFILE_FIELDS[criterion.type](profile)
    if actual is None:
        return CriterionOutcome.NOT_EVALUABLE

    try:
        if criterion.type in (CriterionType.AGE, CriterionType.INCOME):
            satisfied = _check_numeric(actual, criterion)
        elif criterion.type is CriterionType.EDUCATION:
            satisfied = _check_education(actual, criterion)
        elif criterion.type is CriterionType.LOCATION:
            satisfied = _check_location(profile, criterion)
        else:
            satisfied = _check_category(actual, criterion)
    except TypeMismatchError as e:
        record_type_mismatch(criterion.type.value)
        logger.warning(
            "eligibility_type_mismatch",
            scheme_id=scheme_id,
            criterion_type=criterion.type.value,
            operator=criterion.operator.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        return CriterionOutcome.FAILED

    return CriterionOutcome.SATISFIED if satisfied else CriterionOutcome.FAILED


def match(profile: Optional[UserProfile], scheme: Scheme) -> MatchResult:
    """Match a profile against every eligibility criterion of a scheme."""
    profile = profile or UserProfile()
    matched = 0
    evaluable = 0
    failed: List[CriterionType] = []

    for criterion in scheme.eligibility_criteria:
        outcome = evaluate_criterion(profile, criterion, scheme.id)
        if outcome is CriterionOutcome.NOT_EVALUABLE:
            continue
        evaluable += 1
        if outcome is CriterionOutcome.SATISFIED:
            matched += 1
        else:
            failed.append(criterion.type)

    return MatchResult(
        is_eligible=not failed,
        matched_count=matched,
        total_evaluable=evaluable,
        failed_types=tuple(failed),
    )
