"""
Scheme catalogue models.

A scheme is created and updated by the ingestion side and is read-only for
the query core; changes arrive through the admin endpoints and trigger cache
invalidation.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import Field, field_validator, model_validator

from .base import CamelModel


class SchemeCategory(str, Enum):
    SCHOLARSHIP = "scholarship"
    INTERNSHIP = "internship"
    EMPLOYMENT = "employment"
    SKILL_DEVELOPMENT = "skill_development"


class CriterionType(str, Enum):
    AGE = "age"
    EDUCATION = "education"
    INCOME = "income"
    LOCATION = "location"
    CATEGORY = "category"


class CriterionOperator(str, Enum):
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"
    IN = "in"


NUMERIC_OPERATORS = frozenset({CriterionOperator.GTE, CriterionOperator.LTE})

ALLOWED_OPERATORS: Dict[CriterionType, FrozenSet[CriterionOperator]] = {
    CriterionType.AGE: frozenset(CriterionOperator),
    CriterionType.INCOME: frozenset(CriterionOperator),
    # Education levels are ordinal, so range operators apply
    CriterionType.EDUCATION: frozenset(CriterionOperator),
    CriterionType.LOCATION: frozenset({CriterionOperator.EQ, CriterionOperator.IN}),
    CriterionType.CATEGORY: frozenset({CriterionOperator.EQ, CriterionOperator.IN}),
}


class EligibilityCriterion(CamelModel):
    type: CriterionType
    operator: CriterionOperator
    value: Any

    @model_validator(mode="after")
    def check_operator(self) -> "EligibilityCriterion":
        if self.operator not in ALLOWED_OPERATORS[self.type]:
            raise ValueError(f"operator '{self.operator.value}' is not valid for '{self.type.value}' criteria")
        if self.operator is CriterionOperator.IN and not isinstance(self.value, (list, tuple, set)):
            raise ValueError("operator 'in' requires a list value")
        return self


class ApplicationStep(CamelModel):
    order: int = Field(ge=1)
    title: str
    description: str = ""


class Scheme(CamelModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str
    category: SchemeCategory
    eligibility_criteria: List[EligibilityCriterion] = Field(min_length=1)
    benefits: List[str] = Field(default_factory=list)
    application_steps: List[ApplicationStep] = Field(default_factory=list)
    deadline: Optional[datetime] = None
    official_link: str
    source_department: str
    last_updated: datetime
    keywords: List[str] = Field(default_factory=list)

    @field_validator("deadline", "last_updated")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, v: List[str]) -> List[str]:
        seen = []
        for keyword in v:
            keyword = keyword.strip().lower()
            if keyword and keyword not in seen:
                seen.append(keyword)
        return seen

    @field_validator("application_steps")
    @classmethod
    def order_steps(cls, v: List[ApplicationStep]) -> List[ApplicationStep]:
        return sorted(v, key=lambda step: step.order)

    @model_validator(mode="after")
    def check_deadline(self) -> "Scheme":
        if self.deadline is not None and self.deadline <= self.last_updated:
            raise ValueError("deadline must be after lastUpdated")
        return self


class SchemeSummary(CamelModel):
    """Compact scheme view used in search listings."""

    id: str
    name: str
    category: SchemeCategory
    description: str
    deadline: Optional[datetime] = None
    official_link: str

    @classmethod
    def from_scheme(cls, scheme: Scheme) -> "SchemeSummary":
        return cls(
            id=scheme.id,
            name=scheme.name,
            category=scheme.category,
            description=scheme.description,
            deadline=scheme.deadline,
            official_link=scheme.official_link,
        )
