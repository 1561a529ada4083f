"""Pydantic models for the API and the query core."""

from .profile import LanguagePreference, Location, UserProfile
from .requests import FeedbackRequest, OpportunitiesRequest, OpportunityFilters, QueryRequest
from .responses import (
    ErrorEnvelope,
    OpportunitiesResponse,
    OpportunityResult,
    QueryResponse,
    RelatedScheme,
    SourceRef,
)
from .scheme import CriterionOperator, CriterionType, EligibilityCriterion, Scheme, SchemeCategory
from .session import InputMode, Message, MessageRole, Session

__all__ = [
    "CriterionOperator",
    "CriterionType",
    "EligibilityCriterion",
    "ErrorEnvelope",
    "FeedbackRequest",
    "InputMode",
    "LanguagePreference",
    "Location",
    "Message",
    "MessageRole",
    "OpportunitiesRequest",
    "OpportunitiesResponse",
    "OpportunityFilters",
    "OpportunityResult",
    "QueryRequest",
    "QueryResponse",
    "RelatedScheme",
    "Scheme",
    "SchemeCategory",
    "Session",
    "SourceRef",
    "UserProfile",
]
