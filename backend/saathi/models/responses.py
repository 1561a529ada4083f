"""
Response models for API endpoints.

Success payloads for /api/v1/query follow the envelope
`{response, sources?, relatedSchemes?, clarificationNeeded, sessionId}`;
failures use `{code, message}`.
"""
from datetime import datetime
from typing import Dict, List, Optional

from .base import CamelModel
from .scheme import Scheme, SchemeCategory, SchemeSummary


class SourceRef(CamelModel):
    scheme_id: str
    name: str
    official_link: str
    source_department: Optional[str] = None


class RelatedScheme(CamelModel):
    scheme_id: str
    name: str
    category: SchemeCategory
    relevance_score: Optional[float] = None


class QueryResponse(CamelModel):
    response: str
    sources: Optional[List[SourceRef]] = None
    related_schemes: Optional[List[RelatedScheme]] = None
    clarification_needed: bool = False
    session_id: str

    def payload_size(self) -> int:
        """Serialized size in bytes, as sent on the wire."""
        return len(self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8"))


class ErrorEnvelope(CamelModel):
    code: str
    message: str


class OpportunityResult(CamelModel):
    scheme_id: str
    name: str
    category: SchemeCategory
    description: str
    benefits: List[str]
    deadline: Optional[datetime] = None
    official_link: str
    matched_criteria: int
    total_evaluable: int
    low_confidence: bool = False

    @classmethod
    def from_scheme(cls, scheme: Scheme, matched: int, total: int) -> "OpportunityResult":
        return cls(
            scheme_id=scheme.id,
            name=scheme.name,
            category=scheme.category,
            description=scheme.description,
            benefits=scheme.benefits,
            deadline=scheme.deadline,
            official_link=scheme.official_link,
            matched_criteria=matched,
            total_evaluable=total,
            low_confidence=total == 0,
        )


class OpportunitiesResponse(CamelModel):
    opportunities: List[OpportunityResult]
    total_count: int
    relevance_scores: Dict[str, float]


class SchemeSearchResponse(CamelModel):
    results: List[SchemeSummary]
    total_count: int


class FeedbackResponse(CamelModel):
    status: str = "recorded"
