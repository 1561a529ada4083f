"""Request bodies for the public API."""
from typing import List, Optional

from pydantic import Field, field_validator

from .base import CamelModel
from .profile import UserProfile
from .scheme import SchemeCategory
from .session import InputMode


class QueryRequest(CamelModel):
    query: str = Field(min_length=1, max_length=1000)
    session_id: Optional[str] = Field(default=None, max_length=128)
    input_mode: InputMode = InputMode.TEXT
    user_profile: Optional[UserProfile] = None
    low_bandwidth: bool = False


class OpportunityFilters(CamelModel):
    category: Optional[SchemeCategory] = None
    keywords: List[str] = Field(default_factory=list)
    limit: int = Field(default=10, ge=1, le=50)

    @field_validator("keywords")
    @classmethod
    def lowercase_keywords(cls, v: List[str]) -> List[str]:
        return [k.strip().lower() for k in v if k.strip()]


class OpportunitiesRequest(CamelModel):
    user_profile: UserProfile
    filters: Optional[OpportunityFilters] = None


class FeedbackRequest(CamelModel):
    session_id: str = Field(min_length=1, max_length=128)
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=1000)
