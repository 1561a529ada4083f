"""User profile supplied with queries and opportunity searches."""
from enum import Enum
from typing import List, Optional

from pydantic import Field

from .base import CamelModel


class LanguagePreference(str, Enum):
    EN = "en"
    HI = "hi"
    HINGLISH = "hinglish"


class Location(CamelModel):
    state: str
    district: Optional[str] = None
    rural: Optional[bool] = None


class UserProfile(CamelModel):
    """
    Every field except language_preference is optional; a missing field makes
    the matching criteria on it not evaluable rather than failed.
    """

    user_id: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=0, le=120)
    education_level: Optional[str] = None
    location: Optional[Location] = None
    category: Optional[str] = None
    annual_income: Optional[float] = Field(default=None, ge=0)
    interests: List[str] = Field(default_factory=list)
    language_preference: LanguagePreference = LanguagePreference.EN
