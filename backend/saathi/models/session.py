"""Conversation session models."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import Field

from .base import CamelModel
from .profile import LanguagePreference


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class InputMode(str, Enum):
    VOICE = "voice"
    TEXT = "text"


class Message(CamelModel):
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    input_mode: Optional[InputMode] = None


class Session(CamelModel):
    session_id: str
    user_id: Optional[str] = None
    history: List[Message] = Field(default_factory=list)
    language_preference: LanguagePreference = LanguagePreference.EN
    created_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    low_bandwidth_mode: bool = False
    # True when the shared store was unreachable and nothing was persisted
    ephemeral: bool = Field(default=False, exclude=True)
