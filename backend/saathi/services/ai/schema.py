"""
Pydantic models for answer generator output.

The generator is asked for a single JSON object:
{
  "answer": "...",
  "cited_scheme_ids": ["pm-scholarship"],
  "confidence": 0.0-1.0
}
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator


class AnswerOutput(BaseModel):
    answer: str = Field(..., min_length=1)
    cited_scheme_ids: List[str] = Field(default_factory=list)
    confidence: float = Field(0.7, ge=0.0, le=1.0)

    @field_validator("cited_scheme_ids")
    @classmethod
    def dedupe_ids(cls, value: List[str]) -> List[str]:
        seen: List[str] = []
        for scheme_id in value:
            scheme_id = scheme_id.strip()
            if scheme_id and scheme_id not in seen:
                seen.append(scheme_id)
        return seen


class SchemaValidationError(Exception):
    """Raised when generator output fails schema validation."""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


def validate_answer_payload(payload: Dict[str, Any]) -> AnswerOutput:
    """
    Validate raw JSON payload for answer output.

    Raises:
        SchemaValidationError if validation fails.
    """
    try:
        return AnswerOutput.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(f"Invalid answer payload: {exc}") from exc
