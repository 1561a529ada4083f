"""
Error taxonomy for the query core.

Caller-side faults map to 4xx and collaborator faults to 5xx. Generator and
store errors are recovered inside the core and are never rendered to end
users as raw failures; the remaining errors are rendered by the FastAPI
exception handlers as a `{code, message}` envelope.
"""
from typing import Optional


class SaathiError(Exception):
    """Base class for errors that carry a user-facing envelope."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Something went wrong on our side. Please try again in a moment."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidQueryError(SaathiError):
    code = "INVALID_QUERY"
    status_code = 400
    default_message = "Please type or say your question so we can help you."


class RateLimitExceededError(SaathiError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "You have sent many requests in a short time. Please wait a few minutes and try again."

    def __init__(self, endpoint_class: str, retry_after_seconds: int, message: Optional[str] = None):
        super().__init__(message)
        self.endpoint_class = endpoint_class
        self.retry_after_seconds = retry_after_seconds


class SchemeNotFoundError(SaathiError):
    code = "SCHEME_NOT_FOUND"
    status_code = 404
    default_message = "We could not find that scheme. Try searching by its name instead."

    def __init__(self, scheme_id: str):
        super().__init__()
        self.scheme_id = scheme_id


class StoreUnavailableError(SaathiError):
    """Shared store (sessions, cache, rate limits) could not be reached."""

    code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, operation: str, message: Optional[str] = None):
        super().__init__(message or f"Shared store unavailable during {operation}")
        self.operation = operation


class GeneratorError(SaathiError):
    """Answer generator failed; the orchestrator degrades instead of failing."""

    code = "GENERATOR_UNAVAILABLE"
    status_code = 503
    kind = "unavailable"


class GeneratorRateLimitedError(GeneratorError):
    kind = "rate_limited"


class GeneratorTimeoutError(GeneratorError):
    code = "GENERATOR_TIMEOUT"
    status_code = 504
    kind = "timeout"


class GeneratorUnavailableError(GeneratorError):
    kind = "unavailable"


class TypeMismatchError(Exception):
    """Numeric operator applied to a stored criterion value that is not numeric."""

    def __init__(self, criterion_type: str, operator: str, value: object):
        super().__init__(
            f"criterion {criterion_type} {operator} expects a numeric value, got {type(value).__name__}"
        )
        self.criterion_type = criterion_type
        self.operator = operator
