"""
Token-bucket rate limiting per (subject, endpoint class).

Per API contract (requests per hour):
- query: 100, transcribe: 50, opportunities: 200
- scheme-detail: 500, scheme-search: 300, feedback: 50
- health and metrics endpoints are never limited

Buckets live in the shared store so every instance draws from the same
tokens. Refill is lazy: the store computes `min(capacity, tokens + elapsed * rate)`
at check time and decrements in the same atomic step.
"""
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from fastapi import Request

from saathi.core.errors import RateLimitExceededError, StoreUnavailableError
from saathi.core.logging import fingerprint_text, get_logger
from saathi.core.metrics import record_rate_limit_rejection
from saathi.core.store import SharedStore, call_with_retry, get_store

logger = get_logger(__name__)


class EndpointClass(str, Enum):
    QUERY = "query"
    TRANSCRIBE = "transcribe"
    OPPORTUNITIES = "opportunities"
    SCHEME_DETAIL = "scheme_detail"
    SCHEME_SEARCH = "scheme_search"
    FEEDBACK = "feedback"


@dataclass(frozen=True)
class BucketConfig:
    capacity: int
    window_seconds: int = 3600

    @property
    def refill_per_second(self) -> float:
        return self.capacity / self.window_seconds


RATE_LIMITS: Dict[EndpointClass, BucketConfig] = {
    EndpointClass.QUERY: BucketConfig(capacity=100),
    EndpointClass.TRANSCRIBE: BucketConfig(capacity=50),
    EndpointClass.OPPORTUNITIES: BucketConfig(capacity=200),
    EndpointClass.SCHEME_DETAIL: BucketConfig(capacity=500),
    EndpointClass.SCHEME_SEARCH: BucketConfig(capacity=300),
    EndpointClass.FEEDBACK: BucketConfig(capacity=50),
}


@dataclass
class RateDecision:
    allowed: bool
    tokens_left: float
    retry_after_seconds: int = 0
    reduced_mode: bool = False


class RateLimiter:
    """Shared-store token bucket limiter."""

    def __init__(
        self,
        store: Optional[SharedStore] = None,
        limits: Optional[Dict[EndpointClass, BucketConfig]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.limits = limits or RATE_LIMITS
        self._clock = clock

    @property
    def store(self) -> SharedStore:
        return self._store or get_store()

    @staticmethod
    def bucket_key(subject_id: str, endpoint_class: EndpointClass) -> str:
        return f"ratelimit:{endpoint_class.value}:{subject_id}"

    async def check(self, subject_id: str, endpoint_class: EndpointClass) -> RateDecision:
        """
        Take one token from the subject's bucket.

        Fails open when the store is unreachable after retries (reduced mode).
        """
        config = self.limits[endpoint_class]
        key = self.bucket_key(subject_id, endpoint_class)
        now = self._clock()

        try:
            allowed, tokens = await call_with_retry(
                "take_token",
                lambda: self.store.take_token(
                    key,
                    capacity=config.capacity,
                    refill_per_second=config.refill_per_second,
                    now=now,
                    ttl_seconds=config.window_seconds * 2,
                ),
            )
        except StoreUnavailableError:
            logger.warning(
                "rate_limit_reduced_mode",
                endpoint_class=endpoint_class.value,
                message="Shared store unavailable; request allowed without limiting",
            )
            return RateDecision(allowed=True, tokens_left=float(config.capacity), reduced_mode=True)

        if allowed:
            return RateDecision(allowed=True, tokens_left=tokens)

        retry_after = max(1, math.ceil((1.0 - tokens) / config.refill_per_second))
        record_rate_limit_rejection(endpoint_class.value)
        logger.warning(
            "rate_limit_exceeded",
            endpoint_class=endpoint_class.value,
            subject_hash=fingerprint_text(subject_id),
            retry_after_seconds=retry_after,
        )
        return RateDecision(allowed=False, tokens_left=tokens, retry_after_seconds=retry_after)

    async def allow(self, subject_id: str, endpoint_class: EndpointClass) -> bool:
        return (await self.check(subject_id, endpoint_class)).allowed

    async def enforce(self, subject_id: str, endpoint_class: EndpointClass) -> RateDecision:
        """Like check(), but raises RateLimitExceededError on rejection."""
        decision = await self.check(subject_id, endpoint_class)
        if not decision.allowed:
            raise RateLimitExceededError(endpoint_class.value, decision.retry_after_seconds)
        return decision


def get_client_ip(request: Request) -> str:
    """Extract client IP from request headers."""
    # X-Forwarded-For is set by the load balancer; first entry is the client
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def get_subject_id(request: Request, session_id: Optional[str] = None, user_id: Optional[str] = None) -> str:
    """
    Identify who a request is charged to: user, then session, then client IP.
    """
    user_id = user_id or request.headers.get("X-User-ID")
    if user_id:
        return f"user:{user_id}"
    session_id = session_id or request.headers.get("X-Session-ID")
    if session_id:
        return f"session:{session_id}"
    return f"ip:{get_client_ip(request)}"


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
