"""
Response cache for generated answers, scheme details and scheme searches.

Key format:
- `cache:answer:{sha256(normalized_query|language|low_bandwidth)}`
- `cache:scheme_detail:{scheme_id}`
- `cache:search:{sha256(normalized_query|category)}`
- `cache:similar:{sha256(sorted keywords|language)}` -> answer key, read only
  by the generator-failure fallback

TTL classes (seconds):
- raw query responses: 3600
- scheme-detail lookups: 86400
- LLM-generated answers: 21600

Invalidation: every entry is tagged with the scheme IDs it cites. The tag
set `cache:tag:scheme:{scheme_id}` is the secondary index from scheme ID to
cache keys; invalidate_by_scheme drops the set and every key in it in one
atomic store operation.

A store outage makes the cache behave as empty (reads miss, writes are
skipped) rather than failing the request.
"""
import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from saathi.core.errors import StoreUnavailableError
from saathi.core.logging import get_logger
from saathi.core.metrics import record_cache_hit, record_cache_invalidation, record_cache_miss
from saathi.core.store import SharedStore, call_with_retry, get_store

logger = get_logger(__name__)


class TTLClass(Enum):
    RAW_QUERY = 60 * 60
    SCHEME_DETAIL = 24 * 60 * 60
    LLM_ANSWER = 6 * 60 * 60

    @property
    def seconds(self) -> int:
        return self.value


def _digest(*parts: str) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def make_query_fingerprint(normalized_query: str, language: str, low_bandwidth: bool) -> str:
    """Deterministic key for a generated answer."""
    return f"cache:answer:{_digest(normalized_query, language, '1' if low_bandwidth else '0')}"


def make_similar_key(keywords: Iterable[str], language: str) -> str:
    return f"cache:similar:{_digest(' '.join(sorted(set(keywords))), language)}"


def scheme_detail_key(scheme_id: str) -> str:
    return f"cache:scheme_detail:{scheme_id}"


def scheme_search_key(normalized_query: str, category: Optional[str]) -> str:
    return f"cache:search:{_digest(normalized_query, category or 'all')}"


def scheme_tag(scheme_id: str) -> str:
    return f"cache:tag:scheme:{scheme_id}"


@dataclass
class CacheEntry:
    """Canonical (unadapted) payload plus provenance."""

    payload: Dict[str, Any]
    scheme_ids: List[str] = field(default_factory=list)
    confidence: float = 1.0
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            payload=data["payload"],
            scheme_ids=list(data.get("scheme_ids", [])),
            confidence=float(data.get("confidence", 1.0)),
            generated_at=data.get("generated_at", ""),
        )


class ResponseCache:
    """Tagged, TTL-bounded cache over the shared store."""

    def __init__(self, store: Optional[SharedStore] = None):
        self._store = store

    @property
    def store(self) -> SharedStore:
        return self._store or get_store()

    async def get(self, key: str, cache_type: str = "llm_answer") -> Optional[CacheEntry]:
        """Return the entry, or None on a miss (including store outage)."""
        try:
            raw = await call_with_retry("cache_get", lambda: self.store.get_json(key))
        except StoreUnavailableError:
            record_cache_miss(cache_type)
            return None

        if raw is None:
            record_cache_miss(cache_type)
            logger.debug("cache_miss", cache_type=cache_type)
            return None

        record_cache_hit(cache_type)
        logger.debug("cache_hit", cache_type=cache_type)
        return CacheEntry.from_dict(raw)

    async def put(
        self,
        key: str,
        entry: CacheEntry,
        ttl: TTLClass,
        generations: Optional[Dict[str, int]] = None,
    ) -> bool:
        """
        Store an entry and index it under every scheme it cites.

        `generations` (from scheme_generations, read before the entry's
        content was built) makes the write conditional: if any cited scheme
        was invalidated since, the entry is stale and is not written.

        Returns False when nothing was written (stale entry or store outage).
        """
        scheme_ids = sorted(set(entry.scheme_ids))
        tags = [scheme_tag(scheme_id) for scheme_id in scheme_ids]
        tag_generations = None
        if generations is not None:
            tag_generations = {
                scheme_tag(scheme_id): generations[scheme_id]
                for scheme_id in scheme_ids
                if scheme_id in generations
            }
        try:
            written = await call_with_retry(
                "cache_put",
                lambda: self.store.put_tagged(key, entry.to_dict(), ttl.seconds, tags, tag_generations),
            )
        except StoreUnavailableError:
            logger.warning("cache_set_failed", ttl_class=ttl.name, message="Response not cached (reduced mode)")
            return False

        if not written:
            logger.info("cache_set_skipped_stale", ttl_class=ttl.name, scheme_ids=scheme_ids)
            return False
        logger.debug("cache_set", ttl_class=ttl.name, scheme_count=len(tags))
        return True

    async def scheme_generations(self, scheme_ids: Iterable[str]) -> Optional[Dict[str, int]]:
        """Invalidation counters per scheme, or None when the store is unavailable."""
        scheme_ids = sorted(set(scheme_ids))
        try:
            by_tag = await call_with_retry(
                "cache_generations",
                lambda: self.store.tag_generations([scheme_tag(scheme_id) for scheme_id in scheme_ids]),
            )
        except StoreUnavailableError:
            return None
        return {scheme_id: by_tag.get(scheme_tag(scheme_id), 0) for scheme_id in scheme_ids}

    async def put_similar(self, similar_key: str, answer_key: str, scheme_ids: Iterable[str]) -> bool:
        """Point a keyword-set key at a cached answer for fallback lookups."""
        tags = [scheme_tag(scheme_id) for scheme_id in sorted(set(scheme_ids))]
        try:
            await call_with_retry(
                "cache_put",
                lambda: self.store.put_tagged(similar_key, {"key": answer_key}, TTLClass.LLM_ANSWER.seconds, tags),
            )
        except StoreUnavailableError:
            return False
        return True

    async def get_similar(self, similar_key: str) -> Optional[CacheEntry]:
        """Resolve a similar-query pointer to its answer entry, if both are still live."""
        try:
            pointer = await call_with_retry("cache_get", lambda: self.store.get_json(similar_key))
        except StoreUnavailableError:
            return None
        if not pointer:
            return None
        return await self.get(pointer["key"], cache_type="similar_answer")

    async def invalidate_by_scheme(self, scheme_id: str) -> int:
        """Remove every entry that cited the scheme; returns the number removed."""
        try:
            removed = await call_with_retry(
                "cache_invalidate",
                lambda: self.store.invalidate_tag(scheme_tag(scheme_id)),
            )
        except StoreUnavailableError:
            logger.error(
                "cache_invalidation_failed",
                scheme_id=scheme_id,
                message="Entries citing this scheme will expire by TTL",
            )
            return 0

        record_cache_invalidation(removed)
        logger.info("cache_invalidated", scheme_id=scheme_id, count=removed)
        return removed


_response_cache: Optional[ResponseCache] = None


def get_response_cache() -> ResponseCache:
    """Get global response cache instance."""
    global _response_cache
    if _response_cache is None:
        _response_cache = ResponseCache()
    return _response_cache
