"""
Shared key-value store for sessions, cached responses and rate-limit buckets.

Every instance of the service must observe every other instance's writes, so
this state lives in Redis in production. Operations are atomic per call:

- update_json: read-modify-write of one key (WATCH/MULTI optimistic retry)
- put_tagged / invalidate_tag: entry plus secondary index (tag -> keys)
- tag_generations: per-tag counter bumped by every invalidate_tag; a
  put_tagged given the generations it read earlier is skipped when any of
  them has moved on since
- take_token: token-bucket refill and decrement (Lua script)

InMemoryStore offers the same contract inside one process for development
and tests. It runs each operation under one mutex, which mirrors how Redis
executes a single command or script.

Connection settings (per deployment defaults):
- Pool size: 20 connections
- Connection timeout: 2 seconds
- Retry: 3 attempts with exponential backoff (call_with_retry)
"""
import asyncio
import copy
import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from saathi.core.config import get_settings
from saathi.core.errors import StoreUnavailableError
from saathi.core.logging import get_logger
from saathi.core.metrics import record_store_reduced_mode, record_store_retry

logger = get_logger(__name__)

T = TypeVar("T")

# Tag sets outlive the longest cache TTL class so an index never expires
# before an entry it points at.
TAG_TTL_SECONDS = 7 * 24 * 60 * 60

Mutator = Callable[[Optional[Any]], Optional[Any]]


class SharedStore(ABC):
    """Atomic per-key operations over JSON-serializable values."""

    backend = "abstract"

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def get_json(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def update_json(self, key: str, mutator: Mutator, ttl_seconds: Optional[int] = None) -> Optional[Any]:
        """
        Atomically replace the value at `key` with `mutator(current)`.

        `current` is None when the key is absent or expired. Returning None
        deletes the key. Concurrent updates to the same key are applied one
        after another in commit order; none is lost.
        """

    @abstractmethod
    async def put_tagged(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        tags: Iterable[str],
        generations: Optional[Dict[str, int]] = None,
    ) -> bool:
        """
        Write `key` and add it to every tag set in one atomic step.

        With `generations`, nothing is written (and False is returned) when a
        listed tag was invalidated after those generations were read.
        """

    @abstractmethod
    async def invalidate_tag(self, tag: str) -> int:
        """Delete every key in the tag set, and the set itself, atomically."""

    @abstractmethod
    async def tag_generations(self, tags: Iterable[str]) -> Dict[str, int]:
        """Current invalidation counter of each tag (0 if never invalidated)."""

    @abstractmethod
    async def take_token(
        self,
        key: str,
        capacity: float,
        refill_per_second: float,
        now: float,
        ttl_seconds: int,
    ) -> Tuple[bool, float]:
        """
        Refill the bucket lazily from elapsed time, then take one token.

        Returns (allowed, tokens_left). A denied call leaves the bucket at its
        refilled level without decrementing.
        """

    async def purge_expired(self, prefix: str = "") -> List[str]:
        """Drop expired keys under `prefix`; returns the removed keys."""
        return []

    async def close(self) -> None:
        return None


def _refill(bucket: Optional[Dict[str, float]], capacity: float, rate: float, now: float) -> Tuple[float, float]:
    if not bucket:
        return capacity, now
    last = bucket["last"]
    elapsed = max(0.0, now - last)
    tokens = min(capacity, bucket["tokens"] + elapsed * rate)
    return tokens, max(last, now)


class InMemoryStore(SharedStore):
    """Process-local store with expiring keys and tag sets."""

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._mutex = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._tags: Dict[str, Set[str]] = {}
        self._generations: Dict[str, int] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._values.get(key)
        if item is None:
            return None
        raw, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return raw

    def _write(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._values[key] = (json.dumps(value), expires_at)

    async def ping(self) -> bool:
        return True

    async def get_json(self, key: str) -> Optional[Any]:
        with self._mutex:
            raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        with self._mutex:
            self._write(key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        with self._mutex:
            removed = 0
            for key in keys:
                if self._values.pop(key, None) is not None:
                    removed += 1
                self._tags.pop(key, None)
            return removed

    async def update_json(self, key: str, mutator: Mutator, ttl_seconds: Optional[int] = None) -> Optional[Any]:
        with self._mutex:
            raw = self._live(key)
            current = json.loads(raw) if raw is not None else None
            updated = mutator(current)
            if updated is None:
                self._values.pop(key, None)
                return None
            self._write(key, updated, ttl_seconds)
            return copy.deepcopy(updated)

    async def put_tagged(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        tags: Iterable[str],
        generations: Optional[Dict[str, int]] = None,
    ) -> bool:
        tags = list(tags)
        with self._mutex:
            if generations and any(
                self._generations.get(tag, 0) != generations[tag] for tag in tags if tag in generations
            ):
                return False
            self._write(key, value, ttl_seconds)
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)
            return True

    async def invalidate_tag(self, tag: str) -> int:
        with self._mutex:
            self._generations[tag] = self._generations.get(tag, 0) + 1
            members = self._tags.pop(tag, set())
            removed = 0
            for key in members:
                if self._values.pop(key, None) is not None:
                    removed += 1
            return removed

    async def tag_generations(self, tags: Iterable[str]) -> Dict[str, int]:
        with self._mutex:
            return {tag: self._generations.get(tag, 0) for tag in tags}

    async def take_token(
        self,
        key: str,
        capacity: float,
        refill_per_second: float,
        now: float,
        ttl_seconds: int,
    ) -> Tuple[bool, float]:
        with self._mutex:
            raw = self._live(key)
            bucket = json.loads(raw) if raw is not None else None
            tokens, last = _refill(bucket, capacity, refill_per_second, now)
            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            self._write(key, {"tokens": tokens, "last": last}, ttl_seconds)
            return allowed, tokens

    async def purge_expired(self, prefix: str = "") -> List[str]:
        with self._mutex:
            now = self._clock()
            expired = [
                key for key, (_, expires_at) in self._values.items()
                if key.startswith(prefix) and expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._values[key]
            for tag, members in list(self._tags.items()):
                members.intersection_update(self._values.keys())
                if not members:
                    del self._tags[tag]
            return expired


_TAKE_TOKEN_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
local bucket = redis.call('HMGET', KEYS[1], 'tokens', 'last')
local tokens = tonumber(bucket[1])
local last = tonumber(bucket[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end
local elapsed = now - last
if elapsed < 0 then elapsed = 0 end
tokens = math.min(capacity, tokens + elapsed * rate)
if now > last then last = now end
local allowed = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'last', tostring(last))
redis.call('EXPIRE', KEYS[1], ttl)
return {allowed, tostring(tokens)}
"""

_INVALIDATE_TAG_SCRIPT = """
redis.call('INCR', KEYS[2])
local members = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, key in ipairs(members) do
  removed = removed + redis.call('DEL', key)
end
redis.call('DEL', KEYS[1])
return removed
"""

# KEYS: entry key, n tag sets, then n generation counters (same order)
# ARGV: value, ttl, tag ttl, then n expected generations ('' = unchecked)
_PUT_TAGGED_SCRIPT = """
local n = (#KEYS - 1) / 2
for i = 1, n do
  local expected = ARGV[3 + i]
  if expected ~= '' then
    local current = tonumber(redis.call('GET', KEYS[1 + n + i]) or '0')
    if current ~= tonumber(expected) then
      return 0
    end
  end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
for i = 1, n do
  redis.call('SADD', KEYS[1 + i], KEYS[1])
  redis.call('EXPIRE', KEYS[1 + i], ARGV[3])
end
return 1
"""


def generation_key(tag: str) -> str:
    return f"{tag}:gen"


class RedisStore(SharedStore):
    """Redis-backed store shared by all service instances."""

    backend = "redis"

    def __init__(self, client: "redis.Redis"):
        self._client = client
        self._take_token = client.register_script(_TAKE_TOKEN_SCRIPT)
        self._invalidate_tag = client.register_script(_INVALIDATE_TAG_SCRIPT)
        self._put_tagged = client.register_script(_PUT_TAGGED_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        client = redis.from_url(
            url,
            max_connections=20,
            socket_connect_timeout=2,
            socket_timeout=2,
            decode_responses=True,
        )
        return cls(client)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise StoreUnavailableError("ping") from e

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self._client.get(key)
        except RedisError as e:
            raise StoreUnavailableError("get") from e
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self._client.set(key, json.dumps(value), ex=ttl_seconds)
        except RedisError as e:
            raise StoreUnavailableError("set") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except RedisError as e:
            raise StoreUnavailableError("delete") from e

    async def update_json(self, key: str, mutator: Mutator, ttl_seconds: Optional[int] = None) -> Optional[Any]:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        current = json.loads(raw) if raw is not None else None
                        updated = mutator(current)
                        pipe.multi()
                        if updated is None:
                            pipe.delete(key)
                        else:
                            pipe.set(key, json.dumps(updated), ex=ttl_seconds)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("store_update_conflict", key_prefix=key.split(":", 1)[0])
                        continue
        except RedisError as e:
            raise StoreUnavailableError("update") from e

    async def put_tagged(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        tags: Iterable[str],
        generations: Optional[Dict[str, int]] = None,
    ) -> bool:
        tags = list(tags)
        generations = generations or {}
        expected = [str(generations[tag]) if tag in generations else "" for tag in tags]
        try:
            written = await self._put_tagged(
                keys=[key, *tags, *(generation_key(tag) for tag in tags)],
                args=[json.dumps(value), ttl_seconds, TAG_TTL_SECONDS, *expected],
            )
        except RedisError as e:
            raise StoreUnavailableError("put_tagged") from e
        return int(written) == 1

    async def invalidate_tag(self, tag: str) -> int:
        try:
            return int(await self._invalidate_tag(keys=[tag, generation_key(tag)]))
        except RedisError as e:
            raise StoreUnavailableError("invalidate_tag") from e

    async def tag_generations(self, tags: Iterable[str]) -> Dict[str, int]:
        tags = list(tags)
        if not tags:
            return {}
        try:
            values = await self._client.mget([generation_key(tag) for tag in tags])
        except RedisError as e:
            raise StoreUnavailableError("tag_generations") from e
        return {tag: int(value or 0) for tag, value in zip(tags, values)}

    async def take_token(
        self,
        key: str,
        capacity: float,
        refill_per_second: float,
        now: float,
        ttl_seconds: int,
    ) -> Tuple[bool, float]:
        try:
            allowed, tokens = await self._take_token(
                keys=[key],
                args=[capacity, refill_per_second, now, ttl_seconds],
            )
        except RedisError as e:
            raise StoreUnavailableError("take_token") from e
        return int(allowed) == 1, float(tokens)

    async def close(self) -> None:
        try:
            await self._client.aclose()
            logger.info("redis_closed")
        except RedisError as e:
            logger.error("redis_close_failed", error=str(e), error_type=type(e).__name__)


async def call_with_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    base_delay_seconds: Optional[float] = None,
) -> T:
    """
    Run a store operation, retrying StoreUnavailableError with exponential backoff.

    After the last attempt the error is re-raised so the caller can continue
    in reduced mode.
    """
    settings = get_settings()
    attempts = attempts or settings.store_retry_attempts
    delay = base_delay_seconds if base_delay_seconds is not None else settings.store_retry_base_delay_seconds

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except StoreUnavailableError as e:
            if attempt >= attempts:
                record_store_reduced_mode(operation)
                logger.error(
                    "store_operation_failed",
                    operation=operation,
                    attempts=attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            record_store_retry(operation)
            logger.warning(
                "store_operation_retry",
                operation=operation,
                attempt=attempt,
                delay_seconds=delay,
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)
            delay *= 2

    raise StoreUnavailableError(operation)


_store: Optional[SharedStore] = None


async def initialize_store(redis_url: Optional[str] = None) -> SharedStore:
    """
    Connect to the shared store.

    Falls back to a process-local store when Redis is not configured or not
    reachable, so the service still answers (without cross-instance sharing).
    """
    global _store
    redis_url = redis_url if redis_url is not None else get_settings().redis_url

    if redis_url:
        candidate = RedisStore.from_url(redis_url)
        try:
            await candidate.ping()
            _store = candidate
            logger.info("store_initialized", backend=_store.backend)
            return _store
        except StoreUnavailableError as e:
            logger.warning(
                "store_redis_unavailable",
                error=str(e.__cause__ or e),
                message="Falling back to in-memory store; state is not shared across instances.",
            )
            await candidate.close()

    _store = InMemoryStore()
    logger.info("store_initialized", backend=_store.backend)
    return _store


def get_store() -> SharedStore:
    """Global store accessor; an in-memory store is created on first use."""
    global _store
    if _store is None:
        _store = InMemoryStore()
    return _store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
