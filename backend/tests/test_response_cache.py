"""
Unit tests for the response cache (TTL classes, tagging, invalidation).
"""
from unittest.mock import AsyncMock

import pytest

from saathi.core.errors import StoreUnavailableError
from saathi.services.cache.response_cache import (
    CacheEntry,
    ResponseCache,
    TTLClass,
    make_query_fingerprint,
    make_similar_key,
)


def test_fingerprint_is_deterministic():
    key1 = make_query_fingerprint("pm scholarship", "en", False)
    key2 = make_query_fingerprint("pm scholarship", "en", False)

    assert key1 == key2
    assert key1.startswith("cache:answer:")


def test_fingerprint_separates_language_and_bandwidth():
    base = make_query_fingerprint("pm scholarship", "en", False)

    assert make_query_fingerprint("pm scholarship", "hi", False) != base
    assert make_query_fingerprint("pm scholarship", "en", True) != base
    assert make_query_fingerprint("pm internship", "en", False) != base


def test_similar_key_ignores_keyword_order():
    assert make_similar_key(["pm", "scholarship"], "en") == make_similar_key(["scholarship", "pm"], "en")


def test_ttl_classes():
    assert TTLClass.RAW_QUERY.seconds == 3600
    assert TTLClass.SCHEME_DETAIL.seconds == 86400
    assert TTLClass.LLM_ANSWER.seconds == 21600


@pytest.mark.asyncio
async def test_put_then_get(memory_store):
    cache = ResponseCache(memory_store)
    entry = CacheEntry(payload={"response": "hello"}, scheme_ids=["s1"], confidence=0.8)

    assert await cache.put("cache:answer:1", entry, TTLClass.LLM_ANSWER)
    cached = await cache.get("cache:answer:1")

    assert cached.payload == {"response": "hello"}
    assert cached.scheme_ids == ["s1"]
    assert cached.confidence == 0.8


@pytest.mark.asyncio
async def test_entries_expire_with_their_ttl_class(memory_store, clock):
    cache = ResponseCache(memory_store)
    await cache.put("cache:search:1", CacheEntry(payload={}), TTLClass.RAW_QUERY)
    await cache.put("cache:answer:1", CacheEntry(payload={}), TTLClass.LLM_ANSWER)

    clock.advance(TTLClass.RAW_QUERY.seconds)

    assert await cache.get("cache:search:1") is None
    assert await cache.get("cache:answer:1") is not None

    clock.advance(TTLClass.LLM_ANSWER.seconds)
    assert await cache.get("cache:answer:1") is None


@pytest.mark.asyncio
async def test_invalidate_by_scheme_drops_only_citing_entries(memory_store):
    cache = ResponseCache(memory_store)
    await cache.put("cache:answer:a", CacheEntry(payload={}, scheme_ids=["s1"]), TTLClass.LLM_ANSWER)
    await cache.put("cache:answer:b", CacheEntry(payload={}, scheme_ids=["s1", "s2"]), TTLClass.LLM_ANSWER)
    await cache.put("cache:answer:c", CacheEntry(payload={}, scheme_ids=["s2"]), TTLClass.LLM_ANSWER)

    removed = await cache.invalidate_by_scheme("s1")

    assert removed == 2
    assert await cache.get("cache:answer:a") is None
    assert await cache.get("cache:answer:b") is None
    assert await cache.get("cache:answer:c") is not None


@pytest.mark.asyncio
async def test_similar_pointer_resolves_and_follows_invalidation(memory_store):
    cache = ResponseCache(memory_store)
    await cache.put("cache:answer:a", CacheEntry(payload={"response": "x"}, scheme_ids=["s1"]), TTLClass.LLM_ANSWER)
    await cache.put_similar("cache:similar:a", "cache:answer:a", ["s1"])

    assert (await cache.get_similar("cache:similar:a")).payload == {"response": "x"}

    await cache.invalidate_by_scheme("s1")
    assert await cache.get_similar("cache:similar:a") is None


@pytest.mark.asyncio
async def test_put_is_skipped_when_a_cited_scheme_changed_meanwhile(memory_store):
    cache = ResponseCache(memory_store)
    generations = await cache.scheme_generations(["s1", "s2"])

    await cache.invalidate_by_scheme("s1")

    entry = CacheEntry(payload={"response": "old facts"}, scheme_ids=["s1", "s2"])
    assert not await cache.put("cache:answer:a", entry, TTLClass.LLM_ANSWER, generations)
    assert await cache.get("cache:answer:a") is None

    other = CacheEntry(payload={"response": "unaffected"}, scheme_ids=["s2"])
    assert await cache.put("cache:answer:b", other, TTLClass.LLM_ANSWER, generations)


@pytest.mark.asyncio
async def test_store_outage_reads_as_miss_and_skips_writes(memory_store):
    memory_store.get_json = AsyncMock(side_effect=StoreUnavailableError("get"))
    memory_store.put_tagged = AsyncMock(side_effect=StoreUnavailableError("put_tagged"))
    cache = ResponseCache(memory_store)

    assert await cache.get("cache:answer:1") is None
    assert not await cache.put("cache:answer:1", CacheEntry(payload={}), TTLClass.LLM_ANSWER)
