"""
Shared fixtures: an in-memory shared store on a controllable clock, a small
scheme catalogue and stand-in answer generators.

Service singletons are swapped with monkeypatch so every test starts with
empty sessions, cache and rate-limit buckets.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from saathi.core import rate_limit as rate_limit_module
from saathi.core import store as store_module
from saathi.core.config import DEFAULT_SCHEME_DATA_PATH, get_settings
from saathi.core.errors import GeneratorUnavailableError
from saathi.core.rate_limit import RateLimiter
from saathi.core.store import InMemoryStore
from saathi.models.scheme import Scheme
from saathi.services import orchestration as orchestration_module
from saathi.services.ai import generator as generator_module
from saathi.services.ai.generator import AnswerGenerator, GeneratedAnswer
from saathi.services.ai.prompts import Prompt
from saathi.services.cache import response_cache as response_cache_module
from saathi.services.cache.response_cache import ResponseCache
from saathi.services.orchestration import QueryOrchestrator
from saathi.services.schemes import store as scheme_store_module
from saathi.services.schemes.store import SchemeStore
from saathi.services.search.normalization import QueryNormalizationService
from saathi.services.session import context_store as session_module
from saathi.services.session.context_store import SessionContextStore


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EchoGenerator(AnswerGenerator):
    """Answers with the grounding it was given and cites the first scheme."""

    def __init__(self, confidence: float = 0.9):
        self.confidence = confidence
        self.prompts: List[Prompt] = []

    async def generate(self, prompt: Prompt, timeout_seconds: float) -> GeneratedAnswer:
        self.prompts.append(prompt)
        return GeneratedAnswer(
            text=f"Here is what I found for you.\n\n{prompt.scheme_blocks}",
            cited_sources=prompt.scheme_ids[:1],
            confidence=self.confidence,
        )


class FailingGenerator(AnswerGenerator):
    def __init__(self):
        self.calls = 0

    async def generate(self, prompt: Prompt, timeout_seconds: float) -> GeneratedAnswer:
        self.calls += 1
        raise GeneratorUnavailableError()


class BlockingGenerator(AnswerGenerator):
    """Never answers until released; `started` is set once called."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, prompt: Prompt, timeout_seconds: float) -> GeneratedAnswer:
        self.started.set()
        await self.release.wait()
        return GeneratedAnswer(text="late answer", cited_sources=[], confidence=0.9)


def make_scheme(**overrides: Any) -> Scheme:
    """Valid scheme with sensible defaults; keyword arguments use field names."""
    data: Dict[str, Any] = {
        "id": "test-scheme",
        "name": "Test Scholarship",
        "description": "Support for students.",
        "category": "scholarship",
        "eligibility_criteria": [{"type": "age", "operator": "lte", "value": 30}],
        "benefits": ["Rs 10,000 per year"],
        "application_steps": [{"order": 1, "title": "Apply online"}],
        "deadline": datetime.now(timezone.utc) + timedelta(days=90),
        "official_link": "https://example.gov.in",
        "source_department": "Ministry of Education",
        "last_updated": datetime.now(timezone.utc) - timedelta(days=30),
        "keywords": ["scholarship"],
    }
    data.update(overrides)
    return Scheme.model_validate(data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def catalogue():
    """Scheme catalogue shipped with the service."""
    return SchemeStore.load_from_file(DEFAULT_SCHEME_DATA_PATH)


@pytest.fixture
def normalizer():
    service = QueryNormalizationService()
    service.initialize()
    return service


@pytest.fixture
def echo_generator():
    return EchoGenerator()


@pytest.fixture
def services(monkeypatch, memory_store, clock, catalogue, normalizer, echo_generator):
    """
    Wire every singleton to fresh in-memory collaborators.

    The rate limiter reads the fake clock, so buckets do not refill while a
    test runs.
    """
    response_cache = ResponseCache(memory_store)
    session_store = SessionContextStore(memory_store)
    rate_limiter = RateLimiter(memory_store, clock=clock)
    catalogue.add_listener(response_cache.invalidate_by_scheme)

    orchestrator = QueryOrchestrator(
        scheme_store=catalogue,
        session_store=session_store,
        response_cache=response_cache,
        rate_limiter=rate_limiter,
        generator=echo_generator,
        normalizer=normalizer,
        settings=get_settings(),
    )

    monkeypatch.setattr(store_module, "_store", memory_store)
    monkeypatch.setattr(scheme_store_module, "_scheme_store", catalogue)
    monkeypatch.setattr(response_cache_module, "_response_cache", response_cache)
    monkeypatch.setattr(session_module, "_session_store", session_store)
    monkeypatch.setattr(rate_limit_module, "_rate_limiter", rate_limiter)
    monkeypatch.setattr(generator_module, "_answer_generator", echo_generator)
    monkeypatch.setattr(orchestration_module, "_query_orchestrator", orchestrator)

    return SimpleNamespace(
        store=memory_store,
        clock=clock,
        schemes=catalogue,
        cache=response_cache,
        sessions=session_store,
        limiter=rate_limiter,
        generator=echo_generator,
        orchestrator=orchestrator,
    )


@pytest.fixture
def client(services):
    """HTTP client over the app; startup hooks are not run so the fixtures stay in place."""
    from fastapi.testclient import TestClient

    from saathi.main import app

    return TestClient(app)
