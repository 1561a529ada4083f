"""
Tests for the query orchestrator: pipeline states, caching, degradation,
cancellation and opportunity matching.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from saathi.core.config import get_settings
from saathi.core.errors import InvalidQueryError, RateLimitExceededError
from saathi.core.rate_limit import EndpointClass
from saathi.models.profile import Location, UserProfile
from saathi.models.requests import OpportunityFilters
from saathi.models.session import InputMode, Message, MessageRole
from saathi.services.ai.generator import AnswerGenerator, GeneratedAnswer
from saathi.services.cache.response_cache import make_query_fingerprint
from saathi.services.orchestration import (
    InvalidTransitionError,
    PipelineRun,
    PipelineState,
    QueryOrchestrator,
)
from saathi.services.schemes import SchemeStore

from conftest import BlockingGenerator, FailingGenerator, make_scheme

PM_QUERY = "What is PM Scholarship?"


def orchestrator_for(services, **overrides):
    parts = dict(
        scheme_store=services.schemes,
        session_store=services.sessions,
        response_cache=services.cache,
        rate_limiter=services.limiter,
        generator=services.generator,
        normalizer=services.orchestrator.normalizer,
        settings=get_settings(),
    )
    parts.update(overrides)
    return QueryOrchestrator(**parts)


def fingerprint(services, query, language="en", low_bandwidth=False):
    return make_query_fingerprint(services.orchestrator.normalizer.normalize(query), language, low_bandwidth)


@pytest.mark.asyncio
async def test_miss_generates_and_walks_full_pipeline(services):
    outcome = await services.orchestrator.handle_query(PM_QUERY, session_id="s1")

    assert outcome.ok
    assert outcome.outcome == "generated"
    assert outcome.states == [
        PipelineState.RECEIVED,
        PipelineState.RATE_CHECKED,
        PipelineState.CACHE_CHECKED,
        PipelineState.CACHE_MISS,
        PipelineState.MATCHING,
        PipelineState.PROMPTING,
        PipelineState.GENERATING,
        PipelineState.CACHING,
        PipelineState.ADAPTING,
        PipelineState.RESPONDING,
        PipelineState.DONE,
    ]


@pytest.mark.asyncio
async def test_answer_is_grounded_in_matching_scheme(services):
    outcome = await services.orchestrator.handle_query(PM_QUERY, session_id="s1")
    response = outcome.response

    assert services.generator.prompts[0].scheme_ids == ["pm-scholarship"]
    assert [s.scheme_id for s in response.sources] == ["pm-scholarship"]
    assert "Eligibility" in response.response
    assert "Benefits" in response.response
    assert "How to apply" in response.response
    assert response.session_id == "s1"
    assert response.clarification_needed is False


@pytest.mark.asyncio
async def test_repeat_query_is_served_from_cache(services):
    first = await services.orchestrator.handle_query(PM_QUERY, session_id="s1")
    second = await services.orchestrator.handle_query("what is pm scholarship", session_id="s2")

    assert second.outcome == "cache_hit"
    assert PipelineState.CACHE_HIT in second.states
    assert PipelineState.GENERATING not in second.states
    assert len(services.generator.prompts) == 1
    assert second.response.response == first.response.response
    assert second.response.session_id == "s2"


@pytest.mark.asyncio
async def test_turns_are_appended_to_session(services):
    await services.orchestrator.handle_query(PM_QUERY, session_id="s1", input_mode=InputMode.VOICE)

    session = await services.sessions.get("s1")

    assert [m.role.value for m in session.history] == ["user", "assistant"]
    assert session.history[0].content == PM_QUERY
    assert session.history[0].input_mode is InputMode.VOICE


@pytest.mark.asyncio
async def test_generator_failure_degrades_to_apology(services):
    generator = FailingGenerator()
    orchestrator = orchestrator_for(services, generator=generator)

    outcome = await orchestrator.handle_query(PM_QUERY, session_id="s1")

    assert outcome.ok
    assert outcome.outcome == "degraded"
    assert PipelineState.DEGRADED in outcome.states
    assert PipelineState.CACHING not in outcome.states
    assert outcome.response.response.startswith("Sorry")
    assert "PM Scholarship" in outcome.response.response
    assert await services.cache.get(fingerprint(services, PM_QUERY)) is None


@pytest.mark.asyncio
async def test_generator_failure_reuses_similar_cached_answer(services):
    first = await services.orchestrator.handle_query(PM_QUERY, session_id="s1")
    orchestrator = orchestrator_for(services, generator=FailingGenerator())

    outcome = await orchestrator.handle_query("PM scholarship?", session_id="s2")

    assert outcome.outcome == "degraded_similar"
    assert outcome.response.response == first.response.response
    assert outcome.response.session_id == "s2"


class SlowGenerator(AnswerGenerator):
    async def generate(self, prompt, timeout_seconds):
        await asyncio.sleep(5)
        return GeneratedAnswer(text="too late")


@pytest.mark.asyncio
async def test_generator_deadline_degrades(services):
    settings = get_settings().model_copy(update={"llm_timeout_seconds": 0.01})
    orchestrator = orchestrator_for(services, generator=SlowGenerator(), settings=settings)

    outcome = await orchestrator.handle_query(PM_QUERY, session_id="s1")

    assert outcome.outcome == "degraded"


@pytest.mark.asyncio
async def test_rate_limited_query_fails_before_any_work(services):
    for _ in range(100):
        await services.limiter.allow("session:s1", EndpointClass.QUERY)

    outcome = await services.orchestrator.handle_query(PM_QUERY, session_id="s1")

    assert not outcome.ok
    assert outcome.outcome == "rate_limited"
    assert isinstance(outcome.error, RateLimitExceededError)
    assert outcome.states == [PipelineState.RECEIVED, PipelineState.FAILED]
    assert services.generator.prompts == []
    assert await services.sessions.get("s1") is None


@pytest.mark.asyncio
async def test_empty_query_is_invalid(services):
    outcome = await services.orchestrator.handle_query("  ?! ", session_id="s1")

    assert outcome.outcome == "invalid"
    assert isinstance(outcome.error, InvalidQueryError)
    assert outcome.states == [PipelineState.RECEIVED, PipelineState.FAILED]


@pytest.mark.asyncio
async def test_cancelled_query_writes_nothing(services):
    generator = BlockingGenerator()
    orchestrator = orchestrator_for(services, generator=generator)

    task = asyncio.create_task(orchestrator.handle_query(PM_QUERY, session_id="s1"))
    await generator.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert await services.cache.get(fingerprint(services, PM_QUERY)) is None
    assert await services.sessions.get("s1") is None


async def seed_history(sessions, session_id, turns):
    await sessions.get_or_create(session_id)
    for i in range(turns):
        await sessions.append_messages(
            session_id,
            [
                Message(role=MessageRole.USER, content=f"q{i}"),
                Message(role=MessageRole.ASSISTANT, content=f"a{i}"),
            ],
        )


@pytest.mark.asyncio
async def test_cancelled_low_bandwidth_query_leaves_session_as_it_was(services):
    await seed_history(services.sessions, "s1", 3)
    generator = BlockingGenerator()
    orchestrator = orchestrator_for(services, generator=generator)

    task = asyncio.create_task(orchestrator.handle_query(PM_QUERY, session_id="s1", low_bandwidth=True))
    await generator.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    session = await services.sessions.get("s1")
    assert len(session.history) == 6
    assert not session.low_bandwidth_mode


@pytest.mark.asyncio
async def test_low_bandwidth_mode_commits_with_the_turn(services):
    await seed_history(services.sessions, "s1", 3)

    await services.orchestrator.handle_query(PM_QUERY, session_id="s1", low_bandwidth=True)

    prompt = services.generator.prompts[-1]
    history_in_prompt = prompt.messages[1:-1]
    assert [m["content"] for m in history_in_prompt] == ["a1", "q2", "a2"]

    session = await services.sessions.get("s1")
    assert session.low_bandwidth_mode
    assert len(session.history) == 3
    assert session.history[0].content == "a2"


@pytest.mark.asyncio
async def test_scheme_update_during_generation_is_not_cached(services):
    generator = BlockingGenerator()
    orchestrator = orchestrator_for(services, generator=generator)

    task = asyncio.create_task(orchestrator.handle_query(PM_QUERY, session_id="s1"))
    await generator.started.wait()
    current = services.schemes.get("pm-scholarship")
    await services.schemes.upsert(current.model_copy(update={"description": "Amount revised."}))
    generator.release.set()
    outcome = await task

    assert outcome.outcome == "generated"
    assert await services.cache.get(fingerprint(services, PM_QUERY)) is None

    # The next request sees the new facts and may cache them
    second = await orchestrator.handle_query(PM_QUERY, session_id="s1")
    assert second.outcome == "generated"
    assert await services.cache.get(fingerprint(services, PM_QUERY)) is not None


@pytest.mark.asyncio
async def test_low_bandwidth_response_is_stripped(services):
    outcome = await services.orchestrator.handle_query(PM_QUERY, session_id="s1", low_bandwidth=True)

    assert outcome.response.sources is None
    assert outcome.response.related_schemes is None
    assert len(outcome.response.response) <= 500
    assert (await services.sessions.get("s1")).low_bandwidth_mode


@pytest.mark.asyncio
async def test_language_preference_changes_cache_key(services):
    await services.orchestrator.handle_query(PM_QUERY, session_id="s1")
    outcome = await services.orchestrator.handle_query(
        PM_QUERY,
        session_id="s2",
        user_profile=UserProfile(language_preference="hi"),
    )

    assert outcome.outcome == "generated"
    assert services.generator.prompts[-1].language.value == "hi"


def test_invalid_transition_rejected():
    run = PipelineRun()

    with pytest.raises(InvalidTransitionError):
        run.advance(PipelineState.DONE)


def test_failed_reachable_from_any_open_state():
    run = PipelineRun()
    run.advance(PipelineState.RATE_CHECKED)
    run.advance(PipelineState.FAILED)

    with pytest.raises(InvalidTransitionError):
        run.advance(PipelineState.FAILED)


def test_find_opportunities_ranks_eligible_open_schemes(services):
    now = datetime.now(timezone.utc)
    store = SchemeStore([
        make_scheme(id="up-only", eligibility_criteria=[{"type": "location", "operator": "eq", "value": "Uttar Pradesh"}]),
        make_scheme(id="bihar-only", eligibility_criteria=[{"type": "location", "operator": "eq", "value": "Bihar"}]),
        make_scheme(
            id="expired",
            deadline=now - timedelta(days=1),
            last_updated=now - timedelta(days=60),
        ),
        make_scheme(id="job", category="employment", keywords=["job"]),
    ])
    orchestrator = orchestrator_for(services, scheme_store=store)
    profile = UserProfile(age=22, location=Location(state="Uttar Pradesh"))

    result = orchestrator.find_opportunities(profile, OpportunityFilters(category="scholarship"))

    assert [o.scheme_id for o in result.opportunities] == ["up-only"]
    assert result.total_count == 1
    assert result.relevance_scores == {"up-only": 1.0}


def test_find_opportunities_flags_low_confidence_and_limits(services):
    store = SchemeStore([make_scheme(id=f"s{i}") for i in range(5)])
    orchestrator = orchestrator_for(services, scheme_store=store)

    result = orchestrator.find_opportunities(UserProfile(), OpportunityFilters(limit=2))

    assert result.total_count == 5
    assert [o.scheme_id for o in result.opportunities] == ["s0", "s1"]
    assert all(o.low_confidence for o in result.opportunities)
