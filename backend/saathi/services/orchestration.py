"""
Query orchestration.

Pipeline per query (one state per step, transitions checked against
ALLOWED_TRANSITIONS):

    RECEIVED -> RATE_CHECKED -> CACHE_CHECKED
        -> CACHE_HIT -> ADAPTING -> RESPONDING -> DONE
        -> CACHE_MISS -> MATCHING -> PROMPTING -> GENERATING
            -> CACHING -> ADAPTING -> RESPONDING -> DONE
            -> DEGRADED -> ADAPTING -> RESPONDING -> DONE

FAILED is reachable from every non-terminal state. Generator failures take
the DEGRADED branch (similar cached answer, else a templated apology) so the
caller always gets an answer; degraded answers are never cached.

Writes to the cache and the session happen only once a complete response
exists. A request cancelled mid-pipeline leaves no partial state behind.
"""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from saathi.core.config import Settings, get_settings
from saathi.core.errors import (
    GeneratorError,
    GeneratorTimeoutError,
    InvalidQueryError,
    RateLimitExceededError,
    SaathiError,
)
from saathi.core.logging import fingerprint_text, get_logger
from saathi.core.metrics import record_query_outcome
from saathi.core.rate_limit import EndpointClass, RateLimiter, get_rate_limiter
from saathi.core.tracing import get_tracer, set_span_attribute
from saathi.models.profile import LanguagePreference, UserProfile
from saathi.models.requests import OpportunityFilters
from saathi.models.responses import (
    OpportunitiesResponse,
    OpportunityResult,
    QueryResponse,
    RelatedScheme,
    SourceRef,
)
from saathi.models.scheme import Scheme
from saathi.models.session import InputMode, Message, MessageRole, Session
from saathi.services.ai.fallback import build_apology
from saathi.services.ai.generator import AnswerGenerator, GeneratedAnswer, get_answer_generator
from saathi.services.ai.prompts import build_prompt
from saathi.services.bandwidth import adapt
from saathi.services.cache.response_cache import (
    CacheEntry,
    ResponseCache,
    TTLClass,
    get_response_cache,
    make_query_fingerprint,
    make_similar_key,
)
from saathi.services.ranking import ScoredScheme, score_and_rank
from saathi.services.schemes import SchemeStore, get_scheme_store
from saathi.services.search import QueryNormalizationService, get_normalization_service
from saathi.services.session import SessionContextStore, get_session_store

logger = get_logger(__name__)

# Candidate pool for grounding: search hits scoring at least this fraction
# of the best hit, before eligibility ranking
RELEVANCE_FLOOR = 0.6
CANDIDATE_POOL_SIZE = 20
MAX_RELATED_SCHEMES = 5
# Slack on top of the generator's own timeout before the call is abandoned
GENERATION_GRACE_SECONDS = 0.5


class PipelineState(str, Enum):
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    CACHE_CHECKED = "cache_checked"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    MATCHING = "matching"
    PROMPTING = "prompting"
    GENERATING = "generating"
    DEGRADED = "degraded"
    CACHING = "caching"
    ADAPTING = "adapting"
    RESPONDING = "responding"
    DONE = "done"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[PipelineState, Set[PipelineState]] = {
    PipelineState.RECEIVED: {PipelineState.RATE_CHECKED},
    PipelineState.RATE_CHECKED: {PipelineState.CACHE_CHECKED},
    PipelineState.CACHE_CHECKED: {PipelineState.CACHE_HIT, PipelineState.CACHE_MISS},
    PipelineState.CACHE_HIT: {PipelineState.ADAPTING},
    PipelineState.CACHE_MISS: {PipelineState.MATCHING},
    PipelineState.MATCHING: {PipelineState.PROMPTING},
    PipelineState.PROMPTING: {PipelineState.GENERATING},
    PipelineState.GENERATING: {PipelineState.CACHING, PipelineState.DEGRADED},
    PipelineState.DEGRADED: {PipelineState.ADAPTING},
    PipelineState.CACHING: {PipelineState.ADAPTING},
    PipelineState.ADAPTING: {PipelineState.RESPONDING},
    PipelineState.RESPONDING: {PipelineState.DONE},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}

TERMINAL_STATES = frozenset({PipelineState.DONE, PipelineState.FAILED})


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class PipelineRun:
    """State trail of one query."""

    states: List[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    started_at: float = field(default_factory=time.time)

    @property
    def state(self) -> PipelineState:
        return self.states[-1]

    def advance(self, target: PipelineState) -> None:
        current = self.state
        allowed = target is PipelineState.FAILED and current not in TERMINAL_STATES
        if not allowed and target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"{current.value} -> {target.value}")
        self.states.append(target)

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.started_at


@dataclass
class QueryOutcome:
    """Result of HandleQuery: a response or an error envelope, never both."""

    outcome: str
    states: List[PipelineState]
    response: Optional[QueryResponse] = None
    error: Optional[SaathiError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class QueryOrchestrator:
    """Composes limiter, cache, matcher, ranker, generator, adapter and sessions per query."""

    def __init__(
        self,
        scheme_store: Optional[SchemeStore] = None,
        session_store: Optional[SessionContextStore] = None,
        response_cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        generator: Optional[AnswerGenerator] = None,
        normalizer: Optional[QueryNormalizationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.scheme_store = scheme_store or get_scheme_store()
        self.session_store = session_store or get_session_store()
        self.response_cache = response_cache or get_response_cache()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.generator = generator or get_answer_generator()
        self.normalizer = normalizer or get_normalization_service()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # HandleQuery
    # ------------------------------------------------------------------

    async def handle_query(
        self,
        query: str,
        session_id: Optional[str] = None,
        input_mode: InputMode = InputMode.TEXT,
        user_profile: Optional[UserProfile] = None,
        low_bandwidth: bool = False,
        subject_id: Optional[str] = None,
    ) -> QueryOutcome:
        """
        Answer one query.

        subject_id is who the request is charged to when neither a user ID nor
        a session ID is known (the HTTP layer passes the client IP).
        """
        run = PipelineRun()
        tracer = get_tracer()
        with tracer.start_as_current_span("query.pipeline"):
            set_span_attribute("query.input_mode", input_mode.value)
            set_span_attribute("query.low_bandwidth", low_bandwidth)
            try:
                outcome = await self._run(run, query, session_id, input_mode, user_profile, low_bandwidth, subject_id)
            except asyncio.CancelledError:
                logger.warning(
                    "query_cancelled",
                    pipeline_state=run.state.value,
                    message="Caller went away; nothing was written",
                )
                raise

            set_span_attribute("query.outcome", outcome.outcome)
            record_query_outcome(outcome.outcome, run.elapsed_seconds)
            logger.info(
                "query_completed",
                outcome=outcome.outcome,
                pipeline_states=[s.value for s in outcome.states],
                latency_ms=int(run.elapsed_seconds * 1000),
            )
            return outcome

    def _fail(self, run: PipelineRun, outcome: str, error: SaathiError) -> QueryOutcome:
        run.advance(PipelineState.FAILED)
        logger.warning(
            "query_failed",
            outcome=outcome,
            error_code=error.code,
            error_type=type(error).__name__,
            failed_after=run.states[-2].value,
        )
        return QueryOutcome(outcome=outcome, states=list(run.states), error=error)

    @staticmethod
    def _subject(user_profile: Optional[UserProfile], session_id: Optional[str], subject_id: Optional[str]) -> str:
        if user_profile is not None and user_profile.user_id:
            return f"user:{user_profile.user_id}"
        if session_id:
            return f"session:{session_id}"
        return subject_id or "anonymous"

    async def _run(
        self,
        run: PipelineRun,
        query: str,
        session_id: Optional[str],
        input_mode: InputMode,
        user_profile: Optional[UserProfile],
        low_bandwidth: bool,
        subject_id: Optional[str],
    ) -> QueryOutcome:
        normalized = self.normalizer.normalize(query or "")
        logger.info(
            "query_received",
            query_hash=fingerprint_text(normalized),
            query_length=len(query or ""),
            input_mode=input_mode.value,
            low_bandwidth=low_bandwidth,
        )
        if not normalized:
            return self._fail(run, "invalid", InvalidQueryError())

        # RECEIVED -> RATE_CHECKED
        decision = await self.rate_limiter.check(
            self._subject(user_profile, session_id, subject_id),
            EndpointClass.QUERY,
        )
        if not decision.allowed:
            error = RateLimitExceededError(EndpointClass.QUERY.value, decision.retry_after_seconds)
            return self._fail(run, "rate_limited", error)
        run.advance(PipelineState.RATE_CHECKED)

        session = await self.session_store.snapshot(
            session_id,
            user_id=user_profile.user_id if user_profile is not None else None,
            language=user_profile.language_preference if user_profile is not None else None,
        )
        language = user_profile.language_preference if user_profile is not None else session.language_preference

        # RATE_CHECKED -> CACHE_CHECKED
        fingerprint = make_query_fingerprint(normalized, language.value, low_bandwidth)
        entry = await self.response_cache.get(fingerprint, cache_type="llm_answer")
        run.advance(PipelineState.CACHE_CHECKED)

        if entry is not None:
            run.advance(PipelineState.CACHE_HIT)
            full = QueryResponse.model_validate({**entry.payload, "sessionId": session.session_id})
            outcome = "cache_hit"
        else:
            run.advance(PipelineState.CACHE_MISS)
            full, outcome = await self._generate(
                run, query, normalized, fingerprint, session, user_profile, language, low_bandwidth
            )

        run.advance(PipelineState.ADAPTING)
        adapted = adapt(full, low_bandwidth)

        # The turn, the bandwidth mode and any truncation it implies are
        # committed together here and nowhere earlier
        run.advance(PipelineState.RESPONDING)
        if not session.ephemeral:
            await self.session_store.append_messages(
                session.session_id,
                [
                    Message(role=MessageRole.USER, content=query.strip(), input_mode=input_mode),
                    Message(role=MessageRole.ASSISTANT, content=adapted.response),
                ],
                language=language,
                low_bandwidth=low_bandwidth,
                user_id=session.user_id,
            )

        run.advance(PipelineState.DONE)
        return QueryOutcome(outcome=outcome, states=list(run.states), response=adapted)

    def _prompt_history(self, session: Session, low_bandwidth: bool) -> List[Message]:
        if low_bandwidth:
            return session.history[-self.settings.low_bandwidth_history_cap:]
        return session.history

    def _candidates(self, keywords: List[str], user_profile: Optional[UserProfile]) -> List[ScoredScheme]:
        hits = self.scheme_store.search_scored(keywords, limit=CANDIDATE_POOL_SIZE)
        if not hits:
            return []
        best = hits[0][1]
        pool = [scheme for scheme, score in hits if score >= best * RELEVANCE_FLOOR]
        return score_and_rank(user_profile, pool)

    async def _generate(
        self,
        run: PipelineRun,
        query: str,
        normalized: str,
        fingerprint: str,
        session: Session,
        user_profile: Optional[UserProfile],
        language: LanguagePreference,
        low_bandwidth: bool,
    ):
        run.advance(PipelineState.MATCHING)
        keywords = self.normalizer.extract_keywords(normalized)
        ranked = self._candidates(keywords, user_profile)
        grounding = [candidate.scheme for candidate in ranked[: self.settings.prompt_top_k]]
        generations = await self._scheme_generations(ranked)

        run.advance(PipelineState.PROMPTING)
        prompt = build_prompt(
            query=query.strip(),
            history=self._prompt_history(session, low_bandwidth),
            schemes=grounding,
            language=language,
            low_bandwidth=low_bandwidth,
            top_k=self.settings.prompt_top_k,
            history_messages=self.settings.prompt_history_messages,
        )

        run.advance(PipelineState.GENERATING)
        timeout = self.settings.llm_timeout_seconds
        try:
            answer = await asyncio.wait_for(
                self.generator.generate(prompt, timeout),
                timeout=timeout + GENERATION_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("generator_deadline_exceeded", timeout_seconds=timeout)
            return await self._degrade(run, GeneratorTimeoutError(), keywords, language, ranked, session)
        except GeneratorError as e:
            return await self._degrade(run, e, keywords, language, ranked, session)

        full = self._compose(answer, ranked, session.session_id)

        run.advance(PipelineState.CACHING)
        cited = {source.scheme_id for source in full.sources or []}
        tags = sorted(cited | {scheme.id for scheme in grounding})
        entry = CacheEntry(
            payload=full.model_dump(by_alias=True, exclude_none=True, exclude={"session_id"}, mode="json"),
            scheme_ids=tags,
            confidence=answer.confidence,
        )
        if generations is not None:
            written = await self.response_cache.put(fingerprint, entry, TTLClass.LLM_ANSWER, generations)
            if written and keywords:
                await self.response_cache.put_similar(make_similar_key(keywords, language.value), fingerprint, tags)

        return full, "generated"

    async def _scheme_generations(self, ranked: List[ScoredScheme]) -> Optional[Dict[str, int]]:
        """
        Invalidation counters of the matched schemes, or None if the answer
        must not be cached.

        Read after matching; a scheme replaced in the catalogue in between
        (its invalidation may not have landed yet) rules the answer out too.
        """
        generations = await self.response_cache.scheme_generations(c.scheme.id for c in ranked)
        if generations is None:
            return None
        if any(self.scheme_store.get(c.scheme.id) is not c.scheme for c in ranked):
            logger.info("cache_write_skipped_catalogue_changed")
            return None
        return generations

    def _compose(self, answer: GeneratedAnswer, ranked: List[ScoredScheme], session_id: str) -> QueryResponse:
        by_id: Dict[str, Scheme] = {candidate.scheme.id: candidate.scheme for candidate in ranked}
        cited_ids = answer.cited_sources or [c.scheme.id for c in ranked[: self.settings.prompt_top_k]]
        sources = [
            SourceRef(
                scheme_id=by_id[scheme_id].id,
                name=by_id[scheme_id].name,
                official_link=by_id[scheme_id].official_link,
                source_department=by_id[scheme_id].source_department,
            )
            for scheme_id in cited_ids
            if scheme_id in by_id
        ]
        cited = {source.scheme_id for source in sources}
        related = [
            RelatedScheme(
                scheme_id=candidate.scheme.id,
                name=candidate.scheme.name,
                category=candidate.scheme.category,
                relevance_score=candidate.relevance_score,
            )
            for candidate in ranked
            if candidate.scheme.id not in cited
        ][:MAX_RELATED_SCHEMES]

        return QueryResponse(
            response=answer.text,
            sources=sources or None,
            related_schemes=related or None,
            clarification_needed=(
                answer.confidence < self.settings.clarification_confidence_threshold or not ranked
            ),
            session_id=session_id,
        )

    async def _degrade(
        self,
        run: PipelineRun,
        error: GeneratorError,
        keywords: List[str],
        language: LanguagePreference,
        ranked: List[ScoredScheme],
        session: Session,
    ):
        run.advance(PipelineState.DEGRADED)
        logger.warning(
            "generator_failed_degrading",
            generator_error=error.kind,
            error_type=type(error).__name__,
        )

        if keywords:
            similar = await self.response_cache.get_similar(make_similar_key(keywords, language.value))
            if similar is not None:
                response = QueryResponse.model_validate({**similar.payload, "sessionId": session.session_id})
                return response, "degraded_similar"

        top_scheme = ranked[0].scheme if ranked else None
        related = [
            RelatedScheme(
                scheme_id=candidate.scheme.id,
                name=candidate.scheme.name,
                category=candidate.scheme.category,
                relevance_score=candidate.relevance_score,
            )
            for candidate in ranked[:MAX_RELATED_SCHEMES]
        ]
        response = QueryResponse(
            response=build_apology(language, top_scheme),
            related_schemes=related or None,
            clarification_needed=False,
            session_id=session.session_id,
        )
        return response, "degraded"

    # ------------------------------------------------------------------
    # FindOpportunities
    # ------------------------------------------------------------------

    def find_opportunities(
        self,
        user_profile: UserProfile,
        filters: Optional[OpportunityFilters] = None,
    ) -> OpportunitiesResponse:
        """
        Eligible schemes for a profile, ranked.

        Schemes whose deadline has already passed are left out.
        """
        filters = filters or OpportunityFilters()
        tracer = get_tracer()
        with tracer.start_as_current_span("opportunities.find"):
            if filters.keywords:
                candidates = self.scheme_store.search(filters.keywords, category=filters.category)
            else:
                candidates = self.scheme_store.list(category=filters.category)

            now = time.time()
            open_candidates = [
                s for s in candidates
                if s.deadline is None or s.deadline.timestamp() > now
            ]
            ranked = score_and_rank(user_profile, open_candidates)
            page = ranked[: filters.limit]
            set_span_attribute("opportunities.total_count", len(ranked))

            logger.info(
                "opportunities_found",
                candidate_count=len(candidates),
                eligible_count=len(ranked),
                returned_count=len(page),
            )
            return OpportunitiesResponse(
                opportunities=[
                    OpportunityResult.from_scheme(c.scheme, c.matched_count, c.total_evaluable)
                    for c in page
                ],
                total_count=len(ranked),
                relevance_scores={c.scheme.id: c.relevance_score for c in page},
            )


_query_orchestrator: Optional[QueryOrchestrator] = None


def get_query_orchestrator() -> QueryOrchestrator:
    """Global singleton accessor."""
    global _query_orchestrator
    if _query_orchestrator is None:
        _query_orchestrator = QueryOrchestrator()
    return _query_orchestrator
