"""
Answer generator.

The orchestrator depends only on AnswerGenerator.generate(prompt, timeout),
which returns a GeneratedAnswer or raises one of:
- GeneratorRateLimitedError
- GeneratorTimeoutError
- GeneratorUnavailableError
"""
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from saathi.core.errors import GeneratorError, GeneratorUnavailableError
from saathi.core.logging import get_logger
from saathi.core.metrics import record_generator_call
from saathi.core.tracing import get_tracer, set_span_attribute
from saathi.services.ai.llm_client import LLMClient, get_llm_client
from saathi.services.ai.prompts import Prompt
from saathi.services.ai.schema import SchemaValidationError, validate_answer_payload

logger = get_logger(__name__)

# Confidence assumed for replies that did not follow the JSON contract
UNSTRUCTURED_CONFIDENCE = 0.5


@dataclass
class GeneratedAnswer:
    text: str
    cited_sources: List[str] = field(default_factory=list)
    confidence: float = 1.0


class AnswerGenerator(ABC):
    @abstractmethod
    async def generate(self, prompt: Prompt, timeout_seconds: float) -> GeneratedAnswer: ...


class LLMAnswerGenerator(AnswerGenerator):
    """Answer generator backed by an OpenAI-compatible chat completion API."""

    def __init__(self, client: Optional[LLMClient] = None):
        self._client = client

    @property
    def client(self) -> LLMClient:
        return self._client or get_llm_client()

    async def generate(self, prompt: Prompt, timeout_seconds: float) -> GeneratedAnswer:
        tracer = get_tracer()
        with tracer.start_as_current_span("generator.call"):
            set_span_attribute("generator.grounding_count", len(prompt.scheme_ids))
            start = time.time()
            try:
                response = await self.client.chat(
                    prompt.messages,
                    response_format={"type": "json_object"},
                    timeout_seconds=timeout_seconds,
                )
            except GeneratorError as exc:
                record_generator_call(exc.kind, time.time() - start)
                raise

            content = (
                (response.get("choices") or [{}])[0]
                .get("message", {})
                .get("content")
                or ""
            ).strip()
            if not content:
                record_generator_call("unavailable", time.time() - start)
                raise GeneratorUnavailableError("Answer generator returned an empty reply")

            answer = self._parse(content, prompt)
            record_generator_call("success", time.time() - start)
            set_span_attribute("generator.confidence", answer.confidence)
            return answer

    @staticmethod
    def _parse(content: str, prompt: Prompt) -> GeneratedAnswer:
        try:
            output = validate_answer_payload(json.loads(content))
        except (ValueError, SchemaValidationError) as exc:
            logger.warning(
                "generator_output_unstructured",
                error_type=type(exc).__name__,
                content_length=len(content),
            )
            return GeneratedAnswer(text=content, cited_sources=[], confidence=UNSTRUCTURED_CONFIDENCE)

        grounded = set(prompt.scheme_ids)
        cited = [scheme_id for scheme_id in output.cited_scheme_ids if scheme_id in grounded]
        if len(cited) != len(output.cited_scheme_ids):
            logger.info(
                "generator_ungrounded_citations_dropped",
                dropped=len(output.cited_scheme_ids) - len(cited),
            )
        return GeneratedAnswer(text=output.answer, cited_sources=cited, confidence=output.confidence)


_answer_generator: Optional[AnswerGenerator] = None


def get_answer_generator() -> AnswerGenerator:
    """Global singleton accessor."""
    global _answer_generator
    if _answer_generator is None:
        _answer_generator = LLMAnswerGenerator()
    return _answer_generator
