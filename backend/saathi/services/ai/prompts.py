"""
Prompt construction for the answer generator.

A prompt is bounded by construction: the last PROMPT_HISTORY_MESSAGES turns
of the (already truncated) session history, each clipped, plus the top
PROMPT_TOP_K ranked schemes rendered as fact blocks.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from saathi.models.profile import LanguagePreference
from saathi.models.scheme import CriterionOperator, CriterionType, EligibilityCriterion, Scheme
from saathi.models.session import Message

MAX_HISTORY_MESSAGE_CHARS = 400

LANGUAGE_INSTRUCTIONS: Dict[LanguagePreference, str] = {
    LanguagePreference.EN: "Reply in simple English.",
    LanguagePreference.HI: "Reply in simple Hindi written in Devanagari script.",
    LanguagePreference.HINGLISH: "Reply in Hinglish: Hindi written in Latin script, mixed with common English words.",
}

SYSTEM_PROMPT = (
    "You are Saathi, an assistant that helps young people in India find government "
    "schemes, scholarships, internships and jobs they are eligible for.\n"
    "Use ONLY the scheme facts given below. When a scheme is relevant, explain who is "
    "eligible, what the benefits are, and the steps to apply. If the question is unclear "
    "or no scheme fits, say so and ask one short clarifying question.\n"
    "{language_instruction}\n"
    "{length_instruction}\n\n"
    "You MUST respond with a single JSON object only, with keys:\n"
    '{{"answer": "...", "cited_scheme_ids": ["<id of every scheme you used>"], '
    '"confidence": 0.0-1.0}}\n'
    "Do not include any explanation outside the JSON.\n\n"
    "Scheme facts:\n{scheme_blocks}"
)

FULL_LENGTH_INSTRUCTION = "Use short paragraphs or a numbered list for application steps."
LOW_BANDWIDTH_INSTRUCTION = "Keep the answer under 80 words in plain text without formatting."

_OPERATOR_WORDS = {
    CriterionOperator.EQ: "exactly",
    CriterionOperator.GTE: "at least",
    CriterionOperator.LTE: "at most",
    CriterionOperator.IN: "one of",
}

_TYPE_LABELS = {
    CriterionType.AGE: "age",
    CriterionType.EDUCATION: "education",
    CriterionType.INCOME: "annual family income (INR)",
    CriterionType.LOCATION: "location",
    CriterionType.CATEGORY: "social category",
}


@dataclass
class Prompt:
    messages: List[Dict[str, str]]
    scheme_ids: List[str] = field(default_factory=list)
    scheme_blocks: str = ""
    language: LanguagePreference = LanguagePreference.EN


def describe_criterion(criterion: EligibilityCriterion) -> str:
    value = criterion.value
    if isinstance(value, (list, tuple, set)):
        value = ", ".join(str(v) for v in value)
    return f"{_TYPE_LABELS[criterion.type]} {_OPERATOR_WORDS[criterion.operator]} {value}"


def format_scheme_block(scheme: Scheme) -> str:
    lines = [
        f"[{scheme.id}] {scheme.name} ({scheme.category.value.replace('_', ' ')})",
        scheme.description,
        "Eligibility: " + "; ".join(describe_criterion(c) for c in scheme.eligibility_criteria),
    ]
    if scheme.benefits:
        lines.append("Benefits: " + "; ".join(scheme.benefits))
    if scheme.application_steps:
        steps = "; ".join(
            f"{step.order}. {step.title}" + (f" - {step.description}" if step.description else "")
            for step in scheme.application_steps
        )
        lines.append(f"How to apply: {steps}")
    lines.append(f"Deadline: {scheme.deadline.date().isoformat()}" if scheme.deadline else "Deadline: open")
    lines.append(f"Official link: {scheme.official_link} ({scheme.source_department})")
    return "\n".join(lines)


def build_prompt(
    query: str,
    history: Sequence[Message],
    schemes: Sequence[Scheme],
    language: LanguagePreference,
    low_bandwidth: bool,
    top_k: int = 3,
    history_messages: int = 6,
) -> Prompt:
    """Assemble chat messages for one turn."""
    grounding = list(schemes)[:top_k]
    scheme_blocks = "\n\n".join(format_scheme_block(s) for s in grounding) or "(no matching schemes found)"

    system = SYSTEM_PROMPT.format(
        language_instruction=LANGUAGE_INSTRUCTIONS[language],
        length_instruction=LOW_BANDWIDTH_INSTRUCTION if low_bandwidth else FULL_LENGTH_INSTRUCTION,
        scheme_blocks=scheme_blocks,
    )

    messages: List[Dict[str, str]] = [{"role": "system", "content": system}]
    recent = list(history)[-history_messages:] if history_messages > 0 else []
    for message in recent:
        messages.append({
            "role": message.role.value,
            "content": message.content[:MAX_HISTORY_MESSAGE_CHARS],
        })
    messages.append({"role": "user", "content": query})

    return Prompt(
        messages=messages,
        scheme_ids=[s.id for s in grounding],
        scheme_blocks=scheme_blocks,
        language=language,
    )
