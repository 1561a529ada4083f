"""
Bandwidth adapter.

adapt(response, False) returns the response object itself. In low-bandwidth
mode:
- rich formatting (markdown, HTML tags) is reduced to plain text
- the answer is cut to at most 500 characters at a whitespace boundary
- sources and related schemes are dropped
- clarification_needed and session_id are kept as they are

For answers longer than 500 characters the serialized payload must come out
at 40% of the original size or less; when the envelope overhead would break
that, the text budget shrinks below 500 characters.
"""
import re

from saathi.core.config import get_settings
from saathi.core.logging import get_logger
from saathi.core.metrics import record_payload_reduction
from saathi.models.responses import QueryResponse

logger = get_logger(__name__)

MAX_SIZE_RATIO = 0.4
ELLIPSIS = "..."

_FORMATTING_PATTERNS = [
    (re.compile(r"```[a-zA-Z0-9_-]*\n?"), ""),        # code fences
    (re.compile(r"`([^`]*)`"), r"\1"),                 # inline code
    (re.compile(r"!\[([^\]]*)\]\([^)]*\)"), r"\1"),    # images
    (re.compile(r"\[([^\]]+)\]\([^)]*\)"), r"\1"),     # links
    (re.compile(r"<[^>]+>"), " "),                     # html tags
    (re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE), ""),  # headings
    (re.compile(r"^\s{0,3}>\s?", re.MULTILINE), ""),       # blockquotes
    (re.compile(r"^\s*[-*+]\s+", re.MULTILINE), ""),       # bullets
    (re.compile(r"^\s*(?:-{3,}|\*{3,}|_{3,})\s*$", re.MULTILINE), ""),  # rules
    (re.compile(r"(\*\*|__)(.+?)\1"), r"\2"),          # bold
    (re.compile(r"(?<!\w)[*_](\S(?:.*?\S)?)[*_](?!\w)"), r"\1"),  # italics
    (re.compile(r"~~(.+?)~~"), r"\1"),                 # strikethrough
]


def strip_formatting(text: str) -> str:
    """Reduce markdown/HTML to plain text on a single line."""
    for pattern, replacement in _FORMATTING_PATTERNS:
        text = pattern.sub(replacement, text)
    text = text.replace("*", "").replace("|", " ")
    return re.sub(r"\s+", " ", text).strip()


def truncate_at_word(text: str, max_chars: int) -> str:
    """
    Cut text to at most max_chars (ellipsis included) without splitting a word.

    A single token longer than the room (a long URL, say) is cut hard.
    """
    if len(text) <= max_chars:
        return text
    room = max_chars - len(ELLIPSIS)
    if room <= 0:
        return ""
    cut = text[:room]
    if not text[room].isspace():
        boundary = max(cut.rfind(" "), cut.rfind("\n"), cut.rfind("\t"))
        if boundary > 0:
            cut = cut[:boundary]
    cut = cut.rstrip()
    return f"{cut}{ELLIPSIS}" if cut else ""


def _fit_to_budget(adapted: QueryResponse, plain: str, budget: int) -> QueryResponse:
    """Longest word-boundary cut of `plain` whose payload fits in `budget` bytes."""
    low, high = 0, len(adapted.response)
    best = adapted.model_copy(update={"response": ""})
    while low <= high:
        mid = (low + high) // 2
        candidate = adapted.model_copy(update={"response": truncate_at_word(plain, mid)})
        if candidate.payload_size() <= budget:
            best, low = candidate, mid + 1
        else:
            high = mid - 1
    return best


def adapt(response: QueryResponse, low_bandwidth: bool) -> QueryResponse:
    """Shape a full response for the request's bandwidth mode."""
    if not low_bandwidth:
        return response

    max_chars = get_settings().low_bandwidth_max_chars
    plain = strip_formatting(response.response)
    adapted = QueryResponse(
        response=truncate_at_word(plain, max_chars),
        clarification_needed=response.clarification_needed,
        session_id=response.session_id,
    )

    if len(response.response) <= max_chars:
        return adapted

    full_size = response.payload_size()
    budget = int(full_size * MAX_SIZE_RATIO)
    if adapted.payload_size() > budget:
        adapted = _fit_to_budget(adapted, plain, budget)

    adapted_size = adapted.payload_size()
    record_payload_reduction(full_size, adapted_size)
    logger.debug(
        "payload_adapted",
        full_bytes=full_size,
        adapted_bytes=adapted_size,
        text_chars=len(adapted.response),
    )
    return adapted
