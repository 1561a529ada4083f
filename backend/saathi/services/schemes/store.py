"""
In-memory scheme store with keyword and category indexes.

The catalogue is small enough (thousands of schemes) to hold in every
instance; it is loaded from JSON at startup and changed only through
upsert/remove, which notify listeners so cached answers citing a changed
scheme can be invalidated.

Keyword scoring, per scheme:
- name token match: 3.0
- keyword match: 2.0
- description token match: 1.0
- category match: 1.0
normalized by the best possible score (7.0 per query keyword), so 1.0 means
every keyword hit every field.
"""
import json
import re
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from saathi.core.config import get_settings
from saathi.core.logging import get_logger
from saathi.core.metrics import update_active_schemes
from saathi.core.tracing import get_tracer, set_span_attribute
from saathi.models.scheme import Scheme, SchemeCategory

logger = get_logger(__name__)

ChangeListener = Callable[[str], Awaitable[None]]

_TOKEN_PATTERN = re.compile(r"\w+")
MAX_SCORE_PER_KEYWORD = 7.0


def _tokens(text: str) -> Set[str]:
    return set(_TOKEN_PATTERN.findall(text.lower()))


class SchemeStore:
    """Keyword/category-indexed scheme catalogue."""

    def __init__(self, schemes: Optional[Iterable[Scheme]] = None):
        self._schemes: Dict[str, Scheme] = {}
        self._token_index: Dict[str, Set[str]] = {}
        self._category_index: Dict[SchemeCategory, Set[str]] = {}
        self._listeners: List[ChangeListener] = []
        for scheme in schemes or []:
            self._index(scheme)
        update_active_schemes(len(self._schemes))

    def __len__(self) -> int:
        return len(self._schemes)

    @staticmethod
    def _scheme_tokens(scheme: Scheme) -> Set[str]:
        tokens = _tokens(scheme.name) | _tokens(scheme.description)
        for keyword in scheme.keywords:
            tokens |= _tokens(keyword)
        tokens.add(scheme.category.value)
        return tokens

    def _index(self, scheme: Scheme) -> None:
        self._schemes[scheme.id] = scheme
        for token in self._scheme_tokens(scheme):
            self._token_index.setdefault(token, set()).add(scheme.id)
        self._category_index.setdefault(scheme.category, set()).add(scheme.id)

    def _unindex(self, scheme_id: str) -> Optional[Scheme]:
        scheme = self._schemes.pop(scheme_id, None)
        if scheme is None:
            return None
        for token in self._scheme_tokens(scheme):
            ids = self._token_index.get(token)
            if ids is not None:
                ids.discard(scheme_id)
                if not ids:
                    del self._token_index[token]
        self._category_index.get(scheme.category, set()).discard(scheme_id)
        return scheme

    def add_listener(self, listener: ChangeListener) -> None:
        """Register an async callback invoked with the scheme ID after every change."""
        self._listeners.append(listener)

    async def _notify(self, scheme_id: str) -> None:
        for listener in self._listeners:
            await listener(scheme_id)

    def get(self, scheme_id: str) -> Optional[Scheme]:
        return self._schemes.get(scheme_id)

    def list(self, category: Optional[SchemeCategory] = None) -> List[Scheme]:
        if category is None:
            ids = self._schemes.keys()
        else:
            ids = self._category_index.get(category, set())
        return [self._schemes[scheme_id] for scheme_id in sorted(ids)]

    def _score(self, scheme: Scheme, keywords: List[str]) -> float:
        name_tokens = _tokens(scheme.name)
        description_tokens = _tokens(scheme.description)
        keyword_tokens: Set[str] = set()
        for keyword in scheme.keywords:
            keyword_tokens |= _tokens(keyword)

        score = 0.0
        for word in keywords:
            if word in name_tokens:
                score += 3.0
            if word in keyword_tokens:
                score += 2.0
            if word in description_tokens:
                score += 1.0
            if word == scheme.category.value:
                score += 1.0
        return score / (len(keywords) * MAX_SCORE_PER_KEYWORD)

    def search_scored(
        self,
        keywords: List[str],
        category: Optional[SchemeCategory] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[Scheme, float]]:
        """Schemes matching any keyword, best first (ties by ID)."""
        tracer = get_tracer()
        with tracer.start_as_current_span("schemes.search"):
            set_span_attribute("search.keyword_count", len(keywords))
            words = [w.lower() for w in keywords if w]
            if not words:
                return []

            candidate_ids: Set[str] = set()
            for word in words:
                candidate_ids |= self._token_index.get(word, set())
            if category is not None:
                candidate_ids &= self._category_index.get(category, set())

            results = [(self._schemes[sid], self._score(self._schemes[sid], words)) for sid in candidate_ids]
            results.sort(key=lambda item: (-item[1], item[0].id))
            if limit is not None:
                results = results[:limit]

            set_span_attribute("search.results_count", len(results))
            return results

    def search(
        self,
        keywords: List[str],
        category: Optional[SchemeCategory] = None,
        limit: Optional[int] = None,
    ) -> List[Scheme]:
        return [scheme for scheme, _ in self.search_scored(keywords, category, limit)]

    async def upsert(self, scheme: Scheme) -> bool:
        """Insert or replace a scheme; returns True when it replaced an existing one."""
        replaced = self._unindex(scheme.id) is not None
        self._index(scheme)
        update_active_schemes(len(self._schemes))
        logger.info("scheme_upserted", scheme_id=scheme.id, replaced=replaced)
        await self._notify(scheme.id)
        return replaced

    async def remove(self, scheme_id: str) -> bool:
        removed = self._unindex(scheme_id) is not None
        if removed:
            update_active_schemes(len(self._schemes))
            logger.info("scheme_removed", scheme_id=scheme_id)
            await self._notify(scheme_id)
        return removed

    @classmethod
    def load_from_file(cls, path: Path) -> "SchemeStore":
        """
        Load a scheme catalogue from a JSON array.

        Records that fail validation are skipped and logged; the rest load.
        """
        if not path.exists():
            logger.warning("scheme_data_not_found", path=str(path), message="Starting with an empty catalogue")
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            raw_schemes = json.load(f)

        schemes: List[Scheme] = []
        for raw in raw_schemes:
            try:
                schemes.append(Scheme.model_validate(raw))
            except ValidationError as e:
                logger.warning(
                    "scheme_record_invalid",
                    scheme_id=raw.get("id") if isinstance(raw, dict) else None,
                    error_count=e.error_count(),
                    error=str(e.errors()[0]["msg"]) if e.errors() else None,
                )

        logger.info("scheme_data_loaded", path=str(path), scheme_count=len(schemes))
        return cls(schemes)


_scheme_store: Optional[SchemeStore] = None


def get_scheme_store() -> SchemeStore:
    """Get global scheme store; loads the configured catalogue on first use."""
    global _scheme_store
    if _scheme_store is None:
        _scheme_store = SchemeStore.load_from_file(get_settings().scheme_data_path)
    return _scheme_store


def set_scheme_store(store: SchemeStore) -> None:
    global _scheme_store
    _scheme_store = store
