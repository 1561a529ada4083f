"""
Query normalization service.

The same normalized text feeds scheme search, the prompt and the cache
fingerprint, so voice and typed queries that differ only in casing,
punctuation or common abbreviations share one cache entry.

- Lowercase, trim whitespace, remove punctuation
- Expand abbreviations and Hindi/Hinglish synonyms (e.g., "chhatravritti" -> "scholarship")
- Extract content keywords (stopwords in English and Hinglish dropped)
"""
import json
import re
from pathlib import Path
from typing import Dict, List, Optional

from saathi.core.config import REPO_ROOT, get_settings
from saathi.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ABBREVIATION_DICT_PATH = REPO_ROOT / "data" / "abbreviations.json"

STOPWORDS = frozenset({
    # English
    "a", "an", "the", "and", "or", "of", "for", "to", "in", "on", "at", "by",
    "with", "about", "is", "are", "was", "be", "am", "i", "me", "my", "we",
    "you", "your", "it", "this", "that", "these", "those", "what", "which",
    "who", "how", "when", "where", "can", "could", "should", "would", "will",
    "do", "does", "did", "tell", "please", "any", "some", "there", "get",
    "give", "know", "want", "need", "show", "find", "apply", "much", "many",
    # Hinglish
    "kya", "hai", "hain", "ka", "ki", "ke", "ko", "mein", "main", "mujhe",
    "muje", "batao", "bataiye", "kaise", "kab", "kaun", "koi", "aur", "se",
    "liye", "bhi", "ho", "hoga", "chahiye", "karna", "kare", "karo", "mera",
    "meri", "mere", "hum", "aap", "ye", "yeh", "wo", "woh",
})


class QueryNormalizationService:
    """
    Query normalization service.

    Performs:
    - Lowercase conversion
    - Punctuation removal
    - Whitespace normalization
    - Abbreviation expansion
    """

    def __init__(self, abbreviation_dict_path: Optional[Path] = None):
        self.abbreviation_dict_path = abbreviation_dict_path or DEFAULT_ABBREVIATION_DICT_PATH
        self.abbreviations: Dict[str, str] = {}
        self._is_initialized = False

    def initialize(self) -> bool:
        """
        Load the abbreviation dictionary from its JSON file.

        A missing or malformed file disables expansion; normalization itself
        keeps working.
        """
        if self._is_initialized:
            return True

        self._is_initialized = True
        if not self.abbreviation_dict_path.exists():
            logger.warning(
                "query_normalization_dict_not_found",
                path=str(self.abbreviation_dict_path),
                message="Abbreviation expansion will be disabled",
            )
            return True

        try:
            with open(self.abbreviation_dict_path, "r", encoding="utf-8") as f:
                abbreviations = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(
                "query_normalization_json_error",
                path=str(self.abbreviation_dict_path),
                error=str(e),
                message="Invalid JSON in abbreviation dictionary",
            )
            return False

        if not isinstance(abbreviations, dict):
            logger.error(
                "query_normalization_invalid_dict",
                message="Abbreviation dictionary must be a JSON object",
            )
            return False

        self.abbreviations = {k.lower(): v.lower() for k, v in abbreviations.items()}
        logger.info(
            "query_normalization_loaded",
            abbreviation_count=len(self.abbreviations),
        )
        return True

    def normalize(self, query: str, expand_abbreviations: bool = True) -> str:
        """
        Normalize query string.

        Returns "" for input that has no word characters left after cleanup.
        """
        if not query:
            return ""

        if not self._is_initialized:
            self.initialize()

        normalized = query.lower()
        normalized = re.sub(r"[^\w\s]", " ", normalized)
        normalized = re.sub(r"[\s_]+", " ", normalized).strip()

        if expand_abbreviations and self.abbreviations:
            normalized = " ".join(self.abbreviations.get(word, word) for word in normalized.split())

        return normalized

    def extract_keywords(self, normalized_query: str) -> List[str]:
        """Content words of an already-normalized query, in order, without duplicates."""
        keywords: List[str] = []
        for word in normalized_query.split():
            if word in STOPWORDS or len(word) < 2 or word in keywords:
                continue
            keywords.append(word)
        return keywords


_normalization_service: Optional[QueryNormalizationService] = None


def get_normalization_service() -> QueryNormalizationService:
    """Get global normalization service instance."""
    global _normalization_service

    if _normalization_service is None:
        _normalization_service = QueryNormalizationService(get_settings().query_abbreviation_dict_path)
        _normalization_service.initialize()

    return _normalization_service
