"""Query text normalization shared by search, prompting and caching."""

from .normalization import QueryNormalizationService, get_normalization_service

__all__ = ["QueryNormalizationService", "get_normalization_service"]
