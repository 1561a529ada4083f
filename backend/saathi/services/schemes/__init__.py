"""Scheme catalogue: the single source of truth the query core reads for matching."""

from .store import SchemeStore, get_scheme_store

__all__ = ["SchemeStore", "get_scheme_store"]
