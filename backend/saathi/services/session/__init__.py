"""Per-session conversation context."""

from .context_store import SessionContextStore, get_session_store

__all__ = ["SessionContextStore", "get_session_store"]
