"""
Session context store.

Key format: `session:{session_id}`, one JSON document per session, expiring
after the idle window. The expiry is refreshed on every append, so a session
nobody writes to for SESSION_IDLE_SECONDS disappears and the next query
starts a fresh context.

- Reads return a parsed copy; a request keeps working on its snapshot even
  if the session is reclaimed meanwhile
- Appends are read-modify-write under the store's per-key atomic update, so
  concurrent turns on one session are applied in commit order and none is lost
- In low-bandwidth mode history is truncated to the last 3 messages right
  after every append (and when the mode is switched on)
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from saathi.core.config import get_settings
from saathi.core.errors import StoreUnavailableError
from saathi.core.logging import get_logger
from saathi.core.metrics import record_session_evictions
from saathi.core.store import SharedStore, call_with_retry, get_store
from saathi.models.profile import LanguagePreference
from saathi.models.session import Message, Session

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def generate_session_id() -> str:
    return uuid.uuid4().hex


class SessionContextStore:
    """Shared-store backed conversation sessions."""

    def __init__(
        self,
        store: Optional[SharedStore] = None,
        idle_seconds: Optional[int] = None,
        history_cap: Optional[int] = None,
        low_bandwidth_cap: Optional[int] = None,
    ):
        settings = get_settings()
        self._store = store
        self.idle_seconds = idle_seconds or settings.session_idle_seconds
        self.history_cap = history_cap if history_cap is not None else settings.session_history_cap
        self.low_bandwidth_cap = low_bandwidth_cap or settings.low_bandwidth_history_cap

    @property
    def store(self) -> SharedStore:
        return self._store or get_store()

    def _truncate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        history = data.get("history", [])
        cap = self.low_bandwidth_cap if data.get("low_bandwidth_mode") else self.history_cap
        if cap is not None and len(history) > cap:
            data["history"] = history[-cap:]
        return data

    @staticmethod
    def _new_document(session_id: str, user_id: Optional[str], language: Optional[LanguagePreference]) -> Dict[str, Any]:
        session = Session(
            session_id=session_id,
            user_id=user_id,
            language_preference=language or LanguagePreference.EN,
        )
        return session.model_dump(mode="json")

    async def get(self, session_id: str) -> Optional[Session]:
        data = await call_with_retry("session_get", lambda: self.store.get_json(session_key(session_id)))
        return Session.model_validate(data) if data else None

    async def get_or_create(
        self,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        language: Optional[LanguagePreference] = None,
    ) -> Session:
        """
        Snapshot of the session, created on first use of an unseen ID.

        On store outage returns an ephemeral session that is never persisted.
        """
        session_id = session_id or generate_session_id()
        try:
            existing = await self.get(session_id)
            if existing is not None:
                return existing

            def create_if_absent(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
                return current if current is not None else self._new_document(session_id, user_id, language)

            data = await call_with_retry(
                "session_create",
                lambda: self.store.update_json(session_key(session_id), create_if_absent, self.idle_seconds),
            )
        except StoreUnavailableError:
            logger.warning(
                "session_reduced_mode",
                message="Shared store unavailable; conversation context will not be kept",
            )
            return Session(
                session_id=session_id,
                user_id=user_id,
                language_preference=language or LanguagePreference.EN,
                ephemeral=True,
            )

        logger.info("session_created", session_id=session_id)
        return Session.model_validate(data)

    async def snapshot(
        self,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        language: Optional[LanguagePreference] = None,
    ) -> Session:
        """
        Copy of the session for one request, without writing anything.

        An unseen ID gives a fresh, unsaved session; the first append_messages
        creates its document. On store outage the session is ephemeral.
        """
        session_id = session_id or generate_session_id()
        try:
            existing = await self.get(session_id)
        except StoreUnavailableError:
            logger.warning(
                "session_reduced_mode",
                message="Shared store unavailable; conversation context will not be kept",
            )
            existing = None
            ephemeral = True
        else:
            ephemeral = False
        if existing is not None:
            return existing
        return Session(
            session_id=session_id,
            user_id=user_id,
            language_preference=language or LanguagePreference.EN,
            ephemeral=ephemeral,
        )

    async def append_messages(
        self,
        session_id: str,
        messages: Sequence[Message],
        language: Optional[LanguagePreference] = None,
        low_bandwidth: Optional[bool] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Session]:
        """
        Append messages in order as one atomic update, then truncate.

        A `low_bandwidth` value sets the session's mode in the same update,
        so the mode switch and its truncation land together with the turn.

        Returns the updated session, or None if the store was unavailable.
        """
        now = datetime.now(timezone.utc).isoformat()
        new_messages = [m.model_dump(mode="json") for m in messages]

        def append(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            data = current if current is not None else self._new_document(session_id, user_id, language)
            data.setdefault("history", []).extend(new_messages)
            data["last_activity_at"] = now
            if language is not None:
                data["language_preference"] = language.value
            if low_bandwidth is not None:
                data["low_bandwidth_mode"] = low_bandwidth
            return self._truncate(data)

        try:
            data = await call_with_retry(
                "session_append",
                lambda: self.store.update_json(session_key(session_id), append, self.idle_seconds),
            )
        except StoreUnavailableError:
            logger.warning("session_append_skipped", session_id=session_id, message_count=len(new_messages))
            return None
        return Session.model_validate(data)

    async def append_message(self, session_id: str, message: Message) -> Optional[Session]:
        return await self.append_messages(session_id, [message])

    async def set_low_bandwidth(self, session_id: str, enabled: bool) -> Optional[Session]:
        """Set the mode flag; switching it on truncates the history immediately."""

        def set_flag(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            data = current if current is not None else self._new_document(session_id, None, None)
            data["low_bandwidth_mode"] = enabled
            return self._truncate(data)

        try:
            data = await call_with_retry(
                "session_set_mode",
                lambda: self.store.update_json(session_key(session_id), set_flag, self.idle_seconds),
            )
        except StoreUnavailableError:
            logger.warning("session_mode_update_skipped", session_id=session_id)
            return None
        return Session.model_validate(data)

    async def reclaim_idle(self) -> List[str]:
        """
        Remove sessions past their idle window.

        Redis expires keys on its own, so this only reclaims memory held by
        the in-process store.
        """
        try:
            expired = await self.store.purge_expired(SESSION_KEY_PREFIX)
        except StoreUnavailableError:
            return []
        session_ids = [key[len(SESSION_KEY_PREFIX):] for key in expired]
        if session_ids:
            record_session_evictions(len(session_ids))
            logger.info("sessions_reclaimed", count=len(session_ids))
        return session_ids


_session_store: Optional[SessionContextStore] = None


def get_session_store() -> SessionContextStore:
    """Get global session store instance."""
    global _session_store
    if _session_store is None:
        _session_store = SessionContextStore()
    return _session_store
