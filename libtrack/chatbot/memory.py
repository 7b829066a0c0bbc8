import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from langchain_core.chat_history import InMemoryChatMessageHistory
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from libtrack.core.config import settings

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory chat histories keyed by session id.

    Idle sessions expire after `ttl_seconds`; each history keeps at most `max_messages`.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_messages: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CHAT_SESSION_TTL_SECONDS
        self.max_messages = max_messages if max_messages is not None else settings.CHAT_MAX_HISTORY_MESSAGES
        self._clock = clock
        self._store: Dict[str, Tuple[InMemoryChatMessageHistory, float]] = {}

    def _prune_expired(self) -> None:
        now = self._clock()
        expired = [sid for sid, (_, last_seen) in self._store.items() if now - last_seen > self.ttl_seconds]
        for sid in expired:
            del self._store[sid]
        if expired:
            logger.info(f"[SessionStore] Evicted {len(expired)} idle chat session(s).")

    def get_session_history(self, session_id: str) -> InMemoryChatMessageHistory:
        """Retrieves or creates the history for a session and marks it as used."""
        self._prune_expired()
        entry = self._store.get(session_id)
        if entry is None:
            logger.info(f"[SessionStore] Creating new in-memory chat history for session {session_id}")
            history = InMemoryChatMessageHistory()
        else:
            history = entry[0]
        self._store[session_id] = (history, self._clock())
        return history

    def recent_messages(self, session_id: str) -> List[BaseMessage]:
        self._prune_expired()
        entry = self._store.get(session_id)
        return list(entry[0].messages) if entry else []

    def append_exchange(self, session_id: str, user_message: str, assistant_message: str, **metadata: Any) -> None:
        history = self.get_session_history(session_id)
        now = datetime.now(timezone.utc).isoformat()
        history.add_message(HumanMessage(content=user_message, additional_kwargs={"timestamp": now}))
        history.add_message(AIMessage(content=assistant_message or "", additional_kwargs={"timestamp": now, **metadata}))
        if len(history.messages) > self.max_messages:
            history.messages = history.messages[-self.max_messages:]

    def export(self, session_id: str) -> List[Dict[str, Any]]:
        """History as `{role, content, timestamp, ...}` dicts for the API."""
        exported = []
        for message in self.recent_messages(session_id):
            role = "user" if isinstance(message, HumanMessage) else "assistant"
            exported.append({"role": role, "content": message.content, **message.additional_kwargs})
        return exported

    def clear(self, session_id: str) -> bool:
        return self._store.pop(session_id, None) is not None

    def __len__(self) -> int:
        self._prune_expired()
        return len(self._store)


session_store = SessionStore()
