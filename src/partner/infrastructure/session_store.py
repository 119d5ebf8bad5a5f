from __future__ import annotations

import json
import logging
from threading import RLock
from typing import List, Optional

from pydantic import ValidationError

from ..config import SESSIONS_KEY
from ..core.app_state import AppState
from ..domain.chat_models import ChatSession, ChatSessionSummary, Message, now_ms
from .kv_store import KeyValueStore


logger = logging.getLogger(__name__)


class SessionStore:
    """Owns the ordered chat session collection.

    Every mutation is written through to the key-value store as one JSON
    document. Reads hand out copies so callers cannot mutate the collection
    behind the store's back.
    """

    def __init__(self, kv: KeyValueStore, state: Optional[AppState] = None, key: str = SESSIONS_KEY) -> None:
        self._kv = kv
        self._key = key
        self._state = state if state is not None else AppState()
        self._sessions: List[ChatSession] = []
        self._lock = RLock()
        self._rehydrate()

    @property
    def state(self) -> AppState:
        return self._state

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _rehydrate(self) -> None:
        raw = self._kv.get(self._key)
        if not raw:
            return
        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError("session collection must be a list")
            sessions = [ChatSession.model_validate(item) for item in data]
        except (ValueError, ValidationError) as exc:
            # STORAGE_PARSE: recover with an empty collection
            logger.warning("session_store_discarded_malformed_data err=%s", exc)
            self._sessions = []
            return
        self._sessions = sessions
        if sessions and self._state.active_session_id is None:
            self._state.active_session_id = sessions[0].id

    def _persist(self) -> None:
        payload = [s.model_dump(mode="json", by_alias=True) for s in self._sessions]
        self._kv.set(self._key, json.dumps(payload))

    def _find(self, session_id: Optional[str]) -> Optional[ChatSession]:
        if not session_id:
            return None
        for sess in self._sessions:
            if sess.id == session_id:
                return sess
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_sessions(self) -> List[ChatSession]:
        with self._lock:
            ordered = sorted(self._sessions, key=lambda s: s.last_updated, reverse=True)
            return [s.model_copy(deep=True) for s in ordered]

    def list_summaries(self) -> List[ChatSessionSummary]:
        active = self._state.active_session_id
        return [
            ChatSessionSummary(
                id=s.id,
                title=s.title,
                last_updated=s.last_updated,
                message_count=len(s.messages),
                active=s.id == active,
            )
            for s in self.list_sessions()
        ]

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            sess = self._find(session_id)
            return sess.model_copy(deep=True) if sess else None

    def list_messages(self, session_id: str) -> List[Message]:
        with self._lock:
            sess = self._find(session_id)
            if not sess:
                return []
            return [m.model_copy() for m in sess.messages]

    def get_message(self, session_id: str, message_id: str) -> Optional[Message]:
        with self._lock:
            sess = self._find(session_id)
            if not sess:
                return None
            for m in sess.messages:
                if m.id == message_id:
                    return m.model_copy()
            return None

    def count_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def ensure_session(self, existing_id: Optional[str], seed_title: str) -> str:
        with self._lock:
            if existing_id:
                return existing_id
            sess = ChatSession(title=seed_title)
            self._sessions.insert(0, sess)
            self._state.active_session_id = sess.id
            self._persist()
            logger.debug("session_created id=%s", sess.id)
            return sess.id

    def append_message(self, session_id: str, message: Message) -> bool:
        with self._lock:
            sess = self._find(session_id)
            if not sess:
                logger.debug("append_message_unknown_session id=%s", session_id)
                return False
            sess.messages.append(message.model_copy())
            sess.last_updated = now_ms()
            self._persist()
            return True

    def update_message_text(self, session_id: str, message_id: str, new_text: str) -> bool:
        with self._lock:
            sess = self._find(session_id)
            if not sess:
                return False
            for m in sess.messages:
                if m.id == message_id:
                    m.text = new_text
                    self._persist()
                    return True
            return False

    def remove_message(self, session_id: str, message_id: str) -> bool:
        with self._lock:
            sess = self._find(session_id)
            if not sess:
                return False
            before = len(sess.messages)
            sess.messages = [m for m in sess.messages if m.id != message_id]
            if len(sess.messages) == before:
                return False
            self._persist()
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            before = len(self._sessions)
            self._sessions = [s for s in self._sessions if s.id != session_id]
            removed = len(self._sessions) != before
            if self._state.active_session_id == session_id:
                self._state.active_session_id = None
            if removed:
                self._persist()
            return removed

    def select_session(self, session_id: str) -> bool:
        with self._lock:
            if not self._find(session_id):
                return False
            self._state.active_session_id = session_id
            return True

    def new_chat(self) -> None:
        self._state.active_session_id = None
