"""
Session management service for maintaining conversation state across requests.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..errors import SessionPersistFailure, StoreUnavailable
from .store_service import BaseStore, SESSION_PREFIX

logger = logging.getLogger(__name__)


@dataclass
class ChatMessage:
    """A single message in a session."""

    role: str
    content: str
    timestamp: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            role=data["role"],
            content=data.get("content", ""),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class ChatSession:
    """
    Conversation state for one session.

    Messages are append-only; timestamps never decrease.
    """

    session_id: str
    created_at: float
    updated_at: float
    messages: List[ChatMessage] = field(default_factory=list)
    last_shown_ids: List[str] = field(default_factory=list)
    selected_id: Optional[str] = None
    ephemeral: bool = False

    def append(self, role: str, content: str, now: float) -> ChatMessage:
        """Append a message, clamping its timestamp to the previous one."""
        if self.messages:
            now = max(now, self.messages[-1].timestamp)
        message = ChatMessage(role=role, content=content, timestamp=now)
        self.messages.append(message)
        self.updated_at = max(self.updated_at, now)
        return message

    def recent_messages(self, limit: int) -> List[Dict[str, str]]:
        """The last ``limit`` messages as OpenAI-style role/content dicts."""
        if limit <= 0:
            return []
        return [{"role": m.role, "content": m.content} for m in self.messages[-limit:]]

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to dictionary."""
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
            "last_shown_ids": list(self.last_shown_ids),
            "selected_id": self.selected_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSession":
        return cls(
            session_id=data["session_id"],
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages", [])],
            last_shown_ids=list(data.get("last_shown_ids", [])),
            selected_id=data.get("selected_id"),
        )


class SessionService:
    """
    Service for managing chat sessions.

    Sessions are held in memory and written through to the store under
    ``session:<id>``. Store failures never abort a turn: the session simply
    continues in memory only.
    """

    def __init__(
        self,
        store: Optional[BaseStore] = None,
        session_timeout_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._sessions: Dict[str, ChatSession] = {}
        self._lock = threading.Lock()
        self._session_timeout = session_timeout_hours * 3600
        self._clock = clock

    async def get_or_create(self, session_id: str) -> ChatSession:
        """
        Get existing session or create (and persist) a new one.

        Args:
            session_id: Session identifier

        Returns:
            ChatSession
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is not None:
            return session

        session = await self._load(session_id)
        created = session is None
        if created:
            now = self._clock()
            session = ChatSession(session_id=session_id, created_at=now, updated_at=now)

        with self._lock:
            # Another request may have created it while we were loading
            session = self._sessions.setdefault(session_id, session)

        if created:
            await self._persist_or_degrade(session)
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        """In-memory lookup only."""
        with self._lock:
            return self._sessions.get(session_id)

    async def append(self, session_id: str, role: str, content: str) -> ChatMessage:
        """
        Append one message to a session and persist it.

        Args:
            session_id: Session identifier
            role: "user" or "assistant"
            content: Message text

        Returns:
            The appended ChatMessage
        """
        session = await self.get_or_create(session_id)
        with self._lock:
            message = session.append(role, content, self._clock())
        await self._persist_or_degrade(session)
        return message

    async def record_turn(
        self,
        session_id: str,
        user_message: str,
        assistant_message: str,
        shown_ids: Optional[List[str]] = None,
        selected_id: Optional[str] = None,
    ) -> ChatSession:
        """
        Write a completed turn: the user message, then the assistant message.

        Args:
            session_id: Session identifier
            user_message: User's message
            assistant_message: Final answer text
            shown_ids: Listing ids presented in this turn (replaces the previous list)
            selected_id: Listing the user picked or acted on

        Returns:
            Updated ChatSession
        """
        session = await self.get_or_create(session_id)

        with self._lock:
            now = self._clock()
            session.append("user", user_message, now)
            session.append("assistant", assistant_message, now)
            if shown_ids:
                session.last_shown_ids = list(shown_ids)
            if selected_id:
                session.selected_id = selected_id

        await self._persist_or_degrade(session)
        return session

    async def persist(self, session: ChatSession) -> None:
        """
        Write a session to the store.

        Raises:
            SessionPersistFailure: When the store rejects the write
        """
        if self.store is None:
            return
        with self._lock:
            snapshot = session.to_dict()
        try:
            await self.store.set(f"{SESSION_PREFIX}{session.session_id}", snapshot, ttl=self._session_timeout)
        except StoreUnavailable as e:
            raise SessionPersistFailure(f"could not persist session {session.session_id}: {e}") from e
        session.ephemeral = False

    async def get_history(self, session_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Get conversation history for a session.

        Args:
            session_id: Session identifier
            limit: Maximum number of messages to return

        Returns:
            List of message dicts, oldest first
        """
        session = self.get_session(session_id) or await self._load(session_id)
        if session is None or limit <= 0:
            return []
        return [m.to_dict() for m in session.messages[-limit:]]

    async def delete_session(self, session_id: str) -> bool:
        """
        Delete a session from memory and the store.

        Returns:
            True if deleted, False if not found
        """
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None

        if self.store is not None:
            try:
                removed = await self.store.delete(f"{SESSION_PREFIX}{session_id}") or removed
            except StoreUnavailable as e:
                logger.warning(f"Could not delete stored session {session_id}: {e}")

        return removed

    def cleanup_stale_sessions(self) -> int:
        """
        Remove in-memory sessions that have been inactive for too long.

        Stored copies expire through the store TTL.

        Returns:
            Number of sessions removed
        """
        now = self._clock()

        with self._lock:
            stale_ids = [
                sid for sid, session in self._sessions.items()
                if now - session.updated_at > self._session_timeout
            ]
            for sid in stale_ids:
                del self._sessions[sid]

        if stale_ids:
            logger.info(f"Removed {len(stale_ids)} stale sessions")
        return len(stale_ids)

    def get_active_session_count(self) -> int:
        """Get the number of active sessions."""
        with self._lock:
            return len(self._sessions)

    async def _load(self, session_id: str) -> Optional[ChatSession]:
        if self.store is None:
            return None
        try:
            doc = await self.store.get(f"{SESSION_PREFIX}{session_id}")
        except StoreUnavailable as e:
            logger.warning(f"Session {session_id} could not be loaded, starting fresh: {e}")
            return None
        if not doc:
            return None
        try:
            return ChatSession.from_dict(doc)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Discarding unreadable session {session_id}: {e}")
            return None

    async def _persist_or_degrade(self, session: ChatSession) -> None:
        try:
            await self.persist(session)
        except SessionPersistFailure as e:
            session.ephemeral = True
            logger.warning(f"{e}; continuing with an in-memory session")
