"""Session store for the chats of a single document.

Owns the ordered sessions of one document, the current session, and the
structural mutation primitives used by the stream layer. Every mutation is
published on the event bus so the UI and the persistence layer can react.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from ..chat.message_model import ChatMessage, ChatSession, HighlightRef
from .events import EventBus, MessageAppended, MessageUpdated, SessionsChanged

LOGGER = logging.getLogger(__name__)

_MESSAGE_PATCH_FIELDS = frozenset({"content", "is_error", "action", "status"})


def default_title(position: int) -> str:
    """Return the automatic title for the session at 1-based ``position``."""

    return f"Chat {position}"


class SessionStore:
    """CRUD over the chat sessions of one document.

    Invariant: the store always holds at least one session and exactly one of
    them is current.
    """

    def __init__(
        self,
        document_key: str,
        event_bus: EventBus,
        sessions: Sequence[ChatSession] | None = None,
        *,
        current_session_id: str | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            document_key: Normalized key of the owning document.
            event_bus: Bus receiving change notifications.
            sessions: Restored sessions; an empty or missing list yields a
                single empty ``Chat 1`` session.
            current_session_id: Session to select; defaults to the last one.
        """
        self._document_key = document_key
        self._bus = event_bus
        self._sessions: list[ChatSession] = list(sessions or [])
        if not self._sessions:
            self._sessions.append(ChatSession(title=default_title(1)))
        self._current_id = self._sessions[-1].id
        if current_session_id and self.get_session(current_session_id) is not None:
            self._current_id = current_session_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def document_key(self) -> str:
        return self._document_key

    @property
    def sessions(self) -> tuple[ChatSession, ...]:
        return tuple(self._sessions)

    @property
    def current_session(self) -> ChatSession:
        session = self.get_session(self._current_id)
        assert session is not None, "current session must exist"
        return session

    @property
    def current_session_id(self) -> str:
        return self._current_id

    @property
    def is_typing(self) -> bool:
        """True while any assistant message is still awaiting or receiving content."""

        return any(message.is_open for session in self._sessions for message in session.messages)

    def get_session(self, session_id: str) -> ChatSession | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def get_message(self, session_id: str, message_id: str) -> ChatMessage | None:
        session = self.get_session(session_id)
        if session is None:
            return None
        return session.find_message(message_id)

    def index_of(self, session_id: str) -> int:
        for index, session in enumerate(self._sessions):
            if session.id == session_id:
                return index
        return -1

    def find_reusable_empty_session(self) -> ChatSession | None:
        """Return the first session with no messages and no highlight reference."""

        for session in self._sessions:
            if session.is_reusable:
                return session
        return None

    def snapshot(self) -> list[ChatSession]:
        """Return a deep copy of the sessions suitable for persistence."""

        return [session.copy() for session in self._sessions]

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        initial: Iterable[ChatMessage] | None = None,
        *,
        highlight_ref: HighlightRef | None = None,
    ) -> ChatSession:
        """Append a new session, make it current and title it by position."""

        session = ChatSession(
            title=default_title(len(self._sessions) + 1),
            messages=list(initial or []),
            highlight_ref=highlight_ref,
        )
        self._sessions.append(session)
        self._current_id = session.id
        LOGGER.debug("SessionStore.create_session: %s (%s)", session.id, session.title)
        self._publish_sessions()
        return session

    def set_current(self, session_id: str) -> None:
        if session_id == self._current_id:
            return
        if self.get_session(session_id) is None:
            LOGGER.debug("SessionStore.set_current: unknown session %s", session_id)
            return
        self._current_id = session_id
        self._publish_sessions()

    def remove_session(self, session_id: str) -> None:
        """Remove a session, keeping at least one session in the store."""

        index = self.index_of(session_id)
        if index < 0:
            LOGGER.debug("SessionStore.remove_session: unknown session %s", session_id)
            return

        if len(self._sessions) == 1:
            session = self._sessions[0]
            session.messages.clear()
            session.highlight_ref = None
            session.title = default_title(1)
            self._current_id = session.id
            self._publish_sessions()
            return

        removed = self._sessions.pop(index)
        for position, session in enumerate(self._sessions, start=1):
            session.title = default_title(position)
        if removed.id == self._current_id:
            successor = min(max(index - 1, 0), len(self._sessions) - 1)
            self._current_id = self._sessions[successor].id
        LOGGER.debug(
            "SessionStore.remove_session: removed %s, current=%s, remaining=%d",
            removed.id,
            self._current_id,
            len(self._sessions),
        )
        self._publish_sessions()

    def rename_session(self, session_id: str, title: str) -> None:
        session = self.get_session(session_id)
        cleaned = (title or "").strip()
        if session is None or not cleaned or session.title == cleaned:
            return
        session.title = cleaned
        self._publish_sessions()

    def set_highlight(self, session_id: str, highlight_ref: HighlightRef | None) -> None:
        session = self.get_session(session_id)
        if session is None or session.highlight_ref == highlight_ref:
            return
        session.highlight_ref = highlight_ref
        self._publish_sessions()

    def clear_session(self, session_id: str) -> None:
        """Drop every message of a session while keeping the session itself."""

        session = self.get_session(session_id)
        if session is None or not session.messages:
            return
        session.messages.clear()
        self._publish_sessions()

    # ------------------------------------------------------------------
    # Message primitives
    # ------------------------------------------------------------------

    def append_message(self, session_id: str, message: ChatMessage) -> bool:
        """Append ``message``; returns False when the session no longer exists."""

        session = self.get_session(session_id)
        if session is None:
            LOGGER.debug("SessionStore.append_message: session %s is gone", session_id)
            return False
        session.messages.append(message)
        self._bus.publish(
            MessageAppended(document_key=self._document_key, session_id=session_id, message_id=message.id)
        )
        return True

    def update_message(self, session_id: str, message_id: str, **patch: Any) -> bool:
        """Apply ``patch`` to a message; returns False when it no longer exists."""

        unknown = set(patch) - _MESSAGE_PATCH_FIELDS
        if unknown:
            raise TypeError(f"Unsupported message fields: {sorted(unknown)}")
        message = self.get_message(session_id, message_id)
        if message is None:
            return False
        for name, value in patch.items():
            setattr(message, name, value)
        self._bus.publish(
            MessageUpdated(
                document_key=self._document_key,
                session_id=session_id,
                message_id=message_id,
                status=message.status,
            )
        )
        return True

    def _publish_sessions(self) -> None:
        self._bus.publish(
            SessionsChanged(
                document_key=self._document_key,
                current_session_id=self._current_id,
                session_ids=tuple(session.id for session in self._sessions),
            )
        )


__all__ = ["SessionStore", "default_title"]
