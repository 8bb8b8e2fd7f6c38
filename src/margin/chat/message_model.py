"""Chat session and message data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional

ChatRole = Literal["user", "assistant"]
MessageStatus = Literal["receiving", "streaming", "complete", "superseded"]

PLACEHOLDER_TEXT = "Receiving…"
INTERRUPTED_TEXT = "Response interrupted."
SUPERSEDED_TEXT = "Response superseded by a newer request."
_OPEN_STATUSES: frozenset[str] = frozenset({"receiving", "streaming"})
_ROLES: frozenset[str] = frozenset({"user", "assistant"})
_STATUSES: frozenset[str] = frozenset({"receiving", "streaming", "complete", "superseded"})


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return _utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return _utcnow()


@dataclass(slots=True, frozen=True)
class MessageAction:
    """Optional call-to-action rendered next to a message."""

    label: str
    target: str

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "target": self.target}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MessageAction":
        return cls(label=str(payload.get("label", "")), target=str(payload.get("target", "")))


@dataclass(slots=True, frozen=True)
class HighlightRef:
    """Pointer to a highlight anchor owned by the document view."""

    id: str
    quote: str = ""
    page: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "quote": self.quote, "page": self.page}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "HighlightRef":
        page = payload.get("page")
        return cls(
            id=str(payload.get("id", "")),
            quote=str(payload.get("quote", "") or ""),
            page=int(page) if isinstance(page, int) else None,
        )


@dataclass(slots=True)
class ChatMessage:
    """Represents a row inside a chat session."""

    role: ChatRole
    content: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)
    is_error: bool = False
    action: Optional[MessageAction] = None
    status: MessageStatus = "complete"

    @classmethod
    def placeholder(cls) -> "ChatMessage":
        """Create an assistant message awaiting its first streamed fragment."""

        return cls(role="assistant", content=PLACEHOLDER_TEXT, status="receiving")

    @property
    def is_open(self) -> bool:
        """Whether the message may still receive streamed content."""

        return self.status in _OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "is_error": self.is_error,
            "action": self.action.to_dict() if self.action else None,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatMessage":
        role = payload.get("role")
        if role not in _ROLES:
            raise ValueError(f"Unsupported chat role: {role!r}")
        status = payload.get("status") or "complete"
        if status not in _STATUSES:
            status = "complete"
        action_payload = payload.get("action")
        message = cls(
            role=role,
            content=str(payload.get("content", "") or ""),
            id=str(payload.get("id") or new_id()),
            created_at=_parse_timestamp(payload.get("created_at")),
            is_error=bool(payload.get("is_error", False)),
            action=MessageAction.from_dict(action_payload) if isinstance(action_payload, Mapping) else None,
            status=status,
        )
        if message.is_open:
            # A stream cannot survive a restart.
            message.status = "superseded"
            if message.content == PLACEHOLDER_TEXT:
                message.content = INTERRUPTED_TEXT
        return message

    def copy(self) -> "ChatMessage":
        return replace(self)


@dataclass(slots=True)
class ChatSession:
    """One independent conversation scoped to a document."""

    title: str
    id: str = field(default_factory=new_id)
    messages: list[ChatMessage] = field(default_factory=list)
    highlight_ref: Optional[HighlightRef] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_reusable(self) -> bool:
        """Empty sessions without a highlight can be handed out again."""

        return not self.messages and self.highlight_ref is None

    def find_message(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "highlight_ref": self.highlight_ref.to_dict() if self.highlight_ref else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatSession":
        raw_messages = payload.get("messages") or []
        if not isinstance(raw_messages, list):
            raise ValueError("Session messages must be a list")
        highlight_payload = payload.get("highlight_ref")
        return cls(
            title=str(payload.get("title") or ""),
            id=str(payload.get("id") or new_id()),
            messages=[ChatMessage.from_dict(item) for item in raw_messages if isinstance(item, Mapping)],
            highlight_ref=(
                HighlightRef.from_dict(highlight_payload) if isinstance(highlight_payload, Mapping) else None
            ),
            created_at=_parse_timestamp(payload.get("created_at")),
        )

    def copy(self) -> "ChatSession":
        """Return a copy that shares no mutable state with ``self``."""

        return replace(self, messages=[message.copy() for message in self.messages])


__all__ = [
    "ChatMessage",
    "ChatRole",
    "ChatSession",
    "HighlightRef",
    "INTERRUPTED_TEXT",
    "MessageAction",
    "MessageStatus",
    "PLACEHOLDER_TEXT",
    "SUPERSEDED_TEXT",
    "new_id",
]
