"""JSON persistence for per-document chat sessions."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..chat.message_model import ChatSession
from ..engine.errors import PersistenceError
from .settings import _SETTINGS_DIR

__all__ = ["JsonChatStore"]

LOGGER = logging.getLogger(__name__)
_CHATS_DIRNAME = "chats"
_STORE_VERSION = 1


def _default_chats_dir() -> Path:
    return _SETTINGS_DIR / _CHATS_DIRNAME


class JsonChatStore:
    """Stores the sessions of each document in its own JSON file.

    Document keys are opaque: the file name is the SHA-1 of the key, and the
    key itself is kept inside the payload.
    """

    def __init__(self, directory: Path | str | None = None) -> None:
        self._directory = Path(directory).expanduser() if directory else _default_chats_dir()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, document_key: str) -> Path:
        digest = hashlib.sha1(document_key.encode("utf-8")).hexdigest()
        return self._directory / f"{digest}.json"

    def load(self, document_key: str) -> list[ChatSession] | None:
        """Return stored sessions, or ``None`` when the document has no history.

        Raises:
            PersistenceError: if the file exists but cannot be read or parsed.
        """
        path = self.path_for(document_key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Chat history {path} is unreadable: {exc}", cause=exc) from exc

        if not isinstance(payload, Mapping):
            raise PersistenceError(f"Chat history {path} has an unexpected layout")
        stored_key = payload.get("document_key")
        if stored_key not in (None, document_key):
            raise PersistenceError(f"Chat history {path} belongs to {stored_key!r}")
        raw_sessions = payload.get("sessions")
        if not isinstance(raw_sessions, list):
            raise PersistenceError(f"Chat history {path} has no session list")
        try:
            sessions = [ChatSession.from_dict(item) for item in raw_sessions if isinstance(item, Mapping)]
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Chat history {path} is malformed: {exc}", cause=exc) from exc
        LOGGER.debug("Loaded %d session(s) for %s from %s", len(sessions), document_key, path)
        return sessions

    def save(self, document_key: str, sessions: Sequence[ChatSession]) -> Path:
        """Replace the stored sessions of ``document_key``; an empty list clears history."""

        path = self.path_for(document_key)
        payload: dict[str, Any] = {
            "version": _STORE_VERSION,
            "document_key": document_key,
            "sessions": [session.to_dict() for session in sessions],
        }
        try:
            body = json.dumps(payload, indent=2, ensure_ascii=False)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(body, encoding="utf-8")
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Could not write chat history {path}: {exc}", cause=exc) from exc
        LOGGER.debug("Saved %d session(s) for %s to %s", len(sessions), document_key, path)
        return path
