"""Bind a session store to a document identity and its persisted history."""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import re
import unicodedata
from typing import Any, Mapping
from urllib.parse import unquote, urlparse

from ..chat.message_model import ChatSession
from .errors import PersistenceError
from .events import (
    DocumentActivated,
    DocumentDeactivated,
    EventBus,
    MessageAppended,
    MessageUpdated,
    SessionsChanged,
)
from .fallback import FallbackPolicy
from .persistence_sync import ChatPersistence, PersistenceSync
from .session_store import SessionStore
from .stream_router import StreamRouter

LOGGER = logging.getLogger(__name__)

_DRIVE_PATTERN = re.compile(r"^/?([A-Za-z]):(/|$)")


def normalize_document_key(path: Any) -> str:
    """Derive the stable persistence key for a document path.

    Collision rules: two inputs map to the same key when they differ only in

    * ``file://`` URL form versus a plain path (percent-escapes decoded),
    * Unicode normalization form (keys are NFC),
    * ``\\`` versus ``/`` separators, repeated separators, ``.`` and ``..``,
    * a leading ``~`` versus the expanded home directory,
    * relative versus absolute spelling against the current directory,
    * the case of a Windows drive letter.

    Letter case elsewhere is preserved and symlinks are not resolved, so the
    function never touches the filesystem.

    Raises:
        ValueError: if ``path`` is empty.
    """
    raw = _coerce_path_text(path).strip()
    if not raw:
        raise ValueError("Document path must not be empty")

    if raw.lower().startswith("file:"):
        parsed = urlparse(raw)
        raw = unquote(parsed.path)
        if parsed.netloc and parsed.netloc.lower() != "localhost":
            raw = f"//{parsed.netloc}{raw}"

    text = unicodedata.normalize("NFC", raw).replace("\\", "/")
    if text.startswith("~"):
        text = os.path.expanduser(text).replace("\\", "/")

    drive = ""
    match = _DRIVE_PATTERN.match(text)
    if match:
        drive = f"{match.group(1).lower()}:"
        text = text[match.end(1) + 1 :] or "/"
    elif not text.startswith("/"):
        cwd = unicodedata.normalize("NFC", os.getcwd()).replace("\\", "/")
        text = f"{cwd}/{text}"
        match = _DRIVE_PATTERN.match(text)
        if match:
            drive = f"{match.group(1).lower()}:"
            text = text[match.end(1) + 1 :] or "/"

    unc = text.startswith("//") and not text.startswith("///")
    normalized = posixpath.normpath(text)
    if unc and not normalized.startswith("//"):
        normalized = "/" + normalized
    elif not unc and normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return f"{drive}{normalized}"


def _coerce_path_text(path: Any) -> str:
    if isinstance(path, str):
        return path
    if isinstance(path, os.PathLike):
        value = os.fspath(path)
        return value.decode("utf-8", errors="surrogateescape") if isinstance(value, bytes) else value
    if isinstance(path, Mapping) and isinstance(path.get("path"), str):
        return path["path"]
    if path is None:
        return ""
    return str(path)


class DocumentContext:
    """Owns the session store and stream router of one open document.

    The context is single-use: it is activated once, serves the document
    while it is open, and is discarded after :meth:`deactivate`.
    """

    def __init__(
        self,
        document_key: str,
        *,
        persistence: ChatPersistence,
        sync: PersistenceSync,
        event_bus: EventBus,
        fallback: FallbackPolicy | None = None,
        flush_timeout: float = 2.0,
    ) -> None:
        self._document_key = document_key
        self._persistence = persistence
        self._sync = sync
        self._bus = event_bus
        self._fallback = fallback or FallbackPolicy()
        self._flush_timeout = flush_timeout
        self._store: SessionStore | None = None
        self._router: StreamRouter | None = None
        self._active = False

    @property
    def document_key(self) -> str:
        return self._document_key

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def store(self) -> SessionStore:
        if self._store is None:
            raise RuntimeError(f"Document {self._document_key} is not active")
        return self._store

    @property
    def router(self) -> StreamRouter:
        if self._router is None:
            raise RuntimeError(f"Document {self._document_key} is not active")
        return self._router

    async def activate(self) -> SessionStore:
        """Load persisted sessions and start tracking mutations."""

        if self._active:
            return self.store
        sessions, restored = await self._load_sessions()
        store = SessionStore(self._document_key, self._bus, sessions)
        self._store = store
        self._router = StreamRouter(store, self._bus, fallback=self._fallback)
        self._sync.mark_clean(self._document_key, store.sessions if restored else ())
        self._bus.subscribe(SessionsChanged, self._on_store_changed)
        self._bus.subscribe(MessageAppended, self._on_store_changed)
        self._bus.subscribe(MessageUpdated, self._on_store_changed)
        self._active = True
        LOGGER.info(
            "Activated document %s with %d session(s)%s",
            self._document_key,
            len(store.sessions),
            " from history" if restored else "",
        )
        self._bus.publish(
            DocumentActivated(
                document_key=self._document_key,
                session_count=len(store.sessions),
                restored=restored,
            )
        )
        return store

    async def deactivate(self) -> None:
        """Invalidate in-flight streams and flush pending writes (bounded)."""

        if not self._active:
            return
        self._active = False
        if self._router is not None:
            self._router.retire_all()
        self._bus.unsubscribe(SessionsChanged, self._on_store_changed)
        self._bus.unsubscribe(MessageAppended, self._on_store_changed)
        self._bus.unsubscribe(MessageUpdated, self._on_store_changed)
        try:
            flushed = await asyncio.wait_for(self._sync.flush(self._document_key), timeout=self._flush_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Flushing chats for %s exceeded %.1fs; in-memory changes may be lost",
                self._document_key,
                self._flush_timeout,
            )
        else:
            if not flushed:
                LOGGER.warning("Final save for %s failed; in-memory changes may be lost", self._document_key)
        self._sync.forget(self._document_key)
        self._bus.publish(DocumentDeactivated(document_key=self._document_key))
        LOGGER.info("Deactivated document %s", self._document_key)

    def _on_store_changed(self, event: SessionsChanged | MessageAppended | MessageUpdated) -> None:
        if not self._active or event.document_key != self._document_key or self._store is None:
            return
        self._sync.schedule(self._document_key, self._store.snapshot)

    async def _load_sessions(self) -> tuple[list[ChatSession], bool]:
        try:
            loaded = await asyncio.to_thread(self._persistence.load, self._document_key)
        except PersistenceError as exc:
            LOGGER.warning("Could not load chats for %s: %s", self._document_key, exc)
            return [], False
        except Exception:
            LOGGER.exception("Unexpected failure loading chats for %s", self._document_key)
            return [], False
        if not loaded:
            return [], False
        return list(loaded), True


__all__ = ["DocumentContext", "normalize_document_key"]
