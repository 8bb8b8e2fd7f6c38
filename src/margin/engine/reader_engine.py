"""UI-facing facade of the streaming session engine.

The reader engine owns the active :class:`DocumentContext`, turns UI actions
into session mutations plus backend streams, and pumps backend results into
the document's :class:`StreamRouter`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Callable, Dict, Mapping

from ..chat.message_model import ChatMessage, ChatSession, HighlightRef, MessageAction
from ..services.settings import Settings, SettingsStore, remember_recent_file
from .document_context import DocumentContext, normalize_document_key
from .errors import TransportError
from .events import Event, EventBus, Handler
from .fallback import FallbackPolicy
from .persistence_sync import ChatPersistence, PersistenceSync
from .session_store import SessionStore
from .stream_router import StreamChannel, StreamEvent, StreamHandle, StreamRouter

LOGGER = logging.getLogger(__name__)

StreamOpener = Callable[[], AsyncIterator[Any]]


class ReaderEngine:
    """Coordinates documents, chat sessions and AI streams for the UI layer."""

    def __init__(
        self,
        backend: Any,
        persistence: ChatPersistence,
        *,
        settings: Settings | None = None,
        settings_store: SettingsStore | None = None,
        event_bus: EventBus | None = None,
        fallback: FallbackPolicy | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            backend: AI collaborator exposing ``explain`` and ``chat``.
            persistence: Document-keyed chat store.
            settings: Engine tuning; defaults are used when omitted.
            settings_store: When given, recent documents are persisted here.
            event_bus: Bus for change notifications; a private one is created
                when omitted.
            fallback: Policy rendering failures as assistant messages.
        """
        self._backend = backend
        self._persistence = persistence
        self._settings = settings or Settings()
        self._settings_store = settings_store
        self._bus: EventBus = event_bus or EventBus()
        self._fallback = fallback or FallbackPolicy()
        self._sync = PersistenceSync(
            persistence,
            debounce=self._settings.persistence_debounce,
            max_retries=self._settings.persistence_max_retries,
            event_bus=self._bus,
        )
        self._context: DocumentContext | None = None
        self._switch_lock = asyncio.Lock()
        self._pumps: Dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def persistence_sync(self) -> PersistenceSync:
        return self._sync

    @property
    def context(self) -> DocumentContext | None:
        return self._context

    @property
    def store(self) -> SessionStore:
        return self._require_context().store

    def subscribe(self, event_type: type[Event], handler: Handler) -> None:
        self._bus.subscribe(event_type, handler)

    def unsubscribe(self, event_type: type[Event], handler: Handler) -> None:
        self._bus.unsubscribe(event_type, handler)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def open_document(self, path: Any) -> DocumentContext:
        """Make ``path`` the active document, flushing the previous one."""

        document_key = normalize_document_key(path)
        async with self._switch_lock:
            current = self._context
            if current is not None and current.is_active and current.document_key == document_key:
                return current
            await self._close_current()
            context = DocumentContext(
                document_key,
                persistence=self._persistence,
                sync=self._sync,
                event_bus=self._bus,
                fallback=self._fallback,
                flush_timeout=self._settings.flush_timeout,
            )
            await context.activate()
            self._context = context
            self._remember_document(document_key)
            return context

    async def close_document(self) -> None:
        async with self._switch_lock:
            await self._close_current()

    async def shutdown(self) -> None:
        """Flush the active document and stop every stream pump."""

        await self.close_document()
        pumps = list(self._pumps.values())
        for task in pumps:
            task.cancel()
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)
        await self._sync.flush_all()
        close = getattr(self._backend, "aclose", None)
        if close is not None:
            with contextlib.suppress(Exception):
                await close()

    async def wait_for_streams(self) -> None:
        """Wait until every running stream pump has finished."""

        while self._pumps:
            await asyncio.gather(*list(self._pumps.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def new_session(self) -> ChatSession:
        """Switch to an empty session, creating one only when none can be reused."""

        store = self.store
        reusable = store.find_reusable_empty_session()
        if reusable is not None:
            store.set_current(reusable.id)
            return reusable
        return store.create_session()

    def switch_session(self, session_id: str) -> None:
        self.store.set_current(session_id)

    def remove_session(self, session_id: str) -> None:
        self.store.remove_session(session_id)

    def rename_session(self, session_id: str, title: str) -> None:
        self.store.rename_session(session_id, title)

    def clear_current_session(self) -> None:
        store = self.store
        store.clear_session(store.current_session_id)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def send_chat_message(self, text: str) -> StreamHandle | None:
        """Append a user message to the current session and stream the reply."""

        cleaned = (text or "").strip()
        if not cleaned:
            return None
        context = self._require_context()
        store = context.store
        session = store.current_session
        store.append_message(session.id, ChatMessage(role="user", content=cleaned))
        history = chat_history(session)
        return self._start_stream(context, StreamChannel.CHAT, session.id, lambda: self._backend.chat(history))

    async def request_explanation(
        self,
        selected_text: str,
        style_prompt: str,
        *,
        highlight: HighlightRef | None = None,
    ) -> StreamHandle | None:
        """Explain ``selected_text`` in the style named by ``style_prompt``.

        A highlight that differs from the current session's opens (or reuses)
        a session bound to that highlight.
        """
        text = (selected_text or "").strip()
        if not text:
            LOGGER.debug("Ignoring explanation request without selected text")
            return None
        style = (style_prompt or "").strip() or self._settings.default_style
        context = self._require_context()
        store = context.store
        session = self._session_for_highlight(store, highlight)
        action = MessageAction(label="Show highlight", target=highlight.id) if highlight else None
        store.append_message(session.id, ChatMessage(role="user", content=style, action=action))
        return self._start_stream(
            context,
            StreamChannel.EXPLANATION,
            session.id,
            lambda: self._backend.explain(text, style),
        )

    def _session_for_highlight(self, store: SessionStore, highlight: HighlightRef | None) -> ChatSession:
        current = store.current_session
        if highlight is None:
            return current
        if current.highlight_ref is not None and current.highlight_ref.id == highlight.id:
            return current
        if current.highlight_ref is None and not current.messages:
            store.set_highlight(current.id, highlight)
            return current
        reusable = store.find_reusable_empty_session()
        if reusable is not None:
            store.set_current(reusable.id)
            store.set_highlight(reusable.id, highlight)
            return reusable
        return store.create_session(highlight_ref=highlight)

    def _start_stream(
        self,
        context: DocumentContext,
        channel: StreamChannel,
        session_id: str,
        open_stream: StreamOpener,
    ) -> StreamHandle:
        router = context.router
        previous = router.active_handle(channel)
        placeholder = ChatMessage.placeholder()
        context.store.append_message(session_id, placeholder)
        handle = router.begin_stream(channel, session_id, placeholder.id)
        if previous is not None and self._settings.cancel_superseded_streams:
            superseded = self._pumps.pop(previous.stream_id, None)
            if superseded is not None:
                superseded.cancel()

        task = asyncio.create_task(self._pump(router, handle, open_stream), name=f"stream-{handle.stream_id}")
        self._pumps[handle.stream_id] = task
        task.add_done_callback(lambda _task, stream_id=handle.stream_id: self._pumps.pop(stream_id, None))
        return handle

    async def _pump(self, router: StreamRouter, handle: StreamHandle, open_stream: StreamOpener) -> None:
        timeout = self._settings.stream_timeout
        try:
            if timeout:
                await asyncio.wait_for(self._consume(router, handle, open_stream), timeout=timeout)
            else:
                await self._consume(router, handle, open_stream)
        except asyncio.CancelledError:
            LOGGER.debug("Stream %s cancelled locally", handle.stream_id)
            raise
        except asyncio.TimeoutError:
            router.on_event(
                handle.stream_id,
                StreamEvent.error(TransportError(f"No complete response within {timeout:g}s")),
            )
        except Exception as exc:
            LOGGER.warning("Stream %s failed outside the backend contract: %s", handle.stream_id, exc)
            router.on_event(handle.stream_id, StreamEvent.error(exc))
        else:
            router.on_event(handle.stream_id, StreamEvent.end())

    async def _consume(self, router: StreamRouter, handle: StreamHandle, open_stream: StreamOpener) -> None:
        stream = open_stream()
        closing = contextlib.aclosing(stream) if hasattr(stream, "aclose") else contextlib.nullcontext()
        async with closing:
            async for result in stream:
                kind = getattr(result, "kind", None)
                router.on_event(handle.stream_id, StreamEvent(kind, getattr(result, "payload", None)))
                if kind == "error":
                    return
                if self._settings.cancel_superseded_streams and not router.is_active(handle.stream_id):
                    return

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_context(self) -> DocumentContext:
        context = self._context
        if context is None or not context.is_active:
            raise RuntimeError("No document is open")
        return context

    async def _close_current(self) -> None:
        context = self._context
        self._context = None
        if context is not None:
            await context.deactivate()

    def _remember_document(self, document_key: str) -> None:
        remember_recent_file(self._settings, document_key)
        if self._settings_store is None:
            return
        try:
            self._settings_store.save_recent_files(self._settings.recent_files, self._settings.last_open_file)
        except Exception as exc:
            LOGGER.warning("Failed to persist recent documents: %s", exc)


def chat_history(session: ChatSession) -> list[Mapping[str, str]]:
    """Return the completed, non-error turns of ``session`` as role/content pairs."""

    return [
        {"role": message.role, "content": message.content}
        for message in session.messages
        if message.status == "complete" and not message.is_error
    ]


__all__ = ["ReaderEngine", "chat_history"]
