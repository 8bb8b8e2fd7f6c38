"""Route streamed response fragments to the message they belong to.

Each channel (explanation, chat) has at most one active :class:`StreamHandle`.
Beginning a new stream on a channel supersedes the previous handle; events
tagged with a superseded or retired stream id are dropped before they reach
the session store.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Literal, Mapping

from ..chat.message_model import SUPERSEDED_TEXT
from .events import EventBus, StreamRetired, StreamStarted
from .fallback import FallbackPolicy
from .session_store import SessionStore

LOGGER = logging.getLogger(__name__)

StreamEventKind = Literal["content", "error", "end"]
_EVENT_KINDS: frozenset[str] = frozenset({"content", "error", "end"})


class StreamChannel(str, Enum):
    """Independent streaming lanes of a document."""

    EXPLANATION = "explanation"
    CHAT = "chat"


@dataclass(slots=True, frozen=True)
class StreamHandle:
    """Binding between a backend stream id and the message it writes into."""

    stream_id: str
    channel: StreamChannel
    document_key: str
    session_id: str
    message_id: str


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """Tagged result delivered by the backend pump."""

    kind: StreamEventKind
    payload: Any = None

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls("content", text)

    @classmethod
    def error(cls, error: BaseException | str) -> "StreamEvent":
        return cls("error", error)

    @classmethod
    def end(cls) -> "StreamEvent":
        return cls("end")


class StreamRouter:
    """Demultiplexes stream events to the session store of one document."""

    def __init__(
        self,
        store: SessionStore,
        event_bus: EventBus,
        *,
        fallback: FallbackPolicy | None = None,
    ) -> None:
        self._store = store
        self._bus = event_bus
        self._fallback = fallback or FallbackPolicy()
        self._active: Dict[StreamChannel, StreamHandle] = {}
        self._by_stream: Dict[str, StreamHandle] = {}

    @property
    def document_key(self) -> str:
        return self._store.document_key

    def active_handle(self, channel: StreamChannel | str) -> StreamHandle | None:
        return self._active.get(StreamChannel(channel))

    def is_active(self, stream_id: str) -> bool:
        return stream_id in self._by_stream

    def begin_stream(self, channel: StreamChannel | str, session_id: str, message_id: str) -> StreamHandle:
        """Register a fresh handle as the active stream of ``channel``."""

        lane = StreamChannel(channel)
        previous = self._active.get(lane)
        if previous is not None:
            self._retire(previous, reason="superseded")
            message = self._store.get_message(previous.session_id, previous.message_id)
            if message is not None and message.is_open:
                patch: dict[str, Any] = {"status": "superseded"}
                if message.status == "receiving":
                    patch["content"] = SUPERSEDED_TEXT
                self._store.update_message(previous.session_id, previous.message_id, **patch)

        handle = StreamHandle(
            stream_id=uuid.uuid4().hex,
            channel=lane,
            document_key=self._store.document_key,
            session_id=session_id,
            message_id=message_id,
        )
        self._active[lane] = handle
        self._by_stream[handle.stream_id] = handle
        LOGGER.debug("Stream %s began on %s channel", handle.stream_id, lane.value)
        self._bus.publish(
            StreamStarted(document_key=handle.document_key, channel=lane.value, stream_id=handle.stream_id)
        )
        return handle

    def on_event(self, stream_id: str | None, event: StreamEvent | Mapping[str, Any] | None) -> bool:
        """Apply ``event`` if ``stream_id`` is the active handle of its channel.

        Returns:
            True when the event reached the session store, False when it was
            stale or malformed.
        """
        if not stream_id:
            LOGGER.warning("Dropping stream event without a stream id: %r", event)
            return False
        kind, payload = _unpack_event(event)
        if kind not in _EVENT_KINDS:
            LOGGER.warning("Dropping stream event of unknown kind %r for %s", kind, stream_id)
            return False
        handle = self._by_stream.get(stream_id)
        if handle is None or self._active.get(handle.channel) is not handle:
            return False

        try:
            if kind == "content":
                self._apply_content(handle, payload)
            elif kind == "error":
                self._apply_error(handle, payload)
            else:
                self._store.update_message(handle.session_id, handle.message_id, status="complete")
                self._retire(handle, reason="end")
        except Exception:
            LOGGER.exception("Failed to apply %s event for stream %s", kind, stream_id)
            return False
        return True

    def retire_all(self) -> None:
        """Invalidate every active handle (document teardown)."""

        for handle in list(self._active.values()):
            self._retire(handle, reason="closed")

    def _apply_content(self, handle: StreamHandle, payload: Any) -> None:
        if payload is None:
            return
        text = payload if isinstance(payload, str) else str(payload)
        if not text:
            return
        message = self._store.get_message(handle.session_id, handle.message_id)
        if message is None:
            return
        content = text if message.status == "receiving" else message.content + text
        self._store.update_message(
            handle.session_id,
            handle.message_id,
            content=content,
            is_error=False,
            status="streaming",
        )

    def _apply_error(self, handle: StreamHandle, payload: Any) -> None:
        self._store.update_message(
            handle.session_id,
            handle.message_id,
            content=self._fallback.format_error(payload, handle.channel.value),
            is_error=True,
            status="complete",
        )
        self._retire(handle, reason="error")

    def _retire(self, handle: StreamHandle, *, reason: str) -> None:
        if self._active.get(handle.channel) is handle:
            del self._active[handle.channel]
        if self._by_stream.pop(handle.stream_id, None) is None:
            return
        LOGGER.debug("Stream %s retired (%s)", handle.stream_id, reason)
        self._bus.publish(
            StreamRetired(
                document_key=handle.document_key,
                channel=handle.channel.value,
                stream_id=handle.stream_id,
                reason=reason,
            )
        )


def _unpack_event(event: StreamEvent | Mapping[str, Any] | None) -> tuple[Any, Any]:
    if isinstance(event, StreamEvent):
        return event.kind, event.payload
    if isinstance(event, Mapping):
        return event.get("kind"), event.get("payload")
    return None, None


__all__ = ["StreamChannel", "StreamEvent", "StreamEventKind", "StreamHandle", "StreamRouter"]
