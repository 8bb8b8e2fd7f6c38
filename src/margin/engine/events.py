"""Event bus and change notifications published by the engine.

The UI layer subscribes to these events to re-render chat sessions without
holding references into engine state.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all engine events."""


# Events fired per streamed fragment; publishing them is not logged.
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Document lifecycle
# =============================================================================


@dataclass(slots=True)
class DocumentActivated(Event):
    """A document's sessions were loaded and it became the active document.

    Attributes:
        document_key: Normalized key of the document.
        session_count: Number of sessions restored (at least one).
        restored: Whether the sessions came from persisted history.
    """

    document_key: str
    session_count: int
    restored: bool


@dataclass(slots=True)
class DocumentDeactivated(Event):
    """The active document was closed and its state flushed."""

    document_key: str


# =============================================================================
# Session and message changes
# =============================================================================


@dataclass(slots=True)
class SessionsChanged(Event):
    """The session list or the current session of a document changed.

    Attributes:
        document_key: Normalized key of the document.
        current_session_id: The session that is current after the change.
        session_ids: The ordered ids of all sessions.
    """

    document_key: str
    current_session_id: str
    session_ids: tuple[str, ...]


@dataclass(slots=True)
class MessageAppended(Event):
    """A message was added to a session."""

    document_key: str
    session_id: str
    message_id: str


@dataclass(slots=True)
class MessageUpdated(Event):
    """A message's content or status changed (fires for every fragment)."""

    document_key: str
    session_id: str
    message_id: str
    status: str


_QUIET_EVENT_TYPES.add(MessageUpdated)


# =============================================================================
# Streams
# =============================================================================


@dataclass(slots=True)
class StreamStarted(Event):
    """A stream handle became the active handle of its channel."""

    document_key: str
    channel: str
    stream_id: str


@dataclass(slots=True)
class StreamRetired(Event):
    """A stream handle stopped accepting events.

    Attributes:
        reason: One of ``"end"``, ``"error"``, ``"superseded"`` or ``"closed"``.
    """

    document_key: str
    channel: str
    stream_id: str
    reason: str


# =============================================================================
# Persistence
# =============================================================================


@dataclass(slots=True)
class PersistenceFailed(Event):
    """A save attempt failed and will be retried on the next debounce cycle."""

    document_key: str
    error: str
    attempt: int


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers are invoked synchronously in registration order. Bound methods
    are held weakly so subscribers can be garbage collected; plain functions
    and lambdas are held strongly.

    Not thread-safe: publish and subscribe from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""

        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed %s to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                logger.debug("Unsubscribed %s from %s", _handler_name(handler), event_type.__name__)
                return

    def publish(self, event: E) -> None:
        """Deliver ``event`` to its handlers, logging (not raising) handler failures."""

        event_type = type(event)
        handlers = self._handlers.get(event_type)
        quiet = event_type in _QUIET_EVENT_TYPES
        if not handlers:
            return
        if not quiet:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead: list[_HandlerRef] = []
        for handler_ref in list(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                dead.append(handler_ref)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised for event %s", _handler_name(handler), event_type.__name__
                )
        for handler_ref in dead:
            if handler_ref in handlers:
                handlers.remove(handler_ref)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference otherwise."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: Any, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> "_HandlerRef":
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "DocumentActivated",
    "DocumentDeactivated",
    "SessionsChanged",
    "MessageAppended",
    "MessageUpdated",
    "StreamStarted",
    "StreamRetired",
    "PersistenceFailed",
]
