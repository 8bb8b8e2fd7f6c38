"""Streaming session engine.

Modules:
    - session_store: ordered chat sessions of one document
    - stream_router: routes stream fragments to their target message
    - persistence_sync: debounced per-document write-back
    - document_context: binds a store to a document key and its history
    - reader_engine: facade used by front ends
"""

from .document_context import DocumentContext, normalize_document_key
from .errors import BackendError, ConfigError, EngineError, PersistenceError, TransportError
from .events import EventBus
from .fallback import FallbackPolicy
from .persistence_sync import ChatPersistence, PersistenceSync
from .reader_engine import ReaderEngine, chat_history
from .session_store import SessionStore
from .stream_router import StreamChannel, StreamEvent, StreamHandle, StreamRouter

__all__ = [
    "BackendError",
    "ChatPersistence",
    "ConfigError",
    "DocumentContext",
    "EngineError",
    "EventBus",
    "FallbackPolicy",
    "PersistenceError",
    "PersistenceSync",
    "ReaderEngine",
    "SessionStore",
    "StreamChannel",
    "StreamEvent",
    "StreamHandle",
    "StreamRouter",
    "TransportError",
    "chat_history",
    "normalize_document_key",
]
