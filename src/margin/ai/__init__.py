"""AI client, backend and prompt helpers."""

from .backend import AIBackend, BackendResult, OpenAIBackend, classify_exception
from .client import AIClient, AIStreamEvent, ClientSettings

__all__ = [
    "AIBackend",
    "AIClient",
    "AIStreamEvent",
    "BackendResult",
    "ClientSettings",
    "OpenAIBackend",
    "classify_exception",
]
