"""Failure taxonomy shared by the streaming engine and its collaborators."""

from __future__ import annotations

from typing import Any, ClassVar

__all__ = [
    "BackendError",
    "ConfigError",
    "EngineError",
    "PersistenceError",
    "TransportError",
]


class EngineError(Exception):
    """Base class for failures the engine knows how to degrade gracefully."""

    category: ClassVar[str] = "engine"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "message": self.message}


class ConfigError(EngineError):
    """The AI backend cannot be used as configured (e.g. missing API key)."""

    category = "config"


class BackendError(EngineError):
    """The backend was reached but rejected the request."""

    category = "backend"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["status_code"] = self.status_code
        return payload


class TransportError(EngineError):
    """The backend could not be reached (network failure or timeout)."""

    category = "transport"


class PersistenceError(EngineError):
    """Loading or saving document chats failed. Never fatal."""

    category = "persistence"
