"""AI backend collaborator producing tagged stream results.

Backends never raise across the streaming boundary: SDK and network failures
are converted into ``BackendResult("error", <EngineError>)`` items so the
engine can treat every outcome as data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Mapping, Protocol, Sequence

import httpx
from openai import APIConnectionError, APIError, APIStatusError, OpenAIError

from ..engine.errors import BackendError, ConfigError, EngineError, TransportError
from .client import AIClient, AIStreamEvent, ClientSettings
from .prompts import build_chat_messages, build_explain_messages

LOGGER = logging.getLogger(__name__)

BackendResultKind = Literal["content", "error"]


@dataclass(slots=True, frozen=True)
class BackendResult:
    """One item of a backend stream: a text fragment or a failure."""

    kind: BackendResultKind
    payload: Any

    @classmethod
    def content(cls, text: str) -> "BackendResult":
        return cls("content", text)

    @classmethod
    def error(cls, error: EngineError | str) -> "BackendResult":
        return cls("error", error)


class AIBackend(Protocol):
    """Collaborator consumed by the engine for explanations and chats."""

    def explain(self, text: str, style_prompt: str) -> AsyncIterator[BackendResult]:
        ...

    def chat(self, history: Sequence[Mapping[str, str]]) -> AsyncIterator[BackendResult]:
        ...


def classify_exception(exc: BaseException) -> EngineError:
    """Map SDK/network exceptions onto the engine's failure taxonomy."""

    if isinstance(exc, EngineError):
        return exc
    if isinstance(exc, APIStatusError):
        return BackendError(exc.message or str(exc), exc.status_code, cause=exc)
    if isinstance(exc, (APIConnectionError, httpx.TransportError, TimeoutError)):
        return TransportError(str(exc) or "Could not connect to the AI service", cause=exc)
    if isinstance(exc, APIError):
        return BackendError(exc.message or str(exc), None, cause=exc)
    if isinstance(exc, OpenAIError):
        return ConfigError(str(exc), cause=exc)
    return BackendError(f"Unexpected error during AI call: {exc}", None, cause=exc)


class OpenAIBackend:
    """Streams explanations and chat replies from an OpenAI-compatible API."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AIClient | None = None,
        explain_max_tokens: int | None = 500,
        chat_max_tokens: int | None = 1500,
        temperature: float | None = 0.7,
    ) -> None:
        self._settings = settings
        self._client = client
        self._explain_max_tokens = explain_max_tokens
        self._chat_max_tokens = chat_max_tokens
        self._temperature = temperature

    def explain(self, text: str, style_prompt: str) -> AsyncIterator[BackendResult]:
        messages = build_explain_messages(text, style_prompt)
        return self._stream(messages, max_tokens=self._explain_max_tokens, label="explain")

    def chat(self, history: Sequence[Mapping[str, str]]) -> AsyncIterator[BackendResult]:
        messages = build_chat_messages(history)
        return self._stream(messages, max_tokens=self._chat_max_tokens, label="chat")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _ensure_client(self) -> AIClient:
        if self._client is None:
            if not (self._settings.api_key or "").strip():
                raise ConfigError("API key is missing. Cannot call AI API.")
            self._client = AIClient(self._settings)
        return self._client

    async def _stream(
        self,
        messages: list[dict[str, str]],
        *,
        max_tokens: int | None,
        label: str,
    ) -> AsyncIterator[BackendResult]:
        yielded = False
        try:
            client = self._ensure_client()
            async for event in client.stream_chat(
                messages, temperature=self._temperature, max_tokens=max_tokens
            ):
                text = _event_text(event, after_delta=yielded)
                if text:
                    yielded = True
                    yield BackendResult.content(text)
        except Exception as exc:
            error = classify_exception(exc)
            LOGGER.warning("AI %s stream failed (%s): %s", label, error.category, error.message)
            yield BackendResult.error(error)


def _event_text(event: AIStreamEvent, *, after_delta: bool) -> str | None:
    if event.type in {"content.delta", "refusal.delta"}:
        return event.content
    if event.type in {"content.done", "refusal.done"} and not after_delta:
        return event.content
    return None


__all__ = [
    "AIBackend",
    "BackendResult",
    "BackendResultKind",
    "OpenAIBackend",
    "classify_exception",
]
