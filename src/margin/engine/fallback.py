"""Translate backend failures into user-legible assistant messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..chat.message_model import ChatMessage
from .errors import BackendError, ConfigError, TransportError

LOGGER = logging.getLogger(__name__)

ERROR_PREFIX = "Error: "


@dataclass(slots=True)
class FallbackPolicy:
    """Maps failure categories to fixed-tone fallback text.

    The policy never raises; unknown failures get a channel-specific generic
    message so the conversation stays coherent.
    """

    generic_explanation: str = (
        "Sorry, I couldn't process that request due to an unexpected issue. Please try again."
    )
    generic_chat: str = "I'm having a little trouble thinking right now. Let's try that again in a bit?"

    def describe(self, error: BaseException | str | None, channel: str = "explanation") -> str:
        if isinstance(error, str) and error.strip():
            return error.strip()
        if isinstance(error, ConfigError):
            return f"I seem to be misconfigured. Please check my settings. (Details: {error.message})"
        if isinstance(error, BackendError):
            if error.status_code in (401, 403):
                return "My access to the AI service was denied. Please check the API key."
            if error.status_code == 429:
                return "I'm a bit overwhelmed right now (rate limit). Please try again in a moment."
            if error.status_code is None:
                return "The AI service seems to be having trouble. Please try again later."
            return f"The AI service seems to be having trouble (Error {error.status_code}). Please try again later."
        if isinstance(error, TransportError):
            return "I couldn't reach the AI service. Please check your internet connection."
        if error is not None:
            LOGGER.debug("No fallback mapping for %s; using generic text", type(error).__name__)
        if channel == "chat":
            return self.generic_chat
        return self.generic_explanation

    def format_error(self, error: BaseException | str | None, channel: str = "explanation") -> str:
        return f"{ERROR_PREFIX}{self.describe(error, channel)}"

    def fallback_message(self, error: BaseException | str | None, channel: str = "explanation") -> ChatMessage:
        """Build a completed, error-flagged assistant message for ``error``."""

        return ChatMessage(
            role="assistant",
            content=self.format_error(error, channel),
            is_error=True,
            status="complete",
        )


__all__ = ["ERROR_PREFIX", "FallbackPolicy"]
