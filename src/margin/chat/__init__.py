"""Chat data models."""

from .message_model import ChatMessage, ChatSession, HighlightRef, MessageAction

__all__ = ["ChatMessage", "ChatSession", "HighlightRef", "MessageAction"]
