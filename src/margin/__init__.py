"""Margin: document-scoped AI explanations and chats with streamed replies."""

__version__ = "0.1.0"

__all__ = ["__version__"]
