"""Settings and chat history persistence."""

from .chat_store import JsonChatStore
from .settings import SecretVault, Settings, SettingsStore

__all__ = ["JsonChatStore", "SecretVault", "Settings", "SettingsStore"]
