"""Shared pytest fixtures."""

from __future__ import annotations

import logging

import pytest

from margin.engine.events import EventBus
from margin.services.settings import Settings

from helpers import MemoryChatStore, ScriptedBackend


_MARGIN_ENV = (
    "MARGIN_API_KEY",
    "MARGIN_BASE_URL",
    "MARGIN_MODEL",
    "MARGIN_ORGANIZATION",
    "MARGIN_CHATS_DIR",
    "MARGIN_DEBUG_LOGGING",
    "MARGIN_CANCEL_SUPERSEDED_STREAMS",
    "MARGIN_REQUEST_TIMEOUT",
    "MARGIN_TEMPERATURE",
    "MARGIN_PERSISTENCE_DEBOUNCE",
    "MARGIN_STREAM_TIMEOUT",
    "MARGIN_SETTINGS_PATH",
    "MARGIN_DEBUG",
    "OPENAI_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in _MARGIN_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MARGIN_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def chat_store() -> MemoryChatStore:
    return MemoryChatStore()


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(persistence_debounce=0.01, flush_timeout=1.0, default_style="Explain simply")
