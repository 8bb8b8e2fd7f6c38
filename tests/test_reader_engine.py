"""End-to-end tests for the ReaderEngine facade."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from margin.ai.backend import BackendResult, OpenAIBackend
from margin.ai.client import ClientSettings
from margin.chat.message_model import INTERRUPTED_TEXT, SUPERSEDED_TEXT, ChatMessage, ChatSession, HighlightRef
from margin.engine.errors import BackendError
from margin.engine.fallback import FallbackPolicy
from margin.engine.reader_engine import ReaderEngine, chat_history
from margin.services.settings import Settings, SettingsStore

from helpers import MemoryChatStore, RecordingSettingsStore, ScriptedBackend


@pytest.fixture
def engine(backend: ScriptedBackend, chat_store: MemoryChatStore, fast_settings: Settings) -> ReaderEngine:
    return ReaderEngine(backend, chat_store, settings=fast_settings)


def _assistant_messages(engine: ReaderEngine) -> list[ChatMessage]:
    return [m for m in engine.store.current_session.messages if m.role == "assistant"]


# ---------------------------------------------------------------------------
# Explanations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_explanation_streams_into_current_session(engine: ReaderEngine, backend: ScriptedBackend) -> None:
    await engine.open_document("/docs/a.pdf")

    handle = await engine.request_explanation("Photosynthesis converts light.", "Summarize")
    await engine.wait_for_streams()

    messages = engine.store.current_session.messages
    assert handle is not None
    assert [(m.role, m.content, m.status) for m in messages] == [
        ("user", "Summarize", "complete"),
        ("assistant", "ok", "complete"),
    ]
    assert backend.calls == [("explain", ("Photosynthesis converts light.", "Summarize"))]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_blank_selection_is_ignored(engine: ReaderEngine, backend: ScriptedBackend) -> None:
    await engine.open_document("/docs/a.pdf")

    assert await engine.request_explanation("   ", "Summarize") is None
    assert engine.store.current_session.messages == []
    assert backend.calls == []
    await engine.shutdown()


@pytest.mark.asyncio
async def test_blank_style_uses_default_style(engine: ReaderEngine, backend: ScriptedBackend) -> None:
    await engine.open_document("/docs/a.pdf")

    await engine.request_explanation("text", "")
    await engine.wait_for_streams()

    assert backend.calls == [("explain", ("text", "Explain simply"))]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_highlight_binds_a_dedicated_session(engine: ReaderEngine) -> None:
    await engine.open_document("/docs/a.pdf")
    await engine.send_chat_message("general question")
    await engine.wait_for_streams()
    general = engine.store.current_session
    highlight = HighlightRef(id="hl-7", quote="light", page=2)

    await engine.request_explanation("light", "Expand", highlight=highlight)
    await engine.wait_for_streams()
    bound = engine.store.current_session

    await engine.request_explanation("light", "Summarize", highlight=highlight)
    await engine.wait_for_streams()

    assert bound.id != general.id
    assert bound.highlight_ref == highlight
    assert engine.store.current_session.id == bound.id
    assert bound.messages[0].action is not None
    assert bound.messages[0].action.target == "hl-7"
    assert [m.content for m in bound.messages if m.role == "user"] == ["Expand", "Summarize"]
    await engine.shutdown()


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat_fragments_accumulate(engine: ReaderEngine, backend: ScriptedBackend) -> None:
    backend.queue_chat("Th", "is ", "ok")
    await engine.open_document("/docs/a.pdf")

    await engine.send_chat_message("hello")
    await engine.wait_for_streams()

    assert [m.content for m in _assistant_messages(engine)] == ["This ok"]
    assert not engine.store.is_typing
    await engine.shutdown()


@pytest.mark.asyncio
async def test_chat_history_excludes_errors_and_open_messages(
    engine: ReaderEngine, backend: ScriptedBackend
) -> None:
    backend.queue_chat(BackendResult.error(BackendError("down", 503)))
    await engine.open_document("/docs/a.pdf")
    await engine.send_chat_message("first")
    await engine.wait_for_streams()

    await engine.send_chat_message("second")
    await engine.wait_for_streams()

    _, history = backend.calls[-1]
    assert history == [
        {"role": "user", "content": "first"},
        {"role": "user", "content": "second"},
    ]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_blank_chat_message_is_ignored(engine: ReaderEngine) -> None:
    await engine.open_document("/docs/a.pdf")

    assert await engine.send_chat_message("  ") is None
    assert engine.store.current_session.messages == []
    await engine.shutdown()


@pytest.mark.asyncio
async def test_missing_api_key_becomes_error_message(chat_store: MemoryChatStore, fast_settings: Settings) -> None:
    backend = OpenAIBackend(ClientSettings(base_url="http://localhost", api_key="", model="test-model"))
    engine = ReaderEngine(backend, chat_store, settings=fast_settings)
    await engine.open_document("/docs/a.pdf")

    await engine.send_chat_message("hello")
    await engine.wait_for_streams()

    [reply] = _assistant_messages(engine)
    assert reply.is_error is True
    assert reply.status == "complete"
    assert reply.content.startswith("Error: ")
    assert "API key is missing" in reply.content
    await engine.shutdown()


@pytest.mark.asyncio
async def test_unexpected_stream_exception_uses_generic_text(
    engine: ReaderEngine, backend: ScriptedBackend
) -> None:
    backend.queue_chat("partial", RuntimeError("boom"))
    await engine.open_document("/docs/a.pdf")

    await engine.send_chat_message("hello")
    await engine.wait_for_streams()

    [reply] = _assistant_messages(engine)
    assert reply.is_error is True
    assert reply.content == "Error: " + FallbackPolicy().generic_chat
    await engine.shutdown()


@pytest.mark.asyncio
async def test_stream_timeout_reports_transport_failure(
    backend: ScriptedBackend, chat_store: MemoryChatStore, fast_settings: Settings
) -> None:
    backend.queue_chat(asyncio.Event())
    engine = ReaderEngine(backend, chat_store, settings=replace(fast_settings, stream_timeout=0.05))
    await engine.open_document("/docs/a.pdf")

    await engine.send_chat_message("hello")
    await engine.wait_for_streams()

    [reply] = _assistant_messages(engine)
    assert reply.content == "Error: I couldn't reach the AI service. Please check your internet connection."
    await engine.shutdown()


# ---------------------------------------------------------------------------
# Supersession
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_newer_chat_supersedes_older_stream(engine: ReaderEngine, backend: ScriptedBackend) -> None:
    gate = asyncio.Event()
    backend.queue_chat(gate, "stale answer")
    backend.queue_chat("fresh answer")
    await engine.open_document("/docs/a.pdf")

    await engine.send_chat_message("one")
    await asyncio.sleep(0)
    await engine.send_chat_message("two")
    gate.set()
    await engine.wait_for_streams()

    old, new = _assistant_messages(engine)
    assert (old.status, old.content) == ("superseded", SUPERSEDED_TEXT)
    assert (new.status, new.content) == ("complete", "fresh answer")
    await engine.shutdown()


@pytest.mark.asyncio
async def test_superseded_stream_events_are_dropped_without_cancellation(
    backend: ScriptedBackend, chat_store: MemoryChatStore, fast_settings: Settings
) -> None:
    gate = asyncio.Event()
    backend.queue_chat(gate, "stale answer")
    backend.queue_chat("fresh answer")
    engine = ReaderEngine(backend, chat_store, settings=replace(fast_settings, cancel_superseded_streams=False))
    await engine.open_document("/docs/a.pdf")

    await engine.send_chat_message("one")
    await asyncio.sleep(0)
    await engine.send_chat_message("two")
    await asyncio.sleep(0.01)
    gate.set()
    await engine.wait_for_streams()

    contents = [m.content for m in _assistant_messages(engine)]
    assert contents == [SUPERSEDED_TEXT, "fresh answer"]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_explanation_and_chat_streams_are_independent(
    engine: ReaderEngine, backend: ScriptedBackend
) -> None:
    gate = asyncio.Event()
    backend.queue_explain(gate, "explained")
    backend.queue_chat("chatted")
    await engine.open_document("/docs/a.pdf")

    await engine.request_explanation("text", "Summarize")
    await engine.send_chat_message("meanwhile")
    await asyncio.sleep(0.01)
    gate.set()
    await engine.wait_for_streams()

    contents = sorted(m.content for m in _assistant_messages(engine))
    assert contents == ["chatted", "explained"]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_stream_keeps_writing_to_its_session_after_switch(
    engine: ReaderEngine, backend: ScriptedBackend
) -> None:
    gate = asyncio.Event()
    backend.queue_chat(gate, "late reply")
    await engine.open_document("/docs/a.pdf")
    origin = engine.store.current_session

    await engine.send_chat_message("question")
    engine.store.create_session()
    gate.set()
    await engine.wait_for_streams()

    assert origin.messages[-1].content == "late reply"
    assert engine.store.current_session.messages == []
    await engine.shutdown()


# ---------------------------------------------------------------------------
# Documents and persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reopening_document_restores_sessions(
    backend: ScriptedBackend, chat_store: MemoryChatStore, fast_settings: Settings
) -> None:
    engine = ReaderEngine(backend, chat_store, settings=fast_settings)
    await engine.open_document("/docs/a.pdf")
    await engine.send_chat_message("remember me")
    await engine.wait_for_streams()
    await engine.shutdown()

    reopened = ReaderEngine(ScriptedBackend(), chat_store, settings=fast_settings)
    await reopened.open_document("file:///docs/a.pdf")

    contents = [m.content for m in reopened.store.current_session.messages]
    assert contents == ["remember me", "ok"]
    await reopened.shutdown()


@pytest.mark.asyncio
async def test_switching_documents_mid_stream_interrupts_reply(
    engine: ReaderEngine, backend: ScriptedBackend, chat_store: MemoryChatStore
) -> None:
    gate = asyncio.Event()
    backend.queue_chat(gate, "never shown")
    await engine.open_document("/docs/a.pdf")
    await engine.send_chat_message("question")

    await engine.open_document("/docs/b.pdf")
    gate.set()
    await engine.wait_for_streams()

    assert engine.context is not None
    assert engine.context.document_key == "/docs/b.pdf"
    stored = chat_store.data["/docs/a.pdf"][0].messages
    assert [m.content for m in stored][0] == "question"

    await engine.open_document("/docs/a.pdf")
    reply = engine.store.current_session.messages[-1]
    assert (reply.status, reply.content) == ("superseded", INTERRUPTED_TEXT)
    await engine.shutdown()


@pytest.mark.asyncio
async def test_opening_the_same_document_keeps_context(engine: ReaderEngine) -> None:
    first = await engine.open_document("/docs/a.pdf")
    second = await engine.open_document("/docs/./a.pdf")

    assert first is second
    await engine.shutdown()


@pytest.mark.asyncio
async def test_open_document_remembers_recent_file(
    backend: ScriptedBackend, chat_store: MemoryChatStore, fast_settings: Settings
) -> None:
    settings_store = RecordingSettingsStore()
    engine = ReaderEngine(backend, chat_store, settings=fast_settings, settings_store=settings_store)

    await engine.open_document("/docs/a.pdf")
    await engine.open_document("/docs/b.pdf")

    assert fast_settings.recent_files[:2] == ["/docs/b.pdf", "/docs/a.pdf"]
    assert fast_settings.last_open_file == "/docs/b.pdf"
    assert len(settings_store.saved) == 2
    await engine.shutdown()


@pytest.mark.asyncio
async def test_opening_a_document_does_not_persist_environment_api_key(
    backend: ScriptedBackend, chat_store: MemoryChatStore, tmp_path, monkeypatch: pytest.MonkeyPatch
) -> None:
    settings_store = SettingsStore(tmp_path / "settings.json")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env-only-secret")
    settings = replace(
        settings_store.load(overrides={"model": "cli-only-model"}), persistence_debounce=0.01
    )
    engine = ReaderEngine(backend, chat_store, settings=settings, settings_store=settings_store)

    await engine.open_document("/docs/a.pdf")
    await engine.shutdown()
    monkeypatch.delenv("OPENAI_API_KEY")

    reloaded = settings_store.load()
    assert reloaded.api_key == ""
    assert reloaded.model != "cli-only-model"
    assert reloaded.last_open_file == "/docs/a.pdf"


@pytest.mark.asyncio
async def test_settings_save_failure_does_not_block_open(
    backend: ScriptedBackend, chat_store: MemoryChatStore, fast_settings: Settings
) -> None:
    engine = ReaderEngine(
        backend, chat_store, settings=fast_settings, settings_store=RecordingSettingsStore(raise_on_save=True)
    )

    context = await engine.open_document("/docs/a.pdf")

    assert context.is_active
    await engine.shutdown()


@pytest.mark.asyncio
async def test_operations_require_open_document(engine: ReaderEngine) -> None:
    with pytest.raises(RuntimeError):
        await engine.send_chat_message("hello")
    with pytest.raises(RuntimeError):
        engine.new_session()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_new_session_reuses_empty_session(engine: ReaderEngine) -> None:
    await engine.open_document("/docs/a.pdf")
    empty = engine.store.current_session

    assert engine.new_session() is empty

    await engine.send_chat_message("hi")
    await engine.wait_for_streams()
    created = engine.new_session()

    assert created is not empty
    assert created.title == "Chat 2"
    await engine.shutdown()


@pytest.mark.asyncio
async def test_session_management_round_trip(engine: ReaderEngine) -> None:
    await engine.open_document("/docs/a.pdf")
    first = engine.store.current_session
    await engine.send_chat_message("hi")
    await engine.wait_for_streams()
    second = engine.new_session()

    engine.rename_session(second.id, "Side notes")
    engine.switch_session(first.id)
    engine.clear_current_session()
    engine.remove_session(second.id)

    assert engine.store.sessions == (first,)
    assert first.messages == []
    await engine.shutdown()


@pytest.mark.asyncio
async def test_shutdown_flushes_and_closes_backend(
    engine: ReaderEngine, backend: ScriptedBackend, chat_store: MemoryChatStore
) -> None:
    await engine.open_document("/docs/a.pdf")
    engine.store.rename_session(engine.store.current_session_id, "Renamed")

    await engine.shutdown()

    assert chat_store.data["/docs/a.pdf"][0].title == "Renamed"
    assert backend.closed is True
    assert engine.context is None


def test_chat_history_keeps_completed_turns_only() -> None:
    session = ChatSession(
        title="Chat 1",
        messages=[
            ChatMessage(role="user", content="q"),
            ChatMessage(role="assistant", content="Error: x", is_error=True),
            ChatMessage(role="assistant", content="a"),
            ChatMessage.placeholder(),
        ],
    )

    assert chat_history(session) == [
        {"role": "user", "content": "q"},
        {"role": "assistant", "content": "a"},
    ]
