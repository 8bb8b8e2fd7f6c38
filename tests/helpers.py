"""Shared test helpers and stub classes.

Import from here instead of duplicating these stubs in individual test files.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from margin.ai.backend import BackendResult
from margin.chat.message_model import ChatSession
from margin.engine.errors import PersistenceError


def _round_trip(sessions: Sequence[ChatSession]) -> list[ChatSession]:
    """Serialize and restore sessions the way on-disk persistence does."""

    return [ChatSession.from_dict(session.to_dict()) for session in sessions]


class MemoryChatStore:
    """In-memory chat persistence with scriptable failures.

    Example:
        store = MemoryChatStore(fail_saves=1)  # first save raises, then succeeds
    """

    def __init__(
        self,
        initial: Mapping[str, Sequence[ChatSession]] | None = None,
        *,
        load_error: BaseException | None = None,
        fail_saves: int = 0,
    ) -> None:
        self.data: dict[str, list[ChatSession]] = {
            key: _round_trip(sessions) for key, sessions in (initial or {}).items()
        }
        self.load_error = load_error
        self.fail_saves = fail_saves
        self.attempts: list[str] = []
        self.saves: list[tuple[str, list[ChatSession]]] = []

    def load(self, document_key: str) -> list[ChatSession] | None:
        if self.load_error is not None:
            raise self.load_error
        sessions = self.data.get(document_key)
        if sessions is None:
            return None
        return _round_trip(sessions)

    def save(self, document_key: str, sessions: Sequence[ChatSession]) -> None:
        self.attempts.append(document_key)
        if self.fail_saves > 0:
            self.fail_saves -= 1
            raise PersistenceError("disk full")
        copies = _round_trip(sessions)
        self.data[document_key] = copies
        self.saves.append((document_key, copies))


class SlowChatStore(MemoryChatStore):
    """Coroutine-based store that records how many saves overlap."""

    def __init__(self, *, delay: float = 0.02, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.delay = delay
        self.active: dict[str, int] = {}
        self.max_active_per_key = 0
        self.max_active_total = 0

    async def save(self, document_key: str, sessions: Sequence[ChatSession]) -> None:  # type: ignore[override]
        self.active[document_key] = self.active.get(document_key, 0) + 1
        self.max_active_per_key = max(self.max_active_per_key, self.active[document_key])
        self.max_active_total = max(self.max_active_total, sum(self.active.values()))
        try:
            await asyncio.sleep(self.delay)
            MemoryChatStore.save(self, document_key, sessions)
        finally:
            self.active[document_key] -= 1


class ScriptedBackend:
    """AI backend stub replaying queued scripts.

    A script is a list of steps: ``BackendResult`` items are yielded,
    ``asyncio.Event`` items are awaited, plain strings are yielded as content
    and exceptions are raised from inside the stream. When no script is
    queued a single ``"ok"`` fragment is streamed.
    """

    def __init__(self) -> None:
        self.explain_scripts: deque[list[Any]] = deque()
        self.chat_scripts: deque[list[Any]] = deque()
        self.calls: list[tuple[str, Any]] = []
        self.closed = False

    def queue_explain(self, *steps: Any) -> None:
        self.explain_scripts.append(list(steps))

    def queue_chat(self, *steps: Any) -> None:
        self.chat_scripts.append(list(steps))

    def explain(self, text: str, style_prompt: str) -> AsyncIterator[BackendResult]:
        self.calls.append(("explain", (text, style_prompt)))
        script = self.explain_scripts.popleft() if self.explain_scripts else ["ok"]
        return self._play(script)

    def chat(self, history: Sequence[Mapping[str, str]]) -> AsyncIterator[BackendResult]:
        self.calls.append(("chat", [dict(item) for item in history]))
        script = self.chat_scripts.popleft() if self.chat_scripts else ["ok"]
        return self._play(script)

    async def aclose(self) -> None:
        self.closed = True

    async def _play(self, script: Iterable[Any]) -> AsyncIterator[BackendResult]:
        for step in script:
            if isinstance(step, asyncio.Event):
                await step.wait()
            elif isinstance(step, BaseException):
                raise step
            elif isinstance(step, BackendResult):
                yield step
            else:
                yield BackendResult.content(str(step))


class RecordingSettingsStore:
    """Settings store stub that records saves."""

    def __init__(self, *, raise_on_save: bool = False) -> None:
        self.saved: list[Any] = []
        self.raise_on_save = raise_on_save

    def save(self, settings: Any) -> None:
        if self.raise_on_save:
            raise OSError("Simulated save failure")
        self.saved.append(settings)

    def save_recent_files(self, recent_files: list[str], last_open_file: str | None) -> None:
        self.save({"recent_files": list(recent_files), "last_open_file": last_open_file})


async def wait_until(predicate, *, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
