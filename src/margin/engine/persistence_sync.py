"""Debounced, per-document write-back of chat sessions."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Protocol, Sequence

from ..chat.message_model import ChatSession
from .events import EventBus, PersistenceFailed

LOGGER = logging.getLogger(__name__)

SnapshotSupplier = Callable[[], Sequence[ChatSession]]


class ChatPersistence(Protocol):
    """Persistence collaborator addressed by opaque document keys."""

    def load(self, document_key: str) -> list[ChatSession] | None:
        """Return the stored sessions, or ``None`` when nothing is stored."""
        ...

    def save(self, document_key: str, sessions: Sequence[ChatSession]) -> None:
        """Store ``sessions``, replacing previous state; raises on failure."""
        ...


@dataclass(slots=True)
class _KeyState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    supplier: SnapshotSupplier | None = None
    timer: asyncio.TimerHandle | None = None
    last_written: list[dict[str, Any]] | None = None
    failures: int = 0


class PersistenceSync:
    """Coalesces session mutations into debounced saves.

    ``schedule`` arms a trailing timer per document key; when it fires the
    *current* snapshot is written. Writes for one key are serialized by a
    per-key lock so they cannot interleave; different keys never wait on
    each other. Payloads equal to the last successful write are skipped.
    """

    def __init__(
        self,
        store: ChatPersistence,
        *,
        debounce: float = 0.3,
        max_retries: int = 3,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._debounce = max(0.0, float(debounce))
        self._max_retries = max(0, int(max_retries))
        self._bus = event_bus
        self._keys: Dict[str, _KeyState] = {}
        self._writes: set[asyncio.Task[bool]] = set()

    @property
    def debounce(self) -> float:
        return self._debounce

    def has_pending(self, document_key: str) -> bool:
        state = self._keys.get(document_key)
        return bool(state and state.timer is not None)

    def mark_clean(self, document_key: str, sessions: Sequence[ChatSession]) -> None:
        """Record ``sessions`` as already persisted (e.g. just loaded)."""

        state = self._state(document_key)
        state.last_written = _serialize(sessions)

    def schedule(self, document_key: str, supplier: SnapshotSupplier) -> None:
        """Request a save of ``supplier()`` after the debounce window."""

        state = self._state(document_key)
        state.supplier = supplier
        state.failures = 0
        self._arm(document_key, state)

    async def flush(self, document_key: str) -> bool:
        """Write pending state for ``document_key`` now, bypassing the debounce.

        Waits for any in-flight write to the same key first. Returns False
        when the write failed.
        """
        state = self._keys.get(document_key)
        if state is None:
            return True
        self._cancel_timer(state)
        return await self._write(document_key)

    async def flush_all(self) -> bool:
        results = await asyncio.gather(*(self.flush(key) for key in list(self._keys)))
        return all(results)

    async def drain(self) -> None:
        """Wait for writes that are already running."""

        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def forget(self, document_key: str) -> None:
        """Drop bookkeeping for a document whose state was flushed and discarded."""

        state = self._keys.get(document_key)
        if state is None or state.lock.locked():
            return
        self._cancel_timer(state)
        self._keys.pop(document_key, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _state(self, document_key: str) -> _KeyState:
        state = self._keys.get(document_key)
        if state is None:
            state = _KeyState()
            self._keys[document_key] = state
        return state

    def _arm(self, document_key: str, state: _KeyState) -> None:
        self._cancel_timer(state)
        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(self._debounce, self._fire, document_key)

    def _fire(self, document_key: str) -> None:
        state = self._keys.get(document_key)
        if state is None:
            return
        state.timer = None
        task = asyncio.get_running_loop().create_task(self._write(document_key))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    @staticmethod
    def _cancel_timer(state: _KeyState) -> None:
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None

    async def _write(self, document_key: str) -> bool:
        state = self._state(document_key)
        async with state.lock:
            supplier = state.supplier
            if supplier is None:
                return True
            sessions = [session.copy() for session in supplier()]
            payload = _serialize(sessions)
            if payload == state.last_written:
                LOGGER.debug("PersistenceSync: %s unchanged; skipping save", document_key)
                return True
            try:
                await self._call_save(document_key, sessions)
            except Exception as exc:
                state.failures += 1
                LOGGER.warning(
                    "PersistenceSync: saving %s failed (attempt %d): %s",
                    document_key,
                    state.failures,
                    exc,
                )
                if self._bus is not None:
                    self._bus.publish(
                        PersistenceFailed(document_key=document_key, error=str(exc), attempt=state.failures)
                    )
                if state.failures <= self._max_retries and state.timer is None:
                    self._arm(document_key, state)
                return False
            state.last_written = payload
            state.failures = 0
            LOGGER.debug("PersistenceSync: saved %d session(s) for %s", len(sessions), document_key)
            return True

    async def _call_save(self, document_key: str, sessions: list[ChatSession]) -> None:
        save = self._store.save
        if inspect.iscoroutinefunction(save):
            await save(document_key, sessions)
            return
        result = await asyncio.to_thread(save, document_key, sessions)
        if inspect.isawaitable(result):
            await result


def _serialize(sessions: Sequence[ChatSession]) -> list[dict[str, Any]]:
    return [session.to_dict() for session in sessions]


__all__ = ["ChatPersistence", "PersistenceSync", "SnapshotSupplier"]
