"""Execution history sink."""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol, runtime_checkable

DEFAULT_HISTORY_LIMIT = 100


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One executed statement as recorded in history."""

    query: str
    success: bool
    duration_ms: int
    row_count: int | None = None
    connection_name: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


@runtime_checkable
class HistorySink(Protocol):
    """Receives one entry per executed statement."""

    def add(self, entry: HistoryEntry) -> None: ...


HistoryListener = Callable[[], None]


class QueryHistory:
    """Bounded in-memory history, newest entry first."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._entries: deque[HistoryEntry] = deque(maxlen=limit)
        self._listeners: set[HistoryListener] = set()

    @property
    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def add(self, entry: HistoryEntry) -> None:
        self._entries.appendleft(entry)
        self._notify()

    def delete(self, entry_id: str) -> None:
        self._entries = deque(
            (entry for entry in self._entries if entry.id != entry_id),
            maxlen=self._entries.maxlen,
        )
        self._notify()

    def clear(self) -> None:
        self._entries.clear()
        self._notify()

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        """Subscribe to history changes; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in tuple(self._listeners):
            listener()


__all__ = ["DEFAULT_HISTORY_LIMIT", "HistoryEntry", "HistoryListener", "HistorySink", "QueryHistory"]
