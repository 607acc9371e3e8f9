"""Tests for the in-memory history sink."""

from __future__ import annotations

from psqlkernel.history import HistoryEntry, HistorySink, QueryHistory


def _entry(query: str, **kwargs) -> HistoryEntry:  # type: ignore[no-untyped-def]
    return HistoryEntry(query=query, success=True, duration_ms=1, **kwargs)


def test_newest_entry_first_and_bounded() -> None:
    history = QueryHistory(limit=2)

    for query in ("SELECT 1;", "SELECT 2;", "SELECT 3;"):
        history.add(_entry(query))

    assert [entry.query for entry in history.entries] == ["SELECT 3;", "SELECT 2;"]


def test_delete_and_clear() -> None:
    history = QueryHistory()
    keep, drop = _entry("SELECT 1;"), _entry("SELECT 2;")
    history.add(keep)
    history.add(drop)

    history.delete(drop.id)
    assert history.entries == (keep,)

    history.clear()
    assert history.entries == ()


def test_subscribe_returns_unsubscribe_handle() -> None:
    history = QueryHistory()
    calls: list[int] = []
    unsubscribe = history.subscribe(lambda: calls.append(len(history.entries)))

    history.add(_entry("SELECT 1;"))
    unsubscribe()
    history.add(_entry("SELECT 2;"))

    assert calls == [1]


def test_entries_have_unique_ids() -> None:
    assert _entry("a").id != _entry("a").id


def test_query_history_is_a_sink() -> None:
    assert isinstance(QueryHistory(), HistorySink)
