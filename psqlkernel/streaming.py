"""Stream large SELECT results in batches through server-side cursors."""

from __future__ import annotations

import itertools
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Literal

from .models import type_name

LOG = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200
DEFAULT_MAX_ROWS_BEFORE_STREAMING = 1000

_AGGREGATION_KEYWORDS = ("count(", "sum(", "avg(", "min(", "max(", "group by")
_LIMIT = re.compile(r"limit\s+(\d+)")
_CURSOR_IDS = itertools.count(1)


@dataclass(frozen=True, slots=True)
class StreamField:
    """Column metadata attached to every batch."""

    name: str
    type_oid: int | None
    type_name: str


@dataclass(frozen=True, slots=True)
class StreamBatch:
    """One fetched slice of a streamed result."""

    rows: tuple[tuple[object, ...], ...]
    fields: tuple[StreamField, ...]
    batch_number: int
    is_first: bool
    is_last: bool
    total_rows: int


@dataclass(frozen=True, slots=True)
class StreamingOptions:
    enabled: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    max_rows_before_streaming: int = DEFAULT_MAX_ROWS_BEFORE_STREAMING


@dataclass(frozen=True, slots=True)
class StreamingResult:
    """Either a lazy batch iterator or the fully fetched rows."""

    kind: Literal["streaming", "immediate"]
    batches: AsyncIterator[StreamBatch] | None = None
    columns: tuple[str, ...] = ()
    rows: tuple[tuple[object, ...], ...] = ()


def should_stream(query: str, max_rows_before_streaming: int = DEFAULT_MAX_ROWS_BEFORE_STREAMING) -> bool:
    """Return True for plain SELECTs that may return many rows.

    Aggregations and queries with a small explicit LIMIT run immediately.
    """

    normalized = query.strip().lower()
    if not normalized.startswith("select"):
        return False
    if any(keyword in normalized for keyword in _AGGREGATION_KEYWORDS):
        return False
    match = _LIMIT.search(normalized)
    if match and int(match.group(1)) <= max_rows_before_streaming:
        return False
    return True


class StreamingCursorReader:
    """Pulls rows from a server-side cursor ``batch_size`` rows at a time.

    The iterator returned by :meth:`stream` is not restartable. Wrap it in
    ``contextlib.aclosing`` when a consumer may stop early so the cursor is
    closed right away.
    """

    def __init__(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_rows_before_streaming: int = DEFAULT_MAX_ROWS_BEFORE_STREAMING,
    ) -> None:
        self._batch_size = batch_size
        self._max_rows_before_streaming = max_rows_before_streaming

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def should_stream(self, query: str) -> bool:
        return should_stream(query, self._max_rows_before_streaming)

    async def stream(
        self,
        connection: Any,
        query: str,
        batch_size: int | None = None,
    ) -> AsyncIterator[StreamBatch]:
        size = batch_size or self._batch_size
        if size <= 0:
            raise ValueError("batch_size must be positive")
        cursor = f"psqlkernel_cursor_{next(_CURSOR_IDS)}"
        async with _cursor_scope(connection):
            await connection.execute(f'DECLARE "{cursor}" NO SCROLL CURSOR FOR {_strip_terminator(query)}')
            try:
                fetch = await connection.prepare(f'FETCH FORWARD {size} FROM "{cursor}"')
                fields = _fields(fetch.get_attributes())
                total = 0
                batch_number = 0
                while True:
                    records = await fetch.fetch()
                    if not records:
                        break
                    batch_number += 1
                    total += len(records)
                    is_last = len(records) < size
                    yield StreamBatch(
                        rows=tuple(tuple(record) for record in records),
                        fields=fields,
                        batch_number=batch_number,
                        is_first=batch_number == 1,
                        is_last=is_last,
                        total_rows=total,
                    )
                    if is_last:
                        break
            finally:
                await _close_cursor(connection, cursor)

    async def execute_with_streaming(
        self,
        connection: Any,
        query: str,
        options: StreamingOptions | None = None,
    ) -> StreamingResult:
        """Stream when the heuristic says so, otherwise fetch everything."""

        opts = options or StreamingOptions(
            batch_size=self._batch_size,
            max_rows_before_streaming=self._max_rows_before_streaming,
        )
        if opts.enabled and should_stream(query, opts.max_rows_before_streaming):
            return StreamingResult(kind="streaming", batches=self.stream(connection, query, opts.batch_size))
        records = await connection.fetch(query)
        columns: tuple[str, ...] = tuple(records[0].keys()) if records else ()
        return StreamingResult(
            kind="immediate",
            columns=columns,
            rows=tuple(tuple(record) for record in records),
        )


@asynccontextmanager
async def _cursor_scope(connection: Any) -> AsyncIterator[None]:
    # Cursors only live inside a transaction; reuse the caller's if one is open.
    if connection.is_in_transaction():
        yield
        return
    async with connection.transaction():
        yield


async def _close_cursor(connection: Any, cursor: str) -> None:
    try:
        await connection.execute(f'CLOSE "{cursor}"')
    except Exception:
        # An aborted transaction already dropped the cursor.
        LOG.debug("Cursor close failed", extra={"cursor": cursor}, exc_info=True)


def _strip_terminator(query: str) -> str:
    return query.strip().rstrip(";").rstrip()


def _fields(attributes: Iterable[Any]) -> tuple[StreamField, ...]:
    fields: list[StreamField] = []
    for attribute in attributes:
        oid = getattr(getattr(attribute, "type", None), "oid", None)
        fields.append(StreamField(name=attribute.name, type_oid=oid, type_name=type_name(oid)))
    return tuple(fields)


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_ROWS_BEFORE_STREAMING",
    "StreamBatch",
    "StreamField",
    "StreamingCursorReader",
    "StreamingOptions",
    "StreamingResult",
    "should_stream",
]
