"""Script execution against session connections."""

from __future__ import annotations

import logging
import re
import time
from contextlib import aclosing, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterator

from sqlglot import exp, parse_one
from sqlglot.errors import SqlglotError

from .connections import ConnectionMultiplexer
from .history import HistoryEntry, HistorySink
from .models import ConnectionProfile, type_name
from .splitter import StatementSplitter
from .streaming import StreamBatch, StreamingCursorReader

LOG = logging.getLogger(__name__)

_COMMENTS = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)

_PRIMARY_KEY_QUERY = """
    SELECT a.attname
    FROM pg_index i
    JOIN pg_attribute a ON a.attrelid = i.indrelid
                       AND a.attnum = ANY(i.indkey)
    WHERE i.indrelid = $1::regclass
      AND i.indisprimary
"""

_LOOKUP_SAVEPOINT = "psqlkernel_lookup"


@dataclass(frozen=True, slots=True)
class TableInfo:
    """Source table guessed from a statement, used for write-back hints."""

    schema: str
    table: str
    primary_keys: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one successful statement."""

    statement: str
    statement_index: int
    columns: tuple[str, ...]
    column_types: tuple[str, ...]
    rows: tuple[tuple[object, ...], ...]
    row_count: int | None
    status: str
    elapsed_ms: int
    notices: tuple[str, ...] = ()
    backend_pid: int | None = None
    table_info: TableInfo | None = None
    success: bool = True

    @property
    def command(self) -> str | None:
        """Leading word of the command tag (``SELECT``, ``INSERT``...)."""

        return self.status.split(" ", 1)[0] if self.status else None


@dataclass(frozen=True, slots=True)
class ExecutionError:
    """Failure of one statement; nothing after it in the script ran."""

    message: str
    statement: str
    statement_index: int
    elapsed_ms: int
    sqlstate: str | None = None
    detail: str | None = None
    hint: str | None = None
    notices: tuple[str, ...] = ()
    success: bool = False


ExecutionOutcome = ExecutionResult | ExecutionError


@contextmanager
def capture_notices(connection: Any) -> Iterator[list[str]]:
    """Collect server notices emitted on ``connection`` while the block runs.

    The listener is always removed on exit. Connections that cannot take a
    listener yield a list that simply stays empty.
    """

    notices: list[str] = []

    def _listener(_connection: Any, message: Any) -> None:
        notices.append(getattr(message, "message", None) or str(message))

    try:
        connection.add_log_listener(_listener)
        subscribed = True
    except Exception:
        LOG.debug("Notice capture unavailable", exc_info=True)
        subscribed = False
    try:
        yield notices
    finally:
        if subscribed:
            try:
                connection.remove_log_listener(_listener)
            except Exception:
                LOG.debug("Failed to remove notice listener", exc_info=True)


class ScriptExecutor:
    """Runs multi-statement scripts on a session connection, one statement at a time."""

    def __init__(
        self,
        multiplexer: ConnectionMultiplexer,
        *,
        history: HistorySink | None = None,
        reader: StreamingCursorReader | None = None,
        splitter: StatementSplitter | None = None,
        infer_primary_keys: bool = True,
    ) -> None:
        self._multiplexer = multiplexer
        self._history = history
        self._reader = reader or StreamingCursorReader()
        self._splitter = splitter or StatementSplitter()
        self._infer_primary_keys = infer_primary_keys

    @property
    def reader(self) -> StreamingCursorReader:
        return self._reader

    async def execute(
        self,
        script: str,
        profile: ConnectionProfile,
        session_id: str,
        *,
        database: str | None = None,
    ) -> AsyncIterator[ExecutionOutcome]:
        """Yield one result or error per statement, stopping at the first error.

        Connection failures raise ``ConnectionBackendError`` before anything
        is yielded.
        """

        statements = self._splitter.split(script)
        if not statements:
            return
        lease = await self._multiplexer.acquire_session(profile, session_id, database=database)
        async with lease.guard:
            connection = lease.connection
            backend_pid = _backend_pid(connection)
            LOG.debug(
                "Executing script",
                extra={"session": lease.session_key, "statements": len(statements)},
            )
            with capture_notices(connection) as notices:
                for index, statement in enumerate(statements):
                    started = time.perf_counter()
                    try:
                        columns, column_types, rows, status = await self._run_statement(connection, statement)
                    except Exception as exc:
                        elapsed_ms = _elapsed_ms(started)
                        error = ExecutionError(
                            message=str(exc),
                            statement=statement,
                            statement_index=index,
                            elapsed_ms=elapsed_ms,
                            sqlstate=getattr(exc, "sqlstate", None),
                            detail=getattr(exc, "detail", None),
                            hint=getattr(exc, "hint", None),
                            notices=tuple(notices),
                        )
                        notices.clear()
                        LOG.info(
                            "Statement failed; skipping the rest of the script",
                            extra={"statement_index": index, "remaining": len(statements) - index - 1},
                        )
                        self._record(profile, statement, success=False, duration_ms=elapsed_ms)
                        yield error
                        return
                    elapsed_ms = _elapsed_ms(started)
                    row_count = _row_count(status, rows, columns)
                    table_info = None
                    if columns and self._infer_primary_keys:
                        table_info = await self._table_info(connection, statement)
                    result = ExecutionResult(
                        statement=statement,
                        statement_index=index,
                        columns=columns,
                        column_types=column_types,
                        rows=rows,
                        row_count=row_count,
                        status=status,
                        elapsed_ms=elapsed_ms,
                        notices=tuple(notices),
                        backend_pid=backend_pid,
                        table_info=table_info,
                    )
                    notices.clear()
                    self._record(profile, statement, success=True, duration_ms=elapsed_ms, row_count=row_count)
                    yield result

    async def stream(
        self,
        query: str,
        profile: ConnectionProfile,
        session_id: str,
        *,
        database: str | None = None,
        batch_size: int | None = None,
    ) -> AsyncIterator[StreamBatch]:
        """Stream a single large SELECT over the session connection."""

        lease = await self._multiplexer.acquire_session(profile, session_id, database=database)
        async with lease.guard:
            started = time.perf_counter()
            total = 0
            failed = False
            try:
                async with aclosing(self._reader.stream(lease.connection, query, batch_size)) as batches:
                    async for batch in batches:
                        total = batch.total_rows
                        yield batch
            except Exception:
                failed = True
                raise
            finally:
                self._record(
                    profile,
                    query.strip(),
                    success=not failed,
                    duration_ms=_elapsed_ms(started),
                    row_count=total,
                )

    async def _run_statement(
        self,
        connection: Any,
        statement: str,
    ) -> tuple[tuple[str, ...], tuple[str, ...], tuple[tuple[object, ...], ...], str]:
        if _is_blank(statement):
            # Comment-only chunks have nothing to prepare.
            status = await connection.execute(statement)
            return (), (), (), status or ""
        prepared = await connection.prepare(statement)
        records = await prepared.fetch()
        attributes = tuple(prepared.get_attributes())
        columns = tuple(attribute.name for attribute in attributes)
        column_types = tuple(
            type_name(getattr(getattr(attribute, "type", None), "oid", None)) for attribute in attributes
        )
        rows = tuple(tuple(record) for record in records)
        return columns, column_types, rows, prepared.get_statusmsg() or ""

    async def _table_info(self, connection: Any, statement: str) -> TableInfo | None:
        source = source_table(statement)
        if source is None:
            return None
        schema, table = source
        try:
            records = await _fetch_isolated(connection, _PRIMARY_KEY_QUERY, f"{schema}.{table}")
        except Exception:
            # Views, CTE names and the like have no catalog entry.
            LOG.debug("Primary key lookup failed", extra={"table": f"{schema}.{table}"}, exc_info=True)
            return None
        return TableInfo(schema=schema, table=table, primary_keys=tuple(record["attname"] for record in records))

    def _record(
        self,
        profile: ConnectionProfile,
        statement: str,
        *,
        success: bool,
        duration_ms: int,
        row_count: int | None = None,
    ) -> None:
        if self._history is None:
            return
        entry = HistoryEntry(
            query=statement,
            success=success,
            duration_ms=duration_ms,
            row_count=row_count,
            connection_name=profile.display_name,
        )
        try:
            self._history.add(entry)
        except Exception:
            LOG.exception("History sink rejected entry")


def source_table(statement: str) -> tuple[str, str] | None:
    """Return ``(schema, table)`` of the first table a SELECT reads from."""

    try:
        ast = parse_one(statement.strip().rstrip(";"), read="postgres")
    except SqlglotError:
        return None
    if not isinstance(ast, exp.Select):
        return None
    table = ast.find(exp.Table)
    if table is None or not table.name:
        return None
    return table.db or "public", table.name


def _backend_pid(connection: Any) -> int | None:
    try:
        return connection.get_server_pid()
    except Exception:
        LOG.warning("Failed to read backend pid; cancellation unavailable for this run", exc_info=True)
        return None


async def _fetch_isolated(connection: Any, query: str, *args: object) -> list[Any]:
    """Run a helper query without risking the caller's open transaction."""

    if not connection.is_in_transaction():
        return await connection.fetch(query, *args)
    await connection.execute(f"SAVEPOINT {_LOOKUP_SAVEPOINT}")
    try:
        records = await connection.fetch(query, *args)
    except Exception:
        await connection.execute(f"ROLLBACK TO SAVEPOINT {_LOOKUP_SAVEPOINT}")
        raise
    await connection.execute(f"RELEASE SAVEPOINT {_LOOKUP_SAVEPOINT}")
    return records


def _is_blank(statement: str) -> bool:
    return not _COMMENTS.sub("", statement).strip().strip(";").strip()


def _row_count(status: str, rows: tuple[tuple[object, ...], ...], columns: tuple[str, ...]) -> int | None:
    if status:
        last = status.rsplit(" ", 1)[-1]
        if last.isdigit():
            return int(last)
    return len(rows) if columns else None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


__all__ = [
    "ExecutionError",
    "ExecutionOutcome",
    "ExecutionResult",
    "ScriptExecutor",
    "TableInfo",
    "capture_notices",
    "source_table",
]
