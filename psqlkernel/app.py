"""Command line entry point for psqlkernel."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from contextlib import aclosing
from pathlib import Path
from typing import TextIO

import asyncpg

from .config import AppConfig, load_config
from .connections import ConnectionBackendError
from .credentials import EnvironmentSecretStore
from .executor import ExecutionError, ExecutionResult
from .session import SessionManager
from .splitter import split_statements

LOG = logging.getLogger(__name__)

_MAX_CELL_WIDTH = 40


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="psqlkernel", description="Run SQL scripts against PostgreSQL.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    commands = parser.add_subparsers(dest="command", required=True)

    split = commands.add_parser("split", help="Print the statements a script splits into")
    split.add_argument("script", help="SQL file, or - for stdin")

    run = commands.add_parser("run", help="Execute a script statement by statement")
    run.add_argument("script", help="SQL file, or - for stdin")
    run.add_argument("--profile", required=True, help="Profile id or name")
    run.add_argument("--database", default=None, help="Override the profile's database")
    run.add_argument("--session", default=None, help="Session id (defaults to a fresh one)")
    run.add_argument("--no-stream", action="store_true", help="Never stream large SELECTs")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    script = _read_script(args.script)
    if args.command == "split":
        for statement in split_statements(script):
            print(statement)
            print()
        return 0
    config = load_config(args.config)
    try:
        return asyncio.run(run_script(config, args, script, sys.stdout))
    except (ConnectionBackendError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


async def run_script(config: AppConfig, args: argparse.Namespace, script: str, out: TextIO) -> int:
    """Execute ``script`` and print every outcome; returns the exit status."""

    session_id = args.session or uuid.uuid4().hex
    async with SessionManager(config, secrets=EnvironmentSecretStore()) as manager:
        statements = split_statements(script)
        if len(statements) == 1 and not args.no_stream and manager.should_stream(statements[0]):
            return await _stream(manager, args, statements[0], session_id, out)
        status = 0
        outcomes = manager.run_script(args.profile, script, session_id, database=args.database)
        async with aclosing(outcomes):
            async for outcome in outcomes:
                if isinstance(outcome, ExecutionError):
                    _print_error(outcome, out)
                    status = 1
                else:
                    _print_result(outcome, out)
        return status


async def _stream(
    manager: SessionManager,
    args: argparse.Namespace,
    query: str,
    session_id: str,
    out: TextIO,
) -> int:
    batches = manager.stream_query(args.profile, query, session_id, database=args.database)
    total = 0
    try:
        async with aclosing(batches):
            async for batch in batches:
                if batch.is_first:
                    _print_row(tuple(field.name for field in batch.fields), out)
                for row in batch.rows:
                    _print_row(row, out)
                total = batch.total_rows
    except asyncpg.PostgresError as exc:
        print(f"-- ERROR after {total} rows", file=out)
        print(str(exc), file=out)
        return 1
    print(f"({total} rows, streamed)", file=out)
    return 0


def _print_result(result: ExecutionResult, out: TextIO) -> None:
    print(f"-- [{result.statement_index + 1}] {result.status or 'OK'} ({result.elapsed_ms} ms)", file=out)
    for notice in result.notices:
        print(f"NOTICE: {notice}", file=out)
    if result.columns:
        _print_row(result.columns, out)
        for row in result.rows:
            _print_row(row, out)
        print(f"({result.row_count} rows)", file=out)
    print(file=out)


def _print_error(error: ExecutionError, out: TextIO) -> None:
    print(f"-- [{error.statement_index + 1}] ERROR ({error.elapsed_ms} ms)", file=out)
    print(error.message, file=out)
    if error.detail:
        print(f"DETAIL: {error.detail}", file=out)
    if error.hint:
        print(f"HINT: {error.hint}", file=out)
    print(file=out)


def _print_row(values: tuple[object, ...], out: TextIO) -> None:
    cells = []
    for value in values:
        text = "NULL" if value is None else str(value)
        if len(text) > _MAX_CELL_WIDTH:
            text = text[: _MAX_CELL_WIDTH - 1] + "…"
        cells.append(text)
    print(" | ".join(cells), file=out)


def _read_script(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text()


__all__ = ["main", "parse_args", "run_script"]
