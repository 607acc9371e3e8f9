"""Tests for the command line entry point."""

from __future__ import annotations

from pathlib import Path

import pytest

from fakes import ConnectStub, FakeConnection, FakePostgresError, FakeResponse
from psqlkernel.app import main


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    path.write_text('[[profiles]]\nid = "local"\nname = "Local"\ndatabase = "appdb"\nusername = "app"\n')
    return path


def _script(tmp_path: Path, text: str) -> str:
    path = tmp_path / "script.sql"
    path.write_text(text)
    return str(path)


def test_split_prints_each_statement(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    script = _script(tmp_path, "SELECT 'a;b'; CREATE FUNCTION f() AS $$ BEGIN; END; $$ LANGUAGE plpgsql;")

    assert main(["split", script]) == 0

    out = capsys.readouterr().out
    assert out == "SELECT 'a;b';\n\nCREATE FUNCTION f() AS $$ BEGIN; END; $$ LANGUAGE plpgsql;\n\n"


def test_run_prints_results(
    tmp_path: Path,
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    long_text = "x" * 60
    connect = ConnectStub(
        lambda: FakeConnection(
            {
                "SELECT id, note FROM notes;": FakeResponse(
                    columns=(("id", 23), ("note", 25)),
                    rows=((1, long_text), (2, None)),
                    status="SELECT 2",
                ),
            }
        )
    )
    monkeypatch.setattr("psqlkernel.connections.asyncpg.connect", connect)
    monkeypatch.setenv("PSQLKERNEL_PASSWORD_LOCAL", "s3cret")
    script = _script(tmp_path, "SET search_path TO app; SELECT id, note FROM notes;")

    status = main(["--config", str(config_path), "run", script, "--profile", "Local", "--no-stream"])

    out = capsys.readouterr().out
    assert status == 0
    assert "-- [1] " in out
    assert "-- [2] SELECT 2" in out
    assert "id | note" in out
    assert f"1 | {'x' * 39}…" in out
    assert "2 | NULL" in out
    assert "(2 rows)" in out
    assert connect.calls[0]["password"] == "s3cret"
    assert connect.calls[0]["database"] == "appdb"


def test_run_reports_failures(
    tmp_path: Path,
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    connect = ConnectStub(
        lambda: FakeConnection(
            failures={"missing": FakePostgresError('relation "missing" does not exist', sqlstate="42P01")}
        )
    )
    monkeypatch.setattr("psqlkernel.connections.asyncpg.connect", connect)
    script = _script(tmp_path, "SELECT * FROM missing; SELECT 2;")

    status = main(["--config", str(config_path), "run", script, "--profile", "local"])

    out = capsys.readouterr().out
    assert status == 1
    assert "-- [1] ERROR" in out
    assert 'relation "missing" does not exist' in out
    assert "-- [2]" not in out


def test_run_streams_single_large_select(
    tmp_path: Path,
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    def _connection() -> FakeConnection:
        connection = FakeConnection()
        connection.cursor_columns = (("id", 23),)
        connection.cursor_rows = [(idx,) for idx in range(3)]
        return connection

    monkeypatch.setattr("psqlkernel.connections.asyncpg.connect", ConnectStub(_connection))
    script = _script(tmp_path, "SELECT * FROM events;")

    status = main(["--config", str(config_path), "run", script, "--profile", "local"])

    out = capsys.readouterr().out
    assert status == 0
    assert out.splitlines()[0] == "id"
    assert "(3 rows, streamed)" in out


def test_run_unknown_profile(
    tmp_path: Path,
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr("psqlkernel.connections.asyncpg.connect", ConnectStub())
    script = _script(tmp_path, "SELECT 1;")

    status = main(["--config", str(config_path), "run", script, "--profile", "nope"])

    assert status == 1
    assert "error: Profile 'nope' not found." in capsys.readouterr().err


def test_run_connection_failure(
    tmp_path: Path,
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    async def _refuse(**kwargs):  # type: ignore[no-untyped-def]
        raise OSError("connection refused")

    monkeypatch.setattr("psqlkernel.connections.asyncpg.connect", _refuse)
    script = _script(tmp_path, "SELECT 1;")

    status = main(["--config", str(config_path), "run", script, "--profile", "local"])

    assert status == 1
    assert "connection refused" in capsys.readouterr().err
