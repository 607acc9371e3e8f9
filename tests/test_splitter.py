"""Tests for the statement splitter."""

from __future__ import annotations

import pytest

from psqlkernel.splitter import TRANSITIONS, SplitterState, StatementSplitter, split_statements


def test_splits_simple_statements() -> None:
    assert split_statements("SELECT 1; SELECT 2;") == ["SELECT 1;", "SELECT 2;"]


@pytest.mark.parametrize("script", ["", "   \n  ", "\t"])
def test_blank_scripts_produce_no_statements(script: str) -> None:
    assert split_statements(script) == []


def test_keeps_semicolons_inside_single_quotes() -> None:
    statements = split_statements("SELECT 'a;b'; SELECT 2;")

    assert statements[0] == "SELECT 'a;b';"
    assert len(statements) == 2


def test_doubled_quote_is_an_escape() -> None:
    statements = split_statements("SELECT 'O''Reilly'; SELECT 1;")

    assert statements[0] == "SELECT 'O''Reilly';"
    assert statements[1] == "SELECT 1;"


def test_empty_string_literal_closes_immediately() -> None:
    assert split_statements("SELECT ''; SELECT 1;") == ["SELECT '';", "SELECT 1;"]


def test_line_comment_hides_semicolons() -> None:
    statements = split_statements("SELECT 1; -- comment with ; inside \n SELECT 2;")

    assert len(statements) == 2
    assert "SELECT 2;" in statements[1]
    assert statements[1].startswith("-- comment with ; inside")


def test_block_comment_hides_semicolons() -> None:
    statements = split_statements("SELECT /* ; */ 1; SELECT 2;")

    assert statements == ["SELECT /* ; */ 1;", "SELECT 2;"]


def test_block_comments_do_not_nest() -> None:
    # The first */ closes the comment, so the ; after it splits.
    statements = split_statements("SELECT /* outer /* inner */ ; still */ 1;")

    assert statements == ["SELECT /* outer /* inner */ ;", "still */ 1;"]


def test_dollar_quoted_function_body_stays_intact() -> None:
    script = "CREATE FUNCTION foo() AS $$ BEGIN; RETURN; END; $$ LANGUAGE plpgsql; SELECT 1;"

    statements = split_statements(script)

    assert len(statements) == 2
    assert "$$ BEGIN; RETURN; END; $$" in statements[0]
    assert statements[1] == "SELECT 1;"


def test_tagged_dollar_quote() -> None:
    statements = split_statements("SELECT $tag$ ; $tag$; SELECT 2;")

    assert statements == ["SELECT $tag$ ; $tag$;", "SELECT 2;"]


def test_different_dollar_tag_inside_body_is_text() -> None:
    script = "DO $outer$ BEGIN PERFORM $inner$;$inner$; END $outer$; SELECT 3;"

    statements = split_statements(script)

    assert statements == ["DO $outer$ BEGIN PERFORM $inner$;$inner$; END $outer$;", "SELECT 3;"]


def test_quotes_inside_dollar_quotes_are_ignored() -> None:
    statements = split_statements("SELECT $$ it's; $$; SELECT 2;")

    assert statements == ["SELECT $$ it's; $$;", "SELECT 2;"]


def test_trailing_statement_without_semicolon_is_kept() -> None:
    assert split_statements("SELECT 1; SELECT 2") == ["SELECT 1;", "SELECT 2"]


@pytest.mark.parametrize(
    "script, tail",
    [
        ("SELECT 1; SELECT 'open; quote", "SELECT 'open; quote"),
        ("SELECT 1; SELECT $$ open; body", "SELECT $$ open; body"),
        ("SELECT 1; /* open; comment", "/* open; comment"),
        ("SELECT 1; -- trailing; comment", "-- trailing; comment"),
    ],
)
def test_unterminated_constructs_become_trailing_text(script: str, tail: str) -> None:
    statements = split_statements(script)

    assert statements == ["SELECT 1;", tail]


def test_statement_count_matches_terminators() -> None:
    parts = [f"INSERT INTO t VALUES ({idx})" for idx in range(25)]
    script = ";\n".join(parts) + ";"

    statements = split_statements(script)

    assert statements == [f"{part};" for part in parts]


@pytest.mark.parametrize(
    "script",
    [
        "SELECT 1; SELECT 2;",
        "SELECT 'a;b'; SELECT $x$;$x$; /* c; */ SELECT 3;",
        "CREATE FUNCTION f() AS $$ BEGIN; END; $$ LANGUAGE plpgsql; SELECT 'O''Reilly';",
    ],
)
def test_resplitting_joined_statements_is_stable(script: str) -> None:
    first = split_statements(script)

    second = split_statements(" ".join(first))

    assert len(second) == len(first)


def test_every_state_has_a_transition() -> None:
    assert set(TRANSITIONS) == set(SplitterState)


def test_single_quote_transition_consumes_escape_pair() -> None:
    step = TRANSITIONS[SplitterState.SINGLE_QUOTE]("''x", 0, "")

    assert step.state is SplitterState.SINGLE_QUOTE
    assert step.width == 2


def test_dollar_transition_only_closes_on_matching_tag() -> None:
    other = TRANSITIONS[SplitterState.DOLLAR_QUOTE]("$b$", 0, "$a$")
    same = TRANSITIONS[SplitterState.DOLLAR_QUOTE]("$a$", 0, "$a$")

    assert other.state is SplitterState.DOLLAR_QUOTE
    assert other.width == 1
    assert same.state is SplitterState.NORMAL
    assert same.width == 3


def test_splitter_instance_is_reusable() -> None:
    splitter = StatementSplitter()

    assert splitter.split("SELECT 1;") == ["SELECT 1;"]
    assert splitter.split("SELECT 'x") == ["SELECT 'x"]
    assert splitter.split("SELECT 2;") == ["SELECT 2;"]
