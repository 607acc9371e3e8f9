"""Split multi-statement SQL scripts on top-level semicolons.

The scanner is a small finite-state machine. Each state owns one transition
function that looks at the text at the current position and decides the next
state, how many characters to consume and whether a statement ends there.
Everything consumed is part of the current statement, so statements are plain
slices of the original script.

Known simplifications:

* block comments do not nest; the first ``*/`` closes the comment.
* unterminated quotes, comments and dollar-quotes never raise, the rest of the
  input simply becomes the trailing statement.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable

LOG = logging.getLogger(__name__)

_DOLLAR_TAG = re.compile(r"\$[A-Za-z0-9_]*\$")


class SplitterState(Enum):
    """Lexical context of the scanner."""

    NORMAL = "normal"
    SINGLE_QUOTE = "single_quote"
    DOLLAR_QUOTE = "dollar_quote"
    BLOCK_COMMENT = "block_comment"
    LINE_COMMENT = "line_comment"


@dataclass(frozen=True, slots=True)
class _Step:
    state: SplitterState
    width: int = 1
    tag: str = ""
    terminates: bool = False


def _scan_normal(text: str, pos: int, tag: str) -> _Step:
    if text.startswith("/*", pos):
        return _Step(SplitterState.BLOCK_COMMENT, 2)
    if text.startswith("--", pos):
        return _Step(SplitterState.LINE_COMMENT, 2)
    match = _DOLLAR_TAG.match(text, pos)
    if match:
        return _Step(SplitterState.DOLLAR_QUOTE, len(match.group()), tag=match.group())
    char = text[pos]
    if char == "'":
        return _Step(SplitterState.SINGLE_QUOTE)
    if char == ";":
        return _Step(SplitterState.NORMAL, terminates=True)
    return _Step(SplitterState.NORMAL)


def _scan_single_quote(text: str, pos: int, tag: str) -> _Step:
    if text.startswith("''", pos):
        # Escaped quote, stays inside the literal.
        return _Step(SplitterState.SINGLE_QUOTE, 2)
    if text[pos] == "'":
        return _Step(SplitterState.NORMAL)
    return _Step(SplitterState.SINGLE_QUOTE)


def _scan_dollar_quote(text: str, pos: int, tag: str) -> _Step:
    if text.startswith(tag, pos):
        return _Step(SplitterState.NORMAL, len(tag))
    return _Step(SplitterState.DOLLAR_QUOTE, tag=tag)


def _scan_block_comment(text: str, pos: int, tag: str) -> _Step:
    if text.startswith("/*", pos):
        return _Step(SplitterState.BLOCK_COMMENT, 2)
    if text.startswith("*/", pos):
        return _Step(SplitterState.NORMAL, 2)
    return _Step(SplitterState.BLOCK_COMMENT)


def _scan_line_comment(text: str, pos: int, tag: str) -> _Step:
    if text[pos] == "\n":
        return _Step(SplitterState.NORMAL)
    return _Step(SplitterState.LINE_COMMENT)


TRANSITIONS: dict[SplitterState, Callable[[str, int, str], _Step]] = {
    SplitterState.NORMAL: _scan_normal,
    SplitterState.SINGLE_QUOTE: _scan_single_quote,
    SplitterState.DOLLAR_QUOTE: _scan_dollar_quote,
    SplitterState.BLOCK_COMMENT: _scan_block_comment,
    SplitterState.LINE_COMMENT: _scan_line_comment,
}


class StatementSplitter:
    """Partitions SQL text into trimmed statements, each keeping its ``;``."""

    def split(self, script: str) -> list[str]:
        statements: list[str] = []
        state = SplitterState.NORMAL
        tag = ""
        start = 0
        pos = 0
        length = len(script)
        while pos < length:
            step = TRANSITIONS[state](script, pos, tag)
            pos += step.width
            state = step.state
            tag = step.tag
            if step.terminates:
                self._emit(statements, script[start:pos])
                start = pos
        if state is not SplitterState.NORMAL and state is not SplitterState.LINE_COMMENT:
            LOG.debug("Script ended inside an open construct", extra={"state": state.value})
        self._emit(statements, script[start:])
        return statements

    @staticmethod
    def _emit(statements: list[str], chunk: str) -> None:
        trimmed = chunk.strip()
        if trimmed:
            statements.append(trimmed)


_DEFAULT_SPLITTER = StatementSplitter()


def split_statements(script: str) -> list[str]:
    """Split ``script`` into executable statements."""

    return _DEFAULT_SPLITTER.split(script)


__all__ = ["SplitterState", "StatementSplitter", "TRANSITIONS", "split_statements"]
