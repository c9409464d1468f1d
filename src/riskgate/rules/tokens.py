# SPDX-License-Identifier: MIT
"""Simplified token/line view of a change unit — comment and string spans per line.

Not a lexer: a small per-language state machine that knows line comments,
block comments, and string delimiters well enough to tell whether a match
landed in code, a comment, or a string literal.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from riskgate.rules.context import ChangeUnit

CODE = "code"
COMMENT = "comment"
STRING = "string"


@dataclass(frozen=True)
class _Syntax:
    line_comments: tuple[str, ...]
    block_comments: tuple[tuple[str, str], ...]
    # Longest delimiters first so triple quotes win over single quotes
    string_delims: tuple[str, ...]
    multiline_delims: frozenset[str]


_HASH = _Syntax(
    line_comments=("#",),
    block_comments=(),
    string_delims=('"""', "'''", '"', "'"),
    multiline_delims=frozenset({'"""', "'''"}),
)
_SLASH = _Syntax(
    line_comments=("//",),
    block_comments=(("/*", "*/"),),
    string_delims=('"""', '"', "'", "`"),
    multiline_delims=frozenset({'"""', "`"}),
)
_UNKNOWN = _Syntax(
    line_comments=("#", "//"),
    block_comments=(("/*", "*/"),),
    string_delims=('"', "'"),
    multiline_delims=frozenset(),
)

_SYNTAX_BY_LANGUAGE: dict[str, _Syntax] = {
    "python": _HASH,
    "ruby": _HASH,
    "shell": _HASH,
    "yaml": _HASH,
    "javascript": _SLASH,
    "typescript": _SLASH,
    "swift": _SLASH,
    "go": _SLASH,
    "java": _SLASH,
    "kotlin": _SLASH,
    "rust": _SLASH,
    "c": _SLASH,
    "cpp": _SLASH,
    "csharp": _SLASH,
    "php": _SLASH,
}

# Languages whose block structure follows indentation rather than braces
INDENT_LANGUAGES = frozenset({"python", "yaml"})


@dataclass(frozen=True)
class LineTokens:
    """One line of source with its comment and string-literal spans (end-exclusive)."""

    text: str
    spans: tuple[tuple[int, int, str], ...] = ()

    def kind_at(self, offset: int) -> str:
        for start, end, kind in self.spans:
            if start <= offset < end:
                return kind
        return CODE

    @property
    def code(self) -> str:
        """The line with comment and string spans blanked out, offsets preserved."""
        if not self.spans:
            return self.text
        chars = list(self.text)
        for start, end, _ in self.spans:
            for i in range(start, min(end, len(chars))):
                chars[i] = " "
        return "".join(chars)


def tokenize_lines(lines: list[str], language: str) -> list[LineTokens]:
    """Classify comment/string spans over consecutive lines, carrying block state."""
    syntax = _SYNTAX_BY_LANGUAGE.get(language, _UNKNOWN)
    result: list[LineTokens] = []
    state: tuple[str, str] | None = None  # (kind, closing delimiter)

    for text in lines:
        spans: list[tuple[int, int, str]] = []
        span_start = 0
        i = 0
        n = len(text)
        while i < n:
            if state is None:
                if any(text.startswith(tok, i) for tok in syntax.line_comments):
                    spans.append((i, n, COMMENT))
                    i = n
                    break
                block = next((b for b in syntax.block_comments if text.startswith(b[0], i)), None)
                if block is not None:
                    state = (COMMENT, block[1])
                    span_start = i
                    i += len(block[0])
                    continue
                delim = next((d for d in syntax.string_delims if text.startswith(d, i)), None)
                if delim is not None:
                    state = (STRING, delim)
                    span_start = i
                    i += len(delim)
                    continue
                i += 1
                continue

            kind, closing = state
            if kind == STRING and text[i] == "\\":
                i += 2
                continue
            if text.startswith(closing, i):
                i += len(closing)
                spans.append((span_start, i, kind))
                state = None
                continue
            i += 1

        if state is not None:
            spans.append((span_start, n, state[0]))
            if state[0] == STRING and state[1] not in syntax.multiline_delims:
                # Unterminated single-line string: recover at end of line
                state = None
        result.append(LineTokens(text=text, spans=tuple(spans)))
    return result


@dataclass(frozen=True)
class ViewLine:
    """A right-side line of a unit with its token spans."""

    lineno: int
    is_added: bool
    tokens: LineTokens

    @property
    def text(self) -> str:
        return self.tokens.text

    @property
    def code(self) -> str:
        return self.tokens.code

    @property
    def indent(self) -> str:
        text = self.tokens.text
        return text[: len(text) - len(text.lstrip())]

    @property
    def is_blank(self) -> bool:
        return not self.code.strip()


@dataclass(frozen=True)
class UnitView:
    """Token/line view over a unit's right side (added + context lines)."""

    unit: ChangeUnit
    lines: tuple[ViewLine, ...]

    @property
    def language(self) -> str:
        return self.unit.language

    def window(self, idx: int, radius: int) -> list[ViewLine]:
        lo = max(0, idx - radius)
        return list(self.lines[lo : idx + radius + 1])


def build_view(unit: ChangeUnit) -> UnitView:
    """Tokenize the right side of a unit. Removed lines never enter the view."""
    right = [dl for dl in unit.lines if dl.type != "remove" and dl.new_lineno is not None]
    tokens = tokenize_lines([dl.content for dl in right], unit.language)
    return UnitView(
        unit=unit,
        lines=tuple(
            ViewLine(lineno=dl.new_lineno, is_added=dl.type == "add", tokens=tok)  # type: ignore[arg-type]
            for dl, tok in zip(right, tokens, strict=True)
        ),
    )
