# SPDX-License-Identifier: MIT
"""Structural predicates — bounded look-ahead checks over a unit's token/line view.

Each predicate only looks at the rest of the current scope inside the unit.
When the scope does not close inside the visible lines the outcome is
undecidable and the predicate stays silent, unless the unit runs to the end
of the file, where every open scope closes.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from riskgate.rules.tokens import INDENT_LANGUAGES, UnitView, ViewLine

DEFAULT_LOOKAHEAD = 200


@dataclass(frozen=True)
class StructuralMatch:
    """A predicate hit spanning one or more right-side lines."""

    line_start: int
    line_end: int
    captures: dict[str, str] = field(default_factory=dict)


def _indent_width(line: ViewLine) -> int:
    return len(line.indent.expandtabs(4))


def _span_text(line: ViewLine, match: re.Match[str], group: str) -> str:
    """Slice the raw text at a group's offsets (the regex ran on the blanked code)."""
    return line.text[match.start(group) : match.end(group)].strip()


def _closes_at_eof(view: UnitView, stop: int) -> bool:
    """True when a walk that stopped at ``stop`` ran off the end of the file."""
    return stop >= len(view.lines) and view.unit.reaches_eof


# --- incomplete_branches ---

_PY_IF_RE = re.compile(r"^\s*if\b(?P<cond>.*?):")
_PY_ELIF_RE = re.compile(r"^elif\b")
_PY_ELSE_RE = re.compile(r"^else\s*:")
_PY_MATCH_RE = re.compile(r"^\s*match\s+(?P<cond>.+?):\s*$")
_PY_WILDCARD_RE = re.compile(r"^case\s+_\s*:")

_BRACE_IF_RE = re.compile(r"^\s*if\b(?P<cond>[^{]*)\{")
_BRACE_SWITCH_RE = re.compile(r"^\s*(?P<keyword>switch|when)\b(?P<cond>[^{]*)\{")
_BRACE_DEFAULT_RE = re.compile(r"(?:\bdefault\b\s*:|\bdefault\s*->|\belse\s*->)")


def _python_if_chain(
    view: UnitView, start: int, min_branches: int, limit: int
) -> StructuralMatch | None:
    first = view.lines[start]
    match = _PY_IF_RE.match(first.code)
    if match is None:
        return None
    base = _indent_width(first)
    branches = 1
    last = start
    stop = min(len(view.lines), start + 1 + limit)
    for j in range(start + 1, stop):
        line = view.lines[j]
        if line.is_blank:
            continue
        width = _indent_width(line)
        if width > base:
            last = j
            continue
        stripped = line.code.strip()
        if width == base and _PY_ELIF_RE.match(stripped):
            branches += 1
            last = j
            continue
        if width == base and _PY_ELSE_RE.match(stripped):
            return None
        break
    else:
        if not _closes_at_eof(view, stop):
            return None
    if branches < min_branches:
        return None
    return StructuralMatch(
        line_start=first.lineno,
        line_end=view.lines[last].lineno,
        captures={"keyword": "if", "condition": _span_text(first, match, "cond")},
    )


def _python_match_block(view: UnitView, start: int, limit: int) -> StructuralMatch | None:
    first = view.lines[start]
    match = _PY_MATCH_RE.match(first.code)
    if match is None:
        return None
    base = _indent_width(first)
    last = start
    stop = min(len(view.lines), start + 1 + limit)
    for j in range(start + 1, stop):
        line = view.lines[j]
        if line.is_blank:
            continue
        if _indent_width(line) > base:
            if _PY_WILDCARD_RE.match(line.code.strip()):
                return None
            last = j
            continue
        break
    else:
        if not _closes_at_eof(view, stop):
            return None
    if last == start:
        # "match" used as a plain name, not a statement with a body
        return None
    return StructuralMatch(
        line_start=first.lineno,
        line_end=view.lines[last].lineno,
        captures={"keyword": "match", "condition": _span_text(first, match, "cond")},
    )


def _walk_braces(view: UnitView, start: int, col: int, limit: int) -> tuple[int, int] | None:
    """Find the brace closing the first block opened at/after (start, col).

    Returns (line index, column after the closing brace), or None when the
    block does not close inside the visible lines.
    """
    depth = 0
    opened = False
    for j in range(start, min(len(view.lines), start + limit)):
        code = view.lines[j].code
        k = col if j == start else 0
        while k < len(code):
            ch = code[k]
            if ch == "{":
                depth += 1
                opened = True
            elif ch == "}" and opened:
                depth -= 1
                if depth == 0:
                    return j, k + 1
            k += 1
    return None


def _brace_if_chain(
    view: UnitView, start: int, min_branches: int, limit: int
) -> StructuralMatch | None:
    first = view.lines[start]
    match = _BRACE_IF_RE.match(first.code)
    if match is None:
        return None
    branches = 1
    j, col = start, match.start("cond")
    while True:
        closed = _walk_braces(view, j, col, limit - (j - start))
        if closed is None:
            return None
        j, col = closed
        # Look for a continuation after the closing brace
        rest = view.lines[j].code[col:].strip()
        k = j
        while not rest:
            k += 1
            if k - start >= limit:
                return None
            if k >= len(view.lines):
                if not view.unit.reaches_eof:
                    return None
                break
            rest = view.lines[k].code.strip()
        if re.match(r"^else\s+if\b", rest):
            branches += 1
            if k != j:
                j, col = k, 0
            continue
        if rest.startswith("else"):
            return None
        if branches < min_branches:
            return None
        return StructuralMatch(
            line_start=first.lineno,
            line_end=view.lines[j].lineno,
            captures={"keyword": "if", "condition": _span_text(first, match, "cond")},
        )


def _brace_switch(view: UnitView, start: int, limit: int) -> StructuralMatch | None:
    first = view.lines[start]
    match = _BRACE_SWITCH_RE.match(first.code)
    if match is None:
        return None
    closed = _walk_braces(view, start, match.start("cond"), limit)
    if closed is None:
        return None
    end, _ = closed
    for j in range(start, end + 1):
        if _BRACE_DEFAULT_RE.search(view.lines[j].code):
            return None
    return StructuralMatch(
        line_start=first.lineno,
        line_end=view.lines[end].lineno,
        captures={
            "keyword": match.group("keyword"),
            "condition": _span_text(first, match, "cond"),
        },
    )


def incomplete_branches(view: UnitView, args: Mapping[str, Any]) -> list[StructuralMatch]:
    """Added ``if`` chains without a final ``else`` and switch/match blocks without ``default``.

    ``min_branches`` (default 2) is the number of branches an if-chain needs
    before a missing ``else`` counts; ``max_lookahead`` bounds the scope walk.
    """
    min_branches = int(args.get("min_branches", 2))
    limit = int(args.get("max_lookahead", DEFAULT_LOOKAHEAD))
    indent_based = view.language in INDENT_LANGUAGES
    results: list[StructuralMatch] = []
    for i, line in enumerate(view.lines):
        if not line.is_added:
            continue
        if indent_based:
            hit = _python_if_chain(view, i, min_branches, limit) or _python_match_block(
                view, i, limit
            )
        else:
            hit = _brace_if_chain(view, i, min_branches, limit) or _brace_switch(view, i, limit)
        if hit is not None:
            results.append(hit)
    return results


# --- long_scope ---

_PY_DEF_RE = re.compile(r"^\s*(?:async\s+)?def\s+(?P<name>\w+)")
_BRACE_DEF_RE = re.compile(r"\b(?:func|function|fun|fn)\s+(?P<name>[A-Za-z_$][\w$]*)")


def long_scope(view: UnitView, args: Mapping[str, Any]) -> list[StructuralMatch]:
    """Added function definitions whose visible body exceeds ``max_lines`` (default 50)."""
    max_lines = int(args.get("max_lines", 50))
    indent_based = view.language in INDENT_LANGUAGES
    results: list[StructuralMatch] = []
    for i, line in enumerate(view.lines):
        if not line.is_added:
            continue
        if indent_based:
            match = _PY_DEF_RE.match(line.code)
            if match is None:
                continue
            base = _indent_width(line)
            body = 0
            last = i
            for j in range(i + 1, len(view.lines)):
                candidate = view.lines[j]
                if candidate.is_blank:
                    continue
                if _indent_width(candidate) <= base:
                    break
                body += 1
                last = j
        else:
            match = _BRACE_DEF_RE.search(line.code)
            if match is None or "{" not in line.code[match.end() :]:
                continue
            closed = _walk_braces(view, i, match.end(), len(view.lines))
            last = closed[0] if closed is not None else len(view.lines) - 1
            body = sum(1 for j in range(i + 1, last + 1) if not view.lines[j].is_blank)
            if closed is not None:
                # Closing brace line is not body
                body = max(0, body - 1)
        if body > max_lines:
            results.append(
                StructuralMatch(
                    line_start=line.lineno,
                    line_end=view.lines[last].lineno,
                    captures={"name": _span_text(line, match, "name"), "length": str(body)},
                )
            )
    return results
