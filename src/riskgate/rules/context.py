# SPDX-License-Identifier: MIT
"""Diff segmenter and scan context — a unified diff as ordered, immutable change units."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from riskgate.rules.base import DiffParseError

if TYPE_CHECKING:
    from riskgate.rules.config import ProfileConfig

UNKNOWN_LANGUAGE = "unknown"

_LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".swift": "swift",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".rb": "ruby",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".php": "php",
    ".sh": "shell",
    ".bash": "shell",
    ".yml": "yaml",
    ".yaml": "yaml",
}


def detect_language(path: str) -> str:
    """Map a file path to a language name by extension, falling back to ``unknown``."""
    name = path.rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot <= 0:
        return UNKNOWN_LANGUAGE
    return _LANGUAGE_BY_EXTENSION.get(name[dot:].lower(), UNKNOWN_LANGUAGE)


@dataclass(frozen=True)
class DiffLine:
    """A single line within a diff hunk."""

    type: str  # "add" | "remove" | "context"
    content: str  # Line content without +/- prefix
    old_lineno: int | None  # Left-side line number
    new_lineno: int | None  # Right-side line number


@dataclass(frozen=True)
class ChangeUnit:
    """One contiguous hunk of a changed file — the atomic unit the detector evaluates."""

    index: int
    path: str
    language: str
    hunk_index: int
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: tuple[DiffLine, ...]
    scope: str | None = None

    @property
    def new_range(self) -> tuple[int, int]:
        """Inclusive right-side line range covered by this unit."""
        if self.new_count == 0:
            return (self.new_start, self.new_start)
        return (self.new_start, self.new_start + self.new_count - 1)

    def contains(self, line_start: int, line_end: int) -> bool:
        lo, hi = self.new_range
        return lo <= line_start <= line_end <= hi

    def new_side(self) -> list[DiffLine]:
        """Added and context lines, in order — the right-hand view of the hunk."""
        return [dl for dl in self.lines if dl.type != "remove"]

    def added(self) -> list[DiffLine]:
        return [dl for dl in self.lines if dl.type == "add"]

    @property
    def reaches_eof(self) -> bool:
        """True when the unit's right side runs to the end of the file.

        New files are whole-file hunks. Otherwise a hunk at the end of a file
        shows less trailing context than leading context, since there is
        nothing left to show.
        """
        if self.old_start == 0 and self.old_count == 0:
            return True
        leading = 0
        for dl in self.lines:
            if dl.type != "context":
                break
            leading += 1
        trailing = 0
        for dl in reversed(self.lines):
            if dl.type != "context":
                break
            trailing += 1
        return trailing < leading


@dataclass(frozen=True)
class ChangedFile:
    """A file that was changed in the diff, with its hunks as change units."""

    path: str
    language: str
    units: tuple[ChangeUnit, ...]
    is_new: bool = False
    is_deleted: bool = False
    is_renamed: bool = False
    is_binary: bool = False
    rename_from: str | None = None


@dataclass(frozen=True)
class ScanContext:
    """Per-scan context handed to conditional-blocking predicates."""

    files: tuple[ChangedFile, ...]
    config: ProfileConfig
    repo_files: frozenset[str] = field(default_factory=frozenset)

    @property
    def files_changed(self) -> list[str]:
        """Return list of changed file paths."""
        return [f.path for f in self.files]

    def unit(self, index: int) -> ChangeUnit | None:
        for f in self.files:
            for unit in f.units:
                if unit.index == index:
                    return unit
        return None

    def known_paths(self) -> frozenset[str]:
        """Paths visible to the scan: changed files plus any caller-supplied listing."""
        return frozenset(self.files_changed) | self.repo_files


# --- Diff parser ---

_FILE_HEADER_RE = re.compile(r"^diff --git a/(.+) b/(.+)$")
_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")
_RENAME_FROM_RE = re.compile(r"^rename from (.+)$")
_RENAME_TO_RE = re.compile(r"^rename to (.+)$")
_SCOPE_RE = re.compile(
    r"\b(?:async\s+def|def|class|func|function|fn|fun|interface|struct|impl)\s+([A-Za-z_$][\w$]*)"
)
_IGNORED_METADATA = (
    "index ",
    "old mode",
    "new mode",
    "copy from",
    "copy to",
    "dissimilarity index",
)


def _strip_side_prefix(raw: str) -> str | None:
    """Turn a ``---``/``+++`` header path into a repo path; None for /dev/null."""
    path = raw.split("\t", 1)[0].strip()
    if path == "/dev/null":
        return None
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def _scope_from_section(section: str) -> str | None:
    """Derive the enclosing function/scope name from a hunk header's section heading."""
    section = section.strip()
    if not section:
        return None
    match = _SCOPE_RE.search(section)
    if match:
        return match.group(1)
    return section


class _FileBuilder:
    """Mutable accumulator for one file while the parser walks its hunks."""

    def __init__(self, path: str | None) -> None:
        self.path = path
        self.old_path: str | None = None
        self.hunks: list[tuple[int, int, int, int, str | None, list[DiffLine]]] = []
        self.is_new = False
        self.is_deleted = False
        self.is_renamed = False
        self.is_binary = False
        self.rename_from: str | None = None
        self.seen_old_header = False
        self.seen_new_header = False


def _split_lines(diff_text: str) -> list[str]:
    # str.splitlines() also breaks on form feeds and U+2028, which may legitimately
    # appear inside hunk content.
    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def parse_diff(diff_text: str) -> list[ChangedFile]:
    """Parse a unified diff into ChangedFile objects, one ChangeUnit per hunk.

    Accepts git-style diffs (``diff --git`` headers, new/deleted/renamed/binary
    files) and plain unified diffs (``---``/``+++`` headers only).

    Raises:
        DiffParseError: On an unparsable hunk header, a hunk header outside any
            file, a hunk whose body is shorter or longer than its header
            declares, or a body line inside a file block with no open hunk. Nothing is returned for a partially parsable diff.
    """
    if not diff_text.strip():
        return []

    builders: list[_FileBuilder] = []
    current: _FileBuilder | None = None

    # Open hunk state
    hunk_lines: list[DiffLine] = []
    hunk_header: tuple[int, int, int, int, str | None] | None = None
    old_remaining = 0
    new_remaining = 0
    old_line = 0
    new_line = 0

    def _start_file(path: str | None) -> _FileBuilder:
        builder = _FileBuilder(path)
        builders.append(builder)
        return builder

    for lineno, line in enumerate(_split_lines(diff_text), start=1):
        # Inside a hunk whose body is not yet complete
        if hunk_header is not None:
            if line.startswith("\\"):
                # "\ No newline at end of file" — skip, don't increment
                continue
            if line.startswith("+"):
                if new_remaining <= 0:
                    raise DiffParseError("Hunk has more added lines than its header declares", lineno)
                hunk_lines.append(DiffLine("add", line[1:], None, new_line))
                new_line += 1
                new_remaining -= 1
            elif line.startswith("-"):
                if old_remaining <= 0:
                    raise DiffParseError(
                        "Hunk has more removed lines than its header declares", lineno
                    )
                hunk_lines.append(DiffLine("remove", line[1:], old_line, None))
                old_line += 1
                old_remaining -= 1
            elif line.startswith(" ") or line == "":
                # Some tools strip the single space off blank context lines
                if old_remaining <= 0 or new_remaining <= 0:
                    raise DiffParseError(
                        "Hunk has more context lines than its header declares", lineno
                    )
                hunk_lines.append(DiffLine("context", line[1:], old_line, new_line))
                old_line += 1
                new_line += 1
                old_remaining -= 1
                new_remaining -= 1
            else:
                raise DiffParseError(
                    f"Truncated hunk: expected {old_remaining} old / {new_remaining} new "
                    "more line(s)",
                    lineno,
                )
            if old_remaining == 0 and new_remaining == 0:
                if current is None:
                    raise DiffParseError("Hunk closed outside any file", lineno)
                current.hunks.append((*hunk_header, list(hunk_lines)))
                hunk_header = None
                hunk_lines = []
            continue

        if line.startswith("\\"):
            continue

        # File header
        if line.startswith("diff --git "):
            file_match = _FILE_HEADER_RE.match(line)
            if not file_match:
                raise DiffParseError("Unparsable file header", lineno)
            current = _start_file(file_match.group(2))
            current.old_path = file_match.group(1)
            continue

        if line.startswith("@@"):
            hunk_match = _HUNK_HEADER_RE.match(line)
            if not hunk_match:
                raise DiffParseError("Unparsable hunk header", lineno)
            if current is None or current.path is None:
                raise DiffParseError("Hunk header before any file header", lineno)
            old_start = int(hunk_match.group(1))
            old_count = int(hunk_match.group(2) if hunk_match.group(2) is not None else "1")
            new_start = int(hunk_match.group(3))
            new_count = int(hunk_match.group(4) if hunk_match.group(4) is not None else "1")
            if old_count == 0 and new_count == 0:
                raise DiffParseError("Empty hunk", lineno)
            hunk_header = (
                old_start,
                old_count,
                new_start,
                new_count,
                _scope_from_section(hunk_match.group(5)),
            )
            old_remaining = old_count
            new_remaining = new_count
            old_line = old_start
            new_line = new_start
            continue

        if line.startswith("--- "):
            # A second "---" (or one with no git header) opens a plain-diff file
            if current is None or current.seen_old_header or current.hunks:
                current = _start_file(None)
            current.seen_old_header = True
            old_path = _strip_side_prefix(line[4:])
            if old_path is None:
                current.is_new = True
            else:
                current.old_path = old_path
                if current.path is None:
                    current.path = old_path
            continue

        if line.startswith("+++ ") and current is not None and not current.seen_new_header:
            current.seen_new_header = True
            new_path = _strip_side_prefix(line[4:])
            if new_path is None:
                current.is_deleted = True
            else:
                current.path = new_path
            continue

        if current is None:
            # Preamble (commit message, mail headers) before the first file
            continue

        if line in ("-- ", "--"):
            # format-patch signature; whatever follows belongs to no file
            current = None
            continue

        if line.startswith(("+", "-", " ")):
            if current.hunks:
                raise DiffParseError("Hunk has more lines than its header declares", lineno)
            raise DiffParseError("Diff body line outside any hunk", lineno)

        if line.startswith("new file"):
            current.is_new = True
        elif line.startswith("deleted file"):
            current.is_deleted = True
        elif line.startswith("similarity index"):
            current.is_renamed = True
        elif rename_from_match := _RENAME_FROM_RE.match(line):
            current.rename_from = rename_from_match.group(1)
            current.is_renamed = True
        elif _RENAME_TO_RE.match(line):
            pass
        elif line.startswith("Binary files") or line.startswith("GIT binary patch"):
            current.is_binary = True
        elif line.startswith(_IGNORED_METADATA) or not line.strip():
            pass
        # Other non-diff text between files carries no changes

    if hunk_header is not None:
        raise DiffParseError(
            f"Truncated hunk at end of diff: expected {old_remaining} old / "
            f"{new_remaining} new more line(s)"
        )

    return _build_files(builders)


def _build_files(builders: list[_FileBuilder]) -> list[ChangedFile]:
    files: list[ChangedFile] = []
    unit_index = 0
    for builder in builders:
        if builder.path is None:
            continue
        language = detect_language(builder.path)
        units: list[ChangeUnit] = []
        for hunk_index, (old_start, old_count, new_start, new_count, scope, lines) in enumerate(
            builder.hunks
        ):
            units.append(
                ChangeUnit(
                    index=unit_index,
                    path=builder.path,
                    language=language,
                    hunk_index=hunk_index,
                    old_start=old_start,
                    old_count=old_count,
                    new_start=new_start,
                    new_count=new_count,
                    lines=tuple(lines),
                    scope=scope,
                )
            )
            unit_index += 1
        files.append(
            ChangedFile(
                path=builder.path,
                language=language,
                units=tuple(units),
                is_new=builder.is_new,
                is_deleted=builder.is_deleted,
                is_renamed=builder.is_renamed,
                is_binary=builder.is_binary,
                rename_from=builder.rename_from,
            )
        )
    return files


def segment_diff(diff_text: str) -> list[ChangeUnit]:
    """Parse a diff and return its change units in file order, then hunk order."""
    return [unit for f in parse_diff(diff_text) for unit in f.units]
