# SPDX-License-Identifier: MIT
"""Suggestion synthesizer — render rule templates into concrete single-line patches.

Templates are ``str.format`` strings whose fields name capture slots, with two
extra conversions: ``!u`` (upper-case) and ``!l`` (lower-case). Rendering
fails closed: a finding missing any slot gets no suggestion at all.
"""

from __future__ import annotations

import logging
import string
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from riskgate.rules.base import Finding

log = logging.getLogger(__name__)

SUGGESTION_KINDS = frozenset({"replace", "insert_before"})
_CONVERSIONS = {None, "s", "r", "u", "l"}


class SlotFormatter(string.Formatter):
    """Formatter that only resolves named slots and adds ``!u``/``!l`` conversions."""

    def get_value(self, key: int | str, args: Any, kwargs: Mapping[str, Any]) -> Any:
        if isinstance(key, int):
            raise KeyError(key)
        return kwargs[key]

    def convert_field(self, value: Any, conversion: str | None) -> Any:
        if conversion == "u":
            return str(value).upper()
        if conversion == "l":
            return str(value).lower()
        return super().convert_field(value, conversion)


_FORMATTER = SlotFormatter()


def template_slots(template: str) -> tuple[frozenset[str], list[str]]:
    """Return (slot names, problems) for a template without rendering it."""
    slots: set[str] = set()
    problems: list[str] = []
    try:
        parsed = list(_FORMATTER.parse(template))
    except ValueError as exc:
        return frozenset(), [f"unparsable template ({exc})"]
    for _, field_name, format_spec, conversion in parsed:
        if field_name is None:
            continue
        if not field_name.isidentifier():
            problems.append(f"template field {field_name!r} is not a plain slot name")
            continue
        if conversion not in _CONVERSIONS:
            problems.append(f"template field {field_name!r} uses unknown conversion !{conversion}")
        if format_spec and "{" in format_spec:
            problems.append(f"template field {field_name!r} has a nested format spec")
        slots.add(field_name)
    return frozenset(slots), problems


@dataclass(frozen=True)
class SuggestionTemplate:
    kind: str
    template: str
    slots: frozenset[str]
    auto_apply: bool = False


@dataclass(frozen=True)
class Suggestion:
    """A rendered patch: ``replacement`` replaces right-side line ``line``."""

    rule_id: str
    file: str
    line: int
    kind: str
    original: str
    replacement: str
    auto_apply: bool

    def sort_key(self) -> tuple[str, int, str]:
        return (self.file, self.line, self.rule_id)


class SuggestionSynthesizer:
    """Renders suggestions for findings whose rule carries a template."""

    def render(
        self, finding: Finding, template: SuggestionTemplate, *, auto_apply: bool
    ) -> Suggestion | None:
        values = finding.captures
        missing = sorted(slot for slot in template.slots if values.get(slot) is None)
        if missing:
            log.debug(
                "No suggestion for %s at %s:%d: missing slot(s) %s",
                finding.rule_id,
                finding.file,
                finding.line_start,
                ", ".join(missing),
            )
            return None
        try:
            rendered = _FORMATTER.vformat(template.template, (), values)
        except (KeyError, ValueError) as exc:
            log.debug("Template for %s failed to render: %s", finding.rule_id, exc)
            return None

        original = values.get("line", finding.evidence)
        if template.kind == "insert_before":
            replacement = f"{rendered}\n{original}"
        else:
            replacement = rendered
        return Suggestion(
            rule_id=finding.rule_id,
            file=finding.file,
            line=finding.line_start,
            kind=template.kind,
            original=original,
            replacement=replacement,
            auto_apply=auto_apply,
        )
