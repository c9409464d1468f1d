# SPDX-License-Identifier: MIT
"""Tests for riskgate.rules.registry — pluggable structural and condition predicates."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any

import pytest

from riskgate.rules.base import Finding, RuleCorpusError
from riskgate.rules.config import PROFILES
from riskgate.rules.context import ScanContext, segment_diff
from riskgate.rules.corpus import load_corpus
from riskgate.rules.engine import DetectorEngine
from riskgate.rules.registry import (
    CONDITION_PREDICATES,
    STRUCTURAL_PREDICATES,
    register_condition,
    register_structural,
)
from riskgate.rules.structural import StructuralMatch
from riskgate.rules.tokens import UnitView


def _first_added(view: UnitView, args: Mapping[str, Any]) -> list[StructuralMatch]:
    for line in view.lines:
        if line.is_added:
            return [StructuralMatch(line.lineno, line.lineno, {"word": line.text.split()[0]})]
    return []


def _always(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    return True


@pytest.fixture
def custom_predicates() -> Iterator[None]:
    register_structural("first_added", _first_added, slots={"word"})
    register_condition("always_true", _always)
    try:
        yield
    finally:
        del STRUCTURAL_PREDICATES["first_added"]
        del CONDITION_PREDICATES["always_true"]


class TestBuiltins:
    def test_builtin_structural_predicates(self) -> None:
        assert STRUCTURAL_PREDICATES["incomplete_branches"].slots == {"keyword", "condition"}
        assert STRUCTURAL_PREDICATES["long_scope"].slots == {"name", "length"}

    def test_builtin_condition_predicates(self) -> None:
        assert set(CONDITION_PREDICATES) == {
            "path_glob",
            "critical_path",
            "touched_type",
            "has_test_file",
            "missing_test_file",
            "untested_critical_path",
            "non_test_path",
        }


class TestRegistration:
    def test_duplicate_structural_rejected(self) -> None:
        with pytest.raises(ValueError, match="already registered"):
            register_structural("long_scope", _first_added)

    def test_duplicate_condition_rejected(self) -> None:
        with pytest.raises(ValueError, match="already registered"):
            register_condition("critical_path", _always)

    def test_unregistered_predicate_fails_corpus_load(self) -> None:
        source = (
            'version = "1"\n[[rules]]\nid = "X1"\nclass = "B"\nblocking = "conditional:always_true"\n'
            '[[rules.matchers]]\nkind = "structural"\npattern = "first_added"\n'
        )
        with pytest.raises(RuleCorpusError) as exc_info:
            load_corpus(source)
        assert len(exc_info.value.errors) == 2

    @pytest.mark.usefixtures("custom_predicates")
    def test_registered_predicates_usable_by_corpus(self) -> None:
        source = (
            'version = "1"\n[[rules]]\nid = "X1"\nclass = "B"\nblocking = "conditional:always_true"\n'
            '[[rules.matchers]]\nkind = "structural"\npattern = "first_added"\n'
            '[rules.suggestion]\ntemplate = "{word!u}"\n'
        )
        corpus = load_corpus(source)
        diff = "diff --git a/a.py b/a.py\n--- a/a.py\n+++ b/a.py\n@@ -1 +1 @@\n-old\n+hello world\n"
        (result,) = DetectorEngine(corpus, PROFILES["standard"]).run(segment_diff(diff))
        (finding,) = result.findings
        assert finding.captures["word"] == "hello"
