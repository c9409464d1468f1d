# SPDX-License-Identifier: MIT
"""Tests for riskgate.rules.engine — matcher evaluation, isolation, cancellation, fan-out."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import replace
from typing import Any

import pytest

from riskgate.rules import run_rules
from riskgate.rules.base import DiagnosticKind, Finding, FindingState, MatcherKind, ScanCancelledError
from riskgate.rules.config import PROFILES
from riskgate.rules.context import segment_diff
from riskgate.rules.corpus import load_corpus, load_default_corpus
from riskgate.rules.engine import CancellationToken, DetectorEngine
from riskgate.rules.registry import STRUCTURAL_PREDICATES, register_structural
from riskgate.rules.structural import StructuralMatch
from riskgate.rules.tokens import UnitView, build_view

_STANDARD = PROFILES["standard"]


def _new_file(path: str, lines: list[str]) -> str:
    body = "".join(f"+{line}\n" for line in lines)
    return (
        f"diff --git a/{path} b/{path}\nnew file mode 100644\n--- /dev/null\n+++ b/{path}\n"
        f"@@ -0,0 +1,{len(lines)} @@\n{body}"
    )


def _findings(diff: str, rule_id: str | None = None) -> list[Finding]:
    engine = DetectorEngine(load_default_corpus(), _STANDARD)
    results = engine.run(segment_diff(diff))
    found = [f for r in results for f in r.findings]
    if rule_id is not None:
        found = [f for f in found if f.rule_id == rule_id]
    return found


class TestDefaultRules:
    def test_assumption_in_code(self) -> None:
        (finding,) = _findings(_new_file("a.py", ["if assumed:", "    go()"]), "A1")
        assert finding.confidence == 1.0
        assert finding.line_start == 1
        assert finding.evidence == "if assumed:"

    def test_assumption_in_comment_has_reduced_confidence(self) -> None:
        (finding,) = _findings(_new_file("a.py", ["x = 1  # we assume x is positive"]), "A1")
        assert finding.confidence == _STANDARD.reduced_confidence

    def test_removed_lines_never_trigger(self) -> None:
        diff = (
            "diff --git a/a.py b/a.py\n--- a/a.py\n+++ b/a.py\n"
            "@@ -1,3 +1,3 @@\n try:\n-except:\n+except ValueError:\n     pass\n"
        )
        assert _findings(diff, "A5") == []

    def test_context_lines_never_anchor(self) -> None:
        diff = (
            "diff --git a/a.py b/a.py\n--- a/a.py\n+++ b/a.py\n"
            "@@ -1,2 +1,2 @@\n print(x)\n-y = 1\n+y = 2\n"
        )
        assert _findings(diff, "B2") == []

    def test_blanket_except(self) -> None:
        found = _findings(_new_file("a.py", ["try:", "    go()", "except Exception:", "    pass"]), "A5")
        assert [f.line_start for f in found] == [3]

    def test_gather_without_return_exceptions(self) -> None:
        (finding,) = _findings(_new_file("a.py", ["    results = await asyncio.gather(a(), b())"]), "A4")
        assert finding.rule_class == "A"

    def test_negated_matcher_within_window_suppresses(self) -> None:
        lines = ["    results = await asyncio.gather(", "        a(), b(),", "        return_exceptions=True,", "    )"]
        assert _findings(_new_file("a.py", lines), "A4") == []

    def test_negated_matcher_outside_window_does_not_suppress(self) -> None:
        lines = ["results = await asyncio.gather(a(), b())", "x = 1", "y = 2", "z = 3", "# return_exceptions"]
        assert len(_findings(_new_file("a.py", lines), "A4")) == 1

    def test_magic_number_captures(self) -> None:
        (finding,) = _findings(_new_file("a.py", ["def f():", "    timeout = 3000"]), "B1")
        assert finding.captures["indent"] == "    "
        assert finding.captures["name"] == "timeout"
        assert finding.captures["value"] == "3000"

    def test_magic_number_next_to_constant(self) -> None:
        assert _findings(_new_file("a.py", ["TIMEOUT = 3000", "timeout = 3000"]), "B1") == []

    def test_lost_traceback_requires_except_context(self) -> None:
        inside = ["try:", "    run()", "except OSError:", "    log.error('failed: %s', path)"]
        (finding,) = _findings(_new_file("a.py", inside), "B5")
        assert finding.captures["prefix"] == "log"
        assert finding.captures["args"] == "'failed: %s', path"
        outside = ["def f():", "    log.error('failed')"]
        assert _findings(_new_file("a.py", outside), "B5") == []

    def test_lost_traceback_with_exc_info(self) -> None:
        lines = ["try:", "    run()", "except OSError:", "    log.error('failed', exc_info=True)"]
        assert _findings(_new_file("a.py", lines), "B5") == []

    def test_language_filter(self) -> None:
        # print() is a Python rule; "any" rules still run on JavaScript
        found = _findings(_new_file("a.js", ["print(x)  // TODO tidy"]))
        assert {f.rule_id for f in found} == {"B4"}

    def test_ownerless_todo_is_full_confidence_in_a_comment(self) -> None:
        (finding,) = _findings(_new_file("a.py", ["x = 1  # TODO tidy"]), "B4")
        assert finding.confidence == 1.0

    def test_incomplete_branch_chain(self) -> None:
        lines = ["if a:", "    x()", "elif b:", "    y()", "z()"]
        (finding,) = _findings(_new_file("a.py", lines), "A3")
        assert (finding.line_start, finding.line_end) == (1, 4)
        assert finding.captures["keyword"] == "if"

    def test_incomplete_branch_chain_at_end_of_file(self) -> None:
        lines = ["if x == 1:", "    a()", "elif x == 2:", "    b()"]
        (finding,) = _findings(_new_file("a.py", lines), "A3")
        assert (finding.line_start, finding.line_end) == (1, 4)

    def test_global_rebinding(self) -> None:
        (finding,) = _findings(_new_file("a.py", ["def reset():", "    global cache", "    cache = {}"]), "A2")
        assert finding.captures["name"] == "cache"
        # Module-level "global" statements are not indented and never match
        assert _findings(_new_file("a.py", ["global cache"]), "A2") == []

    def test_long_function(self) -> None:
        lines = ["def pipeline():", *[f"    step{i}()" for i in range(55)]]
        (finding,) = _findings(_new_file("src/jobs.py", lines), "A6")
        assert finding.captures == {
            "name": "pipeline",
            "length": "55",
            "match": "def pipeline():",
            "line": "def pipeline():",
            "indent": "",
        }
        assert (finding.line_start, finding.line_end) == (1, 56)

    def test_new_public_function(self) -> None:
        lines = ["def charge(card):", "    return card", "def _helper():", "    pass"]
        found = _findings(_new_file("src/billing.py", lines), "B3")
        assert [f.captures["name"] for f in found] == ["charge"]
        found = _findings(_new_file("web/cart.ts", ["export async function checkout(cart) {", "}"]), "B3")
        assert [f.captures["name"] for f in found] == ["checkout"]

    def test_findings_stay_inside_unit(self) -> None:
        lines = ["def f():", *[f"    v{i} = {i}" for i in range(60)]]
        for finding in _findings(_new_file("a.py", lines)):
            assert 1 <= finding.line_start <= finding.line_end <= len(lines)


def _explode(view: UnitView, args: Mapping[str, Any]) -> list[StructuralMatch]:
    raise RuntimeError("boom")


def _out_of_range(view: UnitView, args: Mapping[str, Any]) -> list[StructuralMatch]:
    return [StructuralMatch(900, 901, {})]


@pytest.fixture
def broken_predicates() -> Iterator[None]:
    register_structural("explode", _explode)
    register_structural("out_of_range", _out_of_range)
    try:
        yield
    finally:
        del STRUCTURAL_PREDICATES["explode"]
        del STRUCTURAL_PREDICATES["out_of_range"]


def _corpus_with(pattern: str) -> str:
    return (
        'version = "1"\n'
        f'[[rules]]\nid = "X1"\nclass = "A"\nblocking = "always"\n'
        f'[[rules.matchers]]\nkind = "structural"\npattern = "{pattern}"\n'
        '[[rules]]\nid = "X2"\nclass = "B"\nblocking = "always"\n'
        '[[rules.matchers]]\nkind = "literal"\npattern = "print("\n'
    )


@pytest.mark.usefixtures("broken_predicates")
class TestRuleIsolation:
    @pytest.mark.parametrize(
        ("pattern", "detail"),
        [("explode", "RuntimeError: boom"), ("out_of_range", "outside the unit")],
    )
    def test_failing_rule_becomes_diagnostic(self, pattern: str, detail: str) -> None:
        engine = DetectorEngine(load_corpus(_corpus_with(pattern)), _STANDARD)
        (result,) = engine.run(segment_diff(_new_file("a.py", ["print(x)"])))
        # The healthy rule still reports
        assert [f.rule_id for f in result.findings] == ["X2"]
        (diag,) = result.diagnostics
        assert diag.kind == DiagnosticKind.RULE_ERROR
        assert diag.rule_id == "X1"
        assert diag.file == "a.py"
        assert detail in diag.detail

    def test_uncompiled_regex_matcher_is_rejected(self) -> None:
        corpus = load_corpus(_corpus_with("explode"))
        engine = DetectorEngine(corpus, _STANDARD)
        rule = corpus.get("X2")
        assert rule is not None
        broken = replace(
            rule, matchers=(replace(rule.anchor, kind=MatcherKind.REGEX, regex=None),)
        )
        (unit,) = segment_diff(_new_file("a.py", ["print(x)"]))
        with pytest.raises(ValueError, match="not compiled"):
            engine.evaluate(broken, build_view(unit))


class TestCancellation:
    def test_cancelled_before_start(self) -> None:
        token = CancellationToken()
        token.cancel()
        assert token.cancelled
        engine = DetectorEngine(load_default_corpus(), _STANDARD)
        with pytest.raises(ScanCancelledError):
            engine.run(segment_diff(_new_file("a.py", ["print(x)"])), token)

    def test_cancelled_in_parallel_run(self) -> None:
        token = CancellationToken()
        token.cancel()
        diff = "".join(_new_file(f"m{i}.py", ["print(x)"]) for i in range(6))
        engine = DetectorEngine(load_default_corpus(), replace(_STANDARD, max_workers=3))
        with pytest.raises(ScanCancelledError):
            engine.run(segment_diff(diff), token)

    def test_uncancelled_token_is_inert(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        engine = DetectorEngine(load_default_corpus(), _STANDARD)
        assert engine.run([], token) == []


class TestParallelFanOut:
    def test_parallel_matches_serial(self) -> None:
        diff = "".join(
            _new_file(f"pkg/mod{i}.py", ["def f():", f"    limit = {1000 + i}", "    print(limit)"])
            for i in range(12)
        )
        units = segment_diff(diff)
        serial = DetectorEngine(load_default_corpus(), replace(_STANDARD, max_workers=1)).run(units)
        parallel = DetectorEngine(load_default_corpus(), replace(_STANDARD, max_workers=4)).run(units)
        assert serial == parallel
        assert [r.unit_index for r in parallel] == [u.index for u in units]


class TestRunRules:
    def test_partitions_active_and_suppressed(self) -> None:
        lines = ["try:", "    go()", "# RISK-ACCEPT(A5): legacy importer", "except:", "    pass", "print(x)"]
        found = run_rules(_new_file("a.py", lines), _STANDARD)
        (accepted,) = [f for f in found if f.rule_id == "A5"]
        assert accepted.state == FindingState.SUPPRESSED
        assert accepted.exemption_id == "a.py:3:A5"
        assert accepted.justification == "legacy importer"
        (printed,) = [f for f in found if f.rule_id == "B2"]
        assert printed.state == FindingState.ACTIVE

    def test_empty_diff(self) -> None:
        assert run_rules("", _STANDARD) == []
