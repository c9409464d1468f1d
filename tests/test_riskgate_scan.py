# SPDX-License-Identifier: MIT
"""Tests for riskgate.scan — end-to-end pipeline, gate scenarios, and the CI entry point."""

from __future__ import annotations

import io
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from riskgate.__main__ import build_parser, cli
from riskgate.rules.base import ConfigurationError, DiffParseError, ScanCancelledError
from riskgate.rules.config import PROFILES, apply_overrides
from riskgate.rules.corpus import CorpusStore, load_corpus, load_default_corpus
from riskgate.rules.engine import CancellationToken
from riskgate.scan import EXIT_BLOCKED, EXIT_FATAL, EXIT_PASSED, main, run_scan, scan_with_corpus
from riskgate.schema import GateDecision, Level

_STANDARD = PROFILES["standard"]


def _file_diff(path: str, lines: list[str]) -> str:
    body = "".join(f"+{line}\n" for line in lines)
    return (
        f"diff --git a/{path} b/{path}\nnew file mode 100644\n--- /dev/null\n+++ b/{path}\n"
        f"@@ -0,0 +1,{len(lines)} @@\n{body}"
    )


_BARE_EXCEPT = ["def load():", "    try:", "        read()", "    except: pass"]
_ACCEPTED_EXCEPT = [
    "def load():",
    "    try:",
    "        read()",
    "    # RISK-ACCEPT(A5): importer must never crash the batch; errors are counted upstream",
    "    except: pass",
]


def _scan(diff: str, **kwargs: Any) -> GateDecision:
    return run_scan(diff, corpus=load_default_corpus(), config=kwargs.pop("config", _STANDARD), **kwargs)


# --- Gate scenarios ---


class TestScenarios:
    def test_magic_number_is_a_non_blocking_suggestion(self) -> None:
        decision = _scan(_file_diff("svc/client.py", ["timeout = 30000"]))
        (finding,) = decision.findings
        assert finding.rule_id == "B1"
        assert finding.level == Level.NON_BLOCKING
        assert finding.suppression == "active"
        assert not decision.blocked
        (suggestion,) = decision.suggestions
        assert suggestion.replacement == "TIMEOUT = 30000\ntimeout = TIMEOUT"
        assert suggestion.auto_apply is True

    def test_bare_except_blocks(self) -> None:
        decision = _scan(_file_diff("svc/loader.py", _BARE_EXCEPT))
        (finding,) = [f for f in decision.findings if f.rule_id == "A5"]
        assert finding.level == Level.BLOCKING
        assert finding.line_start == 4
        assert decision.blocked

    def test_exemption_unblocks_and_records_justification(self) -> None:
        decision = _scan(_file_diff("svc/loader.py", _ACCEPTED_EXCEPT))
        assert not decision.blocked
        assert "A5" not in [f.rule_id for f in decision.findings]
        (suppressed,) = decision.suppressed
        assert suppressed.rule_id == "A5"
        assert suppressed.exemption_id == "svc/loader.py:4:A5"
        assert suppressed.justification.startswith("importer must never crash the batch")
        assert suppressed.suppression == "suppressed:svc/loader.py:4:A5"
        assert decision.diagnostics == ()

    def test_malformed_hunk_anywhere_fails_the_whole_scan(self) -> None:
        rules = "".join(
            f'[[rules]]\nid = "R{i:02d}"\nclass = "B"\nblocking = "always"\n'
            f'[[rules.matchers]]\nkind = "literal"\npattern = "token{i}"\n'
            for i in range(20)
        )
        corpus = load_corpus('version = "1"\n' + rules)
        parts = [_file_diff(f"pkg/m{i}.py", [f"x = {i}"]) for i in range(500)]
        parts[300] = parts[300].replace("@@ -0,0 +1,1 @@", "@@ -0,0 +one @@")
        with pytest.raises(DiffParseError, match="Unparsable hunk header"):
            scan_with_corpus("".join(parts), corpus, _STANDARD)

    def test_overlong_hunk_fails_instead_of_passing(self) -> None:
        diff = (
            "diff --git a/svc/job.py b/svc/job.py\n--- a/svc/job.py\n+++ b/svc/job.py\n"
            "@@ -1,1 +1,1 @@\n-x = 1\n+x = 2\n+try:\n+    go()\n+except:\n+    pass\n"
        )
        with pytest.raises(DiffParseError, match="more lines than its header declares"):
            _scan(diff)


# --- Pipeline behavior ---


class TestPipeline:
    def test_empty_diff_passes(self) -> None:
        decision = _scan("")
        assert not decision.blocked
        assert decision.units_scanned == 0
        assert decision.findings == ()

    def test_deterministic_across_worker_counts(self) -> None:
        diff = "".join(
            _file_diff(f"pkg/m{i}.py", ["def f():", f"    limit = {100 + i}", "    print(limit)"])
            for i in range(16)
        )
        serial = _scan(diff, config=replace(_STANDARD, max_workers=1))
        parallel = _scan(diff, config=replace(_STANDARD, max_workers=8))
        assert serial.to_json() == parallel.to_json()

    def test_binary_and_rename_only_files_are_skipped(self) -> None:
        diff = (
            "diff --git a/logo.png b/logo.png\nBinary files a/logo.png and b/logo.png differ\n"
            "diff --git a/old.py b/new.py\nsimilarity index 100%\nrename from old.py\nrename to new.py\n"
        )
        decision = _scan(diff)
        assert [(d.kind, d.file) for d in decision.diagnostics] == [
            ("skipped-unit", "logo.png"),
            ("skipped-unit", "new.py"),
        ]

    def test_unused_exemption_is_reported_not_fatal(self) -> None:
        decision = _scan(_file_diff("a.py", ["# RISK-ACCEPT(A5): nothing to accept", "x = 1"]))
        (diag,) = decision.diagnostics
        assert diag.kind == "unused-exemption"
        assert not decision.blocked

    def test_active_suggestions_only(self) -> None:
        lines = ["# RISK-ACCEPT(B2): CLI output is the product", "print(result)", "print(other)"]
        decision = _scan(_file_diff("tool.py", lines))
        assert [s.line for s in decision.suggestions] == [3]

    def test_conditional_policy_uses_repo_files(self) -> None:
        config = apply_overrides(_STANDARD, {"critical_paths": ["src/billing/*"]})
        diff = _file_diff("src/billing/charge.py", ["def charge(card):", "    return card"])
        untested = _scan(diff, config=config)
        assert untested.blocked
        assert untested.findings[0].policy == "conditional:untested_critical_path"
        tested = _scan(diff, config=config, repo_files=["tests/test_charge.py"])
        assert not tested.blocked
        assert tested.findings[0].level == Level.ADVISORY

    def test_configuration_gap_is_fatal(self) -> None:
        config = apply_overrides(_STANDARD, {"categories": {"no-such-category": {"blocking": "never"}}})
        with pytest.raises(ConfigurationError):
            _scan(_file_diff("a.py", ["x = 1"]), config=config)

    def test_cancelled_scan_produces_no_decision(self) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ScanCancelledError):
            _scan(_file_diff("a.py", ["x = 1"]), cancel=token)

    def test_store_snapshot_released(self) -> None:
        store = CorpusStore(load_default_corpus())
        decision = run_scan(_file_diff("a.py", ["print(x)"]), config=_STANDARD, store=store)
        assert decision.corpus_version == load_default_corpus().version
        assert store.in_flight() == 0


# --- CLI ---


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for var in ("RISKGATE_PROFILE", "RISKGATE_CONFIG", "RISKGATE_CORPUS", "RISKGATE_MAX_WORKERS"):
        monkeypatch.delenv(var, raising=False)
    output = tmp_path / "github_output"
    monkeypatch.setenv("GITHUB_OUTPUT", str(output))
    return output


def _write(tmp_path: Path, name: str, text: str) -> str:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


@pytest.mark.usefixtures("cli_env")
class TestMain:
    def _exit_code(self, **kwargs: Any) -> int:
        with pytest.raises(SystemExit) as exc_info:
            main(**kwargs)
        return int(exc_info.value.code)

    def test_passed(self, tmp_path: Path, cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", ["timeout = 30000"]))
        assert self._exit_code(diff=diff) == EXIT_PASSED
        out = capsys.readouterr().out
        assert "riskgate — PASSED" in out
        outputs = cli_env.read_text()
        assert "blocked=false\n" in outputs
        assert "findings-count=1\n" in outputs
        assert "suggestions-count=1\n" in outputs

    def test_blocked(self, tmp_path: Path, cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", _BARE_EXCEPT))
        assert self._exit_code(diff=diff) == EXIT_BLOCKED
        captured = capsys.readouterr()
        assert "::error::Risk gate BLOCKED" in captured.err
        assert "blocked=true\n" in cli_env.read_text()

    def test_json_to_file(self, tmp_path: Path) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", _ACCEPTED_EXCEPT))
        report = tmp_path / "report.json"
        assert self._exit_code(diff=diff, output_format="json", output=str(report)) == EXIT_PASSED
        data = json.loads(report.read_text())
        assert data["blocked"] is False
        assert data["suppressed"][0]["rule_id"] == "A5"

    def test_advisory_profile_never_blocks(self, tmp_path: Path) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", _BARE_EXCEPT))
        assert self._exit_code(diff=diff, profile="advisory") == EXIT_PASSED

    def test_malformed_diff_is_fatal(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        diff = _write(tmp_path, "d.diff", "diff --git a/a.py b/a.py\n@@ nonsense @@\n")
        assert self._exit_code(diff=diff) == EXIT_FATAL
        assert "::error::Diff could not be parsed" in capsys.readouterr().err

    def test_missing_diff_file_is_fatal(self, tmp_path: Path) -> None:
        assert self._exit_code(diff=str(tmp_path / "missing.diff")) == EXIT_FATAL

    def test_invalid_corpus_is_fatal(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", ["x = 1"]))
        corpus = _write(tmp_path, "rules.toml", 'version = "1"\n[[rules]]\nid = "X1"\nclass = "A"\n')
        assert self._exit_code(diff=diff, corpus=corpus) == EXIT_FATAL
        assert "::error::Invalid rule corpus: rule X1: has no matchers" in capsys.readouterr().err

    def test_custom_json_corpus(self, tmp_path: Path) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", ["eval(payload)"]))
        source = {
            "version": "1",
            "rules": [
                {
                    "id": "S1",
                    "class": "A",
                    "blocking": "always",
                    "matchers": [{"kind": "literal", "pattern": "eval("}],
                }
            ],
        }
        corpus = _write(tmp_path, "rules.json", json.dumps(source))
        assert self._exit_code(diff=diff, corpus=corpus) == EXIT_BLOCKED

    def test_invalid_config_is_fatal(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", ["x = 1"]))
        config = _write(tmp_path, "riskgate.toml", '[categories.nope]\nblocking = "never"\n')
        assert self._exit_code(diff=diff, config=config) == EXIT_FATAL
        assert "::error::Invalid configuration: categories.nope" in capsys.readouterr().err

    def test_stdin(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO(_file_diff("a.py", _BARE_EXCEPT)))
        assert self._exit_code(diff="-") == EXIT_BLOCKED


class TestCli:
    def test_parser_defaults(self) -> None:
        args = build_parser().parse_args([])
        assert args.diff is None
        assert args.output_format == "markdown"
        assert args.max_workers is None

    def test_rejects_unknown_profile(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--profile", "lenient"])

    @pytest.mark.usefixtures("cli_env")
    def test_cli_runs_main(self, tmp_path: Path) -> None:
        diff = _write(tmp_path, "d.diff", _file_diff("a.py", ["x = 1"]))
        with pytest.raises(SystemExit) as exc_info:
            cli(["--diff", diff, "--format", "json", "--max-workers", "2"])
        assert exc_info.value.code == EXIT_PASSED
