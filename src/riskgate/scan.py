# SPDX-License-Identifier: MIT
"""riskgate scan pipeline and CI entry point.

Usage (GitHub Actions or local):
    git diff origin/main... | python -m riskgate --format markdown

Environment variables:
    RISKGATE_PROFILE      — gating profile: standard, strict, advisory (default: standard)
    RISKGATE_CONFIG       — TOML config file overlaying the profile
    RISKGATE_CORPUS       — rule source file (.toml or .json); default: built-in corpus
    RISKGATE_MAX_WORKERS  — detector worker threads
    RISKGATE_LOG_LEVEL    — logging level (default: WARNING)
    GITHUB_OUTPUT         — set by GitHub Actions; receives step outputs
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path

from riskgate.report import aggregate, format_summary
from riskgate.rules.base import (
    ConfigurationError,
    Diagnostic,
    DiagnosticKind,
    DiffParseError,
    RiskGateError,
    RuleCorpusError,
)
from riskgate.rules.config import ProfileConfig, load_config, load_profile
from riskgate.rules.context import ChangedFile, ScanContext, parse_diff
from riskgate.rules.corpus import Corpus, CorpusStore, default_store, load_corpus
from riskgate.rules.engine import CancellationToken, DetectorEngine
from riskgate.rules.exemptions import ExemptionResolver
from riskgate.rules.policy import PolicyEngine
from riskgate.rules.suggestions import Suggestion, SuggestionSynthesizer
from riskgate.schema import GateDecision

log = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_BLOCKED = 1
EXIT_FATAL = 2


def _skipped(files: list[ChangedFile]) -> list[Diagnostic]:
    diagnostics: list[Diagnostic] = []
    for f in files:
        if f.is_binary:
            detail = "binary file; not scanned"
        elif not f.units:
            detail = "no hunks (rename or mode change only); not scanned"
        else:
            continue
        diagnostics.append(Diagnostic(kind=DiagnosticKind.SKIPPED_UNIT, detail=detail, file=f.path))
    return diagnostics


def _check(cancel: CancellationToken | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def scan_with_corpus(
    diff_text: str,
    corpus: Corpus,
    config: ProfileConfig,
    *,
    cancel: CancellationToken | None = None,
    repo_files: Iterable[str] = (),
) -> GateDecision:
    """Run the full pipeline against one pinned corpus.

    Raises:
        ConfigurationError: The profile leaves a category without a policy,
            or is otherwise inconsistent with the corpus.
        DiffParseError: The diff is malformed anywhere.
        ScanCancelledError: ``cancel`` fired; no decision is produced.
    """
    policy = PolicyEngine(corpus, config)
    files = parse_diff(diff_text)
    units = [unit for f in files for unit in f.units]
    log.info(
        "Scanning %d files / %d units (profile=%s, corpus=%s)",
        len(files),
        len(units),
        config.name,
        corpus.version,
    )
    _check(cancel)

    results = DetectorEngine(corpus, config).run(units, cancel)
    raw = [finding for result in results for finding in result.findings]
    diagnostics: list[Diagnostic] = _skipped(files)
    diagnostics.extend(d for result in results for d in result.diagnostics)
    _check(cancel)

    resolver = ExemptionResolver(config.exemption_prefix)
    exemptions, marker_diagnostics = resolver.parse(units)
    diagnostics.extend(marker_diagnostics)
    resolution = resolver.resolve(raw, exemptions, known_rule_ids={r.id for r in corpus.rules})
    diagnostics.extend(resolution.diagnostics)

    ctx = ScanContext(files=tuple(files), config=config, repo_files=frozenset(repo_files))
    outcome = policy.decide(resolution.findings, ctx)
    _check(cancel)

    synthesizer = SuggestionSynthesizer()
    suggestions: list[Suggestion] = []
    for resolved in outcome.resolved:
        if not resolved.active:
            continue
        rule = corpus.get(resolved.finding.rule_id)
        if rule is None or rule.suggestion is None:
            continue
        rendered = synthesizer.render(
            resolved.finding, rule.suggestion, auto_apply=policy.auto_apply(rule)
        )
        if rendered is not None:
            suggestions.append(rendered)
    _check(cancel)

    decision = aggregate(
        outcome=outcome,
        suggestions=suggestions,
        diagnostics=diagnostics,
        corpus=corpus,
        config=config,
        units_scanned=len(units),
    )
    log.info(
        "Gate %s: %d active, %d suppressed, %d suggestions, %d diagnostics",
        "BLOCKED" if decision.blocked else "passed",
        len(decision.findings),
        len(decision.suppressed),
        len(decision.suggestions),
        len(decision.diagnostics),
    )
    return decision


def run_scan(
    diff_text: str,
    *,
    corpus: Corpus | None = None,
    config: ProfileConfig | None = None,
    store: CorpusStore | None = None,
    cancel: CancellationToken | None = None,
    repo_files: Iterable[str] = (),
) -> GateDecision:
    """Scan a diff. Without an explicit corpus, pins the store's current snapshot."""
    config = config or load_profile()
    if corpus is not None:
        return scan_with_corpus(diff_text, corpus, config, cancel=cancel, repo_files=repo_files)
    with (store or default_store()).snapshot() as pinned:
        return scan_with_corpus(diff_text, pinned, config, cancel=cancel, repo_files=repo_files)


# --- CLI ---


def _annotate(level: str, message: str) -> None:
    """Print a GitHub Actions workflow annotation on stderr, keeping stdout for the report."""
    print(f"::{level}::{message}", file=sys.stderr)


def _read_corpus(path: str) -> Corpus:
    fmt = "json" if path.endswith(".json") else "toml"
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise RuleCorpusError([f"cannot read rule corpus {path}: {exc.strerror}"]) from exc
    return load_corpus(text, fmt=fmt)


def _read_diff(path: str | None) -> str:
    try:
        if path is None or path == "-":
            return sys.stdin.read()
        return Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise DiffParseError(f"diff is not valid UTF-8 ({exc.reason})") from exc
    except OSError as exc:
        raise DiffParseError(f"cannot read diff {path}: {exc.strerror}") from exc


def _write_github_output(decision: GateDecision) -> None:
    github_output = os.environ.get("GITHUB_OUTPUT", "")
    if not github_output:
        return
    with open(github_output, "a", encoding="utf-8") as f:
        f.write(f"blocked={str(decision.blocked).lower()}\n")
        f.write(f"findings-count={len(decision.findings)}\n")
        f.write(f"suppressed-count={len(decision.suppressed)}\n")
        f.write(f"suggestions-count={len(decision.suggestions)}\n")
        f.write(f"diagnostics-count={len(decision.diagnostics)}\n")
        f.write(f"profile={decision.profile}\n")


def main(
    *,
    diff: str | None = None,
    corpus: str | None = None,
    config: str | None = None,
    profile: str | None = None,
    output_format: str = "markdown",
    output: str | None = None,
    max_workers: int | None = None,
) -> None:
    """CLI entry point. Exits 0 (passed), 1 (blocked) or 2 (no decision)."""
    logging.basicConfig(
        level=os.environ.get("RISKGATE_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        profile_config = load_config(config, cli_profile=profile)
        if max_workers is not None:
            profile_config = replace(profile_config, max_workers=max_workers)
        corpus_path = corpus or os.environ.get("RISKGATE_CORPUS") or None
        rules = _read_corpus(corpus_path) if corpus_path else None
        decision = run_scan(_read_diff(diff), corpus=rules, config=profile_config)
    except ConfigurationError as exc:
        for err in exc.errors:
            _annotate("error", f"Invalid configuration: {err}")
        sys.exit(EXIT_FATAL)
    except RuleCorpusError as exc:
        for err in exc.errors:
            _annotate("error", f"Invalid rule corpus: {err}")
        sys.exit(EXIT_FATAL)
    except DiffParseError as exc:
        _annotate("error", f"Diff could not be parsed: {exc}")
        sys.exit(EXIT_FATAL)
    except RiskGateError as exc:
        _annotate("error", f"Scan aborted: {exc}")
        sys.exit(EXIT_FATAL)

    rendered = decision.to_json() if output_format == "json" else format_summary(decision)
    if output:
        Path(output).write_text(rendered + "\n", encoding="utf-8")
    else:
        print(rendered)

    for d in decision.diagnostics:
        if d.kind == DiagnosticKind.RULE_ERROR.value:
            _annotate("warning", f"Rule {d.rule_id} failed on {d.file}: {d.detail}")

    _write_github_output(decision)

    if decision.blocked:
        _annotate(
            "error",
            f"Risk gate BLOCKED: {len(decision.blocking_findings)} blocking finding(s) "
            f"(profile={decision.profile})",
        )
        sys.exit(EXIT_BLOCKED)
    sys.exit(EXIT_PASSED)
