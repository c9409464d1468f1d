# SPDX-License-Identifier: MIT
"""Risk rule engine — declarative rules that detect, explicit policy that gates."""

from collections.abc import Iterable

from riskgate.rules.base import (
    BlockingLevel,
    ConfigurationError,
    Diagnostic,
    DiffParseError,
    Finding,
    FindingState,
    RuleClass,
    RuleCorpusError,
    RuleEvaluationError,
    ScanCancelledError,
)
from riskgate.rules.config import ProfileConfig, load_config, load_profile
from riskgate.rules.context import ChangedFile, ChangeUnit, DiffLine, ScanContext, parse_diff, segment_diff
from riskgate.rules.corpus import Corpus, CorpusStore, Rule, default_store, load_corpus, load_default_corpus
from riskgate.rules.engine import CancellationToken, DetectorEngine
from riskgate.rules.exemptions import Exemption, ExemptionResolver
from riskgate.rules.policy import PolicyEngine, ResolvedFinding
from riskgate.rules.registry import register_condition, register_structural
from riskgate.rules.suggestions import Suggestion, SuggestionSynthesizer

__all__ = [
    "BlockingLevel",
    "CancellationToken",
    "ChangeUnit",
    "ChangedFile",
    "ConfigurationError",
    "Corpus",
    "CorpusStore",
    "DetectorEngine",
    "Diagnostic",
    "DiffLine",
    "DiffParseError",
    "Exemption",
    "ExemptionResolver",
    "Finding",
    "FindingState",
    "PolicyEngine",
    "ProfileConfig",
    "ResolvedFinding",
    "Rule",
    "RuleClass",
    "RuleCorpusError",
    "RuleEvaluationError",
    "ScanCancelledError",
    "ScanContext",
    "Suggestion",
    "SuggestionSynthesizer",
    "default_store",
    "load_config",
    "load_corpus",
    "load_default_corpus",
    "load_profile",
    "parse_diff",
    "register_condition",
    "register_structural",
    "segment_diff",
]


def run_rules(diff: str, profile: ProfileConfig, corpus: Corpus | None = None) -> list[Finding]:
    """Convenience: segment the diff, detect, apply exemptions. Returns active and suppressed findings."""
    corpus = corpus or load_default_corpus()
    units = segment_diff(diff)
    results = DetectorEngine(corpus, profile).run(units)
    resolver = ExemptionResolver(profile.exemption_prefix)
    exemptions, _ = resolver.parse(units)
    raw = [f for r in results for f in r.findings]
    return list(resolver.resolve(raw, exemptions, {r.id for r in corpus.rules}).findings)


def check_gate(
    findings: list[Finding],
    profile: ProfileConfig,
    corpus: Corpus | None = None,
    repo_files: Iterable[str] = (),
) -> bool:
    """Convenience: True if any active finding resolves to blocking under the profile.

    No diff is in scope here, so test-file predicates only see ``repo_files``.
    """
    engine = PolicyEngine(corpus or load_default_corpus(), profile)
    ctx = ScanContext(files=(), config=profile, repo_files=frozenset(repo_files))
    return engine.decide(findings, ctx).blocked
