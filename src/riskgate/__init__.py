# SPDX-License-Identifier: MIT
"""riskgate — deterministic risk classification and merge gating for code changes."""

from riskgate.report import aggregate, build_review_comment, format_summary
from riskgate.rules import (
    CancellationToken,
    ConfigurationError,
    CorpusStore,
    DiffParseError,
    RuleCorpusError,
    RuleEvaluationError,
    ScanCancelledError,
    load_config,
    load_corpus,
    load_profile,
)
from riskgate.scan import run_scan, scan_with_corpus
from riskgate.schema import GateDecision

__all__ = [
    "CancellationToken",
    "ConfigurationError",
    "CorpusStore",
    "DiffParseError",
    "GateDecision",
    "RuleCorpusError",
    "RuleEvaluationError",
    "ScanCancelledError",
    "aggregate",
    "build_review_comment",
    "format_summary",
    "load_config",
    "load_corpus",
    "load_profile",
    "run_scan",
    "scan_with_corpus",
]
