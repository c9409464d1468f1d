# SPDX-License-Identifier: MIT
"""Report aggregator — merge per-stage outputs into one ordered GateDecision, and render it.

The aggregator is the only place a GateDecision is built. It imposes the
order (file, line, rule id) itself, so worker completion order never leaks
into the artifact.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

import navi_sanitize
import nh3

from riskgate.rules.base import BlockingLevel, Diagnostic, FindingState
from riskgate.rules.config import ProfileConfig
from riskgate.rules.corpus import Corpus
from riskgate.rules.policy import PolicyOutcome, ResolvedFinding
from riskgate.rules.suggestions import Suggestion
from riskgate.schema import (
    GateDecision,
    Level,
    ReportDiagnostic,
    ReportFinding,
    ReportSuggestion,
    ReportSuppressed,
)

_LEVELS: dict[BlockingLevel, Level] = {
    BlockingLevel.ADVISORY: Level.ADVISORY,
    BlockingLevel.NON_BLOCKING: Level.NON_BLOCKING,
    BlockingLevel.BLOCKING: Level.BLOCKING,
}


def _report_fields(r: ResolvedFinding) -> dict[str, object]:
    f = r.finding
    return {
        "rule_id": f.rule_id,
        "rule_class": f.rule_class.value,
        "category": f.category,
        "file": f.file,
        "line_start": f.line_start,
        "line_end": f.line_end,
        "level": _LEVELS[r.level],
        "policy": r.policy,
        "confidence": f.confidence,
        "message": f.message,
        "evidence": f.evidence,
        "suppression": f.suppression,
    }


def aggregate(
    *,
    outcome: PolicyOutcome,
    suggestions: Iterable[Suggestion],
    diagnostics: Iterable[Diagnostic],
    corpus: Corpus,
    config: ProfileConfig,
    units_scanned: int,
) -> GateDecision:
    """Build the GateDecision. All lists are sorted here, never upstream."""
    ordered = sorted(outcome.resolved, key=lambda r: r.finding.sort_key())
    active = [
        ReportFinding(**_report_fields(r))
        for r in ordered
        if r.finding.state == FindingState.ACTIVE
    ]
    suppressed = [
        ReportSuppressed(
            **_report_fields(r),
            exemption_id=r.finding.exemption_id or "",
            justification=r.finding.justification or "",
        )
        for r in ordered
        if r.finding.state == FindingState.SUPPRESSED
    ]
    rendered = [
        ReportSuggestion(
            rule_id=s.rule_id,
            file=s.file,
            line=s.line,
            kind=s.kind,
            original=s.original,
            replacement=s.replacement,
            auto_apply=s.auto_apply,
        )
        for s in sorted(suggestions, key=lambda s: (*s.sort_key(), s.replacement))
    ]
    diags = [
        ReportDiagnostic(
            kind=d.kind.value,
            detail=d.detail,
            rule_id=d.rule_id,
            file=d.file,
            line=d.line,
            unit_index=d.unit_index,
        )
        for d in sorted({*diagnostics, *outcome.diagnostics}, key=lambda d: d.sort_key())
    ]
    return GateDecision(
        blocked=outcome.blocked,
        profile=config.name,
        corpus_version=corpus.version,
        corpus_digest=corpus.digest,
        units_scanned=units_scanned,
        findings=tuple(active),
        suppressed=tuple(suppressed),
        suggestions=tuple(rendered),
        diagnostics=tuple(diags),
    )


# --- Rendering for the comment sink ---

# Markdown link schemes nh3 does not see, since they are not HTML.
_DANGEROUS_SCHEME_RE = re.compile(r"(?:javascript|data|vbscript)\s*:", re.IGNORECASE)

_LEVEL_EMOJI = {
    Level.BLOCKING: "\U0001f534",
    Level.NON_BLOCKING: "\U0001f7e1",
    Level.ADVISORY: "\U0001f535",
}


def _sanitize_comment_text(text: str) -> str:
    """Clean untrusted diff text for markdown: Unicode tricks, HTML, link schemes."""
    text = navi_sanitize.clean(text)
    text = nh3.clean(text, tags=set())
    return _DANGEROUS_SCHEME_RE.sub("", text)


def _code_span(text: str) -> str:
    text = navi_sanitize.clean(text).replace("\n", " ")
    longest = max((len(run) for run in re.findall(r"`+", text)), default=0)
    ticks = "`" * (longest + 1)
    pad = " " if text.startswith("`") or text.endswith("`") else ""
    return f"{ticks}{pad}{text}{pad}{ticks}"


def _suggestion_block(replacement: str) -> list[str]:
    body = navi_sanitize.clean(replacement)
    longest = max((len(run) for run in re.findall(r"`{3,}", body)), default=2)
    fence = "`" * (longest + 1)
    return [f"{fence}suggestion", body, fence]


def _finding_marker(rule_id: str, file: str, line: int) -> str:
    """HTML comment marker the sink uses to dedupe comments across pushes."""
    return f"<!-- riskgate:{file}:{rule_id}:{line} -->"


def build_review_comment(
    finding: ReportFinding, suggestion: ReportSuggestion | None = None
) -> dict[str, str | int]:
    """Build an inline review comment payload (path/body/line/side) for one finding."""
    emoji = _LEVEL_EMOJI[finding.level]
    body = [
        f"#### {emoji} {finding.rule_id} ({finding.level.value}): "
        f"{_sanitize_comment_text(finding.message)}",
        f"Confidence: {finding.confidence:.2f} | Policy: `{finding.policy}`",
        "",
    ]
    if suggestion is not None:
        body.extend(_suggestion_block(suggestion.replacement))
        if suggestion.auto_apply:
            body.append("*Eligible for unattended application.*")
        body.append("")
    body.append(_finding_marker(finding.rule_id, finding.file, finding.line_start))
    return {
        "path": finding.file,
        "body": "\n".join(body),
        "line": finding.line_start,
        "side": "RIGHT",
    }


def format_summary(decision: GateDecision) -> str:
    """Render the decision as a markdown status comment."""
    verdict = "BLOCKED" if decision.blocked else "PASSED"
    status_emoji = "❌" if decision.blocked else "✅"
    blocking = decision.blocking_findings
    lines: list[str] = [
        f"## {status_emoji} riskgate — {verdict}",
        "",
        f"**Profile:** `{decision.profile}` | **Corpus:** `{decision.corpus_version}` "
        f"(`{decision.corpus_digest[:12]}`)",
        "",
        f"**Findings:** {len(decision.findings)} active ({len(blocking)} blocking)"
        f" · {len(decision.suppressed)} suppressed"
        f" · {len(decision.suggestions)} suggestions",
        "",
    ]

    if decision.findings:
        lines.append("### Findings")
        lines.append("")
        for f in decision.findings:
            emoji = _LEVEL_EMOJI[f.level]
            lines.append(
                f"- {emoji} **{f.rule_id}** {_code_span(f'{f.file}:{f.line_start}')} "
                f"({f.level.value}): {_sanitize_comment_text(f.message)}"
            )
            if f.evidence:
                lines.append(f"  {_code_span(f.evidence)}")
        lines.append("")

    if decision.suppressed:
        lines.append("### Accepted risks")
        lines.append("")
        for s in decision.suppressed:
            lines.append(
                f"- **{s.rule_id}** {_code_span(f'{s.file}:{s.line_start}')}: "
                f"{_sanitize_comment_text(s.justification)}"
            )
        lines.append("")

    if decision.suggestions:
        lines.append("### Suggestions")
        lines.append("")
        for sg in decision.suggestions:
            auto = " (auto-apply)" if sg.auto_apply else ""
            lines.append(f"**{sg.rule_id}** {_code_span(f'{sg.file}:{sg.line}')}{auto}")
            lines.extend(_suggestion_block(sg.replacement))
            lines.append("")

    if decision.diagnostics:
        lines.append("<details>")
        lines.append(f"<summary>Diagnostics ({len(decision.diagnostics)})</summary>")
        lines.append("")
        for d in decision.diagnostics:
            where = f" {_code_span(f'{d.file}:{d.line}')}" if d.file else ""
            rule = f" {d.rule_id}" if d.rule_id else ""
            lines.append(f"- `{d.kind}`{rule}{where}: {_sanitize_comment_text(d.detail)}")
        lines.append("")
        lines.append("</details>")
        lines.append("")

    lines.append("<!-- riskgate-summary -->")
    return "\n".join(lines)
