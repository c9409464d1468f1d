# SPDX-License-Identifier: MIT
"""Policy engine — resolve each finding to a blocking level and aggregate the gate.

Binding a corpus to a profile is where policy gaps surface: every category
must end up with an explicit policy, either declared on its rules or supplied
by the profile's ``categories`` table. There is no fallback level.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from riskgate.rules.base import (
    BlockingLevel,
    ConfigurationError,
    Diagnostic,
    DiagnosticKind,
    Finding,
    FindingState,
    PolicyKind,
    RuleClass,
    RuleEvaluationError,
)
from riskgate.rules.config import ProfileConfig
from riskgate.rules.context import ScanContext
from riskgate.rules.corpus import BlockingPolicy, Corpus, Rule, parse_policy

log = logging.getLogger(__name__)

# Level a failed conditional falls back to, per class.
_CONDITION_FALSE_LEVEL: Mapping[RuleClass, BlockingLevel] = MappingProxyType(
    {RuleClass.A: BlockingLevel.NON_BLOCKING, RuleClass.B: BlockingLevel.ADVISORY}
)


@dataclass(frozen=True)
class ResolvedFinding:
    """A finding after the policy stage: its level and the policy that produced it."""

    finding: Finding
    level: BlockingLevel
    policy: str

    @property
    def active(self) -> bool:
        return self.finding.state == FindingState.ACTIVE

    @property
    def blocking(self) -> bool:
        return self.active and self.level == BlockingLevel.BLOCKING


@dataclass(frozen=True)
class PolicyOutcome:
    resolved: tuple[ResolvedFinding, ...]
    blocked: bool
    diagnostics: tuple[Diagnostic, ...] = ()


class PolicyEngine:
    """Holds the per-rule policies of one corpus under one profile."""

    def __init__(self, corpus: Corpus, config: ProfileConfig) -> None:
        self._corpus = corpus
        self._config = config
        self._policies, self._auto_apply = self._bind(corpus, config)

    @property
    def config(self) -> ProfileConfig:
        return self._config

    @staticmethod
    def _bind(
        corpus: Corpus, config: ProfileConfig
    ) -> tuple[Mapping[str, BlockingPolicy], Mapping[str, bool]]:
        errors: list[str] = []
        categories = corpus.categories()

        overrides: dict[str, BlockingPolicy] = {}
        for name in sorted(config.categories):
            entry = config.categories[name]
            if name not in categories:
                errors.append(f"categories.{name}: category is not defined by any rule in the corpus")
                continue
            if entry.blocking is not None:
                policy, problem = parse_policy(entry.blocking, entry.blocking_args)
                if problem:
                    errors.append(f"categories.{name}: {problem}")
                elif policy is not None:
                    overrides[name] = policy
            if entry.auto_apply and categories[name] == RuleClass.A:
                errors.append(
                    f"categories.{name}: auto_apply is not allowed for A-class categories"
                )

        policies: dict[str, BlockingPolicy] = {}
        auto_apply: dict[str, bool] = {}
        for rule in corpus.rules:
            entry = config.categories.get(rule.category)
            policy = overrides.get(rule.category, rule.blocking)
            if policy is None:
                # An unparsable override was already reported above
                if entry is None or entry.blocking is None:
                    errors.append(
                        f"rule {rule.id}: category {rule.category!r} has no blocking policy "
                        "in the corpus or the configuration"
                    )
                continue
            policies[rule.id] = policy

            if entry is not None and entry.auto_apply is not None:
                flag = entry.auto_apply
            else:
                flag = rule.suggestion.auto_apply if rule.suggestion is not None else False
                if flag and rule.rule_class == RuleClass.A:
                    errors.append(f"rule {rule.id}: auto_apply is not allowed for A-class rules")
            auto_apply[rule.id] = flag and rule.rule_class == RuleClass.B

        if errors:
            raise ConfigurationError(errors)
        log.debug("Bound %d rule policies under profile %s", len(policies), config.name)
        return MappingProxyType(policies), MappingProxyType(auto_apply)

    def policy_for(self, rule: Rule) -> BlockingPolicy:
        return self._policies[rule.id]

    def auto_apply(self, rule: Rule) -> bool:
        """Whether suggestions for ``rule`` may be applied unattended."""
        return self._auto_apply.get(rule.id, False)

    def _rule_for(self, finding: Finding) -> Rule:
        rule = self._corpus.get(finding.rule_id)
        if rule is None:
            msg = f"finding references rule {finding.rule_id!r}, which is not in the corpus"
            raise KeyError(msg)
        return rule

    def resolve(self, finding: Finding, ctx: ScanContext) -> BlockingLevel:
        """Blocking level for one finding.

        Raises:
            RuleEvaluationError: If a conditional predicate fails.
        """
        rule = self._rule_for(finding)
        policy = self._policies[rule.id]

        if policy.kind == PolicyKind.NEVER:
            return BlockingLevel.ADVISORY
        if policy.kind == PolicyKind.ALWAYS:
            level = self._config.level_for(rule.rule_class)
        else:
            if policy.predicate is None:
                raise RuleEvaluationError(
                    rule.id, finding.unit_index, "conditional policy has no predicate"
                )
            try:
                hit = policy.predicate.fn(finding, ctx, policy.args)
            except Exception as exc:
                raise RuleEvaluationError(
                    rule.id, finding.unit_index, f"predicate {policy.predicate.name}: {exc}"
                ) from exc
            level = BlockingLevel.BLOCKING if hit else _CONDITION_FALSE_LEVEL[rule.rule_class]

        if level == BlockingLevel.BLOCKING and finding.confidence < self._config.block_min_confidence:
            return BlockingLevel.NON_BLOCKING
        return level

    def decide(self, findings: Iterable[Finding], ctx: ScanContext) -> PolicyOutcome:
        """Resolve every finding (suppressed ones too, for the audit trail) and aggregate.

        A conditional predicate that raises is recorded as a ``rule-error``
        diagnostic; the finding then takes its class's ``always`` level.
        """
        resolved: list[ResolvedFinding] = []
        diagnostics: list[Diagnostic] = []
        for finding in findings:
            rule = self._rule_for(finding)
            policy = self._policies[rule.id]
            try:
                level = self.resolve(finding, ctx)
            except RuleEvaluationError as err:
                log.warning("%s", err)
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.RULE_ERROR,
                        detail=err.detail,
                        rule_id=rule.id,
                        file=finding.file,
                        line=finding.line_start,
                        unit_index=finding.unit_index,
                    )
                )
                level = self._config.level_for(rule.rule_class)
            resolved.append(ResolvedFinding(finding=finding, level=level, policy=policy.label))
        return PolicyOutcome(
            resolved=tuple(resolved),
            blocked=check_gate(resolved),
            diagnostics=tuple(diagnostics),
        )


def check_gate(resolved: Iterable[ResolvedFinding]) -> bool:
    """Return True iff at least one active finding resolved to blocking."""
    return any(r.blocking for r in resolved)
