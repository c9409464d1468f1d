# SPDX-License-Identifier: MIT
"""Rule corpus — declarative rule source compiled into an immutable, indexed corpus.

Loading is all-or-nothing: every problem in the source is collected and the
whole corpus is rejected with one RuleCorpusError. ``CorpusStore`` holds the
process-wide snapshot and swaps it RCU-style between scans.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import tomllib
from collections import Counter
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from riskgate.rules.base import MatcherKind, PolicyKind, RuleClass, RuleCorpusError
from riskgate.rules.registry import (
    CONDITION_PREDICATES,
    STRUCTURAL_PREDICATES,
    ConditionPredicate,
    StructuralPredicate,
)
from riskgate.rules.suggestions import SuggestionTemplate, template_slots

log = logging.getLogger(__name__)

ANY_LANGUAGE = "any"
BUILTIN_SLOTS = frozenset({"match", "line", "indent"})
DEFAULT_CORPUS_RESOURCE = "default_corpus.toml"


# --- Source schema ---


class MatcherSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: MatcherKind
    pattern: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)
    min_count: int = Field(default=1, ge=1)
    window: int = Field(default=0, ge=0)
    negate: bool = False
    expect_comment: bool = False


class SuggestionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["replace", "insert_before"] = "replace"
    template: str = Field(min_length=1)
    auto_apply: bool = False


class RuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(pattern=r"^[A-Za-z][A-Za-z0-9_.-]*$", max_length=64)
    rule_class: RuleClass = Field(alias="class")
    category: str | None = None
    title: str = ""
    description: str = ""
    message: str | None = None
    languages: list[str] = Field(default_factory=lambda: [ANY_LANGUAGE])
    matchers: list[MatcherSpec] = Field(default_factory=list)
    blocking: str | None = None
    blocking_args: dict[str, Any] = Field(default_factory=dict)
    suggestion: SuggestionSpec | None = None


class CorpusSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str = Field(min_length=1)
    rules: list[RuleSpec] = Field(default_factory=list)


def _safe_error_summary(e: ValidationError) -> list[str]:
    """Extract only field paths and error type codes from a ValidationError.

    Never echoes raw values — rule source may come from an untrusted branch.
    """
    parts: list[str] = []
    for err in e.errors():
        loc = ".".join(str(loc) for loc in err["loc"])
        parts.append(f"{loc}: {err['type']}")
    return parts


# --- Compiled corpus ---


@dataclass(frozen=True)
class BlockingPolicy:
    kind: PolicyKind
    predicate: ConditionPredicate | None = None
    args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind == PolicyKind.CONDITIONAL and self.predicate is None:
            raise ValueError("conditional blocking policy needs a predicate")

    @property
    def label(self) -> str:
        if self.kind == PolicyKind.CONDITIONAL and self.predicate is not None:
            return f"conditional:{self.predicate.name}"
        return self.kind.value


def parse_policy(
    text: str, args: Mapping[str, Any] | None = None
) -> tuple[BlockingPolicy | None, str | None]:
    """Parse ``always`` | ``never`` | ``conditional:<predicate>``. Returns (policy, problem)."""
    text = text.strip()
    if text in (PolicyKind.ALWAYS.value, PolicyKind.NEVER.value):
        return BlockingPolicy(kind=PolicyKind(text)), None
    kind, sep, name = text.partition(":")
    if kind != PolicyKind.CONDITIONAL.value or not sep:
        return None, f"blocking policy {text!r} is not always|never|conditional:<predicate>"
    predicate = CONDITION_PREDICATES.get(name.strip())
    if predicate is None:
        return None, f"blocking policy references undefined predicate {name.strip()!r}"
    return (
        BlockingPolicy(
            kind=PolicyKind.CONDITIONAL,
            predicate=predicate,
            args=MappingProxyType(dict(args or {})),
        ),
        None,
    )


@dataclass(frozen=True)
class Matcher:
    kind: MatcherKind
    pattern: str
    regex: re.Pattern[str] | None = None
    predicate: StructuralPredicate | None = None
    args: Mapping[str, Any] = field(default_factory=dict)
    min_count: int = 1
    window: int = 0
    negate: bool = False
    expect_comment: bool = False

    @property
    def slots(self) -> frozenset[str]:
        names: set[str] = set(BUILTIN_SLOTS)
        if self.regex is not None:
            names.update(self.regex.groupindex)
        if self.predicate is not None:
            names.update(self.predicate.slots)
        return frozenset(names)


@dataclass(frozen=True)
class Rule:
    """A compiled detector definition."""

    id: str
    rule_class: RuleClass
    category: str
    title: str
    description: str
    message: str
    languages: frozenset[str]
    matchers: tuple[Matcher, ...]
    blocking: BlockingPolicy | None
    suggestion: SuggestionTemplate | None = None

    @property
    def anchor(self) -> Matcher:
        return self.matchers[0]

    @property
    def slots(self) -> frozenset[str]:
        names: set[str] = set()
        for matcher in self.matchers:
            if not matcher.negate:
                names.update(matcher.slots)
        return frozenset(names)

    def applies_to(self, language: str) -> bool:
        return ANY_LANGUAGE in self.languages or language in self.languages


@dataclass(frozen=True)
class Corpus:
    """Immutable, indexed rule corpus keyed by (language, rule id) and by class."""

    version: str
    digest: str
    rules: tuple[Rule, ...]
    _by_id: Mapping[str, Rule] = field(repr=False)
    _by_language: Mapping[str, tuple[Rule, ...]] = field(repr=False)
    _by_class: Mapping[RuleClass, tuple[Rule, ...]] = field(repr=False)
    _universal: tuple[Rule, ...] = field(repr=False)

    @classmethod
    def build(cls, version: str, digest: str, rules: list[Rule]) -> Corpus:
        ordered = tuple(sorted(rules, key=lambda r: r.id))
        languages = {lang for r in ordered for lang in r.languages if lang != ANY_LANGUAGE}
        return cls(
            version=version,
            digest=digest,
            rules=ordered,
            _by_id=MappingProxyType({r.id: r for r in ordered}),
            _by_language=MappingProxyType(
                {lang: tuple(r for r in ordered if r.applies_to(lang)) for lang in languages}
            ),
            _by_class=MappingProxyType(
                {rc: tuple(r for r in ordered if r.rule_class == rc) for rc in RuleClass}
            ),
            _universal=tuple(r for r in ordered if ANY_LANGUAGE in r.languages),
        )

    def __len__(self) -> int:
        return len(self.rules)

    def get(self, rule_id: str) -> Rule | None:
        return self._by_id.get(rule_id)

    def lookup(self, language: str, rule_id: str) -> Rule | None:
        """Return the rule only if it applies to the language."""
        rule = self._by_id.get(rule_id)
        if rule is None or not rule.applies_to(language):
            return None
        return rule

    def rules_for(self, language: str) -> tuple[Rule, ...]:
        """Rules applicable to a language, ordered by id. ``any`` rules always apply."""
        return self._by_language.get(language, self._universal)

    def by_class(self, rule_class: RuleClass) -> tuple[Rule, ...]:
        return self._by_class.get(rule_class, ())

    def categories(self) -> dict[str, RuleClass]:
        return {r.category: r.rule_class for r in self.rules}


# --- Loader ---


def _parse_source(text: str, fmt: str) -> Any:
    if fmt == "toml":
        try:
            return tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise RuleCorpusError([f"TOML syntax error: {exc}"]) from exc
    if fmt == "json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise RuleCorpusError(
                [f"JSON syntax error at line {exc.lineno} column {exc.colno}: {exc.msg}"]
            ) from exc
    raise RuleCorpusError([f"Unsupported corpus format: {fmt!r}"])


def _compile_matcher(
    rule_id: str, idx: int, spec: MatcherSpec, errors: list[str]
) -> Matcher | None:
    where = f"rule {rule_id} matcher {idx}"
    if spec.kind == MatcherKind.LITERAL:
        return Matcher(
            kind=spec.kind,
            pattern=spec.pattern,
            min_count=spec.min_count,
            window=spec.window,
            negate=spec.negate,
            expect_comment=spec.expect_comment,
        )
    if spec.kind == MatcherKind.REGEX:
        try:
            regex = re.compile(spec.pattern)
        except re.error as exc:
            errors.append(f"{where}: invalid regular expression ({exc.msg})")
            return None
        return Matcher(
            kind=spec.kind,
            pattern=spec.pattern,
            regex=regex,
            min_count=spec.min_count,
            window=spec.window,
            negate=spec.negate,
            expect_comment=spec.expect_comment,
        )
    predicate = STRUCTURAL_PREDICATES.get(spec.pattern)
    if predicate is None:
        errors.append(f"{where}: undefined structural predicate {spec.pattern!r}")
        return None
    if spec.expect_comment:
        errors.append(f"{where}: expect_comment only applies to literal and regex matchers")
        return None
    return Matcher(
        kind=spec.kind,
        pattern=spec.pattern,
        predicate=predicate,
        args=MappingProxyType(dict(spec.args)),
        min_count=spec.min_count,
        window=spec.window,
        negate=spec.negate,
    )


def _compile_rule(spec: RuleSpec, errors: list[str]) -> Rule | None:
    before = len(errors)
    if not spec.matchers:
        errors.append(f"rule {spec.id}: has no matchers")
    matchers: list[Matcher] = []
    for idx, matcher_spec in enumerate(spec.matchers):
        compiled = _compile_matcher(spec.id, idx, matcher_spec, errors)
        if compiled is not None:
            matchers.append(compiled)
    if spec.matchers and spec.matchers[0].negate:
        errors.append(f"rule {spec.id}: first matcher is the anchor and cannot be negated")

    blocking: BlockingPolicy | None = None
    if spec.blocking is not None:
        blocking, problem = parse_policy(spec.blocking, spec.blocking_args)
        if problem:
            errors.append(f"rule {spec.id}: {problem}")

    suggestion: SuggestionTemplate | None = None
    if spec.suggestion is not None:
        slots, problems = template_slots(spec.suggestion.template)
        errors.extend(f"rule {spec.id}: {p}" for p in problems)
        available: set[str] = set()
        for matcher in matchers:
            if not matcher.negate:
                available.update(matcher.slots)
        for slot in sorted(slots - available):
            errors.append(f"rule {spec.id}: suggestion template references undefined slot {slot!r}")
        suggestion = SuggestionTemplate(
            kind=spec.suggestion.kind,
            template=spec.suggestion.template,
            slots=slots,
            auto_apply=spec.suggestion.auto_apply,
        )

    if len(errors) > before:
        return None
    return Rule(
        id=spec.id,
        rule_class=spec.rule_class,
        category=spec.category or spec.id,
        title=spec.title or spec.id,
        description=spec.description,
        message=spec.message or spec.title or spec.id,
        languages=frozenset(lang.strip().lower() for lang in spec.languages) or frozenset({ANY_LANGUAGE}),
        matchers=tuple(matchers),
        blocking=blocking,
        suggestion=suggestion,
    )


def load_corpus(text: str, *, fmt: str = "toml") -> Corpus:
    """Validate and compile rule source text into a Corpus.

    Pure: no I/O beyond reading ``text``.

    Raises:
        RuleCorpusError: Listing every problem found. No partial corpus is returned.
    """
    data = _parse_source(text, fmt)
    try:
        spec = CorpusSpec.model_validate(data)
    except ValidationError as exc:
        raise RuleCorpusError(_safe_error_summary(exc)) from exc

    errors: list[str] = []
    id_counts = Counter(r.id for r in spec.rules)
    for rule_id, count in sorted(id_counts.items()):
        if count > 1:
            errors.append(f"rule id {rule_id} is duplicated ({count} definitions)")

    rules: list[Rule] = []
    for rule_spec in spec.rules:
        compiled = _compile_rule(rule_spec, errors)
        if compiled is not None:
            rules.append(compiled)

    category_classes: dict[str, set[RuleClass]] = {}
    for rule in rules:
        category_classes.setdefault(rule.category, set()).add(rule.rule_class)
    for category, classes in sorted(category_classes.items()):
        if len(classes) > 1:
            errors.append(f"category {category} is shared by A-class and B-class rules")

    if errors:
        raise RuleCorpusError(errors)

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    corpus = Corpus.build(spec.version, digest, rules)
    log.info("Loaded rule corpus version=%s rules=%d digest=%s", corpus.version, len(corpus), digest[:12])
    return corpus


@lru_cache(maxsize=1)
def load_default_corpus() -> Corpus:
    """Load the corpus shipped with the package."""
    text = resources.files("riskgate.rules").joinpath(DEFAULT_CORPUS_RESOURCE).read_text("utf-8")
    return load_corpus(text)


# --- Process-wide snapshot store ---


class CorpusStore:
    """Holds the current corpus snapshot; reloads swap it without touching in-flight scans.

    Scans pin a generation with ``snapshot()``. ``reload()`` validates the new
    corpus first (a bad corpus leaves the current one in place), swaps, then
    waits for readers of older generations to drain. Do not call ``reload``
    with ``wait=True`` from inside a ``snapshot()`` block.
    """

    def __init__(self, corpus: Corpus | None = None) -> None:
        self._cond = threading.Condition()
        self._corpus = corpus
        self._generation = 0
        self._readers: Counter[int] = Counter()

    @property
    def generation(self) -> int:
        with self._cond:
            return self._generation

    def current(self) -> Corpus:
        with self._cond:
            if self._corpus is None:
                raise RuleCorpusError(["no rule corpus loaded"])
            return self._corpus

    @contextmanager
    def snapshot(self) -> Iterator[Corpus]:
        with self._cond:
            if self._corpus is None:
                raise RuleCorpusError(["no rule corpus loaded"])
            corpus = self._corpus
            generation = self._generation
            self._readers[generation] += 1
        try:
            yield corpus
        finally:
            with self._cond:
                self._readers[generation] -= 1
                if self._readers[generation] <= 0:
                    del self._readers[generation]
                self._cond.notify_all()

    def in_flight(self, generation: int | None = None) -> int:
        with self._cond:
            if generation is None:
                return sum(self._readers.values())
            return self._readers.get(generation, 0)

    def wait_for_drain(self, generation: int, timeout: float | None = None) -> bool:
        """Block until no reader holds ``generation`` or older. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not any(g <= generation for g in self._readers), timeout=timeout
            )

    def reload(
        self,
        text: str | None = None,
        *,
        corpus: Corpus | None = None,
        fmt: str = "toml",
        wait: bool = True,
        timeout: float | None = None,
    ) -> Corpus:
        if corpus is None:
            if text is None:
                msg = "reload() needs rule source text or a compiled corpus"
                raise ValueError(msg)
            corpus = load_corpus(text, fmt=fmt)
        with self._cond:
            retired = self._generation
            self._corpus = corpus
            self._generation += 1
            log.info(
                "Rule corpus swapped: generation %d -> %d (version=%s)",
                retired,
                self._generation,
                corpus.version,
            )
        if wait and not self.wait_for_drain(retired, timeout=timeout):
            log.warning("Corpus generation %d still has in-flight scans after reload", retired)
        return corpus


_default_store: CorpusStore | None = None
_default_store_lock = threading.Lock()


def default_store() -> CorpusStore:
    """Process-wide store, lazily seeded with the built-in corpus."""
    global _default_store
    with _default_store_lock:
        if _default_store is None:
            _default_store = CorpusStore(load_default_corpus())
        return _default_store
