# SPDX-License-Identifier: MIT
"""Predicate registries — explicit tables of structural and conditional-blocking predicates.

Rules reference predicates by name; the corpus loader resolves the names
against these tables at compile time. Register extra predicates before
loading a corpus: a compiled corpus holds direct references, so later
registrations never change a corpus already in use.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from riskgate.rules import conditions, structural
from riskgate.rules.base import Finding
from riskgate.rules.context import ScanContext
from riskgate.rules.structural import StructuralMatch
from riskgate.rules.tokens import UnitView

StructuralFn = Callable[[UnitView, Mapping[str, Any]], list[StructuralMatch]]
ConditionFn = Callable[[Finding, ScanContext, Mapping[str, Any]], bool]


@dataclass(frozen=True)
class StructuralPredicate:
    name: str
    fn: StructuralFn
    slots: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ConditionPredicate:
    name: str
    fn: ConditionFn


STRUCTURAL_PREDICATES: dict[str, StructuralPredicate] = {
    "incomplete_branches": StructuralPredicate(
        name="incomplete_branches",
        fn=structural.incomplete_branches,
        slots=frozenset({"keyword", "condition"}),
    ),
    "long_scope": StructuralPredicate(
        name="long_scope",
        fn=structural.long_scope,
        slots=frozenset({"name", "length"}),
    ),
}

CONDITION_PREDICATES: dict[str, ConditionPredicate] = {
    name: ConditionPredicate(name=name, fn=fn)
    for name, fn in (
        ("path_glob", conditions.path_glob),
        ("critical_path", conditions.critical_path),
        ("touched_type", conditions.touched_type),
        ("has_test_file", conditions.has_test_file),
        ("missing_test_file", conditions.missing_test_file),
        ("untested_critical_path", conditions.untested_critical_path),
        ("non_test_path", conditions.non_test_path),
    )
}


def register_structural(
    name: str, fn: StructuralFn, *, slots: frozenset[str] | set[str] = frozenset()
) -> None:
    """Add a structural predicate. Re-registering an existing name is an error."""
    if name in STRUCTURAL_PREDICATES:
        msg = f"Structural predicate already registered: {name!r}"
        raise ValueError(msg)
    STRUCTURAL_PREDICATES[name] = StructuralPredicate(name=name, fn=fn, slots=frozenset(slots))


def register_condition(name: str, fn: ConditionFn) -> None:
    """Add a conditional-blocking predicate. Re-registering an existing name is an error."""
    if name in CONDITION_PREDICATES:
        msg = f"Condition predicate already registered: {name!r}"
        raise ValueError(msg)
    CONDITION_PREDICATES[name] = ConditionPredicate(name=name, fn=fn)
