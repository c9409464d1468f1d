# SPDX-License-Identifier: MIT
"""Conditional-blocking predicates — decide escalation from a finding's path and context."""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable, Mapping
from typing import Any

from riskgate.rules.base import Finding
from riskgate.rules.context import ScanContext


def _matches_any(path: str, globs: Iterable[str]) -> bool:
    return any(fnmatch.fnmatch(path, g) for g in globs)


def is_test_path(path: str, ctx: ScanContext) -> bool:
    """Check if a path looks like a test file under the profile's test globs."""
    return _matches_any(path, ctx.config.test_globs)


def _split_name(path: str) -> tuple[str, str]:
    """Return (stem, extension) of a path's basename; stem stops at the first dot."""
    name = path.rsplit("/", 1)[-1]
    stem, dot, ext = name.partition(".")
    return stem, ext if dot else ""


def _test_stems(stem: str) -> set[str]:
    return {
        f"test_{stem}",
        f"{stem}_test",
        f"{stem}_tests",
        f"{stem}Test",
        f"{stem}Tests",
        f"{stem}Spec",
    }


def _has_colocated_test(path: str, ctx: ScanContext) -> bool:
    stem, _ = _split_name(path)
    if not stem:
        return False
    wanted = _test_stems(stem)
    for candidate in ctx.known_paths():
        if candidate == path:
            continue
        cand_stem, cand_ext = _split_name(candidate)
        if cand_stem in wanted:
            return True
        # foo.test.ts / foo.spec.js
        if cand_stem == stem and cand_ext.split(".", 1)[0] in ("test", "spec"):
            return True
    return False


# --- Predicates: (finding, ctx, args) -> bool ---


def path_glob(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    """True when the finding's file matches one of ``args["globs"]``."""
    return _matches_any(finding.file, args.get("globs", ()))


def critical_path(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    """True when the finding's file matches the profile's ``critical_paths``."""
    return _matches_any(finding.file, ctx.config.critical_paths)


def touched_type(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    """True when any of ``args["names"]`` appears in the evidence, captures, or unit scope."""
    names = list(args.get("names", ()))
    if not names:
        return False
    pattern = re.compile(r"\b(?:" + "|".join(re.escape(n) for n in names) + r")\b")
    haystack = [finding.evidence, *finding.captures.values()]
    unit = ctx.unit(finding.unit_index)
    if unit is not None and unit.scope:
        haystack.append(unit.scope)
    return any(pattern.search(text) for text in haystack)


def has_test_file(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    """True when a co-located test file for the finding's module is visible to the scan."""
    return _has_colocated_test(finding.file, ctx)


def missing_test_file(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    return not is_test_path(finding.file, ctx) and not _has_colocated_test(finding.file, ctx)


def untested_critical_path(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    return critical_path(finding, ctx, args) and missing_test_file(finding, ctx, args)


def non_test_path(finding: Finding, ctx: ScanContext, args: Mapping[str, Any]) -> bool:
    return not is_test_path(finding.file, ctx)
