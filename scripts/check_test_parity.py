#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""Test parity enforcement for source modules and built-in rules.

Every source module >50 LOC must have a test file, and every rule id in the
built-in corpus must be named in at least one test module.

Usage:
    python scripts/check_test_parity.py check   # CI: fail if violations regressed
    python scripts/check_test_parity.py update  # main branch: lower gate if improved
"""

from __future__ import annotations

import json
import re
import sys
import tomllib
from pathlib import Path

SRC_DIR = Path(__file__).resolve().parent.parent / "src" / "riskgate"
TEST_DIR = Path(__file__).resolve().parent.parent / "tests"
GATE_PATH = Path(__file__).resolve().parent.parent / ".github" / "quality-gate.json"
PARITY_MAP_PATH = Path(__file__).resolve().parent.parent / ".github" / "test-parity-map.json"
CORPUS_PATH = SRC_DIR / "rules" / "default_corpus.toml"

# Files that are never expected to have tests
SKIP_FILES = {"__init__.py", "__main__.py"}

MIN_LOC = 50

# Subpackages: explicit test map overrides default naming
SUBPACKAGE_PARITY: dict[str, dict[str, Path | str | set[str] | dict[str, str]]] = {
    "rules": {
        "src": SRC_DIR / "rules",
        "test_prefix": "test_riskgate_rules_",
        "skip": {"__init__.py"},
        "test_map": {
            "base": "skip",
        },
    },
}


def _load_gate() -> dict[str, int | float]:
    with open(GATE_PATH, encoding="utf-8") as f:
        return json.load(f)


def _save_gate(gate: dict[str, int | float]) -> None:
    with open(GATE_PATH, "w", encoding="utf-8") as f:
        json.dump(gate, f, indent=2)
        f.write("\n")


def _load_parity_map() -> dict[str, str]:
    """Load override map: source stem -> test file name (or 'skip')."""
    if not PARITY_MAP_PATH.exists():
        return {}
    with open(PARITY_MAP_PATH, encoding="utf-8") as f:
        return json.load(f)


def _count_loc(path: Path) -> int:
    """Count non-blank, non-comment lines."""
    count = 0
    with open(path, encoding="utf-8") as f:
        for line in f:
            stripped = line.strip()
            if stripped and not stripped.startswith("#"):
                count += 1
    return count


def find_violations() -> list[str]:
    """Return list of source modules missing test files."""
    parity_map = _load_parity_map()
    violations = []

    # Top-level src/riskgate/*.py
    for src_file in sorted(SRC_DIR.glob("*.py")):
        if src_file.name in SKIP_FILES:
            continue

        loc = _count_loc(src_file)
        if loc < MIN_LOC:
            continue

        stem = src_file.stem
        override = parity_map.get(stem)

        if override == "skip":
            continue

        if override:
            test_file = TEST_DIR / override
        else:
            test_file = TEST_DIR / f"test_riskgate_{stem}.py"

        if not test_file.exists():
            violations.append(f"{src_file.name} ({loc} LOC) -> missing {test_file.name}")

    # Subpackages (e.g. rules/)
    for pkg_name, pkg_config in SUBPACKAGE_PARITY.items():
        src_path = Path(str(pkg_config["src"]))
        test_prefix = str(pkg_config["test_prefix"])
        skip_files = set(pkg_config.get("skip", set()))  # type: ignore[arg-type]
        test_map: dict[str, str] = pkg_config.get("test_map", {})  # type: ignore[assignment]

        if not src_path.is_dir():
            continue

        for src_file in sorted(src_path.glob("*.py")):
            if src_file.name in SKIP_FILES or src_file.name in skip_files:
                continue

            loc = _count_loc(src_file)
            if loc < MIN_LOC:
                continue

            stem = src_file.stem

            # Check test_map for explicit overrides
            if stem in test_map:
                if test_map[stem] == "skip":
                    continue
                test_file = TEST_DIR / test_map[stem]
            else:
                test_file = TEST_DIR / f"{test_prefix}{stem}.py"

            if not test_file.exists():
                violations.append(
                    f"{pkg_name}/{src_file.name} ({loc} LOC) -> missing {test_file.name}"
                )

    return violations


def find_untested_rules() -> list[str]:
    """Return built-in rule ids that no test module mentions as a string literal."""
    with open(CORPUS_PATH, "rb") as f:
        rule_ids = sorted(rule["id"] for rule in tomllib.load(f).get("rules", []))
    test_text = "\n".join(p.read_text(encoding="utf-8") for p in sorted(TEST_DIR.glob("test_*.py")))
    return [
        f"rule {rule_id} -> not referenced by any test"
        for rule_id in rule_ids
        if not re.search(rf"[\"']{re.escape(rule_id)}[\"']", test_text)
    ]


def check() -> bool:
    """Compare violations against gate. Return True if passed."""
    gate = _load_gate()
    violations = find_violations()
    untested = find_untested_rules()

    gate_violations = gate.get("parity_violations", 0)
    gate_rules = gate.get("rule_violations", 0)

    if violations:
        print(f"Missing test files ({len(violations)}):")
        for v in violations:
            print(f"  {v}")
    else:
        print("All source modules have test files.")
    for u in untested:
        print(f"  {u}")

    passed = True
    if len(violations) > gate_violations:
        print(f"\nFAIL: {len(violations)} module violations > gate {gate_violations}")
        passed = False
    if len(untested) > gate_rules:
        print(f"\nFAIL: {len(untested)} untested rules > gate {gate_rules}")
        passed = False
    if passed:
        print(
            f"\nOK: {len(violations)} module / {len(untested)} rule violations "
            f"<= gate {gate_violations} / {gate_rules}"
        )
    return passed


def update() -> bool:
    """Lower gate if violations decreased. Return True if gate was updated."""
    gate = _load_gate()
    violations = find_violations()

    counts = {
        "parity_violations": len(violations),
        "rule_violations": len(find_untested_rules()),
    }

    bumped = False
    for key, current in counts.items():
        previous = int(gate.get(key, 0))
        if current < previous:
            print(f"BUMP: {key} {previous} -> {current}")
            gate[key] = current
            bumped = True
    if bumped:
        _save_gate(gate)
    else:
        print(f"No improvement — {counts} (gate: {gate})")
    return bumped


def main() -> None:
    if len(sys.argv) != 2 or sys.argv[1] not in ("check", "update"):
        print(f"Usage: {sys.argv[0]} check|update", file=sys.stderr)
        sys.exit(2)

    mode = sys.argv[1]

    if mode == "check":
        sys.exit(0 if check() else 1)
    else:
        update()


if __name__ == "__main__":
    main()
