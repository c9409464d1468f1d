# SPDX-License-Identifier: MIT
"""Profile configuration for the gating engine — class levels, category policies, tunables."""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from riskgate.rules.base import BlockingLevel, ConfigurationError, RuleClass

DEFAULT_TEST_GLOBS: tuple[str, ...] = (
    "tests/*",
    "*/tests/*",
    "test/*",
    "*/test/*",
    "*/test_*.py",
    "test_*.py",
    "*_test.py",
    "*_test.go",
    "*.test.*",
    "*.spec.*",
    "*Tests.swift",
    "*Test.java",
    "*Test.kt",
)
DEFAULT_EXEMPTION_PREFIX = "RISK-ACCEPT"
DEFAULT_REDUCED_CONFIDENCE = 0.5

LEVEL_NAMES: dict[str, BlockingLevel] = {
    "advisory": BlockingLevel.ADVISORY,
    "non-blocking": BlockingLevel.NON_BLOCKING,
    "blocking": BlockingLevel.BLOCKING,
}


@dataclass(frozen=True)
class CategoryPolicy:
    """Per-category override: blocking policy text and auto-apply flag."""

    blocking: str | None = None
    blocking_args: Mapping[str, Any] = field(default_factory=dict)
    auto_apply: bool | None = None


@dataclass(frozen=True)
class ProfileConfig:
    """Configuration for a gating profile — controls how classes and categories resolve."""

    name: str
    class_levels: Mapping[RuleClass, BlockingLevel]
    reduced_confidence: float = DEFAULT_REDUCED_CONFIDENCE
    block_min_confidence: float = 0.0
    critical_paths: tuple[str, ...] = ()
    test_globs: tuple[str, ...] = DEFAULT_TEST_GLOBS
    categories: Mapping[str, CategoryPolicy] = field(default_factory=dict)
    max_workers: int | None = None
    exemption_prefix: str = DEFAULT_EXEMPTION_PREFIX

    def level_for(self, rule_class: RuleClass) -> BlockingLevel:
        return self.class_levels[rule_class]


def _levels(a: BlockingLevel, b: BlockingLevel) -> Mapping[RuleClass, BlockingLevel]:
    return MappingProxyType({RuleClass.A: a, RuleClass.B: b})


PROFILES: dict[str, ProfileConfig] = {
    "standard": ProfileConfig(
        name="standard",
        class_levels=_levels(BlockingLevel.BLOCKING, BlockingLevel.NON_BLOCKING),
    ),
    "strict": ProfileConfig(
        name="strict",
        class_levels=_levels(BlockingLevel.BLOCKING, BlockingLevel.BLOCKING),
    ),
    "advisory": ProfileConfig(
        name="advisory",
        class_levels=_levels(BlockingLevel.NON_BLOCKING, BlockingLevel.NON_BLOCKING),
    ),
}


def load_profile(cli_profile: str | None = None) -> ProfileConfig:
    """Load profile config with CLI > env > default priority.

    Args:
        cli_profile: Profile name from CLI --profile flag (highest priority).

    Returns:
        ProfileConfig for the resolved profile.

    Raises:
        ConfigurationError: If the profile name is not recognized.
    """
    name = cli_profile or os.environ.get("RISKGATE_PROFILE", "standard")
    if name not in PROFILES:
        msg = f"Unknown profile: {name!r}. Valid profiles: {sorted(PROFILES.keys())}"
        raise ConfigurationError([msg])
    return PROFILES[name]


# --- Config file ---


class CategorySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    blocking: str | None = None
    blocking_args: dict[str, Any] = Field(default_factory=dict)
    auto_apply: bool | None = None


class ConfigFileSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile: str | None = None
    reduced_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    block_min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    critical_paths: list[str] | None = None
    test_globs: list[str] | None = None
    max_workers: int | None = Field(default=None, ge=1, le=256)
    exemption_prefix: str | None = Field(default=None, pattern=r"^[A-Za-z][A-Za-z0-9_-]{1,31}$")
    classes: dict[RuleClass, Literal["advisory", "non-blocking", "blocking"]] = Field(
        default_factory=dict
    )
    categories: dict[str, CategorySpec] = Field(default_factory=dict)


def _validation_errors(exc: ValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['type']}" for err in exc.errors()]


def apply_overrides(profile: ProfileConfig, mapping: Mapping[str, Any]) -> ProfileConfig:
    """Overlay a config-file mapping onto a profile.

    Raises:
        ConfigurationError: If the mapping does not validate.
    """
    try:
        spec = ConfigFileSpec.model_validate(dict(mapping))
    except ValidationError as exc:
        raise ConfigurationError(_validation_errors(exc)) from exc

    changes: dict[str, Any] = {}
    if spec.reduced_confidence is not None:
        changes["reduced_confidence"] = spec.reduced_confidence
    if spec.block_min_confidence is not None:
        changes["block_min_confidence"] = spec.block_min_confidence
    if spec.critical_paths is not None:
        changes["critical_paths"] = tuple(spec.critical_paths)
    if spec.test_globs is not None:
        changes["test_globs"] = tuple(spec.test_globs)
    if spec.max_workers is not None:
        changes["max_workers"] = spec.max_workers
    if spec.exemption_prefix is not None:
        changes["exemption_prefix"] = spec.exemption_prefix
    if spec.classes:
        levels = dict(profile.class_levels)
        levels.update({rc: LEVEL_NAMES[level] for rc, level in spec.classes.items()})
        changes["class_levels"] = MappingProxyType(levels)
    if spec.categories:
        categories = dict(profile.categories)
        for name, cat in spec.categories.items():
            categories[name] = CategoryPolicy(
                blocking=cat.blocking,
                blocking_args=MappingProxyType(dict(cat.blocking_args)),
                auto_apply=cat.auto_apply,
            )
        changes["categories"] = MappingProxyType(categories)
    return replace(profile, **changes)


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError([f"Config file does not exist: {path}"]) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError([f"{path}: TOML syntax error: {exc}"]) from exc
    if path.name == "pyproject.toml":
        return dict(data.get("tool", {}).get("riskgate", {}))
    return data


def load_config(path: Path | str | None = None, *, cli_profile: str | None = None) -> ProfileConfig:
    """Resolve the effective profile: CLI > env > config-file ``profile`` > default.

    The file is ``path`` or ``$RISKGATE_CONFIG``; ``$RISKGATE_MAX_WORKERS``
    overrides the file's worker count.
    """
    config_path = path or os.environ.get("RISKGATE_CONFIG") or None
    mapping: dict[str, Any] = {}
    if config_path:
        mapping = _read_config_file(Path(config_path))

    file_profile = mapping.pop("profile", None)
    name = cli_profile or os.environ.get("RISKGATE_PROFILE") or file_profile
    profile = load_profile(name)
    if mapping:
        profile = apply_overrides(profile, mapping)

    workers = os.environ.get("RISKGATE_MAX_WORKERS", "")
    if workers:
        try:
            count = int(workers)
        except ValueError as exc:
            raise ConfigurationError(["RISKGATE_MAX_WORKERS must be an integer"]) from exc
        if count < 1:
            raise ConfigurationError(["RISKGATE_MAX_WORKERS must be >= 1"])
        profile = replace(profile, max_workers=count)
    return profile
