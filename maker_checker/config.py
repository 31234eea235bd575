"""Loop configuration: defaults, YAML loading and environment overrides."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from maker_checker.errors import ConfigError
from maker_checker.models.enums import NotificationKind

log = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_STATE_DIR = Path(".maker-checker")
DEFAULT_CONFIG_FILE = Path(".github/maker-checker.yml")
ENV_PREFIX = "MAKER_CHECKER_"

# camelCase keys accepted in config files alongside the snake_case field names
_KEY_ALIASES = {
    "maxIterations": "max_iterations",
    "qualityThreshold": "quality_threshold",
    "autoMergeThreshold": "auto_merge_threshold",
    "autoMergeEnabled": "auto_merge_enabled",
    "maxCostPerPR": "max_cost_per_change",
    "maxCostPerChange": "max_cost_per_change",
    "monthlyCostCap": "period_cost_cap",
    "notifyOn": "notify_on",
    "requireHumanApprovalIf": "require_human_approval_if",
    "qualityScoreBelow": "quality_score_below",
    "securityIssuesFound": "security_issues_found",
    "iterationsExceeded": "iterations_exceeded",
    "costExceeded": "cost_exceeded",
    "tests_failing": "ci_not_successful",
    "testsFailing": "ci_not_successful",
    "ciNotSuccessful": "ci_not_successful",
    "inProgress": "in_progress",
    "needsAttention": "needs_attention",
    "checkerTimeout": "checker_timeout",
    "makerTimeout": "maker_timeout",
    "stagnationWindow": "stagnation_window",
    "stagnationLimit": "stagnation_limit",
    "stateDir": "state_dir",
}

# keys from older config files with no counterpart here
_IGNORED_KEYS = frozenset({"slackEnabled", "slackWebhook", "slack_enabled", "slack_webhook"})


class HumanApprovalRules(BaseModel):
    """Conditions that force a human to approve the merge."""

    model_config = ConfigDict(frozen=True)

    quality_score_below: float = Field(default=0.85, ge=0.0, le=1.0)
    security_issues_found: bool = True
    iterations_exceeded: bool = True
    cost_exceeded: bool = True
    ci_not_successful: bool = True


class LabelConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    in_progress: str = "maker-checker:active"
    ready: str = "maker-checker:ready"
    needs_attention: str = "maker-checker:attention"
    error: str = "maker-checker:error"


class LoopConfig(BaseModel):
    """Configuration for the maker-checker loop of every change in a repository."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    max_iterations: int = Field(default=5, ge=1)
    quality_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    auto_merge_threshold: float = Field(default=0.90, ge=0.0, le=1.0)
    auto_merge_enabled: bool = False
    max_cost_per_change: float = Field(default=5.0, gt=0.0, description="USD")
    period_cost_cap: float = Field(default=100.0, gt=0.0, description="USD per calendar month")
    require_human_approval_if: HumanApprovalRules = Field(default_factory=HumanApprovalRules)
    labels: LabelConfig = Field(default_factory=LabelConfig)
    notify_on: list[NotificationKind] = Field(
        default_factory=lambda: [NotificationKind.READY_TO_MERGE, NotificationKind.NEEDS_ATTENTION]
    )
    stagnation_window: int = Field(default=3, ge=2)
    stagnation_limit: int = Field(default=3, ge=1, description="Consecutive stagnant iterations before stopping")
    checker_timeout: float = Field(default=600.0, gt=0.0, description="Seconds")
    maker_timeout: float = Field(default=1200.0, gt=0.0, description="Seconds")
    model: str = Field(default_factory=lambda: os.environ.get("MAKER_CHECKER_MODEL", DEFAULT_MODEL))
    state_dir: Path = DEFAULT_STATE_DIR

    def validate_startup(self) -> None:
        """Reject threshold combinations that would make auto-merge looser than merge."""
        if self.auto_merge_threshold < self.quality_threshold:
            raise ConfigError(
                f"auto_merge_threshold ({self.auto_merge_threshold}) must be >= "
                f"quality_threshold ({self.quality_threshold})"
            )


def _normalize_keys(data: Any) -> Any:
    if isinstance(data, dict):
        out: dict[str, Any] = {}
        for key, value in data.items():
            if key in _IGNORED_KEYS:
                log.debug("Ignoring unsupported config key %r", key)
                continue
            out[_KEY_ALIASES.get(key, key)] = _normalize_keys(value)
        return out
    return data


def _env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect ``MAKER_CHECKER_<FIELD>`` overrides for top-level scalar fields."""
    overrides: dict[str, str] = {}
    for name in LoopConfig.model_fields:
        if name in ("require_human_approval_if", "labels", "notify_on"):
            continue
        value = environ.get(ENV_PREFIX + name.upper())
        if value:
            overrides[name] = value
    return overrides


def load_config(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> LoopConfig:
    """Load configuration from a YAML file, then apply environment overrides.

    A missing, unreadable or invalid file falls back to the defaults with a
    warning. Threshold consistency is not checked here; call
    ``LoopConfig.validate_startup`` before running the loop.
    """
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    if path is not None:
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            log.warning("Config file %s not found, using defaults", path)
            raw = None
        except (OSError, yaml.YAMLError) as exc:
            log.warning("Failed to read config %s (%s), using defaults", path, exc)
            raw = None
        if isinstance(raw, dict):
            data = _normalize_keys(raw)
        elif raw is not None:
            log.warning("Config file %s is not a mapping, using defaults", path)

    try:
        base = LoopConfig.model_validate(data)
    except ValidationError as exc:
        log.warning("Invalid config in %s, using defaults: %s", path, exc)
        base = LoopConfig()

    overrides = _env_overrides(env)
    if not overrides:
        return base
    try:
        return LoopConfig.model_validate({**base.model_dump(), **overrides})
    except ValidationError as exc:
        log.warning("Ignoring invalid %s* environment overrides: %s", ENV_PREFIX, exc)
        return base
