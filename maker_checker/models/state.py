"""Persisted iteration state for one change.

The phase of the loop is a tagged union: every variant carries only the
fields that are valid while the loop is in that phase, so a state such as
"fixer running without a checker result" cannot be constructed.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from maker_checker.models.enums import CallStatus, ConvergenceStatus, Phase
from maker_checker.models.review import CheckerResult  # noqa: TC001  # Pydantic requires runtime import

# ---------------------------------------------------------------------------
# Iteration history
# ---------------------------------------------------------------------------


class ReviewSummary(BaseModel):
    """Compact record of a Checker result kept in history."""

    model_config = ConfigDict(frozen=True)

    status: CallStatus
    agent_score: float = 0.0
    issues_found: int = 0
    error_issues: int = 0
    warning_issues: int = 0
    security_issues: int = 0
    blocking_security_issues: int = 0
    low_confidence: bool = False
    cost: float = 0.0
    error: str = ""


class FixSummary(BaseModel):
    """Compact record of a Maker result kept in history."""

    model_config = ConfigDict(frozen=True)

    status: CallStatus
    files_modified: list[str] = Field(default_factory=list)
    issues_addressed: int = 0
    cost: float = 0.0
    error: str = ""


class IterationRecord(BaseModel):
    """Immutable snapshot of one completed (or failed) iteration."""

    model_config = ConfigDict(frozen=True)

    iteration: int = Field(ge=1)
    checker: ReviewSummary
    maker: FixSummary | None = None
    issues_found: int = Field(default=0, ge=0)
    issues_fixed: int = Field(default=0, ge=0)
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    quality_delta: float = 0.0
    cost: float = Field(default=0.0, ge=0.0)
    low_confidence: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_seconds: float = Field(default=0.0, ge=0.0)


# ---------------------------------------------------------------------------
# Phase variants
# ---------------------------------------------------------------------------


class Idle(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["idle"] = "idle"


class CheckerRunning(BaseModel):
    """The Checker call for ``iteration`` is pending or in flight."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["checker_running"] = "checker_running"
    iteration: int = Field(ge=1)
    started_at: datetime


class FixerRunning(BaseModel):
    """The Maker is addressing the issues of ``review``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["fixer_running"] = "fixer_running"
    iteration: int = Field(ge=1)
    started_at: datetime
    review: CheckerResult
    quality_score: float = Field(ge=0.0, le=1.0)
    checker_seconds: float = Field(default=0.0, ge=0.0)


class Converged(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["converged"] = "converged"
    reason: str
    auto_merge: bool = False


class Exhausted(BaseModel):
    """Soft stop: a limit or stagnation rule ended the loop."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["exhausted"] = "exhausted"
    reason: str
    requires_human_approval: bool = True


class Failed(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["failed"] = "failed"
    reason: str
    remediation: str = "Comment `retry` to restart the maker-checker loop."


PhaseState = Annotated[
    Idle | CheckerRunning | FixerRunning | Converged | Exhausted | Failed,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Iteration state
# ---------------------------------------------------------------------------


class IterationState(BaseModel):
    """Loop state for one (repository, change-id), persisted as JSON."""

    model_config = ConfigDict(frozen=True)

    repository: str = Field(description="owner/name of the repository")
    change_id: int = Field(ge=1)
    current_iteration: int = Field(default=0, ge=0)
    max_iterations: int = Field(ge=1)
    history: list[IterationRecord] = Field(default_factory=list)
    phase: PhaseState = Field(default_factory=Idle)
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    convergence_status: ConvergenceStatus = ConvergenceStatus.IMPROVING
    total_cost: float = Field(default=0.0, ge=0.0)
    prior_cost: float = Field(default=0.0, ge=0.0, description="Spend recorded for this change by earlier runs")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def current_phase(self) -> Phase:
        return Phase(self.phase.kind)

    @property
    def is_terminal(self) -> bool:
        return self.current_phase.is_terminal

    @property
    def lifetime_cost(self) -> float:
        """Spend charged against the per-change cap: this run plus earlier ones."""
        return round(self.prior_cost + self.total_cost, 6)

    @property
    def iterations_remaining(self) -> int:
        return max(0, self.max_iterations - self.current_iteration)

    def statistics(self) -> IterationStatistics:
        """Aggregate figures over the recorded history."""
        found = sum(r.issues_found for r in self.history)
        fixed = sum(r.issues_fixed for r in self.history)
        improvement = 0.0
        if self.history:
            improvement = self.history[-1].quality_score - self.history[0].quality_score
        count = len(self.history)
        return IterationStatistics(
            total_iterations=count,
            total_cost=self.total_cost,
            average_cost_per_iteration=self.total_cost / count if count else 0.0,
            total_issues_found=found,
            total_issues_fixed=fixed,
            quality_improvement=round(improvement, 6),
        )


class IterationStatistics(BaseModel):
    total_iterations: int
    total_cost: float
    average_cost_per_iteration: float
    total_issues_found: int
    total_issues_fixed: int
    quality_improvement: float


def change_key(repository: str, change_id: int) -> str:
    """Filesystem-safe key for one change, e.g. ``acme_widgets_42``."""
    return f"{re.sub(r'[^A-Za-z0-9-]', '_', repository)}_{change_id}"


def new_state(repository: str, change_id: int, *, max_iterations: int, now: datetime | None = None) -> IterationState:
    """Create the Idle state for a change seen for the first time."""
    ts = now or datetime.now(UTC)
    return IterationState(
        repository=repository,
        change_id=change_id,
        max_iterations=max_iterations,
        created_at=ts,
        updated_at=ts,
    )


def check_invariants(state: IterationState) -> list[str]:
    """Return a description of every invariant ``state`` violates (empty if none)."""
    problems: list[str] = []
    if not 0 <= state.current_iteration <= state.max_iterations:
        problems.append(
            f"current_iteration {state.current_iteration} outside 0..{state.max_iterations}"
        )
    recorded = sum(r.cost for r in state.history)
    if abs(recorded - state.total_cost) > 1e-9:
        problems.append(f"total_cost {state.total_cost} != sum of history cost {recorded}")
    in_flight = isinstance(state.phase, CheckerRunning | FixerRunning)
    expected = state.current_iteration - 1 if in_flight else state.current_iteration
    if not state.is_terminal and len(state.history) != expected:
        problems.append(
            f"history has {len(state.history)} records, expected {expected} "
            f"in phase {state.current_phase}"
        )
    return problems
