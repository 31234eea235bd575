"""Verdict models produced by the safety and gate components."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from maker_checker.models.enums import ConvergenceStatus
from maker_checker.models.review import Issue  # noqa: TC001  # Pydantic requires runtime import


class GateCheck(BaseModel):
    """Outcome of a single quality gate."""

    name: str
    passed: bool
    blocking: bool = True
    message: str = ""


class MergeDecision(BaseModel):
    """Merge verdict for a change, recomputed on demand."""

    should_merge: bool
    auto_merge: bool = False
    requires_human_approval: bool = True
    blocking_issues: list[Issue] = Field(default_factory=list)
    failed_gates: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    reason: str = ""
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    iterations_used: int = Field(default=0, ge=0)
    total_cost: float = Field(default=0.0, ge=0.0)


class ConvergenceReport(BaseModel):
    """Trend classification over the recent iteration window."""

    status: ConvergenceStatus
    confidence: float = Field(ge=0.0, le=1.0)
    quality_trend: Literal["improving", "flat", "regressing"] = "flat"
    issue_trend: Literal["decreasing", "stagnant", "increasing"] = "stagnant"
    window: int = Field(default=0, ge=0, description="Records the classification used")
    excluded_low_confidence: int = Field(default=0, ge=0)
    reason: str = ""


class ConvergenceProjection(BaseModel):
    """Estimate of whether the target score is reachable in the remaining budget."""

    will_converge: bool
    estimated_iterations: int | None = Field(
        default=None, description="Iterations still needed; None when unreachable"
    )
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""


class IterationAllowance(BaseModel):
    allowed: bool
    reason: str = ""


class PatternWarning(BaseModel):
    kind: Literal["stagnation", "oscillation", "speed"]
    message: str


class SuspiciousPatterns(BaseModel):
    """Warnings raised by the suspicious-loop scan."""

    warnings: list[PatternWarning] = Field(default_factory=list)

    @property
    def suspicious(self) -> bool:
        return bool(self.warnings)


class PeriodCapStatus(BaseModel):
    """Spend for the current calendar period against its cap."""

    exceeded: bool
    warning: bool
    total: float = Field(ge=0.0)
    limit: float = Field(ge=0.0)
    percentage: float = Field(ge=0.0)


class ChangeCost(BaseModel):
    repository: str
    change_id: int
    total: float = Field(ge=0.0)
    iterations: int = Field(ge=0)


class CostSummary(BaseModel):
    """Period spend broken down by change, with operator recommendations."""

    period: str = Field(description="Calendar month, YYYY-MM")
    total: float = Field(ge=0.0)
    limit: float = Field(ge=0.0)
    percentage: float = Field(ge=0.0)
    changes: list[ChangeCost] = Field(default_factory=list)
    average_per_change: float = Field(default=0.0, ge=0.0)
    recommendations: list[str] = Field(default_factory=list)


class GateReport(BaseModel):
    """Every gate checked for one review, plus advisory warnings."""

    checks: list[GateCheck] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks if c.blocking)

    @property
    def failed_gates(self) -> list[str]:
        return [c.message for c in self.checks if c.blocking and not c.passed]


class EffortEstimate(BaseModel):
    effort: Literal["low", "medium", "high"]
    description: str
