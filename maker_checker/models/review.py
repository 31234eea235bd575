"""Checker and Maker result models, plus the change context they operate on."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from maker_checker.models.enums import (
    CallStatus,
    IssueCategory,
    PerformanceImpact,
    SecuritySeverity,
    Severity,
)


class FileChange(BaseModel):
    """One file touched by the change under review."""

    path: str = Field(description="Repository-relative file path")
    additions: int = Field(default=0, ge=0)
    deletions: int = Field(default=0, ge=0)


class ChangeContext(BaseModel):
    """Snapshot of a pull request handed to the Checker and Maker."""

    owner: str
    repo: str
    number: int = Field(ge=1, description="Pull request number")
    title: str = ""
    description: str = ""
    author: str = ""
    branch: str = ""
    base_branch: str = "main"
    head_sha: str = ""
    url: str = ""
    files: list[FileChange] = Field(default_factory=list)

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def head_ref(self) -> str:
        """Ref used to look up CI status: the head commit if known, else the branch."""
        return self.head_sha or self.branch


class Issue(BaseModel):
    """A single finding reported by the Checker."""

    model_config = ConfigDict(frozen=True)

    category: IssueCategory
    severity: Severity
    file: str = "unknown"
    line: int = Field(default=0, ge=0)
    message: str
    suggestion: str = ""

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line else self.file


class SecurityIssue(BaseModel):
    """A security finding with its own critical/high/medium/low scale."""

    model_config = ConfigDict(frozen=True)

    severity: SecuritySeverity
    kind: str = Field(default="security", description="Short finding type, e.g. 'injection'")
    description: str
    file: str = "unknown"
    line: int = Field(default=0, ge=0)
    recommendation: str = ""

    @property
    def is_blocking(self) -> bool:
        return self.severity in (SecuritySeverity.CRITICAL, SecuritySeverity.HIGH)


class PerformanceIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    impact: PerformanceImpact
    kind: str = "performance"
    description: str
    file: str = "unknown"
    line: int = Field(default=0, ge=0)
    suggestion: str = ""


class CheckerResult(BaseModel):
    """Structured outcome of one Checker review.

    ``low_confidence`` marks results recovered from output that could not be
    parsed reliably. Such results count as zero issues and are treated as
    unreliable data by convergence analysis.
    """

    model_config = ConfigDict(frozen=True)

    status: CallStatus = CallStatus.SUCCESS
    issues: list[Issue] = Field(default_factory=list)
    overall_score: float = Field(default=0.0, ge=0.0, le=1.0, description="Agent-reported score")
    security_issues: list[SecurityIssue] = Field(default_factory=list)
    performance_issues: list[PerformanceIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    cost: float = Field(default=0.0, ge=0.0)
    low_confidence: bool = False
    raw_response: str = ""
    error: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def failed(cls, error: str, *, cost: float = 0.0) -> CheckerResult:
        return cls(status=CallStatus.ERROR, error=error, cost=cost)

    @property
    def is_error(self) -> bool:
        return self.status == CallStatus.ERROR

    def issues_with(self, severity: Severity) -> list[Issue]:
        return [i for i in self.issues if i.severity == severity]

    def issues_in(self, category: IssueCategory) -> list[Issue]:
        return [i for i in self.issues if i.category == category]


class MakerResult(BaseModel):
    """Structured outcome of one Maker fix attempt."""

    model_config = ConfigDict(frozen=True)

    status: CallStatus = CallStatus.SUCCESS
    files_modified: list[str] = Field(default_factory=list)
    issues_addressed: int = Field(default=0, ge=0)
    explanation: str = ""
    cost: float = Field(default=0.0, ge=0.0)
    error: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def failed(cls, error: str, *, cost: float = 0.0) -> MakerResult:
        return cls(status=CallStatus.ERROR, error=error, cost=cost)

    @property
    def is_error(self) -> bool:
        return self.status == CallStatus.ERROR


class QualityMetrics(BaseModel):
    """Per-category scores recomputed from the latest Checker result."""

    model_config = ConfigDict(frozen=True)

    overall_score: float = Field(ge=0.0, le=1.0, description="Category-weighted score")
    security: float = Field(ge=0.0, le=1.0)
    performance: float = Field(ge=0.0, le=1.0)
    type_safety: float = Field(ge=0.0, le=1.0)
    code_quality: float = Field(ge=0.0, le=1.0)
    best_practices: float = Field(ge=0.0, le=1.0)
