"""Data models for maker-checker iterations, reviews and decisions."""

from maker_checker.models.cost import CostEvent
from maker_checker.models.decision import (
    ConvergenceProjection,
    ConvergenceReport,
    CostSummary,
    EffortEstimate,
    GateCheck,
    GateReport,
    IterationAllowance,
    MergeDecision,
    PeriodCapStatus,
    SuspiciousPatterns,
)
from maker_checker.models.enums import (
    CallStatus,
    CIStatus,
    ConvergenceStatus,
    IssueCategory,
    Phase,
    SecuritySeverity,
    Severity,
)
from maker_checker.models.review import (
    ChangeContext,
    CheckerResult,
    Issue,
    MakerResult,
    PerformanceIssue,
    QualityMetrics,
    SecurityIssue,
)
from maker_checker.models.state import IterationRecord, IterationState

__all__ = [
    "CIStatus",
    "CallStatus",
    "ChangeContext",
    "CheckerResult",
    "ConvergenceProjection",
    "ConvergenceReport",
    "ConvergenceStatus",
    "CostEvent",
    "CostSummary",
    "EffortEstimate",
    "GateCheck",
    "GateReport",
    "Issue",
    "IssueCategory",
    "IterationAllowance",
    "IterationRecord",
    "IterationState",
    "MakerResult",
    "MergeDecision",
    "PerformanceIssue",
    "PeriodCapStatus",
    "Phase",
    "QualityMetrics",
    "SecurityIssue",
    "SecuritySeverity",
    "Severity",
    "SuspiciousPatterns",
]
