"""Quality scoring of Checker results."""

from __future__ import annotations

from typing import NamedTuple

from maker_checker.models.enums import (
    IssueCategory,
    PerformanceImpact,
    SecuritySeverity,
    Severity,
)
from maker_checker.models.review import CheckerResult, Issue, QualityMetrics

# Penalty subtracted from the agent-reported score
ISSUE_PENALTY: dict[Severity, float] = {
    Severity.ERROR: 0.10,
    Severity.WARNING: 0.05,
    Severity.INFO: 0.02,
}
SECURITY_PENALTY: dict[SecuritySeverity, float] = {
    SecuritySeverity.CRITICAL: 0.20,
    SecuritySeverity.HIGH: 0.15,
}
HIGH_IMPACT_PERFORMANCE_PENALTY = 0.10

# Penalty per issue within a single category score
CATEGORY_PENALTY: dict[Severity, float] = {
    Severity.ERROR: 0.15,
    Severity.WARNING: 0.08,
    Severity.INFO: 0.03,
}

CATEGORY_WEIGHTS: dict[IssueCategory, float] = {
    IssueCategory.SECURITY: 0.25,
    IssueCategory.PERFORMANCE: 0.20,
    IssueCategory.TYPE_SAFETY: 0.20,
    IssueCategory.CODE_QUALITY: 0.20,
    IssueCategory.BEST_PRACTICE: 0.15,
}

_GRADES: list[tuple[float, str, str]] = [
    (0.95, "A+", "Excellent"),
    (0.90, "A", "Great"),
    (0.85, "B+", "Good"),
    (0.80, "B", "Acceptable"),
    (0.70, "C", "Needs Work"),
    (0.60, "D", "Poor"),
]

# Scores are rounded so that e.g. 0.95 - 0.10 compares equal to 0.85
_PRECISION = 6


class Grade(NamedTuple):
    grade: str
    label: str


def _clamp(value: float) -> float:
    return round(min(1.0, max(0.0, value)), _PRECISION)


class QualityScorer:
    """Turns a Checker result into a penalty score and per-category metrics."""

    def score(self, review: CheckerResult) -> float:
        """Agent-reported score minus issue penalties, in [0, 1]. Error results score 0."""
        if review.is_error:
            return 0.0
        return _clamp(review.overall_score - self.penalty(review))

    def penalty(self, review: CheckerResult) -> float:
        total = sum(ISSUE_PENALTY[i.severity] for i in review.issues)
        total += sum(SECURITY_PENALTY.get(s.severity, 0.0) for s in review.security_issues)
        total += sum(
            HIGH_IMPACT_PERFORMANCE_PENALTY
            for p in review.performance_issues
            if p.impact == PerformanceImpact.HIGH
        )
        return total

    def category_score(self, issues: list[Issue]) -> float:
        if not issues:
            return 1.0
        return _clamp(1.0 - sum(CATEGORY_PENALTY[i.severity] for i in issues))

    def metrics(self, review: CheckerResult) -> QualityMetrics:
        """Per-category scores and their weighted overall score."""
        scores = {c: self.category_score(review.issues_in(c)) for c in IssueCategory}
        overall = sum(CATEGORY_WEIGHTS[c] * s for c, s in scores.items())
        return QualityMetrics(
            overall_score=_clamp(overall),
            security=scores[IssueCategory.SECURITY],
            performance=scores[IssueCategory.PERFORMANCE],
            type_safety=scores[IssueCategory.TYPE_SAFETY],
            code_quality=scores[IssueCategory.CODE_QUALITY],
            best_practices=scores[IssueCategory.BEST_PRACTICE],
        )

    @staticmethod
    def grade(score: float) -> Grade:
        for floor, letter, label in _GRADES:
            if score >= floor:
                return Grade(letter, label)
        return Grade("F", "Failing")

    @staticmethod
    def meets_threshold(score: float, threshold: float) -> bool:
        return round(score, _PRECISION) >= round(threshold, _PRECISION)

    @staticmethod
    def improvement(previous: float, current: float) -> float:
        return round(current - previous, _PRECISION)
