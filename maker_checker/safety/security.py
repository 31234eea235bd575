"""Classification of security findings."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from maker_checker.models.enums import IssueCategory, SecuritySeverity, Severity
from maker_checker.models.review import Issue, SecurityIssue

if TYPE_CHECKING:
    from maker_checker.models.review import CheckerResult

# First matching category wins; keywords are matched against kind and description
SECURITY_CATEGORIES: dict[str, tuple[str, ...]] = {
    "Authentication & Authorization": ("auth", "permission", "access control", "jwt", "token"),
    "Input Validation": ("injection", "xss", "input", "sanitize", "validat"),
    "Data Protection": ("encrypt", "password", "secret", "credential", "api key"),
    "Configuration": ("hardcoded", "config", "environment", "cors", "csrf"),
    "Dependencies": ("dependency", "package", "vulnerab", "outdated"),
}


class SecurityCheck(BaseModel):
    critical: list[SecurityIssue] = Field(default_factory=list)
    high: list[SecurityIssue] = Field(default_factory=list)
    other: list[SecurityIssue] = Field(default_factory=list)

    @property
    def blocking_count(self) -> int:
        return len(self.critical) + len(self.high)

    @property
    def blocks_merge(self) -> bool:
        return self.blocking_count > 0


def check_security(review: CheckerResult) -> SecurityCheck:
    """Split security findings into critical, high and everything else."""
    check = SecurityCheck()
    for issue in review.security_issues:
        if issue.severity == SecuritySeverity.CRITICAL:
            check.critical.append(issue)
        elif issue.severity == SecuritySeverity.HIGH:
            check.high.append(issue)
        else:
            check.other.append(issue)
    return check


def as_blocking_issue(finding: SecurityIssue) -> Issue:
    """Error-severity ``Issue`` standing in for a critical/high security finding."""
    return Issue(
        category=IssueCategory.SECURITY,
        severity=Severity.ERROR,
        file=finding.file,
        line=finding.line,
        message=f"[{finding.severity.upper()}] {finding.description}",
        suggestion=finding.recommendation,
    )


def categorize_security_issues(issues: list[SecurityIssue]) -> dict[str, list[SecurityIssue]]:
    categories: dict[str, list[SecurityIssue]] = {}
    for issue in issues:
        text = f"{issue.kind} {issue.description}".lower()
        name = next(
            (cat for cat, words in SECURITY_CATEGORIES.items() if any(w in text for w in words)),
            "Other",
        )
        categories.setdefault(name, []).append(issue)
    return categories


def security_summary(issues: list[SecurityIssue]) -> str:
    """One-line count per category, e.g. ``Input Validation: 2, Other: 1``."""
    return ", ".join(f"{cat}: {len(found)}" for cat, found in categorize_security_issues(issues).items())
