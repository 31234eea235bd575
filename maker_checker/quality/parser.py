"""Response-parser boundary: free-form agent text to structured results.

Checker output is recognised in this order:

1. A JSON object with ``overall_score``, ``issues``, ``security_issues``,
   ``performance_issues`` and ``recommendations`` keys.
2. The markdown section grammar the review prompt asks for::

       Overall: 0.82

       #### Security Issues
       - [CRITICAL] `src/db.py:42` SQL built from user input. Suggestion: use parameters
       #### Performance Issues
       - None found
       #### Type Safety Issues
       #### Code Quality Issues
       #### Best Practice Issues

       ### Recommendations
       1. Add tests for the query builder

3. Anything else yields zero issues, score 0.0 and ``low_confidence=True``.

Neither parser raises. Scores given as percentages are divided by 100 and
every score is clamped to [0, 1].
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from maker_checker.models.enums import (
    CallStatus,
    IssueCategory,
    PerformanceImpact,
    SecuritySeverity,
    Severity,
)
from maker_checker.models.review import (
    CheckerResult,
    Issue,
    MakerResult,
    PerformanceIssue,
    SecurityIssue,
)
from maker_checker.quality.json_parsing import extract_json

log = logging.getLogger(__name__)

_SCORE_RE = re.compile(
    r"^\s*\**Overall(?:\s+(?:score|quality))?\**\s*:\s*\**\s*(\d+(?:\.\d+)?)\s*(%)?",
    re.IGNORECASE | re.MULTILINE,
)
_SECTION_RE = re.compile(r"^#{2,4}\s+(.+?)\s*$", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(.*)$")
_TAG_RE = re.compile(r"^\[(\w+)\]\s*|^\*\*(\w+)\*\*:?\s*")
_LOCATION_RE = re.compile(r"`([^`\s]+?):(\d+)`")
_SUGGESTION_RE = re.compile(r"\s*(?:Suggestion|Fix):\s*(.*)$", re.IGNORECASE)
_NONE_RE = re.compile(r"^(?:none|n/a|no issues)\b", re.IGNORECASE)

_ISSUE_SECTIONS: dict[str, IssueCategory] = {
    "security issues": IssueCategory.SECURITY,
    "performance issues": IssueCategory.PERFORMANCE,
    "type safety issues": IssueCategory.TYPE_SAFETY,
    "code quality issues": IssueCategory.CODE_QUALITY,
    "best practice issues": IssueCategory.BEST_PRACTICE,
    "best practices issues": IssueCategory.BEST_PRACTICE,
}

_TAG_SEVERITY: dict[str, Severity] = {
    "critical": Severity.ERROR,
    "high": Severity.ERROR,
    "error": Severity.ERROR,
    "medium": Severity.WARNING,
    "warning": Severity.WARNING,
    "low": Severity.INFO,
    "info": Severity.INFO,
}

_TAG_SECURITY: dict[str, SecuritySeverity] = {
    "critical": SecuritySeverity.CRITICAL,
    "high": SecuritySeverity.HIGH,
    "error": SecuritySeverity.HIGH,
    "medium": SecuritySeverity.MEDIUM,
    "warning": SecuritySeverity.MEDIUM,
    "low": SecuritySeverity.LOW,
    "info": SecuritySeverity.LOW,
}

_TAG_IMPACT: dict[str, PerformanceImpact] = {
    "critical": PerformanceImpact.HIGH,
    "high": PerformanceImpact.HIGH,
    "error": PerformanceImpact.HIGH,
    "medium": PerformanceImpact.MEDIUM,
    "warning": PerformanceImpact.MEDIUM,
    "low": PerformanceImpact.LOW,
    "info": PerformanceImpact.LOW,
}


def normalize_score(value: float) -> float:
    """Map a reported score onto [0, 1], treating values in (1, 100] as percentages."""
    if value > 1.0 and value <= 100.0:
        value = value / 100.0
    return min(1.0, max(0.0, value))


def _sections(text: str) -> dict[str, str]:
    """Split markdown into ``{lowercased heading: body}``."""
    out: dict[str, str] = {}
    matches = list(_SECTION_RE.finditer(text))
    for idx, match in enumerate(matches):
        end = matches[idx + 1].start() if idx + 1 < len(matches) else len(text)
        heading = match.group(1).strip().strip("*").strip().lower()
        out.setdefault(heading, text[match.end() : end])
    return out


def _bullets(body: str) -> list[str]:
    items: list[str] = []
    for line in body.splitlines():
        match = _BULLET_RE.match(line)
        if match is None:
            continue
        item = match.group(1).strip()
        if item and not _NONE_RE.match(item):
            items.append(item)
    return items


# ---------------------------------------------------------------------------
# Checker output
# ---------------------------------------------------------------------------


def parse_review(text: str, *, cost: float = 0.0) -> CheckerResult:
    """Parse Checker output into a ``CheckerResult``. Never raises."""
    try:
        data = extract_json(text)
        if data is not None and _looks_like_review(data):
            return _review_from_json(data, text, cost)
        return _review_from_markdown(text, cost)
    except Exception:
        log.exception("Unexpected failure parsing Checker output, treating as low confidence")
        return _unparseable(text, cost)


def _unparseable(text: str, cost: float) -> CheckerResult:
    return CheckerResult(
        status=CallStatus.SUCCESS,
        overall_score=0.0,
        cost=cost,
        low_confidence=True,
        raw_response=text,
    )


def _looks_like_review(data: dict[str, Any]) -> bool:
    return any(k in data for k in ("overall_score", "overallScore", "issues", "security_issues"))


def _review_from_json(data: dict[str, Any], text: str, cost: float) -> CheckerResult:
    raw_score = data.get("overall_score", data.get("overallScore"))
    low_confidence = False
    try:
        score = normalize_score(float(raw_score))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        log.warning("Checker JSON has no usable overall_score: %r", raw_score)
        score = 0.0
        low_confidence = True

    issues, bad_issues = _models(Issue, data.get("issues"), _issue_aliases, _fallback_issue)
    security, bad_security = _models(
        SecurityIssue, data.get("security_issues", data.get("securityIssues")), _security_aliases, _fallback_security
    )
    performance, bad_performance = _models(
        PerformanceIssue,
        data.get("performance_issues", data.get("performanceIssues")),
        _performance_aliases,
        _fallback_performance,
    )
    if bad_issues or bad_security or bad_performance:
        low_confidence = True
    recommendations = [str(r) for r in data.get("recommendations") or [] if str(r).strip()]
    return CheckerResult(
        issues=issues,
        overall_score=score,
        security_issues=security,
        performance_issues=performance,
        recommendations=recommendations,
        cost=cost,
        low_confidence=low_confidence,
        raw_response=text,
    )


def _location(out: dict[str, Any]) -> dict[str, Any]:
    """Coerce ``file``/``line`` to the model's types; agents often send nulls."""
    try:
        out["line"] = max(0, int(out.get("line") or 0))
    except (TypeError, ValueError):
        out["line"] = 0
    file = out.get("file")
    out["file"] = str(file) if file else "unknown"
    return out


def _issue_aliases(item: dict[str, Any]) -> dict[str, Any]:
    out = _location(dict(item))
    if "message" not in out and "description" in out:
        out["message"] = out.pop("description")
    if "category" not in out and "type" in out:
        out["category"] = out.pop("type")
    category = str(out.get("category", "")).lower().replace(" ", "_").rstrip("s")
    try:
        out["category"] = IssueCategory(category)
    except ValueError:
        out["category"] = IssueCategory.CODE_QUALITY
    default = Severity.ERROR if out["category"] == IssueCategory.SECURITY else Severity.WARNING
    out["severity"] = _TAG_SEVERITY.get(str(out.get("severity", "")).lower(), default)
    return out


def _security_aliases(item: dict[str, Any]) -> dict[str, Any]:
    out = _location(dict(item))
    if "kind" not in out and "type" in out:
        out["kind"] = out.pop("type")
    if "description" not in out and "message" in out:
        out["description"] = out.pop("message")
    # unknown or missing severities count as blocking
    out["severity"] = _TAG_SECURITY.get(str(out.get("severity", "")).lower(), SecuritySeverity.HIGH)
    return out


def _performance_aliases(item: dict[str, Any]) -> dict[str, Any]:
    out = _location(dict(item))
    if "kind" not in out and "type" in out:
        out["kind"] = out.pop("type")
    if "description" not in out and "message" in out:
        out["description"] = out.pop("message")
    out["impact"] = _TAG_IMPACT.get(str(out.get("impact", "")).lower(), PerformanceImpact.MEDIUM)
    return out


def _fallback_issue(item: Any) -> Issue:
    return Issue(category=IssueCategory.CODE_QUALITY, severity=Severity.ERROR, message=str(item))


def _fallback_security(item: Any) -> SecurityIssue:
    return SecurityIssue(severity=SecuritySeverity.HIGH, description=str(item))


def _fallback_performance(item: Any) -> PerformanceIssue:
    return PerformanceIssue(impact=PerformanceImpact.MEDIUM, description=str(item))


def _models(model: Any, items: Any, normalize: Any, fallback: Any) -> tuple[list[Any], int]:
    """Validate a list of dicts into *model*.

    Entries that don't fit are kept in the conservative form *fallback* builds
    from their text, never dropped. Returns the models and how many needed it.
    """
    if not isinstance(items, list):
        return [], 0
    out = []
    recovered = 0
    for item in items:
        if isinstance(item, dict):
            try:
                out.append(model.model_validate(normalize(item)))
                continue
            except ValidationError as exc:
                log.warning("Malformed %s entry %r, keeping it conservatively: %s", model.__name__, item, exc)
        elif not str(item).strip():
            continue
        out.append(fallback(item))
        recovered += 1
    return out, recovered


def _review_from_markdown(text: str, cost: float) -> CheckerResult:
    sections = _sections(text)
    issue_sections = {h: body for h, body in sections.items() if h in _ISSUE_SECTIONS}
    score_match = _SCORE_RE.search(text)

    if score_match is None and not issue_sections:
        log.warning("Checker output matched no known grammar (%d chars)", len(text))
        return _unparseable(text, cost)

    score = 0.0
    if score_match is not None:
        score = float(score_match.group(1))
        score = normalize_score(score / 100.0 if score_match.group(2) else score)
    low_confidence = score_match is None or not issue_sections
    if low_confidence:
        log.warning(
            "Checker output is incomplete (score=%s, sections=%d), marking low confidence",
            score_match is not None,
            len(issue_sections),
        )

    issues: list[Issue] = []
    security: list[SecurityIssue] = []
    performance: list[PerformanceIssue] = []
    for heading, body in issue_sections.items():
        category = _ISSUE_SECTIONS[heading]
        for item in _bullets(body):
            issue, tag = _issue_from_bullet(item, category)
            issues.append(issue)
            if category == IssueCategory.SECURITY:
                security.append(
                    SecurityIssue(
                        severity=_TAG_SECURITY.get(tag, SecuritySeverity.HIGH),
                        description=issue.message,
                        file=issue.file,
                        line=issue.line,
                        recommendation=issue.suggestion,
                    )
                )
            elif category == IssueCategory.PERFORMANCE:
                performance.append(
                    PerformanceIssue(
                        impact=_TAG_IMPACT.get(tag, PerformanceImpact.MEDIUM),
                        description=issue.message,
                        file=issue.file,
                        line=issue.line,
                        suggestion=issue.suggestion,
                    )
                )

    recommendations: list[str] = []
    for heading, body in sections.items():
        if heading.startswith("recommendation"):
            recommendations.extend(_bullets(body))

    return CheckerResult(
        issues=issues,
        overall_score=score,
        security_issues=security,
        performance_issues=performance,
        recommendations=recommendations,
        cost=cost,
        low_confidence=low_confidence,
        raw_response=text,
    )


def _issue_from_bullet(item: str, category: IssueCategory) -> tuple[Issue, str]:
    """Build an Issue from one bullet; also return the lowercased severity tag ('' if none)."""
    tag = ""
    tag_match = _TAG_RE.match(item)
    if tag_match is not None:
        candidate = (tag_match.group(1) or tag_match.group(2)).lower()
        if candidate in _TAG_SEVERITY:
            tag = candidate
            item = item[tag_match.end() :]

    file, line = "unknown", 0
    loc = _LOCATION_RE.search(item)
    if loc is not None:
        file, line = loc.group(1), int(loc.group(2))

    suggestion = ""
    sugg = _SUGGESTION_RE.search(item)
    if sugg is not None:
        suggestion = sugg.group(1).strip()
        item = item[: sugg.start()]

    default = Severity.ERROR if category == IssueCategory.SECURITY else Severity.WARNING
    issue = Issue(
        category=category,
        severity=_TAG_SEVERITY.get(tag, default),
        file=file,
        line=line,
        message=item.strip() or "(no description)",
        suggestion=suggestion,
    )
    return issue, tag


# ---------------------------------------------------------------------------
# Maker output
# ---------------------------------------------------------------------------


def parse_fix(text: str, *, cost: float = 0.0) -> MakerResult:
    """Parse Maker output (``## Files Modified`` / ``## Issues Addressed`` / ``## Explanation``)."""
    try:
        data = extract_json(text)
        if data is not None and ("files_modified" in data or "issues_addressed" in data):
            return MakerResult(
                files_modified=[str(f) for f in data.get("files_modified") or []],
                issues_addressed=max(0, int(data.get("issues_addressed") or 0)),  # type: ignore[call-overload]
                explanation=str(data.get("explanation") or ""),
                cost=cost,
            )

        sections = _sections(text)
        files = [f.strip("`").strip() for f in _bullets(sections.get("files modified", ""))]
        addressed = _numbered(sections.get("issues addressed", ""))
        explanation = sections.get("explanation", "").strip()
        if not sections:
            log.warning("Maker output has no recognised sections (%d chars)", len(text))
        return MakerResult(
            files_modified=[f for f in files if f],
            issues_addressed=addressed,
            explanation=explanation or "Fixed identified issues",
            cost=cost,
        )
    except Exception:
        log.exception("Unexpected failure parsing Maker output")
        return MakerResult(explanation="Maker output could not be parsed", cost=cost)


def _numbered(body: str) -> int:
    return sum(1 for line in body.splitlines() if re.match(r"^\s*\d+[.)]\s+\S", line))
