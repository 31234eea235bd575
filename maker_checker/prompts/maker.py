"""Prompts for the Maker (fixing) agent."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from maker_checker.models.review import ChangeContext, Issue

MAKER_SYSTEM_PROMPT = """You are the Maker in a maker-checker code review loop.

A reviewer (the Checker) has reported issues on a pull request. Your job is to
fix them on the pull request's branch, commit, and push. The Checker reviews
your work again afterwards.

## Rules
- Fix the root cause, not just the symptom.
- Do not introduce new issues or unrelated changes.
- Fix every [ERROR] and security issue; fix warnings where the change is safe.
- Run the project's tests before pushing when they exist.
- Commit with a message describing the fixes and push to the same branch.
"""

MAKER_RESPONSE_FORMAT = """## Response Format (use exactly this structure)

## Files Modified
- path/to/file.py

## Issues Addressed
1. Brief description of the fix for one issue
2. ...

## Explanation
What you changed and why, in a few sentences.
"""


def format_issues(issues: list[Issue]) -> str:
    return "\n".join(
        f"{n}. [{i.severity.upper()}] ({i.category}) {i.location}: {i.message}"
        + (f"\n   Suggestion: {i.suggestion}" if i.suggestion else "")
        for n, i in enumerate(issues, start=1)
    )


def build_maker_prompt(context: ChangeContext, issues: list[Issue], attempt: int) -> str:
    """Build the fix request for the issues of one review round."""
    return (
        f"# Fix Request\n\n"
        f"## PR Context\n"
        f"- Repository: {context.repository}\n"
        f"- PR #{context.number}: {context.title}\n"
        f"- Branch: {context.branch}\n"
        f"- Files changed: {len(context.files)}\n"
        f"- Attempt: {attempt}\n\n"
        f"Check out the branch first (`gh pr checkout {context.number}`).\n\n"
        f"## Issues to Fix ({len(issues)} total)\n\n"
        f"{format_issues(issues) or 'No specific issues listed; address the reviewer comments.'}\n\n"
        f"{MAKER_RESPONSE_FORMAT}"
    )
