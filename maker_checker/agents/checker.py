"""Checker collaborator backed by a read-only Claude review agent."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from maker_checker.agents.base import CHECKER_MAX_TURNS, CHECKER_TOOLS, run_agent, sdk_options
from maker_checker.models.review import CheckerResult
from maker_checker.prompts.checker import CHECKER_SYSTEM_PROMPT, build_checker_prompt
from maker_checker.quality.parser import parse_review

if TYPE_CHECKING:
    from pathlib import Path

    from maker_checker.models.review import ChangeContext

log = logging.getLogger(__name__)


class ClaudeChecker:
    """Reviews a change and returns the parsed ``CheckerResult``."""

    def __init__(self, *, model: str, cwd: Path | None = None) -> None:
        self.model = model
        self.cwd = cwd

    async def review(self, context: ChangeContext) -> CheckerResult:
        options = sdk_options(
            system_prompt=CHECKER_SYSTEM_PROMPT,
            model=self.model,
            max_turns=CHECKER_MAX_TURNS,
            allowed_tools=CHECKER_TOOLS,
            cwd=self.cwd,
        )
        run = await run_agent("checker", build_checker_prompt(context), options)
        if run.had_error:
            return CheckerResult.failed("Checker agent failed; see logs", cost=run.cost)
        result = parse_review(run.output, cost=run.cost)
        log.info(
            "Review of %s#%d: score %.2f, %d issue(s), %d security finding(s)%s",
            context.repository, context.number, result.overall_score, len(result.issues),
            len(result.security_issues), " (low confidence)" if result.low_confidence else "",
        )
        return result
