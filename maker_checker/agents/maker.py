"""Maker collaborator backed by a Claude agent with edit tools."""

from __future__ import annotations

from typing import TYPE_CHECKING

from maker_checker.agents.base import MAKER_MAX_TURNS, MAKER_TOOLS, run_agent, sdk_options
from maker_checker.models.review import MakerResult
from maker_checker.prompts.maker import MAKER_SYSTEM_PROMPT, build_maker_prompt
from maker_checker.quality.parser import parse_fix

if TYPE_CHECKING:
    from pathlib import Path

    from maker_checker.models.review import ChangeContext, Issue


class ClaudeMaker:
    def __init__(self, *, model: str, cwd: Path | None = None) -> None:
        self.model = model
        self.cwd = cwd

    async def fix(self, context: ChangeContext, issues: list[Issue], attempt: int) -> MakerResult:
        options = sdk_options(
            system_prompt=MAKER_SYSTEM_PROMPT,
            model=self.model,
            max_turns=MAKER_MAX_TURNS,
            allowed_tools=MAKER_TOOLS,
            cwd=self.cwd,
        )
        run = await run_agent("maker", build_maker_prompt(context, issues, attempt), options)
        if run.had_error:
            return MakerResult.failed("Maker agent failed; see logs", cost=run.cost)
        return parse_fix(run.output, cost=run.cost)
