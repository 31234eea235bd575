"""Shared plumbing for running Claude agents through the Agent SDK."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import claude_agent_sdk
from claude_agent_sdk import AssistantMessage, ClaudeAgentOptions, ResultMessage, TextBlock

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

log = logging.getLogger(__name__)

CHECKER_TOOLS = ["Bash", "Read", "Glob", "Grep"]
MAKER_TOOLS = ["Bash", "Write", "Edit", "Read", "Glob", "Grep"]

CHECKER_MAX_TURNS = 30
MAKER_MAX_TURNS = 60

# Unset CLAUDECODE so spawned SDK subprocesses don't refuse to launch
# inside another agent session.
SDK_ENV = {"CLAUDECODE": ""}


@dataclass(frozen=True)
class AgentRun:
    """Text and spend of one agent session."""

    output: str
    cost: float
    had_error: bool


def sdk_options(
    *,
    system_prompt: str,
    model: str,
    max_turns: int,
    allowed_tools: list[str],
    cwd: Path | None = None,
) -> ClaudeAgentOptions:
    """Build ClaudeAgentOptions with shared defaults."""
    return ClaudeAgentOptions(
        system_prompt=system_prompt,
        model=model,
        max_turns=max_turns,
        allowed_tools=allowed_tools,
        permission_mode="bypassPermissions",
        cwd=cwd,
        env=SDK_ENV,
    )


async def collect_agent_output(stream: AsyncIterator[claude_agent_sdk.Message]) -> tuple[str, float, bool]:
    """Join assistant text blocks; take cost and error flag from the final ResultMessage."""
    text_parts: list[str] = []
    cost = 0.0
    is_error = False
    async for message in stream:
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock):
                    text_parts.append(block.text)
        elif isinstance(message, ResultMessage):
            cost = message.total_cost_usd or 0.0
            if message.is_error:
                log.error(
                    "SDK ResultMessage is_error=True, subtype=%s, result=%s",
                    message.subtype,
                    (message.result or "")[:500],
                )
                is_error = True
            elif not text_parts and message.result:
                text_parts.append(message.result)
    return "\n".join(text_parts), cost, is_error


async def run_agent(name: str, prompt: str, options: ClaudeAgentOptions) -> AgentRun:
    """Run one agent session. SDK failures come back as ``had_error=True``, never raised."""
    log.info("Running %s agent...", name)
    try:
        stream = claude_agent_sdk.query(prompt=prompt, options=options)
        output, cost, is_error = await collect_agent_output(stream)
    except Exception:
        log.exception("%s agent failed", name.capitalize())
        return AgentRun(output="", cost=0.0, had_error=True)
    log.info("%s finished. Output length: %d chars, cost $%.4f", name.capitalize(), len(output), cost)
    return AgentRun(output=output, cost=cost, had_error=is_error)
