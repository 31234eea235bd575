"""Operator commands received as free text, usually a comment on the change.

Recognised commands are the first word of the text, with or without a
leading ``/`` and in any case:

- ``retry``: discard the saved state and run the loop again (spend already
  recorded in the cost ledger is kept).
- ``stop``: ask a running loop to halt before its next iteration.
- ``status``: report iterations, scores, convergence and spend.
- ``force-merge``: merge without consulting the gates, logged as an override.
- ``debug``: dump the saved state as JSON.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from maker_checker.models.enums import NotificationKind
from maker_checker.models.state import FixerRunning
from maker_checker.protocols import Notification
from maker_checker.quality.scorer import QualityScorer
from maker_checker.safety.convergence import ConvergenceDetector
from maker_checker.safety.gates import QualityGates
from maker_checker.safety.limiter import IterationLimiter

if TYPE_CHECKING:
    from maker_checker.driver import LoopContext
    from maker_checker.models.state import IterationState

log = logging.getLogger(__name__)


class OperatorCommand(StrEnum):
    RETRY = "retry"
    STOP = "stop"
    STATUS = "status"
    FORCE_MERGE = "force-merge"
    DEBUG = "debug"


@dataclass(frozen=True)
class CommandOutcome:
    command: OperatorCommand
    reply: str
    run_loop: bool = False


def parse_command(text: str) -> OperatorCommand | None:
    """Return the command named by the first word of *text*, if any."""
    words = text.strip().split()
    if not words:
        return None
    word = words[0].lower().removeprefix("/")
    try:
        return OperatorCommand(word)
    except ValueError:
        return None


async def handle_command(
    ctx: LoopContext,
    repository: str,
    change_id: int,
    command: OperatorCommand,
    *,
    actor: str = "operator",
) -> CommandOutcome:
    """Execute *command* for one change and post the reply as a comment.

    ``run_loop`` on the outcome tells the caller to start the loop afterwards.
    """
    state = ctx.store.load(repository, change_id)
    if command == OperatorCommand.RETRY:
        outcome = _retry(ctx, repository, change_id, state)
    elif command == OperatorCommand.STOP:
        outcome = _stop(ctx, repository, change_id, state)
    elif command == OperatorCommand.STATUS:
        outcome = CommandOutcome(command, status_report(ctx, state) if state else _no_state(repository, change_id))
    elif command == OperatorCommand.FORCE_MERGE:
        outcome = await _force_merge(ctx, repository, change_id, state, actor)
    else:
        dump = state.model_dump_json(indent=2) if state else "null"
        outcome = CommandOutcome(command, f"maker-checker debug state:\n\n```json\n{dump}\n```")

    try:
        await ctx.source_control.comment(change_id, outcome.reply)
    except Exception:
        log.exception("Failed to post reply to %s on %s#%d", command, repository, change_id)
    return outcome


def _no_state(repository: str, change_id: int) -> str:
    return f"maker-checker: no loop has run yet for {repository}#{change_id}."


def _retry(ctx: LoopContext, repository: str, change_id: int, state: IterationState | None) -> CommandOutcome:
    spent = ctx.ledger.change_total(repository, change_id)
    if ctx.ledger.has_exceeded_change_cap(repository, change_id):
        log.warning("Refusing retry of %s#%d: $%.2f already spent", repository, change_id, spent)
        return CommandOutcome(
            OperatorCommand.RETRY,
            f"maker-checker: this change has already used its cost cap "
            f"(${spent:.2f} of ${ctx.config.max_cost_per_change:.2f}). "
            f"Raise max_cost_per_change to retry, or finish the change by hand.",
        )
    if state is not None:
        log.info("Resetting %s#%d from phase %s", repository, change_id, state.current_phase)
    ctx.store.delete(repository, change_id)
    return CommandOutcome(
        OperatorCommand.RETRY,
        f"maker-checker: state reset, restarting the loop. "
        f"Previously spent on this change: ${spent:.2f}.",
        run_loop=True,
    )


def _stop(ctx: LoopContext, repository: str, change_id: int, state: IterationState | None) -> CommandOutcome:
    if state is not None and state.is_terminal:
        return CommandOutcome(
            OperatorCommand.STOP,
            f"maker-checker: loop is already {state.current_phase}; nothing to stop.",
        )
    ctx.store.request_stop(repository, change_id)
    if ctx.stop is not None:
        ctx.stop.set()
    log.info("Stop requested for %s#%d", repository, change_id)
    return CommandOutcome(
        OperatorCommand.STOP,
        "maker-checker: stop requested. The loop halts before its next iteration; "
        "comment `retry` to start over.",
    )


async def _force_merge(
    ctx: LoopContext,
    repository: str,
    change_id: int,
    state: IterationState | None,
    actor: str,
) -> CommandOutcome:
    score = f"{state.quality_score:.2f}" if state else "n/a"
    log.warning(
        "OVERRIDE: force-merge of %s#%d requested by %s (quality %s, gates bypassed)",
        repository, change_id, actor, score,
    )
    merged = await ctx.source_control.merge(change_id)
    message = f"Force-merge by {actor} ({'merged' if merged else 'merge failed'}), quality gates bypassed"
    if ctx.notifier is not None:
        try:
            await ctx.notifier.send(Notification(NotificationKind.OVERRIDE, repository, change_id, message))
        except Exception:
            log.exception("Failed to send override notification for %s#%d", repository, change_id)
    reply = (
        f"maker-checker: OVERRIDE. {message}. Quality score at override: {score}."
        if merged
        else f"maker-checker: OVERRIDE failed. {message}. Next: check branch protection and merge manually."
    )
    return CommandOutcome(OperatorCommand.FORCE_MERGE, reply)


def status_report(ctx: LoopContext, state: IterationState) -> str:
    """Multi-line status summary for one change."""
    config = ctx.config
    stats = state.statistics()
    detector = ConvergenceDetector(config.stagnation_window)
    convergence = detector.detect(state.history)
    projection = detector.project(state, config.quality_threshold)
    limiter = IterationLimiter(config)
    costs = ctx.ledger.summary()
    grade = QualityScorer.grade(state.quality_score)

    lines = [
        f"maker-checker status for {state.repository}#{state.change_id}",
        "",
        f"- Phase: {state.current_phase}",
        f"- Iteration: {state.current_iteration}/{state.max_iterations}",
        f"- Quality: {state.quality_score:.2f} (threshold {config.quality_threshold:.2f}, "
        f"change {stats.quality_improvement:+.2f})",
        f"- Grade: {grade.grade} ({grade.label})",
        f"- Convergence: {convergence.status} ({convergence.confidence:.0%} confidence)",
        f"- Projection: {projection.reason}",
        f"- Issues found/fixed: {stats.total_issues_found}/{stats.total_issues_fixed}",
        f"- Cost: ${state.lifetime_cost:.2f} of ${config.max_cost_per_change:.2f} "
        f"(period {costs.period}: ${costs.total:.2f} of ${costs.limit:.2f})",
        f"- Recommendation: {limiter.recommendation(state, config.quality_threshold)}",
    ]
    if isinstance(state.phase, FixerRunning):
        effort = QualityGates(config).estimate_effort_to_pass(state.phase.review)
        lines.append(f"- Effort to pass: {effort.effort} ({effort.description})")
    reason = getattr(state.phase, "reason", "")
    if reason:
        lines.append(f"- Reason: {reason}")
    lines.extend(f"- Cost note: {r}" for r in costs.recommendations)
    return "\n".join(lines)
