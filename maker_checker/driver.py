"""Async driver: feeds collaborator results into the state machine and executes its commands."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import anyio

from maker_checker.errors import CollaboratorError
from maker_checker.machine import (
    AddLabel,
    CheckerCompleted,
    Command,
    MakerCompleted,
    Merge,
    Notify,
    PostComment,
    RecordCost,
    RunChecker,
    RunMaker,
    Start,
    StateMachine,
    StopRequested,
    Transition,
)
from maker_checker.models.enums import CIStatus
from maker_checker.models.review import CheckerResult, MakerResult
from maker_checker.models.state import Idle, IterationState, new_state
from maker_checker.protocols import Notification

if TYPE_CHECKING:
    from maker_checker.config import LoopConfig
    from maker_checker.models.review import ChangeContext
    from maker_checker.protocols import Checker, Maker, Notifier, SourceControl
    from maker_checker.safety.cost_ledger import CostLedger
    from maker_checker.store import StateStore

log = logging.getLogger(__name__)


@dataclass
class LoopContext:
    """Everything one loop run needs; passed explicitly, never global."""

    checker: Checker
    maker: Maker
    source_control: SourceControl
    config: LoopConfig
    ledger: CostLedger
    store: StateStore
    notifier: Notifier | None = None
    stop: anyio.Event | None = None
    # Makers edit one shared checkout, so only one runs at a time across loops.
    maker_lock: anyio.Lock = field(default_factory=anyio.Lock)


async def run_change(ctx: LoopContext, change_id: int) -> IterationState:
    """Run (or resume) the loop for one change until it reaches a terminal phase.

    State is saved after every transition, so an interrupted run picks up
    at the phase it was in. Raises ``CollaboratorError`` only when the
    change itself cannot be fetched.
    """
    machine = StateMachine(ctx.config)
    context = await ctx.source_control.get_context(change_id)
    repository = context.repository

    state = ctx.store.load(repository, change_id)
    if state is None:
        state = new_state(repository, change_id, max_iterations=ctx.config.max_iterations)
        ctx.store.save(state)
    if state.is_terminal:
        log.info("%s#%d already %s, nothing to do", repository, change_id, state.current_phase)
        return state

    if isinstance(state.phase, Idle):
        start = Start(
            period=ctx.ledger.check_period_cap(),
            change_spent=ctx.ledger.change_total(repository, change_id),
        )
        state, call = await _advance(ctx, machine.step(state, start))
    else:
        log.info("%s#%d: resuming in phase %s", repository, change_id, state.current_phase)
        call = _next_call(machine.resume_commands(state))

    first = True
    while call is not None:
        if isinstance(call, RunChecker):
            if _stop_requested(ctx, state):
                ctx.store.clear_stop(repository, change_id)
                state, call = await _advance(ctx, machine.step(state, StopRequested()))
                continue
            if not first:
                context = await _refresh_context(ctx, context)
            event: CheckerCompleted | MakerCompleted = await _run_checker(ctx, context)
        else:
            event = await _run_maker(ctx, context, call)
        first = False
        state, call = await _advance(ctx, machine.step(state, event))

    log.info("%s#%d finished in phase %s", repository, change_id, state.current_phase)
    return state


# ---------------------------------------------------------------------------
# Collaborator calls
# ---------------------------------------------------------------------------


async def _run_checker(ctx: LoopContext, context: ChangeContext) -> CheckerCompleted:
    timeout = ctx.config.checker_timeout
    t0 = time.monotonic()
    try:
        with anyio.fail_after(timeout):
            result = await ctx.checker.review(context)
    except TimeoutError:
        log.error("Checker timed out after %.0fs", timeout)
        result = CheckerResult.failed(str(CollaboratorError("checker", f"timed out after {timeout:.0f}s")))
    except Exception as exc:
        log.exception("Checker call failed")
        result = CheckerResult.failed(str(CollaboratorError("checker", str(exc))))
    duration = time.monotonic() - t0

    ci_status = CIStatus.ERROR
    if not result.is_error:
        ci_status = await _ci_status(ctx, context)
    return CheckerCompleted(result=result, ci_status=ci_status, duration_seconds=duration)


async def _run_maker(ctx: LoopContext, context: ChangeContext, call: RunMaker) -> MakerCompleted:
    timeout = ctx.config.maker_timeout
    async with ctx.maker_lock:
        t0 = time.monotonic()
        try:
            with anyio.fail_after(timeout):
                result = await ctx.maker.fix(context, call.issues, call.attempt)
        except TimeoutError:
            log.error("Maker timed out after %.0fs", timeout)
            result = MakerResult.failed(str(CollaboratorError("maker", f"timed out after {timeout:.0f}s")))
        except Exception as exc:
            log.exception("Maker call failed")
            result = MakerResult.failed(str(CollaboratorError("maker", str(exc))))
        duration = time.monotonic() - t0
    return MakerCompleted(
        result=result,
        duration_seconds=duration,
        period=ctx.ledger.check_period_cap(),
    )


async def _ci_status(ctx: LoopContext, context: ChangeContext) -> CIStatus:
    try:
        return await ctx.source_control.get_ci_status(context.head_ref)
    except Exception:
        log.exception("Failed to fetch CI status for %s", context.head_ref)
        return CIStatus.ERROR


async def _refresh_context(ctx: LoopContext, context: ChangeContext) -> ChangeContext:
    """Re-fetch the change so the next review sees the Maker's commits."""
    try:
        return await ctx.source_control.get_context(context.number)
    except Exception:
        log.exception("Failed to refresh %s#%d, reusing previous context", context.repository, context.number)
        return context


def _stop_requested(ctx: LoopContext, state: IterationState) -> bool:
    if ctx.stop is not None and ctx.stop.is_set():
        return True
    return ctx.store.stop_requested(state.repository, state.change_id)


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


def _next_call(commands: list[Command]) -> RunChecker | RunMaker | None:
    return next((c for c in commands if isinstance(c, RunChecker | RunMaker)), None)


async def _advance(ctx: LoopContext, transition: Transition) -> tuple[IterationState, RunChecker | RunMaker | None]:
    """Persist the new state, run its side effects, and return the next collaborator call."""
    state = transition.state
    ctx.store.save(state)
    for command in transition.commands:
        if not isinstance(command, RunChecker | RunMaker):
            await execute(ctx, state, command)
    return state, _next_call(transition.commands)


async def execute(ctx: LoopContext, state: IterationState, command: Command) -> None:
    """Carry out one side-effect command. Failures are logged, never raised."""
    change_id = state.change_id
    try:
        if isinstance(command, RecordCost):
            ctx.ledger.record(command.event)
        elif isinstance(command, PostComment):
            await ctx.source_control.comment(change_id, command.text)
        elif isinstance(command, AddLabel):
            await ctx.source_control.label(change_id, command.name)
        elif isinstance(command, Merge):
            if not await ctx.source_control.merge(change_id):
                log.warning("%s#%d: merge was not completed", state.repository, change_id)
        elif isinstance(command, Notify):
            if ctx.notifier is not None and command.kind in ctx.config.notify_on:
                await ctx.notifier.send(Notification(command.kind, state.repository, change_id, command.message))
    except Exception:
        log.exception("%s#%d: %s failed (non-fatal)", state.repository, change_id, type(command).__name__)
