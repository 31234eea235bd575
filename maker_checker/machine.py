"""Pure iteration state machine.

``step(state, event)`` returns the next state plus the commands the driver
must execute (collaborator calls, cost records, comments, labels, merges,
notifications). No I/O happens here, so every transition is unit-testable
with plain values.

Phases::

    Idle -> CheckerRunning -> Converged | FixerRunning | Exhausted | Failed
    FixerRunning -> CheckerRunning | Exhausted | Failed

Converged, Exhausted and Failed are terminal; stepping a terminal state
raises ``StateFrozenError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from maker_checker.errors import StateFrozenError
from maker_checker.models.cost import CostEvent
from maker_checker.models.enums import CIStatus, ConvergenceStatus, NotificationKind, Severity
from maker_checker.models.state import (
    CheckerRunning,
    Converged,
    Exhausted,
    Failed,
    FixerRunning,
    FixSummary,
    Idle,
    IterationRecord,
    IterationState,
    ReviewSummary,
)
from maker_checker.quality.scorer import QualityScorer
from maker_checker.safety.convergence import ConvergenceDetector
from maker_checker.safety.gates import MergeDecider, QualityGates
from maker_checker.safety.limiter import IterationLimiter, detect_suspicious_patterns
from maker_checker.safety.security import check_security, security_summary

if TYPE_CHECKING:
    from maker_checker.config import LoopConfig
    from maker_checker.models.decision import MergeDecision, PeriodCapStatus
    from maker_checker.models.review import CheckerResult, Issue, MakerResult

log = logging.getLogger(__name__)

STOP_REASON = "stopped by operator"


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Start:
    """Begin (or continue) the loop from Idle."""

    at: datetime = field(default_factory=_now)
    period: PeriodCapStatus | None = None
    change_spent: float = 0.0


@dataclass(frozen=True)
class CheckerCompleted:
    result: CheckerResult
    ci_status: CIStatus
    at: datetime = field(default_factory=_now)
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class MakerCompleted:
    result: MakerResult
    at: datetime = field(default_factory=_now)
    duration_seconds: float = 0.0
    period: PeriodCapStatus | None = None


@dataclass(frozen=True)
class StopRequested:
    at: datetime = field(default_factory=_now)
    reason: str = STOP_REASON


Event = Start | CheckerCompleted | MakerCompleted | StopRequested


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunChecker:
    iteration: int


@dataclass(frozen=True)
class RunMaker:
    iteration: int
    issues: list[Issue]
    attempt: int


@dataclass(frozen=True)
class RecordCost:
    event: CostEvent


@dataclass(frozen=True)
class PostComment:
    text: str


@dataclass(frozen=True)
class AddLabel:
    name: str


@dataclass(frozen=True)
class Merge:
    pass


@dataclass(frozen=True)
class Notify:
    kind: NotificationKind
    message: str


Command = RunChecker | RunMaker | RecordCost | PostComment | AddLabel | Merge | Notify


@dataclass(frozen=True)
class Transition:
    state: IterationState
    commands: list[Command] = field(default_factory=list)
    decision: MergeDecision | None = None


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------


class StateMachine:
    """Transition function over ``IterationState`` for one loop configuration."""

    def __init__(self, config: LoopConfig) -> None:
        self.config = config
        self.scorer = QualityScorer()
        self.detector = ConvergenceDetector(config.stagnation_window)
        self.limiter = IterationLimiter(config)
        self.gates = QualityGates(config, self.scorer)
        self.decider = MergeDecider(config, self.gates)

    def step(self, state: IterationState, event: Event) -> Transition:
        if state.is_terminal:
            raise StateFrozenError(
                f"{state.repository}#{state.change_id} is {state.current_phase}; "
                f"cannot apply {type(event).__name__}"
            )

        phase = state.phase
        if isinstance(event, StopRequested):
            return self._stop(state, event)
        if isinstance(phase, Idle) and isinstance(event, Start):
            return self._start(state, event)
        if isinstance(phase, CheckerRunning) and isinstance(event, CheckerCompleted):
            return self._checker_completed(state, phase, event)
        if isinstance(phase, FixerRunning) and isinstance(event, MakerCompleted):
            return self._maker_completed(state, phase, event)
        raise ValueError(f"{type(event).__name__} is not valid in phase {state.current_phase}")

    def resume_commands(self, state: IterationState) -> list[Command]:
        """Commands that re-enter an in-flight iteration after a restart."""
        phase = state.phase
        if isinstance(phase, CheckerRunning):
            return [RunChecker(phase.iteration)]
        if isinstance(phase, FixerRunning):
            return [RunMaker(phase.iteration, self._issues_for_maker(phase.review), phase.iteration)]
        return []

    # -- transitions --------------------------------------------------------

    def _start(self, state: IterationState, event: Start) -> Transition:
        prior = max(0.0, round(event.change_spent - state.total_cost, 6))
        if prior != state.prior_cost:
            state = state.model_copy(update={"prior_cost": prior})
        allowance = self.limiter.can_start_iteration(state)
        if not allowance.allowed:
            return self._exhaust(state, allowance.reason, at=event.at)
        commands: list[Command] = []
        if event.period is not None:
            if event.period.exceeded:
                return self._exhaust(state, self._period_reason(event.period), at=event.at)
            if event.period.warning:
                commands.append(
                    Notify(
                        NotificationKind.COST_WARNING,
                        f"Period spend at {event.period.percentage:.0f}% of "
                        f"${event.period.limit:.2f} cap",
                    )
                )

        iteration = state.current_iteration + 1
        new = state.model_copy(
            update={
                "current_iteration": iteration,
                "phase": CheckerRunning(iteration=iteration, started_at=event.at),
                "updated_at": event.at,
            }
        )
        log.info("%s#%d: starting iteration %d/%d", state.repository, state.change_id, iteration, state.max_iterations)
        commands += [AddLabel(self.config.labels.in_progress), RunChecker(iteration)]
        return Transition(new, commands)

    def _checker_completed(self, state: IterationState, phase: CheckerRunning, event: CheckerCompleted) -> Transition:
        review = event.result
        iteration = phase.iteration

        if review.is_error:
            record = self._record(state, iteration, review, None, 0.0, at=event.at, seconds=event.duration_seconds)
            return self._fail(
                self._append(state, record, at=event.at),
                f"Checker failed on iteration {iteration}: {review.error or 'unknown error'}",
                record,
                at=event.at,
            )

        score = self.scorer.score(review)
        total_with = round(state.lifetime_cost + review.cost, 6)
        decision = self.decider.decide(state, review, event.ci_status, quality_score=score, total_cost=total_with)

        if decision.should_merge:
            record = self._record(state, iteration, review, None, score, at=event.at, seconds=event.duration_seconds)
            new = self._append(state, record, at=event.at)
            new = new.model_copy(update={"phase": Converged(reason=decision.reason, auto_merge=decision.auto_merge)})
            commands: list[Command] = [RecordCost(self._cost_event(new, record, review.cost, 0.0))]
            action = self.decider.recommended_action(decision, new)
            commands.append(PostComment(self._comment(new, f"Quality gates passed ({score:.2f}).", action)))
            if decision.auto_merge:
                commands.append(Merge())
            commands.append(AddLabel(self.config.labels.ready))
            commands.append(Notify(NotificationKind.READY_TO_MERGE, decision.reason))
            log.info(
                "%s#%d: converged at iteration %d (auto_merge=%s)",
                state.repository, state.change_id, iteration, decision.auto_merge,
            )
            return Transition(new, commands, decision)

        blocking = decision.blocking_issues
        quality_met = self.scorer.meets_threshold(score, self.config.quality_threshold)
        reason: str | None = None
        if total_with >= self.config.max_cost_per_change:
            reason = f"Cost limit reached: ${total_with:.2f} / ${self.config.max_cost_per_change:.2f}"
        elif quality_met and not blocking and event.ci_status != CIStatus.SUCCESS:
            reason = f"quality threshold met but CI status is '{event.ci_status}'"
        elif not review.issues and not review.security_issues and not review.performance_issues:
            reason = "Checker reported no actionable issues"
            if review.low_confidence:
                reason += " (review output could not be parsed reliably)"

        if reason is not None:
            record = self._record(state, iteration, review, None, score, at=event.at, seconds=event.duration_seconds)
            detail = ""
            if review.security_issues:
                detail = f" Security findings: {security_summary(review.security_issues)}."
            transition = self._exhaust(
                self._append(state, record, at=event.at), reason, at=event.at, record=record, detail=detail,
            )
            return Transition(transition.state, transition.commands, decision)

        new = state.model_copy(
            update={
                "phase": FixerRunning(
                    iteration=iteration,
                    started_at=phase.started_at,
                    review=review,
                    quality_score=score,
                    checker_seconds=event.duration_seconds,
                ),
                "updated_at": event.at,
            }
        )
        issues = self._issues_for_maker(review)
        log.info(
            "%s#%d: iteration %d scored %.2f with %d issue(s), running maker",
            state.repository, state.change_id, iteration, score, len(issues),
        )
        return Transition(new, [RunMaker(iteration, issues, iteration)], decision)

    def _maker_completed(self, state: IterationState, phase: FixerRunning, event: MakerCompleted) -> Transition:
        iteration = phase.iteration
        seconds = phase.checker_seconds + event.duration_seconds
        record = self._record(
            state, iteration, phase.review, event.result, phase.quality_score, at=event.at, seconds=seconds,
        )
        new = self._append(state, record, at=event.at)

        if event.result.is_error:
            reason = f"Maker failed on iteration {iteration}: {event.result.error or 'unknown error'}"
            return self._fail(new, reason, record, at=event.at)

        threshold = self.config.quality_threshold
        below = not self.scorer.meets_threshold(phase.quality_score, threshold)
        stagnant_run = self.detector.consecutive_stagnant(new.history)
        if below and stagnant_run >= self.config.stagnation_limit:
            return self._exhaust(
                new,
                f"stagnant for {stagnant_run} consecutive iterations without meeting threshold",
                at=event.at,
                record=record,
            )

        allowance = self.limiter.can_start_iteration(new)
        if not allowance.allowed:
            reason = allowance.reason
            if new.current_iteration >= new.max_iterations:
                reason = (
                    f"max iterations reached without meeting threshold "
                    f"(score {phase.quality_score:.2f} vs {threshold:.2f})"
                    if below
                    else f"max iterations reached with quality gates still failing ({new.max_iterations})"
                )
            return self._exhaust(new, reason, at=event.at, record=record)

        if event.period is not None and round(event.period.total + record.cost, 6) >= event.period.limit:
            return self._exhaust(new, self._period_reason(event.period, record.cost), at=event.at, record=record)

        next_iteration = iteration + 1
        new = new.model_copy(
            update={
                "current_iteration": next_iteration,
                "phase": CheckerRunning(iteration=next_iteration, started_at=event.at),
            }
        )
        commands: list[Command] = [RecordCost(self._cost_event(new, record, phase.review.cost, event.result.cost))]
        patterns = detect_suspicious_patterns(new)
        note = "".join(f" Warning: {w.message}." for w in patterns.warnings)
        commands.append(
            PostComment(
                self._comment(
                    new,
                    f"Iteration {iteration} scored {phase.quality_score:.2f} "
                    f"({record.issues_found} issue(s), {record.issues_fixed} addressed).{note}",
                    f"re-review in iteration {next_iteration}",
                    iteration=iteration,
                )
            )
        )
        commands.append(Notify(NotificationKind.ITERATION_COMPLETE, f"Iteration {iteration} complete"))
        if new.convergence_status == ConvergenceStatus.STAGNANT:
            commands.append(Notify(NotificationKind.STAGNANT, f"No meaningful progress as of iteration {iteration}"))
        commands.append(RunChecker(next_iteration))
        return Transition(new, commands)

    def _stop(self, state: IterationState, event: StopRequested) -> Transition:
        phase = state.phase
        if isinstance(phase, FixerRunning):
            # the review already ran and was paid for
            record = self._record(
                state, phase.iteration, phase.review, None, phase.quality_score,
                at=event.at, seconds=phase.checker_seconds,
            )
            return self._exhaust(self._append(state, record, at=event.at), event.reason, at=event.at, record=record)
        rolled_back = state.model_copy(update={"current_iteration": len(state.history)})
        return self._exhaust(rolled_back, event.reason, at=event.at)

    # -- helpers ------------------------------------------------------------

    def _issues_for_maker(self, review: CheckerResult) -> list[Issue]:
        return self.gates.blocking_issues(review) + [i for i in review.issues if i.severity != Severity.ERROR]

    def _record(
        self,
        state: IterationState,
        iteration: int,
        review: CheckerResult,
        fix: MakerResult | None,
        score: float,
        *,
        at: datetime,
        seconds: float,
    ) -> IterationRecord:
        previous = state.history[-1].quality_score if state.history else None
        security = check_security(review)
        return IterationRecord(
            iteration=iteration,
            checker=ReviewSummary(
                status=review.status,
                agent_score=review.overall_score,
                issues_found=len(review.issues),
                error_issues=len(review.issues_with(Severity.ERROR)),
                warning_issues=len(review.issues_with(Severity.WARNING)),
                security_issues=len(review.security_issues),
                blocking_security_issues=security.blocking_count,
                low_confidence=review.low_confidence,
                cost=review.cost,
                error=review.error,
            ),
            maker=None
            if fix is None
            else FixSummary(
                status=fix.status,
                files_modified=fix.files_modified,
                issues_addressed=fix.issues_addressed,
                cost=fix.cost,
                error=fix.error,
            ),
            issues_found=len(review.issues),
            issues_fixed=0 if fix is None or fix.is_error else fix.issues_addressed,
            quality_score=score,
            quality_delta=0.0 if previous is None else self.scorer.improvement(previous, score),
            cost=round(review.cost + (fix.cost if fix is not None else 0.0), 6),
            low_confidence=review.low_confidence,
            timestamp=at,
            duration_seconds=seconds,
        )

    def _append(self, state: IterationState, record: IterationRecord, *, at: datetime) -> IterationState:
        history = [*state.history, record]
        return state.model_copy(
            update={
                "history": history,
                "total_cost": round(state.total_cost + record.cost, 6),
                "quality_score": record.quality_score,
                "convergence_status": self.detector.detect(history).status,
                "updated_at": at,
            }
        )

    def _cost_event(self, state: IterationState, record: IterationRecord, checker: float, maker: float) -> CostEvent:
        return CostEvent(
            repository=state.repository,
            change_id=state.change_id,
            iteration=record.iteration,
            checker_cost=checker,
            maker_cost=maker,
            timestamp=record.timestamp,
        )

    def _exhaust(
        self,
        state: IterationState,
        reason: str,
        *,
        at: datetime,
        record: IterationRecord | None = None,
        detail: str = "",
    ) -> Transition:
        new = state.model_copy(update={"phase": Exhausted(reason=reason), "updated_at": at})
        commands: list[Command] = []
        if record is not None:
            maker_cost = record.maker.cost if record.maker is not None else 0.0
            commands.append(RecordCost(self._cost_event(new, record, record.checker.cost, maker_cost)))
        commands.append(
            PostComment(self._comment(new, f"Loop stopped: {reason}.{detail}", "human review required before merge"))
        )
        commands.append(AddLabel(self.config.labels.needs_attention))
        commands.append(Notify(NotificationKind.NEEDS_ATTENTION, reason))
        log.warning("%s#%d: exhausted: %s", state.repository, state.change_id, reason)
        return Transition(new, commands)

    def _fail(self, state: IterationState, reason: str, record: IterationRecord, *, at: datetime) -> Transition:
        failed = Failed(reason=reason)
        new = state.model_copy(update={"phase": failed, "updated_at": at})
        maker_cost = record.maker.cost if record.maker is not None else 0.0
        commands: list[Command] = [
            RecordCost(self._cost_event(new, record, record.checker.cost, maker_cost)),
            PostComment(self._comment(new, f"Loop failed: {reason}.", failed.remediation)),
            AddLabel(self.config.labels.error),
            Notify(NotificationKind.ERROR, reason),
        ]
        log.error("%s#%d: failed: %s", state.repository, state.change_id, reason)
        return Transition(new, commands)

    @staticmethod
    def _period_reason(period: PeriodCapStatus, pending: float = 0.0) -> str:
        return f"Period cost cap reached: ${period.total + pending:.2f} / ${period.limit:.2f}"

    def _comment(self, state: IterationState, headline: str, next_action: str, *, iteration: int | None = None) -> str:
        """Plain one-paragraph comment citing iteration count, spend and the next action."""
        shown = state.current_iteration if iteration is None else iteration
        return (
            f"maker-checker: {headline} Iteration {shown}/{state.max_iterations}, "
            f"cost so far ${state.lifetime_cost:.2f}. Next: {next_action.rstrip('.')}."
        )


def step(state: IterationState, event: Event, *, config: LoopConfig) -> Transition:
    """Apply *event* to *state* under *config*; see ``StateMachine.step``."""
    return StateMachine(config).step(state, event)

