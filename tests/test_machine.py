"""Tests for the pure iteration state machine."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from maker_checker.config import LoopConfig
from maker_checker.errors import StateFrozenError
from maker_checker.machine import (
    AddLabel,
    CheckerCompleted,
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
from maker_checker.models.decision import PeriodCapStatus
from maker_checker.models.enums import CIStatus, NotificationKind, Phase, SecuritySeverity
from maker_checker.models.review import CheckerResult, MakerResult
from maker_checker.models.state import (
    CheckerRunning,
    Converged,
    Exhausted,
    Failed,
    IterationState,
    check_invariants,
    new_state,
)

MakeReview = Callable[..., CheckerResult]

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _fresh(max_iterations: int = 5) -> IterationState:
    return new_state("acme/widgets", 42, max_iterations=max_iterations, now=T0)


def _of(commands: list, kind: type) -> list:
    return [c for c in commands if isinstance(c, kind)]


def _comments(commands: list) -> list[str]:
    return [c.text for c in _of(commands, PostComment)]


def _iterate(
    machine: StateMachine,
    state: IterationState,
    review: CheckerResult,
    fix: MakerResult | None = None,
    *,
    ci: CIStatus = CIStatus.SUCCESS,
) -> list[Transition]:
    """Drive one iteration from CheckerRunning; the Maker runs only if the Checker asked for it."""
    at = T0 + timedelta(minutes=10 * state.current_iteration)
    transitions = [machine.step(state, CheckerCompleted(review, ci, at=at, duration_seconds=30.0))]
    assert check_invariants(transitions[-1].state) == []
    if transitions[-1].state.current_phase == Phase.FIXER_RUNNING:
        fix = fix or MakerResult(files_modified=["a.py"], issues_addressed=1, cost=0.2)
        completed = MakerCompleted(fix, at=at + timedelta(minutes=5), duration_seconds=60.0)
        transitions.append(machine.step(transitions[-1].state, completed))
        assert check_invariants(transitions[-1].state) == []
    return transitions


def _started(machine: StateMachine, state: IterationState) -> IterationState:
    transition = machine.step(state, Start(at=T0))
    assert _of(transition.commands, RunChecker) == [RunChecker(1)]
    return transition.state


class TestStart:
    def test_idle_to_checker_running(self, config: LoopConfig) -> None:
        transition = StateMachine(config).step(_fresh(), Start(at=T0))
        assert transition.state.phase == CheckerRunning(iteration=1, started_at=T0)
        assert transition.state.current_iteration == 1
        assert transition.commands == [AddLabel("maker-checker:active"), RunChecker(1)]
        assert check_invariants(transition.state) == []

    def test_period_cap_reached(self, config: LoopConfig) -> None:
        period = PeriodCapStatus(exceeded=True, warning=True, total=100.0, limit=100.0, percentage=100.0)
        transition = StateMachine(config).step(_fresh(), Start(at=T0, period=period))
        assert transition.state.phase == Exhausted(reason="Period cost cap reached: $100.00 / $100.00")
        assert transition.state.current_iteration == 0
        assert not _of(transition.commands, RunChecker)

    def test_period_warning(self, config: LoopConfig) -> None:
        period = PeriodCapStatus(exceeded=False, warning=True, total=80.0, limit=100.0, percentage=80.0)
        transition = StateMachine(config).step(_fresh(), Start(at=T0, period=period))
        notes = _of(transition.commands, Notify)
        assert notes == [Notify(NotificationKind.COST_WARNING, "Period spend at 80% of $100.00 cap")]
        assert transition.state.current_phase == Phase.CHECKER_RUNNING

    def test_earlier_spend_at_change_cap(self, config: LoopConfig) -> None:
        transition = StateMachine(config).step(_fresh(), Start(at=T0, change_spent=5.0))
        assert transition.state.phase == Exhausted(reason="Cost limit exceeded: $5.00 / $5.00")
        assert transition.state.prior_cost == 5.0
        assert not _of(transition.commands, RunChecker)

    def test_earlier_spend_carried_into_run(self, config: LoopConfig) -> None:
        transition = StateMachine(config).step(_fresh(), Start(at=T0, change_spent=1.5))
        assert transition.state.prior_cost == 1.5
        assert transition.state.lifetime_cost == 1.5
        assert _of(transition.commands, RunChecker) == [RunChecker(1)]

    def test_invalid_event_for_phase(self, config: LoopConfig, make_review: MakeReview) -> None:
        with pytest.raises(ValueError, match="not valid in phase idle"):
            StateMachine(config).step(_fresh(), CheckerCompleted(make_review(), CIStatus.SUCCESS))

    def test_terminal_state_is_frozen(self, config: LoopConfig) -> None:
        state = _fresh().model_copy(update={"phase": Converged(reason="done")})
        with pytest.raises(StateFrozenError):
            StateMachine(config).step(state, Start(at=T0))
        with pytest.raises(StateFrozenError):
            StateMachine(config).step(state, StopRequested(at=T0))


class TestConvergence:
    def test_auto_merge_when_enabled(self, config: LoopConfig, make_review: MakeReview) -> None:
        config = config.model_copy(update={"auto_merge_enabled": True})
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        (transition,) = _iterate(machine, state, make_review(0.90))

        assert transition.state.phase == Converged(reason=transition.decision.reason, auto_merge=True)
        assert Merge() in transition.commands
        assert AddLabel("maker-checker:ready") in transition.commands
        assert _of(transition.commands, Notify)[0].kind == NotificationKind.READY_TO_MERGE
        assert transition.state.total_cost == 0.1
        (cost,) = _of(transition.commands, RecordCost)
        assert cost.event.checker_cost == 0.1
        assert cost.event.maker_cost == 0.0
        assert "Quality gates passed (0.90)" in _comments(transition.commands)[0]

    def test_manual_merge_by_default(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        (transition,) = _iterate(machine, state, make_review(0.90))
        assert transition.state.phase == Converged(reason=transition.decision.reason, auto_merge=False)
        assert Merge() not in transition.commands
        assert "Next: Ready for review and manual merge." in _comments(transition.commands)[0]

    def test_converges_after_fixes(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        first = _iterate(machine, state, make_review(0.8, warnings=4))
        assert [type(c) for c in first[0].commands] == [RunMaker]
        maker_cmd = first[0].commands[0]
        assert maker_cmd.iteration == 1
        assert len(maker_cmd.issues) == 4

        after_fix = first[1]
        assert after_fix.state.current_iteration == 2
        assert _of(after_fix.commands, RunChecker) == [RunChecker(2)]
        comment = _comments(after_fix.commands)[0]
        assert comment.startswith("maker-checker: Iteration 1 scored 0.60 (4 issue(s), 1 addressed).")

        (done,) = _iterate(machine, after_fix.state, make_review(0.95, warnings=2))
        assert done.state.current_phase == Phase.CONVERGED
        assert done.state.quality_score == 0.85
        assert len(done.state.history) == 2
        assert done.state.history[1].quality_delta == 0.25


class TestStagnation:
    def test_exhausts_after_consecutive_stagnant_iterations(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        review = make_review(0.70, warnings=8)
        comments: list[str] = []
        for _ in range(3):
            transitions = _iterate(machine, state, review)
            state = transitions[-1].state
            comments += _comments(transitions[-1].commands)
            assert state.current_phase == Phase.CHECKER_RUNNING

        assert "Same issue count for 3+ iterations (8), possible stagnation" in comments[2]
        transitions = _iterate(machine, state, review)
        final = transitions[-1].state
        assert final.phase == Exhausted(reason="stagnant for 3 consecutive iterations without meeting threshold")
        assert len(final.history) == 4
        assert AddLabel("maker-checker:attention") in transitions[-1].commands

    def test_stagnant_notification(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        review = make_review(0.70, warnings=8)
        state = _iterate(machine, state, review)[-1].state
        transitions = _iterate(machine, state, review)
        kinds = [n.kind for n in _of(transitions[-1].commands, Notify)]
        assert NotificationKind.STAGNANT in kinds


class TestSecurity:
    def test_critical_finding_goes_to_maker(self, config: LoopConfig, make_review: MakeReview) -> None:
        config = config.model_copy(update={"auto_merge_enabled": True})
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        review = make_review(1.0, security=[SecuritySeverity.CRITICAL])
        transition = machine.step(state, CheckerCompleted(review, CIStatus.SUCCESS, at=T0))

        assert not transition.decision.should_merge
        (run_maker,) = _of(transition.commands, RunMaker)
        assert run_maker.issues[0].message == "[CRITICAL] finding 0"
        assert transition.state.current_phase == Phase.FIXER_RUNNING


class TestBudgets:
    def test_cost_cap_after_maker(self, config: LoopConfig, make_review: MakeReview) -> None:
        config = config.model_copy(update={"max_cost_per_change": 1.0})
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        fix = MakerResult(files_modified=["a.py"], issues_addressed=2, cost=0.5)
        transitions = _iterate(machine, state, make_review(0.7, warnings=2, cost=0.6), fix)

        final = transitions[-1]
        assert final.state.phase == Exhausted(reason="Cost limit exceeded: $1.10 / $1.00")
        assert final.state.total_cost == 1.1
        (cost,) = _of(final.commands, RecordCost)
        assert cost.event.checker_cost == 0.6
        assert cost.event.maker_cost == 0.5
        assert not _of(final.commands, RunChecker)

    def test_cost_cap_before_maker(self, config: LoopConfig, make_review: MakeReview) -> None:
        config = config.model_copy(update={"max_cost_per_change": 1.0})
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        (transition,) = _iterate(machine, state, make_review(0.7, warnings=2, cost=1.2))
        assert transition.state.phase == Exhausted(reason="Cost limit reached: $1.20 / $1.00")
        assert not _of(transition.commands, RunMaker)

    def test_max_iterations(self, config: LoopConfig, make_review: MakeReview) -> None:
        config = config.model_copy(update={"max_iterations": 2})
        machine = StateMachine(config)
        state = _started(machine, _fresh(max_iterations=2))
        review = make_review(0.80, warnings=2)
        state = _iterate(machine, state, review)[-1].state
        assert state.current_iteration == 2

        transitions = _iterate(machine, state, review)
        final = transitions[-1].state
        assert final.phase == Exhausted(
            reason="max iterations reached without meeting threshold (score 0.70 vs 0.85)",
            requires_human_approval=True,
        )
        assert final.current_iteration == 2
        assert "Next: human review required before merge." in _comments(transitions[-1].commands)[0]

    def test_period_cap_after_maker(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        state = machine.step(state, CheckerCompleted(make_review(0.7, warnings=2), CIStatus.SUCCESS, at=T0)).state
        period = PeriodCapStatus(exceeded=False, warning=True, total=99.8, limit=100.0, percentage=99.8)
        fix = MakerResult(issues_addressed=2, cost=0.2)
        transition = machine.step(state, MakerCompleted(fix, at=T0, period=period))
        assert transition.state.phase == Exhausted(reason="Period cost cap reached: $100.10 / $100.00")


class TestFailures:
    def test_checker_error_fails_without_maker(self, config: LoopConfig) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        (transition,) = _iterate(machine, state, CheckerResult.failed("boom"))

        assert isinstance(transition.state.phase, Failed)
        assert transition.state.phase.reason == "Checker failed on iteration 1: boom"
        assert not _of(transition.commands, RunMaker)
        assert "retry" in _comments(transition.commands)[0]
        assert AddLabel("maker-checker:error") in transition.commands
        assert _of(transition.commands, Notify)[0].kind == NotificationKind.ERROR
        assert len(transition.state.history) == 1

    def test_maker_error_fails(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        transitions = _iterate(machine, state, make_review(0.7, warnings=2), MakerResult.failed("no diff", cost=0.05))
        final = transitions[-1].state
        assert final.phase.reason == "Maker failed on iteration 1: no diff"
        assert final.history[0].issues_fixed == 0
        assert final.total_cost == 0.15

    def test_no_actionable_issues(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        (transition,) = _iterate(machine, state, make_review(0.5, low_confidence=True))
        assert transition.state.phase.reason == (
            "Checker reported no actionable issues (review output could not be parsed reliably)"
        )

    def test_ci_not_green(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        (transition,) = _iterate(machine, state, make_review(0.9), ci=CIStatus.FAILURE)
        assert transition.state.phase.reason == "quality threshold met but CI status is 'failure'"


class TestStop:
    def test_stop_while_checker_running_rolls_back(self, config: LoopConfig) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        transition = machine.step(state, StopRequested(at=T0))
        assert transition.state.phase == Exhausted(reason="stopped by operator")
        assert transition.state.current_iteration == 0
        assert check_invariants(transition.state) == []

    def test_stop_while_fixer_running_keeps_review(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        state = machine.step(state, CheckerCompleted(make_review(0.7, warnings=2), CIStatus.SUCCESS, at=T0)).state
        transition = machine.step(state, StopRequested(at=T0))
        assert transition.state.current_phase == Phase.EXHAUSTED
        assert len(transition.state.history) == 1
        assert transition.state.total_cost == 0.1
        assert len(_of(transition.commands, RecordCost)) == 1


class TestResume:
    def test_resume_commands(self, config: LoopConfig, make_review: MakeReview) -> None:
        machine = StateMachine(config)
        state = _started(machine, _fresh())
        assert machine.resume_commands(state) == [RunChecker(1)]

        state = machine.step(state, CheckerCompleted(make_review(0.7, warnings=2), CIStatus.SUCCESS, at=T0)).state
        (resumed,) = machine.resume_commands(state)
        assert isinstance(resumed, RunMaker)
        assert len(resumed.issues) == 2

        assert machine.resume_commands(_fresh()) == []
