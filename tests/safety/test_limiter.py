"""Tests for iteration/cost ceilings and the suspicious-loop scan."""

from collections.abc import Callable
from datetime import timedelta

from maker_checker.config import LoopConfig
from maker_checker.models.state import Converged, IterationState
from maker_checker.safety.limiter import IterationLimiter, detect_suspicious_patterns

MakeState = Callable[..., IterationState]


class TestCanStartIteration:
    def test_fresh_state_allowed(self, config: LoopConfig, make_state: MakeState) -> None:
        allowance = IterationLimiter(config).can_start_iteration(make_state([]))
        assert allowance.allowed
        assert allowance.reason == ""

    def test_iteration_cap(self, config: LoopConfig, make_state: MakeState) -> None:
        state = make_state([0.5, 0.6], max_iterations=2)
        allowance = IterationLimiter(config).can_start_iteration(state)
        assert not allowance.allowed
        assert allowance.reason == "Maximum iterations reached (2)"

    def test_terminal_state(self, config: LoopConfig, make_state: MakeState) -> None:
        state = make_state([0.9]).model_copy(update={"phase": Converged(reason="done")})
        allowance = IterationLimiter(config).can_start_iteration(state)
        assert not allowance.allowed
        assert "terminal state: converged" in allowance.reason

    def test_cost_cap(self, config: LoopConfig, make_state: MakeState) -> None:
        state = make_state([0.5, 0.6], cost_per_iteration=2.5)
        allowance = IterationLimiter(config).can_start_iteration(state)
        assert not allowance.allowed
        assert allowance.reason == "Cost limit exceeded: $5.00 / $5.00"


class TestBudget:
    def test_remaining_and_progress(self, config: LoopConfig, make_state: MakeState) -> None:
        state = make_state([0.5, 0.6])
        assert IterationLimiter.iterations_remaining(state) == 3
        assert IterationLimiter.progress_percentage(state) == 40.0

    def test_will_likely_exceed_limit(self, config: LoopConfig, make_state: MakeState) -> None:
        limiter = IterationLimiter(config)
        assert limiter.will_likely_exceed_limit(make_state([0.40, 0.42, 0.44]), 0.85)
        assert not limiter.will_likely_exceed_limit(make_state([0.5, 0.6, 0.7]), 0.85)
        assert limiter.will_likely_exceed_limit(make_state([0.6, 0.5]), 0.85)
        assert not limiter.will_likely_exceed_limit(make_state([0.5]), 0.85)

    def test_recommendations(self, config: LoopConfig, make_state: MakeState) -> None:
        limiter = IterationLimiter(config)
        assert limiter.recommendation(make_state([0.5] * 5)).startswith("Max iterations reached")
        assert limiter.recommendation(make_state([0.5, 0.6, 0.7, 0.8])).startswith("Last iteration!")
        assert limiter.recommendation(make_state([0.7, 0.8, 0.9, 0.9])) == "Last iteration available."
        assert limiter.recommendation(make_state([0.40, 0.42, 0.44])).startswith("Warning:")
        assert limiter.recommendation(make_state([0.5])) == "4 iterations remaining. Progress: 20%"


class TestSuspiciousPatterns:
    def test_clean_history(self, make_state: MakeState) -> None:
        state = make_state([0.5, 0.6, 0.7], issues=[8, 6, 4])
        assert not detect_suspicious_patterns(state).suspicious

    def test_stagnation(self, make_state: MakeState) -> None:
        state = make_state([0.60, 0.62, 0.61], issues=[8, 8, 8])
        patterns = detect_suspicious_patterns(state)
        assert [w.kind for w in patterns.warnings] == ["stagnation"]
        assert patterns.warnings[0].message == "Same issue count for 3+ iterations (8), possible stagnation"

    def test_oscillation(self, make_state: MakeState) -> None:
        state = make_state([0.5, 0.7, 0.5, 0.7], issues=[5, 3, 5, 3])
        kinds = [w.kind for w in detect_suspicious_patterns(state).warnings]
        assert kinds == ["oscillation"]

    def test_speed(self, make_state: MakeState) -> None:
        state = make_state([0.1, 0.2, 0.3, 0.4, 0.5], issues=[9, 8, 7, 6, 5])
        start = state.history[0].timestamp
        fast = [
            r.model_copy(update={"timestamp": start + timedelta(seconds=5 * n)})
            for n, r in enumerate(state.history)
        ]
        patterns = detect_suspicious_patterns(state.model_copy(update={"history": fast}))
        assert [w.kind for w in patterns.warnings] == ["speed"]
        assert "Abnormal automation speed" in patterns.warnings[0].message
