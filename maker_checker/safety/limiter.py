"""Iteration and cost ceilings, plus the suspicious-loop scan."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from maker_checker.models.decision import IterationAllowance, PatternWarning, SuspiciousPatterns

if TYPE_CHECKING:
    from maker_checker.config import LoopConfig
    from maker_checker.models.state import IterationState

STAGNATION_RUN = 3
OSCILLATION_WINDOW = 4
SPEED_WINDOW = 5
MIN_MEAN_INTERVAL_SECONDS = 30.0


class IterationLimiter:
    """Decides whether another iteration may start."""

    def __init__(self, config: LoopConfig) -> None:
        self.config = config

    def can_start_iteration(self, state: IterationState) -> IterationAllowance:
        if state.current_iteration >= state.max_iterations:
            return IterationAllowance(
                allowed=False, reason=f"Maximum iterations reached ({state.max_iterations})",
            )
        if state.is_terminal:
            return IterationAllowance(
                allowed=False, reason=f"Change already in terminal state: {state.current_phase}",
            )
        if state.lifetime_cost >= self.config.max_cost_per_change:
            return IterationAllowance(
                allowed=False,
                reason=(
                    f"Cost limit exceeded: ${state.lifetime_cost:.2f} / "
                    f"${self.config.max_cost_per_change:.2f}"
                ),
            )
        return IterationAllowance(allowed=True)

    @staticmethod
    def iterations_remaining(state: IterationState) -> int:
        return state.iterations_remaining

    @staticmethod
    def progress_percentage(state: IterationState) -> float:
        return state.current_iteration / state.max_iterations * 100.0

    def will_likely_exceed_limit(self, state: IterationState, target: float) -> bool:
        """True when the historical improvement rate won't reach *target* in the remaining budget."""
        current = state.quality_score
        if current >= target or len(state.history) < 2:
            return False
        scores = [r.quality_score for r in state.history]
        gains = [b - a for a, b in zip(scores, scores[1:], strict=False) if b - a > 0]
        if not gains:
            return True
        needed = math.ceil((target - current) / (sum(gains) / len(gains)))
        return needed > self.iterations_remaining(state)

    def recommendation(self, state: IterationState, target: float | None = None) -> str:
        """One operator-facing sentence about the remaining iteration budget."""
        target = self.config.quality_threshold if target is None else target
        remaining = self.iterations_remaining(state)
        progress = self.progress_percentage(state)
        if remaining == 0:
            return "Max iterations reached. Consider manual review or increasing max_iterations."
        if remaining == 1:
            if state.quality_score < target:
                return "Last iteration! Quality threshold not yet met. Consider manual fixes."
            return "Last iteration available."
        if self.will_likely_exceed_limit(state, target):
            return (
                f"Warning: may not reach quality threshold ({target * 100:.1f}%) with the "
                f"remaining {remaining} iterations at the current improvement rate."
            )
        if progress >= 75:
            return f"{remaining} iterations remaining. Push toward quality threshold."
        return f"{remaining} iterations remaining. Progress: {progress:.0f}%"


def detect_suspicious_patterns(state: IterationState) -> SuspiciousPatterns:
    """Advisory scan for loops that look stuck, oscillating or runaway."""
    history = state.history
    warnings: list[PatternWarning] = []

    if len(history) >= STAGNATION_RUN:
        counts = [r.issues_found for r in history[-STAGNATION_RUN:]]
        if counts[0] > 0 and all(c == counts[0] for c in counts):
            warnings.append(
                PatternWarning(
                    kind="stagnation",
                    message=f"Same issue count for {STAGNATION_RUN}+ iterations ({counts[0]}), possible stagnation",
                )
            )

    if len(history) >= OSCILLATION_WINDOW:
        scores = [r.quality_score for r in history[-OSCILLATION_WINDOW:]]
        turns = sum(
            1
            for prev, curr, nxt in zip(scores, scores[1:], scores[2:], strict=False)
            if (curr > prev and curr > nxt) or (curr < prev and curr < nxt)
        )
        if turns >= 2:
            warnings.append(
                PatternWarning(
                    kind="oscillation",
                    message="Quality score oscillating: fixes may be introducing regressions",
                )
            )

    if len(history) >= SPEED_WINDOW:
        stamps = [r.timestamp for r in history[-SPEED_WINDOW:]]
        intervals = [(b - a).total_seconds() for a, b in zip(stamps, stamps[1:], strict=False)]
        mean = sum(intervals) / len(intervals)
        if mean < MIN_MEAN_INTERVAL_SECONDS:
            warnings.append(
                PatternWarning(
                    kind="speed",
                    message=f"Abnormal automation speed: iterations {mean:.1f}s apart on average",
                )
            )

    return SuspiciousPatterns(warnings=warnings)
