"""Convergence and stagnation analysis over iteration history."""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import TYPE_CHECKING, Literal

from maker_checker.models.decision import ConvergenceProjection, ConvergenceReport
from maker_checker.models.enums import ConvergenceStatus

if TYPE_CHECKING:
    from maker_checker.models.state import IterationRecord, IterationState

STEP_THRESHOLD = 0.02
OVERALL_TREND_THRESHOLD = 0.05
DEFAULT_WINDOW = 3

QualityTrend = Literal["improving", "flat", "regressing"]
IssueTrend = Literal["decreasing", "stagnant", "increasing"]


def _delta(prev: float, curr: float) -> float:
    return round(curr - prev, 6)


def quality_trend(scores: Sequence[float]) -> QualityTrend:
    """Majority-rule classification of adjacent score deltas."""
    up = down = flat = 0
    for prev, curr in zip(scores, scores[1:], strict=False):
        d = _delta(prev, curr)
        if d > STEP_THRESHOLD:
            up += 1
        elif d < -STEP_THRESHOLD:
            down += 1
        else:
            flat += 1
    if flat >= len(scores) - 1:
        return "flat"
    if up > down:
        return "improving"
    if down > up:
        return "regressing"
    return "flat"


def issue_trend(counts: Sequence[int]) -> IssueTrend:
    fewer = more = same = 0
    for prev, curr in zip(counts, counts[1:], strict=False):
        if curr < prev:
            fewer += 1
        elif curr > prev:
            more += 1
        else:
            same += 1
    if same >= len(counts) - 1:
        return "stagnant"
    if fewer > more:
        return "decreasing"
    if more > fewer:
        return "increasing"
    return "stagnant"


class ConvergenceDetector:
    """Classifies the recent quality trend and projects iterations to target."""

    def __init__(self, window: int = DEFAULT_WINDOW) -> None:
        self.window = window

    def detect(self, history: Sequence[IterationRecord]) -> ConvergenceReport:
        if len(history) < 2:
            return ConvergenceReport(
                status=ConvergenceStatus.IMPROVING,
                confidence=0.5,
                window=len(history),
                reason="Not enough iterations to determine trend",
            )

        raw_window = list(history[-self.window :])
        reliable = [r for r in history if not r.low_confidence]
        records = reliable[-self.window :] if len(reliable) >= 2 else raw_window
        excluded = sum(1 for r in raw_window if r.low_confidence)
        reliable_fraction = (len(raw_window) - excluded) / len(raw_window)

        q = quality_trend([r.quality_score for r in records])
        i = issue_trend([r.issues_found for r in records])

        if q == "improving" and i == "decreasing":
            status, confidence, reason = (
                ConvergenceStatus.IMPROVING, 0.9, "Quality increasing and issues decreasing",
            )
        elif q == "flat" and i == "stagnant":
            status, confidence, reason = (
                ConvergenceStatus.STAGNANT,
                0.85,
                "No improvement in quality or issue count for multiple iterations",
            )
        elif q == "regressing" or i == "increasing":
            status, confidence, reason = (
                ConvergenceStatus.REGRESSING, 0.8, "Quality decreasing or new issues being introduced",
            )
        else:
            basis = reliable if len(reliable) >= 2 else list(history)
            overall = (basis[-1].quality_score - basis[0].quality_score) / (len(basis) - 1)
            if overall > OVERALL_TREND_THRESHOLD:
                status, confidence, reason = ConvergenceStatus.IMPROVING, 0.6, "Slow but steady improvement"
            elif abs(overall) <= OVERALL_TREND_THRESHOLD:
                status, confidence, reason = (
                    ConvergenceStatus.STAGNANT, 0.7, "Minimal change in recent iterations",
                )
            else:
                status, confidence, reason = ConvergenceStatus.REGRESSING, 0.7, "Overall negative trend"

        if excluded:
            reason += f" ({excluded} low-confidence review(s) in window)"
        return ConvergenceReport(
            status=status,
            confidence=round(confidence * reliable_fraction, 6),
            quality_trend=q,
            issue_trend=i,
            window=len(records),
            excluded_low_confidence=excluded,
            reason=reason,
        )

    def consecutive_stagnant(self, history: Sequence[IterationRecord]) -> int:
        """Number of trailing iterations at which the trend classified as stagnant."""
        count = 0
        for end in range(len(history), 1, -1):
            if self.detect(history[:end]).status != ConvergenceStatus.STAGNANT:
                break
            count += 1
        return count

    def project(self, state: IterationState, target: float) -> ConvergenceProjection:
        """Estimate whether *target* is reachable within the remaining iteration budget."""
        current = state.quality_score
        remaining = state.iterations_remaining
        if round(current, 6) >= round(target, 6):
            return ConvergenceProjection(
                will_converge=True, estimated_iterations=0, confidence=1.0, reason="Target already reached",
            )
        if len(state.history) < 2:
            return ConvergenceProjection(
                will_converge=True,
                estimated_iterations=remaining,
                confidence=0.3,
                reason="Not enough iterations to project",
            )

        scores = [r.quality_score for r in state.history]
        positive = [d for d in (_delta(a, b) for a, b in zip(scores, scores[1:], strict=False)) if d > 0]
        if not positive:
            return ConvergenceProjection(
                will_converge=False, confidence=0.9, reason="Quality has not improved between iterations",
            )

        mean = sum(positive) / len(positive)
        variance = sum((d - mean) ** 2 for d in positive) / len(positive)
        needed = math.ceil(round((target - current) / mean, 6))
        will = needed <= remaining
        return ConvergenceProjection(
            will_converge=will,
            estimated_iterations=needed,
            confidence=max(0.4, 1.0 - variance),
            reason=(
                f"~{needed} more iteration(s) at +{mean:.3f}/iteration, {remaining} remaining"
            ),
        )
