"""Quality gates and the merge decision built on them.

Blocking gates always take precedence over auto-merge eligibility: a change
that fails any blocking gate is never merged, whatever its overall score,
and its blocking issues are always reported.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from maker_checker.models.decision import EffortEstimate, GateCheck, GateReport, MergeDecision
from maker_checker.models.enums import CIStatus, ConvergenceStatus, Severity
from maker_checker.quality.scorer import QualityScorer
from maker_checker.safety.security import as_blocking_issue, check_security

if TYPE_CHECKING:
    from maker_checker.config import LoopConfig
    from maker_checker.models.review import CheckerResult, Issue, QualityMetrics
    from maker_checker.models.state import IterationState

log = logging.getLogger(__name__)

MIN_SECURITY_SCORE = 0.70
AUTO_MERGE_MIN_SECURITY_SCORE = 0.90
SOFT_MINIMUMS = {
    "Performance": ("performance", 0.70),
    "Type safety": ("type_safety", 0.80),
    "Code quality": ("code_quality", 0.75),
}
MAX_WARNING_ISSUES = 10


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


class QualityGates:
    """Pass/fail rules a change must satisfy before it may be merged."""

    def __init__(self, config: LoopConfig, scorer: QualityScorer | None = None) -> None:
        self.config = config
        self.scorer = scorer or QualityScorer()

    def blocking_issues(self, review: CheckerResult) -> list[Issue]:
        """Error-severity issues plus one issue per critical/high security finding."""
        issues = review.issues_with(Severity.ERROR)
        seen = {(i.file, i.line, i.message) for i in issues}
        security = check_security(review)
        for finding in security.critical + security.high:
            if (finding.file, finding.line, finding.description) in seen:
                continue
            issues.append(as_blocking_issue(finding))
        return issues

    def check_gates(
        self,
        review: CheckerResult,
        ci_status: CIStatus,
        *,
        quality_score: float,
        total_cost: float,
    ) -> GateReport:
        metrics = self.scorer.metrics(review)
        threshold = self.config.quality_threshold
        checks: list[GateCheck] = []

        weighted_ok = self.scorer.meets_threshold(metrics.overall_score, threshold)
        penalty_ok = self.scorer.meets_threshold(quality_score, threshold)
        checks.append(
            GateCheck(
                name="quality_threshold",
                passed=weighted_ok and penalty_ok,
                message=(
                    f"Quality {_pct(min(quality_score, metrics.overall_score))} below threshold {_pct(threshold)}"
                ),
            )
        )

        errors = review.issues_with(Severity.ERROR)
        security = check_security(review)
        checks.append(
            GateCheck(
                name="blocking_issues",
                passed=not errors and not security.blocks_merge,
                message=(
                    f"{len(errors)} error-level issue(s) and "
                    f"{security.blocking_count} critical/high security issue(s) must be fixed"
                ),
            )
        )
        checks.append(
            GateCheck(
                name="security_score",
                passed=metrics.security >= MIN_SECURITY_SCORE,
                message=f"Security score {_pct(metrics.security)} below minimum {_pct(MIN_SECURITY_SCORE)}",
            )
        )
        checks.append(
            GateCheck(
                name="ci_status",
                passed=ci_status == CIStatus.SUCCESS,
                message=f"CI status is '{ci_status}', must be 'success'",
            )
        )
        checks.append(
            GateCheck(
                name="cost_cap",
                passed=round(total_cost, 6) < self.config.max_cost_per_change,
                message=f"Cost ${total_cost:.2f} reached cap ${self.config.max_cost_per_change:.2f}",
            )
        )

        return GateReport(checks=checks, warnings=self.warnings(review, metrics))

    @staticmethod
    def warnings(review: CheckerResult, metrics: QualityMetrics) -> list[str]:
        out: list[str] = []
        for label, (attr, floor) in SOFT_MINIMUMS.items():
            value = getattr(metrics, attr)
            if value < floor:
                out.append(f"{label} score {_pct(value)} is below recommended {_pct(floor)}")
        warning_count = len(review.issues_with(Severity.WARNING))
        if warning_count > MAX_WARNING_ISSUES:
            out.append(f"{warning_count} warning-level issues outstanding")
        return out

    def is_auto_merge_safe(self, review: CheckerResult, ci_status: CIStatus, *, quality_score: float) -> bool:
        metrics = self.scorer.metrics(review)
        threshold = self.config.auto_merge_threshold
        return (
            self.scorer.meets_threshold(quality_score, threshold)
            and self.scorer.meets_threshold(metrics.overall_score, threshold)
            and metrics.security >= AUTO_MERGE_MIN_SECURITY_SCORE
            and not review.security_issues
            and not review.issues_with(Severity.ERROR)
            and ci_status == CIStatus.SUCCESS
        )

    def estimate_effort_to_pass(self, review: CheckerResult) -> EffortEstimate:
        metrics = self.scorer.metrics(review)
        gap = self.config.quality_threshold - metrics.overall_score
        errors = len(review.issues_with(Severity.ERROR))
        security = len(review.security_issues)
        if gap > 0.2 or errors > 10 or security > 3:
            return EffortEstimate(
                effort="high", description="Significant work needed: many issues or a large quality gap",
            )
        if gap > 0.1 or errors > 5 or security > 1:
            return EffortEstimate(effort="medium", description="Moderate work needed: several issues to address")
        return EffortEstimate(effort="low", description="Minor fixes needed: close to passing all gates")


class MergeDecider:
    """Combines gates, auto-merge eligibility and human-approval rules into a ``MergeDecision``."""

    def __init__(self, config: LoopConfig, gates: QualityGates | None = None) -> None:
        self.config = config
        self.gates = gates or QualityGates(config)

    def decide(
        self,
        state: IterationState,
        review: CheckerResult,
        ci_status: CIStatus,
        *,
        quality_score: float | None = None,
        total_cost: float | None = None,
    ) -> MergeDecision:
        score = state.quality_score if quality_score is None else quality_score
        cost = state.lifetime_cost if total_cost is None else total_cost

        report = self.gates.check_gates(review, ci_status, quality_score=score, total_cost=cost)
        human = self.human_approval_reasons(state, review, ci_status, quality_score=score, total_cost=cost)
        auto = (
            self.config.auto_merge_enabled
            and report.passed
            and self.gates.is_auto_merge_safe(review, ci_status, quality_score=score)
            and not human
        )

        if report.passed:
            reason = (
                f"Quality threshold met: {_pct(score)} | "
                f"Iterations used: {state.current_iteration}/{state.max_iterations} | "
                f"Total cost: ${cost:.2f} | "
                + ("Auto-merge enabled" if auto else "Ready for review, manual merge approval required")
            )
        else:
            reason = "Cannot merge yet: " + "; ".join(report.failed_gates)
        if human:
            reason += " | Human approval required: " + "; ".join(human)
        log.debug(
            "Merge decision for %s#%d: merge=%s auto=%s failed=%s",
            state.repository, state.change_id, report.passed, auto, report.failed_gates,
        )

        return MergeDecision(
            should_merge=report.passed,
            auto_merge=auto,
            requires_human_approval=bool(human) or not auto,
            blocking_issues=self.gates.blocking_issues(review),
            failed_gates=report.failed_gates,
            warnings=report.warnings,
            reason=reason,
            quality_score=score,
            iterations_used=state.current_iteration,
            total_cost=cost,
        )

    def human_approval_reasons(
        self,
        state: IterationState,
        review: CheckerResult,
        ci_status: CIStatus,
        *,
        quality_score: float,
        total_cost: float,
    ) -> list[str]:
        """Every enabled human-approval rule that fires, as a short reason."""
        rules = self.config.require_human_approval_if
        reasons: list[str] = []
        if quality_score < rules.quality_score_below:
            reasons.append(f"quality {_pct(quality_score)} below review floor {_pct(rules.quality_score_below)}")
        if rules.security_issues_found and review.security_issues:
            reasons.append(f"{len(review.security_issues)} security issue(s) found")
        if rules.iterations_exceeded and state.current_iteration >= state.max_iterations:
            reasons.append(f"iteration cap reached ({state.max_iterations})")
        if rules.cost_exceeded and round(total_cost, 6) >= self.config.max_cost_per_change:
            reasons.append(f"cost cap reached (${total_cost:.2f})")
        if rules.ci_not_successful and ci_status != CIStatus.SUCCESS:
            reasons.append(f"CI status is '{ci_status}'")
        return reasons

    @staticmethod
    def recommended_action(decision: MergeDecision, state: IterationState) -> str:
        if decision.should_merge and not decision.requires_human_approval:
            return "Auto-merging (quality gates passed)"
        if decision.should_merge:
            return "Ready for review and manual merge"
        if state.current_iteration >= state.max_iterations:
            return "Max iterations reached: manual review required"
        if state.convergence_status == ConvergenceStatus.STAGNANT:
            return "Not improving: consider manual fixes or closing the change"
        if decision.blocking_issues:
            return f"Fix {len(decision.blocking_issues)} blocking issue(s) before merge"
        return "Continue iterations (quality not met yet)"
