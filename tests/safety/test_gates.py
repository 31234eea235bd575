"""Tests for quality gates and merge decisions."""

from collections.abc import Callable

import pytest

from maker_checker.config import HumanApprovalRules, LoopConfig
from maker_checker.models.enums import CIStatus, IssueCategory, SecuritySeverity, Severity
from maker_checker.models.review import CheckerResult, Issue, SecurityIssue
from maker_checker.models.state import IterationState
from maker_checker.safety.gates import MergeDecider, QualityGates

MakeReview = Callable[..., CheckerResult]
MakeState = Callable[..., IterationState]


@pytest.fixture
def gates(config: LoopConfig) -> QualityGates:
    return QualityGates(config)


class TestCheckGates:
    def test_clean_review_passes(self, gates: QualityGates, make_review: MakeReview) -> None:
        report = gates.check_gates(make_review(0.9), CIStatus.SUCCESS, quality_score=0.9, total_cost=0.5)
        assert report.passed
        assert report.failed_gates == []
        assert report.warnings == []

    def test_error_issue_blocks(self, gates: QualityGates, make_review: MakeReview) -> None:
        report = gates.check_gates(make_review(0.99, errors=1), CIStatus.SUCCESS, quality_score=0.89, total_cost=0.0)
        assert not report.passed
        assert "1 error-level issue(s) and 0 critical/high security issue(s) must be fixed" in report.failed_gates

    def test_ci_must_succeed(self, gates: QualityGates, make_review: MakeReview) -> None:
        report = gates.check_gates(make_review(0.9), CIStatus.PENDING, quality_score=0.9, total_cost=0.0)
        assert report.failed_gates == ["CI status is 'pending', must be 'success'"]

    def test_cost_cap(self, gates: QualityGates, make_review: MakeReview) -> None:
        report = gates.check_gates(make_review(0.9), CIStatus.SUCCESS, quality_score=0.9, total_cost=5.0)
        assert report.failed_gates == ["Cost $5.00 reached cap $5.00"]

    def test_quality_threshold(self, gates: QualityGates, make_review: MakeReview) -> None:
        report = gates.check_gates(make_review(0.8), CIStatus.SUCCESS, quality_score=0.8, total_cost=0.0)
        assert report.failed_gates == ["Quality 80.0% below threshold 85.0%"]

    def test_threshold_met_exactly(self, gates: QualityGates, make_review: MakeReview) -> None:
        report = gates.check_gates(make_review(0.9, warnings=1), CIStatus.SUCCESS, quality_score=0.85, total_cost=0.0)
        assert report.passed

    def test_security_score(self, gates: QualityGates) -> None:
        review = CheckerResult(
            overall_score=0.99,
            issues=[
                Issue(category=IssueCategory.SECURITY, severity=Severity.WARNING, message=f"weak {n}")
                for n in range(4)
            ],
        )
        report = gates.check_gates(review, CIStatus.SUCCESS, quality_score=0.99, total_cost=0.0)
        # 1.0 - 4 * 0.08
        assert "Security score 68.0% below minimum 70.0%" in report.failed_gates

    def test_soft_warnings(self, gates: QualityGates, make_review: MakeReview) -> None:
        report = gates.check_gates(make_review(1.0, warnings=11), CIStatus.SUCCESS, quality_score=0.5, total_cost=0.0)
        assert any(w.startswith("Code quality score") for w in report.warnings)
        assert "11 warning-level issues outstanding" in report.warnings


class TestBlockingIssues:
    def test_security_findings_synthesized(self, gates: QualityGates, make_review: MakeReview) -> None:
        review = make_review(0.9, errors=1, security=[SecuritySeverity.CRITICAL, SecuritySeverity.LOW])
        blocking = gates.blocking_issues(review)
        assert len(blocking) == 2
        assert blocking[1].message == "[CRITICAL] finding 0"
        assert blocking[1].category == IssueCategory.SECURITY

    def test_duplicate_finding_not_repeated(self, gates: QualityGates) -> None:
        review = CheckerResult(
            overall_score=0.5,
            issues=[
                Issue(category=IssueCategory.SECURITY, severity=Severity.ERROR, file="db.py", line=4,
                      message="SQL injection"),
            ],
            security_issues=[
                SecurityIssue(severity=SecuritySeverity.HIGH, description="SQL injection", file="db.py", line=4),
            ],
        )
        assert len(gates.blocking_issues(review)) == 1


class TestAutoMergeSafety:
    def test_safe(self, gates: QualityGates, make_review: MakeReview) -> None:
        assert gates.is_auto_merge_safe(make_review(0.9), CIStatus.SUCCESS, quality_score=0.9)

    def test_below_auto_merge_threshold(self, gates: QualityGates, make_review: MakeReview) -> None:
        assert not gates.is_auto_merge_safe(make_review(0.9), CIStatus.SUCCESS, quality_score=0.88)

    def test_any_security_finding_disqualifies(self, gates: QualityGates, make_review: MakeReview) -> None:
        review = make_review(1.0, security=[SecuritySeverity.LOW])
        assert not gates.is_auto_merge_safe(review, CIStatus.SUCCESS, quality_score=1.0)

    def test_effort_estimate(self, gates: QualityGates, make_review: MakeReview) -> None:
        assert gates.estimate_effort_to_pass(make_review(0.9)).effort == "low"
        assert gates.estimate_effort_to_pass(make_review(0.5, errors=11)).effort == "high"


class TestMergeDecider:
    def test_ready_but_manual(self, config: LoopConfig, make_review: MakeReview, make_state: MakeState) -> None:
        state = make_state([0.9])
        decision = MergeDecider(config).decide(state, make_review(0.9), CIStatus.SUCCESS)
        assert decision.should_merge
        assert not decision.auto_merge
        assert decision.requires_human_approval
        assert "manual merge approval required" in decision.reason
        assert MergeDecider.recommended_action(decision, state) == "Ready for review and manual merge"

    def test_auto_merge(self, config: LoopConfig, make_review: MakeReview, make_state: MakeState) -> None:
        config = config.model_copy(update={"auto_merge_enabled": True})
        state = make_state([0.9])
        decision = MergeDecider(config).decide(state, make_review(0.9), CIStatus.SUCCESS)
        assert decision.auto_merge
        assert not decision.requires_human_approval
        assert "Auto-merge enabled" in decision.reason
        assert MergeDecider.recommended_action(decision, state) == "Auto-merging (quality gates passed)"

    def test_critical_finding_blocks_high_score(
        self, config: LoopConfig, make_review: MakeReview, make_state: MakeState,
    ) -> None:
        config = config.model_copy(update={"auto_merge_enabled": True})
        review = make_review(1.0, security=[SecuritySeverity.CRITICAL])
        decision = MergeDecider(config).decide(make_state([0.99]), review, CIStatus.SUCCESS, quality_score=0.99)
        assert not decision.should_merge
        assert not decision.auto_merge
        assert decision.blocking_issues[0].message.startswith("[CRITICAL]")
        assert decision.reason.startswith("Cannot merge yet:")
        assert "1 security issue(s) found" in decision.reason

    def test_ci_rule_can_be_disabled(self, config: LoopConfig, make_review: MakeReview, make_state: MakeState) -> None:
        state = make_state([0.9])
        reasons = MergeDecider(config).human_approval_reasons(
            state, make_review(0.9), CIStatus.PENDING, quality_score=0.9, total_cost=0.0,
        )
        assert reasons == ["CI status is 'pending'"]

        relaxed = config.model_copy(
            update={"require_human_approval_if": HumanApprovalRules(ci_not_successful=False)},
        )
        reasons = MergeDecider(relaxed).human_approval_reasons(
            state, make_review(0.9), CIStatus.PENDING, quality_score=0.9, total_cost=0.0,
        )
        assert reasons == []

    def test_iteration_cap_requires_approval(
        self, config: LoopConfig, make_review: MakeReview, make_state: MakeState,
    ) -> None:
        state = make_state([0.5] * 5)
        decider = MergeDecider(config)
        decision = decider.decide(state, make_review(0.5), CIStatus.SUCCESS)
        assert decision.requires_human_approval
        assert "iteration cap reached (5)" in decision.reason
        assert MergeDecider.recommended_action(decision, state) == "Max iterations reached: manual review required"

    def test_blocking_issue_action(self, config: LoopConfig, make_review: MakeReview, make_state: MakeState) -> None:
        state = make_state([0.7])
        decision = MergeDecider(config).decide(state, make_review(0.9, errors=2), CIStatus.SUCCESS, quality_score=0.7)
        assert MergeDecider.recommended_action(decision, state) == "Fix 2 blocking issue(s) before merge"
