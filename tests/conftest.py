"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from maker_checker.config import LoopConfig
from maker_checker.driver import LoopContext
from maker_checker.models.enums import CallStatus, CIStatus, IssueCategory, SecuritySeverity, Severity
from maker_checker.models.review import (
    ChangeContext,
    CheckerResult,
    FileChange,
    Issue,
    MakerResult,
    SecurityIssue,
)
from maker_checker.models.state import IterationRecord, IterationState, ReviewSummary, new_state
from maker_checker.safety.cost_ledger import CostLedger
from maker_checker.store import StateStore

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class FakeChecker:
    """Returns scripted results in order; repeats the last one when exhausted."""

    def __init__(self, results: list[CheckerResult]) -> None:
        self.results = list(results)
        self.calls: list[ChangeContext] = []

    async def review(self, context: ChangeContext) -> CheckerResult:
        self.calls.append(context)
        index = min(len(self.calls), len(self.results)) - 1
        return self.results[index]


class FakeMaker:
    def __init__(self, result: MakerResult | None = None) -> None:
        self.result = result or MakerResult(files_modified=["app.py"], issues_addressed=2, cost=0.2)
        self.calls: list[tuple[list[Issue], int]] = []

    async def fix(self, context: ChangeContext, issues: list[Issue], attempt: int) -> MakerResult:
        self.calls.append((issues, attempt))
        return self.result


class FakeSourceControl:
    def __init__(self, context: ChangeContext, ci_status: CIStatus = CIStatus.SUCCESS) -> None:
        self.context = context
        self.ci_status = ci_status
        self.comments: list[str] = []
        self.labels: list[str] = []
        self.merged: list[int] = []
        self.merge_ok = True

    async def get_context(self, change_id: int) -> ChangeContext:
        return self.context

    async def get_ci_status(self, ref: str) -> CIStatus:
        return self.ci_status

    async def merge(self, change_id: int) -> bool:
        self.merged.append(change_id)
        return self.merge_ok

    async def comment(self, change_id: int, text: str) -> None:
        self.comments.append(text)

    async def label(self, change_id: int, name: str) -> None:
        self.labels.append(name)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list = []

    async def send(self, event) -> None:  # noqa: ANN001
        self.events.append(event)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> LoopConfig:
    return LoopConfig(model="claude-test", state_dir=tmp_path)


@pytest.fixture
def change_context() -> ChangeContext:
    return ChangeContext(
        owner="acme",
        repo="widgets",
        number=42,
        title="Add widget cache",
        description="Caches widget lookups.",
        author="dev",
        branch="feature/cache",
        head_sha="abc123",
        files=[FileChange(path="widgets/cache.py", additions=40, deletions=2)],
    )


@pytest.fixture
def make_review() -> Callable[..., CheckerResult]:
    def _make(
        score: float = 0.9,
        *,
        warnings: int = 0,
        errors: int = 0,
        security: list[SecuritySeverity] | None = None,
        cost: float = 0.1,
        low_confidence: bool = False,
    ) -> CheckerResult:
        issues = [
            Issue(category=IssueCategory.CODE_QUALITY, severity=Severity.WARNING, file="a.py", line=n + 1,
                  message=f"warning {n}")
            for n in range(warnings)
        ]
        issues += [
            Issue(category=IssueCategory.TYPE_SAFETY, severity=Severity.ERROR, file="b.py", line=n + 1,
                  message=f"error {n}")
            for n in range(errors)
        ]
        findings = [
            SecurityIssue(severity=sev, kind="injection", description=f"finding {n}", file="db.py", line=10 + n)
            for n, sev in enumerate(security or [])
        ]
        return CheckerResult(
            issues=issues,
            overall_score=score,
            security_issues=findings,
            cost=cost,
            low_confidence=low_confidence,
        )

    return _make


@pytest.fixture
def make_record() -> Callable[..., IterationRecord]:
    def _make(
        iteration: int,
        score: float,
        issues: int,
        *,
        low_confidence: bool = False,
        cost: float = 0.0,
        timestamp: datetime | None = None,
    ) -> IterationRecord:
        return IterationRecord(
            iteration=iteration,
            checker=ReviewSummary(status=CallStatus.SUCCESS, issues_found=issues, low_confidence=low_confidence),
            issues_found=issues,
            quality_score=score,
            cost=cost,
            low_confidence=low_confidence,
            timestamp=timestamp or T0 + timedelta(minutes=10 * iteration),
        )

    return _make


@pytest.fixture
def make_state(make_record: Callable[..., IterationRecord]) -> Callable[..., IterationState]:
    """State with one history record per score; issue counts default to 5."""

    def _make(
        scores: list[float],
        *,
        issues: list[int] | None = None,
        max_iterations: int = 5,
        cost_per_iteration: float = 0.0,
    ) -> IterationState:
        counts = issues or [5] * len(scores)
        history = [
            make_record(n, s, c, cost=cost_per_iteration)
            for n, (s, c) in enumerate(zip(scores, counts, strict=True), start=1)
        ]
        state = new_state("acme/widgets", 42, max_iterations=max_iterations, now=T0)
        return state.model_copy(
            update={
                "history": history,
                "current_iteration": len(history),
                "quality_score": scores[-1] if scores else 0.0,
                "total_cost": round(cost_per_iteration * len(history), 6),
            }
        )

    return _make


@pytest.fixture
def source_control(change_context: ChangeContext) -> FakeSourceControl:
    return FakeSourceControl(change_context)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def loop_context(
    config: LoopConfig,
    source_control: FakeSourceControl,
    notifier: RecordingNotifier,
) -> LoopContext:
    return LoopContext(
        checker=FakeChecker([CheckerResult(overall_score=0.95, cost=0.1)]),
        maker=FakeMaker(),
        source_control=source_control,
        config=config,
        ledger=CostLedger(config.state_dir, config),
        store=StateStore(config.state_dir),
        notifier=notifier,
    )


@pytest.fixture
def make_checker() -> Callable[[list[CheckerResult]], FakeChecker]:
    return FakeChecker


@pytest.fixture
def make_maker() -> Callable[..., FakeMaker]:
    return FakeMaker
