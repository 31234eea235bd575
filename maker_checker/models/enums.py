"""Enums for maker-checker models."""

from enum import StrEnum


class IssueCategory(StrEnum):
    """Review category an issue belongs to."""

    SECURITY = "security"
    PERFORMANCE = "performance"
    TYPE_SAFETY = "type_safety"
    CODE_QUALITY = "code_quality"
    BEST_PRACTICE = "best_practice"


class Severity(StrEnum):
    """Severity of a general review issue."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SecuritySeverity(StrEnum):
    """Severity tag carried by security findings."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PerformanceImpact(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CallStatus(StrEnum):
    """Outcome of a single Checker or Maker call."""

    SUCCESS = "success"
    ERROR = "error"


class CIStatus(StrEnum):
    """Combined CI status of the change's head commit."""

    SUCCESS = "success"
    PENDING = "pending"
    FAILURE = "failure"
    ERROR = "error"


class Phase(StrEnum):
    """State-machine phase of one change's loop."""

    IDLE = "idle"
    CHECKER_RUNNING = "checker_running"
    FIXER_RUNNING = "fixer_running"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES: frozenset[Phase] = frozenset({Phase.CONVERGED, Phase.EXHAUSTED, Phase.FAILED})


class ConvergenceStatus(StrEnum):
    IMPROVING = "improving"
    STAGNANT = "stagnant"
    REGRESSING = "regressing"


class NotificationKind(StrEnum):
    """Events the loop can report to a notifier."""

    ITERATION_COMPLETE = "iteration_complete"
    READY_TO_MERGE = "ready_to_merge"
    NEEDS_ATTENTION = "needs_attention"
    COST_WARNING = "cost_warning"
    ERROR = "error"
    STAGNANT = "stagnant"
    OVERRIDE = "override"
