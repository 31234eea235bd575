"""Exception types raised by maker-checker.

Budget exhaustion and blocked gates are ordinary values (``Exhausted``
phases, ``MergeDecision``), not exceptions.
"""

from __future__ import annotations


class MakerCheckerError(Exception):
    """Base class for every error raised by this package."""


class CollaboratorError(MakerCheckerError):
    """A Checker, Maker or source-control call failed or timed out."""

    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
        self.message = message


class ConfigError(MakerCheckerError):
    """Configuration is inconsistent and the loop must not start."""


class StateCorruptionError(MakerCheckerError):
    """A persisted state file exists but cannot be decoded."""


class StateFrozenError(MakerCheckerError):
    """A transition was attempted on a state that already reached a terminal phase."""
