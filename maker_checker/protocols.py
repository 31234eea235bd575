"""Contracts for the collaborators the loop drives.

The loop only talks to these protocols; ``agents/`` and ``github.py`` hold
the concrete implementations, and tests substitute in-memory fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from maker_checker.models.enums import CIStatus, NotificationKind
    from maker_checker.models.review import ChangeContext, CheckerResult, Issue, MakerResult

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    repository: str
    change_id: int
    message: str


class Checker(Protocol):
    async def review(self, context: ChangeContext) -> CheckerResult: ...


class Maker(Protocol):
    async def fix(self, context: ChangeContext, issues: list[Issue], attempt: int) -> MakerResult: ...


class SourceControl(Protocol):
    async def get_context(self, change_id: int) -> ChangeContext: ...

    async def get_ci_status(self, ref: str) -> CIStatus: ...

    async def merge(self, change_id: int) -> bool: ...

    async def comment(self, change_id: int, text: str) -> None: ...

    async def label(self, change_id: int, name: str) -> None: ...


class Notifier(Protocol):
    async def send(self, event: Notification) -> None: ...


class LogNotifier:
    """Notifier that writes every event to the log."""

    async def send(self, event: Notification) -> None:
        log.info("[%s] %s#%d: %s", event.kind, event.repository, event.change_id, event.message)
