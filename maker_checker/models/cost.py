"""Cost events and append-only JSONL I/O."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError

if TYPE_CHECKING:
    from pathlib import Path

log = logging.getLogger(__name__)


class CostEvent(BaseModel):
    """Spend of one iteration, serialized as one JSON line."""

    repository: str
    change_id: int = Field(ge=1)
    iteration: int = Field(ge=1)
    checker_cost: float = Field(default=0.0, ge=0.0)
    maker_cost: float = Field(default=0.0, ge=0.0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def total(self) -> float:
        return self.checker_cost + self.maker_cost

    @property
    def period(self) -> str:
        return period_key(self.timestamp)


def period_key(ts: datetime) -> str:
    """Calendar-month key (UTC) used to name period logs."""
    return ts.astimezone(UTC).strftime("%Y-%m")


# ---------------------------------------------------------------------------
# JSONL I/O
# ---------------------------------------------------------------------------


def append_event(path: Path, event: CostEvent) -> None:
    """Append one event as a single write on a file opened in append mode."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(event.model_dump_json() + "\n")


def load_events(path: Path) -> list[CostEvent]:
    """Replay a JSONL event log, skipping lines that do not parse."""
    if not path.exists():
        return []
    events: list[CostEvent] = []
    for lineno, raw in enumerate(path.read_bytes().splitlines(), start=1):
        if not raw.strip():
            continue
        try:
            events.append(CostEvent.model_validate_json(raw.decode("utf-8")))
        except (UnicodeDecodeError, ValidationError):
            log.warning("Skipping unparseable cost event at %s:%d", path, lineno)
    return events
