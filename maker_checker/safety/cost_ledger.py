"""Append-only cost ledger with per-change and per-period totals derived by replay."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from maker_checker.models.cost import CostEvent, append_event, load_events, period_key
from maker_checker.models.decision import ChangeCost, CostSummary, PeriodCapStatus
from maker_checker.models.state import change_key

if TYPE_CHECKING:
    from pathlib import Path

    from maker_checker.config import LoopConfig

log = logging.getLogger(__name__)

PERIOD_WARNING_PERCENT = 75.0
HIGH_AVERAGE_RATIO = 0.8


class CostLedger:
    """Records one ``CostEvent`` per iteration under ``<root>/costs/``.

    Each event goes to the change's own log and to the log of the calendar
    month it was recorded in. Nothing is ever rewritten, so several change
    loops may record into the same period log concurrently.
    """

    def __init__(self, root: Path, config: LoopConfig) -> None:
        self.root = root / "costs"
        self.config = config

    def change_log(self, repository: str, change_id: int) -> Path:
        return self.root / "changes" / f"{change_key(repository, change_id)}.jsonl"

    def period_log(self, period: str) -> Path:
        return self.root / "periods" / f"{period}.jsonl"

    def record(self, event: CostEvent) -> None:
        append_event(self.change_log(event.repository, event.change_id), event)
        append_event(self.period_log(event.period), event)
        log.debug(
            "Recorded $%.4f for %s#%d iteration %d",
            event.total, event.repository, event.change_id, event.iteration,
        )

    def change_total(self, repository: str, change_id: int) -> float:
        return round(sum(e.total for e in load_events(self.change_log(repository, change_id))), 6)

    def period_total(self, period: str | None = None) -> float:
        period = period or period_key(datetime.now(UTC))
        return round(sum(e.total for e in load_events(self.period_log(period))), 6)

    def has_exceeded_change_cap(self, repository: str, change_id: int) -> bool:
        return self.change_total(repository, change_id) >= self.config.max_cost_per_change

    def check_period_cap(self, period: str | None = None) -> PeriodCapStatus:
        total = self.period_total(period)
        limit = self.config.period_cost_cap
        percentage = round(total / limit * 100.0, 6)
        return PeriodCapStatus(
            exceeded=total >= limit,
            warning=percentage >= PERIOD_WARNING_PERCENT,
            total=total,
            limit=limit,
            percentage=percentage,
        )

    def summary(self, period: str | None = None) -> CostSummary:
        """Per-change breakdown of a period with operator recommendations."""
        period = period or period_key(datetime.now(UTC))
        events = load_events(self.period_log(period))
        totals: dict[tuple[str, int], float] = defaultdict(float)
        iterations: dict[tuple[str, int], int] = defaultdict(int)
        for e in events:
            totals[(e.repository, e.change_id)] += e.total
            iterations[(e.repository, e.change_id)] += 1

        changes = [
            ChangeCost(repository=repo, change_id=cid, total=round(total, 6), iterations=iterations[(repo, cid)])
            for (repo, cid), total in sorted(totals.items())
        ]
        status = self.check_period_cap(period)
        average = round(status.total / len(changes), 6) if changes else 0.0

        recommendations: list[str] = []
        if status.exceeded:
            recommendations.append(
                "URGENT: period cost cap exceeded. Review configuration and consider pausing automation."
            )
        elif status.warning:
            recommendations.append("WARNING: approaching period cost cap. Monitor closely.")
        if average > self.config.max_cost_per_change * HIGH_AVERAGE_RATIO:
            recommendations.append(
                f"Average cost per change (${average:.2f}) is high. Consider reducing max_iterations."
            )
        if not recommendations:
            recommendations.append("All cost metrics look good.")

        return CostSummary(
            period=period,
            total=status.total,
            limit=status.limit,
            percentage=status.percentage,
            changes=changes,
            average_per_change=average,
            recommendations=recommendations,
        )
