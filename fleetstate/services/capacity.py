"""Per-query row cap for scheduled query reports.

Every scheduled query keeps at most ``max_rows`` payload-bearing result
rows across all hosts. Placeholder rows (no payload) cost nothing and are
always admitted. Rows past the cap are dropped without raising: reporting
is continuous, and once a report is full the tail is discarded.

The caller reads the current count inside the same transaction that
performs the insert, so the check and the write see the same snapshot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from fleetstate.schemas import ScheduledQueryResultRow

logger = logging.getLogger(__name__)


@dataclass
class CapacityDecision:
    """Outcome of admitting a batch of rows against one query's cap."""
    admitted: list[ScheduledQueryResultRow] = field(default_factory=list)
    positions: list[int] = field(default_factory=list)  # index of each admitted row in the input
    dropped: int = 0
    current_count: int = 0
    max_rows: int = 0

    @property
    def admitted_payload_rows(self) -> int:
        return sum(1 for row in self.admitted if row.data is not None)

    @property
    def full(self) -> bool:
        return self.current_count + self.admitted_payload_rows >= self.max_rows


class QueryReportCapacity:
    """Decides how many incoming rows fit under the per-query cap."""

    def __init__(self, max_rows: int):
        if max_rows < 0:
            raise ValueError(f"max_rows must be >= 0, got {max_rows}")
        self.max_rows = max_rows

    def room(self, current_count: int) -> int:
        """Payload rows that can still be added given ``current_count``."""
        return max(0, self.max_rows - current_count)

    def admit(
        self,
        current_count: int,
        rows: Sequence[ScheduledQueryResultRow],
    ) -> CapacityDecision:
        """Admit the leading payload rows that fit, plus every placeholder.

        Input order is preserved; payload rows after the cap is reached are
        dropped.
        """
        remaining = self.room(current_count)
        decision = CapacityDecision(current_count=current_count, max_rows=self.max_rows)
        for position, row in enumerate(rows):
            if row.data is not None:
                if remaining == 0:
                    decision.dropped += 1
                    continue
                remaining -= 1
            decision.admitted.append(row)
            decision.positions.append(position)
        return decision
