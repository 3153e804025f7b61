"""Teardown result model.

Outcome of a scheduler run: the residual graph, the per-resource errors and the
pass-by-pass record of what was attempted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ..teardown.errors import DeleteError, StalledError
from .resource import Resource

if TYPE_CHECKING:
    from ..teardown.graph import ResourceGraph


class TeardownOutcome(Enum):
    """Terminal state of a scheduler run."""

    COMPLETED = "completed"
    STALLED = "stalled"
    CANCELLED = "cancelled"


@dataclass
class PassRecord:
    """One scheduler pass.

    Attributes:
        number: Pass number (1-based)
        attempted: Keys attempted in this pass
        deleted: Keys deleted in this pass
        failed: Keys whose deletion failed in this pass
    """

    number: int
    attempted: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def made_progress(self) -> bool:
        return bool(self.deleted)


@dataclass
class TeardownResult:
    """Result of a deletion run.

    State transitions:
        running → completed (graph empty)
        running → stalled (non-empty graph, no progress)
        running → cancelled (deadline or cancel signal before the graph emptied)

    Attributes:
        residual: Resources still present (empty on full success)
        errors: Last deletion error per residual key
        passes: Pass records in execution order
        skipped: Shared resources that were never attempted
        outcome: Terminal state
        started_at: When the run started (UTC)
        completed_at: When the run finished (UTC)
    """

    residual: ResourceGraph
    errors: dict[str, DeleteError] = field(default_factory=dict)
    passes: list[PassRecord] = field(default_factory=list)
    skipped: list[Resource] = field(default_factory=list)
    outcome: TeardownOutcome = TeardownOutcome.COMPLETED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.outcome == TeardownOutcome.COMPLETED and len(self.residual) == 0

    @property
    def deleted_keys(self) -> list[str]:
        deleted = []
        for record in self.passes:
            deleted.extend(record.deleted)
        return deleted

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def blockers_of(self, key: str) -> list[str]:
        """Residual keys still blocking the given residual resource."""
        return sorted(self.residual.live_blockers(key))

    def raise_for_outcome(self) -> None:
        """Raise if the run stalled.

        Raises:
            StalledError: If the outcome is STALLED
        """
        if self.outcome == TeardownOutcome.STALLED:
            raise StalledError(sorted(self.residual.keys()), dict(self.errors))
