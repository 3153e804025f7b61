"""Dry-run planning.

Walks the graph with the scheduler's eligibility rules and records, pass by
pass, what would be deleted. No deletion callback is ever invoked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .graph import ResourceGraph
from .grouping import eligible_groups, group_blockers, partition_groups, split_shared


@dataclass
class PlannedPass:
    """Resources that would be deleted together in one pass.

    Attributes:
        number: Pass number (1-based)
        entries: Resource summaries, one per resource
    """

    number: int
    entries: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class DeletionPlan:
    """Static deletion plan.

    Attributes:
        passes: Planned passes in dependency order
        blocked: Resources that would never become eligible, with their blockers
        skipped: Shared resources that would be left in place
    """

    passes: list[PlannedPass] = field(default_factory=list)
    blocked: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_resources(self) -> int:
        return sum(len(planned.entries) for planned in self.passes)

    @property
    def is_empty(self) -> bool:
        return not self.passes and not self.blocked and not self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "passes": [{"pass": planned.number, "resources": planned.entries} for planned in self.passes],
            "blocked": self.blocked,
            "skipped": self.skipped,
        }


class DryRunReporter:
    """Produce a deletion plan without mutating cloud state or the graph."""

    def plan(self, graph: ResourceGraph) -> DeletionPlan:
        """Compute the pass-by-pass deletion plan.

        Args:
            graph: Resources discovered for the cluster (left untouched)

        Returns:
            DeletionPlan listing passes, blocked remainder and skipped resources
        """
        working = graph.copy()
        working.prune_done()
        plan = DeletionPlan()
        plan.skipped = [resource.dump() for resource in split_shared(working)]

        while len(working) > 0:
            groups = eligible_groups(working)
            if not groups:
                break

            planned = PlannedPass(number=len(plan.passes) + 1)
            for group in groups:
                for member, entry in zip(group.members, group.dump()):
                    if group.is_batch:
                        entry = {**entry, "group": member.group_key}
                    planned.entries.append(entry)
                for key in group.member_keys:
                    working.remove(key)
            plan.passes.append(planned)

        for group in partition_groups(working.all()):
            blockers = sorted(group_blockers(group, working))
            for entry in group.dump():
                plan.blocked.append({**entry, "blocked_by": blockers})

        return plan
