"""Deletion groups.

Partitions the live graph into units of deletion: resources with a group
deleter are batched by group key and deleted through one provider call, every
other resource forms a singleton group.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..models.resource import Resource
from .errors import TeardownError
from .graph import ResourceGraph

logger = logging.getLogger(__name__)

GROUP_PREFIX = "group:"


@dataclass
class DeletionGroup:
    """Resources deleted together with a single outcome.

    Attributes:
        group_id: "group:<group_key>" for batched resources, the resource key otherwise
        members: Resources in the group
    """

    group_id: str
    members: list[Resource] = field(default_factory=list)

    @property
    def is_batch(self) -> bool:
        return self.group_id.startswith(GROUP_PREFIX)

    @property
    def member_keys(self) -> list[str]:
        return [member.key for member in self.members]

    def delete(self) -> None:
        """Invoke the provider callback for the group.

        Batched groups call the first member's group deleter once with every
        member; singleton groups call the member's own deleter.

        Raises:
            TeardownError: If no deletion callback is registered
            Exception: Whatever the provider callback raises
        """
        first = self.members[0]

        if self.is_batch:
            logger.debug(f"Deleting group {self.group_id} ({len(self.members)} resources)")
            first.group_deleter(list(self.members))
            return

        if first.deleter is None:
            raise TeardownError(f"no deleter registered for {first.key}")

        logger.debug(f"Deleting {first.key}")
        first.deleter(first)

    def mark_done(self) -> None:
        """Mark every member done."""
        for member in self.members:
            member.done = True

    def dump(self) -> list[dict[str, Any]]:
        return [member.dump() for member in self.members]


def partition_groups(resources: Iterable[Resource]) -> list[DeletionGroup]:
    """Partition resources into deletion groups.

    Args:
        resources: Resources to partition (done resources are ignored)

    Returns:
        Groups sorted by group ID
    """
    groups: dict[str, DeletionGroup] = {}

    for resource in resources:
        if resource.done:
            continue

        if resource.is_grouped:
            group_id = GROUP_PREFIX + resource.group_key
        else:
            group_id = resource.key

        groups.setdefault(group_id, DeletionGroup(group_id=group_id)).members.append(resource)

    for group in groups.values():
        group.members.sort(key=lambda member: member.key)

    return [groups[group_id] for group_id in sorted(groups)]


def group_blockers(group: DeletionGroup, graph: ResourceGraph) -> set[str]:
    """Live blockers of a group, excluding its own members."""
    blockers: set[str] = set()
    for member in group.members:
        blockers.update(graph.live_blockers(member.key))
    return blockers - set(group.member_keys)


def eligible_groups(graph: ResourceGraph) -> list[DeletionGroup]:
    """Groups whose blockers are all absent from the graph or done."""
    return [group for group in partition_groups(graph.all()) if not group_blockers(group, graph)]


def split_shared(graph: ResourceGraph) -> list[Resource]:
    """Remove shared resources from the graph.

    Shared resources are never deleted; once out of the graph they no longer
    hold back the resources they block.

    Returns:
        The removed shared resources, sorted by key
    """
    shared = sorted((resource for resource in graph.all() if resource.shared), key=lambda r: r.key)
    for resource in shared:
        graph.remove(resource.key)
        logger.info(f"Skipping shared resource {resource.key}")
    return shared
