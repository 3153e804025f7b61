"""Resource graph.

Holds the discovered resources of one cluster keyed by "type:id" and the
normalized blocked-by relation used to decide deletion order.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Optional

from ..models.resource import Resource

logger = logging.getLogger(__name__)


class ResourceGraph:
    """Mapping of resource key to resource with blocking relationships.

    Blocking edges may be declared from either endpoint (``blocks`` on the
    blocker, ``blocked`` on the dependent). They are normalized into a single
    blocked-by adjacency per key, built lazily after the last insertion and
    reused until the next one. Removing a resource keeps the adjacency: an
    edge to an absent key counts as satisfied.

    Iteration order is not meaningful; ordering comes from the blocking
    relation only.
    """

    def __init__(self, resources: Optional[Iterable[Resource]] = None) -> None:
        """Initialize graph.

        Args:
            resources: Initial resources (later duplicates overwrite earlier ones)
        """
        self._resources: dict[str, Resource] = {}
        self._blocked_by: Optional[dict[str, frozenset[str]]] = None

        if resources is not None:
            self.merge(resources)

    def put(self, resource: Resource) -> None:
        """Insert or overwrite a resource by key.

        Raises:
            ValueError: If the resource fails validation
        """
        resource.validate()
        self._resources[resource.key] = resource
        self._blocked_by = None

    def merge(self, resources: Iterable[Resource]) -> int:
        """Insert many resources, last writer wins.

        Returns:
            Number of resources inserted
        """
        count = 0
        for resource in resources:
            if resource.key in self._resources:
                logger.debug(f"Replacing duplicate resource {resource.key}")
            self.put(resource)
            count += 1
        return count

    def get(self, key: str) -> Optional[Resource]:
        return self._resources.get(key)

    def remove(self, key: str) -> Optional[Resource]:
        """Remove a resource by key.

        Returns:
            The removed resource, or None if the key was absent
        """
        return self._resources.pop(key, None)

    def all(self) -> list[Resource]:
        """Current live set of resources."""
        return list(self._resources.values())

    def keys(self) -> list[str]:
        return list(self._resources.keys())

    def prune_done(self) -> list[str]:
        """Drop every resource already marked done.

        Returns:
            Keys that were removed
        """
        pruned = [key for key, resource in self._resources.items() if resource.done]
        for key in pruned:
            del self._resources[key]
        return pruned

    def blocked_by(self, key: str) -> frozenset[str]:
        """Keys that must be gone before the given resource can be deleted.

        Union of the resource's own ``blocked`` entries and every ``blocks``
        entry naming it. May include keys absent from the graph.
        """
        if self._blocked_by is None:
            self._blocked_by = self._build_blocked_by()
        return self._blocked_by.get(key, frozenset())

    def live_blockers(self, key: str) -> set[str]:
        """Blockers of the given resource still present and not done."""
        live = set()
        for blocker in self.blocked_by(key):
            resource = self._resources.get(blocker)
            if resource is not None and not resource.done:
                live.add(blocker)
        return live

    def copy(self) -> ResourceGraph:
        """Shallow copy sharing resource objects and the blocked-by relation."""
        clone = ResourceGraph()
        clone._resources = dict(self._resources)
        if self._blocked_by is None:
            self._blocked_by = self._build_blocked_by()
        clone._blocked_by = self._blocked_by
        return clone

    def _build_blocked_by(self) -> dict[str, frozenset[str]]:
        adjacency: dict[str, set[str]] = {}

        for key, resource in self._resources.items():
            adjacency.setdefault(key, set()).update(resource.blocked)
            for target in resource.blocks:
                adjacency.setdefault(target, set()).add(key)

        for key, blockers in adjacency.items():
            if key in blockers:
                logger.debug(f"Ignoring self-block on {key}")
                blockers.discard(key)

        return {key: frozenset(blockers) for key, blockers in adjacency.items()}

    def __contains__(self, key: object) -> bool:
        return key in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._resources.values()))

    def __repr__(self) -> str:
        return f"ResourceGraph({len(self)} resources)"
