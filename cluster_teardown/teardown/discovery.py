"""Discovery adapter interface.

Each cloud provider implements a DiscoveryAdapter whose listing functions turn
cloud objects owned by the cluster into Resources. collect_resources runs the
listings and merges them into one graph.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

from ..models.resource import Resource
from .errors import DiscoveryError
from .graph import ResourceGraph

logger = logging.getLogger(__name__)

ListFunction = Callable[[], list[Resource]]
PostListFunction = Callable[[ResourceGraph], list[Resource]]


class DiscoveryAdapter(ABC):
    """Abstract base class for cloud discovery adapters.

    Each adapter should:
    1. Decide which cloud objects belong to the cluster (name/tag matching)
    2. Build Resources with blocking relationships and deletion callbacks
    3. Keep any per-run caches as instance state, filled in prepare()
    4. Map "not found" on delete to success inside its deleters
    """

    @property
    @abstractmethod
    def cloud_name(self) -> str:
        """Short cloud identifier (e.g., "gce", "aws")."""
        pass

    @abstractmethod
    def list_functions(self) -> list[ListFunction]:
        """Independent listing functions, safe to run concurrently.

        Returns:
            Callables each returning a list of Resources
        """
        pass

    def post_list_functions(self) -> list[PostListFunction]:
        """Listings that need the merged result of list_functions().

        Returns:
            Callables receiving the graph and returning a list of Resources
        """
        return []

    def prepare(self) -> None:
        """Hook run once before any listing function."""
        pass


def collect_resources(adapter: DiscoveryAdapter, max_workers: int = 4) -> ResourceGraph:
    """Run every listing function of an adapter and merge the results.

    First-stage listings run concurrently and are merged in declaration order
    once all have completed, so a later function overwrites an earlier one on
    key collision. Second-stage listings then run sequentially against the
    merged graph. Resources already marked done are pruned.

    Args:
        adapter: Provider discovery adapter
        max_workers: Maximum concurrent listing calls (default: 4)

    Returns:
        ResourceGraph holding every resource owned by the cluster

    Raises:
        DiscoveryError: If preparation or any listing function fails
    """
    cloud = adapter.cloud_name

    try:
        adapter.prepare()
    except DiscoveryError:
        raise
    except Exception as e:
        raise DiscoveryError(f"error preparing discovery: {e}", cloud=cloud) from e

    functions = adapter.list_functions()
    results: list[Optional[list[Resource]]] = [None] * len(functions)

    if functions:
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(functions)))) as executor:
            futures = {executor.submit(fn): index for index, fn in enumerate(functions)}

            for future in as_completed(futures):
                index = futures[future]
                name = _function_name(functions[index])
                try:
                    results[index] = future.result()
                except DiscoveryError:
                    raise
                except Exception as e:
                    raise DiscoveryError(f"error in {name}: {e}", cloud=cloud) from e
                logger.debug(f"{name} found {len(results[index] or [])} resources")

    graph = ResourceGraph()
    for fn, resources in zip(functions, results):
        try:
            graph.merge(resources or [])
        except ValueError as e:
            raise DiscoveryError(f"invalid resource from {_function_name(fn)}: {e}", cloud=cloud) from e

    for fn in adapter.post_list_functions():
        name = _function_name(fn)
        try:
            resources = fn(graph)
            graph.merge(resources)
        except DiscoveryError:
            raise
        except Exception as e:
            raise DiscoveryError(f"error in {name}: {e}", cloud=cloud) from e
        logger.debug(f"{name} found {len(resources)} resources")

    pruned = graph.prune_done()
    if pruned:
        logger.debug(f"Pruned {len(pruned)} resources already deleted")

    logger.info(f"Discovered {len(graph)} resources in {cloud}")
    return graph


def _function_name(fn: Callable) -> str:
    return getattr(fn, "__name__", repr(fn))
