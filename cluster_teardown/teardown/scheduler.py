"""Deletion scheduler.

Drives a resource graph to empty by repeatedly deleting every group whose
blockers are gone. Deletions within a pass run concurrently; passes are a hard
barrier. The run stops when the graph is empty, when a pass makes no progress,
or when the deadline / cancel signal fires.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Optional

from ..models.teardown_result import PassRecord, TeardownOutcome, TeardownResult
from .errors import DeleteError, ResourceNotFoundError
from .graph import ResourceGraph
from .grouping import DeletionGroup, eligible_groups, split_shared

logger = logging.getLogger(__name__)


class DeletionScheduler:
    """Fixed-point deletion scheduler.

    Only local information is used: a group is attempted once none of its
    members has a live blocker. Failed deletions stay in the graph and are
    retried on the next pass. A zero-progress pass on a non-empty graph ends
    the run as STALLED, optionally after ``stall_retries`` extra passes spaced
    ``retry_interval`` seconds apart for eventually-consistent clouds.

    Attributes:
        max_workers: Upper bound on concurrent deletions within a pass
        stall_retries: Extra zero-progress passes tolerated before stalling
        retry_interval: Seconds to wait before a retry pass
        timeout: Overall deadline in seconds (None for no deadline)
        cancel_event: Optional event that stops the run before the next pass
    """

    def __init__(
        self,
        max_workers: int = 10,
        stall_retries: int = 0,
        retry_interval: float = 10.0,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize deletion scheduler.

        Args:
            max_workers: Maximum concurrent deletions per pass (default: 10)
            stall_retries: Zero-progress passes to retry before stalling (default: 0)
            retry_interval: Seconds between retry passes (default: 10.0)
            timeout: Overall deadline in seconds (optional)
            cancel_event: Cancel signal checked before each pass (optional)
            sleep: Sleep function, replaceable in tests
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if stall_retries < 0:
            raise ValueError("stall_retries cannot be negative")

        self.max_workers = max_workers
        self.stall_retries = stall_retries
        self.retry_interval = retry_interval
        self.timeout = timeout
        self.cancel_event = cancel_event
        self._sleep = sleep

    def run(self, graph: ResourceGraph) -> TeardownResult:
        """Delete every resource in the graph in dependency order.

        The graph is mutated in place: deleted resources are marked done and
        removed. The same graph object is returned as the residual.

        Args:
            graph: Resources discovered for the cluster

        Returns:
            TeardownResult with the residual graph, errors and pass records
        """
        started_at = datetime.utcnow()
        deadline = time.monotonic() + self.timeout if self.timeout is not None else None

        pruned = graph.prune_done()
        if pruned:
            logger.debug(f"Pruned {len(pruned)} resources already deleted")

        skipped = split_shared(graph)
        errors: dict[str, DeleteError] = {}
        passes: list[PassRecord] = []
        outcome = TeardownOutcome.COMPLETED
        zero_progress_passes = 0

        while len(graph) > 0:
            if self._should_stop(deadline):
                logger.warning(f"Teardown cancelled with {len(graph)} resources remaining")
                outcome = TeardownOutcome.CANCELLED
                break

            groups = eligible_groups(graph)
            if not groups:
                logger.warning(f"No deletable resources remain; {len(graph)} resources are blocked")
                outcome = TeardownOutcome.STALLED
                break

            record = self._run_pass(len(passes) + 1, groups, graph, errors)
            passes.append(record)

            if record.made_progress:
                zero_progress_passes = 0
                continue

            if zero_progress_passes >= self.stall_retries:
                logger.warning(f"Not making progress deleting resources; {len(graph)} remaining")
                outcome = TeardownOutcome.STALLED
                break

            zero_progress_passes += 1
            logger.info(
                f"No progress in pass {record.number}, retrying in {self.retry_interval}s "
                f"(attempt {zero_progress_passes}/{self.stall_retries})"
            )
            self._sleep(self.retry_interval)

        if outcome == TeardownOutcome.COMPLETED:
            logger.info(f"Deleted all resources in {len(passes)} passes")

        return TeardownResult(
            residual=graph,
            errors=errors,
            passes=passes,
            skipped=skipped,
            outcome=outcome,
            started_at=started_at,
            completed_at=datetime.utcnow(),
        )

    def _run_pass(
        self,
        number: int,
        groups: list[DeletionGroup],
        graph: ResourceGraph,
        errors: dict[str, DeleteError],
    ) -> PassRecord:
        """Attempt every eligible group concurrently and wait for all of them.

        Outcomes are applied on the calling thread only, so the graph and the
        error tally have a single writer.
        """
        record = PassRecord(number=number)
        for group in groups:
            record.attempted.extend(group.member_keys)

        logger.info(f"Pass {number}: deleting {len(record.attempted)} resources in {len(groups)} groups")

        workers = min(self.max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._attempt, group): group for group in groups}

            for future in as_completed(futures):
                group = futures[future]
                failure = future.result()

                if failure is None:
                    group.mark_done()
                    for key in group.member_keys:
                        graph.remove(key)
                        errors.pop(key, None)
                        record.deleted.append(key)
                        logger.info(f"Deleted {key}")
                    continue

                for key in group.member_keys:
                    errors[key] = DeleteError(key, failure, pass_number=number)
                    record.failed.append(key)
                logger.warning(f"Failed to delete {group.group_id}: {failure}")

        return record

    def _attempt(self, group: DeletionGroup) -> Optional[Exception]:
        """Run a group deletion, returning the failure instead of raising."""
        try:
            group.delete()
        except ResourceNotFoundError:
            logger.info(f"{group.group_id} not found, assuming deleted")
            return None
        except Exception as e:
            return e
        return None

    def _should_stop(self, deadline: Optional[float]) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline
