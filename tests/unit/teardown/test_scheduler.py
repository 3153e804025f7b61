"""Unit tests for DeletionScheduler."""

from __future__ import annotations

import threading
import time
from typing import Optional
from unittest.mock import Mock

import pytest

from cluster_teardown.models.teardown_result import TeardownOutcome
from cluster_teardown.teardown.errors import DeleteError, ResourceNotFoundError, StalledError
from cluster_teardown.teardown.graph import ResourceGraph
from cluster_teardown.teardown.scheduler import DeletionScheduler
from tests.fixtures.resources import DeletionRecorder, gce_cluster_graph, make_graph, make_resource


def deletion_passes(result) -> list[list[str]]:
    """Deleted keys per pass, sorted within each pass."""
    return [sorted(record.deleted) for record in result.passes]


class TestSchedulerInit:
    """Tests for scheduler construction."""

    def test_defaults(self) -> None:
        scheduler = DeletionScheduler()

        assert scheduler.max_workers == 10
        assert scheduler.stall_retries == 0
        assert scheduler.timeout is None

    def test_rejects_zero_workers(self) -> None:
        with pytest.raises(ValueError, match="max_workers"):
            DeletionScheduler(max_workers=0)

    def test_rejects_negative_stall_retries(self) -> None:
        with pytest.raises(ValueError, match="stall_retries"):
            DeletionScheduler(stall_retries=-1)


class TestSchedulerOrdering:
    """Tests for dependency ordering."""

    def test_empty_graph_completes_without_passes(self) -> None:
        result = DeletionScheduler().run(ResourceGraph())

        assert result.outcome == TeardownOutcome.COMPLETED
        assert result.passes == []
        assert result.is_complete is True

    def test_group_manager_before_template(self) -> None:
        """igm1 blocks tA: the template can only go once the manager is gone."""
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("InstanceGroupManager", "igm1", recorder, blocks=["InstanceTemplate:tA"]),
            make_resource("InstanceTemplate", "tA", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert result.is_complete is True
        assert deletion_passes(result) == [["InstanceGroupManager:igm1"], ["InstanceTemplate:tA"]]
        assert recorder.deleted == ["InstanceGroupManager:igm1", "InstanceTemplate:tA"]

    def test_dangling_blocker_does_not_hold_back(self) -> None:
        """d1 is blocked by i1, which was never discovered."""
        recorder = DeletionRecorder()
        graph = make_graph(make_resource("Disk", "d1", recorder, blocked=["Instance:i1"]))

        result = DeletionScheduler().run(graph)

        assert deletion_passes(result) == [["Disk:d1"]]

    def test_blocker_deleted_first(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("Disk", "d1", recorder, blocked=["Instance:i1"]),
            make_resource("Instance", "i1", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert deletion_passes(result) == [["Instance:i1"], ["Disk:d1"]]

    def test_chain_takes_one_pass_per_link(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("A", "1", recorder, blocks=["B:1"]),
            make_resource("B", "1", recorder, blocks=["C:1"]),
            make_resource("C", "1", recorder, blocks=["D:1"]),
            make_resource("D", "1", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert deletion_passes(result) == [["A:1"], ["B:1"], ["C:1"], ["D:1"]]

    def test_diamond(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("Top", "t", recorder, blocks=["Left:l", "Right:r"]),
            make_resource("Left", "l", recorder, blocks=["Bottom:b"]),
            make_resource("Right", "r", recorder, blocks=["Bottom:b"]),
            make_resource("Bottom", "b", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert deletion_passes(result) == [["Top:t"], ["Left:l", "Right:r"], ["Bottom:b"]]

    def test_acyclic_graph_finishes_within_node_count_passes(self) -> None:
        recorder = DeletionRecorder()
        resources = [make_resource("Node", str(index), recorder, blocks=[f"Node:{index + 1}"]) for index in range(6)]
        resources.append(make_resource("Node", "6", recorder))
        resources.append(make_resource("Loose", "x", recorder, blocked=["Node:3"]))

        result = DeletionScheduler(max_workers=3).run(make_graph(*resources))

        assert result.is_complete is True
        assert len(result.passes) <= len(resources)

    def test_every_deletion_happens_after_its_blockers(self) -> None:
        recorder = DeletionRecorder()
        graph = gce_cluster_graph(recorder)

        result = DeletionScheduler(max_workers=2).run(graph)

        order = {key: index for index, record in enumerate(result.passes) for key in record.deleted}
        assert result.is_complete is True
        assert order["InstanceGroupManager:us-central1-a/nodes"] < order["InstanceTemplate:nodes-tmpl"]
        assert order["Instance:us-central1-a/node-1"] < order["Disk:us-central1-a/d1"]

    def test_idempotent_on_second_run(self) -> None:
        """A second run against an emptied graph does nothing."""
        recorder = DeletionRecorder()
        graph = gce_cluster_graph(recorder)
        scheduler = DeletionScheduler()

        scheduler.run(graph)
        calls = len(recorder.deleted)
        second = scheduler.run(graph)

        assert second.is_complete is True
        assert second.passes == []
        assert len(recorder.deleted) == calls

    def test_done_resources_not_attempted(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("Instance", "i1", recorder, done=True, blocks=["Disk:d1"]),
            make_resource("Disk", "d1", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert recorder.deleted == ["Disk:d1"]
        assert result.is_complete is True
        assert "Instance:i1" not in graph


class TestSchedulerGroups:
    """Tests for grouped deletion."""

    def test_group_deleted_in_one_call(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("DNSRecord", "api", recorder, group_key="zone"),
            make_resource("DNSRecord", "bastion", recorder, group_key="zone"),
        )

        result = DeletionScheduler().run(graph)

        assert recorder.group_calls == [["DNSRecord:api", "DNSRecord:bastion"]]
        assert deletion_passes(result) == [["DNSRecord:api", "DNSRecord:bastion"]]

    def test_group_failure_is_atomic(self) -> None:
        """A failing group keeps every member and records the error for each."""
        recorder = DeletionRecorder(failures={"DNSRecord:bastion": RuntimeError("quota")})
        graph = make_graph(
            make_resource("DNSRecord", "api", recorder, group_key="zone"),
            make_resource("DNSRecord", "bastion", recorder, group_key="zone"),
        )

        result = DeletionScheduler().run(graph)

        assert result.outcome == TeardownOutcome.STALLED
        assert sorted(graph.keys()) == ["DNSRecord:api", "DNSRecord:bastion"]
        assert sorted(result.errors) == ["DNSRecord:api", "DNSRecord:bastion"]
        assert all(not resource.done for resource in graph)

    def test_group_waits_for_blocked_member(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("DNSRecord", "api", recorder, group_key="zone", blocked=["Instance:i1"]),
            make_resource("DNSRecord", "bastion", recorder, group_key="zone"),
            make_resource("Instance", "i1", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert deletion_passes(result) == [["Instance:i1"], ["DNSRecord:api", "DNSRecord:bastion"]]


class TestSchedulerFailures:
    """Tests for failure handling and stall detection."""

    def test_failure_retried_next_pass(self) -> None:
        recorder = DeletionRecorder(
            failures={"Disk:d1": RuntimeError("still attaching")},
            fail_times={"Disk:d1": 1},
        )
        graph = make_graph(
            make_resource("Disk", "d1", recorder),
            make_resource("Instance", "i1", recorder, blocks=["Subnet:s1"]),
            make_resource("Subnet", "s1", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert result.is_complete is True
        assert recorder.attempts["Disk:d1"] == 2
        assert result.errors == {}
        assert result.passes[0].failed == ["Disk:d1"]

    def test_persistent_failure_stalls(self) -> None:
        recorder = DeletionRecorder(failures={"Disk:d1": RuntimeError("resourceInUseByAnotherResource")})
        graph = make_graph(make_resource("Disk", "d1", recorder))

        result = DeletionScheduler().run(graph)

        assert result.outcome == TeardownOutcome.STALLED
        assert list(result.errors) == ["Disk:d1"]
        error = result.errors["Disk:d1"]
        assert isinstance(error, DeleteError)
        assert "resourceInUseByAnotherResource" in str(error)
        assert error.pass_number == 1

    def test_stall_raises_on_request(self) -> None:
        recorder = DeletionRecorder(failures={"Disk:d1": RuntimeError("boom")})
        result = DeletionScheduler().run(make_graph(make_resource("Disk", "d1", recorder)))

        with pytest.raises(StalledError) as exc_info:
            result.raise_for_outcome()

        assert exc_info.value.residual_keys == ["Disk:d1"]

    def test_two_cycle_stalls_without_attempts(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("A", "1", recorder, blocks=["B:1"]),
            make_resource("B", "1", recorder, blocks=["A:1"]),
        )

        result = DeletionScheduler().run(graph)

        assert result.outcome == TeardownOutcome.STALLED
        assert result.passes == []
        assert recorder.deleted == []
        assert result.blockers_of("A:1") == ["B:1"]

    def test_cycle_behind_deletable_resources(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("A", "1", recorder, blocks=["B:1"]),
            make_resource("B", "1", recorder, blocks=["A:1"]),
            make_resource("C", "1", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert result.outcome == TeardownOutcome.STALLED
        assert recorder.deleted == ["C:1"]
        assert sorted(graph.keys()) == ["A:1", "B:1"]

    def test_not_found_counts_as_deleted(self) -> None:
        recorder = DeletionRecorder(failures={"Instance:i1": ResourceNotFoundError("gone")})
        graph = make_graph(
            make_resource("Instance", "i1", recorder),
            make_resource("Disk", "d1", recorder, blocked=["Instance:i1"]),
        )

        result = DeletionScheduler().run(graph)

        assert result.is_complete is True
        assert deletion_passes(result) == [["Instance:i1"], ["Disk:d1"]]

    def test_missing_deleter_recorded_as_error(self) -> None:
        graph = make_graph(make_resource("Instance", "i1"))

        result = DeletionScheduler().run(graph)

        assert result.outcome == TeardownOutcome.STALLED
        assert "no deleter registered" in str(result.errors["Instance:i1"])

    def test_stall_retries_wait_between_passes(self) -> None:
        recorder = DeletionRecorder(
            failures={"Subnet:s1": RuntimeError("DependencyViolation")},
            fail_times={"Subnet:s1": 2},
        )
        sleep = Mock()
        graph = make_graph(make_resource("Subnet", "s1", recorder))

        result = DeletionScheduler(stall_retries=2, retry_interval=5.0, sleep=sleep).run(graph)

        assert result.is_complete is True
        assert recorder.attempts["Subnet:s1"] == 3
        assert sleep.call_count == 2
        sleep.assert_called_with(5.0)

    def test_stall_after_retries_exhausted(self) -> None:
        recorder = DeletionRecorder(failures={"Subnet:s1": RuntimeError("DependencyViolation")})
        sleep = Mock()
        graph = make_graph(make_resource("Subnet", "s1", recorder))

        result = DeletionScheduler(stall_retries=1, retry_interval=1.0, sleep=sleep).run(graph)

        assert result.outcome == TeardownOutcome.STALLED
        assert len(result.passes) == 2
        assert sleep.call_count == 1


class TestSchedulerCancellation:
    """Tests for timeout and cancellation."""

    def test_cancel_before_first_pass(self) -> None:
        recorder = DeletionRecorder()
        event = threading.Event()
        event.set()
        graph = make_graph(make_resource("Instance", "i1", recorder))

        result = DeletionScheduler(cancel_event=event).run(graph)

        assert result.outcome == TeardownOutcome.CANCELLED
        assert recorder.deleted == []
        assert result.is_complete is False

    def test_cancel_between_passes(self) -> None:
        event = threading.Event()
        recorder = DeletionRecorder()

        def delete_and_cancel(resource) -> None:
            recorder.delete(resource)
            event.set()

        first = make_resource("Instance", "i1", blocks=["Disk:d1"])
        first.deleter = delete_and_cancel
        graph = make_graph(first, make_resource("Disk", "d1", recorder))

        result = DeletionScheduler(cancel_event=event).run(graph)

        assert result.outcome == TeardownOutcome.CANCELLED
        assert recorder.deleted == ["Instance:i1"]
        assert graph.keys() == ["Disk:d1"]

    def test_zero_timeout_cancels(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(make_resource("Instance", "i1", recorder))

        result = DeletionScheduler(timeout=0).run(graph)

        assert result.outcome == TeardownOutcome.CANCELLED


class TestSchedulerShared:
    """Tests for shared resource handling."""

    def test_shared_resources_skipped(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("VPC", "vpc-1", recorder, shared=True),
            make_resource("Subnet", "s1", recorder, blocks=["VPC:vpc-1"]),
            make_resource("Instance", "i1", recorder, blocks=["Subnet:s1"]),
        )

        result = DeletionScheduler().run(graph)

        assert result.is_complete is True
        assert [resource.key for resource in result.skipped] == ["VPC:vpc-1"]
        assert "VPC:vpc-1" not in recorder.deleted

    def test_shared_blocker_does_not_block(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("SecurityGroup", "sg-shared", recorder, shared=True, blocks=["Instance:i1"]),
            make_resource("Instance", "i1", recorder),
        )

        result = DeletionScheduler().run(graph)

        assert recorder.deleted == ["Instance:i1"]
        assert result.is_complete is True


class InFlightDeleter:
    """Deleter callback that tracks concurrent calls and start/end order."""

    def __init__(self, hold: float = 0.05, barrier: Optional[threading.Barrier] = None) -> None:
        self.hold = hold
        self.barrier = barrier
        self.in_flight = 0
        self.peak = 0
        self.events: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def delete(self, resource) -> None:
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            self.events.append(("start", resource.key))

        if self.barrier is not None:
            self.barrier.wait()
        time.sleep(self.hold if resource.resource_id != "slow" else self.hold * 4)

        with self._lock:
            self.in_flight -= 1
            self.events.append(("end", resource.key))


def with_deleter(resource, deleter: InFlightDeleter):
    resource.deleter = deleter.delete
    return resource


class TestSchedulerConcurrency:
    """Tests for bounded concurrent deletion within a pass."""

    def test_pass_runs_deletions_concurrently(self) -> None:
        # Each pair of deletions must be in flight together to get past the barrier
        deleter = InFlightDeleter(hold=0, barrier=threading.Barrier(2, timeout=5))
        graph = make_graph(*[with_deleter(make_resource("Disk", f"d{i}"), deleter) for i in range(4)])

        result = DeletionScheduler(max_workers=2).run(graph)

        assert result.is_complete
        assert deleter.peak == 2

    def test_max_workers_caps_in_flight_deletions(self) -> None:
        deleter = InFlightDeleter()
        graph = make_graph(*[with_deleter(make_resource("Disk", f"d{i}"), deleter) for i in range(8)])

        result = DeletionScheduler(max_workers=3).run(graph)

        assert result.is_complete
        assert len(result.passes) == 1
        assert 1 < deleter.peak <= 3

    def test_next_pass_waits_for_whole_pass(self) -> None:
        deleter = InFlightDeleter()
        graph = make_graph(
            with_deleter(make_resource("Disk", "slow"), deleter),
            with_deleter(make_resource("Instance", "fast", blocks=["Disk:next"]), deleter),
            with_deleter(make_resource("Disk", "next"), deleter),
        )

        result = DeletionScheduler(max_workers=4).run(graph)

        assert deletion_passes(result) == [["Disk:slow", "Instance:fast"], ["Disk:next"]]
        assert deleter.events.index(("end", "Disk:slow")) < deleter.events.index(("start", "Disk:next"))
        assert deleter.events.index(("end", "Instance:fast")) < deleter.events.index(("start", "Disk:next"))
