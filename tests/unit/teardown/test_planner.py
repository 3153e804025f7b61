"""Unit tests for dry-run planning."""

from __future__ import annotations

from cluster_teardown.teardown.planner import DeletionPlan, DryRunReporter, PlannedPass
from tests.fixtures.resources import DeletionRecorder, gce_cluster_graph, make_graph, make_resource


def planned_ids(plan: DeletionPlan) -> list[list[str]]:
    return [sorted(f"{entry['type']}:{entry['id']}" for entry in planned.entries) for planned in plan.passes]


class TestDryRunReporter:
    """Tests for DryRunReporter.plan()."""

    def test_plan_follows_dependency_order(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("InstanceGroupManager", "igm1", recorder, blocks=["InstanceTemplate:tA"]),
            make_resource("InstanceTemplate", "tA", recorder),
        )

        plan = DryRunReporter().plan(graph)

        assert planned_ids(plan) == [["InstanceGroupManager:igm1"], ["InstanceTemplate:tA"]]
        assert plan.blocked == []
        assert plan.total_resources == 2

    def test_plan_never_deletes(self) -> None:
        recorder = DeletionRecorder()
        graph = gce_cluster_graph(recorder)

        DryRunReporter().plan(graph)

        assert recorder.deleted == []
        assert recorder.group_calls == []

    def test_plan_leaves_graph_untouched(self) -> None:
        recorder = DeletionRecorder()
        graph = gce_cluster_graph(recorder)
        keys = sorted(graph.keys())

        DryRunReporter().plan(graph)

        assert sorted(graph.keys()) == keys
        assert all(not resource.done for resource in graph)

    def test_grouped_entries_carry_group(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("DNSRecord", "api", recorder, group_key="zone-1"),
            make_resource("DNSRecord", "bastion", recorder, group_key="zone-1"),
        )

        plan = DryRunReporter().plan(graph)

        assert [entry["group"] for entry in plan.passes[0].entries] == ["zone-1", "zone-1"]

    def test_cycle_reported_as_blocked(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("A", "1", recorder, blocks=["B:1"]),
            make_resource("B", "1", recorder, blocks=["A:1"]),
            make_resource("C", "1", recorder),
        )

        plan = DryRunReporter().plan(graph)

        assert planned_ids(plan) == [["C:1"]]
        assert plan.blocked == [
            {"type": "A", "id": "1", "name": "1", "blocked_by": ["B:1"]},
            {"type": "B", "id": "1", "name": "1", "blocked_by": ["A:1"]},
        ]

    def test_shared_resources_listed_as_skipped(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("VPC", "vpc-1", recorder, shared=True),
            make_resource("Subnet", "s1", recorder, blocks=["VPC:vpc-1"]),
        )

        plan = DryRunReporter().plan(graph)

        assert plan.skipped == [{"type": "VPC", "id": "vpc-1", "name": "vpc-1"}]
        assert planned_ids(plan) == [["Subnet:s1"]]
        assert "VPC:vpc-1" in graph

    def test_empty_graph(self) -> None:
        plan = DryRunReporter().plan(make_graph())

        assert plan.is_empty is True
        assert plan.total_resources == 0


class TestDeletionPlan:
    """Tests for DeletionPlan serialization."""

    def test_to_dict(self) -> None:
        plan = DeletionPlan(
            passes=[PlannedPass(number=1, entries=[{"type": "Disk", "id": "d1", "name": "d1"}])],
            blocked=[],
            skipped=[],
        )

        assert plan.to_dict() == {
            "passes": [{"pass": 1, "resources": [{"type": "Disk", "id": "d1", "name": "d1"}]}],
            "blocked": [],
            "skipped": [],
        }
