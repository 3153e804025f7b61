"""Unit tests for deletion groups."""

from __future__ import annotations

import pytest

from cluster_teardown.teardown.errors import TeardownError
from cluster_teardown.teardown.grouping import (
    DeletionGroup,
    eligible_groups,
    group_blockers,
    partition_groups,
    split_shared,
)
from tests.fixtures.resources import DeletionRecorder, make_graph, make_resource


class TestPartitionGroups:
    """Tests for partition_groups()."""

    def test_ungrouped_resources_are_singletons(self) -> None:
        recorder = DeletionRecorder()
        groups = partition_groups([make_resource("Instance", "i1", recorder), make_resource("Instance", "i2", recorder)])

        assert [group.group_id for group in groups] == ["Instance:i1", "Instance:i2"]
        assert all(not group.is_batch for group in groups)

    def test_grouped_resources_batched_by_key(self) -> None:
        recorder = DeletionRecorder()
        groups = partition_groups(
            [
                make_resource("DNSRecord", "b", recorder, group_key="zone-1"),
                make_resource("DNSRecord", "a", recorder, group_key="zone-1"),
                make_resource("DNSRecord", "c", recorder, group_key="zone-2"),
            ]
        )

        assert [group.group_id for group in groups] == ["group:zone-1", "group:zone-2"]
        assert groups[0].member_keys == ["DNSRecord:a", "DNSRecord:b"]
        assert groups[0].is_batch is True

    def test_done_resources_ignored(self) -> None:
        groups = partition_groups([make_resource("Instance", "i1", done=True)])

        assert groups == []

    def test_group_key_without_group_deleter_is_singleton(self) -> None:
        resource = make_resource("Instance", "i1", DeletionRecorder())
        resource.group_key = "zone-1"

        groups = partition_groups([resource])

        assert groups[0].group_id == "Instance:i1"


class TestDeletionGroup:
    """Tests for DeletionGroup.delete()."""

    def test_batch_calls_group_deleter_once(self) -> None:
        recorder = DeletionRecorder()
        members = [
            make_resource("DNSRecord", "a", recorder, group_key="zone"),
            make_resource("DNSRecord", "b", recorder, group_key="zone"),
        ]
        group = DeletionGroup(group_id="group:zone", members=members)

        group.delete()

        assert recorder.group_calls == [["DNSRecord:a", "DNSRecord:b"]]

    def test_singleton_calls_deleter(self) -> None:
        recorder = DeletionRecorder()
        group = DeletionGroup(group_id="Instance:i1", members=[make_resource("Instance", "i1", recorder)])

        group.delete()

        assert recorder.deleted == ["Instance:i1"]
        assert recorder.group_calls == []

    def test_missing_deleter_raises(self) -> None:
        group = DeletionGroup(group_id="Instance:i1", members=[make_resource("Instance", "i1")])

        with pytest.raises(TeardownError, match="no deleter registered"):
            group.delete()

    def test_mark_done(self) -> None:
        members = [make_resource("Instance", "i1"), make_resource("Instance", "i2")]
        group = DeletionGroup(group_id="group:x", members=members)

        group.mark_done()

        assert all(member.done for member in members)


class TestEligibility:
    """Tests for group_blockers() and eligible_groups()."""

    def test_members_of_same_group_do_not_block_each_other(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("DNSRecord", "a", recorder, group_key="zone", blocks=["DNSRecord:b"]),
            make_resource("DNSRecord", "b", recorder, group_key="zone"),
        )

        groups = eligible_groups(graph)

        assert [group.group_id for group in groups] == ["group:zone"]

    def test_group_blocked_if_any_member_blocked(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("DNSRecord", "a", recorder, group_key="zone"),
            make_resource("DNSRecord", "b", recorder, group_key="zone", blocked=["Instance:i1"]),
            make_resource("Instance", "i1", recorder),
        )

        groups = eligible_groups(graph)
        batch = partition_groups(graph.all())[0]

        assert [group.group_id for group in groups] == ["Instance:i1"]
        assert group_blockers(batch, graph) == {"Instance:i1"}

    def test_dangling_blocker_is_satisfied(self) -> None:
        graph = make_graph(make_resource("Disk", "d1", DeletionRecorder(), blocked=["Instance:i1"]))

        assert [group.group_id for group in eligible_groups(graph)] == ["Disk:d1"]


class TestSplitShared:
    """Tests for split_shared()."""

    def test_shared_resources_removed(self) -> None:
        graph = make_graph(
            make_resource("VPC", "vpc-1", shared=True, blocked=["Subnet:s1"]),
            make_resource("Subnet", "s1"),
        )

        skipped = split_shared(graph)

        assert [resource.key for resource in skipped] == ["VPC:vpc-1"]
        assert graph.keys() == ["Subnet:s1"]

    def test_shared_blocker_no_longer_blocks(self) -> None:
        recorder = DeletionRecorder()
        graph = make_graph(
            make_resource("Subnet", "shared-subnet", recorder, shared=True, blocks=["Instance:i1"]),
            make_resource("Instance", "i1", recorder),
        )

        split_shared(graph)

        assert [group.group_id for group in eligible_groups(graph)] == ["Instance:i1"]
