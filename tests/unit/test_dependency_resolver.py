"""Tests for dependency parsing, resolution and ordering."""

import pytest

from issue_pilot.engine.dependency_resolver import (
    declared_blockers,
    parse_blocked_by,
    topological_order,
)
from issue_pilot.enums import JobStatus
from issue_pilot.exceptions import CycleDetected
from issue_pilot.models.domain import Job, TrackerIssue

REPO = "acme/widgets"


class TestParseBlockedBy:
    """Test the ``**Blocked by:**`` text convention."""

    def test_simple_refs(self):
        assert parse_blocked_by("Some text\n**Blocked by:** #12, #4\nmore") == [12, 4]

    def test_struck_through_refs_are_ignored(self):
        assert parse_blocked_by("**Blocked by:** ~~#4~~ ✅, #14") == [14]

    def test_case_insensitive(self):
        assert parse_blocked_by("**blocked BY:** #3") == [3]

    def test_duplicates_removed_in_order(self):
        assert parse_blocked_by("**Blocked by:** #7, #3, #7") == [7, 3]

    def test_only_first_line_is_read(self):
        body = "**Blocked by:** #1\n**Blocked by:** #2"
        assert parse_blocked_by(body) == [1]

    @pytest.mark.parametrize("body", [None, "", "No dependencies here", "Blocked by #5 (not bold)"])
    def test_no_declaration(self, body):
        assert parse_blocked_by(body) == []


class TestDeclaredBlockers:
    def test_native_links_take_precedence(self):
        issue = TrackerIssue(number=20, title="t", body="**Blocked by:** #1", native_blockers=[15, 15])
        assert declared_blockers(issue) == [15]

    def test_text_convention_used_without_native_links(self):
        issue = TrackerIssue(number=20, title="t", body="**Blocked by:** #1, #20")
        assert declared_blockers(issue) == [1]


class TestTopologicalOrder:
    def test_linear_chain(self):
        assert topological_order([20, 15, 10, 5], {20: [15], 15: [10], 10: [5]}) == [5, 10, 15, 20]

    def test_layers_are_sorted(self):
        order = topological_order([30, 10, 20, 5], {30: [10, 20]})
        assert order == [5, 10, 20, 30]

    def test_blockers_outside_the_set_are_ignored(self):
        assert topological_order([3, 2], {3: [99], 2: [3]}) == [3, 2]

    def test_cycle_forces_lowest_id(self):
        order = topological_order([1, 2, 3], {1: [2], 2: [1], 3: [1]})
        assert order == [1, 2, 3]

    def test_cycle_is_deterministic(self):
        deps = {4: [6], 6: [4], 8: []}
        assert topological_order([8, 6, 4], deps) == topological_order([4, 6, 8], deps)

    def test_strict_raises(self):
        with pytest.raises(CycleDetected) as exc_info:
            topological_order([1, 2], {1: [2], 2: [1]}, strict=True)
        assert exc_info.value.members == [1, 2]


class TestDependencyResolver:
    """Test live resolution against the tracker and the job store."""

    @pytest.mark.asyncio
    async def test_no_blockers(self, resolver, tracker, policy):
        result = await resolver.resolve(policy, 42)

        assert not result.blocked
        assert result.chain == []
        assert result.has_cycle is False

    @pytest.mark.asyncio
    async def test_linear_chain(self, resolver, tracker, policy):
        tracker.add_issue(5)
        tracker.add_issue(10, body="**Blocked by:** #5")
        tracker.add_issue(15, body="**Blocked by:** #10")
        tracker.add_issue(20, body="**Blocked by:** #15")

        result = await resolver.resolve(policy, 20)

        assert result.unresolved_blockers == [15]
        assert result.chain == [5, 10, 15]
        assert "Processing order: #5 → #10 → #15 → #20" in result.chain_description
        assert "Waiting on: #15" in result.chain_description

    @pytest.mark.asyncio
    async def test_branching_chain(self, resolver, tracker, policy):
        tracker.add_issue(1)
        tracker.add_issue(2, body="**Blocked by:** #1")
        tracker.add_issue(3, body="**Blocked by:** #1")
        tracker.add_issue(4, native_blockers=[3, 2])

        result = await resolver.resolve(policy, 4)

        assert result.unresolved_blockers == [2, 3]
        assert result.chain == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_closed_blockers_are_satisfied(self, resolver, tracker, policy):
        tracker.add_issue(5)
        tracker.add_issue(10, body="**Blocked by:** #5", state="closed")
        tracker.add_issue(20, body="**Blocked by:** #10")

        result = await resolver.resolve(policy, 20)

        assert not result.blocked
        assert result.chain == []

    @pytest.mark.asyncio
    async def test_closed_target_is_not_expanded(self, resolver, tracker, policy):
        tracker.add_issue(5)
        tracker.add_issue(20, body="**Blocked by:** #5", state="closed")

        result = await resolver.resolve(policy, 20)

        assert not result.blocked
        assert result.chain == []
        assert result.has_cycle is False

    @pytest.mark.asyncio
    async def test_completed_job_is_satisfied(self, resolver, tracker, store, policy):
        tracker.add_issue(10)
        tracker.add_issue(20, body="**Blocked by:** #10")
        await store.create(Job(repo=REPO, number=10, title="Issue 10", status=JobStatus.COMPLETED))

        result = await resolver.resolve(policy, 20)

        assert not result.blocked

    @pytest.mark.asyncio
    async def test_cycle_terminates(self, resolver, tracker, policy):
        tracker.add_issue(1, body="**Blocked by:** #2")
        tracker.add_issue(2, body="**Blocked by:** #1")

        result = await resolver.resolve(policy, 1)

        assert result.has_cycle is True
        assert result.unresolved_blockers == [2]
        assert result.chain == [2]
        assert "Cycle detected" in result.chain_description

    @pytest.mark.asyncio
    async def test_fetch_error_counts_as_open_without_blockers(self, resolver, tracker, policy):
        tracker.add_issue(20, body="**Blocked by:** #10")
        tracker.fail_get.add(10)

        result = await resolver.resolve(policy, 20)

        assert result.unresolved_blockers == [10]
        assert result.chain == [10]

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self, resolver, tracker, policy):
        tracker.add_issue(5)
        tracker.add_issue(10, body="**Blocked by:** #5")
        tracker.add_issue(20, body="**Blocked by:** #10, #5")

        first = await resolver.resolve(policy, 20)
        second = await resolver.resolve(policy, 20)

        assert first == second

    @pytest.mark.asyncio
    async def test_long_chain_does_not_recurse(self, resolver, tracker, policy):
        tracker.add_issue(1)
        for number in range(2, 1502):
            tracker.add_issue(number, body=f"**Blocked by:** #{number - 1}")

        result = await resolver.resolve(policy, 1501)

        assert result.chain == list(range(1, 1501))

    @pytest.mark.asyncio
    async def test_all_blockers_resolved(self, resolver, tracker, policy):
        tracker.add_issue(5, state="closed")
        tracker.add_issue(6)

        assert await resolver.all_blockers_resolved(policy, [5])
        assert not await resolver.all_blockers_resolved(policy, [5, 6])

        tracker.issues[6].state = "closed"
        assert await resolver.all_blockers_resolved(policy, [5, 6])

    @pytest.mark.asyncio
    async def test_order_jobs(self, resolver, tracker, policy):
        tracker.add_issue(5, body="**Blocked by:** #9")
        tracker.add_issue(9)
        jobs = [Job(repo=REPO, number=5, title="a"), Job(repo=REPO, number=9, title="b")]

        ordered = await resolver.order_jobs(policy, jobs)

        assert [j.number for j in ordered] == [9, 5]

    @pytest.mark.asyncio
    async def test_order_jobs_strict_cycle(self, resolver, tracker, policy):
        tracker.add_issue(5, body="**Blocked by:** #9")
        tracker.add_issue(9, body="**Blocked by:** #5")
        jobs = [Job(repo=REPO, number=5, title="a"), Job(repo=REPO, number=9, title="b")]

        with pytest.raises(CycleDetected):
            await resolver.order_jobs(policy, jobs, strict=True)
