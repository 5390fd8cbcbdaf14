"""
Dependency graph resolution between tracker issues.

Issues declare what blocks them in one of two ways:

- Native blocking links returned by the tracker (``TrackerIssue.native_blockers``)
- A body line following the text convention ``**Blocked by:** #12, ~~#4~~``,
  where struck-through references are already satisfied and ignored

Native links take precedence: when an issue has any, the text convention is
not consulted for that issue.

The dependency graph is never persisted. It is rebuilt from live tracker
state each time it is needed, and live state always wins: a blocker that is
closed on the tracker (or whose job has COMPLETED locally) is satisfied no
matter how the body text is formatted.

Example:
    >>> resolver = DependencyResolver(tracker, store)
    >>> result = await resolver.resolve(policy, 20)
    >>> result.unresolved_blockers
    [15]
    >>> result.chain
    [5, 10, 15]
"""

import re
from collections.abc import Iterable, Mapping

import structlog

from issue_pilot.config.settings import RepositoryPolicy
from issue_pilot.engine.job_store import JobStore
from issue_pilot.enums import JobStatus
from issue_pilot.exceptions import CycleDetected
from issue_pilot.models.domain import DependencyResult, Job, TrackerIssue
from issue_pilot.providers.base import TrackerClient
from issue_pilot.rendering import PilotRenderer

log = structlog.get_logger(__name__)

BLOCKED_BY_PATTERN = re.compile(r"\*\*Blocked by:\*\*\s*(.+)", re.IGNORECASE)
STRIKETHROUGH_PATTERN = re.compile(r"~~[^~]+~~")
ISSUE_REF_PATTERN = re.compile(r"#(\d+)")


def parse_blocked_by(body: str | None) -> list[int]:
    """Extract open blocker references from an issue body.

    Only the first ``**Blocked by:**`` line is read. Struck-through segments
    are removed before references are collected.

    Args:
        body: Issue body text.

    Returns:
        Referenced issue numbers in order of appearance, without duplicates.

    Example:
        >>> parse_blocked_by("**Blocked by:** ~~#4~~ ✅, #14")
        [14]
    """
    if not body:
        return []

    match = BLOCKED_BY_PATTERN.search(body)
    if not match:
        return []

    refs = STRIKETHROUGH_PATTERN.sub("", match.group(1))
    numbers: list[int] = []
    for ref in ISSUE_REF_PATTERN.findall(refs):
        number = int(ref)
        if number not in numbers:
            numbers.append(number)
    return numbers


def declared_blockers(issue: TrackerIssue) -> list[int]:
    """Return the blockers an issue declares, native links first.

    Self-references are dropped.
    """
    if issue.native_blockers:
        blockers = list(dict.fromkeys(issue.native_blockers))
    else:
        blockers = parse_blocked_by(issue.body)
    return [b for b in blockers if b != issue.number]


def topological_order(
    items: Iterable[int],
    blockers_of: Mapping[int, Iterable[int]],
    strict: bool = False,
) -> list[int]:
    """Order issue numbers so that every in-set blocker comes first.

    Items are placed in layers: each round places every item whose in-set
    blockers are already placed, in ascending order. When a round finds
    nothing ready, the items left form or depend on a cycle; the lowest of
    them is forced in and a ``dependency_cycle_detected`` warning is logged.

    Args:
        items: Issue numbers to order.
        blockers_of: Declared blockers per issue. Blockers outside ``items``
            are ignored.
        strict: Raise instead of forcing an order through a cycle.

    Returns:
        Every item exactly once, in processing order.

    Raises:
        CycleDetected: If ``strict`` and a cycle prevents a full order.

    Example:
        >>> topological_order([20, 15, 10, 5], {20: [15], 15: [10], 10: [5]})
        [5, 10, 15, 20]
    """
    members = set(items)
    deps = {n: (set(blockers_of.get(n, ())) & members) - {n} for n in members}

    remaining = sorted(members)
    placed: set[int] = set()
    order: list[int] = []

    while remaining:
        ready = [n for n in remaining if deps[n] <= placed]
        if not ready:
            forced = remaining[0]
            log.warning("dependency_cycle_detected", members=remaining, forced=forced)
            if strict:
                raise CycleDetected(
                    f"Dependency cycle among {', '.join(f'#{n}' for n in remaining)}",
                    members=list(remaining),
                )
            ready = [forced]

        order.extend(ready)
        placed.update(ready)
        remaining = [n for n in remaining if n not in placed]

    return order


class DependencyResolver:
    """Classify jobs by their open blockers and order them for processing.

    Attributes:
        tracker: Tracker used to fetch live issue state.
        store: Job store, consulted so that a blocker whose job completed
            locally counts as satisfied before the tracker catches up.
    """

    def __init__(self, tracker: TrackerClient, store: JobStore, renderer: PilotRenderer | None = None) -> None:
        self.tracker = tracker
        self.store = store
        self.renderer = renderer or PilotRenderer()

    async def _fetch(
        self,
        policy: RepositoryPolicy,
        number: int,
        cache: dict[int, TrackerIssue | None],
    ) -> TrackerIssue | None:
        """Fetch an issue once per resolution; failures are logged and yield None."""
        if number not in cache:
            try:
                cache[number] = await self.tracker.get_issue(policy, number)
            except Exception as e:
                log.warning("dependency_fetch_failed", repo=policy.full_name, issue=number, error=str(e))
                cache[number] = None
        return cache[number]

    async def _is_satisfied(self, policy: RepositoryPolicy, number: int, issue: TrackerIssue | None) -> bool:
        if issue is not None and issue.closed:
            return True
        job = await self.store.get(policy.full_name, number)
        return job is not None and job.status == JobStatus.COMPLETED

    async def resolve(
        self,
        policy: RepositoryPolicy,
        number: int,
        issue: TrackerIssue | None = None,
    ) -> DependencyResult:
        """Compute the open-blocker closure of an issue.

        Walks declared blockers depth-first with an explicit worklist, so
        chain length is not limited by the call stack. Satisfied nodes are
        excluded and not expanded, the issue itself included: a closed or
        completed issue has nothing to wait for. Every open node is emitted
        after all of its open blockers (post-order). Blockers are expanded
        in ascending order, which makes the result deterministic.

        Args:
            policy: Repository the issue belongs to.
            number: Issue to classify.
            issue: Already-fetched issue, to save one tracker call.

        Returns:
            DependencyResult with the one-hop unresolved blockers, the full
            chain in processing order and a cycle flag.
        """
        cache: dict[int, TrackerIssue | None] = {}
        if issue is not None:
            cache[number] = issue

        visited: set[int] = set()
        on_path: set[int] = set()
        order: list[int] = []
        target_blockers: list[int] = []
        has_cycle = False

        # (issue number, expanded) pairs; expanded entries emit the node
        stack: list[tuple[int, bool]] = [(number, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                on_path.discard(node)
                order.append(node)
                continue

            if node in visited:
                if node in on_path:
                    has_cycle = True
                continue
            visited.add(node)

            fetched = await self._fetch(policy, node, cache)
            if await self._is_satisfied(policy, node, fetched):
                continue

            blockers = sorted(declared_blockers(fetched)) if fetched is not None else []
            if node == number:
                target_blockers = blockers

            on_path.add(node)
            stack.append((node, True))
            for blocker in reversed(blockers):
                stack.append((blocker, False))

        open_nodes = set(order)
        unresolved = [b for b in target_blockers if b in open_nodes]
        chain = [n for n in order if n != number]

        if has_cycle:
            log.warning("dependency_cycle_in_chain", repo=policy.full_name, issue=number, chain=chain)

        return DependencyResult(
            number=number,
            unresolved_blockers=unresolved,
            chain=chain,
            has_cycle=has_cycle,
            chain_description=self.renderer.dependency_chain(number, unresolved, chain, has_cycle),
        )

    async def all_blockers_resolved(self, policy: RepositoryPolicy, blocker_ids: Iterable[int]) -> bool:
        """Re-check a stored blocker snapshot against live state.

        A blocker whose state cannot be fetched counts as unresolved.
        """
        cache: dict[int, TrackerIssue | None] = {}
        for number in blocker_ids:
            issue = await self._fetch(policy, number, cache)
            if not await self._is_satisfied(policy, number, issue):
                return False
        return True

    async def order_jobs(self, policy: RepositoryPolicy, jobs: list[Job], strict: bool = False) -> list[Job]:
        """Order jobs of one repository by their live declared blockers.

        Raises:
            CycleDetected: If ``strict`` and the jobs contain a cycle.
        """
        cache: dict[int, TrackerIssue | None] = {}
        blockers_of: dict[int, list[int]] = {}
        for job in jobs:
            issue = await self._fetch(policy, job.number, cache)
            blockers_of[job.number] = declared_blockers(issue) if issue is not None else []

        by_number = {job.number: job for job in jobs}
        return [by_number[n] for n in topological_order(by_number, blockers_of, strict=strict)]
