"""Pytest configuration and shared fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from issue_pilot.config.settings import EngineConfig, IssuePilotSettings, RepositoryPolicy
from issue_pilot.engine.budget import BudgetManager
from issue_pilot.engine.dependency_resolver import DependencyResolver
from issue_pilot.engine.job_store import JobStore
from issue_pilot.engine.workflow import JobWorkflow
from issue_pilot.models.domain import Artifact, GenerationResult, Job, TrackerIssue
from issue_pilot.models.review import ReviewVerdict
from issue_pilot.providers.base import (
    GenerationBackend,
    PackagingBackend,
    ReviewBackend,
    TrackerClient,
    VcsClient,
    VerificationBackend,
)
from issue_pilot.providers.factory import Collaborators

REPO = "acme/widgets"


class FakeTracker(TrackerClient):
    """In-memory tracker holding issues, comments and labels."""

    def __init__(self) -> None:
        self.issues: dict[int, TrackerIssue] = {}
        self.comments: list[tuple[int, str]] = []
        self.follow_ups: list[TrackerIssue] = []
        self.artifacts: list[Artifact] = []
        self.fail_get: set[int] = set()
        self.fail_artifacts = False
        self.fail_labels = False

    def add_issue(
        self,
        number: int,
        body: str = "",
        state: str = "open",
        labels: list[str] | None = None,
        native_blockers: list[int] | None = None,
        is_pull_request: bool = False,
    ) -> TrackerIssue:
        issue = TrackerIssue(
            number=number,
            title=f"Issue {number}",
            body=body,
            labels=list(labels or []),
            state=state,
            native_blockers=list(native_blockers or []),
            is_pull_request=is_pull_request,
        )
        self.issues[number] = issue
        return issue

    def comments_on(self, number: int) -> list[str]:
        return [body for n, body in self.comments if n == number]

    async def list_issues(self, policy, label=None, state="open"):
        return [
            issue
            for issue in self.issues.values()
            if issue.state == state and (label is None or label in issue.labels)
        ]

    async def get_issue(self, policy, number):
        if number in self.fail_get or number not in self.issues:
            raise RuntimeError(f"issue {number} unavailable")
        return self.issues[number]

    async def add_labels(self, policy, number, labels):
        if self.fail_labels:
            raise RuntimeError("label write rejected")
        issue = self.issues[number]
        issue.labels.extend(label for label in labels if label not in issue.labels)

    async def remove_label(self, policy, number, label):
        issue = self.issues[number]
        if label in issue.labels:
            issue.labels.remove(label)

    async def add_comment(self, policy, number, body):
        self.comments.append((number, body))

    async def create_follow_up(self, policy, title, body, labels):
        issue = TrackerIssue(number=1000 + len(self.follow_ups), title=title, body=body, labels=list(labels))
        self.follow_ups.append(issue)
        return issue

    async def list_open_artifacts(self, policy, branch_prefix):
        if self.fail_artifacts:
            raise RuntimeError("tracker unavailable")
        return [a for a in self.artifacts if a.branch.startswith(branch_prefix)]


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def policy() -> RepositoryPolicy:
    """Autonomous policy with small budgets."""
    return RepositoryPolicy(owner="acme", name="widgets", max_iterations=3, max_review_iterations=2)


@pytest.fixture
def settings(temp_state_dir: Path, policy: RepositoryPolicy) -> IssuePilotSettings:
    """Settings with one repository and no waiting between retries."""
    return IssuePilotSettings(
        engine=EngineConfig(
            state_directory=str(temp_state_dir),
            max_concurrent_jobs=2,
            auto_finalize_backoff=0.0,
        ),
        repositories=[policy],
    )


@pytest.fixture
def store(temp_state_dir: Path) -> JobStore:
    """JobStore instance with temp directory."""
    return JobStore(temp_state_dir)


@pytest.fixture
def tracker() -> FakeTracker:
    tracker = FakeTracker()
    tracker.add_issue(42, body="Add pagination to the widget list.", labels=["agent-ready"])
    return tracker


@pytest.fixture
def passing_verdict() -> ReviewVerdict:
    return ReviewVerdict(passed=True, summary="Looks good", scores={"correctness": 0.9})


@pytest.fixture
def collaborators(tracker: FakeTracker, tmp_path: Path, passing_verdict: ReviewVerdict) -> Collaborators:
    """Collaborators whose backends succeed on the first attempt."""
    vcs = AsyncMock(spec=VcsClient)
    vcs.clone_or_update.return_value = tmp_path / "checkout"
    vcs.create_branch.side_effect = lambda policy, number, title: f"pilot/{number}"
    vcs.commit.return_value = True
    vcs.diff.return_value = "diff --git a/widgets.py b/widgets.py\n+page_size = 20\n"

    generation = AsyncMock(spec=GenerationBackend)
    generation.generate.return_value = GenerationResult(
        success=True, output="Added pagination", files_changed=["widgets.py"]
    )

    verification = AsyncMock(spec=VerificationBackend)
    verification.wait_for_checks.return_value = True
    verification.failure_detail.return_value = "FAILED tests/test_widgets.py::test_page - AssertionError"

    review = AsyncMock(spec=ReviewBackend)
    review.review.return_value = passing_verdict

    packaging = AsyncMock(spec=PackagingBackend)
    packaging.create_or_reuse.side_effect = lambda policy, branch, title, body, draft: Artifact(
        id=7, url="https://tracker.example.com/acme/widgets/pulls/7", branch=branch, draft=draft
    )

    return Collaborators(
        tracker=tracker,
        vcs=vcs,
        generation=generation,
        verification=verification,
        review=review,
        packaging=packaging,
    )


@pytest.fixture
def budget(store: JobStore, tracker: FakeTracker, settings: IssuePilotSettings) -> BudgetManager:
    return BudgetManager(store, tracker, settings)


@pytest.fixture
def resolver(tracker: FakeTracker, store: JobStore) -> DependencyResolver:
    return DependencyResolver(tracker, store)


@pytest.fixture
def workflow(
    settings: IssuePilotSettings,
    collaborators: Collaborators,
    store: JobStore,
    budget: BudgetManager,
) -> JobWorkflow:
    return JobWorkflow(settings, collaborators, store, budget)


@pytest_asyncio.fixture
async def job(store: JobStore) -> Job:
    """Stored PENDING job for issue 42."""
    return await store.create(Job(repo=REPO, number=42, title="Issue 42"))
