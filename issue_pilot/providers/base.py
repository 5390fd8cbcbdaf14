"""
Abstract base classes for collaborators.

The engine never talks to a tracker, a git host or a model directly. It
consumes these interfaces, and concrete implementations are supplied through
the factories named in ``collaborators`` configuration.

Every method that performs I/O is async. Implementations should raise
``ExternalServiceError`` (or let their client's own errors propagate); the
engine decides per phase whether a failure is fatal, retryable or ignored.
"""

from abc import ABC, abstractmethod
from pathlib import Path

from issue_pilot.config.settings import RepositoryPolicy
from issue_pilot.models.domain import Artifact, Feedback, GenerationResult, TrackerIssue
from issue_pilot.models.review import ReviewVerdict


class TrackerClient(ABC):
    """Issue tracker access: listing, reading, labelling and commenting."""

    @abstractmethod
    async def list_issues(
        self,
        policy: RepositoryPolicy,
        label: str | None = None,
        state: str = "open",
    ) -> list[TrackerIssue]:
        """List issues of a repository.

        Args:
            policy: Repository to query.
            label: Only return issues carrying this label.
            state: "open", "closed" or "all".

        Returns:
            Matching issues. Pull requests may be included; callers filter
            them out via ``TrackerIssue.is_pull_request``.
        """
        pass

    @abstractmethod
    async def get_issue(self, policy: RepositoryPolicy, number: int) -> TrackerIssue:
        """Get a single issue, including its native blocking links."""
        pass

    @abstractmethod
    async def add_labels(self, policy: RepositoryPolicy, number: int, labels: list[str]) -> None:
        pass

    @abstractmethod
    async def remove_label(self, policy: RepositoryPolicy, number: int, label: str) -> None:
        pass

    @abstractmethod
    async def add_comment(self, policy: RepositoryPolicy, number: int, body: str) -> None:
        pass

    @abstractmethod
    async def create_follow_up(
        self,
        policy: RepositoryPolicy,
        title: str,
        body: str,
        labels: list[str],
    ) -> TrackerIssue:
        """Open a new issue and return it."""
        pass

    @abstractmethod
    async def list_open_artifacts(self, policy: RepositoryPolicy, branch_prefix: str) -> list[Artifact]:
        """List open pull requests whose head branch starts with ``branch_prefix``.

        Used for the per-repository single-flight check, so it must reflect
        the remote state rather than anything cached locally.
        """
        pass


class VcsClient(ABC):
    """Working-copy operations for one repository."""

    @abstractmethod
    async def clone_or_update(self, policy: RepositoryPolicy) -> Path:
        """Ensure a fresh working copy of the target branch and return its path."""
        pass

    @abstractmethod
    async def create_branch(self, policy: RepositoryPolicy, number: int, title: str) -> str:
        """Create a branch for an issue and return its name."""
        pass

    @abstractmethod
    async def checkout(self, policy: RepositoryPolicy, branch: str) -> None:
        """Check out an existing branch, creating it locally if needed."""
        pass

    @abstractmethod
    async def commit(self, policy: RepositoryPolicy, message: str) -> bool:
        """Commit all changes. Returns False when there was nothing to commit."""
        pass

    @abstractmethod
    async def push(self, policy: RepositoryPolicy, branch: str) -> None:
        pass

    @abstractmethod
    async def diff(self, policy: RepositoryPolicy, base: str) -> str:
        """Return the diff of the working copy against ``base``."""
        pass


class GenerationBackend(ABC):
    """Produces a candidate change in a working copy."""

    @abstractmethod
    async def generate(self, prompt: str, workdir: Path, feedback: Feedback | None = None) -> GenerationResult:
        """Run one generation attempt.

        Args:
            prompt: Fully rendered implementation prompt.
            workdir: Working copy the backend edits in place.
            feedback: Structured feedback from earlier attempts, if any.

        Returns:
            GenerationResult; ``success`` is False for a judged failure.
        """
        pass


class VerificationBackend(ABC):
    """CI status access."""

    @abstractmethod
    async def wait_for_checks(self, policy: RepositoryPolicy, ref: str, timeout_seconds: float) -> bool:
        """Wait until checks for ``ref`` finish. Returns True if all passed."""
        pass

    @abstractmethod
    async def failure_detail(self, policy: RepositoryPolicy, ref: str) -> str:
        """Extract failing check output for ``ref``."""
        pass


class ReviewBackend(ABC):
    """Independent reviewer of a finished change."""

    @abstractmethod
    async def review(self, workdir: Path, spec: str, diff: str, security: bool) -> ReviewVerdict:
        """Review ``diff`` against the issue text.

        Raises:
            Any exception when the reviewer itself could not run. A judged
            failure is a verdict with ``passed=False``, never an exception.
        """
        pass


class PackagingBackend(ABC):
    """Pull request management."""

    @abstractmethod
    async def create_or_reuse(
        self,
        policy: RepositoryPolicy,
        branch: str,
        title: str,
        body: str,
        draft: bool,
    ) -> Artifact:
        """Open a pull request for ``branch`` or return the one already open."""
        pass

    @abstractmethod
    async def finalize(self, policy: RepositoryPolicy, artifact_id: int) -> None:
        """Mark a draft pull request ready for review."""
        pass

    @abstractmethod
    async def auto_merge(self, policy: RepositoryPolicy, artifact_id: int, title: str) -> None:
        pass
