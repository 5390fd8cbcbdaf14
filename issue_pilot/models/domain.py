"""
Domain models for the issue-pilot engine.

This module contains the data classes describing jobs, their per-attempt
audit trail, the feedback threaded between attempts, and the normalized
views of tracker and collaborator responses the engine works with.

Example:
    A freshly admitted job::

        job = Job(repo="acme/widgets", number=42, title="Add pagination")
        assert job.key == "acme/widgets#42"
        assert job.status == JobStatus.PENDING
"""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from issue_pilot.enums import JobStatus, OverrideKind, Phase, VerificationResult
from issue_pilot.models.review import ReviewFinding


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def job_key(repo: str, number: int) -> str:
    """Build the store key ``owner/name#number`` of a job."""
    return f"{repo}#{number}"


@dataclass
class Job:
    """One tracker issue driven through the pipeline.

    Jobs are created once, on first admission, and never deleted. The
    engine only moves them between statuses.
    """

    repo: str
    """Owning repository in ``owner/name`` form."""

    number: int
    """Tracker issue number."""

    title: str

    status: JobStatus = JobStatus.PENDING

    current_iteration: int = 0
    """Implementation iterations consumed."""

    current_review_iteration: int = 0
    """Review iterations consumed."""

    current_phase: Phase | None = None
    """Phase being executed; None whenever the job is not IN_PROGRESS."""

    branch_name: str | None = None
    """Assigned once at SETUP and reused by every later run."""

    blocked_by: list[int] = field(default_factory=list)
    """Open blockers at admission time; non-empty iff status is BLOCKED."""

    cooldown_until: datetime | None = None

    artifact_id: int | None = None
    """Pull request number once one has been opened."""

    artifact_url: str | None = None

    pending_feedback: str | None = None
    """Human instructions waiting for the next run."""

    pending_override: OverrideKind | None = None

    escalation_reason: str | None = None

    escalation_labeled: bool = False
    """True once the needs-human label was confirmed on the tracker."""

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        """Store key of this job."""
        return job_key(self.repo, self.number)

    def touch(self) -> None:
        """Refresh ``updated_at``."""
        self.updated_at = utcnow()


@dataclass
class IterationRecord:
    """Audit entry for exactly one implementation attempt.

    The record is opened when the attempt starts and sealed when
    ``completed_at`` is set; a sealed record is never rewritten.
    """

    job_key: str
    sequence: int
    started_at: datetime = field(default_factory=utcnow)
    generation_output: str | None = None
    files_changed: list[str] = field(default_factory=list)
    diff: str | None = None
    verification_result: VerificationResult | None = None
    verification_detail: str | None = None
    review_passed: bool | None = None
    review_raw: str | None = None
    review_scores: dict[str, float] = field(default_factory=dict)
    outcome: str | None = None
    completed_at: datetime | None = None

    @property
    def sealed(self) -> bool:
        return self.completed_at is not None


@dataclass
class AuditEvent:
    """One entry of a job's event log."""

    type: str
    message: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Feedback:
    """Accumulated context passed into the next generation attempt.

    Feedback is immutable; each failure produces a new instance via the
    ``with_*`` helpers so that one phase never overwrites another's input.
    """

    human_instructions: str | None = None
    previous_diff: str | None = None
    verification_detail: str | None = None
    review_summary: str | None = None
    review_findings: tuple[ReviewFinding, ...] = ()
    review_advice: str | None = None
    generation_error: str | None = None

    @property
    def empty(self) -> bool:
        return self == Feedback()

    @property
    def addresses_review(self) -> bool:
        """Check if the next attempt is a response to review findings."""
        return bool(self.review_summary or self.review_findings)

    def with_generation_error(self, error: str) -> "Feedback":
        return replace(
            self,
            generation_error=error,
            verification_detail=None,
            review_summary=None,
            review_findings=(),
            review_advice=None,
        )

    def with_verification_failure(self, diff: str | None, detail: str) -> "Feedback":
        return replace(
            self,
            previous_diff=diff,
            verification_detail=detail,
            generation_error=None,
            review_summary=None,
            review_findings=(),
            review_advice=None,
        )

    def with_review_failure(
        self,
        diff: str | None,
        summary: str,
        findings: list[ReviewFinding],
        advice: str | None,
    ) -> "Feedback":
        return replace(
            self,
            previous_diff=diff,
            review_summary=summary,
            review_findings=tuple(findings),
            review_advice=advice,
            verification_detail=None,
            generation_error=None,
        )


@dataclass
class TrackerIssue:
    """Normalized tracker issue as returned by a TrackerClient."""

    number: int
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    state: str = "open"
    native_blockers: list[int] = field(default_factory=list)
    """Structured blocking links; when present they replace the text convention."""

    is_pull_request: bool = False
    url: str | None = None

    @property
    def closed(self) -> bool:
        return self.state == "closed"


@dataclass
class Artifact:
    """A pull request opened for a job's branch."""

    id: int
    url: str
    branch: str
    draft: bool = False


@dataclass
class GenerationResult:
    """Outcome of one generation backend call."""

    success: bool
    output: str = ""
    files_changed: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    timed_out: bool = False
    error: str | None = None


@dataclass
class DependencyResult:
    """Classification of a job against its declared blockers."""

    number: int
    unresolved_blockers: list[int] = field(default_factory=list)
    """One-hop open blockers; gate admission."""

    chain: list[int] = field(default_factory=list)
    """Full open-blocker closure in processing order, excluding the job itself."""

    has_cycle: bool = False
    chain_description: str = ""

    @property
    def blocked(self) -> bool:
        return bool(self.unresolved_blockers)
