"""Enumerations for job state, repository mode and pipeline phases."""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a tracked job.

    Typical happy path:
    PENDING -> IN_PROGRESS -> COMPLETED (or AWAITING_APPROVAL when gated)
    """

    PENDING = "pending"
    QUEUED = "queued"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if the engine stops driving a job in this status."""
        return self in (JobStatus.COMPLETED, JobStatus.AWAITING_APPROVAL, JobStatus.FAILED)

    @property
    def holds_gate(self) -> bool:
        """Check if a job in this status occupies its repository's gate."""
        return self in (JobStatus.IN_PROGRESS, JobStatus.AWAITING_APPROVAL)


class RepoMode(str, Enum):
    """How finished work is handed over.

    - autonomous: the engine may finalize and merge on its own
    - approval-gated: every finished job waits for a human
    """

    AUTONOMOUS = "autonomous"
    APPROVAL_GATED = "approval-gated"

    def __str__(self) -> str:
        return self.value


class Phase(str, Enum):
    """Fixed phase set of the job pipeline, in execution order."""

    SETUP = "setup"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"
    PACKAGING = "packaging"
    REVIEW = "review"
    COMPLETION = "completion"

    def __str__(self) -> str:
        return self.value


class VerificationResult(str, Enum):
    """Outcome of the verification phase for one iteration."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class OverrideKind(str, Enum):
    """Kind of human intervention applied to a job."""

    RETRY = "retry"
    REJECTION = "rejection"

    def __str__(self) -> str:
        return self.value
