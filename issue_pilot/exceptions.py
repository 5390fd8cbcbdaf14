"""Custom exception hierarchy for the issue-pilot engine.

The hierarchy mirrors the phases of a job so that callers can decide how a
failure is handled from its type alone: retryable phase failures are turned
into feedback for the next generation attempt, fatal ones end the job.

Exception Hierarchy:
    IssuePilotError (base)
    ├── ConfigurationError
    ├── ExternalServiceError
    └── WorkflowError
        ├── PhaseError
        │   ├── SetupFailure              (fatal, no budget consumed)
        │   ├── GenerationFailure         (retryable, implementation budget)
        │   ├── VerificationFailure       (retryable, implementation budget)
        │   ├── ReviewFailure             (retryable, review budget)
        │   ├── ReviewInfrastructureError (non-judged, pass-through)
        │   ├── PackagingFailure          (fatal)
        │   └── FinalizationFailure       (degrades to human approval)
        ├── BudgetExhausted               (terminal, escalation + cooldown)
        └── CycleDetected                 (warning unless strict_cycles)

Example Usage:
    >>> from issue_pilot.exceptions import SetupFailure
    >>> try:
    ...     await vcs.clone_or_update(policy)
    ... except OSError as e:
    ...     raise SetupFailure(f"Workspace preparation failed: {e}") from e
"""

from typing import TYPE_CHECKING

from issue_pilot.enums import Phase

if TYPE_CHECKING:
    from issue_pilot.models.review import ReviewVerdict


class IssuePilotError(Exception):
    """Base exception for all issue-pilot errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(IssuePilotError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Unknown repository or collaborator factory
    """

    pass


class ExternalServiceError(IssuePilotError):
    """A collaborator (tracker, VCS, backend) returned an unusable response.

    Attributes:
        message: Human-readable error description
        service: Name of the failing collaborator, if known
    """

    def __init__(self, message: str, service: str | None = None) -> None:
        self.service = service
        super().__init__(message)


class WorkflowError(IssuePilotError):
    """Errors raised by the orchestration engine itself.

    Raised directly for illegal state transitions, for example a human
    retry on a job that is not FAILED, or an attempt to rewrite a sealed
    iteration record.
    """

    pass


class PhaseError(WorkflowError):
    """Base class for failures that belong to a single job phase.

    Attributes:
        message: Human-readable error description
        phase: Phase in which the failure occurred
    """

    phase: Phase = Phase.SETUP


class SetupFailure(PhaseError):
    """Workspace preparation failed (clone, branch, issue fetch)."""

    phase = Phase.SETUP


class GenerationFailure(PhaseError):
    """The generation backend failed or timed out.

    Attributes:
        timed_out: True when the failure was a timeout
    """

    phase = Phase.IMPLEMENTATION

    def __init__(self, message: str, timed_out: bool = False) -> None:
        self.timed_out = timed_out
        super().__init__(message)


class VerificationFailure(PhaseError):
    """CI checks failed or did not finish in time.

    Attributes:
        detail: Extracted failure output fed back to the next attempt
    """

    phase = Phase.VERIFICATION

    def __init__(self, message: str, detail: str = "") -> None:
        self.detail = detail
        super().__init__(message)


class ReviewFailure(PhaseError):
    """The reviewer returned a judged failing verdict.

    Attributes:
        verdict: The structured verdict, or None for a review timeout
    """

    phase = Phase.REVIEW

    def __init__(self, message: str, verdict: "ReviewVerdict | None" = None) -> None:
        self.verdict = verdict
        super().__init__(message)


class ReviewInfrastructureError(PhaseError):
    """The review backend could not run at all."""

    phase = Phase.REVIEW


class PackagingFailure(PhaseError):
    """Pull request creation or reuse failed."""

    phase = Phase.PACKAGING


class FinalizationFailure(PhaseError):
    """Marking ready or auto-merging the pull request failed."""

    phase = Phase.COMPLETION


class BudgetExhausted(WorkflowError):
    """An iteration budget has no attempts left.

    Attributes:
        kind: "implementation" or "review"
    """

    def __init__(self, message: str, kind: str) -> None:
        self.kind = kind
        super().__init__(message)


class CycleDetected(WorkflowError):
    """A dependency cycle was found while ordering jobs.

    Attributes:
        members: Issue numbers that could not be placed without forcing
    """

    def __init__(self, message: str, members: list[int]) -> None:
        self.members = members
        super().__init__(message)
