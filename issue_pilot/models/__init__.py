"""Domain and review models for issue-pilot."""

from issue_pilot.models.domain import (
    Artifact,
    AuditEvent,
    DependencyResult,
    Feedback,
    GenerationResult,
    IterationRecord,
    Job,
    TrackerIssue,
)
from issue_pilot.models.review import ReviewFinding, ReviewVerdict, Severity

__all__ = [
    "Artifact",
    "AuditEvent",
    "DependencyResult",
    "Feedback",
    "GenerationResult",
    "IterationRecord",
    "Job",
    "ReviewFinding",
    "ReviewVerdict",
    "Severity",
    "TrackerIssue",
]
