"""Type definitions for persisted job records.

Each job is stored as one JSON file holding the job itself, its
append-only iteration records and its audit events. These TypedDicts
describe that schema.

Example:
    A job file after one failed verification attempt::

        {
            "job": {"repo": "acme/widgets", "number": 42, "status": "in_progress", ...},
            "iterations": [
                {"sequence": 1, "verification_result": "failed", "completed_at": "...", ...}
            ],
            "events": [
                {"type": "phase_started", "message": "implementation", "created_at": "..."}
            ]
        }
"""

from typing import NotRequired, TypedDict


class JobState(TypedDict):
    """Serialized Job.

    Timestamps are ISO 8601 strings; enums are stored by value.
    """

    repo: str
    number: int
    title: str
    status: str
    current_iteration: int
    current_review_iteration: int
    current_phase: str | None
    branch_name: str | None
    blocked_by: list[int]
    cooldown_until: str | None
    artifact_id: int | None
    artifact_url: NotRequired[str | None]
    pending_feedback: str | None
    pending_override: NotRequired[str | None]
    escalation_reason: str | None
    escalation_labeled: NotRequired[bool]
    created_at: str
    updated_at: str


class IterationState(TypedDict):
    """Serialized IterationRecord."""

    sequence: int
    started_at: str
    generation_output: str | None
    files_changed: list[str]
    diff: str | None
    verification_result: str | None
    verification_detail: str | None
    review_passed: bool | None
    review_raw: str | None
    review_scores: dict[str, float]
    outcome: str | None
    completed_at: str | None


class EventState(TypedDict):
    """Serialized AuditEvent."""

    type: str
    message: str
    created_at: str


class JobFile(TypedDict):
    """Complete on-disk content of one job."""

    job: JobState
    iterations: list[IterationState]
    events: list[EventState]
