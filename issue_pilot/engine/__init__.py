"""Job engine: admission, the phase workflow, budgets and persistence.

Key Components:
    - AdmissionController: Discovers labelled issues and starts jobs under
      the global cap and the per-repository gate
    - JobWorkflow: Drives one job through SETUP to COMPLETION
    - BudgetManager: Iteration budgets, escalation and human overrides
    - DependencyResolver: Blocker discovery and dependency ordering
    - JobStore: Durable per-job records with atomic writes

Type Definitions:
    - JobFile: TypedDict for the on-disk record of one job
    - JobState, IterationState, EventState: its parts

Example:
    >>> from issue_pilot.engine.job_store import JobStore
    >>> store = JobStore(".issue-pilot/state")
    >>> job = await store.get("acme/widgets", 42)
"""

from issue_pilot.engine.types import EventState, IterationState, JobFile, JobState

__all__ = [
    "EventState",
    "IterationState",
    "JobFile",
    "JobState",
]
