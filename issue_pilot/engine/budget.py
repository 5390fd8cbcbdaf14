"""
Iteration budgets, escalation and human overrides.

Every job has two independent, monotonic counters:

- ``current_iteration``: implementation attempts (generate + verify)
- ``current_review_iteration``: passes through the review feedback loop

Build and test failures consume the first, review rejections the second,
so neither failure mode can starve the other's retries. Each counter is
bounded by the owning repository's policy and only a human override resets it.

When a budget runs out the job is escalated: it moves to FAILED, gets the
``needs-human`` label and a summary of its last attempt, and enters a
cooldown during which the admission controller will not pick it up again.
Every FAILED transition in the engine goes through ``BudgetManager.fail``,
so a FAILED job always carries a cooldown deadline.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from issue_pilot.config.settings import IssuePilotSettings, RepositoryPolicy
from issue_pilot.engine.job_store import JobStore
from issue_pilot.engine.tracker_mirror import TrackerMirror
from issue_pilot.enums import JobStatus, OverrideKind
from issue_pilot.exceptions import BudgetExhausted, WorkflowError
from issue_pilot.models.domain import Job, utcnow
from issue_pilot.providers.base import TrackerClient
from issue_pilot.rendering import PilotRenderer

log = structlog.get_logger(__name__)


class BudgetManager:
    """Track iteration budgets and move jobs into and out of escalation.

    Attributes:
        store: Job store used to persist every counter change.
        mirror: Best-effort tracker writer for labels and comments.
        settings: Loaded settings; policies and cooldown come from here.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        store: JobStore,
        tracker: TrackerClient,
        settings: IssuePilotSettings,
        renderer: PilotRenderer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.mirror = TrackerMirror(tracker)
        self.settings = settings
        self.renderer = renderer or PilotRenderer()
        self.clock = clock

    def policy(self, job: Job) -> RepositoryPolicy:
        return self.settings.repository(job.repo)

    def can_iterate(self, job: Job) -> bool:
        """Check if another implementation attempt is allowed."""
        return job.current_iteration < self.policy(job).max_iterations

    def can_review_iterate(self, job: Job) -> bool:
        """Check if another review feedback pass is allowed."""
        return job.current_review_iteration < self.policy(job).max_review_iterations

    async def consume_iteration(self, job: Job) -> int:
        """Consume one implementation iteration and persist it.

        Returns:
            The new iteration number.

        Raises:
            BudgetExhausted: If the implementation budget is already used up.
        """
        if not self.can_iterate(job):
            raise BudgetExhausted(
                f"{job.key} used all {self.policy(job).max_iterations} implementation iterations",
                kind="implementation",
            )
        job.current_iteration += 1
        await self.store.save(job)
        return job.current_iteration

    async def consume_review_iteration(self, job: Job) -> int:
        """Consume one review iteration and persist it.

        Raises:
            BudgetExhausted: If the review budget is already used up.
        """
        if not self.can_review_iterate(job):
            raise BudgetExhausted(
                f"{job.key} used all {self.policy(job).max_review_iterations} review iterations",
                kind="review",
            )
        job.current_review_iteration += 1
        await self.store.save(job)
        return job.current_review_iteration

    def cooldown_deadline(self) -> datetime:
        return self.clock() + timedelta(hours=self.settings.engine.cooldown_hours)

    def cooldown_expired(self, job: Job) -> bool:
        """Check if the job's cooldown window has passed (or was never set)."""
        return job.cooldown_until is None or self.clock() >= job.cooldown_until

    async def fail(self, job: Job, reason: str, event_type: str = "job_failed") -> Job:
        """Move a job to FAILED and hand it to a human.

        Sets the cooldown deadline, clears the active phase, marks the issue
        with the ``needs-human`` label and posts a summary of the last
        attempt, if there was one. ``escalation_labeled`` records whether
        the label write went through; automatic re-admission depends on it.

        Args:
            job: Job to fail; updated in place and persisted.
            reason: Human-readable cause, stored as the escalation reason.
            event_type: Audit event type to record.

        Returns:
            The failed job.
        """
        job.status = JobStatus.FAILED
        job.current_phase = None
        job.cooldown_until = self.cooldown_deadline()
        job.escalation_reason = reason
        job.escalation_labeled = False
        await self.store.save(job)
        await self.store.append_event(job, event_type, reason)

        log.warning(
            "job_escalated",
            job=job.key,
            reason=reason,
            iterations=job.current_iteration,
            review_iterations=job.current_review_iteration,
            cooldown_until=job.cooldown_until.isoformat(),
        )

        policy = self.policy(job)
        if await self.mirror.add_labels(policy, job.number, [self.settings.labels.needs_human]):
            job.escalation_labeled = True
            await self.store.save(job)

        last = await self.store.last_iteration(job.repo, job.number)
        comment = self.renderer.escalation_comment(
            job,
            reason,
            last,
            needs_human_label=self.settings.labels.needs_human,
            trigger_label=self.settings.labels.trigger,
            cooldown_hours=self.settings.engine.cooldown_hours,
        )
        await self.mirror.comment(policy, job.number, comment)
        return job

    async def on_implementation_budget_exhausted(self, job: Job) -> Job:
        max_iterations = self.policy(job).max_iterations
        return await self.fail(
            job,
            f"Attempted this issue {max_iterations} times without producing a passing solution.",
            event_type="implementation_budget_exhausted",
        )

    async def on_review_budget_exhausted(self, job: Job) -> Job:
        max_review = self.policy(job).max_review_iterations
        return await self.fail(
            job,
            f"The independent review rejected the change after {max_review} review iterations.",
            event_type="review_budget_exhausted",
        )

    async def record_human_override(self, job: Job, feedback: str | None, kind: OverrideKind) -> Job:
        """Return a job to PENDING with human feedback for its next run.

        RETRY applies to FAILED jobs and resets both counters, the cooldown
        and the escalation marker, so the job restarts from SETUP with a
        fresh budget. REJECTION applies to AWAITING_APPROVAL jobs; it resets
        the implementation counter so the feedback reaches at least one more
        generation call, and keeps the review counter.

        Raises:
            WorkflowError: If the job is not in a state the override applies to.
        """
        policy = self.policy(job)

        if kind == OverrideKind.RETRY:
            if job.status != JobStatus.FAILED:
                raise WorkflowError(f"Only FAILED jobs can be retried; {job.key} is {job.status.value}")
            job.current_iteration = 0
            job.current_review_iteration = 0
            job.cooldown_until = None
            job.escalation_reason = None
            job.escalation_labeled = False
            await self.mirror.remove_label(policy, job.number, self.settings.labels.needs_human)
        elif kind == OverrideKind.REJECTION:
            if job.status != JobStatus.AWAITING_APPROVAL:
                raise WorkflowError(f"Only jobs awaiting approval can be rejected; {job.key} is {job.status.value}")
            job.current_iteration = 0

        job.status = JobStatus.PENDING
        job.current_phase = None
        job.pending_feedback = feedback or None
        job.pending_override = kind
        await self.store.save(job)
        await self.store.append_event(job, f"human_{kind.value}", feedback or "")
        await self.mirror.comment(policy, job.number, self.renderer.human_override(kind.value, feedback))

        log.info("human_override_recorded", job=job.key, kind=kind.value, has_feedback=bool(feedback))
        return job

    async def record_approval(self, job: Job) -> Job:
        """Mark a job awaiting approval as COMPLETED.

        Raises:
            WorkflowError: If the job is not awaiting approval.
        """
        if job.status != JobStatus.AWAITING_APPROVAL:
            raise WorkflowError(f"Only jobs awaiting approval can be approved; {job.key} is {job.status.value}")
        job.status = JobStatus.COMPLETED
        await self.store.save(job)
        await self.store.append_event(job, "human_approval", "Approved")
        log.info("job_approved", job=job.key)
        return job
