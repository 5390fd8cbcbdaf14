"""
Admission control: which jobs run, and when.

The AdmissionController polls the tracker on a fixed interval and decides,
for every configured repository, which job may start next. A cycle runs
four steps, each across all repositories:

1. ``recheck_blocked``: promote BLOCKED jobs whose blockers have cleared
2. ``drain_queued``: start one QUEUED job per repository whose gate is
   open, choosing it by dependency order rather than arrival order
3. ``resume_pending``: start PENDING jobs (human retries, rejections and
   dispatches interrupted by a restart)
4. ``admit_new``: create records for newly labelled issues and classify
   them as BLOCKED, QUEUED or started

Two limits apply to every start:

- a global cap on concurrently running jobs
- a per-repository gate: at most one active job, or one open pull request
  on the engine's branch prefix, per repository. The pull request check
  queries the tracker, so it reflects work other processes left open.

Each started job runs as its own asyncio task; the control loop itself is
single-threaded and never waits on a job.
"""

import asyncio

import structlog

from issue_pilot.config.settings import IssuePilotSettings, RepositoryPolicy
from issue_pilot.engine.budget import BudgetManager
from issue_pilot.engine.dependency_resolver import DependencyResolver
from issue_pilot.engine.job_store import JobStore
from issue_pilot.engine.tracker_mirror import TrackerMirror
from issue_pilot.engine.workflow import JobWorkflow
from issue_pilot.enums import JobStatus, OverrideKind
from issue_pilot.exceptions import CycleDetected
from issue_pilot.models.domain import Job, TrackerIssue
from issue_pilot.providers.base import TrackerClient

log = structlog.get_logger(__name__)


class AdmissionSwitch:
    """Process-wide flag that enables or pauses admission.

    The owning AdmissionController is the only writer; everything else
    (signal handlers, the CLI) goes through ``AdmissionController.set_enabled``.
    Pausing stops new starts only; running jobs continue.
    """

    def __init__(self, enabled: bool = True) -> None:
        self._event = asyncio.Event()
        if enabled:
            self._event.set()

    @property
    def enabled(self) -> bool:
        return self._event.is_set()

    def _write(self, enabled: bool) -> None:
        if enabled:
            self._event.set()
        else:
            self._event.clear()

    async def wait_enabled(self) -> None:
        await self._event.wait()


class AdmissionController:
    """Discover, classify and start jobs under concurrency limits.

    Attributes:
        settings: Loaded settings.
        tracker: Tracker used for discovery and the gate check.
        store: Durable job records.
        resolver: Dependency resolver.
        workflow: Phase engine that runs started jobs.
        budget: Budget manager, used for cooldown checks and escalation.
        switch: Admission enable flag owned by this controller.
    """

    def __init__(
        self,
        settings: IssuePilotSettings,
        tracker: TrackerClient,
        store: JobStore,
        resolver: DependencyResolver,
        workflow: JobWorkflow,
        budget: BudgetManager,
        switch: AdmissionSwitch | None = None,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.store = store
        self.resolver = resolver
        self.workflow = workflow
        self.budget = budget
        self.switch = switch or AdmissionSwitch()
        self.mirror = TrackerMirror(tracker)
        self._running: dict[str, asyncio.Task[JobStatus]] = {}

    @property
    def running(self) -> list[str]:
        """Keys of jobs currently running."""
        return sorted(self._running)

    @property
    def capacity(self) -> int:
        """Number of jobs that may still start under the global cap."""
        return max(0, self.settings.engine.max_concurrent_jobs - len(self._running))

    def set_enabled(self, enabled: bool) -> None:
        """Enable or pause admission."""
        if enabled != self.switch.enabled:
            log.info("admission_switch_changed", enabled=enabled)
        self.switch._write(enabled)

    def _running_in(self, policy: RepositoryPolicy) -> bool:
        prefix = f"{policy.full_name}#"
        return any(key.startswith(prefix) for key in self._running)

    async def gate_open(self, policy: RepositoryPolicy, own_branch: str | None = None) -> bool:
        """Check the repository's single-flight gate.

        The gate is closed when a job of the repository is running, when a
        stored job is IN_PROGRESS or AWAITING_APPROVAL, or when the tracker
        reports an open pull request on the engine's branch prefix. If the
        tracker cannot be asked, the gate counts as closed.

        Args:
            policy: Repository to check.
            own_branch: Branch of the job about to start; its own pull
                request does not close the gate.
        """
        if self._running_in(policy):
            return False

        holding = await self.store.list_jobs(
            policy.full_name, statuses=[JobStatus.IN_PROGRESS, JobStatus.AWAITING_APPROVAL]
        )
        if holding:
            return False

        try:
            artifacts = await self.tracker.list_open_artifacts(policy, self.settings.engine.branch_prefix)
        except Exception as e:
            log.warning("gate_check_failed", repo=policy.full_name, error=str(e))
            return False
        return not [a for a in artifacts if a.branch != own_branch]

    def dispatch(self, job: Job) -> asyncio.Task[JobStatus]:
        """Start a job's workflow as its own task."""
        key = job.key
        task = asyncio.create_task(self.workflow.run(job), name=f"job:{key}")
        self._running[key] = task
        task.add_done_callback(lambda t: self._on_done(key, t))
        log.info("job_dispatched", job=key, running=len(self._running))
        return task

    def _on_done(self, key: str, task: asyncio.Task[JobStatus]) -> None:
        self._running.pop(key, None)
        if task.cancelled():
            log.warning("job_task_cancelled", job=key)
            return
        exc = task.exception()
        if exc is not None:
            log.error("job_task_crashed", job=key, error=str(exc))
        else:
            log.info("job_task_finished", job=key, status=task.result().value)

    async def run_cycle(self) -> None:
        """Run one admission cycle across all configured repositories."""
        if not self.switch.enabled:
            log.debug("admission_paused")
            return

        for step in (self.recheck_blocked, self.drain_queued, self.resume_pending, self.admit_new):
            for policy in self.settings.repositories:
                try:
                    await step(policy)
                except Exception as e:
                    log.error(
                        "admission_step_failed",
                        step=step.__name__,
                        repo=policy.full_name,
                        error=str(e),
                        exc_info=True,
                    )

    async def recheck_blocked(self, policy: RepositoryPolicy) -> None:
        """Promote BLOCKED jobs whose stored blockers are all resolved."""
        for job in await self.store.list_jobs(policy.full_name, statuses=[JobStatus.BLOCKED]):
            if not await self.resolver.all_blockers_resolved(policy, job.blocked_by):
                continue
            cleared = job.blocked_by
            job.status = JobStatus.QUEUED
            job.blocked_by = []
            await self.store.save(job)
            await self.store.append_event(job, "unblocked", f"Blockers resolved: {cleared}")
            log.info("job_unblocked", job=job.key, blockers=cleared)

    async def drain_queued(self, policy: RepositoryPolicy) -> None:
        """Start the first QUEUED job in dependency order, if the gate allows."""
        if self.capacity <= 0:
            return
        queued = await self.store.list_jobs(policy.full_name, statuses=[JobStatus.QUEUED])
        if not queued or not await self.gate_open(policy):
            return

        try:
            ordered = await self.resolver.order_jobs(policy, queued, strict=self.settings.engine.strict_cycles)
        except CycleDetected as e:
            await self._escalate_cycle(queued, e)
            return

        self.dispatch(ordered[0])

    async def _escalate_cycle(self, jobs: list[Job], error: CycleDetected) -> None:
        for job in jobs:
            if job.number in error.members:
                await self.budget.fail(job, error.message, event_type="dependency_cycle")

    async def resume_pending(self, policy: RepositoryPolicy) -> None:
        """Start PENDING jobs that have no running task."""
        if self.capacity <= 0:
            return
        pending = [
            job
            for job in await self.store.list_jobs(policy.full_name, statuses=[JobStatus.PENDING])
            if job.key not in self._running
        ]
        if pending and await self.gate_open(policy, own_branch=pending[0].branch_name):
            log.info("job_resumed", job=pending[0].key, override=pending[0].pending_override)
            self.dispatch(pending[0])

    async def admit_new(self, policy: RepositoryPolicy) -> None:
        """Create records for newly labelled issues and classify them."""
        labels = self.settings.labels
        issues = await self.tracker.list_issues(policy, label=labels.trigger, state="open")

        for issue in sorted(issues, key=lambda i: i.number):
            if issue.is_pull_request:
                continue

            existing = await self.store.get(policy.full_name, issue.number)
            if existing is not None:
                await self._maybe_readmit(policy, existing, issue)
                continue

            await self._admit(policy, issue)

    async def _admit(self, policy: RepositoryPolicy, issue: TrackerIssue) -> None:
        result = await self.resolver.resolve(policy, issue.number, issue=issue)

        if result.blocked:
            job = Job(
                repo=policy.full_name,
                number=issue.number,
                title=issue.title,
                status=JobStatus.BLOCKED,
                blocked_by=list(result.unresolved_blockers),
            )
            await self.store.create(job)
            await self.store.append_event(job, "blocked", result.chain_description)
            for blocker in result.chain:
                await self.mirror.add_labels(policy, blocker, [self.settings.labels.trigger])
            await self.mirror.comment(policy, issue.number, result.chain_description)
            log.info(
                "job_blocked",
                job=job.key,
                blockers=result.unresolved_blockers,
                chain=result.chain,
                cycle=result.has_cycle,
            )
            return

        startable = self.capacity > 0 and await self.gate_open(policy)
        job = Job(
            repo=policy.full_name,
            number=issue.number,
            title=issue.title,
            status=JobStatus.PENDING if startable else JobStatus.QUEUED,
        )
        await self.store.create(job)
        await self.store.append_event(job, "admitted", job.status.value)
        log.info("job_admitted", job=job.key, status=job.status.value)
        if startable:
            self.dispatch(job)

    async def _maybe_readmit(self, policy: RepositoryPolicy, job: Job, issue: TrackerIssue) -> None:
        """Re-admit a FAILED job once a human has cleared its escalation marker.

        The needs-human label must have been confirmed on the tracker when
        the job failed and be gone now, the issue must still carry the
        trigger label, and the job's cooldown must have expired. A job whose
        label write failed only restarts through ``issue-pilot retry``. Jobs
        in any other status are never re-admitted from a label.
        """
        if job.status != JobStatus.FAILED:
            return
        if not job.escalation_labeled:
            log.debug("readmission_needs_explicit_retry", job=job.key)
            return
        if self.settings.labels.needs_human in issue.labels:
            return
        if not self.budget.cooldown_expired(job):
            log.debug("readmission_suppressed", job=job.key, cooldown_until=job.cooldown_until)
            return

        log.info("job_readmitted", job=job.key)
        await self.budget.record_human_override(job, None, OverrideKind.RETRY)

    async def recover_interrupted(self) -> int:
        """Reset IN_PROGRESS records left behind by a previous process.

        Returns:
            Number of jobs reset to PENDING.
        """
        recovered = 0
        for job in await self.store.list_jobs(statuses=[JobStatus.IN_PROGRESS]):
            if job.key in self._running:
                continue
            interrupted = job.current_phase.value if job.current_phase else "unknown"
            job.status = JobStatus.PENDING
            job.current_phase = None
            await self.store.save(job)
            await self.store.append_event(job, "recovered", f"Interrupted during {interrupted}")
            log.warning("job_recovered", job=job.key, phase=interrupted)
            recovered += 1
        return recovered

    async def wait_idle(self) -> None:
        """Wait for every running job to finish."""
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set, then wait for running jobs."""
        await self.recover_interrupted()
        interval = self.settings.engine.poll_interval_seconds
        log.info("admission_loop_started", interval=interval, repositories=len(self.settings.repositories))

        while not stop.is_set():
            await self.run_cycle()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                pass

        log.info("admission_loop_stopping", running=self.running)
        await self.wait_idle()
