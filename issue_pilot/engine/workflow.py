"""
Phase state machine driving one job to a terminal state.

A job moves through a fixed set of phases::

    SETUP -> IMPLEMENTATION -> VERIFICATION -> PACKAGING -> REVIEW -> COMPLETION

Each phase handler returns one of three transitions:

- ``Advance(to)``: continue with the next phase
- ``Retry(feedback, reason)``: start a new implementation attempt carrying
  structured feedback about what went wrong
- ``Finish(status, ...)``: stop in COMPLETED, AWAITING_APPROVAL or FAILED

Failure handling per phase:

- SETUP failure is fatal and consumes no budget.
- Generation and verification failures (including timeouts) retry while the
  implementation budget lasts.
- A judged review failure consumes a review iteration and retries with the
  reviewer's findings; a reviewer that cannot run is logged and skipped.
- PACKAGING failure is fatal; FINALIZATION failure degrades to
  AWAITING_APPROVAL.

Every implementation attempt produces exactly one sealed IterationRecord,
and no exception escapes ``JobWorkflow.run``.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import assert_never

import structlog

from issue_pilot.config.settings import IssuePilotSettings, RepositoryPolicy
from issue_pilot.engine.budget import BudgetManager
from issue_pilot.engine.job_store import JobStore
from issue_pilot.engine.tracker_mirror import TrackerMirror
from issue_pilot.enums import JobStatus, Phase, VerificationResult
from issue_pilot.exceptions import (
    BudgetExhausted,
    FinalizationFailure,
    GenerationFailure,
    PackagingFailure,
    ReviewFailure,
    ReviewInfrastructureError,
    SetupFailure,
    VerificationFailure,
)
from issue_pilot.models.domain import Artifact, Feedback, IterationRecord, Job, TrackerIssue
from issue_pilot.models.review import ReviewVerdict
from issue_pilot.providers.factory import Collaborators
from issue_pilot.rendering import PilotRenderer
from issue_pilot.utils.logging_config import job_log_context
from issue_pilot.utils.retry import async_retry

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Advance:
    to: Phase


@dataclass(frozen=True)
class Retry:
    feedback: Feedback
    reason: str


@dataclass(frozen=True)
class Finish:
    status: JobStatus
    reason: str = ""
    exhausted: str | None = None
    """Budget whose exhaustion caused a FAILED finish, if any."""


Transition = Advance | Retry | Finish


@dataclass
class RunContext:
    """Mutable state of one ``JobWorkflow.run`` invocation."""

    job: Job
    policy: RepositoryPolicy
    feedback: Feedback
    workdir: Path | None = None
    issue: TrackerIssue | None = None
    record: IterationRecord | None = None
    diff: str = ""
    artifact: Artifact | None = None
    verdict: ReviewVerdict | None = None
    unreviewed: bool = False


class JobWorkflow:
    """Drive a single job through the phase pipeline.

    Attributes:
        settings: Loaded settings.
        collaborators: Tracker, VCS and backend implementations.
        store: Durable job records.
        budget: Budget and escalation manager.
    """

    def __init__(
        self,
        settings: IssuePilotSettings,
        collaborators: Collaborators,
        store: JobStore,
        budget: BudgetManager,
        renderer: PilotRenderer | None = None,
    ) -> None:
        self.settings = settings
        self.collaborators = collaborators
        self.store = store
        self.budget = budget
        self.renderer = renderer or PilotRenderer()
        self.mirror = TrackerMirror(collaborators.tracker)

    async def run(self, job: Job) -> JobStatus:
        """Process a job until it reaches a terminal status.

        Never raises for job-level failures: anything unexpected moves the
        job to FAILED with the raw cause recorded as its escalation reason.

        Returns:
            COMPLETED, AWAITING_APPROVAL or FAILED.
        """
        with job_log_context(job.repo, job.number):
            try:
                return await self._run(job)
            except Exception as e:
                log.error("workflow_unexpected_error", job=job.key, error=str(e), exc_info=True)
                try:
                    await self.budget.fail(job, f"Unexpected error: {e!r}", event_type="workflow_error")
                except Exception:
                    log.error("workflow_fail_transition_failed", job=job.key, exc_info=True)
                return JobStatus.FAILED

    async def _run(self, job: Job) -> JobStatus:
        policy = self.settings.repository(job.repo)
        ctx = RunContext(
            job=job,
            policy=policy,
            feedback=Feedback(human_instructions=job.pending_feedback),
        )

        job.status = JobStatus.IN_PROGRESS
        job.blocked_by = []
        await self.store.save(job)
        await self.store.append_event(job, "workflow_started", f"Starting run for {job.key}")
        log.info("workflow_started", job=job.key, iteration=job.current_iteration)

        phase = Phase.SETUP
        try:
            while True:
                await self._enter(job, phase)
                transition = await self._step(phase, ctx)

                match transition:
                    case Advance(to=next_phase):
                        phase = next_phase
                    case Retry(feedback=feedback, reason=reason):
                        await self._seal(ctx, reason)
                        await self.store.append_event(job, "iteration_retry", reason)
                        log.info("iteration_retry", job=job.key, iteration=job.current_iteration, reason=reason)
                        ctx.feedback = feedback
                        phase = Phase.IMPLEMENTATION
                    case Finish():
                        await self._seal(ctx, transition.reason or transition.status.value)
                        return await self._finish(ctx, transition)
                    case _:
                        assert_never(transition)
        finally:
            await self._seal(ctx, "aborted")

    async def _enter(self, job: Job, phase: Phase) -> None:
        job.current_phase = phase
        await self.store.save(job)
        await self.store.append_event(job, "phase_started", phase.value)
        log.info("phase_started", job=job.key, phase=phase.value)

    async def _step(self, phase: Phase, ctx: RunContext) -> Transition:
        """Run one phase and convert its failures into a transition."""
        try:
            match phase:
                case Phase.SETUP:
                    return await self._setup(ctx)
                case Phase.IMPLEMENTATION:
                    return await self._implementation(ctx)
                case Phase.VERIFICATION:
                    return await self._verification(ctx)
                case Phase.PACKAGING:
                    return await self._packaging(ctx)
                case Phase.REVIEW:
                    return await self._review(ctx)
                case Phase.COMPLETION:
                    return await self._completion(ctx)
                case _:
                    assert_never(phase)
        except SetupFailure as e:
            log.error("setup_failed", job=ctx.job.key, error=e.message)
            return Finish(JobStatus.FAILED, reason=f"Setup failed: {e.message}")
        except BudgetExhausted as e:
            return Finish(JobStatus.FAILED, reason=e.message, exhausted=e.kind)
        except GenerationFailure as e:
            log.warning("generation_failed", job=ctx.job.key, error=e.message, timed_out=e.timed_out)
            return Retry(ctx.feedback.with_generation_error(e.message), reason=e.message)
        except VerificationFailure as e:
            log.warning("verification_failed", job=ctx.job.key, error=e.message)
            return Retry(ctx.feedback.with_verification_failure(ctx.diff, e.detail), reason=e.message)
        except ReviewFailure as e:
            return await self._on_review_failure(ctx, e)
        except PackagingFailure as e:
            log.error("packaging_failed", job=ctx.job.key, error=e.message)
            return Finish(JobStatus.FAILED, reason=f"Pull request creation failed: {e.message}")

    async def _setup(self, ctx: RunContext) -> Transition:
        job, policy = ctx.job, ctx.policy
        vcs = self.collaborators.vcs
        prefix = self.settings.engine.branch_prefix

        try:
            ctx.workdir = await vcs.clone_or_update(policy)
            if job.branch_name:
                await vcs.checkout(policy, job.branch_name)
            else:
                branch = await vcs.create_branch(policy, job.number, job.title)
                if not branch.startswith(prefix):
                    raise SetupFailure(f"Branch {branch!r} does not start with {prefix!r}")
                job.branch_name = branch
                await self.store.save(job)
            ctx.issue = await self.collaborators.tracker.get_issue(policy, job.number)
        except SetupFailure:
            raise
        except Exception as e:
            raise SetupFailure(str(e)) from e

        return Advance(Phase.IMPLEMENTATION)

    async def _implementation(self, ctx: RunContext) -> Transition:
        job, policy = ctx.job, ctx.policy
        assert ctx.issue is not None and ctx.workdir is not None

        iteration = await self.budget.consume_iteration(job)
        ctx.record = await self.store.start_iteration(job)
        prompt = self.renderer.implementation_prompt(ctx.issue, ctx.feedback, iteration, policy.max_iterations)

        timeout = self.settings.engine.generation_timeout_seconds
        feedback = None if ctx.feedback.empty else ctx.feedback
        try:
            result = await asyncio.wait_for(
                self.collaborators.generation.generate(prompt, ctx.workdir, feedback),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise GenerationFailure(f"Generation timed out after {timeout:g}s", timed_out=True) from e
        except Exception as e:
            raise GenerationFailure(f"Generation failed: {e}") from e

        if job.pending_feedback or job.pending_override:
            job.pending_feedback = None
            job.pending_override = None
            await self.store.save(job)

        ctx.record.generation_output = result.output
        ctx.record.files_changed = list(result.files_changed)

        if result.timed_out:
            raise GenerationFailure(f"Generation timed out after {timeout:g}s", timed_out=True)
        if not result.success:
            raise GenerationFailure(result.error or "Generation backend reported failure")

        if ctx.feedback.addresses_review:
            await self.mirror.comment(
                policy,
                job.number,
                self.renderer.implementation_response(iteration, result.output, result.files_changed),
            )

        try:
            ctx.diff = await self.collaborators.vcs.diff(policy, policy.target_branch)
        except Exception as e:
            log.warning("diff_failed", job=job.key, error=str(e))
            ctx.diff = ""
        ctx.record.diff = ctx.diff

        return Advance(Phase.VERIFICATION)

    async def _verification(self, ctx: RunContext) -> Transition:
        job, policy = ctx.job, ctx.policy
        assert ctx.record is not None and job.branch_name is not None
        vcs = self.collaborators.vcs

        try:
            message = f"Resolve #{job.number}: {job.title} (iteration {job.current_iteration})"
            committed = await vcs.commit(policy, message)
            if not committed and not ctx.diff:
                raise GenerationFailure("Generation produced no changes")
            await vcs.push(policy, job.branch_name)
        except GenerationFailure:
            ctx.record.verification_result = VerificationResult.ERROR
            raise
        except Exception as e:
            ctx.record.verification_result = VerificationResult.ERROR
            ctx.record.verification_detail = f"Commit or push failed: {e}"
            raise VerificationFailure(f"Commit or push failed: {e}", detail=ctx.record.verification_detail) from e

        if not policy.ci_enabled:
            ctx.record.verification_result = VerificationResult.SKIPPED
            await self.store.append_event(job, "verification_skipped", "CI disabled, skipped check polling")
            return Advance(Phase.PACKAGING)

        verification = self.collaborators.verification
        timeout = policy.ci_timeout_minutes * 60
        try:
            passed = await asyncio.wait_for(
                verification.wait_for_checks(policy, job.branch_name, timeout),
                timeout=timeout,
            )
        except TimeoutError as e:
            detail = f"CI checks did not finish within {policy.ci_timeout_minutes:g} minutes"
            ctx.record.verification_result = VerificationResult.FAILED
            ctx.record.verification_detail = detail
            raise VerificationFailure(detail, detail=detail) from e
        except Exception as e:
            detail = f"CI verification error: {e}"
            ctx.record.verification_result = VerificationResult.ERROR
            ctx.record.verification_detail = detail
            raise VerificationFailure(detail, detail=detail) from e

        if passed:
            ctx.record.verification_result = VerificationResult.PASSED
            return Advance(Phase.PACKAGING)

        try:
            detail = await verification.failure_detail(policy, job.branch_name)
        except Exception as e:
            log.warning("ci_detail_unavailable", job=job.key, error=str(e))
            detail = f"CI checks failed; logs unavailable: {e}"
        ctx.record.verification_result = VerificationResult.FAILED
        ctx.record.verification_detail = detail
        raise VerificationFailure("CI checks failed", detail=detail)

    async def _packaging(self, ctx: RunContext) -> Transition:
        job, policy = ctx.job, ctx.policy
        assert ctx.issue is not None and job.branch_name is not None

        try:
            ctx.artifact = await self.collaborators.packaging.create_or_reuse(
                policy,
                job.branch_name,
                f"Resolve #{job.number}: {job.title}",
                self.renderer.artifact_body(job, ctx.issue),
                draft=policy.gated,
            )
        except Exception as e:
            raise PackagingFailure(str(e)) from e

        if job.artifact_id != ctx.artifact.id:
            job.artifact_id = ctx.artifact.id
            job.artifact_url = ctx.artifact.url
            await self.store.save(job)
            await self.store.append_event(job, "artifact_created", ctx.artifact.url)
            log.info("artifact_created", job=job.key, artifact=ctx.artifact.id, draft=ctx.artifact.draft)

        return Advance(Phase.REVIEW)

    async def _review(self, ctx: RunContext) -> Transition:
        job, policy = ctx.job, ctx.policy
        assert ctx.issue is not None and ctx.workdir is not None and ctx.record is not None

        spec = f"# {ctx.issue.title}\n\n{ctx.issue.body}"
        timeout = self.settings.engine.review_timeout_seconds
        try:
            try:
                verdict = await asyncio.wait_for(
                    self.collaborators.review.review(ctx.workdir, spec, ctx.diff, policy.security_review),
                    timeout=timeout,
                )
            except TimeoutError as e:
                raise ReviewFailure(f"The review did not finish within {timeout:g}s") from e
            except Exception as e:
                raise ReviewInfrastructureError(str(e)) from e
        except ReviewInfrastructureError as e:
            return await self._on_review_unavailable(ctx, e)

        ctx.verdict = verdict
        ctx.record.review_passed = verdict.passed
        ctx.record.review_raw = verdict.raw
        ctx.record.review_scores = dict(verdict.scores)
        await self.store.append_event(job, "review_completed", "passed" if verdict.passed else "failed")
        await self.mirror.comment(
            policy,
            job.number,
            self.renderer.review_comment(verdict, job.current_review_iteration + 1, policy.max_review_iterations),
        )

        if not verdict.passed:
            raise ReviewFailure(verdict.summary or "Review requested changes", verdict=verdict)

        if self.settings.engine.follow_up_issues and verdict.non_blocking_findings:
            await self._create_follow_up(ctx, verdict)
        return Advance(Phase.COMPLETION)

    async def _on_review_unavailable(self, ctx: RunContext, error: ReviewInfrastructureError) -> Transition:
        job = ctx.job
        held = self.settings.engine.hold_unreviewed_work
        ctx.unreviewed = True
        if ctx.record is not None:
            ctx.record.review_passed = None

        log.warning("review_unavailable", job=job.key, error=error.message, held=held)
        await self.store.append_event(job, "review_skipped", f"Review could not run: {error.message}")
        await self.mirror.comment(ctx.policy, job.number, self.renderer.review_unavailable(error.message, held))
        return Advance(Phase.COMPLETION)

    async def _on_review_failure(self, ctx: RunContext, error: ReviewFailure) -> Transition:
        job = ctx.job
        if not self.budget.can_review_iterate(job):
            return Finish(JobStatus.FAILED, reason=error.message, exhausted="review")

        review_iteration = await self.budget.consume_review_iteration(job)
        verdict = error.verdict
        feedback = ctx.feedback.with_review_failure(
            ctx.diff,
            summary=error.message,
            findings=list(verdict.findings) if verdict else [],
            advice=verdict.advice if verdict else None,
        )
        log.info("review_failed", job=job.key, review_iteration=review_iteration, reason=error.message)
        return Retry(feedback, reason=f"Review failed: {error.message}")

    async def _create_follow_up(self, ctx: RunContext, verdict: ReviewVerdict) -> None:
        """Capture non-blocking findings of a passing review in a new issue."""
        job, policy = ctx.job, ctx.policy
        findings = verdict.non_blocking_findings
        title, body = self.renderer.follow_up(job.number, job.artifact_id, findings)
        try:
            follow_up = await self.collaborators.tracker.create_follow_up(
                policy, title, body, [self.settings.labels.follow_up]
            )
        except Exception as e:
            log.warning("follow_up_failed", job=job.key, error=str(e))
            return

        message = f"Non-blocking review findings have been captured in follow-up issue #{follow_up.number}"
        await self.store.append_event(job, "follow_up_created", message)
        await self.mirror.comment(policy, job.number, message)
        log.info("follow_up_created", job=job.key, follow_up=follow_up.number, findings=len(findings))

    async def _completion(self, ctx: RunContext) -> Transition:
        job, policy = ctx.job, ctx.policy
        assert job.artifact_id is not None
        labels = self.settings.labels

        awaiting = policy.gated or (ctx.unreviewed and self.settings.engine.hold_unreviewed_work)
        merged = False
        try:
            if ctx.artifact is not None and ctx.artifact.draft:
                await self._finalize(ctx)
            if not awaiting and policy.auto_finalize:
                await self._auto_merge(ctx)
                merged = True
        except FinalizationFailure as e:
            log.warning("finalization_failed", job=job.key, error=e.message)
            await self.store.append_event(job, "finalization_failed", e.message)
            awaiting = True

        await self.mirror.comment(
            policy,
            job.number,
            self.renderer.completion_comment(job, awaiting_approval=awaiting, merged=merged, unreviewed=ctx.unreviewed),
        )
        await self.mirror.add_labels(policy, job.number, [labels.artifact_created])
        await self.mirror.remove_label(policy, job.number, labels.trigger)

        status = JobStatus.AWAITING_APPROVAL if awaiting else JobStatus.COMPLETED
        return Finish(status, reason="merged" if merged else status.value)

    async def _finalize(self, ctx: RunContext) -> None:
        assert ctx.job.artifact_id is not None
        try:
            await self.collaborators.packaging.finalize(ctx.policy, ctx.job.artifact_id)
        except Exception as e:
            raise FinalizationFailure(f"Could not mark pull request ready: {e}") from e

    async def _auto_merge(self, ctx: RunContext) -> None:
        job, policy = ctx.job, ctx.policy
        artifact_id = job.artifact_id
        assert artifact_id is not None
        packaging = self.collaborators.packaging

        @async_retry(
            max_attempts=self.settings.engine.auto_finalize_attempts,
            backoff_factor=self.settings.engine.auto_finalize_backoff,
        )
        async def merge() -> None:
            await packaging.auto_merge(policy, artifact_id, f"Resolve #{job.number}: {job.title}")

        try:
            await merge()
        except Exception as e:
            raise FinalizationFailure(f"Auto-merge failed: {e}") from e
        await self.store.append_event(job, "artifact_merged", f"Merged pull request #{artifact_id}")

    async def _seal(self, ctx: RunContext, outcome: str) -> None:
        """Seal the open iteration record, if any."""
        if ctx.record is None:
            return
        record, ctx.record = ctx.record, None
        record.outcome = outcome
        await self.store.complete_iteration(ctx.job, record)

    async def _finish(self, ctx: RunContext, finish: Finish) -> JobStatus:
        job = ctx.job
        if finish.status == JobStatus.FAILED:
            if finish.exhausted == "implementation":
                await self.budget.on_implementation_budget_exhausted(job)
            elif finish.exhausted == "review":
                await self.budget.on_review_budget_exhausted(job)
            else:
                await self.budget.fail(job, finish.reason)
            return JobStatus.FAILED

        job.status = finish.status
        job.current_phase = None
        await self.store.save(job)
        await self.store.append_event(job, "workflow_finished", finish.status.value)
        log.info(
            "workflow_finished",
            job=job.key,
            status=finish.status.value,
            iterations=job.current_iteration,
            review_iterations=job.current_review_iteration,
        )
        return finish.status
