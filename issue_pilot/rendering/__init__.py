"""Rendering of generation prompts and tracker-facing comments.

Every piece of text the engine sends outside the process (the prompt given
to the generation backend, comments and follow-up issues posted to the
tracker, pull request bodies) comes from a template in
``issue_pilot/templates``. ``PilotRenderer`` gives each of them a typed
method so callers never assemble markdown by hand.

Example:
    >>> renderer = PilotRenderer()
    >>> body = renderer.dependency_chain(20, unresolved=[15], chain=[5, 10, 15], has_cycle=False)
"""

from pathlib import Path

from issue_pilot.models.domain import Feedback, IterationRecord, Job, TrackerIssue
from issue_pilot.models.review import ReviewFinding, ReviewVerdict

from .engine import SecureTemplateEngine

__all__ = [
    "PilotRenderer",
    "SecureTemplateEngine",
]


class PilotRenderer:
    """Typed facade over the package templates.

    Attributes:
        engine: The underlying SecureTemplateEngine instance.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        self.engine = SecureTemplateEngine(template_dir=template_dir)

    def implementation_prompt(
        self,
        issue: TrackerIssue,
        feedback: Feedback,
        iteration: int,
        max_iterations: int,
    ) -> str:
        """Build the prompt for one generation attempt.

        Accumulated feedback (human instructions, the previous diff, CI
        output, review findings) is appended in dedicated sections so the
        backend can tell what went wrong last time.
        """
        return self.engine.render(
            "implementation_prompt.md.j2",
            {
                "issue": issue,
                "feedback": feedback,
                "iteration": iteration,
                "max_iterations": max_iterations,
            },
        )

    def implementation_response(self, iteration: int, output: str, files_changed: list[str]) -> str:
        return self.engine.render(
            "implementation_response.md.j2",
            {"iteration": iteration, "output": output, "files_changed": files_changed},
        )

    def review_comment(self, verdict: ReviewVerdict, review_iteration: int, max_review_iterations: int) -> str:
        return self.engine.render(
            "review_result.md.j2",
            {
                "verdict": verdict,
                "review_iteration": review_iteration,
                "max_review_iterations": max_review_iterations,
            },
        )

    def review_unavailable(self, error: str, held: bool) -> str:
        return self.engine.render("review_unavailable.md.j2", {"error": error, "held": held})

    def escalation_comment(
        self,
        job: Job,
        reason: str,
        last: IterationRecord | None,
        needs_human_label: str,
        trigger_label: str,
        cooldown_hours: float,
    ) -> str:
        """Summarize the final attempt of an escalated job."""
        return self.engine.render(
            "escalation.md.j2",
            {
                "job": job,
                "reason": reason,
                "last": last,
                "needs_human_label": needs_human_label,
                "trigger_label": trigger_label,
                "cooldown_hours": cooldown_hours,
            },
        )

    def dependency_chain(self, number: int, unresolved: list[int], chain: list[int], has_cycle: bool) -> str:
        return self.engine.render(
            "dependency_chain.md.j2",
            {
                "number": number,
                "unresolved": unresolved,
                "order": [*chain, number],
                "has_cycle": has_cycle,
            },
        )

    def follow_up(self, number: int, artifact_id: int | None, findings: list[ReviewFinding]) -> tuple[str, str]:
        """Return the title and body of a follow-up issue for deferred findings."""
        title = f"Follow-Up: Code Review Findings from #{number}"
        body = self.engine.render(
            "follow_up.md.j2",
            {"number": number, "artifact_id": artifact_id, "findings": findings},
        )
        return title, body

    def completion_comment(self, job: Job, awaiting_approval: bool, merged: bool, unreviewed: bool) -> str:
        return self.engine.render(
            "completion.md.j2",
            {
                "job": job,
                "awaiting_approval": awaiting_approval,
                "merged": merged,
                "unreviewed": unreviewed,
            },
        )

    def artifact_body(self, job: Job, issue: TrackerIssue) -> str:
        return self.engine.render("artifact_body.md.j2", {"job": job, "issue": issue})

    def human_override(self, kind: str, feedback: str | None) -> str:
        return self.engine.render("human_override.md.j2", {"kind": kind, "feedback": feedback})
