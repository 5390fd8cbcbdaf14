"""Best-effort mirroring of job events onto the tracker.

Comments and label changes tell the issue owner what the engine is doing,
but the engine's own record in the JobStore is authoritative. A failed
tracker write is logged and never changes the outcome of a job.
"""

import structlog

from issue_pilot.config.settings import RepositoryPolicy
from issue_pilot.providers.base import TrackerClient

log = structlog.get_logger(__name__)


class TrackerMirror:
    """Wrap a TrackerClient so that writes never raise."""

    def __init__(self, tracker: TrackerClient) -> None:
        self.tracker = tracker

    async def comment(self, policy: RepositoryPolicy, number: int, body: str) -> bool:
        try:
            await self.tracker.add_comment(policy, number, body)
        except Exception as e:
            log.warning("tracker_comment_failed", repo=policy.full_name, issue=number, error=str(e))
            return False
        return True

    async def add_labels(self, policy: RepositoryPolicy, number: int, labels: list[str]) -> bool:
        try:
            await self.tracker.add_labels(policy, number, labels)
        except Exception as e:
            log.warning("tracker_label_failed", repo=policy.full_name, issue=number, labels=labels, error=str(e))
            return False
        return True

    async def remove_label(self, policy: RepositoryPolicy, number: int, label: str) -> bool:
        try:
            await self.tracker.remove_label(policy, number, label)
        except Exception as e:
            log.warning("tracker_unlabel_failed", repo=policy.full_name, issue=number, label=label, error=str(e))
            return False
        return True
