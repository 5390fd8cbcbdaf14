"""
Durable job records with atomic writes.

This module provides the JobStore class, the single source of persisted
truth for jobs. Each job gets its own JSON file holding the job fields,
its append-only iteration records and its audit events. Data integrity
comes from:

- Atomic file writes using temporary files and rename operations
- Per-job locking so concurrent coroutines never interleave writes
- Sealed iteration records that can never be rewritten

State File Structure:
    One file per job named ``{owner}__{name}__{number}.json``; see
    ``issue_pilot.engine.types.JobFile`` for the schema.

Transaction Support:
    The ``transaction()`` context manager provides atomic updates of the
    raw file content::

        async with store.transaction("acme/widgets", 42) as data:
            data["job"]["escalation_reason"] = None
            # Changes are saved atomically on context exit

Example:
    >>> store = JobStore(".issue-pilot/state")
    >>> await store.create(Job(repo="acme/widgets", number=42, title="Add pagination"))
    >>> job = await store.get("acme/widgets", 42)
"""

import asyncio
import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import cast
from urllib.parse import quote

import aiofiles
import structlog

from issue_pilot.engine.types import EventState, IterationState, JobFile, JobState
from issue_pilot.enums import JobStatus, OverrideKind, Phase, VerificationResult
from issue_pilot.exceptions import WorkflowError
from issue_pilot.models.domain import AuditEvent, IterationRecord, Job, job_key, utcnow

log = structlog.get_logger(__name__)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _repo_slug(repo: str) -> str:
    """Percent-encode ``owner/name`` into a file-name-safe, collision-free prefix."""
    return quote(repo, safe="")


def job_to_state(job: Job) -> JobState:
    """Serialize a Job into its JSON-compatible form."""
    return {
        "repo": job.repo,
        "number": job.number,
        "title": job.title,
        "status": job.status.value,
        "current_iteration": job.current_iteration,
        "current_review_iteration": job.current_review_iteration,
        "current_phase": job.current_phase.value if job.current_phase else None,
        "branch_name": job.branch_name,
        "blocked_by": list(job.blocked_by),
        "cooldown_until": _ts(job.cooldown_until),
        "artifact_id": job.artifact_id,
        "artifact_url": job.artifact_url,
        "pending_feedback": job.pending_feedback,
        "pending_override": job.pending_override.value if job.pending_override else None,
        "escalation_reason": job.escalation_reason,
        "escalation_labeled": job.escalation_labeled,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }


def job_from_state(state: JobState) -> Job:
    """Rebuild a Job from its serialized form."""
    override = state.get("pending_override")
    return Job(
        repo=state["repo"],
        number=state["number"],
        title=state["title"],
        status=JobStatus(state["status"]),
        current_iteration=state["current_iteration"],
        current_review_iteration=state["current_review_iteration"],
        current_phase=Phase(state["current_phase"]) if state["current_phase"] else None,
        branch_name=state["branch_name"],
        blocked_by=list(state["blocked_by"]),
        cooldown_until=_parse_ts(state["cooldown_until"]),
        artifact_id=state["artifact_id"],
        artifact_url=state.get("artifact_url"),
        pending_feedback=state["pending_feedback"],
        pending_override=OverrideKind(override) if override else None,
        escalation_reason=state["escalation_reason"],
        escalation_labeled=state.get("escalation_labeled", False),
        created_at=datetime.fromisoformat(state["created_at"]),
        updated_at=datetime.fromisoformat(state["updated_at"]),
    )


def _iteration_to_state(record: IterationRecord) -> IterationState:
    return {
        "sequence": record.sequence,
        "started_at": record.started_at.isoformat(),
        "generation_output": record.generation_output,
        "files_changed": list(record.files_changed),
        "diff": record.diff,
        "verification_result": record.verification_result.value if record.verification_result else None,
        "verification_detail": record.verification_detail,
        "review_passed": record.review_passed,
        "review_raw": record.review_raw,
        "review_scores": dict(record.review_scores),
        "outcome": record.outcome,
        "completed_at": _ts(record.completed_at),
    }


def _iteration_from_state(key: str, state: IterationState) -> IterationRecord:
    result = state["verification_result"]
    return IterationRecord(
        job_key=key,
        sequence=state["sequence"],
        started_at=datetime.fromisoformat(state["started_at"]),
        generation_output=state["generation_output"],
        files_changed=list(state["files_changed"]),
        diff=state["diff"],
        verification_result=VerificationResult(result) if result else None,
        verification_detail=state["verification_detail"],
        review_passed=state["review_passed"],
        review_raw=state["review_raw"],
        review_scores=dict(state["review_scores"]),
        outcome=state["outcome"],
        completed_at=_parse_ts(state["completed_at"]),
    )


class JobStore:
    """Persist jobs, iteration records and audit events as JSON files.

    Attributes:
        state_dir: Directory where job files are stored.

    Concurrency Model:
        Designed for single-threaded asyncio usage. Each job has its own
        lock; different jobs can be read and written concurrently.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the store, creating ``state_dir`` if needed.

        Args:
            state_dir: Directory for job files.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def _get_job_path(self, repo: str, number: int) -> Path:
        """Compute the file path of a job.

        Example:
            >>> store._get_job_path("acme/widgets", 42)
            Path(".issue-pilot/state/acme%2Fwidgets__42.json")
        """
        return self.state_dir / f"{_repo_slug(repo)}__{number}.json"

    async def _read(self, path: Path) -> JobFile | None:
        if not path.exists():
            return None
        async with aiofiles.open(path) as f:
            content = await f.read()
        return cast(JobFile, json.loads(content))

    async def _write(self, path: Path, data: JobFile) -> None:
        """Write a job file atomically via a temporary file and rename."""
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(data, indent=2))

        tmp_path.replace(path)

    async def _load_required(self, repo: str, number: int) -> JobFile:
        data = await self._read(self._get_job_path(repo, number))
        if data is None:
            raise WorkflowError(f"No record for {job_key(repo, number)}")
        return data

    @asynccontextmanager
    async def transaction(self, repo: str, number: int) -> AsyncIterator[JobFile]:
        """Context manager for atomic updates of one job file.

        The file is loaded on entry and saved on successful exit. If an
        exception occurs inside the context, nothing is written and the
        exception propagates.

        Raises:
            WorkflowError: If the job has no record.
        """
        lock = self._get_lock(job_key(repo, number))
        async with lock:
            data = await self._load_required(repo, number)
            try:
                yield data
            except Exception:
                log.error("job_transaction_failed", job=job_key(repo, number))
                raise
            await self._write(self._get_job_path(repo, number), data)

    async def exists(self, repo: str, number: int) -> bool:
        return self._get_job_path(repo, number).exists()

    async def create(self, job: Job) -> Job:
        """Persist a new job.

        Raises:
            WorkflowError: If a record for this job already exists.
        """
        async with self._get_lock(job.key):
            path = self._get_job_path(job.repo, job.number)
            if path.exists():
                raise WorkflowError(f"Job {job.key} already exists")
            await self._write(path, {"job": job_to_state(job), "iterations": [], "events": []})
        log.info("job_created", job=job.key, status=job.status.value)
        return job

    async def get(self, repo: str, number: int) -> Job | None:
        async with self._get_lock(job_key(repo, number)):
            data = await self._read(self._get_job_path(repo, number))
        return job_from_state(data["job"]) if data else None

    async def save(self, job: Job) -> None:
        """Persist the current fields of an existing job.

        Refreshes ``updated_at``; iterations and events are left untouched.

        Raises:
            WorkflowError: If the job has no record.
        """
        job.touch()
        async with self.transaction(job.repo, job.number) as data:
            data["job"] = job_to_state(job)

    async def list_jobs(
        self,
        repo: str | None = None,
        statuses: Iterable[JobStatus] | None = None,
    ) -> list[Job]:
        """List stored jobs, ordered by repository then issue number.

        Args:
            repo: Only jobs of this repository.
            statuses: Only jobs in one of these statuses.
        """
        wanted = set(statuses) if statuses is not None else None
        jobs: list[Job] = []
        pattern = f"{_repo_slug(repo)}__*.json" if repo else "*.json"
        for path in self.state_dir.glob(pattern):
            data = await self._read(path)
            if data is None:
                continue
            job = job_from_state(data["job"])
            if repo is not None and job.repo != repo:
                continue
            if wanted is not None and job.status not in wanted:
                continue
            jobs.append(job)
        return sorted(jobs, key=lambda j: (j.repo, j.number))

    async def start_iteration(self, job: Job) -> IterationRecord:
        """Open the iteration record of a new attempt.

        Sequence numbers increase across the whole life of the job, so
        attempts made after a human retry continue the numbering.
        """
        async with self.transaction(job.repo, job.number) as data:
            record = IterationRecord(job_key=job.key, sequence=len(data["iterations"]) + 1)
            data["iterations"].append(_iteration_to_state(record))
        log.debug("iteration_started", job=job.key, sequence=record.sequence)
        return record

    async def complete_iteration(self, job: Job, record: IterationRecord) -> IterationRecord:
        """Seal an iteration record with its final content.

        Raises:
            WorkflowError: If the record does not exist or is already sealed.
        """
        if record.completed_at is None:
            record.completed_at = utcnow()

        async with self.transaction(job.repo, job.number) as data:
            for index, stored in enumerate(data["iterations"]):
                if stored["sequence"] != record.sequence:
                    continue
                if stored["completed_at"] is not None:
                    raise WorkflowError(f"Iteration {record.sequence} of {job.key} is sealed and cannot be rewritten")
                data["iterations"][index] = _iteration_to_state(record)
                break
            else:
                raise WorkflowError(f"Iteration {record.sequence} of {job.key} was never started")

        log.debug("iteration_completed", job=job.key, sequence=record.sequence, outcome=record.outcome)
        return record

    async def iterations(self, repo: str, number: int) -> list[IterationRecord]:
        async with self._get_lock(job_key(repo, number)):
            data = await self._load_required(repo, number)
        return [_iteration_from_state(job_key(repo, number), item) for item in data["iterations"]]

    async def last_iteration(self, repo: str, number: int) -> IterationRecord | None:
        records = await self.iterations(repo, number)
        return records[-1] if records else None

    async def append_event(self, job: Job, event_type: str, message: str) -> AuditEvent:
        """Append an audit event to a job's log."""
        event = AuditEvent(type=event_type, message=message)
        entry: EventState = {
            "type": event.type,
            "message": event.message,
            "created_at": event.created_at.isoformat(),
        }
        async with self.transaction(job.repo, job.number) as data:
            data["events"].append(entry)
        return event

    async def events(self, repo: str, number: int) -> list[AuditEvent]:
        async with self._get_lock(job_key(repo, number)):
            data = await self._load_required(repo, number)
        return [
            AuditEvent(type=e["type"], message=e["message"], created_at=datetime.fromisoformat(e["created_at"]))
            for e in data["events"]
        ]
