"""Unit tests for the issue_pilot.main CLI module.

This module tests:
- Configuration loading errors
- status and show output
- retry, reject and approve overrides
- run --once wiring
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from issue_pilot.engine.job_store import JobStore
from issue_pilot.enums import JobStatus, OverrideKind
from issue_pilot.main import cli
from issue_pilot.models.domain import Job
from issue_pilot.providers.base import (
    GenerationBackend,
    PackagingBackend,
    ReviewBackend,
    TrackerClient,
    VcsClient,
    VerificationBackend,
)

REPO = "acme/widgets"


def make_tracker(settings):
    return AsyncMock(spec=TrackerClient)


def make_vcs(settings):
    return AsyncMock(spec=VcsClient)


def make_generation(settings):
    return AsyncMock(spec=GenerationBackend)


def make_verification(settings):
    return AsyncMock(spec=VerificationBackend)


def make_review(settings):
    return AsyncMock(spec=ReviewBackend)


def make_packaging(settings):
    return AsyncMock(spec=PackagingBackend)


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep the CLI from reconfiguring structlog onto the runner's output stream."""
    with patch("issue_pilot.main.configure_logging"):
        yield


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def config_file(tmp_path, state_dir):
    """Configuration pointing at this module's collaborator factories."""
    path = tmp_path / "issue-pilot.yaml"
    path.write_text(
        f"""
engine:
  state_directory: {state_dir}
repositories:
  - owner: acme
    name: widgets
collaborators:
  tracker: {__name__}:make_tracker
  vcs: {__name__}:make_vcs
  generation: {__name__}:make_generation
  verification: {__name__}:make_verification
  review: {__name__}:make_review
  packaging: {__name__}:make_packaging
"""
    )
    return path


def seed(state_dir, *jobs):
    store = JobStore(state_dir)

    async def create():
        for job in jobs:
            await store.create(job)

    asyncio.run(create())
    return store


def test_missing_config_file(cli_runner, tmp_path):
    result = cli_runner.invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "status"])

    assert result.exit_code == 1
    assert "Configuration file not found" in result.output


def test_invalid_config_file(cli_runner, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("engine:\n  max_concurrent_jobs: -1\n")

    result = cli_runner.invoke(cli, ["--config", str(path), "status"])

    assert result.exit_code == 1
    assert "Error:" in result.output


def test_status_without_jobs(cli_runner, config_file):
    result = cli_runner.invoke(cli, ["--config", str(config_file), "status"])

    assert result.exit_code == 0
    assert "No jobs found." in result.output


def test_status_lists_jobs(cli_runner, config_file, state_dir):
    seed(
        state_dir,
        Job(repo=REPO, number=42, title="Add pagination", status=JobStatus.QUEUED),
        Job(repo=REPO, number=20, title="Search", status=JobStatus.BLOCKED, blocked_by=[15]),
    )

    result = cli_runner.invoke(cli, ["--config", str(config_file), "status", "--repo", REPO])

    assert result.exit_code == 0
    assert "Jobs (2)" in result.output
    assert "acme/widgets#42: queued" in result.output
    assert "blocked by #15" in result.output


def test_show_job(cli_runner, config_file, state_dir):
    seed(state_dir, Job(repo=REPO, number=42, title="Add pagination", escalation_reason="CI keeps failing"))

    result = cli_runner.invoke(cli, ["--config", str(config_file), "show", REPO, "42"])

    assert result.exit_code == 0
    assert "Job acme/widgets#42: Add pagination" in result.output
    assert "Escalation: CI keeps failing" in result.output


def test_show_unknown_job(cli_runner, config_file):
    result = cli_runner.invoke(cli, ["--config", str(config_file), "show", REPO, "7"])

    assert result.exit_code == 1
    assert "No job recorded for acme/widgets#7" in result.output


def test_retry_failed_job(cli_runner, config_file, state_dir):
    store = seed(state_dir, Job(repo=REPO, number=42, title="t", status=JobStatus.FAILED, current_iteration=5))

    result = cli_runner.invoke(
        cli, ["--config", str(config_file), "retry", REPO, "42", "--instructions", "Use cursors"]
    )

    assert result.exit_code == 0, result.output
    assert "is pending" in result.output
    job = asyncio.run(store.get(REPO, 42))
    assert job.status == JobStatus.PENDING
    assert job.current_iteration == 0
    assert job.pending_feedback == "Use cursors"
    assert job.pending_override == OverrideKind.RETRY


def test_retry_requires_failed_job(cli_runner, config_file, state_dir):
    seed(state_dir, Job(repo=REPO, number=42, title="t", status=JobStatus.COMPLETED))

    result = cli_runner.invoke(cli, ["--config", str(config_file), "retry", REPO, "42"])

    assert result.exit_code == 1
    assert "Only FAILED jobs can be retried" in result.output


def test_retry_unconfigured_repository(cli_runner, config_file):
    result = cli_runner.invoke(cli, ["--config", str(config_file), "retry", "acme/gadgets", "1"])

    assert result.exit_code == 1
    assert "Repository not configured" in result.output


def test_reject_requires_feedback(cli_runner, config_file):
    result = cli_runner.invoke(cli, ["--config", str(config_file), "reject", REPO, "42"])

    assert result.exit_code == 2
    assert "--feedback" in result.output


def test_reject_and_approve(cli_runner, config_file, state_dir):
    store = seed(
        state_dir,
        Job(repo=REPO, number=42, title="t", status=JobStatus.AWAITING_APPROVAL),
        Job(repo=REPO, number=43, title="u", status=JobStatus.AWAITING_APPROVAL),
    )

    rejected = cli_runner.invoke(cli, ["--config", str(config_file), "reject", REPO, "42", "--feedback", "Rename it"])
    approved = cli_runner.invoke(cli, ["--config", str(config_file), "approve", REPO, "43"])

    assert rejected.exit_code == 0, rejected.output
    assert approved.exit_code == 0, approved.output
    assert "Job acme/widgets#43 approved" in approved.output
    assert asyncio.run(store.get(REPO, 42)).pending_override == OverrideKind.REJECTION
    assert asyncio.run(store.get(REPO, 43)).status == JobStatus.COMPLETED


def test_run_once(cli_runner, config_file):
    controller = MagicMock()
    controller.recover_interrupted = AsyncMock(return_value=1)
    controller.run_cycle = AsyncMock()
    controller.wait_idle = AsyncMock()
    controller.running = []

    with patch("issue_pilot.main._create_controller", return_value=controller):
        result = cli_runner.invoke(cli, ["--config", str(config_file), "run", "--once"])

    assert result.exit_code == 0, result.output
    assert "Recovered 1 interrupted job(s)" in result.output
    controller.run_cycle.assert_awaited_once()
    controller.wait_idle.assert_awaited_once()
