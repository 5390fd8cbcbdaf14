"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the engine loop, tracker
labels, per-repository policies and the collaborator factories that supply
tracker, VCS and backend implementations.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from issue_pilot.enums import RepoMode
from issue_pilot.exceptions import ConfigurationError


class RepositoryPolicy(BaseModel):
    """Per-repository policy governing mode, budgets and finalization.

    Policies are immutable; the engine only ever reads them.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    mode: RepoMode = Field(default=RepoMode.AUTONOMOUS, description="Autonomous or approval-gated")
    max_iterations: int = Field(default=5, ge=1, le=50, description="Implementation iteration ceiling")
    max_review_iterations: int = Field(default=2, ge=0, le=20, description="Review iteration ceiling")
    ci_enabled: bool = Field(default=True, description="Wait for CI checks after each push")
    ci_timeout_minutes: float = Field(default=15.0, gt=0.0, description="Maximum wait for CI checks")
    auto_finalize: bool = Field(default=False, description="Auto-merge finished work (autonomous mode only)")
    security_review: bool = Field(default=False, description="Ask the reviewer for a security pass")
    target_branch: str = Field(default="main", description="Branch that pull requests target")

    @property
    def full_name(self) -> str:
        """Get the ``owner/name`` identity of the repository."""
        return f"{self.owner}/{self.name}"

    @property
    def gated(self) -> bool:
        """Check if finished work must wait for human approval."""
        return self.mode == RepoMode.APPROVAL_GATED


class EngineConfig(BaseModel):
    """Engine loop behavior configuration."""

    poll_interval_seconds: int = Field(default=60, ge=1, description="Seconds between admission cycles")
    max_concurrent_jobs: int = Field(default=3, ge=1, le=50, description="Global cap on running jobs")
    cooldown_hours: float = Field(default=24.0, gt=0.0, description="Cooldown after a job fails")
    branch_prefix: str = Field(default="pilot/", description="Prefix of every branch the engine creates")
    generation_timeout_seconds: float = Field(default=1800.0, gt=0.0, description="Timeout for one generation call")
    review_timeout_seconds: float = Field(default=600.0, gt=0.0, description="Timeout for one review call")
    state_directory: str = Field(default=".issue-pilot/state", description="Directory for job records")
    hold_unreviewed_work: bool = Field(
        default=False,
        description="Send jobs whose review could not run to AWAITING_APPROVAL instead of completing them",
    )
    strict_cycles: bool = Field(default=False, description="Escalate dependency cycles instead of forcing an order")
    auto_finalize_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for automatic merge")
    auto_finalize_backoff: float = Field(default=2.0, ge=0.0, description="Backoff base between merge attempts")
    follow_up_issues: bool = Field(default=True, description="Open follow-up issues for minor review findings")

    @field_validator("branch_prefix")
    @classmethod
    def validate_branch_prefix(cls, value: str) -> str:
        """Reject prefixes that could not form a valid branch name."""
        if not value or value.startswith("/") or " " in value or ".." in value:
            raise ValueError(f"Invalid branch prefix: {value!r}")
        return value


class LabelsConfig(BaseModel):
    """Tracker label configuration."""

    trigger: str = Field(default="agent-ready", description="Label that makes an issue eligible")
    needs_human: str = Field(default="needs-human", description="Escalation marker")
    artifact_created: str = Field(default="pr-created", description="Added once a pull request is finalized")
    follow_up: str = Field(default="issuebot-followup", description="Label of follow-up issues")


class CollaboratorsConfig(BaseModel):
    """Import paths of collaborator factories, in ``package.module:callable`` form.

    Each factory is called with the loaded settings and returns an
    implementation of the matching interface from ``issue_pilot.providers.base``.
    """

    tracker: str | None = Field(default=None, description="TrackerClient factory")
    vcs: str | None = Field(default=None, description="VcsClient factory")
    generation: str | None = Field(default=None, description="GenerationBackend factory")
    verification: str | None = Field(default=None, description="VerificationBackend factory")
    review: str | None = Field(default=None, description="ReviewBackend factory")
    packaging: str | None = Field(default=None, description="PackagingBackend factory")


class IssuePilotSettings(BaseSettings):
    """Main issue-pilot settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISSUE_PILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    repositories: list[RepositoryPolicy] = Field(default_factory=list)
    collaborators: CollaboratorsConfig = Field(default_factory=CollaboratorsConfig)

    @field_validator("repositories")
    @classmethod
    def validate_unique_repositories(cls, value: list[RepositoryPolicy]) -> list[RepositoryPolicy]:
        """Reject duplicate repository entries."""
        seen: set[str] = set()
        for policy in value:
            if policy.full_name in seen:
                raise ValueError(f"Repository configured twice: {policy.full_name}")
            seen.add(policy.full_name)
        return value

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.engine.state_directory)

    def repository(self, full_name: str) -> RepositoryPolicy:
        """Look up the policy of a configured repository.

        Args:
            full_name: Repository identity in ``owner/name`` form

        Returns:
            The matching RepositoryPolicy

        Raises:
            ConfigurationError: If the repository is not configured
        """
        for policy in self.repositories:
            if policy.full_name == full_name:
                return policy
        raise ConfigurationError(f"Repository not configured: {full_name}")

    @classmethod
    def from_yaml(cls, config_path: str) -> IssuePilotSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            IssuePilotSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Args:
            content: String content with placeholders

        Returns:
            Content with environment variables substituted

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
