"""Configuration system for issue-pilot.

Key Components:
    - IssuePilotSettings: Main configuration container with YAML loading support
    - EngineConfig: Admission loop, timeouts and cooldown settings
    - LabelsConfig: Tracker label names
    - RepositoryPolicy: Per-repository mode and budgets
    - CollaboratorsConfig: Factories for tracker, VCS and backends

Example:
    >>> from issue_pilot.config import IssuePilotSettings
    >>> settings = IssuePilotSettings.from_yaml("issue-pilot.yaml")
    >>> policy = settings.repository("acme/widgets")
"""

from issue_pilot.config.settings import (
    CollaboratorsConfig,
    EngineConfig,
    IssuePilotSettings,
    LabelsConfig,
    RepositoryPolicy,
)

__all__ = [
    "CollaboratorsConfig",
    "EngineConfig",
    "IssuePilotSettings",
    "LabelsConfig",
    "RepositoryPolicy",
]
