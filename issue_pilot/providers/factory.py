"""Factories that build collaborator instances from configuration.

Collaborators are named in ``collaborators`` configuration as import paths
of the form ``package.module:callable``. The callable receives the loaded
settings and must return an instance of the matching base class.
"""

from dataclasses import dataclass
from importlib import import_module
from typing import Any, TypeVar

import structlog

from issue_pilot.config.settings import IssuePilotSettings
from issue_pilot.exceptions import ConfigurationError
from issue_pilot.providers.base import (
    GenerationBackend,
    PackagingBackend,
    ReviewBackend,
    TrackerClient,
    VcsClient,
    VerificationBackend,
)

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class Collaborators:
    """The full set of collaborators the engine needs."""

    tracker: TrackerClient
    vcs: VcsClient
    generation: GenerationBackend
    verification: VerificationBackend
    review: ReviewBackend
    packaging: PackagingBackend


def load_factory(import_path: str) -> Any:
    """Resolve a ``package.module:callable`` reference.

    Args:
        import_path: Module path and attribute separated by a colon.

    Returns:
        The referenced attribute.

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported.
    """
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Invalid factory reference {import_path!r}, expected 'package.module:callable'")

    try:
        module = import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import collaborator module {module_name!r}: {e}") from e

    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ConfigurationError(f"Module {module_name!r} has no attribute {attr!r}") from e


def _build(settings: IssuePilotSettings, role: str, expected: type[T]) -> T:
    import_path = getattr(settings.collaborators, role)
    if not import_path:
        raise ConfigurationError(f"No factory configured for collaborator '{role}'")

    instance = load_factory(import_path)(settings)
    if not isinstance(instance, expected):
        raise ConfigurationError(
            f"Factory {import_path!r} returned {type(instance).__name__}, expected {expected.__name__}"
        )
    log.debug("collaborator_created", role=role, factory=import_path)
    return instance


def create_collaborators(settings: IssuePilotSettings) -> Collaborators:
    """Instantiate every collaborator named in configuration.

    Raises:
        ConfigurationError: If any factory is missing, broken or returns
            an object of the wrong type.
    """
    return Collaborators(
        tracker=_build(settings, "tracker", TrackerClient),
        vcs=_build(settings, "vcs", VcsClient),
        generation=_build(settings, "generation", GenerationBackend),
        verification=_build(settings, "verification", VerificationBackend),
        review=_build(settings, "review", ReviewBackend),
        packaging=_build(settings, "packaging", PackagingBackend),
    )
