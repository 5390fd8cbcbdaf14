"""Tests for collaborator factories."""

from unittest.mock import MagicMock

import pytest

from issue_pilot.config.settings import CollaboratorsConfig, IssuePilotSettings
from issue_pilot.exceptions import ConfigurationError
from issue_pilot.providers.base import TrackerClient
from issue_pilot.providers.factory import create_collaborators, load_factory


def make_mock_tracker(settings):
    return MagicMock(spec=TrackerClient)


def make_wrong_type(settings):
    return object()


def test_load_factory_resolves_attribute():
    assert load_factory("issue_pilot.providers.factory:load_factory") is load_factory


@pytest.mark.parametrize("path", ["no_colon", ":attr", "module:"])
def test_load_factory_rejects_malformed_paths(path):
    with pytest.raises(ConfigurationError, match="Invalid factory reference"):
        load_factory(path)


def test_load_factory_unknown_module():
    with pytest.raises(ConfigurationError, match="Cannot import"):
        load_factory("issue_pilot.does_not_exist:factory")


def test_load_factory_unknown_attribute():
    with pytest.raises(ConfigurationError, match="has no attribute"):
        load_factory("issue_pilot.providers.factory:missing")


def test_missing_factory_is_reported():
    settings = IssuePilotSettings()

    with pytest.raises(ConfigurationError, match="No factory configured for collaborator 'tracker'"):
        create_collaborators(settings)


def test_wrong_return_type_is_reported():
    settings = IssuePilotSettings(
        collaborators=CollaboratorsConfig(tracker=f"{__name__}:make_wrong_type"),
    )

    with pytest.raises(ConfigurationError, match="expected TrackerClient"):
        create_collaborators(settings)


def test_roles_are_built_in_order():
    settings = IssuePilotSettings(
        collaborators=CollaboratorsConfig(tracker=f"{__name__}:make_mock_tracker"),
    )

    with pytest.raises(ConfigurationError, match="'vcs'"):
        create_collaborators(settings)
