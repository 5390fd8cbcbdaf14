"""issue-pilot: dependency-aware automation of tracker issues into reviewed pull requests."""

__version__ = "0.3.0"
