"""Collaborator interfaces and the factory that loads their implementations.

Key Components:
    - TrackerClient: Issue tracker access
    - VcsClient: Working-copy operations
    - GenerationBackend: Produces candidate changes
    - VerificationBackend: CI status
    - ReviewBackend: Independent review
    - PackagingBackend: Pull request management
    - create_collaborators: Builds all of the above from configuration
"""
