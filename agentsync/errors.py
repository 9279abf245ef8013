"""Error taxonomy for the sync engine.

Configuration errors are fatal and raised before any filesystem mutation.
Per-artifact conflicts and I/O failures are reported as data, not raised.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all agentsync errors."""


class ConfigurationError(SyncError):
    """The registry, project, or lock documents are structurally invalid."""

    def __init__(self, issues: list[str] | str):
        if isinstance(issues, str):
            issues = [issues]
        self.issues = list(issues)
        super().__init__("; ".join(self.issues))


class ArtifactNotFound(SyncError, KeyError):
    """An artifact identifier does not exist in the registry."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(identifier)

    def __str__(self) -> str:
        return f"Unknown artifact: {self.identifier}"


class LockFileError(ConfigurationError):
    """A project's lock document could not be parsed."""
