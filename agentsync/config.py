"""Runtime configuration — where the registry and project documents live."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_REGISTRY_PATH = "sync/registry.yaml"
DEFAULT_PROJECTS_PATH = "sync/projects.yaml"

REGISTRY_ENV = "AGENTSYNC_REGISTRY"
PROJECTS_ENV = "AGENTSYNC_PROJECTS"

# Per-project state directory, relative to the project root
STATE_DIR = ".agentsync"
LOCK_FILE = "lock.json"
LOCK_VERSION = 1


@dataclass(frozen=True)
class SyncSettings:
    """Resolved locations of the source-of-truth documents."""

    registry_path: Path
    projects_path: Path

    @classmethod
    def from_options(
        cls,
        registry_path: str | Path | None = None,
        projects_path: str | Path | None = None,
    ) -> SyncSettings:
        return cls(
            registry_path=Path(registry_path or DEFAULT_REGISTRY_PATH),
            projects_path=Path(projects_path or DEFAULT_PROJECTS_PATH),
        )
